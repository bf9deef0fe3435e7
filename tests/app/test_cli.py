from __future__ import annotations

import pytest
import yaml
from rich.console import Console
from typer.testing import CliRunner

from cv_harvester.app import AppState, app

runner = CliRunner()


@pytest.fixture
def state(harvester, monkeypatch: pytest.MonkeyPatch) -> AppState:
    state = AppState(harvester=harvester)
    monkeypatch.setattr("cv_harvester.app.build_state", lambda verbose: state)
    monkeypatch.setattr("cv_harvester.app.console", Console(width=200))
    return state


def _invoke(*args: str):
    return runner.invoke(app, list(args))


def test_cli_list_sources_when_empty(state) -> None:
    result = _invoke("source", "list")
    assert result.exit_code == 0, result.stdout
    assert "暂无数据源配置" in result.stdout


def test_cli_add_and_list_source(state, tmp_path) -> None:
    path = tmp_path / "talent.yaml"
    path.write_text(
        yaml.safe_dump({"name": "Talent API", "type": "listing_api", "api_url": "https://api.example.com/cvs"}),
        encoding="utf-8",
    )

    added = _invoke("--actor", "ops", "source", "add", str(path))
    listed = _invoke("source", "list")

    assert added.exit_code == 0, added.stdout
    assert "ID：talent-api" in added.stdout
    assert state.harvester.sources.get_source("talent-api").created_by == "ops"
    assert "数据源总览 · 共 1 个" in listed.stdout
    assert "10/min × 2" in listed.stdout


def test_cli_add_source_reports_validation_errors(state, tmp_path) -> None:
    path = tmp_path / "broken.json"
    path.write_text('{"name": "Broken", "type": "listing_api", "api_url": "nope"}', encoding="utf-8")

    result = _invoke("source", "add", str(path))

    assert result.exit_code == 1
    assert "操作失败" in result.stdout


def test_cli_job_create_start_and_queue_status(state, make_source) -> None:
    source = make_source()

    created = _invoke("job", "create", "--name", "Nightly", "--source", source.id, "--pages", "2", "--start")
    status = _invoke("queue", "status")

    assert created.exit_code == 0, created.stdout
    assert "状态：queued" in created.stdout
    assert status.exit_code == 0, status.stdout
    row = next(line for line in status.stdout.splitlines() if "cv-scraping" in line)
    assert row.split()[1:3] == ["2", "0"]


def test_cli_job_create_requires_name_and_source(state) -> None:
    result = _invoke("job", "create", "--pages", "2")
    assert result.exit_code == 2


def test_cli_job_run_quiet(state, make_job) -> None:
    job = make_job()

    result = _invoke("job", "run", job.id, "--quiet", "--timeout", "10")

    assert result.exit_code == 0, result.stdout
    assert "运行结束：状态 completed，抓取 4，有效 4" in result.stdout


def test_cli_job_show_missing(state) -> None:
    result = _invoke("job", "show", "ghost")
    assert result.exit_code == 1
    assert "未找到job `ghost`" in result.stdout


def test_cli_job_bulk_reports_each_id(state, make_job) -> None:
    job = make_job(start=True)

    result = _invoke("job", "bulk", "cancel", job.id, "ghost")

    assert result.exit_code == 0, result.stdout
    assert "成功" in result.stdout
    assert "失败" in result.stdout
    assert state.harvester.jobs.get_job(job.id).status.value == "cancelled"


def test_cli_data_clean(state, record_factory) -> None:
    record = record_factory(full_name="Ada Lovelace", email=" ADA@example.com")
    state.harvester.record_repository.insert_many([record])

    first = _invoke("data", "clean", record.id)
    second = _invoke("data", "clean", record.id)

    assert "已清洗字段：email" in first.stdout
    assert "无需修改" in second.stdout


def test_cli_export_create(state, record_factory) -> None:
    state.harvester.record_repository.insert_many(
        [record_factory(full_name="Ada Lovelace", email="ada@example.com")]
    )

    result = _invoke("export", "create", "--format", "jsonl")

    assert result.exit_code == 0, result.stdout
    assert "completed" in result.stdout


def test_cli_report_rejects_unknown_metric(state) -> None:
    result = _invoke("analytics", "report", "revenue")
    assert result.exit_code == 1
    assert "unknown: revenue" in result.stdout


def test_cli_queue_pause_and_resume(state) -> None:
    paused = _invoke("queue", "pause", "cv-scraping")
    assert paused.exit_code == 0, paused.stdout
    assert state.harvester.queues.get_queue_status("cv-scraping")["is_paused"]

    resumed = _invoke("queue", "resume", "cv-scraping")
    assert resumed.exit_code == 0, resumed.stdout
    assert not state.harvester.queues.get_queue_status("cv-scraping")["is_paused"]
