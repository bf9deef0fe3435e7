from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from cv_harvester.config import ConfigLocator, ConfigRepository, GlobalConfig, ListingApiSource, slugify


def test_config_locator_uses_env_and_creates_directories(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CV_HARVESTER_HOME", str(tmp_path))
    locator = ConfigLocator()

    assert locator.project_root == tmp_path.resolve()
    assert locator.sources_dir == tmp_path.resolve() / "data" / "sources"
    assert locator.global_config_path() == tmp_path.resolve() / "data" / "global_config.yaml"
    for path in (locator.data_dir, locator.sources_dir, locator.exports_dir, locator.logs_dir):
        assert path.is_dir()


def test_global_config_is_written_on_first_load(config_repository: ConfigRepository) -> None:
    loaded = config_repository.load_global_config()

    assert loaded == GlobalConfig()
    on_disk = yaml.safe_load(config_repository.locator.global_config_path().read_text(encoding="utf-8"))
    assert on_disk["default_queue"] == "cv-scraping"
    assert on_disk["dedup"]["similarity_threshold"] == 0.85


def test_config_repository_global_roundtrip(tmp_path: Path) -> None:
    repo = ConfigRepository(ConfigLocator(project_root=tmp_path))
    config = GlobalConfig(worker_threads=3, analytics_refresh_seconds=15, export={"sync_threshold": 10})
    repo.save_global_config(config)

    fresh = ConfigRepository(ConfigLocator(project_root=tmp_path))

    assert fresh.load_global_config() == config


def test_config_repository_source_cycle(config_repository: ConfigRepository) -> None:
    source = ListingApiSource(
        id="talent-api",
        name="Talent API",
        api_url="https://api.example.com/cvs",
        tags=["tech"],
        proxies=[{"host": "10.0.0.1", "port": 8080}],
    )

    path = config_repository.save_source(source)
    loaded = config_repository.load_source("talent-api")

    assert path.name == "talent-api.yaml"
    assert loaded == source
    assert config_repository.has_source("talent-api")
    assert [item.id for item in config_repository.list_sources()] == ["talent-api"]

    config_repository.delete_source("talent-api")
    assert not config_repository.has_source("talent-api")


def test_config_repository_reads_json_sources(config_repository: ConfigRepository) -> None:
    path = config_repository.locator.sources_dir / "imports.json"
    path.write_text(
        '{"id": "imports", "name": "Imports", "type": "file_import", "file_path": "cvs.csv"}', encoding="utf-8"
    )

    [source] = config_repository.list_sources()

    assert source.type == "file_import"
    assert source.file_format == "csv"
    assert config_repository.has_source("imports")
    assert config_repository.load_source("imports").name == "Imports"

    config_repository.save_source(source.model_copy(update={"description": "Nightly dump"}))

    assert config_repository.source_path("imports") == path
    assert config_repository.load_source("imports").description == "Nightly dump"
    assert sorted(p.name for p in config_repository.locator.sources_dir.iterdir()) == ["imports.json"]


def test_config_repository_missing_source(config_repository: ConfigRepository) -> None:
    with pytest.raises(FileNotFoundError):
        config_repository.load_source("missing")


def test_non_mapping_file_is_rejected(config_repository: ConfigRepository) -> None:
    (config_repository.locator.sources_dir / "broken.yaml").write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        config_repository.list_sources()


def test_relative_paths_resolve_against_project_root(config_repository: ConfigRepository) -> None:
    root = config_repository.locator.project_root
    assert config_repository.resolve_path(Path("data/exports")) == root / "data" / "exports"
    assert config_repository.resolve_path(root / "elsewhere") == root / "elsewhere"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Example Source", "example-source"),
        ("Already-Slug", "already-slug"),
        ("C++ Archive", "c-archive"),
        ("  Trailing!! ", "trailing"),
    ],
)
def test_slugify_behaviour(raw: str, expected: str) -> None:
    assert slugify(raw) == expected
