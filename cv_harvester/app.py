"""Typer CLI entrypoint for CV-Harvester."""

from __future__ import annotations

import json
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional, Sequence

import typer
import yaml
from rich import box
from rich.console import Console
from rich.table import Table
from typer import BadParameter

from .analytics import REPORT_METRICS
from .config import SourceConfig
from .errors import HarvesterError, NotFoundError
from .logging_conf import available_source_logs, configure_logging, log_dir, tail_log
from .models import ExportJob, RecordFilter, ScrapingJob
from .service import Harvester

app = typer.Typer(help="CV-Harvester 命令行工具", no_args_is_help=True, rich_markup_mode=None)
source_app = typer.Typer(name="source", help="数据源管理命令", no_args_is_help=True, rich_markup_mode=None)
job_app = typer.Typer(name="job", help="抓取任务管理命令", no_args_is_help=True, rich_markup_mode=None)
queue_app = typer.Typer(name="queue", help="队列管理命令", no_args_is_help=True, rich_markup_mode=None)
data_app = typer.Typer(name="data", help="简历数据校验与去重", no_args_is_help=True, rich_markup_mode=None)
export_app = typer.Typer(name="export", help="数据导出命令", no_args_is_help=True, rich_markup_mode=None)
analytics_app = typer.Typer(name="analytics", help="统计分析命令", no_args_is_help=True, rich_markup_mode=None)
log_app = typer.Typer(name="log", help="日志查看命令", no_args_is_help=True, rich_markup_mode=None)

console = Console()


@dataclass
class AppState:
    harvester: Harvester
    actor: str = "cli"


def build_state(verbose: bool) -> AppState:
    configure_logging(verbose=verbose)
    return AppState(harvester=Harvester.from_home())


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


@contextmanager
def _service_errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as exc:
        console.print(f"未找到{exc.kind} `{exc.identifier}`。", style="red")
        raise typer.Exit(code=1)
    except HarvesterError as exc:
        console.print(f"操作失败：{exc}", style="red")
        raise typer.Exit(code=1)


def _parse_datetime_option(value: Optional[str], option_name: str) -> datetime | None:
    if value is None:
        return None
    text = value.strip()
    if not text:
        raise BadParameter(f"{option_name} 不能为空。")
    normalized = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        candidate = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise BadParameter(f"{option_name} 需使用 ISO8601 时间，例如 2024-10-14T08:00+08:00。") from exc
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=timezone.utc)
    return candidate.astimezone(timezone.utc)


def _load_payload(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        console.print(f"文件不存在：{path}", style="red")
        raise typer.Exit(code=1)
    payload = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    if not isinstance(payload, dict):
        console.print("配置内容解析失败，请检查格式。", style="red")
        raise typer.Exit(code=1)
    return payload


def _print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, ensure_ascii=False, default=str))


def _fmt_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def _record_filter(
    status: Optional[List[str]], source: Optional[List[str]], min_quality: Optional[float]
) -> RecordFilter:
    try:
        return RecordFilter.model_validate(
            {"status": status or None, "source_ids": source or None, "min_quality": min_quality}
        )
    except ValueError as exc:
        raise BadParameter(f"过滤条件无效：{exc}") from exc


def _render_sources_table(sources: Sequence[SourceConfig]) -> Table:
    table = Table(title=f"数据源总览 · 共 {len(sources)} 个", box=box.SIMPLE_HEAD)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("名称", style="bold")
    table.add_column("类型", style="magenta")
    table.add_column("状态", style="green")
    table.add_column("健康", style="yellow")
    table.add_column("限速", justify="right")
    table.add_column("代理", justify="right")
    for source in sources:
        table.add_row(
            source.id,
            source.name,
            source.type,
            "启用" if source.is_active else "停用",
            source.health.status.value,
            f"{source.rate_limit.requests_per_minute}/min × {source.rate_limit.max_concurrent}",
            str(len(source.proxies)),
        )
    return table


def _render_jobs_table(jobs: Iterable[ScrapingJob], title: str = "抓取任务") -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAD)
    table.add_column("任务 ID", style="cyan", no_wrap=True)
    table.add_column("名称", style="bold")
    table.add_column("数据源", style="magenta")
    table.add_column("状态", style="green")
    table.add_column("进度", justify="right")
    table.add_column("抓取/有效/重复/失败", justify="right")
    table.add_column("尝试", justify="right")
    table.add_column("创建时间", style="dim")
    for job in jobs:
        progress = job.progress
        table.add_row(
            job.id,
            job.name,
            job.source_id,
            job.status.value,
            f"{progress.percentage:.0f}%",
            f"{progress.found}/{progress.validated}/{progress.duplicate}/{progress.failed}",
            f"{job.attempt}/{job.max_retries}",
            _fmt_time(job.created_at),
        )
    return table


def _render_exports_table(exports: Iterable[ExportJob]) -> Table:
    table = Table(title="导出记录", box=box.SIMPLE_HEAD)
    table.add_column("导出 ID", style="cyan", no_wrap=True)
    table.add_column("格式", style="magenta")
    table.add_column("状态", style="green")
    table.add_column("行数", justify="right")
    table.add_column("进度", justify="right")
    table.add_column("文件", overflow="fold")
    for export in exports:
        table.add_row(
            export.id,
            export.format.value,
            export.status.value + (" (可重试)" if export.retriable else ""),
            str(export.row_count),
            f"{export.progress:.0f}%",
            export.artifact_ref or "-",
        )
    return table


app.add_typer(source_app, name="source", help="管理数据源与代理（list/add/toggle/test 等）")
app.add_typer(job_app, name="job", help="管理抓取任务（create/start/pause/cancel/run 等）")
app.add_typer(queue_app, name="queue", help="查看与维护任务队列")
app.add_typer(data_app, name="data", help="简历校验、清洗、去重与合并")
app.add_typer(export_app, name="export", help="导出简历数据")
app.add_typer(analytics_app, name="analytics", help="统计与报表")
app.add_typer(log_app, name="log", help="查看日志文件")


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="开启调试日志", is_flag=True),
    actor: str = typer.Option("cli", "--actor", help="审计事件中记录的操作人。"),
) -> None:
    state = build_state(verbose)
    state.actor = actor
    ctx.obj = state


# ----------------------------------------------------------------------
# source
# ----------------------------------------------------------------------
@source_app.command("list", help="查看数据源清单。")
def source_list(
    ctx: typer.Context,
    category: Optional[str] = typer.Option(None, "--category", help="按分类过滤。"),
    search: Optional[str] = typer.Option(None, "--search", help="按名称或描述搜索。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        result = state.harvester.sources.list_sources(
            {"category": category, "search": search}, page=1, limit=1000
        )
    sources = result["sources"]
    if not sources:
        console.print("暂无数据源配置，使用 `cv-harvester source add <文件>` 创建。", style="yellow")
        raise typer.Exit(code=0)
    console.print(_render_sources_table(sources))


@source_app.command("show", help="查看数据源详情。")
def source_show(ctx: typer.Context, source_id: str = typer.Argument(..., help="数据源 ID。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        source = state.harvester.sources.get_source(source_id)
    _print_json(source.model_dump(mode="json"))


@source_app.command("add", help="从 YAML/JSON 文件创建数据源。")
def source_add(ctx: typer.Context, path: Path = typer.Argument(..., help="配置文件路径。")) -> None:
    state = _get_state(ctx)
    payload = _load_payload(path)
    with _service_errors():
        source = state.harvester.sources.create_source(payload, actor=state.actor)
    console.print(f"数据源 `{source.name}` 已创建，ID：{source.id}。", style="green")


@source_app.command("edit", help="在编辑器中修改数据源配置。")
def source_edit(ctx: typer.Context, source_id: str = typer.Argument(..., help="数据源 ID。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        current = state.harvester.sources.export_configuration(source_id)
    edited = typer.edit(text=yaml.safe_dump(current, allow_unicode=True, sort_keys=False))
    if edited is None:
        console.print("未更新配置（可能未保存或取消编辑）。", style="yellow")
        raise typer.Exit(code=0)
    payload = yaml.safe_load(edited)
    if not isinstance(payload, dict):
        console.print("配置内容解析失败，请检查格式。", style="red")
        raise typer.Exit(code=1)
    payload.pop("type", None)
    with _service_errors():
        state.harvester.sources.update_source(source_id, payload, actor=state.actor)
    console.print("配置已更新完成。", style="green")


@source_app.command("remove", help="删除数据源。")
def source_remove(
    ctx: typer.Context,
    source_id: str = typer.Argument(..., help="数据源 ID。"),
    yes: bool = typer.Option(False, "--yes", help="跳过删除确认提示。", is_flag=True),
) -> None:
    state = _get_state(ctx)
    if not yes and not typer.confirm(f"确认删除数据源 `{source_id}`？", default=False):
        console.print("已取消删除操作。", style="yellow")
        raise typer.Exit(code=0)
    with _service_errors():
        state.harvester.sources.delete_source(source_id, actor=state.actor)
    console.print(f"数据源 `{source_id}` 已删除。", style="green")


@source_app.command("toggle", help="启用或停用数据源。")
def source_toggle(ctx: typer.Context, source_id: str = typer.Argument(..., help="数据源 ID。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        source = state.harvester.sources.toggle_source_status(source_id, actor=state.actor)
    console.print(f"数据源 `{source.id}` 已{'启用' if source.is_active else '停用'}。", style="green")


@source_app.command("clone", help="复制数据源配置。")
def source_clone(ctx: typer.Context, source_id: str = typer.Argument(..., help="数据源 ID。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        source = state.harvester.sources.clone_source(source_id, actor=state.actor)
    console.print(f"已复制为 `{source.name}`，ID：{source.id}。", style="green")


@source_app.command("test", help="测试数据源连通性。")
def source_test(ctx: typer.Context, source_id: str = typer.Argument(..., help="数据源 ID。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        result = state.harvester.sources.test_source(source_id)
    style = "green" if result.success else "red"
    console.print(f"连通性：{'成功' if result.success else '失败'}", style=style)
    _print_json(result.to_dict())
    if not result.success:
        raise typer.Exit(code=1)


@source_app.command("proxy-add", help="为数据源添加代理。")
def source_proxy_add(
    ctx: typer.Context,
    source_id: str = typer.Argument(..., help="数据源 ID。"),
    host: str = typer.Option(..., "--host", help="代理主机。"),
    port: int = typer.Option(..., "--port", help="代理端口。"),
    protocol: str = typer.Option("http", "--protocol", help="http/https/socks4/socks5。"),
    username: Optional[str] = typer.Option(None, "--username", help="代理用户名。"),
    password: Optional[str] = typer.Option(None, "--password", help="代理密码。"),
) -> None:
    state = _get_state(ctx)
    payload = {"host": host, "port": port, "protocol": protocol, "username": username, "password": password}
    with _service_errors():
        proxy = state.harvester.sources.add_proxy(
            source_id, {k: v for k, v in payload.items() if v is not None}, actor=state.actor
        )
    console.print(f"代理 {proxy.host}:{proxy.port} 已添加，ID：{proxy.id}。", style="green")


@source_app.command("proxy-remove", help="移除数据源的代理。")
def source_proxy_remove(
    ctx: typer.Context,
    source_id: str = typer.Argument(..., help="数据源 ID。"),
    proxy_id: str = typer.Argument(..., help="代理 ID。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        state.harvester.sources.remove_proxy(source_id, proxy_id, actor=state.actor)
    console.print(f"代理 `{proxy_id}` 已移除。", style="green")


@source_app.command("export-config", help="导出数据源配置（去除敏感信息）。")
def source_export_config(
    ctx: typer.Context,
    source_id: str = typer.Argument(..., help="数据源 ID。"),
    output: Optional[Path] = typer.Option(None, "--output", help="写入文件（默认打印）。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        payload = state.harvester.sources.export_configuration(source_id)
    text = yaml.safe_dump(payload, allow_unicode=True, sort_keys=False)
    if output is None:
        console.print(text)
        return
    output.write_text(text, encoding="utf-8")
    console.print(f"配置已写入 {output}。", style="green")


@source_app.command("import-config", help="从导出的配置文件创建数据源。")
def source_import_config(ctx: typer.Context, path: Path = typer.Argument(..., help="配置文件路径。")) -> None:
    state = _get_state(ctx)
    payload = _load_payload(path)
    with _service_errors():
        source = state.harvester.sources.import_configuration(payload, actor=state.actor)
    console.print(f"数据源 `{source.name}` 已导入，ID：{source.id}。", style="green")


@source_app.command("types", help="列出支持的数据源类型与分类。")
def source_types(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    table = Table(title="数据源类型", box=box.SIMPLE_HEAD)
    table.add_column("类型", style="cyan")
    table.add_column("必填字段", style="magenta", overflow="fold")
    for item in state.harvester.sources.list_types():
        table.add_row(item["type"], ", ".join(item["required_fields"]))
    console.print(table)
    console.print("分类：" + ", ".join(state.harvester.sources.list_categories()), style="dim")


# ----------------------------------------------------------------------
# job
# ----------------------------------------------------------------------
@job_app.command("list", help="查看抓取任务。")
def job_list(
    ctx: typer.Context,
    status: Optional[List[str]] = typer.Option(None, "--status", help="按状态过滤，可重复。"),
    source_id: Optional[str] = typer.Option(None, "--source", help="按数据源过滤。"),
    page: int = typer.Option(1, "--page", help="页码。"),
    limit: int = typer.Option(20, "--limit", help="每页数量。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        result = state.harvester.jobs.list_jobs(
            {"status": status, "source_id": source_id}, page=page, limit=limit
        )
    if not result["jobs"]:
        console.print("暂无符合条件的任务。", style="dim")
        return
    pagination = result["pagination"]
    console.print(
        _render_jobs_table(result["jobs"], f"抓取任务 · 第 {pagination['page']}/{pagination['pages']} 页")
    )


@job_app.command("show", help="查看任务详情。")
def job_show(ctx: typer.Context, job_id: str = typer.Argument(..., help="任务 ID。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        job = state.harvester.jobs.get_job(job_id)
    _print_json(job.model_dump(mode="json"))


@job_app.command("create", help="创建抓取任务（可从文件读取完整定义）。")
def job_create(
    ctx: typer.Context,
    name: Optional[str] = typer.Option(None, "--name", help="任务名称。"),
    source_id: Optional[str] = typer.Option(None, "--source", help="数据源 ID。"),
    pages: int = typer.Option(1, "--pages", help="抓取页数。"),
    page_size: int = typer.Option(50, "--page-size", help="每页条数。"),
    priority: str = typer.Option("normal", "--priority", help="low/normal/high/critical。"),
    max_retries: int = typer.Option(3, "--max-retries", help="最大重试次数。"),
    spec_file: Optional[Path] = typer.Option(None, "--file", help="YAML/JSON 任务定义文件。"),
    start: bool = typer.Option(False, "--start", help="创建后立即入队。", is_flag=True),
) -> None:
    state = _get_state(ctx)
    if spec_file is not None:
        spec: dict[str, Any] = _load_payload(spec_file)
    else:
        if not name or not source_id:
            raise BadParameter("未提供 --file 时必须指定 --name 与 --source。")
        spec = {
            "name": name,
            "source_id": source_id,
            "priority": priority,
            "max_retries": max_retries,
            "config": {"pages": pages, "page_size": page_size},
        }
    with _service_errors():
        job = state.harvester.jobs.create_job(spec, actor=state.actor, start=start)
    console.print(f"任务 `{job.name}` 已创建，ID：{job.id}，状态：{job.status.value}。", style="green")


def _transition(ctx: typer.Context, action: str, job_id: str, label: str) -> None:
    state = _get_state(ctx)
    operation = getattr(state.harvester.jobs, f"{action}_job")
    with _service_errors():
        job = operation(job_id, actor=state.actor)
    console.print(f"任务 `{job.id}` 已{label}，当前状态：{job.status.value}。", style="green")


@job_app.command("start", help="启动任务（pending/paused → queued）。")
def job_start(ctx: typer.Context, job_id: str = typer.Argument(..., help="任务 ID。")) -> None:
    _transition(ctx, "start", job_id, "启动")


@job_app.command("pause", help="暂停任务，进行中的请求会自然结束。")
def job_pause(ctx: typer.Context, job_id: str = typer.Argument(..., help="任务 ID。")) -> None:
    _transition(ctx, "pause", job_id, "暂停")


@job_app.command("resume", help="恢复已暂停的任务。")
def job_resume(ctx: typer.Context, job_id: str = typer.Argument(..., help="任务 ID。")) -> None:
    _transition(ctx, "resume", job_id, "恢复")


@job_app.command("cancel", help="取消任务。")
def job_cancel(ctx: typer.Context, job_id: str = typer.Argument(..., help="任务 ID。")) -> None:
    _transition(ctx, "cancel", job_id, "取消")


@job_app.command("retry", help="重试失败的任务。")
def job_retry(ctx: typer.Context, job_id: str = typer.Argument(..., help="任务 ID。")) -> None:
    _transition(ctx, "retry", job_id, "重新入队")


@job_app.command("clone", help="复制任务配置（进度清零）。")
def job_clone(ctx: typer.Context, job_id: str = typer.Argument(..., help="任务 ID。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        job = state.harvester.jobs.clone_job(job_id, actor=state.actor)
    console.print(f"已复制为 `{job.name}`，ID：{job.id}。", style="green")


@job_app.command("delete", help="删除任务及其日志。")
def job_delete(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="任务 ID。"),
    yes: bool = typer.Option(False, "--yes", help="跳过删除确认提示。", is_flag=True),
) -> None:
    state = _get_state(ctx)
    if not yes and not typer.confirm(f"确认删除任务 `{job_id}`？", default=False):
        console.print("已取消删除操作。", style="yellow")
        raise typer.Exit(code=0)
    with _service_errors():
        state.harvester.jobs.delete_job(job_id, actor=state.actor)
    console.print(f"任务 `{job_id}` 已删除。", style="green")


@job_app.command("bulk", help="批量操作任务：start/pause/resume/cancel/retry/delete。")
def job_bulk(
    ctx: typer.Context,
    operation: str = typer.Argument(..., help="操作名称。"),
    job_ids: List[str] = typer.Argument(..., help="任务 ID 列表。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        results = state.harvester.jobs.bulk_operation(operation, job_ids, actor=state.actor)
    table = Table(title=f"批量 {operation} 结果", box=box.SIMPLE_HEAD)
    table.add_column("任务 ID", style="cyan")
    table.add_column("结果", style="green")
    table.add_column("说明", overflow="fold")
    for item in results:
        table.add_row(
            item["job_id"], "成功" if item["success"] else "失败", str(item.get("error") or item.get("status") or "")
        )
    console.print(table)


@job_app.command("run", help="在当前进程中驱动任务直到结束。")
def job_run(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="任务 ID。"),
    timeout: float = typer.Option(300.0, "--timeout", help="最长等待秒数。"),
    quiet: bool = typer.Option(False, "--quiet", help="只输出精简结果。", is_flag=True),
) -> None:
    state = _get_state(ctx)
    harvester = state.harvester
    with _service_errors():
        job = harvester.jobs.get_job(job_id)
        if job.status.value in ("pending", "paused"):
            harvester.jobs.start_job(job_id, actor=state.actor)
        if quiet:
            job = harvester.run_job(job_id, timeout=timeout)
        else:
            with console.status("任务运行中…") as status:
                job = harvester.run_job(
                    job_id,
                    timeout=timeout,
                    on_cycle=lambda current: status.update(
                        f"任务运行中… {current.progress.percentage:.0f}% · 已抓取 {current.progress.found}"
                    ),
                )
    harvester.shutdown()
    if quiet:
        console.print(
            f"运行结束：状态 {job.status.value}，抓取 {job.progress.found}，有效 {job.progress.validated}，"
            f"重复 {job.progress.duplicate}，失败 {job.progress.failed}"
        )
    else:
        console.print(_render_jobs_table([job], f"{job.name} 运行结果"))
        if job.last_error_reason:
            console.print(f"最近错误：{job.last_error_reason}", style="red")
    if job.status.value == "failed":
        raise typer.Exit(code=1)


@job_app.command("logs", help="查看任务抓取日志。")
def job_logs(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="任务 ID。"),
    level: Optional[str] = typer.Option(None, "--level", help="按级别过滤。"),
    limit: int = typer.Option(50, "--limit", help="显示条数。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        entries = state.harvester.jobs.get_job_logs(job_id, level=level, limit=limit)
    if not entries:
        console.print("暂无日志。", style="dim")
        return
    table = Table(title=f"任务日志 · {job_id}", box=box.SIMPLE_HEAD)
    table.add_column("时间", style="dim")
    table.add_column("级别", style="magenta")
    table.add_column("类型", style="cyan")
    table.add_column("内容", overflow="fold")
    for entry in entries:
        table.add_row(_fmt_time(entry.created_at), entry.level.value, entry.kind, entry.message)
    console.print(table)


@job_app.command("stats", help="任务统计。")
def job_stats(
    ctx: typer.Context,
    since: Optional[str] = typer.Option(None, "--since", help="起始时间（ISO8601）。"),
    until: Optional[str] = typer.Option(None, "--until", help="结束时间（ISO8601）。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        stats = state.harvester.jobs.get_statistics(
            _parse_datetime_option(since, "--since"), _parse_datetime_option(until, "--until")
        )
    _print_json(stats)


@job_app.command("schedule", help="查看已排定的任务。")
def job_schedule(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    scheduled = state.harvester.recurring.list_jobs()
    if not scheduled:
        console.print("当前没有排定的调度任务。", style="dim")
        return
    table = Table(title="调度队列", box=box.SIMPLE_HEAD)
    table.add_column("任务 ID", style="cyan", no_wrap=True)
    table.add_column("名称")
    table.add_column("下次执行", style="green")
    table.add_column("触发器", style="magenta", overflow="fold")
    for item in scheduled:
        table.add_row(item["id"], item["name"], _fmt_time(item["next_run_at"]), json.dumps(item["trigger"]))
    console.print(table)


# ----------------------------------------------------------------------
# queue
# ----------------------------------------------------------------------
@queue_app.command("status", help="查看所有队列的任务计数。")
def queue_status(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    statuses = state.harvester.queues.get_all_queue_statuses()
    table = Table(title="队列状态", box=box.SIMPLE_HEAD)
    table.add_column("队列", style="cyan")
    for column in ("waiting", "active", "delayed", "completed", "failed"):
        table.add_column(column, justify="right")
    table.add_column("暂停", style="yellow")
    for name, status in statuses.items():
        counts = status["counts"]
        table.add_row(
            name,
            *(str(counts.get(column, 0)) for column in ("waiting", "active", "delayed", "completed", "failed")),
            "是" if status["is_paused"] else "否",
        )
    console.print(table)


@queue_app.command("list", help="按状态列出队列中的任务。")
def queue_list(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="队列名称。"),
    state_name: str = typer.Option("waiting", "--state", help="waiting/active/delayed/completed/failed。"),
    offset: int = typer.Option(0, "--offset", help="偏移量。"),
    limit: int = typer.Option(50, "--limit", help="显示条数。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        result = state.harvester.queues.get_queue_jobs(name, state_name, offset, limit)
    table = Table(title=f"{name} · {state_name} · 共 {result['pagination']['total']} 条", box=box.SIMPLE_HEAD)
    table.add_column("任务 ID", style="cyan", no_wrap=True)
    table.add_column("作业", style="magenta")
    table.add_column("页码", justify="right")
    table.add_column("尝试", justify="right")
    table.add_column("原因", overflow="fold")
    for task in result["tasks"]:
        table.add_row(
            task["id"],
            task["job_id"],
            str(task["payload"].get("page", "-")),
            f"{task['attempt']}/{task['max_attempts']}",
            task["failed_reason"] or "",
        )
    console.print(table)


@queue_app.command("retry", help="重试单个失败任务；配合 --all 重试全部。")
def queue_retry(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="队列名称。"),
    task_id: Optional[str] = typer.Argument(None, help="任务 ID。"),
    all_failed: bool = typer.Option(False, "--all", help="重试全部失败任务。", is_flag=True),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        if all_failed:
            count = state.harvester.queues.retry_all_failed(name, actor=state.actor)
            console.print(f"已重新入队 {count} 个失败任务。", style="green")
            return
        if not task_id:
            raise BadParameter("请提供任务 ID 或使用 --all。")
        state.harvester.queues.retry_job(name, task_id, actor=state.actor)
    console.print(f"任务 `{task_id}` 已重新入队。", style="green")


@queue_app.command("remove", help="从队列移除任务。")
def queue_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="队列名称。"),
    task_id: str = typer.Argument(..., help="任务 ID。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        state.harvester.queues.remove_job(name, task_id, actor=state.actor)
    console.print(f"任务 `{task_id}` 已移除。", style="green")


@queue_app.command("clean", help="清理超过宽限期的任务。")
def queue_clean(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="队列名称。"),
    status: str = typer.Option("completed", "--status", help="completed/failed/waiting/delayed/all。"),
    grace_ms: int = typer.Option(86_400_000, "--grace-ms", help="宽限期（毫秒）。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        result = state.harvester.queues.clean_queue(name, status, grace_ms, actor=state.actor)
    console.print(f"已清理 {result['cleaned']} 个 {status} 任务。", style="green")


@queue_app.command("pause", help="暂停队列。")
def queue_pause(ctx: typer.Context, name: str = typer.Argument(..., help="队列名称。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        state.harvester.queues.pause_queue(name, actor=state.actor)
    console.print(f"队列 `{name}` 已暂停。", style="green")


@queue_app.command("resume", help="恢复队列。")
def queue_resume(ctx: typer.Context, name: str = typer.Argument(..., help="队列名称。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        state.harvester.queues.resume_queue(name, actor=state.actor)
    console.print(f"队列 `{name}` 已恢复。", style="green")


@queue_app.command("empty", help="清空队列中等待的任务。")
def queue_empty(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="队列名称。"),
    yes: bool = typer.Option(False, "--yes", help="跳过确认提示。", is_flag=True),
) -> None:
    state = _get_state(ctx)
    if not yes and not typer.confirm(f"确认清空队列 `{name}`？", default=False):
        console.print("已取消操作。", style="yellow")
        raise typer.Exit(code=0)
    with _service_errors():
        dropped = state.harvester.queues.empty_queue(name, actor=state.actor)
    console.print(f"已丢弃 {dropped} 个等待任务。", style="green")


@queue_app.command("metrics", help="队列吞吐与失败率。")
def queue_metrics(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="队列名称。"),
    since: Optional[str] = typer.Option(None, "--since", help="起始时间（ISO8601）。"),
    until: Optional[str] = typer.Option(None, "--until", help="结束时间（ISO8601）。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        metrics = state.harvester.queues.get_queue_metrics(
            name, _parse_datetime_option(since, "--since"), _parse_datetime_option(until, "--until")
        )
        reasons = state.harvester.queues.get_failed_job_reasons(name)
    _print_json({"metrics": metrics, "failed_reasons": reasons})


@queue_app.command("health", help="队列健康状况。")
def queue_health(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    health = state.harvester.queues.get_queue_health()
    styles = {"healthy": "green", "degraded": "yellow", "critical": "red"}
    console.print(f"整体状态：{health['overall']}", style=styles.get(health["overall"], "white"))
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("队列", style="cyan")
    table.add_column("状态")
    table.add_column("积压", justify="right")
    table.add_column("失败率", justify="right")
    for name, item in health["queues"].items():
        table.add_row(name, item["status"], str(item["backlog"]), f"{item['failed_ratio']}%")
    console.print(table)


# ----------------------------------------------------------------------
# data
# ----------------------------------------------------------------------
@data_app.command("validate", help="校验单份简历。")
def data_validate(ctx: typer.Context, record_id: str = typer.Argument(..., help="简历 ID。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        result = state.harvester.validation.validate_cv(record_id, actor=state.actor)
    _print_json(result.to_dict())


@data_app.command("bulk-validate", help="批量校验简历。")
def data_bulk_validate(
    ctx: typer.Context,
    status: Optional[List[str]] = typer.Option(None, "--status", help="按状态过滤，可重复。"),
    source: Optional[List[str]] = typer.Option(None, "--source", help="按数据源过滤，可重复。"),
    dry_run: bool = typer.Option(False, "--dry-run", help="只统计不写入。", is_flag=True),
    batch_size: int = typer.Option(100, "--batch-size", help="每批数量。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        summary = state.harvester.validation.bulk_validate(
            _record_filter(status, source, None), dry_run=dry_run, batch_size=batch_size, actor=state.actor
        )
    console.print(
        f"共 {summary['total']} 份：有效 {summary['valid']}，无效 {summary['invalid']}"
        + ("（预演，未写入）" if dry_run else ""),
        style="green",
    )


@data_app.command("clean", help="清洗单份简历（可重复执行）。")
def data_clean(ctx: typer.Context, record_id: str = typer.Argument(..., help="简历 ID。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        result = state.harvester.validation.clean_data(record_id, actor=state.actor)
    if not result["cleaned"]:
        console.print("数据已是规范格式，无需修改。", style="dim")
        return
    console.print("已清洗字段：" + ", ".join(change["field"] for change in result["changes"]), style="green")


@data_app.command("duplicates", help="查找重复简历。")
def data_duplicates(
    ctx: typer.Context,
    threshold: Optional[float] = typer.Option(None, "--threshold", help="相似度阈值（0-1）。"),
    mark: bool = typer.Option(False, "--mark", help="将结果标记为重复。", is_flag=True),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        result = state.harvester.validation.find_duplicates(
            {"threshold": threshold, "mark": mark, "actor": state.actor}
        )
    table = Table(title=f"重复候选 · 阈值 {result['threshold']}", box=box.SIMPLE_HEAD)
    table.add_column("主记录", style="cyan")
    table.add_column("重复记录", style="magenta")
    table.add_column("相似度", justify="right")
    table.add_column("匹配字段")
    for item in result["duplicates"]:
        table.add_row(
            item["primary_id"], item["duplicate_id"], f"{item['confidence']:.2f}", ", ".join(item["match_fields"])
        )
    console.print(table)
    if mark:
        console.print(f"已标记 {result['marked']} 条重复记录。", style="green")


@data_app.command("merge", help="将重复简历合并到主记录。")
def data_merge(
    ctx: typer.Context,
    primary_id: str = typer.Argument(..., help="主记录 ID。"),
    duplicate_ids: List[str] = typer.Argument(..., help="重复记录 ID 列表。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        result = state.harvester.validation.merge_duplicates(primary_id, duplicate_ids, actor=state.actor)
    console.print(
        f"已合并 {len(result['merged'])} 条记录到 `{primary_id}`，冲突 {len(result['conflicts'])} 处。",
        style="green",
    )


@data_app.command("quality-report", help="简历质量报告。")
def data_quality_report(
    ctx: typer.Context,
    status: Optional[List[str]] = typer.Option(None, "--status", help="按状态过滤，可重复。"),
    source: Optional[List[str]] = typer.Option(None, "--source", help="按数据源过滤，可重复。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        report = state.harvester.validation.generate_quality_report(_record_filter(status, source, None))
    _print_json(report)


@data_app.command("stats", help="校验统计。")
def data_stats(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    _print_json(state.harvester.validation.get_validation_statistics())


# ----------------------------------------------------------------------
# export
# ----------------------------------------------------------------------
@export_app.command("create", help="创建导出任务。")
def export_create(
    ctx: typer.Context,
    fmt: str = typer.Option("csv", "--format", help="csv/json/jsonl。"),
    status: Optional[List[str]] = typer.Option(None, "--status", help="按状态过滤，可重复。"),
    source: Optional[List[str]] = typer.Option(None, "--source", help="按数据源过滤，可重复。"),
    min_quality: Optional[float] = typer.Option(None, "--min-quality", help="最低质量分。"),
    background: bool = typer.Option(False, "--background", help="始终在后台执行。", is_flag=True),
) -> None:
    state = _get_state(ctx)
    harvester = state.harvester
    with _service_errors():
        export = harvester.exports.create_export(
            _record_filter(status, source, min_quality), fmt, actor=state.actor, background=background
        )
    if export.status.value == "processing":
        console.print(f"导出 `{export.id}` 正在后台处理，预计 {export.estimated_count} 行…", style="yellow")
        harvester.thread_pool.shutdown(wait=True)
        export = harvester.exports.get_export_status(export.id)
    console.print(_render_exports_table([export]))
    if export.status.value == "failed":
        console.print(f"导出失败：{export.error}", style="red")
        raise typer.Exit(code=1)


@export_app.command("status", help="查看导出状态。")
def export_status(ctx: typer.Context, export_id: str = typer.Argument(..., help="导出 ID。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        export = state.harvester.exports.get_export_status(export_id)
    console.print(_render_exports_table([export]))


@export_app.command("list", help="列出导出记录。")
def export_list(
    ctx: typer.Context,
    page: int = typer.Option(1, "--page", help="页码。"),
    limit: int = typer.Option(20, "--limit", help="每页数量。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        result = state.harvester.exports.list_exports(page, limit)
    if not result["exports"]:
        console.print("暂无导出记录。", style="dim")
        return
    console.print(_render_exports_table(result["exports"]))


@export_app.command("delete", help="删除导出文件与记录。")
def export_delete(ctx: typer.Context, export_id: str = typer.Argument(..., help="导出 ID。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        state.harvester.exports.delete_export(export_id, actor=state.actor)
    console.print(f"导出 `{export_id}` 已删除。", style="green")


@export_app.command("retry", help="重试失败的导出。")
def export_retry(ctx: typer.Context, export_id: str = typer.Argument(..., help="导出 ID。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        export = state.harvester.exports.retry_export(export_id, actor=state.actor)
    console.print(_render_exports_table([export]))


# ----------------------------------------------------------------------
# analytics
# ----------------------------------------------------------------------
def _range_options(since: Optional[str], until: Optional[str]) -> tuple[datetime | None, datetime | None]:
    return _parse_datetime_option(since, "--since"), _parse_datetime_option(until, "--until")


_SINCE = typer.Option(None, "--since", help="起始时间（ISO8601）。")
_UNTIL = typer.Option(None, "--until", help="结束时间（ISO8601）。")


@analytics_app.command("overview", help="仪表盘总览。")
def analytics_overview(ctx: typer.Context, since: Optional[str] = _SINCE, until: Optional[str] = _UNTIL) -> None:
    state = _get_state(ctx)
    with _service_errors():
        overview = state.harvester.analytics.get_dashboard_overview(*_range_options(since, until))
    table = Table(title="总览", box=box.SIMPLE_HEAD, show_header=False)
    table.add_column("指标", style="cyan")
    table.add_column("数值", style="green", justify="right")
    labels = {
        "total_jobs": "任务总数",
        "active_jobs": "进行中任务",
        "total_sources": "数据源总数",
        "active_sources": "启用数据源",
        "total_cvs": "简历总数",
        "cvs_today": "今日新增简历",
        "queued_tasks": "排队请求",
    }
    for key, label in labels.items():
        table.add_row(label, str(overview["summary"][key]))
    console.print(table)
    if overview["recent_jobs"]:
        console.print("最近任务：", style="cyan")
        for item in overview["recent_jobs"]:
            console.print(f"  {item['id']}  {item['name']}  {item['status']}  {item['progress']:.0f}%")


@analytics_app.command("jobs", help="任务统计。")
def analytics_jobs(ctx: typer.Context, since: Optional[str] = _SINCE, until: Optional[str] = _UNTIL) -> None:
    state = _get_state(ctx)
    with _service_errors():
        _print_json(state.harvester.analytics.get_job_statistics(*_range_options(since, until)))


@analytics_app.command("sources", help="数据源统计。")
def analytics_sources(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    _print_json(state.harvester.analytics.get_source_statistics())


@analytics_app.command("cvs", help="简历统计。")
def analytics_cvs(ctx: typer.Context, since: Optional[str] = _SINCE, until: Optional[str] = _UNTIL) -> None:
    state = _get_state(ctx)
    with _service_errors():
        _print_json(state.harvester.analytics.get_cv_statistics(*_range_options(since, until)))


@analytics_app.command("queues", help="队列概况。")
def analytics_queues(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    _print_json(state.harvester.analytics.get_queue_overview())


@analytics_app.command("performance", help="性能指标。")
def analytics_performance(ctx: typer.Context, since: Optional[str] = _SINCE, until: Optional[str] = _UNTIL) -> None:
    state = _get_state(ctx)
    with _service_errors():
        _print_json(state.harvester.analytics.get_performance_metrics(*_range_options(since, until)))


@analytics_app.command("quality", help="质量趋势。")
def analytics_quality(ctx: typer.Context, days: int = typer.Option(30, "--days", help="统计天数。")) -> None:
    state = _get_state(ctx)
    with _service_errors():
        trends = state.harvester.analytics.get_quality_trends(days)
    table = Table(title=f"近 {days} 天质量趋势", box=box.SIMPLE_HEAD)
    table.add_column("日期", style="cyan")
    table.add_column("数量", justify="right")
    table.add_column("平均质量", justify="right")
    table.add_column("平均完整度", justify="right")
    for item in trends:
        table.add_row(item["date"], str(item["count"]), f"{item['avg_quality']:.1f}", f"{item['avg_completeness']:.2f}")
    console.print(table)


@analytics_app.command("hourly", help="按小时分布。")
def analytics_hourly(ctx: typer.Context, since: Optional[str] = _SINCE, until: Optional[str] = _UNTIL) -> None:
    state = _get_state(ctx)
    with _service_errors():
        hours = state.harvester.analytics.get_hourly_distribution(*_range_options(since, until))
    table = Table(title="按小时分布 (UTC)", box=box.SIMPLE_HEAD)
    table.add_column("小时", style="cyan", justify="right")
    table.add_column("任务", justify="right")
    table.add_column("简历", justify="right")
    for item in hours:
        if item["jobs"]:
            table.add_row(f"{item['hour']:02d}", str(item["jobs"]), str(item["records"]))
    console.print(table)


@analytics_app.command("compare", help="对比多个数据源。")
def analytics_compare(
    ctx: typer.Context,
    source_ids: List[str] = typer.Argument(..., help="数据源 ID 列表。"),
    since: Optional[str] = _SINCE,
    until: Optional[str] = _UNTIL,
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        rows = state.harvester.analytics.get_source_comparison(source_ids, *_range_options(since, until))
    table = Table(title="数据源对比", box=box.SIMPLE_HEAD)
    table.add_column("数据源", style="cyan")
    table.add_column("累计简历", justify="right")
    table.add_column("期间请求", justify="right")
    table.add_column("期间成功率", justify="right")
    table.add_column("平均响应", justify="right")
    table.add_column("健康")
    for row in rows:
        table.add_row(
            row["name"],
            str(row["records_scraped"]),
            str(row["period_fetches"]),
            f"{row['period_success_rate']}%",
            f"{row['avg_response_ms']:.0f}ms",
            row["health"],
        )
    console.print(table)


@analytics_app.command("errors", help="错误分析。")
def analytics_errors(ctx: typer.Context, since: Optional[str] = _SINCE, until: Optional[str] = _UNTIL) -> None:
    state = _get_state(ctx)
    with _service_errors():
        _print_json(state.harvester.analytics.get_error_analysis(*_range_options(since, until)))


@analytics_app.command("report", help=f"生成自定义报表，可选指标：{', '.join(REPORT_METRICS)}。")
def analytics_report(
    ctx: typer.Context,
    metrics: List[str] = typer.Argument(..., help="指标列表。"),
    since: Optional[str] = _SINCE,
    until: Optional[str] = _UNTIL,
    output: Optional[Path] = typer.Option(None, "--output", help="写入 JSON 文件。"),
) -> None:
    state = _get_state(ctx)
    with _service_errors():
        report = state.harvester.analytics.generate_report(metrics, *_range_options(since, until))
    if output is None:
        _print_json(report)
        return
    output.write_text(json.dumps(report, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
    console.print(f"报表已写入 {output}。", style="green")


# ----------------------------------------------------------------------
# log / worker
# ----------------------------------------------------------------------
@log_app.command("list", help="列出可用的日志文件。")
def log_list() -> None:
    logs = list(available_source_logs())
    console.print("日志文件：", style="cyan")
    if not logs:
        console.print("暂未生成任何数据源日志。", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("文件名", style="green")
    for path in logs:
        table.add_row(path.name)
    console.print(table)


@log_app.command("show", help="查看日志的最近内容。")
def log_show(
    source: Optional[str] = typer.Option(None, "--source", help="数据源 ID（为空则展示全局日志）。"),
    tail: int = typer.Option(100, "--tail", help="显示最近 N 行内容。"),
    level: Optional[str] = typer.Option(None, "--level", help="仅显示指定级别（如 ERROR、WARNING）。"),
    audit: bool = typer.Option(False, "--audit", help="查看审计日志。", is_flag=True),
) -> None:
    if audit:
        path, title = log_dir() / "audit.log", "审计日志"
    elif source:
        path, title = log_dir() / "sources" / f"{source}.log", "数据源日志"
    else:
        path, title = log_dir() / "harvester.log", "全局日志"
    lines = tail_log(path, tail, level=level)
    if not lines:
        console.print("暂无日志信息，请稍后再试。", style="dim")
        return
    console.print(f"{title} · 最近 {len(lines)} 行", style="cyan")
    console.print("".join(lines))


@app.command("worker", help="启动调度与执行进程，Ctrl+C 退出。")
def worker(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    harvester = state.harvester
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    recovered = harvester.start()
    if recovered:
        console.print(f"已恢复 {len(recovered)} 个任务的待执行请求。", style="yellow")
    console.print("调度进程已启动，按 Ctrl+C 退出。", style="green")
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        harvester.shutdown()
        console.print("调度进程已停止。", style="dim")


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
