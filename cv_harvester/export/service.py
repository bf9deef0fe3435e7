"""Export registry: build artifacts from filtered records, track and prune them."""

from __future__ import annotations

import math
from concurrent.futures import Executor, ThreadPoolExecutor
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..audit import SYSTEM_ACTOR, AuditEvent, AuditSink, LoggingAuditSink
from ..clock import Clock, SystemClock
from ..config import GlobalConfig
from ..errors import InvalidRequestError
from ..infra.repositories import ExportRepository, RecordRepository
from ..logging_conf import component_logger
from ..models import ExportFormat, ExportJob, ExportStatus, RecordFilter
from .writers import writer_for


def _describe(export: ExportJob) -> dict[str, Any]:
    return export.model_dump(mode="json", include={"id", "status", "format", "row_count", "artifact_ref"})


class ExportService:
    """Create exports synchronously for small selections, in the background otherwise.

    Records are streamed from the store in ``chunk_size`` pages so a large
    export never materialises the full selection in memory.
    """

    def __init__(
        self,
        exports: ExportRepository,
        records: RecordRepository,
        exports_dir: Path,
        global_config: GlobalConfig | None = None,
        clock: Clock | None = None,
        audit: AuditSink | None = None,
        executor: Executor | None = None,
    ) -> None:
        self.exports = exports
        self.records = records
        self.exports_dir = Path(exports_dir)
        self.settings = (global_config or GlobalConfig()).export
        self.clock = clock or SystemClock()
        self.audit = audit or LoggingAuditSink()
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.workers, thread_name_prefix="harvester-export"
        )
        self.logger = component_logger("export")

    def _emit(self, actor: str, action: str, export: ExportJob, before: Any = None, **details: Any) -> None:
        self.audit.emit(
            AuditEvent(
                actor=actor,
                action=action,
                entity_type="export",
                entity_id=export.id,
                before=before,
                after=_describe(export),
                details=details,
                at=self.clock.now(),
            )
        )

    @staticmethod
    def _parse(filter_spec: RecordFilter | dict[str, Any] | None, fmt: ExportFormat | str) -> tuple[RecordFilter, ExportFormat]:
        try:
            spec = filter_spec if isinstance(filter_spec, RecordFilter) else RecordFilter.model_validate(filter_spec or {})
        except ValidationError as exc:
            raise InvalidRequestError(f"Invalid export filter: {exc.errors()[0].get('msg')}") from exc
        try:
            parsed = ExportFormat(fmt)
        except ValueError:
            choices = ", ".join(item.value for item in ExportFormat)
            raise InvalidRequestError(f"Unsupported export format {fmt!r}; choose one of {choices}") from None
        return spec, parsed

    def artifact_path(self, export: ExportJob) -> Path:
        return self.exports_dir / f"cv-export-{export.id}.{writer_for(export.format).extension}"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def create_export(
        self,
        filter_spec: RecordFilter | dict[str, Any] | None = None,
        fmt: ExportFormat | str = ExportFormat.CSV,
        actor: str = SYSTEM_ACTOR,
        background: bool = False,
    ) -> ExportJob:
        spec, parsed = self._parse(filter_spec, fmt)
        estimated = self.records.count_matching(spec)
        now = self.clock.now()
        export = self.exports.insert(
            ExportJob(
                filter_spec=spec,
                format=parsed,
                estimated_count=estimated,
                created_by=actor,
                created_at=now,
                updated_at=now,
            )
        )
        self._emit(actor, "export.create", export, estimated_count=estimated)
        return self._dispatch(export, background)

    def _dispatch(self, export: ExportJob, background: bool) -> ExportJob:
        if background or export.estimated_count > self.settings.sync_threshold:
            self.logger.info("export_queued", export_id=export.id, estimated=export.estimated_count)
            self.executor.submit(self._run, export.id)
            return self.exports.require(export.id)
        return self._run(export.id)

    def _run(self, export_id: str) -> ExportJob:
        export = self.exports.require(export_id)
        path = self.artifact_path(export)
        total = max(export.estimated_count, 1)
        try:
            with writer_for(export.format)(path) as writer:
                for chunk in self.records.iter_chunks(export.filter_spec, self.settings.chunk_size):
                    writer.write_many(chunk)
                    export = self.exports.save(
                        export.model_copy(
                            update={
                                "row_count": writer.rows,
                                "progress": round(min(writer.rows / total, 0.99) * 100, 2),
                                "updated_at": self.clock.now(),
                            }
                        )
                    )
                rows = writer.rows
        except Exception as exc:
            self.logger.exception("export_failed", export_id=export_id, error=str(exc))
            path.unlink(missing_ok=True)
            current = self.exports.require(export_id)
            return self.exports.save(
                current.model_copy(
                    update={
                        "status": ExportStatus.FAILED,
                        "error": str(exc) or exc.__class__.__name__,
                        "retriable": True,
                        "updated_at": self.clock.now(),
                    }
                )
            )
        now = self.clock.now()
        export = self.exports.save(
            export.model_copy(
                update={
                    "status": ExportStatus.COMPLETED,
                    "artifact_ref": str(path),
                    "row_count": rows,
                    "progress": 100.0,
                    "error": None,
                    "retriable": False,
                    "updated_at": now,
                    "completed_at": now,
                }
            )
        )
        self.logger.info("export_completed", export_id=export.id, rows=rows, path=str(path))
        return export

    def get_export_status(self, export_id: str) -> ExportJob:
        return self.exports.require(export_id)

    def list_exports(self, page: int = 1, limit: int = 20) -> dict[str, Any]:
        if page < 1 or limit < 1:
            raise InvalidRequestError("page and limit must be positive")
        total = self.exports.count()
        return {
            "exports": self.exports.list(offset=(page - 1) * limit, limit=limit),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    def delete_export(self, export_id: str, actor: str = SYSTEM_ACTOR) -> None:
        export = self.exports.require(export_id)
        if export.status is ExportStatus.PROCESSING:
            raise InvalidRequestError(f"Export {export_id} is still processing")
        if export.artifact_ref:
            Path(export.artifact_ref).unlink(missing_ok=True)
        self.exports.delete(export_id)
        self._emit(actor, "export.delete", export, before=_describe(export))
        self.logger.info("export_deleted", export_id=export_id)

    def retry_export(self, export_id: str, actor: str = SYSTEM_ACTOR, background: bool = False) -> ExportJob:
        export = self.exports.require(export_id)
        if export.status is not ExportStatus.FAILED or not export.retriable:
            raise InvalidRequestError(f"Export {export_id} is {export.status.value} and cannot be retried")
        before = _describe(export)
        export = self.exports.save(
            export.model_copy(
                update={
                    "status": ExportStatus.PROCESSING,
                    "estimated_count": self.records.count_matching(export.filter_spec),
                    "row_count": 0,
                    "progress": 0.0,
                    "error": None,
                    "retriable": False,
                    "updated_at": self.clock.now(),
                }
            )
        )
        self._emit(actor, "export.retry", export, before=before)
        return self._dispatch(export, background)

    def shutdown(self, wait: bool = False) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=wait)


__all__ = ["ExportService"]
