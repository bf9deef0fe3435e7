"""Repositories persisting domain entities as JSON payloads in SQLite."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Generic, Iterable, Iterator, Type, TypeVar

from pydantic import BaseModel

from ..errors import ConcurrencyError, NotFoundError
from ..models import (
    CVRecord,
    ExportJob,
    JobStatus,
    RecordFilter,
    ScrapeLogEntry,
    ScrapingJob,
)
from ..validation.similarity import normalize_email, normalize_phone
from .storage import SQLiteManager

ModelT = TypeVar("ModelT", bound=BaseModel)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dump(entity: BaseModel) -> str:
    return json.dumps(entity.model_dump(mode="json"), ensure_ascii=False)


class _Repository(Generic[ModelT]):
    table: str = ""
    kind: str = ""
    model: Type[ModelT]

    def __init__(self, manager: SQLiteManager, path: Path) -> None:
        self.manager = manager
        self.path = path

    def _load(self, row: Any) -> ModelT:
        return self.model.model_validate_json(row["payload"])

    def get(self, entity_id: str) -> ModelT | None:
        rows = self.manager.query(
            self.path, f"SELECT payload FROM {self.table} WHERE id = ?", (entity_id,)
        )
        return self._load(rows[0]) if rows else None

    def require(self, entity_id: str) -> ModelT:
        entity = self.get(entity_id)
        if entity is None:
            raise NotFoundError(self.kind, entity_id)
        return entity

    def delete(self, entity_id: str) -> bool:
        with self.manager.transaction(self.path) as conn:
            cursor = conn.execute(f"DELETE FROM {self.table} WHERE id = ?", (entity_id,))
            return cursor.rowcount > 0

    def count(self) -> int:
        rows = self.manager.query(self.path, f"SELECT COUNT(*) AS total FROM {self.table}")
        return int(rows[0]["total"])

    def _compare_and_swap(self, conn: Any, entity: Any, columns: dict[str, Any]) -> ModelT:
        current = entity.version
        updated = entity.model_copy(update={"version": current + 1})
        assignments = ", ".join(f"{name} = ?" for name in columns)
        params = [*columns.values(), current + 1, _dump(updated), entity.id, current]
        cursor = conn.execute(
            f"UPDATE {self.table} SET {assignments}, version = ?, payload = ? "
            "WHERE id = ? AND version = ?",
            params,
        )
        if cursor.rowcount == 0:
            exists = conn.execute(
                f"SELECT 1 FROM {self.table} WHERE id = ?", (entity.id,)
            ).fetchone()
            if exists is None:
                raise NotFoundError(self.kind, entity.id)
            raise ConcurrencyError(
                f"{self.kind} {entity.id} was modified concurrently (expected version {current})"
            )
        return updated


class JobRepository(_Repository[ScrapingJob]):
    table = "jobs"
    kind = "job"
    model = ScrapingJob

    def insert(self, job: ScrapingJob) -> ScrapingJob:
        with self.manager.transaction(self.path) as conn:
            conn.execute(
                "INSERT INTO jobs (id, status, source_id, created_at, updated_at, version, payload) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    job.id,
                    job.status.value,
                    job.source_id,
                    _ts(job.created_at),
                    _ts(job.updated_at),
                    job.version,
                    _dump(job),
                ),
            )
        return job

    def save(self, job: ScrapingJob) -> ScrapingJob:
        """Persist ``job`` if nobody changed it since it was read."""

        with self.manager.transaction(self.path) as conn:
            return self._compare_and_swap(
                conn,
                job,
                {
                    "status": job.status.value,
                    "source_id": job.source_id,
                    "updated_at": _ts(job.updated_at),
                },
            )

    def list(
        self,
        statuses: Iterable[JobStatus] | None = None,
        source_id: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
    ) -> list[ScrapingJob]:
        clauses: list[str] = []
        params: list[Any] = []
        status_values = [status.value for status in statuses or ()]
        if status_values:
            clauses.append(f"status IN ({', '.join('?' for _ in status_values)})")
            params.extend(status_values)
        if source_id:
            clauses.append("source_id = ?")
            params.append(source_id)
        if created_from:
            clauses.append("created_at >= ?")
            params.append(_ts(created_from))
        if created_to:
            clauses.append("created_at <= ?")
            params.append(_ts(created_to))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.manager.query(
            self.path, f"SELECT payload FROM jobs {where} ORDER BY created_at DESC, id", params
        )
        return [self._load(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        rows = self.manager.query(
            self.path, "SELECT status, COUNT(*) AS total FROM jobs GROUP BY status"
        )
        return {row["status"]: int(row["total"]) for row in rows}


class RecordRepository(_Repository[CVRecord]):
    table = "records"
    kind = "cv"
    model = CVRecord

    @staticmethod
    def _columns(record: CVRecord) -> dict[str, Any]:
        return {
            "status": record.status.value,
            "source_id": record.source_id,
            "job_id": record.job_id,
            "email_key": normalize_email(record.email),
            "phone_key": normalize_phone(record.phone),
            "content_hash": record.content_hash,
            "duplicate_of": record.duplicate_of,
            "quality_score": record.quality_score,
        }

    def insert_many(self, records: Iterable[CVRecord]) -> int:
        inserted = 0
        with self.manager.transaction(self.path) as conn:
            for record in records:
                columns = self._columns(record)
                conn.execute(
                    "INSERT INTO records (id, status, source_id, job_id, email_key, phone_key, "
                    "content_hash, duplicate_of, quality_score, created_at, version, payload) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.id,
                        *columns.values(),
                        _ts(record.created_at),
                        record.version,
                        _dump(record),
                    ),
                )
                inserted += 1
        return inserted

    def save(self, record: CVRecord) -> CVRecord:
        return self.save_all([record])[0]

    def save_all(self, records: list[CVRecord]) -> list[CVRecord]:
        """Persist every record or none of them."""

        with self.manager.transaction(self.path) as conn:
            return [
                self._compare_and_swap(conn, record, self._columns(record)) for record in records
            ]

    def find_matches(
        self,
        email_key: str | None = None,
        phone_key: str | None = None,
        content_hash: str | None = None,
        exclude_id: str | None = None,
        canonical_only: bool = True,
    ) -> list[CVRecord]:
        """Return records sharing a normalised email, phone or content hash."""

        keys: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("email_key", email_key),
            ("phone_key", phone_key),
            ("content_hash", content_hash),
        ):
            if value:
                keys.append(f"{column} = ?")
                params.append(value)
        if not keys:
            return []
        sql = f"SELECT payload FROM records WHERE ({' OR '.join(keys)})"
        if exclude_id:
            sql += " AND id != ?"
            params.append(exclude_id)
        if canonical_only:
            sql += " AND duplicate_of IS NULL"
        rows = self.manager.query(self.path, sql + " ORDER BY seq", params)
        return [self._load(row) for row in rows]

    def duplicates_of(self, record_id: str) -> list[CVRecord]:
        rows = self.manager.query(
            self.path, "SELECT payload FROM records WHERE duplicate_of = ? ORDER BY seq", (record_id,)
        )
        return [self._load(row) for row in rows]

    def iter_chunks(
        self, record_filter: RecordFilter | None = None, chunk_size: int = 500
    ) -> Iterator[list[CVRecord]]:
        """Yield matching records page by page using keyset pagination on ``seq``."""

        record_filter = record_filter or RecordFilter()
        base_clauses, base_params = self._sql_filter(record_filter)
        last_seq = 0
        while True:
            clauses = ["seq > ?", *base_clauses]
            rows = self.manager.query(
                self.path,
                f"SELECT seq, payload FROM records WHERE {' AND '.join(clauses)} "
                "ORDER BY seq LIMIT ?",
                [last_seq, *base_params, chunk_size],
            )
            if not rows:
                return
            last_seq = rows[-1]["seq"]
            chunk = [record for record in map(self._load, rows) if record_filter.matches(record)]
            if chunk:
                yield chunk
            if len(rows) < chunk_size:
                return

    def iter_matching(
        self, record_filter: RecordFilter | None = None, chunk_size: int = 500
    ) -> Iterator[CVRecord]:
        for chunk in self.iter_chunks(record_filter, chunk_size):
            yield from chunk

    def count_matching(self, record_filter: RecordFilter | None = None, chunk_size: int = 1000) -> int:
        return sum(len(chunk) for chunk in self.iter_chunks(record_filter, chunk_size))

    def count_by_status(self) -> dict[str, int]:
        rows = self.manager.query(
            self.path, "SELECT status, COUNT(*) AS total FROM records GROUP BY status"
        )
        return {row["status"]: int(row["total"]) for row in rows}

    @staticmethod
    def _sql_filter(record_filter: RecordFilter) -> tuple[list[str], list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if record_filter.status:
            clauses.append(f"status IN ({', '.join('?' for _ in record_filter.status)})")
            params.extend(status.value for status in record_filter.status)
        if record_filter.source_ids:
            clauses.append(f"source_id IN ({', '.join('?' for _ in record_filter.source_ids)})")
            params.extend(record_filter.source_ids)
        if record_filter.job_id:
            clauses.append("job_id = ?")
            params.append(record_filter.job_id)
        if record_filter.min_quality is not None:
            clauses.append("quality_score >= ?")
            params.append(record_filter.min_quality)
        if record_filter.max_quality is not None:
            clauses.append("quality_score <= ?")
            params.append(record_filter.max_quality)
        if not record_filter.include_duplicates:
            clauses.append("duplicate_of IS NULL")
        return clauses, params


class LogRepository:
    """Append-only store of scrape log entries."""

    def __init__(self, manager: SQLiteManager, path: Path) -> None:
        self.manager = manager
        self.path = path

    def append(self, entry: ScrapeLogEntry) -> ScrapeLogEntry:
        with self.manager.transaction(self.path) as conn:
            conn.execute(
                "INSERT INTO scrape_logs (id, job_id, source_id, level, kind, created_at, payload) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.id,
                    entry.job_id,
                    entry.source_id,
                    entry.level.value,
                    entry.kind,
                    _ts(entry.created_at),
                    _dump(entry),
                ),
            )
        return entry

    def for_job(
        self, job_id: str, level: str | None = None, offset: int = 0, limit: int = 50
    ) -> list[ScrapeLogEntry]:
        sql = "SELECT payload FROM scrape_logs WHERE job_id = ?"
        params: list[Any] = [job_id]
        if level:
            sql += " AND level = ?"
            params.append(level)
        sql += " ORDER BY seq DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        rows = self.manager.query(self.path, sql, params)
        return [ScrapeLogEntry.model_validate_json(row["payload"]) for row in rows]

    def between(
        self, start: datetime | None = None, end: datetime | None = None, kind: str | None = None
    ) -> list[ScrapeLogEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        if start:
            clauses.append("created_at >= ?")
            params.append(_ts(start))
        if end:
            clauses.append("created_at <= ?")
            params.append(_ts(end))
        if kind:
            clauses.append("kind = ?")
            params.append(kind)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.manager.query(
            self.path, f"SELECT payload FROM scrape_logs {where} ORDER BY seq", params
        )
        return [ScrapeLogEntry.model_validate_json(row["payload"]) for row in rows]

    def delete_for_job(self, job_id: str) -> int:
        with self.manager.transaction(self.path) as conn:
            return conn.execute("DELETE FROM scrape_logs WHERE job_id = ?", (job_id,)).rowcount


class ExportRepository(_Repository[ExportJob]):
    table = "exports"
    kind = "export"
    model = ExportJob

    def insert(self, export: ExportJob) -> ExportJob:
        with self.manager.transaction(self.path) as conn:
            conn.execute(
                "INSERT INTO exports (id, status, created_at, version, payload) VALUES (?, ?, ?, ?, ?)",
                (export.id, export.status.value, _ts(export.created_at), export.version, _dump(export)),
            )
        return export

    def save(self, export: ExportJob) -> ExportJob:
        with self.manager.transaction(self.path) as conn:
            return self._compare_and_swap(conn, export, {"status": export.status.value})

    def list(self, offset: int = 0, limit: int = 20) -> list[ExportJob]:
        rows = self.manager.query(
            self.path,
            "SELECT payload FROM exports ORDER BY created_at DESC, id LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [self._load(row) for row in rows]


__all__ = ["ExportRepository", "JobRepository", "LogRepository", "RecordRepository"]
