"""Export writer SPI and the CSV/JSON/JSONL implementations."""

from __future__ import annotations

import csv
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable

from ..models import CVRecord, ExportFormat

CSV_HEADER = (
    "ID",
    "Full Name",
    "Email",
    "Phone",
    "Headline",
    "Current Title",
    "Current Company",
    "Location",
    "Source",
    "Quality Score",
    "Status",
    "Skills",
    "Created At",
)
# Bookkeeping that never leaves the store.
_EXCLUDED_FIELDS = {"raw", "version"}


def csv_row(record: CVRecord) -> list[Any]:
    return [
        record.id,
        record.full_name or "",
        record.email or "",
        record.phone or "",
        record.headline or "",
        record.current_title or "",
        record.current_company or "",
        record.location or "",
        record.source_id or "",
        record.quality_score,
        record.status.value,
        "; ".join(record.skills),
        record.created_at.isoformat() if record.created_at else "",
    ]


def json_document(record: CVRecord) -> dict[str, Any]:
    return record.model_dump(mode="json", exclude=_EXCLUDED_FIELDS)


class BaseExportWriter(ABC):
    """Uniform writer contract; one instance owns one artifact file."""

    extension = "dat"

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self.path.open("w", encoding="utf-8", newline="")
        self.rows = 0
        self.open()

    def open(self) -> None:
        """Write any preamble."""

    @abstractmethod
    def write(self, record: CVRecord) -> None:
        """Persist a single record."""

    def write_many(self, records: Iterable[CVRecord]) -> int:
        written = 0
        for record in records:
            self.write(record)
            written += 1
        return written

    def finish(self) -> None:
        """Write any trailer."""

    def flush(self) -> None:
        self._file.flush()

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()

    def __enter__(self) -> "BaseExportWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                self.finish()
                self.flush()
        finally:
            self.close()


class CsvExportWriter(BaseExportWriter):
    extension = "csv"

    def open(self) -> None:
        self._writer = csv.writer(self._file)
        self._writer.writerow(CSV_HEADER)

    def write(self, record: CVRecord) -> None:
        self._writer.writerow(csv_row(record))
        self.rows += 1


class JsonArrayExportWriter(BaseExportWriter):
    """Stream a JSON array one element at a time."""

    extension = "json"

    def open(self) -> None:
        self._file.write("[")

    def write(self, record: CVRecord) -> None:
        if self.rows:
            self._file.write(",")
        self._file.write("\n")
        json.dump(json_document(record), self._file, ensure_ascii=False)
        self.rows += 1

    def finish(self) -> None:
        self._file.write("\n]\n" if self.rows else "]\n")


class JsonlExportWriter(BaseExportWriter):
    extension = "jsonl"

    def write(self, record: CVRecord) -> None:
        json.dump(json_document(record), self._file, ensure_ascii=False)
        self._file.write("\n")
        self.rows += 1


WRITERS: dict[ExportFormat, type[BaseExportWriter]] = {
    ExportFormat.CSV: CsvExportWriter,
    ExportFormat.JSON: JsonArrayExportWriter,
    ExportFormat.JSONL: JsonlExportWriter,
}


def writer_for(fmt: ExportFormat | str) -> type[BaseExportWriter]:
    return WRITERS[ExportFormat(fmt)]


__all__ = [
    "BaseExportWriter",
    "CSV_HEADER",
    "CsvExportWriter",
    "JsonArrayExportWriter",
    "JsonlExportWriter",
    "WRITERS",
    "csv_row",
    "json_document",
    "writer_for",
]
