from __future__ import annotations

import csv
import json
from pathlib import Path

import pytest

from cv_harvester.errors import InvalidRequestError, NotFoundError
from cv_harvester.export.writers import CSV_HEADER, CsvExportWriter
from cv_harvester.models import ExportStatus, RecordFilter, RecordStatus


@pytest.fixture
def exports(harvester):
    return harvester.exports


@pytest.fixture
def seeded(harvester, record_factory):
    records = [
        record_factory(full_name="Ada Lovelace", email="ada@example.com", skills=["math", "python"]),
        record_factory(full_name="Grace Hopper", email="grace@example.com", status=RecordStatus.VALIDATED),
        record_factory(full_name="Alan Turing", email="alan@example.com", status=RecordStatus.VALIDATED),
    ]
    harvester.record_repository.insert_many(records)
    return records


def test_small_csv_export_completes_synchronously(exports, seeded, audit) -> None:
    export = exports.create_export(fmt="csv", actor="analyst")

    assert export.status is ExportStatus.COMPLETED
    assert export.row_count == 3
    assert export.progress == 100.0
    with Path(export.artifact_ref).open(encoding="utf-8", newline="") as handle:
        rows = list(csv.reader(handle))
    assert tuple(rows[0]) == CSV_HEADER
    assert len(rows) == 4
    assert rows[1][1] == "Ada Lovelace"
    assert rows[1][11] == "math; python"
    assert audit.actions()[-1] == "export.create"


def test_filter_limits_exported_rows(exports, seeded) -> None:
    export = exports.create_export({"status": ["validated"]}, fmt="jsonl")

    lines = Path(export.artifact_ref).read_text(encoding="utf-8").splitlines()

    assert export.row_count == 2
    documents = [json.loads(line) for line in lines]
    assert {doc["full_name"] for doc in documents} == {"Grace Hopper", "Alan Turing"}
    assert all("raw" not in doc for doc in documents)


def test_json_export_is_a_single_array(exports, seeded) -> None:
    export = exports.create_export(fmt="json")

    documents = json.loads(Path(export.artifact_ref).read_text(encoding="utf-8"))

    assert [doc["id"] for doc in documents] == [record.id for record in seeded]
    assert export.artifact_ref.endswith(".json")


def test_empty_selection_still_writes_artifact(exports) -> None:
    export = exports.create_export({"job_id": "nothing"}, fmt="json")

    assert export.status is ExportStatus.COMPLETED
    assert export.row_count == 0
    assert json.loads(Path(export.artifact_ref).read_text(encoding="utf-8")) == []


def test_large_export_counts_every_matching_row(exports, harvester, record_factory) -> None:
    total = 50_000
    harvester.record_repository.insert_many(
        record_factory(full_name=f"Candidate {index}", email=f"c{index}@example.com") for index in range(total)
    )

    export = exports.create_export(fmt="csv")

    assert export.estimated_count == total
    assert export.status is ExportStatus.COMPLETED
    assert export.row_count == harvester.record_repository.count_matching(RecordFilter()) == total
    with Path(export.artifact_ref).open(encoding="utf-8", newline="") as handle:
        assert sum(1 for _ in csv.reader(handle)) == total + 1


def test_failed_export_removes_partial_file_and_can_be_retried(exports, seeded, monkeypatch) -> None:
    def broken_write(self, record):
        raise OSError("disk full")

    monkeypatch.setattr(CsvExportWriter, "write", broken_write)

    failed = exports.create_export(fmt="csv")

    assert failed.status is ExportStatus.FAILED
    assert failed.retriable is True
    assert failed.error == "disk full"
    assert failed.artifact_ref is None
    assert not exports.artifact_path(failed).exists()

    monkeypatch.undo()
    retried = exports.retry_export(failed.id, actor="analyst")

    assert retried.status is ExportStatus.COMPLETED
    assert retried.row_count == 3
    assert retried.error is None
    with pytest.raises(InvalidRequestError):
        exports.retry_export(failed.id)


def test_delete_export_removes_artifact(exports, seeded, audit) -> None:
    export = exports.create_export(fmt="csv")
    path = Path(export.artifact_ref)

    exports.delete_export(export.id, actor="analyst")

    assert not path.exists()
    assert audit.actions()[-1] == "export.delete"
    with pytest.raises(NotFoundError):
        exports.get_export_status(export.id)


def test_processing_export_cannot_be_deleted(exports, harvester) -> None:
    export = exports.create_export(fmt="csv")
    harvester.export_repository.save(export.model_copy(update={"status": ExportStatus.PROCESSING}))

    with pytest.raises(InvalidRequestError):
        exports.delete_export(export.id)


def test_invalid_requests_are_rejected(exports) -> None:
    with pytest.raises(InvalidRequestError):
        exports.create_export(fmt="xlsx")
    with pytest.raises(InvalidRequestError):
        exports.create_export({"min_quality": "high"})
    with pytest.raises(InvalidRequestError):
        exports.list_exports(page=0)


def test_list_exports_paginates(exports, seeded) -> None:
    for fmt in ("csv", "json", "jsonl"):
        exports.create_export(fmt=fmt)

    listing = exports.list_exports(page=2, limit=2)

    assert listing["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
    assert len(listing["exports"]) == 1
