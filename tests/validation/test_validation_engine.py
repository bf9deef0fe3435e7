from __future__ import annotations

import pytest

from cv_harvester.errors import InvalidRequestError, NotFoundError
from cv_harvester.models import RecordFilter, RecordStatus


@pytest.fixture
def engine(harvester):
    return harvester.validation


@pytest.fixture
def store(harvester, record_factory):
    """Persist records built from keyword fields and return them."""

    def save(*specs: dict):
        records = [record_factory(**spec) for spec in specs]
        harvester.record_repository.insert_many(records)
        return records

    return save


def test_validate_cv_marks_valid_record(engine, store, audit, harvester) -> None:
    [record] = store({"full_name": "Ada Lovelace", "email": "ada@example.com", "phone": "+44 20 7946 0958"})

    result = engine.validate_cv(record.id, actor="reviewer")

    assert result.passed
    assert result.errors == []
    assert 0 < result.completeness < 1
    stored = harvester.record_repository.require(record.id)
    assert stored.status is RecordStatus.VALIDATED
    assert stored.last_validated_at is not None
    assert audit.events[-1].action == "cv.validate"
    assert audit.events[-1].actor == "reviewer"


def test_validate_cv_reports_errors_and_warnings(engine, store, harvester) -> None:
    [record] = store({"full_name": "A", "email": "not-an-email", "phone": "call me"})

    result = engine.validate_cv(record.id)

    assert not result.passed
    assert "Invalid email format" in result.errors
    assert any("too short" in error for error in result.errors)
    assert result.warnings == ["Invalid phone number format"]
    assert harvester.record_repository.require(record.id).status is RecordStatus.INVALID


def test_validate_unknown_record(engine) -> None:
    with pytest.raises(NotFoundError):
        engine.validate_cv("missing")


def test_clean_data_is_idempotent(engine, store, harvester) -> None:
    [record] = store(
        {
            "full_name": "  Ada   Lovelace ",
            "email": " ADA@Example.COM ",
            "phone": "+44 (20) 7946 - 0958",
            "skills": ["Python", "python ", " SQL"],
        }
    )

    first = engine.clean_data(record.id)
    second = engine.clean_data(record.id)

    assert first["cleaned"] is True
    assert {change["field"] for change in first["changes"]} == {"full_name", "email", "phone", "skills"}
    assert second == {"record_id": record.id, "cleaned": False, "changes": []}
    cleaned = harvester.record_repository.require(record.id)
    assert cleaned.full_name == "Ada Lovelace"
    assert cleaned.email == "ada@example.com"
    assert cleaned.phone == "+44(20)7946-0958"
    assert cleaned.skills == ["Python", "SQL"]
    assert cleaned.content_hash == cleaned.compute_hash()
    assert cleaned.processing_history[-1]["action"] == "data_cleaned"


def test_find_duplicates_pairs_records_once(engine, store, clock) -> None:
    [first] = store({"full_name": "Grace Hopper", "email": "grace@example.com", "phone": "+1 555 0100 200"})
    clock.advance(60)
    [second, _] = store(
        {"full_name": "Grace B. Hopper", "email": "GRACE@example.com", "phone": "+1-555-0100-200"},
        {"full_name": "Alan Turing", "email": "alan@example.com"},
    )

    report = engine.find_duplicates()

    assert report["groups_found"] == 1
    [pair] = report["duplicates"]
    assert pair["primary_id"] == first.id
    assert pair["duplicate_id"] == second.id
    assert pair["confidence"] == 1.0
    assert set(pair["match_fields"]) == {"email", "phone", "full_name"}
    assert all(item["primary_id"] != item["duplicate_id"] for item in report["duplicates"])


def test_find_duplicates_respects_threshold(engine, store) -> None:
    store(
        {"full_name": "Grace Hopper", "email": "grace@example.com"},
        {"full_name": "G. Hopper", "email": "grace@example.com", "phone": "+1 555 0100 999"},
    )
    assert engine.find_duplicates({"threshold": 0.99})["duplicates"] == []
    with pytest.raises(InvalidRequestError):
        engine.find_duplicates({"threshold": 1.5})


def test_merge_folds_duplicate_into_primary(engine, store, clock, harvester, audit) -> None:
    [primary] = store(
        {
            "full_name": "Grace Hopper",
            "email": "grace@example.com",
            "current_title": "Engineer",
            "skills": ["COBOL"],
            "source_id": "navy-archive",
        }
    )
    clock.advance(60)
    [duplicate] = store(
        {
            "full_name": "Grace Hopper",
            "email": "grace@example.com",
            "current_title": "Rear Admiral",
            "summary": "Compiler pioneer",
            "skills": ["cobol", "FLOW-MATIC"],
            "source_id": "talent-api",
        }
    )

    result = engine.merge_duplicates(primary.id, [duplicate.id], actor="reviewer")

    assert result["merged"] == [duplicate.id]
    [conflict] = result["conflicts"]
    assert conflict["field"] == "current_title"
    assert conflict["resolution"] == "kept_primary"

    merged = harvester.record_repository.require(primary.id)
    assert merged.current_title == "Engineer"
    assert merged.summary == "Compiler pioneer"
    assert merged.skills == ["COBOL", "FLOW-MATIC"]
    assert merged.additional_sources == ["talent-api"]
    assert merged.merge_log[-1]["duplicate_ids"] == [duplicate.id]

    folded = harvester.record_repository.require(duplicate.id)
    assert folded.status is RecordStatus.DUPLICATE
    assert folded.duplicate_of == primary.id
    assert folded.merged_at is not None
    assert "cv.merge" in audit.actions()

    assert engine.find_duplicates()["duplicates"] == []
    with pytest.raises(InvalidRequestError):
        engine.merge_duplicates(primary.id, [duplicate.id])


def test_merge_two_duplicates_leaves_one_canonical_record(engine, store, harvester) -> None:
    primary, first, second = store(
        {"full_name": "Ada Lovelace", "email": "ada@example.com", "source_id": "archive"},
        {"full_name": "Ada Lovelace", "email": "ada@example.com", "phone": "+44 20 7946 0958", "source_id": "talent-api"},
        {"full_name": "Ada Lovelace", "email": "ada@example.com", "summary": "Analytical engine", "source_id": "board"},
    )

    result = engine.merge_duplicates(primary.id, [first.id, second.id], actor="reviewer")

    assert result["merged"] == [first.id, second.id]
    canonical = list(harvester.record_repository.iter_matching(RecordFilter(include_duplicates=False)))
    assert [record.id for record in canonical] == [primary.id]
    assert harvester.record_repository.count_matching(RecordFilter(include_duplicates=False)) == 1
    merged = harvester.record_repository.require(primary.id)
    assert merged.phone == "+44 20 7946 0958"
    assert merged.summary == "Analytical engine"
    assert sorted(merged.additional_sources) == ["board", "talent-api"]
    assert merged.merge_log[-1]["duplicate_ids"] == [first.id, second.id]
    for duplicate_id in (first.id, second.id):
        folded = harvester.record_repository.require(duplicate_id)
        assert folded.duplicate_of == primary.id
        assert folded.status is RecordStatus.DUPLICATE
        assert folded.merged_at is not None


def test_merge_rejects_self_and_empty_groups(engine, store) -> None:
    [record] = store({"full_name": "Grace Hopper", "email": "grace@example.com"})
    with pytest.raises(InvalidRequestError):
        engine.merge_duplicates(record.id, [record.id])
    with pytest.raises(InvalidRequestError):
        engine.merge_duplicates(record.id, [])


def test_mark_as_duplicate_repoints_children(engine, store, harvester) -> None:
    root, middle, leaf = store(
        {"full_name": "Root", "email": "root@example.com"},
        {"full_name": "Middle", "email": "middle@example.com"},
        {"full_name": "Leaf", "email": "leaf@example.com"},
    )
    engine.mark_as_duplicate(leaf.id, middle.id)

    engine.mark_as_duplicate(middle.id, root.id, confidence=0.9, match_fields=["full_name"])

    assert harvester.record_repository.require(leaf.id).duplicate_of == root.id
    assert harvester.record_repository.require(middle.id).duplicate_confidence == 0.9
    with pytest.raises(InvalidRequestError):
        engine.mark_as_duplicate(root.id, leaf.id)


def test_bulk_validate_dry_run_changes_nothing(engine, store, harvester, audit) -> None:
    store(
        {"full_name": "Ada Lovelace", "email": "ada@example.com"},
        {"full_name": "Grace Hopper", "email": "grace@example.com"},
        {"full_name": "Nobody", "email": "broken"},
    )

    preview = engine.bulk_validate(dry_run=True)

    assert preview == {"total": 3, "valid": 2, "invalid": 1, "errors": [], "dry_run": True}
    assert harvester.record_repository.count_by_status() == {"new": 3}
    assert "cv.validate" not in audit.actions()

    applied = engine.bulk_validate(batch_size=2, actor="reviewer")

    assert applied["valid"] == 2
    assert harvester.record_repository.count_by_status() == {"validated": 2, "invalid": 1}
    assert audit.actions().count("cv.validate") == 3


def test_bulk_validate_rejects_bad_batch_size(engine) -> None:
    with pytest.raises(InvalidRequestError):
        engine.bulk_validate(batch_size=0)


def test_ingest_flags_repeats_inside_a_batch(engine, harvester, record_factory) -> None:
    records = [
        record_factory(full_name="Ada Lovelace", email="ada@example.com"),
        record_factory(full_name="Ada Lovelace", email="ADA@example.com "),
        record_factory(full_name="X", email="x@example.com"),
    ]
    harvester.record_repository.insert_many(records)

    stats = engine.ingest(records)

    assert stats == {"found": 3, "validated": 1, "duplicate": 1, "failed": 1}
    assert harvester.record_repository.require(records[1].id).duplicate_of == records[0].id


def test_quality_report_and_statistics(engine, store) -> None:
    store(
        {"full_name": "Ada Lovelace", "email": "ada@example.com", "skills": ["math"]},
        {"full_name": "Grace Hopper", "email": "grace@example.com"},
    )
    engine.bulk_validate()

    report = engine.generate_quality_report()
    stats = engine.get_validation_statistics()

    assert report["total"] == 2
    assert sum(report["distribution"].values()) == 2
    assert report["field_coverage"]["skills"] == {"count": 1, "percent": 50.0}
    assert stats["validated"] == 2
    assert stats["by_status"] == {"validated": 2}
