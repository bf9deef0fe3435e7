"""Validation, cleaning and duplicate management over the record store."""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Any, Iterable

from pydantic import ValidationError

from ..audit import SYSTEM_ACTOR, AuditEvent, AuditSink, LoggingAuditSink
from ..clock import Clock, SystemClock
from ..config import DedupPolicy, GlobalConfig
from ..errors import ConcurrencyError, InvalidRequestError
from ..infra.repositories import RecordRepository
from ..logging_conf import component_logger
from ..models import CONTENT_FIELDS, CVRecord, RecordFilter, RecordStatus
from .rules import COMPLETENESS_WEIGHTS, ValidationResult, clean_fields, evaluate
from .similarity import normalize_email, normalize_phone, score_pair

LIST_FIELDS = ("experience", "education", "skills")
SCALAR_FIELDS = tuple(name for name in CONTENT_FIELDS if name not in LIST_FIELDS)
QUALITY_BUCKETS = ((0, 20), (21, 40), (41, 60), (61, 80), (81, 100))
MERGE_ATTEMPTS = 3


def _empty(value: Any) -> bool:
    if isinstance(value, (list, tuple, dict)):
        return not value
    return value is None or str(value).strip() == ""


def _bucket(score: float) -> str:
    value = round(score)
    for low, high in QUALITY_BUCKETS:
        if low <= value <= high:
            return f"{low}-{high}"
    return f"{QUALITY_BUCKETS[-1][0]}-{QUALITY_BUCKETS[-1][1]}"


def _coerce_filter(record_filter: RecordFilter | dict[str, Any] | None) -> RecordFilter:
    if record_filter is None:
        return RecordFilter()
    if isinstance(record_filter, RecordFilter):
        return record_filter
    try:
        return RecordFilter.model_validate(record_filter)
    except ValidationError as exc:
        raise InvalidRequestError(str(exc)) from exc


class ValidationEngine:
    """The only component that mutates ``CVRecord`` after it was scraped."""

    def __init__(
        self,
        records: RecordRepository,
        global_config: GlobalConfig,
        clock: Clock | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        self.records = records
        self.global_config = global_config
        self.clock = clock or SystemClock()
        self.audit = audit or LoggingAuditSink()
        self.logger = component_logger("validation")

    @property
    def policy(self) -> DedupPolicy:
        return self.global_config.dedup

    def _emit(
        self,
        actor: str,
        action: str,
        record_id: str,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
        **details: Any,
    ) -> None:
        self.audit.emit(
            AuditEvent(
                actor=actor,
                action=action,
                entity_type="cv",
                entity_id=record_id,
                before=before,
                after=after,
                details=details,
                at=self.clock.now(),
            )
        )

    @staticmethod
    def _state(record: CVRecord) -> dict[str, Any]:
        return {
            "status": record.status.value,
            "quality_score": record.quality_score,
            "duplicate_of": record.duplicate_of,
        }

    def _apply_result(self, record: CVRecord, result: ValidationResult, now: datetime) -> CVRecord:
        record.completeness = result.completeness
        record.quality_score = result.quality_score
        record.validation_errors = list(result.errors)
        record.validation_warnings = list(result.warnings)
        record.last_validated_at = now
        record.updated_at = now
        if record.status is not RecordStatus.DUPLICATE:
            record.status = RecordStatus.VALIDATED if result.passed else RecordStatus.INVALID
        return record

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate_cv(self, record_id: str, actor: str = SYSTEM_ACTOR) -> ValidationResult:
        record = self.records.require(record_id)
        before = self._state(record)
        now = self.clock.now()
        result = evaluate(record, now)
        saved = self.records.save(self._apply_result(record, result, now))
        self._emit(actor, "cv.validate", record_id, before, self._state(saved), passed=result.passed)
        return result

    def bulk_validate(
        self,
        record_filter: RecordFilter | dict[str, Any] | None = None,
        dry_run: bool = False,
        batch_size: int = 100,
        actor: str = SYSTEM_ACTOR,
    ) -> dict[str, Any]:
        """Validate every matching record; ``dry_run`` reports without persisting."""

        if batch_size < 1:
            raise InvalidRequestError("batch_size must be >= 1")
        selector = _coerce_filter(record_filter)
        summary: dict[str, Any] = {"total": 0, "valid": 0, "invalid": 0, "errors": [], "dry_run": dry_run}
        for chunk in self.records.iter_chunks(selector, batch_size):
            now = self.clock.now()
            pending: list[tuple[CVRecord, dict[str, Any]]] = []
            for record in chunk:
                result = evaluate(record, now)
                summary["total"] += 1
                summary["valid" if result.passed else "invalid"] += 1
                if not dry_run:
                    before = self._state(record)
                    pending.append((self._apply_result(record, result, now), before))
            if pending:
                self._save_batch(pending, summary["errors"], actor)
        self.logger.info(
            "bulk_validate_finished",
            total=summary["total"],
            valid=summary["valid"],
            invalid=summary["invalid"],
            dry_run=dry_run,
        )
        return summary

    def _save_batch(
        self, pending: list[tuple[CVRecord, dict[str, Any]]], errors: list[dict[str, Any]], actor: str
    ) -> None:
        try:
            saved = self.records.save_all([record for record, _ in pending])
        except ConcurrencyError:
            saved = []
            for record, _ in pending:
                try:
                    saved.append(self.records.save(record))
                except ConcurrencyError as exc:
                    errors.append({"record_id": record.id, "error": str(exc)})
        befores = {record.id: before for record, before in pending}
        for record in saved:
            self._emit(actor, "cv.validate", record.id, befores[record.id], self._state(record))

    def clean_data(self, record_id: str, actor: str = SYSTEM_ACTOR) -> dict[str, Any]:
        """Normalise encoding, whitespace, email case, phone spacing and skills.

        Running it twice changes nothing the second time.
        """

        record = self.records.require(record_id)
        updates = clean_fields(record)
        changes = [
            {"field": name, "old": getattr(record, name), "new": value} for name, value in updates.items()
        ]
        if not updates:
            return {"record_id": record_id, "cleaned": False, "changes": []}
        now = self.clock.now()
        cleaned = record.model_copy(update={**updates, "updated_at": now})
        cleaned.content_hash = cleaned.compute_hash()
        cleaned.processing_history = [
            *record.processing_history,
            {"action": "data_cleaned", "at": now.isoformat(), "fields": sorted(updates)},
        ]
        self.records.save(cleaned)
        self._emit(actor, "cv.clean", record_id, None, None, fields=sorted(updates))
        return {"record_id": record_id, "cleaned": True, "changes": changes}

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------
    def _exact_match(
        self, record: CVRecord, batch_ids: set[str], canonical_in_batch: set[str]
    ) -> CVRecord | None:
        candidates = self.records.find_matches(
            email_key=normalize_email(record.email),
            phone_key=normalize_phone(record.phone) if self.policy.block_on_phone else None,
            content_hash=record.content_hash,
            exclude_id=record.id,
        )
        for candidate in candidates:
            if candidate.id in batch_ids:
                if candidate.id in canonical_in_batch:
                    return candidate
                continue
            # Records still ``new`` belong to a batch that has not been ingested yet.
            if candidate.status is not RecordStatus.NEW:
                return candidate
        return None

    def ingest(self, records: Iterable[CVRecord]) -> dict[str, int]:
        """Clean, validate and exact-dedupe freshly persisted records."""

        batch = list(records)
        batch_ids = {record.id for record in batch}
        canonical_in_batch: set[str] = set()
        stats = {"found": len(batch), "validated": 0, "duplicate": 0, "failed": 0}
        now = self.clock.now()
        for record in batch:
            updates = clean_fields(record)
            for name, value in updates.items():
                setattr(record, name, value)
            record.content_hash = record.compute_hash()
            match = self._exact_match(record, batch_ids, canonical_in_batch)
            if match is not None:
                score = score_pair(record, match)
                record.status = RecordStatus.DUPLICATE
                record.duplicate_of = match.id
                record.duplicate_confidence = 1.0
                record.processing_history.append(
                    {
                        "action": "marked_duplicate",
                        "duplicate_of": match.id,
                        "match_fields": score.match_fields or ["content_hash"],
                        "at": now.isoformat(),
                    }
                )
            else:
                canonical_in_batch.add(record.id)
            result = evaluate(record, now)
            self._apply_result(record, result, now)
            if record.status is RecordStatus.DUPLICATE:
                stats["duplicate"] += 1
            elif result.passed:
                stats["validated"] += 1
            else:
                stats["failed"] += 1
        if batch:
            self.records.save_all(batch)
        return stats

    # ------------------------------------------------------------------
    # Duplicates
    # ------------------------------------------------------------------
    def find_duplicates(self, spec: dict[str, Any] | None = None) -> dict[str, Any]:
        """Block candidates by email/phone, score them and report pairs above the threshold.

        ``spec`` keys: ``filter`` (record filter), ``threshold``, ``mark``
        (persist the findings through :meth:`mark_as_duplicate`).
        """

        spec = dict(spec or {})
        threshold = float(spec.get("threshold") or self.policy.similarity_threshold)
        if not 0 < threshold <= 1:
            raise InvalidRequestError("threshold must be within (0, 1]")
        selector = _coerce_filter(spec.get("filter")).model_copy(update={"include_duplicates": False})
        seen: set[frozenset[str]] = set()
        pairs: list[dict[str, Any]] = []
        for record in self.records.iter_matching(selector, self.global_config.export.chunk_size):
            candidates = self.records.find_matches(
                email_key=normalize_email(record.email),
                phone_key=normalize_phone(record.phone) if self.policy.block_on_phone else None,
                exclude_id=record.id,
            )
            for candidate in candidates:
                if candidate.id == record.id:
                    continue
                key = frozenset((record.id, candidate.id))
                if key in seen:
                    continue
                seen.add(key)
                score = score_pair(record, candidate)
                if score.confidence < threshold:
                    continue
                primary, duplicate = sorted(
                    (record, candidate), key=lambda item: (item.created_at or self.clock.now(), item.id)
                )
                pairs.append(
                    {
                        "primary_id": primary.id,
                        "duplicate_id": duplicate.id,
                        "confidence": score.confidence,
                        "match_fields": score.match_fields,
                        "components": score.components,
                    }
                )
        groups = {pair["primary_id"] for pair in pairs}
        marked = 0
        if spec.get("mark"):
            actor = spec.get("actor", SYSTEM_ACTOR)
            handled: set[str] = set()
            for pair in pairs:
                if pair["duplicate_id"] in handled or pair["primary_id"] in handled:
                    continue
                self.mark_as_duplicate(
                    pair["duplicate_id"], pair["primary_id"], pair["confidence"], pair["match_fields"], actor
                )
                handled.add(pair["duplicate_id"])
                marked += 1
        self.logger.info("duplicates_found", pairs=len(pairs), groups=len(groups), marked=marked)
        return {"threshold": threshold, "groups_found": len(groups), "duplicates": pairs, "marked": marked}

    def _resolve_target(self, record_id: str, target_id: str) -> tuple[CVRecord, CVRecord]:
        if record_id == target_id:
            raise InvalidRequestError("A record cannot be a duplicate of itself")
        record = self.records.require(record_id)
        target = self.records.require(target_id)
        if not target.is_canonical:
            raise InvalidRequestError(f"Record {target_id} is itself a duplicate of {target.duplicate_of}")
        if record.merged_at is not None:
            raise InvalidRequestError(f"Record {record_id} was already merged into {record.duplicate_of}")
        if record.duplicate_of not in (None, target_id):
            raise InvalidRequestError(f"Record {record_id} is already a duplicate of {record.duplicate_of}")
        return record, target

    def _repoint(self, old_primary: CVRecord, new_primary_id: str, now: datetime) -> list[CVRecord]:
        moved = []
        for child in self.records.duplicates_of(old_primary.id):
            child.duplicate_of = new_primary_id
            child.updated_at = now
            child.processing_history.append(
                {
                    "action": "duplicate_repointed",
                    "from": old_primary.id,
                    "to": new_primary_id,
                    "at": now.isoformat(),
                }
            )
            moved.append(child)
        return moved

    def mark_as_duplicate(
        self,
        record_id: str,
        duplicate_of_id: str,
        confidence: float = 1.0,
        match_fields: list[str] | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> CVRecord:
        record, _ = self._resolve_target(record_id, duplicate_of_id)
        before = self._state(record)
        now = self.clock.now()
        record.status = RecordStatus.DUPLICATE
        record.duplicate_of = duplicate_of_id
        record.duplicate_confidence = confidence
        record.updated_at = now
        record.processing_history.append(
            {
                "action": "marked_duplicate",
                "duplicate_of": duplicate_of_id,
                "match_fields": list(match_fields or []),
                "at": now.isoformat(),
            }
        )
        moved = self._repoint(record, duplicate_of_id, now)
        saved = self.records.save_all([record, *moved])
        self._emit(
            actor,
            "cv.mark_duplicate",
            record_id,
            before,
            self._state(saved[0]),
            confidence=confidence,
            match_fields=list(match_fields or []),
        )
        for child in saved[1:]:
            self._emit(actor, "cv.duplicate_repointed", child.id, None, self._state(child), to=duplicate_of_id)
        return saved[0]

    def _prefer_duplicate(self, primary: CVRecord, duplicate: CVRecord) -> bool:
        policy = self.policy.conflict_policy
        if policy == "most_recent":
            primary_at = primary.updated_at or primary.created_at
            duplicate_at = duplicate.updated_at or duplicate.created_at
            return bool(duplicate_at and (primary_at is None or duplicate_at > primary_at))
        if policy == "highest_quality":
            return duplicate.quality_score > primary.quality_score
        return False

    def _merge_into(self, primary: CVRecord, duplicate: CVRecord) -> list[dict[str, Any]]:
        conflicts: list[dict[str, Any]] = []
        for name in SCALAR_FIELDS:
            ours, theirs = getattr(primary, name), getattr(duplicate, name)
            if _empty(theirs):
                continue
            if _empty(ours):
                setattr(primary, name, theirs)
                continue
            if str(ours).strip().casefold() == str(theirs).strip().casefold():
                continue
            take = self._prefer_duplicate(primary, duplicate)
            conflicts.append(
                {
                    "field": name,
                    "primary_value": ours,
                    "duplicate_value": theirs,
                    "duplicate_id": duplicate.id,
                    "policy": self.policy.conflict_policy,
                    "resolution": "took_duplicate" if take else "kept_primary",
                }
            )
            if take:
                setattr(primary, name, theirs)
        known_skills = {skill.casefold() for skill in primary.skills}
        for skill in duplicate.skills:
            if skill.casefold() not in known_skills:
                primary.skills.append(skill)
                known_skills.add(skill.casefold())
        for name in ("experience", "education"):
            entries = getattr(primary, name)
            for entry in getattr(duplicate, name):
                if entry not in entries:
                    entries.append(entry)
        if duplicate.source_id and duplicate.source_id != primary.source_id:
            if duplicate.source_id not in primary.additional_sources:
                primary.additional_sources.append(duplicate.source_id)
        return conflicts

    def merge_duplicates(
        self, primary_id: str, duplicate_ids: list[str], actor: str = SYSTEM_ACTOR
    ) -> dict[str, Any]:
        """Fold ``duplicate_ids`` into the primary record in one transaction.

        Either every record of the group is written or none is. Conflicting
        values are resolved by the configured policy and logged on the primary.
        """

        if not duplicate_ids:
            raise InvalidRequestError("At least one duplicate id is required")
        if len(set(duplicate_ids)) != len(duplicate_ids):
            raise InvalidRequestError("Duplicate ids must be unique")
        if primary_id in duplicate_ids:
            raise InvalidRequestError("A record cannot be a duplicate of itself")
        for attempt in range(1, MERGE_ATTEMPTS + 1):
            try:
                return self._merge_once(primary_id, duplicate_ids, actor)
            except ConcurrencyError:
                if attempt == MERGE_ATTEMPTS:
                    raise
                self.logger.debug("merge_cas_conflict", primary_id=primary_id, attempt=attempt)
        raise ConcurrencyError(f"Merge into {primary_id} did not complete")

    def _merge_once(self, primary_id: str, duplicate_ids: list[str], actor: str) -> dict[str, Any]:
        pairs = [self._resolve_target(duplicate_id, primary_id) for duplicate_id in duplicate_ids]
        primary = pairs[0][1]
        before = self._state(primary)
        now = self.clock.now()
        conflicts: list[dict[str, Any]] = []
        duplicates: list[CVRecord] = []
        moved: list[CVRecord] = []
        for duplicate, _ in pairs:
            conflicts.extend(self._merge_into(primary, duplicate))
            score = score_pair(duplicate, primary)
            duplicate.status = RecordStatus.DUPLICATE
            duplicate.duplicate_of = primary.id
            duplicate.duplicate_confidence = duplicate.duplicate_confidence or score.confidence
            duplicate.merged_at = now
            duplicate.updated_at = now
            duplicate.merge_log.append(
                {"action": "merged_into", "primary_id": primary.id, "actor": actor, "at": now.isoformat()}
            )
            duplicates.append(duplicate)
            moved.extend(child for child in self._repoint(duplicate, primary.id, now) if child.id != primary.id)
        primary.merge_log.append(
            {
                "action": "merge",
                "duplicate_ids": list(duplicate_ids),
                "actor": actor,
                "policy": self.policy.conflict_policy,
                "conflicts": conflicts,
                "at": now.isoformat(),
            }
        )
        primary.content_hash = primary.compute_hash()
        primary.updated_at = now
        result = evaluate(primary, now)
        self._apply_result(primary, result, now)
        saved = self.records.save_all([primary, *duplicates, *moved])
        self._emit(
            actor,
            "cv.merge",
            primary.id,
            before,
            self._state(saved[0]),
            duplicate_ids=list(duplicate_ids),
            conflicts=len(conflicts),
        )
        for record in saved[1:]:
            self._emit(actor, "cv.merged_into", record.id, None, self._state(record), primary_id=primary.id)
        self.logger.info(
            "duplicates_merged", primary_id=primary.id, merged=len(duplicates), conflicts=len(conflicts)
        )
        return {
            "primary_id": primary.id,
            "merged": [record.id for record in duplicates],
            "repointed": [record.id for record in moved],
            "conflicts": conflicts,
        }

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def generate_quality_report(
        self, record_filter: RecordFilter | dict[str, Any] | None = None
    ) -> dict[str, Any]:
        selector = _coerce_filter(record_filter)
        total = 0
        quality_sum = 0.0
        completeness_sum = 0.0
        distribution = {f"{low}-{high}": 0 for low, high in QUALITY_BUCKETS}
        coverage: Counter[str] = Counter()
        by_status: Counter[str] = Counter()
        for record in self.records.iter_matching(selector, self.global_config.export.chunk_size):
            total += 1
            quality_sum += record.quality_score
            completeness_sum += record.completeness
            distribution[_bucket(record.quality_score)] += 1
            by_status[record.status.value] += 1
            for name in COMPLETENESS_WEIGHTS:
                if not _empty(getattr(record, name)):
                    coverage[name] += 1
        return {
            "total": total,
            "avg_quality": round(quality_sum / total, 2) if total else 0.0,
            "avg_completeness": round(completeness_sum / total, 4) if total else 0.0,
            "distribution": distribution,
            "by_status": dict(by_status),
            "field_coverage": {
                name: {"count": coverage[name], "percent": round(coverage[name] / total * 100, 2) if total else 0.0}
                for name in COMPLETENESS_WEIGHTS
            },
        }

    def get_validation_statistics(self) -> dict[str, Any]:
        total = validated = with_errors = with_warnings = 0
        for record in self.records.iter_matching(None, self.global_config.export.chunk_size):
            total += 1
            if record.last_validated_at is not None:
                validated += 1
            if record.validation_errors:
                with_errors += 1
            if record.validation_warnings:
                with_warnings += 1
        return {
            "total": total,
            "validated": validated,
            "with_errors": with_errors,
            "with_warnings": with_warnings,
            "by_status": self.records.count_by_status(),
        }


__all__ = ["ValidationEngine"]
