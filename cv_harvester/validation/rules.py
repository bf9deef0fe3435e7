"""Field rules, completeness weighting and the quality heuristic."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..models import CVRecord

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^[\d\s\-\+\(\)]+$")
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 100

# Weight of each field in the completeness score.
COMPLETENESS_WEIGHTS: dict[str, int] = {
    "full_name": 10,
    "email": 15,
    "phone": 10,
    "headline": 10,
    "summary": 10,
    "experience": 15,
    "education": 10,
    "skills": 10,
    "current_title": 5,
    "current_company": 5,
}
FRESHNESS_DECAY_PER_DAY = 2

_WHITESPACE_RE = re.compile(r"\s+")
_PHONE_SPACING_RE = re.compile(r"\s*([\-\(\)])\s*")
TEXT_FIELDS = ("full_name", "headline", "summary", "current_title", "current_company", "location")


@dataclass(slots=True)
class FieldCheck:
    field: str
    passed: bool
    message: str
    severity: str = "info"


@dataclass(slots=True)
class ValidationResult:
    record_id: str
    passed: bool = True
    completeness: float = 0.0
    quality_score: float = 0.0
    checks: list[FieldCheck] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "passed": self.passed,
            "completeness": self.completeness,
            "quality_score": self.quality_score,
            "checks": [
                {"field": c.field, "passed": c.passed, "message": c.message, "severity": c.severity}
                for c in self.checks
            ],
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


def _filled(value: Any) -> bool:
    if isinstance(value, (list, tuple, dict)):
        return bool(value)
    return value is not None and str(value).strip() != ""


def check_email(value: str | None) -> FieldCheck:
    if not _filled(value):
        return FieldCheck("email", False, "email is required", "error")
    if not EMAIL_PATTERN.match(value.strip()):
        return FieldCheck("email", False, "Invalid email format", "error")
    return FieldCheck("email", True, "Valid")


def check_phone(value: str | None) -> FieldCheck:
    if not _filled(value):
        return FieldCheck("phone", True, "Optional field is empty")
    if not PHONE_PATTERN.match(value.strip()):
        return FieldCheck("phone", False, "Invalid phone number format", "warning")
    return FieldCheck("phone", True, "Valid")


def check_name(value: str | None) -> FieldCheck:
    if not _filled(value):
        return FieldCheck("full_name", False, "full_name is required", "error")
    length = len(value.strip())
    if length < NAME_MIN_LENGTH:
        return FieldCheck("full_name", False, f"full_name is too short (min {NAME_MIN_LENGTH})", "error")
    if length > NAME_MAX_LENGTH:
        return FieldCheck("full_name", False, f"full_name is too long (max {NAME_MAX_LENGTH})", "warning")
    return FieldCheck("full_name", True, "Valid")


def check_experience(entries: list[dict[str, Any]]) -> FieldCheck | None:
    if not entries:
        return None
    if all(_filled(entry.get("company")) and _filled(entry.get("title")) for entry in entries):
        return FieldCheck("experience", True, "Valid")
    return FieldCheck("experience", False, "Each experience entry must have company and title", "warning")


def completeness(record: CVRecord) -> float:
    """Weighted share of filled fields, in [0, 1]."""

    total = sum(COMPLETENESS_WEIGHTS.values())
    filled = sum(weight for name, weight in COMPLETENESS_WEIGHTS.items() if _filled(getattr(record, name)))
    return round(filled / total, 4)


def quality_score(record: CVRecord, completeness_value: float, now: datetime) -> float:
    """Average of completeness (0-100) and a freshness score decaying 2 points a day."""

    created = record.created_at or now
    days_old = max((now - created).days, 0)
    freshness = max(0, 100 - days_old * FRESHNESS_DECAY_PER_DAY)
    return float(round((completeness_value * 100 + freshness) / 2))


def evaluate(record: CVRecord, now: datetime) -> ValidationResult:
    """Run every rule; errors fail the record, warnings only annotate it."""

    result = ValidationResult(record_id=record.id)
    checks = [check_name(record.full_name), check_email(record.email), check_phone(record.phone)]
    experience = check_experience(record.experience)
    if experience is not None:
        checks.append(experience)
    for check in checks:
        result.checks.append(check)
        if check.passed:
            continue
        if check.severity == "error":
            result.passed = False
            result.errors.append(check.message)
        else:
            result.warnings.append(check.message)
    result.completeness = completeness(record)
    result.quality_score = quality_score(record, result.completeness, now)
    return result


def clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = _WHITESPACE_RE.sub(" ", unicodedata.normalize("NFKC", value)).strip()
    return cleaned or None


def clean_phone(value: str | None) -> str | None:
    cleaned = clean_text(value)
    if cleaned is None:
        return None
    return _PHONE_SPACING_RE.sub(r"\1", cleaned)


def clean_skills(skills: list[str]) -> list[str]:
    seen: set[str] = set()
    cleaned: list[str] = []
    for skill in skills:
        text = clean_text(skill)
        if text is None or text.casefold() in seen:
            continue
        seen.add(text.casefold())
        cleaned.append(text)
    return cleaned


def _clean_entries(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    cleaned = []
    for entry in entries:
        tidy = {key: clean_text(value) if isinstance(value, str) else value for key, value in entry.items()}
        if any(_filled(value) for value in tidy.values()):
            cleaned.append(tidy)
    return cleaned


def clean_fields(record: CVRecord) -> dict[str, Any]:
    """Return the normalised field values that differ from ``record``."""

    updates: dict[str, Any] = {}
    for name in TEXT_FIELDS:
        value = clean_text(getattr(record, name))
        if value != getattr(record, name):
            updates[name] = value
    email = clean_text(record.email)
    email = email.lower() if email else None
    if email != record.email:
        updates["email"] = email
    phone = clean_phone(record.phone)
    if phone != record.phone:
        updates["phone"] = phone
    skills = clean_skills(record.skills)
    if skills != record.skills:
        updates["skills"] = skills
    for name in ("experience", "education"):
        entries = _clean_entries(getattr(record, name))
        if entries != getattr(record, name):
            updates[name] = entries
    return updates


__all__ = [
    "COMPLETENESS_WEIGHTS",
    "EMAIL_PATTERN",
    "FieldCheck",
    "PHONE_PATTERN",
    "ValidationResult",
    "check_email",
    "check_experience",
    "check_name",
    "check_phone",
    "clean_fields",
    "clean_phone",
    "clean_skills",
    "clean_text",
    "completeness",
    "evaluate",
    "quality_score",
]
