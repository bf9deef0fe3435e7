from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..models import CVRecord

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_NON_DIGIT_RE = re.compile(r"\D+")
_MIN_PHONE_DIGITS = 7

EMAIL_WEIGHT = 0.55
PHONE_WEIGHT = 0.45
NAME_WEIGHT = 0.30
FIELD_WEIGHT = 0.10


@dataclass(slots=True)
class SimilarityScore:
    candidate_id: str
    confidence: float
    match_fields: list[str]
    components: dict[str, float]


def normalize_email(value: str | None) -> str | None:
    if not value:
        return None
    normalized = value.strip().lower()
    return normalized or None


def normalize_phone(value: str | None) -> str | None:
    if not value:
        return None
    digits = _NON_DIGIT_RE.sub("", value)
    if len(digits) < _MIN_PHONE_DIGITS:
        return None
    return digits


def normalize_text(value: str | None) -> str:
    if not value:
        return ""
    folded = unicodedata.normalize("NFKD", value)
    folded = "".join(ch for ch in folded if not unicodedata.combining(ch))
    return " ".join(_TOKEN_RE.findall(folded.casefold()))


def name_similarity(left: str | None, right: str | None) -> float:
    a = normalize_text(left)
    b = normalize_text(right)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    token_score = _jaccard(set(a.split()), set(b.split()))
    sequence_score = SequenceMatcher(None, a, b).ratio()
    return max(token_score, sequence_score)


def field_similarity(left: "CVRecord", right: "CVRecord") -> float:
    scores = []
    for name in ("current_company", "current_title", "location"):
        a = normalize_text(getattr(left, name))
        b = normalize_text(getattr(right, name))
        if a and b:
            scores.append(_jaccard(set(a.split()), set(b.split())))
    if not scores:
        return 0.0
    return sum(scores) / len(scores)


def score_pair(record: "CVRecord", candidate: "CVRecord") -> SimilarityScore:
    """Score how likely ``candidate`` describes the same person as ``record``."""

    match_fields: list[str] = []
    score = 0.0

    email = normalize_email(record.email)
    if email and email == normalize_email(candidate.email):
        match_fields.append("email")
        score += EMAIL_WEIGHT
    phone = normalize_phone(record.phone)
    if phone and phone == normalize_phone(candidate.phone):
        match_fields.append("phone")
        score += PHONE_WEIGHT

    names = name_similarity(record.full_name, candidate.full_name)
    if names >= 0.9:
        match_fields.append("full_name")
    fields = field_similarity(record, candidate)
    score += NAME_WEIGHT * names + FIELD_WEIGHT * fields

    return SimilarityScore(
        candidate_id=candidate.id,
        confidence=round(min(score, 1.0), 4),
        match_fields=match_fields,
        components={
            "name_similarity": round(names, 4),
            "field_similarity": round(fields, 4),
        },
    )


def _jaccard(left: set[str], right: set[str]) -> float:
    if not left or not right:
        return 0.0
    union = len(left | right)
    if union <= 0:
        return 0.0
    return len(left & right) / union


__all__ = [
    "SimilarityScore",
    "field_similarity",
    "name_similarity",
    "normalize_email",
    "normalize_phone",
    "normalize_text",
    "score_pair",
]
