"""Record validation, cleaning and duplicate detection."""

from .similarity import normalize_email, normalize_phone, score_pair

__all__ = ["normalize_email", "normalize_phone", "score_pair"]
