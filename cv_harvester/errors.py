"""Exception hierarchy shared by the harvester services."""

from __future__ import annotations


class HarvesterError(Exception):
    """Base class for every error raised by the core services."""


class InvalidRequestError(HarvesterError, ValueError):
    """Input rejected before any state was touched."""


class InvalidTransitionError(InvalidRequestError):
    """Requested status change is not part of the allowed graph."""

    def __init__(self, entity_id: str, current: str, target: str, message: str | None = None) -> None:
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot move {entity_id} from {current} to {target}")


class NotFoundError(HarvesterError, LookupError):
    """Lookup by id found nothing."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ConcurrencyError(HarvesterError):
    """Optimistic version check failed; caller should reload and retry."""


__all__ = [
    "ConcurrencyError",
    "HarvesterError",
    "InvalidRequestError",
    "InvalidTransitionError",
    "NotFoundError",
]
