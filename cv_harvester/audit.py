"""Audit events emitted for admin-initiated mutations.

The core only emits; storage of the trail belongs to an external collaborator
plugged in through :class:`AuditSink`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

from .logging_conf import audit_logger

SYSTEM_ACTOR = "system"


@dataclass(slots=True)
class AuditEvent:
    actor: str
    action: str
    entity_type: str
    entity_id: str | None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    details: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None:
        """Hand an event to the audit collaborator."""


class LoggingAuditSink:
    """Default sink: forward events to the structured log."""

    def __init__(self) -> None:
        self.logger = audit_logger()

    def emit(self, event: AuditEvent) -> None:
        self.logger.info(
            "audit_event",
            actor=event.actor,
            action=event.action,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            before=event.before,
            after=event.after,
            details=event.details,
            at=event.at.isoformat(),
        )


class MemoryAuditSink:
    """Keep events in memory; handy for tests and the CLI dry runs."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []
        self._lock = Lock()

    def emit(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)

    def actions(self) -> list[str]:
        with self._lock:
            return [event.action for event in self.events]


__all__ = ["AuditEvent", "AuditSink", "LoggingAuditSink", "MemoryAuditSink", "SYSTEM_ACTOR"]
