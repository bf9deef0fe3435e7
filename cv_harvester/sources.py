"""Source registry: provider configs, nested proxies, rate limits and health."""

from __future__ import annotations

import math
from pathlib import Path
from threading import RLock
from typing import Any, Callable, get_args

import httpx
from pydantic import ValidationError

from .audit import SYSTEM_ACTOR, AuditEvent, AuditSink, LoggingAuditSink
from .clock import Clock, SystemClock
from .config import (
    AuthConfig,
    ConfigRepository,
    GlobalConfig,
    ProxyConfig,
    SourceCategory,
    SourceConfig,
    SourceHealthStatus,
    parse_source,
    slugify,
)
from .config.models import FileImportSource, ListingApiSource, PaginatedHtmlSource
from .engine.fetcher import ProbeResult, probe
from .errors import InvalidRequestError, NotFoundError
from .infra.repositories import JobRepository
from .jobs.state import TERMINAL_STATUSES
from .logging_conf import component_logger
from .models import JobStatus

SourceListener = Callable[[str], None]

_VARIANTS = (ListingApiSource, PaginatedHtmlSource, FileImportSource)
# Fields the registry owns; admin payloads never set them directly.
_MANAGED_FIELDS = ("id", "health", "statistics", "created_at", "updated_at", "created_by")


def _describe(source: SourceConfig) -> dict[str, Any]:
    return source.model_dump(mode="json", exclude={"statistics"})


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


class SourceRegistry:
    """CRUD over source configurations persisted as YAML files."""

    def __init__(
        self,
        repository: ConfigRepository,
        jobs: JobRepository,
        global_config: GlobalConfig | None = None,
        clock: Clock | None = None,
        audit: AuditSink | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.repository = repository
        self.jobs = jobs
        self.global_config = global_config or repository.load_global_config()
        self.clock = clock or SystemClock()
        self.audit = audit or LoggingAuditSink()
        self.transport = transport
        self.logger = component_logger("sources")
        self._lock = RLock()
        self._listeners: list[SourceListener] = []

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def subscribe(self, listener: SourceListener) -> None:
        self._listeners.append(listener)

    def _notify(self, source_id: str) -> None:
        for listener in list(self._listeners):
            listener(source_id)

    def _emit(self, actor: str, action: str, source_id: str, before: Any, after: Any, **details: Any) -> None:
        self.audit.emit(
            AuditEvent(
                actor=actor,
                action=action,
                entity_type="source",
                entity_id=source_id,
                before=before,
                after=after,
                details=details,
                at=self.clock.now(),
            )
        )

    def _build(self, payload: dict[str, Any]) -> SourceConfig:
        try:
            return parse_source(payload)
        except ValidationError as exc:
            raise InvalidRequestError(_validation_message(exc)) from exc

    def _ensure_unique_name(self, name: str, exclude_id: str | None = None) -> None:
        lowered = name.strip().lower()
        for existing in self.repository.list_sources():
            if existing.id != exclude_id and existing.name.lower() == lowered:
                raise InvalidRequestError("A source with this name already exists")

    def _store(self, source: SourceConfig) -> SourceConfig:
        self.repository.save_source(source)
        self._notify(source.id)
        return source

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------
    def create_source(self, payload: dict[str, Any], actor: str = SYSTEM_ACTOR) -> SourceConfig:
        data = {key: value for key, value in dict(payload).items() if key not in _MANAGED_FIELDS}
        with self._lock:
            source = self._build(data)
            source_id = slugify(source.name)
            if not source_id:
                raise InvalidRequestError("Source name must contain letters or digits")
            self._ensure_unique_name(source.name)
            if self.repository.has_source(source_id):
                raise InvalidRequestError(f"Source id already in use: {source_id}")
            now = self.clock.now()
            source = source.model_copy(
                update={"id": source_id, "created_by": actor, "created_at": now, "updated_at": now}
            )
            self._store(source)
        self.logger.info("source_created", source_id=source.id, type=source.type)
        self._emit(actor, "source.create", source.id, None, _describe(source), type=source.type)
        return source

    def get_source(self, source_id: str) -> SourceConfig:
        try:
            return self.repository.load_source(source_id)
        except FileNotFoundError:
            raise NotFoundError("source", source_id) from None

    def list_sources(
        self,
        filters: dict[str, Any] | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, Any]:
        filters = filters or {}
        if page < 1 or limit < 1:
            raise InvalidRequestError("page and limit must be positive")
        search = (filters.get("search") or "").lower()
        tags = set(filters.get("tags") or ())
        items = []
        for source in self.repository.list_sources():
            if filters.get("type") and source.type != filters["type"]:
                continue
            if filters.get("category") and source.category.value != filters["category"]:
                continue
            if filters.get("is_active") is not None and source.is_active != filters["is_active"]:
                continue
            if filters.get("health") and source.health.status.value != filters["health"]:
                continue
            if tags and not tags.intersection(source.tags):
                continue
            if search and not any(
                search in (value or "").lower()
                for value in (source.name, source.description, source.probe_url)
            ):
                continue
            items.append(source)
        items.sort(key=lambda source: (-source.priority, source.name.lower()))
        total = len(items)
        start = (page - 1) * limit
        return {
            "sources": items[start : start + limit],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    def active_sources(self) -> list[SourceConfig]:
        return [source for source in self.repository.list_sources() if source.is_active]

    def update_source(
        self, source_id: str, changes: dict[str, Any], actor: str = SYSTEM_ACTOR
    ) -> SourceConfig:
        if "type" in changes:
            raise InvalidRequestError("Source type cannot be changed; create a new source instead")
        with self._lock:
            current = self.get_source(source_id)
            payload = current.model_dump(mode="python")
            payload.update({k: v for k, v in changes.items() if k not in _MANAGED_FIELDS})
            updated = self._build(payload)
            if updated.name.lower() != current.name.lower():
                self._ensure_unique_name(updated.name, exclude_id=source_id)
            updated = updated.model_copy(update={"updated_at": self.clock.now()})
            self._store(updated)
        changed = sorted(k for k in changes if k not in _MANAGED_FIELDS)
        self.logger.info("source_updated", source_id=source_id, fields=changed)
        self._emit(actor, "source.update", source_id, _describe(current), _describe(updated), fields=changed)
        return updated

    def _open_jobs(self, source_id: str) -> list[str]:
        statuses = [status for status in JobStatus if status not in TERMINAL_STATUSES]
        return [job.id for job in self.jobs.list(statuses=statuses, source_id=source_id)]

    def delete_source(self, source_id: str, actor: str = SYSTEM_ACTOR) -> None:
        with self._lock:
            current = self.get_source(source_id)
            open_jobs = self._open_jobs(source_id)
            if open_jobs:
                raise InvalidRequestError(
                    f"Source {source_id} still has {len(open_jobs)} unfinished job(s)"
                )
            self.repository.delete_source(source_id)
            self._notify(source_id)
        self.logger.info("source_deleted", source_id=source_id)
        self._emit(actor, "source.delete", source_id, _describe(current), None)

    def toggle_source_status(
        self, source_id: str, enabled: bool | None = None, actor: str = SYSTEM_ACTOR
    ) -> SourceConfig:
        with self._lock:
            current = self.get_source(source_id)
            target = (not current.is_active) if enabled is None else enabled
            updated = current.model_copy(update={"is_active": target, "updated_at": self.clock.now()})
            self._store(updated)
        self._emit(
            actor,
            "source.toggle",
            source_id,
            {"is_active": current.is_active},
            {"is_active": updated.is_active},
        )
        return updated

    def clone_source(
        self, source_id: str, overrides: dict[str, Any] | None = None, actor: str = SYSTEM_ACTOR
    ) -> SourceConfig:
        original = self.get_source(source_id)
        payload = original.model_dump(mode="python", exclude=set(_MANAGED_FIELDS))
        payload["name"] = f"{original.name} (Copy)"
        payload["proxies"] = [
            proxy.model_dump(
                mode="python",
                include={"host", "port", "protocol", "username", "password", "is_active"},
            )
            for proxy in original.proxies
        ]
        payload.update(overrides or {})
        return self.create_source(payload, actor=actor)

    # ------------------------------------------------------------------
    # Proxies
    # ------------------------------------------------------------------
    def add_proxy(
        self, source_id: str, proxy: dict[str, Any] | ProxyConfig, actor: str = SYSTEM_ACTOR
    ) -> ProxyConfig:
        try:
            candidate = proxy if isinstance(proxy, ProxyConfig) else ProxyConfig.model_validate(proxy)
        except ValidationError as exc:
            raise InvalidRequestError(_validation_message(exc)) from exc
        with self._lock:
            source = self.get_source(source_id)
            if any(p.host == candidate.host and p.port == candidate.port for p in source.proxies):
                raise InvalidRequestError(f"Proxy {candidate.host}:{candidate.port} already exists")
            updated = source.model_copy(
                update={"proxies": [*source.proxies, candidate], "updated_at": self.clock.now()}
            )
            self._store(updated)
        self._emit(actor, "source.proxy.add", source_id, None, candidate.model_dump(mode="json", exclude={"password"}))
        return candidate

    def update_proxy(
        self, source_id: str, proxy_id: str, changes: dict[str, Any], actor: str = SYSTEM_ACTOR
    ) -> ProxyConfig:
        with self._lock:
            source = self.get_source(source_id)
            current = source.find_proxy(proxy_id)
            if current is None:
                raise NotFoundError("proxy", proxy_id)
            payload = current.model_dump(mode="python")
            payload.update({k: v for k, v in changes.items() if k != "id"})
            try:
                replacement = ProxyConfig.model_validate(payload)
            except ValidationError as exc:
                raise InvalidRequestError(_validation_message(exc)) from exc
            proxies = [replacement if p.id == proxy_id else p for p in source.proxies]
            self._store(source.model_copy(update={"proxies": proxies, "updated_at": self.clock.now()}))
        self._emit(
            actor,
            "source.proxy.update",
            source_id,
            current.model_dump(mode="json", exclude={"password"}),
            replacement.model_dump(mode="json", exclude={"password"}),
            proxy_id=proxy_id,
        )
        return replacement

    def remove_proxy(self, source_id: str, proxy_id: str, actor: str = SYSTEM_ACTOR) -> None:
        with self._lock:
            source = self.get_source(source_id)
            current = source.find_proxy(proxy_id)
            if current is None:
                raise NotFoundError("proxy", proxy_id)
            proxies = [p for p in source.proxies if p.id != proxy_id]
            self._store(source.model_copy(update={"proxies": proxies, "updated_at": self.clock.now()}))
        self._emit(
            actor,
            "source.proxy.remove",
            source_id,
            current.model_dump(mode="json", exclude={"password"}),
            None,
            proxy_id=proxy_id,
        )

    def sync_proxies(self, source_id: str, proxies: list[ProxyConfig]) -> None:
        """Write back proxy health counters observed by the dispatcher."""

        with self._lock:
            try:
                source = self.get_source(source_id)
            except NotFoundError:
                return
            observed = {proxy.id: proxy for proxy in proxies}
            merged = []
            for proxy in source.proxies:
                seen = observed.get(proxy.id)
                if seen is None:
                    merged.append(proxy)
                    continue
                merged.append(
                    proxy.model_copy(
                        update={
                            "consecutive_failures": seen.consecutive_failures,
                            "success_count": seen.success_count,
                            "failure_count": seen.failure_count,
                            "cooldown_until": seen.cooldown_until,
                            "last_tested_at": seen.last_tested_at,
                        }
                    )
                )
            self.repository.save_source(source.model_copy(update={"proxies": merged}))

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------
    def test_source(self, source_id: str) -> ProbeResult:
        """Probe a source and update its health block; job state is never touched."""

        with self._lock:
            source = self.get_source(source_id)
            if isinstance(source, FileImportSource):
                path = Path(source.file_path).expanduser()
                result = (
                    ProbeResult(True, 0.0, None, None)
                    if path.exists()
                    else ProbeResult(False, None, None, f"File not found: {path}")
                )
            else:
                proxy = next((p for p in source.proxies if p.is_active), None)
                result = probe(
                    source.probe_url or "",
                    self.global_config.probe_timeout_seconds,
                    proxy=proxy,
                    transport=self.transport,
                )
            health = source.health.model_copy()
            health.last_checked_at = self.clock.now()
            health.response_time_ms = result.latency_ms
            health.error_message = result.error
            if result.success:
                health.status = SourceHealthStatus.HEALTHY
                health.consecutive_successes += 1
                health.consecutive_failures = 0
            else:
                health.status = SourceHealthStatus.UNHEALTHY
                health.consecutive_failures += 1
                health.consecutive_successes = 0
            self._store(source.model_copy(update={"health": health}))
        self.logger.info(
            "source_tested", source_id=source_id, success=result.success, latency_ms=result.latency_ms
        )
        return result

    def test_proxy(self, proxy: dict[str, Any] | ProxyConfig) -> ProbeResult:
        try:
            candidate = proxy if isinstance(proxy, ProxyConfig) else ProxyConfig.model_validate(proxy)
        except ValidationError as exc:
            raise InvalidRequestError(_validation_message(exc)) from exc
        result = probe(
            self.global_config.probe_url,
            self.global_config.probe_timeout_seconds,
            proxy=candidate,
            transport=self.transport,
        )
        self.logger.info(
            "proxy_tested", host=candidate.host, port=candidate.port, success=result.success
        )
        return result

    # ------------------------------------------------------------------
    # Dispatcher feedback
    # ------------------------------------------------------------------
    def record_fetch_outcome(
        self,
        source_id: str,
        success: bool,
        duration_ms: float = 0.0,
        records: int = 0,
        error: str | None = None,
    ) -> None:
        with self._lock:
            try:
                source = self.get_source(source_id)
            except NotFoundError:
                return
            now = self.clock.now()
            stats = source.statistics.model_copy()
            health = source.health.model_copy()
            stats.total_fetches += 1
            stats.last_fetch_at = now
            if duration_ms:
                stats.avg_response_ms = round(
                    stats.avg_response_ms + (duration_ms - stats.avg_response_ms) / stats.total_fetches,
                    2,
                )
            if success:
                stats.successful_fetches += 1
                stats.records_scraped += records
                stats.last_success_at = now
                health.consecutive_successes += 1
                health.consecutive_failures = 0
                if health.status in (SourceHealthStatus.UNKNOWN, SourceHealthStatus.UNHEALTHY):
                    health.status = SourceHealthStatus.HEALTHY
            else:
                stats.failed_fetches += 1
                stats.last_failure_at = now
                health.consecutive_failures += 1
                health.consecutive_successes = 0
                health.error_message = error
                if health.consecutive_failures >= self.global_config.source_unhealthy_after:
                    health.status = SourceHealthStatus.UNHEALTHY
            health.last_checked_at = now
            self.repository.save_source(source.model_copy(update={"statistics": stats, "health": health}))

    def set_health(
        self, source_id: str, status: SourceHealthStatus, reason: str | None = None
    ) -> SourceConfig:
        with self._lock:
            source = self.get_source(source_id)
            health = source.health.model_copy(
                update={"status": status, "error_message": reason, "last_checked_at": self.clock.now()}
            )
            updated = source.model_copy(update={"health": health})
            self.repository.save_source(updated)
        self.logger.warning("source_health_changed", source_id=source_id, status=status.value, reason=reason)
        return updated

    # ------------------------------------------------------------------
    # Import / export
    # ------------------------------------------------------------------
    def export_configuration(self, source_id: str) -> dict[str, Any]:
        """Return a shareable config with identifiers and secrets removed."""

        source = self.get_source(source_id)
        data = source.model_dump(mode="json", exclude=set(_MANAGED_FIELDS))
        auth = data.get("auth")
        if isinstance(auth, dict):
            for secret in ("api_key", "password", "token"):
                auth.pop(secret, None)
        data["proxies"] = [
            {
                key: value
                for key, value in proxy.items()
                if key in ("host", "port", "protocol", "username", "is_active")
            }
            for proxy in data.get("proxies", [])
        ]
        return data

    def import_configuration(self, payload: dict[str, Any], actor: str = SYSTEM_ACTOR) -> SourceConfig:
        """Create a source from an exported config; health and statistics start fresh."""

        data = {key: value for key, value in dict(payload).items() if key not in _MANAGED_FIELDS}
        auth = data.get("auth")
        if isinstance(auth, dict):
            try:
                AuthConfig.model_validate(auth)
            except ValidationError:
                self.logger.warning(
                    "source_import_credentials_missing", name=data.get("name"), auth_type=auth.get("type")
                )
                data["auth"] = {"type": "none"}
        return self.create_source(data, actor=actor)

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------
    @staticmethod
    def list_types() -> list[dict[str, Any]]:
        types = []
        for variant in _VARIANTS:
            source_type = get_args(variant.model_fields["type"].annotation)[0]
            required = sorted(
                name
                for name, field in variant.model_fields.items()
                if field.is_required() and name != "type"
            )
            types.append({"type": source_type, "required_fields": required})
        return types

    @staticmethod
    def list_categories() -> list[str]:
        return [category.value for category in SourceCategory]


__all__ = ["SourceListener", "SourceRegistry"]
