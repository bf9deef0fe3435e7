"""Pydantic models used across CV-Harvester configuration flow."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union
from urllib.parse import urlparse

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator


class ScheduleType(str, Enum):
    """Scheduler modes a job may use."""

    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"


class ScheduleConfig(BaseModel):
    """Configuration describing when a job should run."""

    type: ScheduleType = Field(default=ScheduleType.ONCE)
    value: Any = Field(
        default=None,
        description="Cron expression, interval seconds or ISO datetime, depending on type.",
    )

    @model_validator(mode="after")
    def _validate_value(self) -> "ScheduleConfig":
        if self.type is ScheduleType.CRON and not isinstance(self.value, str):
            raise ValueError("Cron schedule requires string expression")
        if self.type is ScheduleType.INTERVAL and not isinstance(self.value, (int, float, dict)):
            raise ValueError("Interval schedule requires seconds (int/float) or kwargs dict")
        if (
            self.type is ScheduleType.ONCE
            and self.value is not None
            and not isinstance(self.value, str)
        ):
            raise ValueError("Once schedule expects ISO datetime string or null")
        return self

    @property
    def recurring(self) -> bool:
        return self.type is not ScheduleType.ONCE


class SourceType(str, Enum):
    """Closed set of provider shapes."""

    LISTING_API = "listing_api"
    PAGINATED_HTML = "paginated_html"
    FILE_IMPORT = "file_import"


class SourceCategory(str, Enum):
    GENERAL = "general"
    TECH = "tech"
    EXECUTIVE = "executive"
    FREELANCE = "freelance"
    GOVERNMENT = "government"
    NGO = "ngo"
    STARTUP = "startup"


class SourceHealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def _require_http_url(value: str, field_name: str) -> str:
    value = (value or "").strip()
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"{field_name} must be an absolute http(s) URL")
    return value


class ProxyConfig(BaseModel):
    """One egress endpoint attached to a source."""

    id: str = Field(default_factory=_new_id)
    host: str
    port: int
    protocol: Literal["http", "https", "socks4", "socks5"] = "http"
    username: str | None = None
    password: str | None = None
    is_active: bool = True
    last_tested_at: datetime | None = None
    consecutive_failures: int = 0
    success_count: int = 0
    failure_count: int = 0
    cooldown_until: datetime | None = None

    @field_validator("host")
    @classmethod
    def _host_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Proxy host is required")
        return value.strip()

    @field_validator("port")
    @classmethod
    def _port_range(cls, value: int) -> int:
        if not 0 < value < 65536:
            raise ValueError("Proxy port must be within 1-65535")
        return value

    @property
    def url(self) -> str:
        auth = ""
        if self.username:
            auth = self.username
            if self.password:
                auth += f":{self.password}"
            auth += "@"
        return f"{self.protocol}://{auth}{self.host}:{self.port}"


class RateLimitPolicy(BaseModel):
    """Per-source throttling limits."""

    requests_per_minute: int = 10
    max_concurrent: int = 2
    cooldown_seconds: int = 300
    burst_limit: int = 3

    @model_validator(mode="after")
    def _validate_positive(self) -> "RateLimitPolicy":
        if self.requests_per_minute < 1:
            raise ValueError("requests_per_minute must be >= 1")
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be >= 0")
        if self.burst_limit < 1:
            raise ValueError("burst_limit must be >= 1")
        return self


class SourceHealth(BaseModel):
    status: SourceHealthStatus = SourceHealthStatus.UNKNOWN
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_checked_at: datetime | None = None
    response_time_ms: float | None = None
    error_message: str | None = None


class SourceStatistics(BaseModel):
    total_fetches: int = 0
    successful_fetches: int = 0
    failed_fetches: int = 0
    records_scraped: int = 0
    avg_response_ms: float = 0.0
    last_fetch_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None

    @property
    def success_rate(self) -> float:
        if not self.total_fetches:
            return 0.0
        return round(self.successful_fetches / self.total_fetches * 100, 2)


class AuthConfig(BaseModel):
    """Credentials a listing API expects."""

    type: Literal["none", "api_key", "basic", "bearer"] = "none"
    header_name: str = "X-API-Key"
    api_key: str | None = None
    username: str | None = None
    password: str | None = None
    token: str | None = None

    @model_validator(mode="after")
    def _validate_credentials(self) -> "AuthConfig":
        if self.type == "api_key" and not self.api_key:
            raise ValueError("api_key auth requires api_key")
        if self.type == "basic" and not (self.username and self.password):
            raise ValueError("basic auth requires username and password")
        if self.type == "bearer" and not self.token:
            raise ValueError("bearer auth requires token")
        return self


class _SourceBase(BaseModel):
    """Fields shared by every source variant."""

    id: str = ""
    name: str
    description: str = ""
    category: SourceCategory = SourceCategory.GENERAL
    priority: int = 0
    tags: list[str] = Field(default_factory=list)
    proxies: list[ProxyConfig] = Field(default_factory=list)
    proxy_rotation: Literal["round_robin", "random", "least_used"] = "round_robin"
    rate_limit: RateLimitPolicy = Field(default_factory=RateLimitPolicy)
    health: SourceHealth = Field(default_factory=SourceHealth)
    statistics: SourceStatistics = Field(default_factory=SourceStatistics)
    is_active: bool = True
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("Source name is required")
        if len(value) > 100:
            raise ValueError("Source name cannot exceed 100 characters")
        return value

    @field_validator("priority")
    @classmethod
    def _priority_range(cls, value: int) -> int:
        if not 0 <= value <= 100:
            raise ValueError("priority must be within 0-100")
        return value

    def find_proxy(self, proxy_id: str) -> ProxyConfig | None:
        return next((proxy for proxy in self.proxies if proxy.id == proxy_id), None)

    @property
    def probe_url(self) -> str | None:
        return None


class ListingApiSource(_SourceBase):
    """JSON listing endpoint returning pages of profiles."""

    type: Literal["listing_api"] = "listing_api"
    api_url: str
    auth: AuthConfig = Field(default_factory=AuthConfig)
    results_path: str = "results"
    page_param: str = "page"

    @field_validator("api_url")
    @classmethod
    def _api_url(cls, value: str) -> str:
        return _require_http_url(value, "api_url")

    @property
    def probe_url(self) -> str | None:
        return self.api_url


class PaginatedHtmlSource(_SourceBase):
    """Server-rendered listing pages walked page by page."""

    type: Literal["paginated_html"] = "paginated_html"
    base_url: str
    list_selector: str
    profile_selector: str
    next_page_selector: str | None = None
    max_pages: int = 10

    @field_validator("base_url")
    @classmethod
    def _base_url(cls, value: str) -> str:
        return _require_http_url(value, "base_url")

    @model_validator(mode="after")
    def _validate_selectors(self) -> "PaginatedHtmlSource":
        if not self.list_selector.strip():
            raise ValueError("list_selector cannot be empty")
        if not self.profile_selector.strip():
            raise ValueError("profile_selector cannot be empty")
        if self.max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        return self

    @property
    def probe_url(self) -> str | None:
        return self.base_url


class FileImportSource(_SourceBase):
    """Batch import of an exported CV file."""

    type: Literal["file_import"] = "file_import"
    file_path: str
    file_format: Literal["csv", "json", "jsonl"] = "csv"

    @field_validator("file_path")
    @classmethod
    def _file_path(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("file_path is required")
        return value.strip()


SourceConfig = Annotated[
    Union[ListingApiSource, PaginatedHtmlSource, FileImportSource],
    Field(discriminator="type"),
]
_SOURCE_ADAPTER: TypeAdapter[SourceConfig] = TypeAdapter(SourceConfig)


def parse_source(payload: dict[str, Any]) -> SourceConfig:
    """Validate a raw mapping into the matching source variant."""

    return _SOURCE_ADAPTER.validate_python(payload)


class RetryPolicy(BaseModel):
    """Exponential backoff applied to failed tasks."""

    base_delay_seconds: float = 5.0
    factor: float = 2.0
    max_delay_seconds: float = 300.0
    jitter_ratio: float = 0.2

    @model_validator(mode="after")
    def _validate_policy(self) -> "RetryPolicy":
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("Retry delays must be non-negative")
        if self.factor < 1:
            raise ValueError("Retry factor must be >= 1")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("jitter_ratio must be within 0-1")
        return self


class QueueHealthThresholds(BaseModel):
    degraded_failure_ratio: float = 0.2
    critical_failure_ratio: float = 0.5
    degraded_failed_count: int = 100
    degraded_backlog: int = 1000
    critical_backlog: int = 5000


class DedupPolicy(BaseModel):
    """Tunables for duplicate detection and merges."""

    similarity_threshold: float = 0.85
    conflict_policy: Literal["primary_wins", "most_recent", "highest_quality"] = "primary_wins"
    block_on_phone: bool = True

    @field_validator("similarity_threshold")
    @classmethod
    def _threshold_range(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("similarity_threshold must be within (0, 1]")
        return value


class ExportSettings(BaseModel):
    sync_threshold: int = 1000
    chunk_size: int = 500
    workers: int = 2


class GlobalConfig(BaseModel):
    """Global controls shared across sources."""

    worker_threads: int = 8
    queue_names: list[str] = Field(
        default_factory=lambda: ["cv-scraping", "data-processing", "validation", "export"]
    )
    default_queue: str = "cv-scraping"
    dispatch_interval_seconds: float = 1.0
    fetch_timeout_seconds: float = 30.0
    probe_timeout_seconds: float = 10.0
    probe_url: str = "https://httpbin.org/ip"
    proxy_failure_threshold: int = 3
    source_unhealthy_after: int = 5
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    queue_health: QueueHealthThresholds = Field(default_factory=QueueHealthThresholds)
    dedup: DedupPolicy = Field(default_factory=DedupPolicy)
    export: ExportSettings = Field(default_factory=ExportSettings)
    analytics_refresh_seconds: float = 60.0
    schedule_tick_seconds: float = 30.0
    database_path: Path = Field(default=Path("data/harvester.db"))
    exports_dir: Path = Field(default=Path("data/exports"))

    @field_validator("database_path", "exports_dir", mode="before")
    @classmethod
    def _coerce_paths(cls, value: Any) -> Path:
        return Path(value)

    @model_validator(mode="after")
    def _validate_queues(self) -> "GlobalConfig":
        if not self.queue_names:
            raise ValueError("At least one queue name is required")
        if self.default_queue not in self.queue_names:
            raise ValueError(f"default_queue {self.default_queue!r} is not a configured queue")
        if self.worker_threads < 1:
            raise ValueError("worker_threads must be >= 1")
        if self.proxy_failure_threshold < 1:
            raise ValueError("proxy_failure_threshold must be >= 1")
        return self

    def resolve(self, path: Path, base_dir: Path) -> Path:
        """Return ``path`` relative to the project data root unless absolute."""

        if path.is_absolute():
            return path
        return (base_dir / path).resolve()


__all__ = [
    "AuthConfig",
    "DedupPolicy",
    "ExportSettings",
    "FileImportSource",
    "GlobalConfig",
    "ListingApiSource",
    "PaginatedHtmlSource",
    "ProxyConfig",
    "QueueHealthThresholds",
    "RateLimitPolicy",
    "RetryPolicy",
    "ScheduleConfig",
    "ScheduleType",
    "SourceCategory",
    "SourceConfig",
    "SourceHealth",
    "SourceHealthStatus",
    "SourceStatistics",
    "SourceType",
    "parse_source",
]
