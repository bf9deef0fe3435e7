"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository, slugify
from .models import (
    AuthConfig,
    DedupPolicy,
    ExportSettings,
    FileImportSource,
    GlobalConfig,
    ListingApiSource,
    PaginatedHtmlSource,
    ProxyConfig,
    QueueHealthThresholds,
    RateLimitPolicy,
    RetryPolicy,
    ScheduleConfig,
    ScheduleType,
    SourceCategory,
    SourceConfig,
    SourceHealth,
    SourceHealthStatus,
    SourceStatistics,
    SourceType,
    parse_source,
)

__all__ = [
    "AuthConfig",
    "ConfigLocator",
    "ConfigRepository",
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
    "slugify",
]
