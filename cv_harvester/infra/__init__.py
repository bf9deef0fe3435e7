"""Infrastructure helpers (storage, repositories, proxy rotation)."""

from .proxy_pool import ProxyRotation
from .repositories import ExportRepository, JobRepository, LogRepository, RecordRepository
from .storage import SQLiteManager

__all__ = [
    "ExportRepository",
    "JobRepository",
    "LogRepository",
    "ProxyRotation",
    "RecordRepository",
    "SQLiteManager",
]
