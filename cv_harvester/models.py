"""Domain entities shared by the registries, queues and engines."""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .config.models import ScheduleConfig


def new_id() -> str:
    return uuid.uuid4().hex


class JobStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    TARGETED = "targeted"
    REPAIR = "repair"
    VALIDATION = "validation"


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


PRIORITY_WEIGHTS: dict[JobPriority, int] = {
    JobPriority.CRITICAL: 1,
    JobPriority.HIGH: 2,
    JobPriority.NORMAL: 3,
    JobPriority.LOW: 5,
}


class JobSchedule(BaseModel):
    """Trigger plus the window inside which runs may start."""

    trigger: ScheduleConfig = Field(default_factory=ScheduleConfig)
    start_at: datetime | None = None
    end_at: datetime | None = None
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None

    @model_validator(mode="after")
    def _validate_window(self) -> "JobSchedule":
        if self.start_at and self.end_at and self.end_at <= self.start_at:
            raise ValueError("Schedule window end must be after its start")
        return self

    @property
    def recurring(self) -> bool:
        return self.trigger.recurring

    def in_window(self, moment: datetime) -> bool:
        if self.start_at and moment < self.start_at:
            return False
        if self.end_at and moment > self.end_at:
            return False
        return True


class JobConfig(BaseModel):
    pages: int = 1
    page_size: int = 50
    filters: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_sizes(self) -> "JobConfig":
        if self.pages < 1:
            raise ValueError("pages must be >= 1")
        if not 1 <= self.page_size <= 1000:
            raise ValueError("page_size must be within 1-1000")
        return self


class JobProgress(BaseModel):
    found: int = 0
    validated: int = 0
    duplicate: int = 0
    failed: int = 0
    tasks_total: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0

    @property
    def tasks_outstanding(self) -> int:
        return max(self.tasks_total - self.tasks_completed - self.tasks_failed, 0)

    @property
    def percentage(self) -> float:
        if not self.tasks_total:
            return 0.0
        done = self.tasks_completed + self.tasks_failed
        return round(done / self.tasks_total * 100, 2)


class JobSpec(BaseModel):
    """Admin supplied definition of a scraping job."""

    name: str
    description: str = ""
    type: JobType = JobType.FULL
    priority: JobPriority = JobPriority.NORMAL
    source_id: str
    queue_name: str | None = None
    schedule: JobSchedule = Field(default_factory=JobSchedule)
    config: JobConfig = Field(default_factory=JobConfig)
    max_retries: int = 3
    tags: list[str] = Field(default_factory=list)

    @field_validator("name", "source_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("value cannot be empty")
        return value

    @field_validator("max_retries")
    @classmethod
    def _retry_range(cls, value: int) -> int:
        if not 1 <= value <= 10:
            raise ValueError("max_retries must be within 1-10")
        return value


class ScrapingJob(JobSpec):
    id: str = Field(default_factory=new_id)
    status: JobStatus = JobStatus.PENDING
    previous_status: JobStatus | None = None
    queue_name: str = "cv-scraping"
    progress: JobProgress = Field(default_factory=JobProgress)
    attempt: int = 0
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    paused_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    last_error_reason: str | None = None
    status_reason: str | None = None
    errors: dict[str, int] = Field(default_factory=dict)
    parent_job_id: str | None = None
    version: int = 0

    @property
    def duration_seconds(self) -> float | None:
        end = self.completed_at or self.cancelled_at
        if not self.started_at or not end:
            return None
        return (end - self.started_at).total_seconds()


class TaskState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


@dataclass(slots=True)
class QueueTask:
    """One queued execution of a job page."""

    queue_name: str
    job_id: str
    source_id: str
    payload: dict[str, Any]
    priority: int = 3
    max_attempts: int = 3
    id: str = field(default_factory=new_id)
    sequence: int = 0
    attempt: int = 0
    state: TaskState = TaskState.WAITING
    available_at: datetime | None = None
    enqueued_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    failed_reason: str | None = None
    result: dict[str, Any] | None = None
    proxy_id: str | None = None

    @property
    def processing_ms(self) -> float | None:
        if not self.started_at or not self.finished_at:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queue_name": self.queue_name,
            "job_id": self.job_id,
            "source_id": self.source_id,
            "payload": dict(self.payload),
            "priority": self.priority,
            "sequence": self.sequence,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "state": self.state.value,
            "available_at": self.available_at.isoformat() if self.available_at else None,
            "enqueued_at": self.enqueued_at.isoformat() if self.enqueued_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "failed_reason": self.failed_reason,
            "result": self.result,
            "proxy_id": self.proxy_id,
        }


class RecordStatus(str, Enum):
    NEW = "new"
    VALIDATED = "validated"
    INVALID = "invalid"
    DUPLICATE = "duplicate"


CONTENT_FIELDS = (
    "full_name",
    "email",
    "phone",
    "headline",
    "summary",
    "current_title",
    "current_company",
    "location",
    "experience",
    "education",
    "skills",
)


class CVRecord(BaseModel):
    """A scraped CV and the bookkeeping the validation engine adds to it."""

    id: str = Field(default_factory=new_id)
    full_name: str | None = None
    email: str | None = None
    phone: str | None = None
    headline: str | None = None
    summary: str | None = None
    current_title: str | None = None
    current_company: str | None = None
    location: str | None = None
    experience: list[dict[str, Any]] = Field(default_factory=list)
    education: list[dict[str, Any]] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    raw: dict[str, Any] = Field(default_factory=dict)
    content_hash: str | None = None
    status: RecordStatus = RecordStatus.NEW
    quality_score: float = 0.0
    completeness: float = 0.0
    validation_errors: list[str] = Field(default_factory=list)
    validation_warnings: list[str] = Field(default_factory=list)
    last_validated_at: datetime | None = None
    duplicate_of: str | None = None
    duplicate_confidence: float | None = None
    merged_at: datetime | None = None
    merge_log: list[dict[str, Any]] = Field(default_factory=list)
    additional_sources: list[str] = Field(default_factory=list)
    processing_history: list[dict[str, Any]] = Field(default_factory=list)
    source_id: str | None = None
    job_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0

    def compute_hash(self) -> str:
        payload = {name: getattr(self, name) for name in CONTENT_FIELDS}
        blob = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    @property
    def is_canonical(self) -> bool:
        return self.duplicate_of is None


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ScrapeLogEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str
    source_id: str | None = None
    task_id: str | None = None
    level: LogLevel = LogLevel.INFO
    kind: Literal["request", "success", "error", "extraction"] = "request"
    message: str
    error_type: str | None = None
    duration_ms: float | None = None
    records: int = 0
    created_at: datetime | None = None


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"
    JSONL = "jsonl"


class ExportStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RecordFilter(BaseModel):
    """Declarative selector over the record store."""

    status: list[RecordStatus] | None = None
    source_ids: list[str] | None = None
    job_id: str | None = None
    min_quality: float | None = None
    max_quality: float | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    include_duplicates: bool = True
    skills: list[str] | None = None
    location: str | None = None
    text: str | None = None

    def matches(self, record: CVRecord) -> bool:
        if self.status and record.status not in self.status:
            return False
        if self.source_ids and record.source_id not in self.source_ids:
            return False
        if self.job_id and record.job_id != self.job_id:
            return False
        if self.min_quality is not None and record.quality_score < self.min_quality:
            return False
        if self.max_quality is not None and record.quality_score > self.max_quality:
            return False
        if self.created_from and (not record.created_at or record.created_at < self.created_from):
            return False
        if self.created_to and (not record.created_at or record.created_at > self.created_to):
            return False
        if not self.include_duplicates and record.duplicate_of is not None:
            return False
        if self.skills:
            owned = {skill.lower() for skill in record.skills}
            if not all(skill.lower() in owned for skill in self.skills):
                return False
        if self.location and self.location.lower() not in (record.location or "").lower():
            return False
        if self.text:
            needle = self.text.lower()
            haystack = " ".join(
                value for value in (record.full_name, record.headline, record.summary) if value
            ).lower()
            if needle not in haystack:
                return False
        return True


class ExportJob(BaseModel):
    id: str = Field(default_factory=new_id)
    filter_spec: RecordFilter = Field(default_factory=RecordFilter)
    format: ExportFormat = ExportFormat.CSV
    status: ExportStatus = ExportStatus.PROCESSING
    artifact_ref: str | None = None
    progress: float = 0.0
    row_count: int = 0
    estimated_count: int = 0
    error: str | None = None
    retriable: bool = False
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    version: int = 0


__all__ = [
    "CONTENT_FIELDS",
    "CVRecord",
    "ExportFormat",
    "ExportJob",
    "ExportStatus",
    "JobConfig",
    "JobPriority",
    "JobProgress",
    "JobSchedule",
    "JobSpec",
    "JobStatus",
    "JobType",
    "LogLevel",
    "PRIORITY_WEIGHTS",
    "QueueTask",
    "RecordFilter",
    "RecordStatus",
    "ScrapeLogEntry",
    "ScrapingJob",
    "TaskState",
    "new_id",
]
