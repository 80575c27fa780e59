from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

JobType = Literal["digest", "analytics_rollup", "notification", "sync_backfill"]
JobStatus = Literal["pending", "processing", "completed", "failed", "retrying"]


class JobCreateRequest(BaseModel):
    job_type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    max_attempts: int | None = Field(default=None, ge=1, le=20)
    scheduled_at: datetime | None = None


class JobOut(BaseModel):
    id: str
    job_id: str
    job_type: str
    status: JobStatus
    priority: int = 0
    payload: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    error_message: str | None = None
    attempts: int
    max_attempts: int
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class JobProcessRequest(BaseModel):
    mode: Literal["single", "batch"] = "single"
    max_jobs: int = Field(default=10, ge=1)
    job_types: list[str] | None = None


class JobResultOut(BaseModel):
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None


class ProcessedJobOut(BaseModel):
    id: str
    job_id: str
    job_type: str
    status: JobStatus
    error: str | None = None


class JobProcessOut(BaseModel):
    processed: int
    succeeded: int = 0
    failed: int = 0
    jobs: list[ProcessedJobOut] = Field(default_factory=list)
    result: JobResultOut | None = None


class JobStatsOut(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    retrying: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)


class JobStatusOut(BaseModel):
    queue: JobStatsOut
    recent_jobs: list[JobOut] = Field(default_factory=list)
    recent_failures: list[JobOut] = Field(default_factory=list)
    timestamp: datetime


class JobMaintenanceOut(BaseModel):
    affected: int
