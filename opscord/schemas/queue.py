from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from opscord.schemas.activities import Source

QueueStatus = Literal["pending", "retry_pending", "processing", "completed", "failed"]


class QueueEnqueueRequest(BaseModel):
    organization_id: str | None = None
    source: Source
    event_type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class QueueItemOut(BaseModel):
    id: str
    organization_id: str | None = None
    source: str
    event_type: str
    status: QueueStatus
    attempts: int
    error_message: str | None = None
    next_attempt_at: datetime | None = None
    created_at: datetime
    processed_at: datetime | None = None


class QueueDrainOut(BaseModel):
    claimed: int
    completed: int
    retried: int
    failed: int
    skipped: int


class QueueMaintenanceOut(BaseModel):
    reclaimed: int


class QueueCountsOut(BaseModel):
    pending: int = 0
    retry_pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class QueueStatusOut(BaseModel):
    queue: QueueCountsOut
    recent_failures: list[QueueItemOut] = Field(default_factory=list)
    timestamp: datetime
