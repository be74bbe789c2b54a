"""
Pydantic models for queues, jobs and pub/sub envelopes.

All timestamps are epoch milliseconds, matching the scores stored in the
pending/delayed/active sorted sets.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"


class Channels:
    """Standard pub/sub channels."""

    NOTIFICATIONS = "channel:notifications"
    MATCHES = "channel:matches"
    MESSAGES = "channel:messages"
    EVENTS = "channel:events"
    SYSTEM = "channel:system"  # job lifecycle events


class BrokerEvent(str, Enum):
    """Event types published on Channels.SYSTEM."""

    JOB_ADDED = "job_added"
    JOB_COMPLETED = "job_completed"
    JOB_RETRYING = "job_retrying"
    JOB_FAILED = "job_failed"


class QueueConfig(BaseModel):
    """Per-queue settings. Timeout is in seconds."""

    model_config = ConfigDict(extra="forbid")

    max_retries: int = Field(default=3, ge=1, description="Dispatch attempts before a job fails")
    timeout: float = Field(default=30.0, gt=0, description="Per-job execution timeout (seconds)")
    concurrency: int = Field(default=1, ge=1, description="Max in-flight jobs per worker")


class Job(BaseModel):
    """
    A unit of deferred work.

    The record lives in the queue's jobs hash; the sorted sets only hold ids.
    """

    id: str
    queue: str
    data: Any = None
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = Field(..., ge=1)
    priority: int = 0
    priority_score: float = Field(..., description="created_at - priority * 1000; lower runs first")
    timeout: float = Field(..., gt=0)
    created_at: int
    run_at: Optional[int] = Field(default=None, description="When a delayed/retrying job becomes pending")
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    error: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class QueueStats(BaseModel):
    """Current collection sizes plus cumulative counters for one queue."""

    name: str
    pending: int = 0
    delayed: int = 0
    active: int = 0
    failed: int = 0
    total: int = 0
    processed_total: int = 0
    failed_total: int = 0
    worker: str = Field(default="inactive", description="active | inactive")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MessageEnvelope(BaseModel):
    """JSON envelope for every pub/sub message."""

    id: str
    channel: str
    data: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
