"""MindfulAI — Job Tracking & API Observability Tables."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlmodel import SQLModel, Field, UniqueConstraint

from app.models.meta_models import JSONField, utcnow


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})

SYNC_JOB_TYPE = "meta-marketing-sync"


class BackgroundJob(SQLModel, table=True):
    """One sync invocation, polled by the dashboard for progress."""

    __tablename__ = "background_jobs"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    request_id: str = Field(unique=True, index=True)
    job_type: str = Field(default=SYNC_JOB_TYPE, index=True)
    status: str = Field(default=JobStatus.QUEUED.value, index=True)
    progress: int = Field(default=0, description="0..100")
    error_message: Optional[str] = None
    result_data: Any = JSONField()
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class MetaCronLog(SQLModel, table=True):
    """One run of the daily fan-out."""

    __tablename__ = "meta_cron_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    execution_time: datetime = Field(default_factory=utcnow, index=True)
    accounts_processed: int = 0
    successful_accounts: int = 0
    failed_accounts: int = 0
    results: Any = JSONField()
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class MetaRateLimit(SQLModel, table=True):
    """Latest usage-header snapshot per (account, endpoint)."""

    __tablename__ = "meta_rate_limits"
    __table_args__ = (
        UniqueConstraint("account_id", "endpoint", name="uq_meta_rate_limit"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(index=True)
    endpoint: str
    usage_percent: float = 0.0
    call_count: float = 0.0
    total_cputime: float = 0.0
    total_time: float = 0.0
    estimated_time_to_regain_access: int = 0
    business_use_case: Optional[str] = None
    reset_time_duration: Optional[int] = None
    tier: str = "development"
    last_updated: datetime = Field(default_factory=utcnow)


class MetaApiMetric(SQLModel, table=True):
    """One outbound Graph API call: cost and outcome."""

    __tablename__ = "meta_api_metrics"

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(default="", index=True)
    endpoint: str
    call_type: str = "READ"
    points_used: int = 1
    success: bool = True
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
