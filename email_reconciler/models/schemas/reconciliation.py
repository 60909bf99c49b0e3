"""
Pydantic schemas for the reconciliation admin API.
"""
from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field, ConfigDict


class ReconciliationSummaryRead(BaseModel):
    items_fetched: int = Field(ge=0, description="External items inspected (messages and events)")
    items_new: int = Field(ge=0, description="Records backfilled")
    items_updated: int = Field(ge=0, description="Records updated after state protection")
    corrections: int = Field(ge=0, description="Status corrections driven by delivery events")


class ReconciliationResultRead(BaseModel):
    """Outcome of one reconciliation run."""
    task_id: str
    success: bool
    summary: ReconciliationSummaryRead
    errors: List[str] = Field(default_factory=list)
    duration_ms: int = Field(ge=0, description="Wall clock duration stamped by the scheduler")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "task_id": "postmark",
            "success": True,
            "summary": {"items_fetched": 42, "items_new": 3, "items_updated": 5, "corrections": 1},
            "errors": [],
            "duration_ms": 1840,
        }
    })


class ScheduledJobRead(BaseModel):
    task_id: str
    schedule: str = Field(description="Cron expression evaluated in UTC")
    is_active: bool
    next_run_at: Optional[datetime] = None


class SchedulerStatusRead(BaseModel):
    is_running: bool
    is_initialized: bool
    jobs: List[ScheduledJobRead] = Field(default_factory=list)


class TaskConfigRead(BaseModel):
    enabled: bool
    cron: Optional[str] = None
    window_hours: int


class TaskRead(BaseModel):
    id: str
    name: str
    description: str
    config: TaskConfigRead
    is_scheduled: bool
    schedule: Optional[str] = None


class TaskConfigUpdate(BaseModel):
    """Replace a task's runtime configuration; the task is rescheduled on save."""
    enabled: bool = Field(description="Whether the cron schedule is active")
    cron: Optional[str] = Field(None, description="5-field cron expression (UTC); required when enabled")
    window_hours: int = Field(72, gt=0, description="Trailing window to reconcile, in hours")
    updated_by: Optional[str] = Field(None, description="Operator identity recorded with the change")


class TaskRunRequest(BaseModel):
    triggered_by: Optional[str] = Field(None, description="Operator identity recorded in the audit trail")


class TaskValidationRead(BaseModel):
    task_id: str
    valid: bool
    problems: List[str] = Field(default_factory=list)
