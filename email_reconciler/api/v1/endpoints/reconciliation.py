"""
Reconciliation management endpoints.
"""
import time
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from email_reconciler.api.deps import get_scheduler, get_settings_store, require_admin
from email_reconciler.models.db.enums import TriggerSource
from email_reconciler.models.schemas.base import ResponseBase
from email_reconciler.models.schemas.reconciliation import (
    ReconciliationResultRead,
    SchedulerStatusRead,
    TaskConfigRead,
    TaskConfigUpdate,
    TaskRead,
    TaskRunRequest,
    TaskValidationRead,
)
from email_reconciler.reconciliation.scheduler import ReconciliationScheduler
from email_reconciler.reconciliation.task_config import (
    SettingsProvider,
    TaskConfig,
    is_valid_cron,
    load_task_config,
    save_task_config,
)
from email_reconciler.reconciliation.types import ReconciliationResult
from email_reconciler.utils import get_logger, log_business_event, log_performance

router = APIRouter(dependencies=[Depends(require_admin)])
logger = get_logger(__name__)


def _result_payload(task_id: str, result: ReconciliationResult) -> dict:
    return ReconciliationResultRead(task_id=task_id, **result.as_dict()).model_dump(mode="json")


def _require_task(scheduler: ReconciliationScheduler, task_id: str):
    task = scheduler.registry.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Unknown reconciliation task '{task_id}'")
    return task


@router.get(
    "/status",
    response_model=SchedulerStatusRead,
    summary="Scheduler status"
)
async def get_scheduler_status(
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
) -> SchedulerStatusRead:
    return SchedulerStatusRead(**scheduler.get_status())


@router.get(
    "/tasks",
    response_model=List[TaskRead],
    summary="List registered reconciliation tasks"
)
async def list_tasks(
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
    settings: SettingsProvider = Depends(get_settings_store),
) -> List[TaskRead]:
    tasks: List[TaskRead] = []
    for task in scheduler.registry.get_all():
        task_config = await load_task_config(settings, task.id)
        tasks.append(TaskRead(
            id=task.id,
            name=task.name,
            description=task.description,
            config=TaskConfigRead(
                enabled=task_config.enabled,
                cron=task_config.cron,
                window_hours=task_config.window_hours,
            ),
            is_scheduled=scheduler.is_task_scheduled(task.id),
            schedule=scheduler.get_task_schedule(task.id),
        ))
    return tasks


@router.put(
    "/tasks/{task_id}/config",
    response_model=ResponseBase,
    summary="Update a task's schedule and window"
)
async def update_task_config(
    task_id: str,
    update: TaskConfigUpdate,
    request: Request,
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
    settings: SettingsProvider = Depends(get_settings_store),
) -> ResponseBase:
    """Validate and persist the configuration, then reschedule the task."""
    request_id = getattr(request.state, "request_id", None)
    _require_task(scheduler, task_id)

    cron = update.cron.strip() if update.cron and update.cron.strip() else None
    if cron is not None and not is_valid_cron(cron):
        raise HTTPException(status_code=400, detail=f"Invalid cron expression: {cron}")
    if update.enabled and cron is None:
        raise HTTPException(status_code=400, detail="A cron expression is required to enable a task")

    await save_task_config(
        settings,
        task_id,
        TaskConfig(enabled=update.enabled, cron=cron, window_hours=update.window_hours),
        updated_by=update.updated_by,
    )
    await scheduler.restart_task(task_id)

    log_business_event(
        event_type="reconciliation_config_updated",
        details={
            "task_id": task_id,
            "enabled": update.enabled,
            "cron": cron,
            "window_hours": update.window_hours,
        },
        user_id=update.updated_by,
        request_id=request_id,
    )
    return ResponseBase(
        success=True,
        message=f"Configuration saved for task '{task_id}'",
        data={
            "task_id": task_id,
            "is_scheduled": scheduler.is_task_scheduled(task_id),
            "schedule": scheduler.get_task_schedule(task_id),
        },
    )


@router.post(
    "/tasks/{task_id}/validate",
    response_model=TaskValidationRead,
    summary="Pre-flight configuration check"
)
async def validate_task(
    task_id: str,
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
) -> TaskValidationRead:
    problems = await scheduler.validate_task(task_id)
    if problems is None:
        raise HTTPException(status_code=404, detail=f"Unknown reconciliation task '{task_id}'")
    return TaskValidationRead(task_id=task_id, valid=not problems, problems=problems)


@router.post(
    "/tasks/{task_id}/run",
    response_model=ResponseBase,
    summary="Trigger a reconciliation run now"
)
async def run_task(
    task_id: str,
    request: Request,
    response: Response,
    run_request: Optional[TaskRunRequest] = None,
    wait: bool = Query(True, description="Wait for the run and return its result"),
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
) -> ResponseBase:
    """Run a task out of band.

    With ``wait=false`` the run starts in the background and 202 is returned.
    A run that finds the task already running on any instance answers 409.
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", None)
    triggered_by = run_request.triggered_by if run_request else None
    _require_task(scheduler, task_id)

    log_business_event(
        event_type="manual_reconciliation_triggered",
        details={"task_id": task_id, "wait": wait},
        user_id=triggered_by,
        request_id=request_id,
    )

    if not wait:
        scheduler.trigger_in_background(task_id, TriggerSource.API, triggered_by)
        response.status_code = status.HTTP_202_ACCEPTED
        return ResponseBase(
            success=True,
            message=f"Reconciliation run for '{task_id}' started",
            data={"task_id": task_id},
        )

    result = await scheduler.execute_task(task_id, TriggerSource.API, triggered_by)
    if result is None:
        raise HTTPException(
            status_code=409,
            detail=f"Reconciliation for '{task_id}' is already running elsewhere; run skipped",
        )

    log_performance(
        operation="run_reconciliation_task",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"task_id": task_id, "success": result.success},
    )
    return ResponseBase(
        success=result.success,
        message="Reconciliation completed" if result.success else "Reconciliation completed with errors",
        data=_result_payload(task_id, result),
    )
