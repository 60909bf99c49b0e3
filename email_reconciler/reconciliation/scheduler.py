"""Cron-driven reconciliation scheduler.

One instance per process, built by the application lifespan and reached
through ``app.state.scheduler``. For every registered task it reads
``reconciliation_<id>_enabled`` / ``_cron`` from developer settings and runs a
cron loop as an ``asyncio.Task``. Each tick spawns an independent run. Expressions are
evaluated in ``SCHEDULER_SETTINGS["timezone"]`` (UTC by default).

Every run goes through ``execute_task``, which holds the advisory lock
``reconciliation_<id>`` for the whole run. Instances that lose the lock skip the
tick: in a multi-instance deployment that is the expected outcome, not an error.

``run_task_with_logging`` never raises. A task that throws becomes a failed
``ReconciliationResult`` and the completion audit event is always written.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from email_reconciler.config import SCHEDULER_SETTINGS
from email_reconciler.models.db.enums import TriggerSource
from email_reconciler.reconciliation.event_logger import ReconciliationEventLogger
from email_reconciler.reconciliation.task_config import (
    CRON,
    ENABLED,
    WINDOW_HOURS,
    SettingsProvider,
    default_window_hours,
    is_valid_cron,
    load_task_config,
    parse_window_hours,
    setting_key,
)
from email_reconciler.reconciliation.types import (
    ReconciliationOptions,
    ReconciliationResult,
    ReconciliationTask,
    TaskRegistry,
)
from email_reconciler.services.advisory_lock import LockProvider
from email_reconciler.utils import get_logger, log_performance
from email_reconciler.utils.time import ensure_utc, utc_now

logger = get_logger(__name__)


def lock_name_for(task_id: str) -> str:
    return f"reconciliation_{task_id}"


def schedule_timezone() -> ZoneInfo:
    """Zone cron expressions are evaluated in (UTC unless configured)."""
    return ZoneInfo(str(SCHEDULER_SETTINGS.get("timezone") or "UTC"))


@dataclass
class ScheduledJob:
    task_id: str
    schedule: str
    handle: Optional[asyncio.Task] = None
    next_run_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.handle is not None and not self.handle.done()


class ReconciliationScheduler:
    def __init__(
        self,
        registry: TaskRegistry,
        settings: SettingsProvider,
        lock_provider: LockProvider,
        event_logger: ReconciliationEventLogger,
    ):
        self.registry = registry
        self.settings = settings
        self.lock_provider = lock_provider
        self.event_logger = event_logger
        self._jobs: dict[str, ScheduledJob] = {}
        self._runs: set[asyncio.Task] = set()
        self._is_running = False
        self._is_initialized = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    async def start(self) -> None:
        if self._is_running:
            logger.info("Reconciliation scheduler already running")
            return
        self._is_running = True

        tasks = self.registry.get_all()
        logger.info("Starting reconciliation scheduler", task_count=len(tasks))
        for task in tasks:
            try:
                await self.schedule_task(task.id)
            except Exception as e:
                logger.error("Failed to schedule task", task_id=task.id, error=str(e), exc_info=True)
        self._is_initialized = True
        logger.info("Reconciliation scheduler started", scheduled=sorted(self._jobs))

    def stop(self) -> None:
        for task_id in list(self._jobs):
            self.stop_task(task_id)
        self._is_running = False
        logger.info("Reconciliation scheduler stopped")

    async def schedule_task(self, task_id: str) -> None:
        if not self.registry.has(task_id):
            logger.warning("Cannot schedule unknown task", task_id=task_id)
            return

        config = await load_task_config(self.settings, task_id)
        if not config.enabled:
            logger.info("Task disabled, not scheduling", task_id=task_id)
            self.stop_task(task_id)
            return
        if not config.cron:
            logger.warning("Task enabled but no cron expression configured", task_id=task_id)
            self.stop_task(task_id)
            return
        if not is_valid_cron(config.cron):
            logger.warning("Invalid cron expression, not scheduling", task_id=task_id, cron=config.cron)
            self.stop_task(task_id)
            return

        # Replace, never accumulate.
        self.stop_task(task_id)
        job = ScheduledJob(task_id=task_id, schedule=config.cron)
        job.handle = asyncio.create_task(self._cron_loop(job), name=f"reconciliation-cron-{task_id}")
        self._jobs[task_id] = job
        logger.info("Task scheduled", task_id=task_id, cron=config.cron, timezone=schedule_timezone().key)

    def stop_task(self, task_id: str) -> None:
        job = self._jobs.pop(task_id, None)
        if job is None:
            return
        if job.handle is not None:
            job.handle.cancel()
        logger.info("Task unscheduled", task_id=task_id)

    async def restart_task(self, task_id: str) -> None:
        self.stop_task(task_id)
        await self.schedule_task(task_id)

    async def _cron_loop(self, job: ScheduledJob) -> None:
        tz = schedule_timezone()
        while True:
            base = utc_now().astimezone(tz)
            # A slightly early wake-up must not fire the same slot twice.
            if job.next_run_at is not None and base < job.next_run_at:
                base = job.next_run_at.astimezone(tz)
            next_run = ensure_utc(croniter(job.schedule, base).get_next(datetime))
            job.next_run_at = next_run
            await asyncio.sleep(max((next_run - utc_now()).total_seconds(), 0.0))
            self.trigger_in_background(job.task_id, TriggerSource.SCHEDULED)

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #
    async def execute_task(
        self,
        task_id: str,
        trigger_source: TriggerSource | str = TriggerSource.MANUAL,
        triggered_by: Optional[str] = None,
    ) -> Optional[ReconciliationResult]:
        """Run one task under its advisory lock.

        Returns None when the task is unknown or the lock is held elsewhere.
        """
        task = self.registry.get(task_id)
        if task is None:
            logger.error("Cannot execute unknown task", task_id=task_id)
            return None

        source = TriggerSource(trigger_source)
        lock_name = lock_name_for(task_id)
        outcome = await self.lock_provider.with_lock(
            lock_name,
            lambda: self.run_task_with_logging(task, task_id, source, triggered_by),
        )

        if not outcome.acquired:
            if outcome.error is not None:
                logger.error(
                    "Lock acquisition error, run skipped",
                    task_id=task_id,
                    lock_name=lock_name,
                    error=str(outcome.error),
                )
            else:
                logger.info(
                    "Task already running on another instance, skipping",
                    task_id=task_id,
                    trigger_source=source.value,
                )
            return None
        if outcome.error is not None:
            return ReconciliationResult.failure(str(outcome.error))
        return outcome.result

    async def run_task_with_logging(
        self,
        task: ReconciliationTask,
        task_id: str,
        trigger_source: TriggerSource,
        triggered_by: Optional[str] = None,
    ) -> ReconciliationResult:
        window_hours = await self._window_hours(task_id)

        start_event_id: Optional[str] = None
        try:
            start_event_id = await self.event_logger.log_reconciliation_start(
                task_id, task.name, window_hours, triggered_by
            )
        except Exception as e:
            logger.error("Failed to log reconciliation start", task_id=task_id, error=str(e))

        logger.info(
            "Reconciliation run started",
            task_id=task_id,
            trigger_source=trigger_source.value,
            triggered_by=triggered_by,
            window_hours=window_hours,
        )
        started = time.perf_counter()
        try:
            options = ReconciliationOptions(
                window_hours=window_hours,
                trigger_source=trigger_source,
                triggered_by=triggered_by,
            )
            result = await task.execute(options)
            result.duration_ms = int((time.perf_counter() - started) * 1000)
        except Exception as e:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.error("Reconciliation task raised", task_id=task_id, error=str(e), exc_info=True)
            result = ReconciliationResult.failure(str(e), duration_ms=duration_ms)

        try:
            await self.event_logger.log_reconciliation_complete(task_id, task.name, result, start_event_id)
        except Exception as e:
            logger.error("Failed to log reconciliation completion", task_id=task_id, error=str(e))

        log_performance(
            f"reconciliation.{task_id}",
            result.duration_ms,
            {
                "success": result.success,
                "trigger_source": trigger_source.value,
                **result.summary.as_dict(),
                "error_count": len(result.errors),
            },
        )
        return result

    async def _window_hours(self, task_id: str) -> int:
        raw = await self.settings.get(setting_key(task_id, WINDOW_HOURS))
        window = parse_window_hours(raw)
        if window is None:
            if raw is not None:
                logger.warning("Unusable window_hours setting, using default", task_id=task_id, value=raw)
            window = default_window_hours()
        return window

    def trigger_in_background(
        self,
        task_id: str,
        trigger_source: TriggerSource | str = TriggerSource.MANUAL,
        triggered_by: Optional[str] = None,
    ) -> asyncio.Task:
        """Fire-and-forget run; tracked so shutdown can wait for it."""
        run = asyncio.create_task(
            self.execute_task(task_id, trigger_source, triggered_by),
            name=f"reconciliation-run-{task_id}",
        )
        self._runs.add(run)
        run.add_done_callback(self._runs.discard)
        return run

    async def wait_for_runs(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight runs; False if some were still going at the timeout."""
        if not self._runs:
            return True
        _, pending = await asyncio.wait(set(self._runs), timeout=timeout)
        if pending:
            logger.warning("Reconciliation runs still in flight", pending=len(pending))
            return False
        return True

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #
    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self._is_running,
            "is_initialized": self._is_initialized,
            "jobs": [
                {
                    "task_id": job.task_id,
                    "schedule": job.schedule,
                    "is_active": job.is_active,
                    "next_run_at": job.next_run_at,
                }
                for job in self._jobs.values()
            ],
        }

    def is_task_scheduled(self, task_id: str) -> bool:
        return task_id in self._jobs

    def get_task_schedule(self, task_id: str) -> Optional[str]:
        job = self._jobs.get(task_id)
        return job.schedule if job else None

    async def validate_task(self, task_id: str) -> Optional[list[str]]:
        """Configuration problems for a task, or None if it is not registered."""
        task = self.registry.get(task_id)
        if task is None:
            return None

        try:
            problems = list(await task.validate_config())
        except Exception as e:
            problems = [f"Configuration check failed: {e}"]

        enabled = await self.settings.get(setting_key(task_id, ENABLED))
        cron = await self.settings.get(setting_key(task_id, CRON))
        if enabled == "true" and not (cron and cron.strip()):
            problems.append("Task is enabled but no cron expression is configured")
        elif cron and cron.strip() and not is_valid_cron(cron):
            problems.append(f"Invalid cron expression: {cron}")

        raw_window = await self.settings.get(setting_key(task_id, WINDOW_HOURS))
        if raw_window is not None and parse_window_hours(raw_window) is None:
            problems.append(
                f"window_hours must be a positive integer (got {raw_window!r}); "
                f"the default of {default_window_hours()}h is used"
            )
        return problems


__all__ = ["ReconciliationScheduler", "ScheduledJob", "lock_name_for"]
