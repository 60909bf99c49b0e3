"""Scheduler: cron registration, lock-guarded execution and run auditing."""
import asyncio
from datetime import timedelta
from zoneinfo import ZoneInfo

import pytest

from email_reconciler.models.db.enums import TriggerSource
from email_reconciler.reconciliation.event_logger import ReconciliationEventLogger
from email_reconciler.reconciliation import scheduler as scheduler_module
from email_reconciler.reconciliation.scheduler import ReconciliationScheduler, lock_name_for
from email_reconciler.reconciliation.types import ReconciliationResult, ReconciliationSummary
from email_reconciler.utils.time import utc_now

from tests.fakes import FakeSettings, RecordingEventSink, StubTask


def _enabled(task_id: str, cron: str = "*/5 * * * *", window: str | None = None) -> dict:
    values = {
        f"reconciliation_{task_id}_enabled": "true",
        f"reconciliation_{task_id}_cron": cron,
    }
    if window is not None:
        values[f"reconciliation_{task_id}_window_hours"] = window
    return values


@pytest.fixture()
def make_scheduler(registry, lock_provider, event_logger):
    def _make(settings=None, logger=None):
        return ReconciliationScheduler(registry, settings or FakeSettings(), lock_provider, logger or event_logger)

    return _make


def test_lock_name_is_per_task():
    assert lock_name_for("postmark") == "reconciliation_postmark"


@pytest.mark.asyncio
async def test_disabled_task_is_not_scheduled(registry, make_scheduler):
    registry.register(StubTask("postmark"))
    scheduler = make_scheduler(FakeSettings({"reconciliation_postmark_cron": "*/5 * * * *"}))

    await scheduler.start()

    assert scheduler.is_running is True
    assert scheduler.is_task_scheduled("postmark") is False
    assert scheduler.get_status()["is_initialized"] is True


@pytest.mark.asyncio
async def test_enabled_without_cron_or_with_bad_cron_is_not_scheduled(registry, make_scheduler):
    registry.register(StubTask("a"))
    registry.register(StubTask("b"))
    settings = FakeSettings({"reconciliation_a_enabled": "true", **_enabled("b", cron="every five minutes")})
    scheduler = make_scheduler(settings)

    await scheduler.start()

    assert scheduler.is_task_scheduled("a") is False
    assert scheduler.is_task_scheduled("b") is False


@pytest.mark.asyncio
async def test_enabled_task_gets_cron_job(registry, make_scheduler):
    registry.register(StubTask("postmark"))
    scheduler = make_scheduler(FakeSettings(_enabled("postmark")))

    await scheduler.start()
    await asyncio.sleep(0)

    assert scheduler.get_task_schedule("postmark") == "*/5 * * * *"
    (job,) = scheduler.get_status()["jobs"]
    assert job["task_id"] == "postmark"
    assert job["is_active"] is True
    assert job["next_run_at"] > utc_now()
    scheduler.stop()


@pytest.mark.asyncio
async def test_rescheduling_replaces_existing_job(registry, make_scheduler):
    registry.register(StubTask("postmark"))
    settings = FakeSettings(_enabled("postmark"))
    scheduler = make_scheduler(settings)
    await scheduler.start()
    first_handle = scheduler._jobs["postmark"].handle

    settings.values["reconciliation_postmark_cron"] = "0 * * * *"
    await scheduler.restart_task("postmark")
    await asyncio.sleep(0)

    assert first_handle.cancelled()
    assert len(scheduler.get_status()["jobs"]) == 1
    assert scheduler.get_task_schedule("postmark") == "0 * * * *"
    scheduler.stop()


@pytest.mark.asyncio
async def test_disabling_then_restarting_removes_job(registry, make_scheduler):
    registry.register(StubTask("postmark"))
    settings = FakeSettings(_enabled("postmark"))
    scheduler = make_scheduler(settings)
    await scheduler.start()

    settings.values["reconciliation_postmark_enabled"] = "false"
    await scheduler.restart_task("postmark")

    assert scheduler.is_task_scheduled("postmark") is False


@pytest.mark.asyncio
async def test_one_task_failing_to_schedule_does_not_block_others(registry, make_scheduler):
    class FlakySettings(FakeSettings):
        async def get(self, key):
            if key.startswith("reconciliation_broken_"):
                raise RuntimeError("settings table unavailable")
            return await super().get(key)

    registry.register(StubTask("broken"))
    registry.register(StubTask("postmark"))
    scheduler = make_scheduler(FlakySettings(_enabled("postmark")))

    await scheduler.start()

    assert scheduler.is_task_scheduled("broken") is False
    assert scheduler.is_task_scheduled("postmark") is True
    scheduler.stop()


@pytest.mark.asyncio
async def test_start_is_idempotent_and_stop_clears_jobs(registry, make_scheduler):
    registry.register(StubTask("postmark"))
    scheduler = make_scheduler(FakeSettings(_enabled("postmark")))

    await scheduler.start()
    handle = scheduler._jobs["postmark"].handle
    await scheduler.start()
    assert scheduler._jobs["postmark"].handle is handle

    scheduler.stop()
    assert scheduler.is_running is False
    assert scheduler.get_status()["jobs"] == []


@pytest.mark.asyncio
async def test_schedule_unknown_task_is_ignored(make_scheduler):
    scheduler = make_scheduler()
    await scheduler.schedule_task("nope")
    assert scheduler.is_task_scheduled("nope") is False


@pytest.mark.asyncio
async def test_execute_unknown_task_returns_none(make_scheduler):
    assert await make_scheduler().execute_task("nope") is None


@pytest.mark.asyncio
async def test_execute_runs_task_with_configured_window(registry, make_scheduler, event_sink):
    task = StubTask("postmark")
    registry.register(task)
    scheduler = make_scheduler(FakeSettings(_enabled("postmark", window="24")))

    result = await scheduler.execute_task("postmark", TriggerSource.API, "ops@example.com")

    assert result.success is True
    assert result.summary.items_new == 1
    assert result.duration_ms >= 0
    (options,) = task.calls
    assert options.window_hours == 24
    assert options.trigger_source == TriggerSource.API
    assert options.triggered_by == "ops@example.com"
    assert [e.event_type for e in event_sink.events] == ["reconciliation_started", "reconciliation_completed"]
    assert event_sink.events[1].metadata["start_event_id"] == "evt-1"


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["abc", "0", "-5"])
async def test_unusable_window_falls_back_to_default(registry, make_scheduler, raw):
    task = StubTask("postmark")
    registry.register(task)
    scheduler = make_scheduler(FakeSettings({"reconciliation_postmark_window_hours": raw}))

    await scheduler.execute_task("postmark")

    assert task.calls[0].window_hours == 72


@pytest.mark.asyncio
async def test_concurrent_runs_of_same_task_are_exclusive(registry, make_scheduler, lock_provider):
    task = StubTask("postmark", delay=0.05)
    registry.register(task)
    scheduler = make_scheduler()

    first, second = await asyncio.gather(
        scheduler.execute_task("postmark"),
        scheduler.execute_task("postmark"),
    )

    assert [r is None for r in (first, second)].count(True) == 1
    assert len(task.calls) == 1
    assert lock_provider.is_locked(lock_name_for("postmark")) is False


@pytest.mark.asyncio
async def test_different_tasks_run_concurrently(registry, make_scheduler):
    registry.register(StubTask("a", delay=0.02))
    registry.register(StubTask("b", delay=0.02))
    scheduler = make_scheduler()

    results = await asyncio.gather(scheduler.execute_task("a"), scheduler.execute_task("b"))

    assert all(r is not None and r.success for r in results)


@pytest.mark.asyncio
async def test_throwing_task_becomes_failed_result(registry, make_scheduler, event_sink, lock_provider):
    registry.register(StubTask("postmark", error=RuntimeError("provider exploded")))
    scheduler = make_scheduler()

    result = await scheduler.execute_task("postmark")

    assert result.success is False
    assert result.errors == ["provider exploded"]
    assert result.summary == ReconciliationSummary()
    assert [e.event_type for e in event_sink.events] == ["reconciliation_started", "reconciliation_failed"]
    assert lock_provider.is_locked(lock_name_for("postmark")) is False


@pytest.mark.asyncio
async def test_partial_failure_result_passes_through(registry, make_scheduler, event_sink):
    partial = ReconciliationResult(
        success=False,
        summary=ReconciliationSummary(items_fetched=4, items_new=2),
        errors=["Inbound reconciliation failed: timeout"],
    )
    registry.register(StubTask("postmark", result=partial))
    scheduler = make_scheduler()

    result = await scheduler.execute_task("postmark")

    assert result.errors == ["Inbound reconciliation failed: timeout"]
    assert result.summary.items_new == 2
    assert event_sink.events[-1].event_type == "reconciliation_failed"


@pytest.mark.asyncio
async def test_audit_log_failure_does_not_fail_run(registry, make_scheduler):
    task = StubTask("postmark")
    registry.register(task)
    scheduler = make_scheduler(logger=ReconciliationEventLogger(RecordingEventSink(fail=True)))

    result = await scheduler.execute_task("postmark")

    assert result.success is True
    assert len(task.calls) == 1


@pytest.mark.asyncio
async def test_background_runs_are_tracked(registry, make_scheduler):
    task = StubTask("postmark", delay=0.01)
    registry.register(task)
    scheduler = make_scheduler()

    run = scheduler.trigger_in_background("postmark", TriggerSource.STARTUP, "system")
    assert await scheduler.wait_for_runs(timeout=1) is True

    assert run.done()
    assert run.result().success is True
    assert task.calls[0].trigger_source == TriggerSource.STARTUP
    assert await scheduler.wait_for_runs(timeout=0) is True


@pytest.mark.asyncio
async def test_wait_for_runs_times_out(registry, make_scheduler):
    registry.register(StubTask("postmark", delay=0.5))
    scheduler = make_scheduler()

    run = scheduler.trigger_in_background("postmark")
    assert await scheduler.wait_for_runs(timeout=0.01) is False
    run.cancel()


@pytest.mark.asyncio
async def test_validate_task_collects_problems(registry, make_scheduler):
    registry.register(StubTask("postmark", problems=["POSTMARK_API_TOKEN environment variable is not set"]))
    settings = FakeSettings({
        "reconciliation_postmark_enabled": "true",
        "reconciliation_postmark_window_hours": "zero",
    })
    scheduler = make_scheduler(settings)

    problems = await scheduler.validate_task("postmark")

    assert problems[0] == "POSTMARK_API_TOKEN environment variable is not set"
    assert "Task is enabled but no cron expression is configured" in problems
    assert any(p.startswith("window_hours must be a positive integer") for p in problems)
    assert await scheduler.validate_task("missing") is None


@pytest.mark.asyncio
async def test_validate_task_flags_bad_cron(registry, make_scheduler):
    registry.register(StubTask("postmark"))
    scheduler = make_scheduler(FakeSettings({"reconciliation_postmark_cron": "bogus"}))

    assert await scheduler.validate_task("postmark") == ["Invalid cron expression: bogus"]


class _EveryFewMillis:
    """croniter stand-in whose next slot is always 10ms after the base."""

    def __init__(self, expression, base):
        self.base = base

    def get_next(self, ret_type):
        return self.base + timedelta(milliseconds=10)


@pytest.mark.asyncio
async def test_cron_tick_runs_task_as_scheduled_under_lock(registry, make_scheduler, lock_provider, monkeypatch):
    lock_states: list[bool] = []

    class LockAwareTask(StubTask):
        async def execute(self, options):
            lock_states.append(lock_provider.is_locked(lock_name_for(self.id)))
            return await super().execute(options)

    task = LockAwareTask("postmark")
    registry.register(task)
    monkeypatch.setattr(scheduler_module, "croniter", _EveryFewMillis)
    scheduler = make_scheduler(FakeSettings(_enabled("postmark")))

    await scheduler.start()
    await asyncio.sleep(0.1)
    scheduler.stop()
    assert await scheduler.wait_for_runs(timeout=1) is True

    assert task.calls
    assert all(options.trigger_source == TriggerSource.SCHEDULED for options in task.calls)
    assert all(options.triggered_by is None for options in task.calls)
    assert lock_states and all(lock_states)
    assert lock_provider.is_locked(lock_name_for("postmark")) is False


@pytest.mark.asyncio
async def test_cron_is_evaluated_in_configured_timezone(registry, make_scheduler, monkeypatch):
    monkeypatch.setitem(scheduler_module.SCHEDULER_SETTINGS, "timezone", "America/New_York")
    registry.register(StubTask("postmark"))
    scheduler = make_scheduler(FakeSettings(_enabled("postmark", cron="0 9 * * *")))

    await scheduler.start()
    await asyncio.sleep(0)

    next_run = scheduler._jobs["postmark"].next_run_at
    local = next_run.astimezone(ZoneInfo("America/New_York"))
    assert (local.hour, local.minute) == (9, 0)
    assert next_run.utcoffset() == timedelta(0)
    scheduler.stop()


def test_schedule_timezone_defaults_to_utc(monkeypatch):
    monkeypatch.setitem(scheduler_module.SCHEDULER_SETTINGS, "timezone", "")
    assert scheduler_module.schedule_timezone().key == "UTC"
