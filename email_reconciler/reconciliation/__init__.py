"""Reconciliation core: task contract, registry, scheduler and audit logging."""
from email_reconciler.reconciliation.types import (
    ReconciliationOptions,
    ReconciliationResult,
    ReconciliationSummary,
    ReconciliationTask,
    TaskRegistry,
)
from email_reconciler.reconciliation.event_logger import ReconciliationEventLogger
from email_reconciler.reconciliation.scheduler import ReconciliationScheduler

__all__ = [
    "ReconciliationOptions",
    "ReconciliationResult",
    "ReconciliationSummary",
    "ReconciliationTask",
    "TaskRegistry",
    "ReconciliationEventLogger",
    "ReconciliationScheduler",
]
