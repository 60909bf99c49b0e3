"""Reconciliation task contract, value objects and the task registry.

A reconciliation task re-derives authoritative state for one external data
source (Postmark today) over a trailing window. Implementations must be
idempotent: running the same window twice may not create or change anything
the first run did not.

Adding a provider:
 1. Subclass ``ReconciliationTask``.
 2. Register an instance with the application's ``TaskRegistry``.
 3. Configure ``reconciliation_<id>_enabled`` / ``_cron`` / ``_window_hours``
    in developer settings; the scheduler picks it up on start or restart.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from email_reconciler.models.db.enums import TriggerSource
from email_reconciler.utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ReconciliationOptions:
    window_hours: int
    trigger_source: TriggerSource = TriggerSource.MANUAL
    triggered_by: str | None = None
    task_options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.window_hours <= 0:
            raise ValueError(f"window_hours must be positive, got {self.window_hours}")
        object.__setattr__(self, "task_options", MappingProxyType(dict(self.task_options)))


@dataclass(slots=True)
class ReconciliationSummary:
    items_fetched: int = 0
    items_new: int = 0
    items_updated: int = 0
    corrections: int = 0

    def __add__(self, other: "ReconciliationSummary") -> "ReconciliationSummary":
        return ReconciliationSummary(
            items_fetched=self.items_fetched + other.items_fetched,
            items_new=self.items_new + other.items_new,
            items_updated=self.items_updated + other.items_updated,
            corrections=self.corrections + other.corrections,
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "items_fetched": self.items_fetched,
            "items_new": self.items_new,
            "items_updated": self.items_updated,
            "corrections": self.corrections,
        }


@dataclass(slots=True)
class ReconciliationResult:
    success: bool
    summary: ReconciliationSummary = field(default_factory=ReconciliationSummary)
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0  # stamped by the scheduler, never by the task

    @classmethod
    def failure(cls, message: str, *, duration_ms: int = 0) -> "ReconciliationResult":
        return cls(success=False, summary=ReconciliationSummary(), errors=[message], duration_ms=duration_ms)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "summary": self.summary.as_dict(),
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
        }


class ReconciliationTask(ABC):
    """One pluggable unit of reconciliation work. Stateless across runs."""

    id: str
    name: str
    description: str

    @abstractmethod
    async def execute(self, options: ReconciliationOptions) -> ReconciliationResult:
        """Reconcile the window described by ``options``. Must be idempotent."""

    @abstractmethod
    async def validate_config(self) -> list[str]:
        """Return human-readable configuration problems; empty means healthy."""


class TaskRegistry:
    """Lookup table of registered tasks keyed by task id."""

    def __init__(self) -> None:
        self._tasks: dict[str, ReconciliationTask] = {}

    def register(self, task: ReconciliationTask) -> None:
        if task.id in self._tasks:
            logger.warning("Task already registered, overwriting", task_id=task.id)
        self._tasks[task.id] = task
        logger.info("Registered reconciliation task", task_id=task.id)

    def get(self, task_id: str) -> ReconciliationTask | None:
        return self._tasks.get(task_id)

    def get_all(self) -> list[ReconciliationTask]:
        return list(self._tasks.values())

    def has(self, task_id: str) -> bool:
        return task_id in self._tasks

    def unregister(self, task_id: str) -> bool:
        return self._tasks.pop(task_id, None) is not None

    def clear(self) -> None:
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._tasks)


__all__ = [
    "ReconciliationOptions",
    "ReconciliationSummary",
    "ReconciliationResult",
    "ReconciliationTask",
    "TaskRegistry",
]
