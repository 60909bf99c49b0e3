"""Per-task runtime configuration stored in developer settings.

Keys are namespaced ``reconciliation_<task_id>_<suffix>`` with suffixes
``enabled`` ("true" enables), ``cron`` (5-field expression, UTC) and
``window_hours`` (positive integer).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from croniter import croniter

from email_reconciler.config import RECONCILIATION_SETTINGS

ENABLED = "enabled"
CRON = "cron"
WINDOW_HOURS = "window_hours"


class SettingsProvider(Protocol):
    async def get(self, key: str) -> Optional[str]: ...
    async def set(self, key: str, value: Optional[str], updated_by: Optional[str] = None) -> None: ...


@dataclass(slots=True)
class TaskConfig:
    enabled: bool
    cron: str | None
    window_hours: int


def setting_key(task_id: str, suffix: str) -> str:
    return f"reconciliation_{task_id}_{suffix}"


def default_window_hours() -> int:
    return int(RECONCILIATION_SETTINGS["default_window_hours"])


def is_valid_cron(expression: str | None) -> bool:
    if not expression or not expression.strip():
        return False
    try:
        return bool(croniter.is_valid(expression.strip()))
    except Exception:
        return False


def parse_window_hours(raw: str | None) -> int | None:
    """Positive integer window, or None when unset/unparsable/non-positive."""
    if raw is None:
        return None
    try:
        value = int(str(raw).strip())
    except ValueError:
        return None
    return value if value > 0 else None


async def load_task_config(settings: SettingsProvider, task_id: str) -> TaskConfig:
    enabled = await settings.get(setting_key(task_id, ENABLED))
    cron = await settings.get(setting_key(task_id, CRON))
    window = parse_window_hours(await settings.get(setting_key(task_id, WINDOW_HOURS)))
    return TaskConfig(
        enabled=enabled == "true",
        cron=cron.strip() if cron and cron.strip() else None,
        window_hours=window or default_window_hours(),
    )


async def save_task_config(
    settings: SettingsProvider,
    task_id: str,
    config: TaskConfig,
    updated_by: str | None = None,
) -> None:
    await settings.set(setting_key(task_id, ENABLED), "true" if config.enabled else "false", updated_by)
    await settings.set(setting_key(task_id, CRON), config.cron or None, updated_by)
    await settings.set(setting_key(task_id, WINDOW_HOURS), str(config.window_hours), updated_by)


__all__ = [
    "SettingsProvider",
    "TaskConfig",
    "setting_key",
    "default_window_hours",
    "is_valid_cron",
    "parse_window_hours",
    "load_task_config",
    "save_task_config",
]
