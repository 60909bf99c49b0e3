"""Key-value developer settings store (runtime per-task configuration)."""
from __future__ import annotations

import asyncio
from typing import Callable, Optional

from sqlalchemy.orm import Session

from email_reconciler.database import SessionLocal
from email_reconciler.models.db import DeveloperSetting
from email_reconciler.utils import get_logger
from email_reconciler.utils.time import utc_now

logger = get_logger(__name__)


class DeveloperSettingsStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def _get(self, key: str) -> Optional[str]:
        with self._session_factory() as session:
            row = session.get(DeveloperSetting, key)
            return row.value if row else None

    def _set(self, key: str, value: Optional[str], updated_by: Optional[str]) -> None:
        with self._session_factory() as session:
            try:
                row = session.get(DeveloperSetting, key)
                if row is None:
                    row = DeveloperSetting(key=key)
                    session.add(row)
                row.value = value
                row.updated_by = updated_by
                row.updated_at = utc_now()
                session.commit()
            except Exception:
                session.rollback()
                raise

    async def get(self, key: str) -> Optional[str]:
        """Setting value, or None when missing or unreadable."""
        try:
            return await asyncio.to_thread(self._get, key)
        except Exception as e:
            logger.error("Failed to read developer setting", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Optional[str], updated_by: Optional[str] = None) -> None:
        await asyncio.to_thread(self._set, key, value, updated_by)
        logger.info("Developer setting updated", key=key, updated_by=updated_by)


__all__ = ["DeveloperSettingsStore"]
