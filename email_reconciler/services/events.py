"""Event log persistence (sink for ``ReconciliationEventLogger``)."""
from __future__ import annotations

import asyncio
from typing import Callable

from sqlalchemy.orm import Session

from email_reconciler.database import SessionLocal
from email_reconciler.models.db import EventLog
from email_reconciler.reconciliation.event_logger import EventLogInput


class EventLogStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def _create_event(self, event: EventLogInput) -> str:
        with self._session_factory() as session:
            try:
                row = EventLog(
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    event_type=event.event_type,
                    event_category=event.event_category,
                    title=event.title,
                    description=event.description,
                    event_metadata=event.metadata,
                )
                session.add(row)
                session.commit()
                return row.id
            except Exception:
                session.rollback()
                raise

    def _list_for_entity(self, entity_type: str, entity_id: str, limit: int) -> list[EventLog]:
        with self._session_factory() as session:
            return (
                session.query(EventLog)
                .filter(EventLog.entity_type == entity_type, EventLog.entity_id == entity_id)
                .order_by(EventLog.created_at.desc())
                .limit(limit)
                .all()
            )

    async def create_event(self, event: EventLogInput) -> str:
        return await asyncio.to_thread(self._create_event, event)

    async def list_for_entity(self, entity_type: str, entity_id: str, limit: int = 50) -> list[EventLog]:
        return await asyncio.to_thread(self._list_for_entity, entity_type, entity_id, limit)


__all__ = ["EventLogStore"]
