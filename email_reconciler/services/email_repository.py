"""Email record persistence for reconciliation.

Async facade over synchronous SQLAlchemy sessions: every call opens a short
session in a worker thread (``asyncio.to_thread``) so database I/O never blocks
the event loop. Returned rows are detached (``expire_on_commit=False``).
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from email_reconciler.database import SessionLocal
from email_reconciler.models.db import Email
from email_reconciler.models.db.enums import EmailDirection
from email_reconciler.utils import get_logger
from email_reconciler.utils.time import utc_now

logger = get_logger(__name__)


def _strip_angle_brackets(value: str) -> str:
    return value.strip().lstrip("<").rstrip(">")


class EmailRepository:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    # ------------------------------ sync bodies ------------------------------ #
    def _get_by_postmark_id(self, postmark_message_id: str) -> Optional[Email]:
        with self._session_factory() as session:
            return session.query(Email).filter(Email.postmark_message_id == postmark_message_id).one_or_none()

    def _create(self, fields: dict[str, Any]) -> Email:
        with self._session_factory() as session:
            try:
                email = Email(**fields)
                session.add(email)
                session.commit()
                session.refresh(email)
                return email
            except Exception:
                session.rollback()
                raise

    def _update(self, email_id: int, fields: dict[str, Any]) -> None:
        with self._session_factory() as session:
            try:
                updated = session.query(Email).filter(Email.id == email_id).update(
                    {**fields, "updated_at": utc_now()},
                    synchronize_session=False,
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
        if not updated:
            logger.warning("Email update matched no rows", email_id=email_id)

    def _list_outbound_sent_between(self, from_date: datetime, to_date: datetime) -> list[Email]:
        with self._session_factory() as session:
            return (
                session.query(Email)
                .filter(
                    Email.direction == EmailDirection.OUTBOUND,
                    Email.sent_at >= from_date,
                    Email.sent_at <= to_date,
                )
                .order_by(Email.sent_at.asc(), Email.id.asc())
                .all()
            )

    def _find_thread_id(self, in_reply_to: str) -> Optional[str]:
        bare = _strip_angle_brackets(in_reply_to)
        with self._session_factory() as session:
            parent = (
                session.query(Email)
                .filter(Email.message_id.in_([bare, f"<{bare}>"]))
                .order_by(Email.id.asc())
                .first()
            )
            return parent.thread_id if parent else None

    # ------------------------------ async facade ----------------------------- #
    async def get_by_postmark_id(self, postmark_message_id: str) -> Optional[Email]:
        return await asyncio.to_thread(self._get_by_postmark_id, postmark_message_id)

    async def create(self, **fields: Any) -> Email:
        return await asyncio.to_thread(self._create, fields)

    async def update(self, email_id: int, **fields: Any) -> None:
        """Apply ``fields`` to one record; ``updated_at`` is always stamped."""
        await asyncio.to_thread(self._update, email_id, fields)

    async def list_outbound_sent_between(self, from_date: datetime, to_date: datetime) -> list[Email]:
        return await asyncio.to_thread(self._list_outbound_sent_between, from_date, to_date)

    async def get_or_create_thread_id(self, in_reply_to: Optional[str], message_id: str) -> str:
        """Thread of the message being replied to, or a fresh thread id.

        ``in_reply_to`` is matched against stored RFC Message-IDs with and
        without angle brackets.
        """
        if in_reply_to and in_reply_to.strip():
            thread_id = await asyncio.to_thread(self._find_thread_id, in_reply_to)
            if thread_id:
                logger.debug("Matched reply to existing thread", message_id=message_id, thread_id=thread_id)
                return thread_id
            logger.debug("Reply parent not found, starting new thread", message_id=message_id, in_reply_to=in_reply_to)
        return str(uuid.uuid4())


__all__ = ["EmailRepository"]
