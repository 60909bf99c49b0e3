"""Audit trail for reconciliation runs and per-message delivery events.

Writes go to the event log through an ``EventSink``:

* system events: ``reconciliation_started``, ``reconciliation_completed``,
  ``reconciliation_failed``, ``reconciliation_note``
* email events: ``email_delivered``, ``email_bounced``, ``email_opened``,
  ``email_clicked``, ``email_spam_complaint``

IDEMPOTENCY NOTE: nothing here deduplicates and the event log has no unique
constraint. Callers must only log an external event once, by comparing its
timestamp against the record's ``last_reconciled_at`` before calling.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from email_reconciler.models.db.enums import EmailEventType, EventCategory, StateSource
from email_reconciler.reconciliation.types import ReconciliationResult
from email_reconciler.utils import get_logger
from email_reconciler.utils.time import utc_now

logger = get_logger(__name__)


@dataclass(slots=True)
class EventLogInput:
    entity_type: str
    entity_id: str
    event_type: str
    event_category: str
    title: str
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class EventSink(Protocol):
    async def create_event(self, event: EventLogInput) -> str: ...


@dataclass(slots=True)
class EmailEventDetails:
    postmark_message_id: str
    source: StateSource
    recipient: str | None = None
    bounce_reason: str | None = None
    bounce_type: str | None = None
    clicked_url: str | None = None
    user_agent: str | None = None
    geo: dict[str, str] | None = None

    def as_metadata(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "postmark_message_id": self.postmark_message_id,
            "source": self.source.value,
        }
        for key in ("recipient", "bounce_reason", "bounce_type", "clicked_url", "user_agent", "geo"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


_EMAIL_EVENT_TITLES: dict[EmailEventType, str] = {
    EmailEventType.DELIVERED: "Email Delivered",
    EmailEventType.BOUNCED: "Email Bounced",
    EmailEventType.OPENED: "Email Opened",
    EmailEventType.CLICKED: "Email Link Clicked",
    EmailEventType.SPAM_COMPLAINT: "Spam Complaint Received",
}


def _email_event_description(event_type: EmailEventType, details: EmailEventDetails) -> str:
    if event_type is EmailEventType.DELIVERED:
        return f"Delivered to {details.recipient or details.postmark_message_id}"
    if event_type is EmailEventType.BOUNCED:
        return details.bounce_reason or f"Bounced: {details.bounce_type or 'unknown'}"
    if event_type is EmailEventType.OPENED:
        return f"Opened by {details.recipient or 'recipient'}"
    if event_type is EmailEventType.CLICKED:
        return details.clicked_url or "Link clicked"
    return f"Spam complaint from {details.recipient or 'recipient'}"


def _system_entity_id(task_id: str) -> str:
    return f"reconciliation_{task_id}"


class ReconciliationEventLogger:
    def __init__(self, sink: EventSink) -> None:
        self._sink = sink

    async def log_reconciliation_start(
        self,
        task_id: str,
        task_name: str,
        window_hours: int,
        triggered_by: Optional[str] = None,
    ) -> str:
        """Record a run start; the returned id is echoed by the completion event."""
        return await self._sink.create_event(EventLogInput(
            entity_type="system",
            entity_id=_system_entity_id(task_id),
            event_type="reconciliation_started",
            event_category=EventCategory.SYSTEM.value,
            title=f"{task_name} Reconciliation Started",
            description=f"Reconciling {window_hours}h window",
            metadata={
                "task_id": task_id,
                "window_hours": window_hours,
                "triggered_by": triggered_by,
                "started_at": utc_now().isoformat(),
            },
        ))

    async def log_reconciliation_complete(
        self,
        task_id: str,
        task_name: str,
        result: ReconciliationResult,
        start_event_id: Optional[str],
    ) -> str:
        outcome = "Completed" if result.success else "Failed"
        summary = result.summary
        return await self._sink.create_event(EventLogInput(
            entity_type="system",
            entity_id=_system_entity_id(task_id),
            event_type="reconciliation_completed" if result.success else "reconciliation_failed",
            event_category=EventCategory.SYSTEM.value,
            title=f"{task_name} Reconciliation {outcome}",
            description=(
                f"Fetched {summary.items_fetched}, backfilled {summary.items_new}, "
                f"corrected {summary.corrections}"
            ),
            metadata={
                "task_id": task_id,
                **summary.as_dict(),
                "errors": list(result.errors),
                "duration_ms": result.duration_ms,
                "start_event_id": start_event_id,
                "completed_at": utc_now().isoformat(),
            },
        ))

    async def log_email_event(
        self,
        email_id: int,
        event_type: EmailEventType,
        details: EmailEventDetails,
    ) -> str:
        """Log one delivery event. Callers must gate on timestamps (no dedup here)."""
        event_id = await self._sink.create_event(EventLogInput(
            entity_type="email",
            entity_id=str(email_id),
            event_type=f"email_{event_type.value}",
            event_category=EventCategory.COMMUNICATION.value,
            title=_EMAIL_EVENT_TITLES[event_type],
            description=_email_event_description(event_type, details),
            metadata={
                **details.as_metadata(),
                "event_type": event_type.value,
                "logged_at": utc_now().isoformat(),
            },
        ))
        logger.debug(
            "Email event logged",
            email_id=email_id,
            event_type=event_type.value,
            source=details.source.value,
        )
        return event_id

    async def log_reconciliation_note(
        self,
        task_id: str,
        task_name: str,
        note: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        return await self._sink.create_event(EventLogInput(
            entity_type="system",
            entity_id=_system_entity_id(task_id),
            event_type="reconciliation_note",
            event_category=EventCategory.SYSTEM.value,
            title=f"{task_name} Note",
            description=note,
            metadata={
                "task_id": task_id,
                **(metadata or {}),
                "logged_at": utc_now().isoformat(),
            },
        ))


__all__ = ["ReconciliationEventLogger", "EventLogInput", "EventSink", "EmailEventDetails"]
