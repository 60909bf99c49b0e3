"""In-memory stand-ins for the reconciliation collaborators.

They mirror the async interfaces of the real stores/clients so the task and
scheduler can be exercised without a database or network.
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from email_reconciler.models.db import Email
from email_reconciler.models.db.enums import EmailDirection
from email_reconciler.models.schemas.postmark import InboundMessage, MessageEvent, OutboundMessage
from email_reconciler.reconciliation.event_logger import EventLogInput
from email_reconciler.reconciliation.types import (
    ReconciliationOptions,
    ReconciliationResult,
    ReconciliationSummary,
    ReconciliationTask,
)
from email_reconciler.utils.time import ensure_utc, utc_now


def iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def minutes_ago(minutes: float) -> datetime:
    return utc_now() - timedelta(minutes=minutes)


def outbound_message(
    message_id: str,
    status: str = "Sent",
    received_at: Optional[datetime] = None,
    to: str = "buyer@example.com",
    metadata: Optional[dict[str, str]] = None,
) -> OutboundMessage:
    return OutboundMessage.model_validate({
        "MessageID": message_id,
        "Status": status,
        "ReceivedAt": iso(received_at or minutes_ago(30)),
        "To": [{"Email": to, "Name": None}],
        "From": "sales@example.com",
        "Subject": f"Quote {message_id}",
        "MessageStream": "outbound",
        "Metadata": metadata or {},
    })


def inbound_message(
    message_id: str,
    date: Optional[datetime] = None,
    in_reply_to: Optional[str] = None,
    sender: str = "buyer@example.com",
) -> InboundMessage:
    headers = [{"Name": "Message-ID", "Value": f"<{message_id}@mail.example.com>"}]
    if in_reply_to:
        headers.append({"Name": "In-Reply-To", "Value": in_reply_to})
    return InboundMessage.model_validate({
        "MessageID": message_id,
        "Date": iso(date or minutes_ago(20)),
        "From": sender,
        "FromFull": {"Email": sender, "Name": "Buyer"},
        "To": "sales@example.com",
        "ToFull": [{"Email": "sales@example.com", "Name": ""}],
        "CcFull": [],
        "Subject": "Re: Quote",
        "TextBody": "Thanks!",
        "HtmlBody": "",
        "Headers": headers,
    })


def message_event(
    message_id: str,
    record_type: str,
    received_at: datetime,
    description: Optional[str] = None,
    recipient: str = "buyer@example.com",
) -> MessageEvent:
    return MessageEvent.model_validate({
        "MessageID": message_id,
        "RecordType": record_type,
        "ReceivedAt": iso(received_at),
        "Recipient": recipient,
        "Description": description,
    })


class FakeSettings:
    def __init__(self, values: Optional[dict[str, Optional[str]]] = None):
        self.values: dict[str, Optional[str]] = dict(values or {})
        self.writes: list[tuple[str, Optional[str], Optional[str]]] = []

    async def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    async def set(self, key: str, value: Optional[str], updated_by: Optional[str] = None) -> None:
        self.values[key] = value
        self.writes.append((key, value, updated_by))


class RecordingEventSink:
    def __init__(self, fail: bool = False):
        self.events: list[EventLogInput] = []
        self.fail = fail

    async def create_event(self, event: EventLogInput) -> str:
        if self.fail:
            raise RuntimeError("event log unavailable")
        self.events.append(event)
        return f"evt-{len(self.events)}"

    def of_type(self, event_type: str) -> list[EventLogInput]:
        return [e for e in self.events if e.event_type == event_type]


class InMemoryEmailStore:
    def __init__(self) -> None:
        self.emails: dict[int, Email] = {}
        self.fail_create_for: set[str] = set()
        self.updates: list[tuple[int, dict[str, Any]]] = []
        self._next_id = 1

    def add(self, **fields: Any) -> Email:
        email = Email(id=self._next_id, **fields)
        self.emails[email.id] = email
        self._next_id += 1
        return email

    def by_postmark_id(self, postmark_message_id: str) -> Optional[Email]:
        for email in self.emails.values():
            if email.postmark_message_id == postmark_message_id:
                return email
        return None

    async def get_by_postmark_id(self, postmark_message_id: str) -> Optional[Email]:
        return self.by_postmark_id(postmark_message_id)

    async def create(self, **fields: Any) -> Email:
        if fields.get("postmark_message_id") in self.fail_create_for:
            raise RuntimeError(f"insert failed for {fields['postmark_message_id']}")
        return self.add(**fields)

    async def update(self, email_id: int, **fields: Any) -> None:
        email = self.emails[email_id]
        for key, value in fields.items():
            setattr(email, key, value)
        email.updated_at = utc_now()
        self.updates.append((email_id, fields))

    async def list_outbound_sent_between(self, from_date: datetime, to_date: datetime) -> list[Email]:
        return [
            email for email in self.emails.values()
            if email.direction == EmailDirection.OUTBOUND
            and email.sent_at is not None
            and from_date <= ensure_utc(email.sent_at) <= to_date
        ]

    async def get_or_create_thread_id(self, in_reply_to: Optional[str], message_id: str) -> str:
        if in_reply_to:
            bare = in_reply_to.strip().lstrip("<").rstrip(">")
            for email in self.emails.values():
                if email.message_id in (bare, f"<{bare}>"):
                    return email.thread_id
        return str(uuid.uuid4())


class FakePostmarkAPI:
    def __init__(self) -> None:
        self.outbound: list[OutboundMessage] = []
        self.inbound: list[InboundMessage] = []
        self.events: dict[str, list[MessageEvent]] = {}
        self.fail_outbound: Optional[Exception] = None
        self.fail_inbound: Optional[Exception] = None
        self.fail_events_for: set[str] = set()
        self.is_configured = True
        self.healthy = True
        self.event_requests: list[str] = []

    async def get_all_outbound_messages(self, from_date: datetime, to_date: datetime) -> list[OutboundMessage]:
        if self.fail_outbound:
            raise self.fail_outbound
        return list(self.outbound)

    async def get_all_inbound_messages(self, from_date: datetime, to_date: datetime) -> list[InboundMessage]:
        if self.fail_inbound:
            raise self.fail_inbound
        return list(self.inbound)

    async def get_message_events(self, message_id: str) -> list[MessageEvent]:
        self.event_requests.append(message_id)
        if message_id in self.fail_events_for:
            raise RuntimeError(f"events unavailable for {message_id}")
        return list(self.events.get(message_id, []))

    async def health_check(self) -> bool:
        return self.healthy


class StubTask(ReconciliationTask):
    """Configurable task for scheduler tests."""

    def __init__(
        self,
        task_id: str = "stub",
        result: Optional[ReconciliationResult] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        problems: Optional[list[str]] = None,
    ):
        self.id = task_id
        self.name = f"Stub {task_id}"
        self.description = "Test task"
        self._result = result
        self._error = error
        self._delay = delay
        self._problems = problems or []
        self.calls: list[ReconciliationOptions] = []

    async def execute(self, options: ReconciliationOptions) -> ReconciliationResult:
        self.calls.append(options)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return self._result or ReconciliationResult(
            success=True,
            summary=ReconciliationSummary(items_fetched=3, items_new=1, items_updated=1, corrections=0),
        )

    async def validate_config(self) -> list[str]:
        return list(self._problems)
