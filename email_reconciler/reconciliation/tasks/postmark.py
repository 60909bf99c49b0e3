"""Postmark reconciliation task.

Re-derives delivery state for the trailing window from the Postmark API and
repairs what the webhook path missed or delivered out of order. Three phases
run in order (outbound -> inbound -> events); each returns a ``PhaseOutcome``
so a failing phase never prevents the others from running.

State protection: a local record is only touched when the external timestamp
is strictly newer than its ``last_reconciled_at``. Re-running a window that was
already reconciled therefore writes nothing.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterator, Optional, Protocol, Sequence, TypeVar

from email_reconciler.models.db.emails import Email
from email_reconciler.models.db.enums import EmailDirection, EmailEventType, EmailStatus, StateSource
from email_reconciler.models.schemas.postmark import InboundMessage, MessageEvent, OutboundMessage
from email_reconciler.reconciliation.event_logger import EmailEventDetails, ReconciliationEventLogger
from email_reconciler.reconciliation.types import (
    ReconciliationOptions,
    ReconciliationResult,
    ReconciliationSummary,
    ReconciliationTask,
)
from email_reconciler.config import RECONCILIATION_SETTINGS
from email_reconciler.utils import get_logger
from email_reconciler.utils.time import ensure_utc, utc_now

logger = get_logger(__name__)

T = TypeVar("T")

# Message "Status" values from the outbound message search.
MESSAGE_STATUS_MAP: dict[str, EmailStatus] = {
    "Sent": EmailStatus.SENT,
    "Processed": EmailStatus.SENT,
    "Queued": EmailStatus.SENT,
    "Delivered": EmailStatus.DELIVERED,
    "Bounced": EmailStatus.BOUNCED,
    "HardBounce": EmailStatus.BOUNCED,
    "SoftBounce": EmailStatus.BOUNCED,
    "SpamComplaint": EmailStatus.SPAM_COMPLAINT,
    "ManuallyDropped": EmailStatus.FAILED,
}

# Event "RecordType" values -> event log kinds. Open/Click are log-only.
EVENT_LOG_MAP: dict[str, EmailEventType] = {
    "Delivery": EmailEventType.DELIVERED,
    "Bounce": EmailEventType.BOUNCED,
    "HardBounce": EmailEventType.BOUNCED,
    "SoftBounce": EmailEventType.BOUNCED,
    "SpamComplaint": EmailEventType.SPAM_COMPLAINT,
    "Open": EmailEventType.OPENED,
    "Click": EmailEventType.CLICKED,
}

EVENT_STATUS_MAP: dict[str, EmailStatus] = {
    "Delivery": EmailStatus.DELIVERED,
    "Bounce": EmailStatus.BOUNCED,
    "HardBounce": EmailStatus.BOUNCED,
    "SoftBounce": EmailStatus.BOUNCED,
    "SpamComplaint": EmailStatus.SPAM_COMPLAINT,
}

_ENTITY_METADATA_KEYS = {
    "quote_id": "quoteId",
    "order_id": "orderId",
    "customer_id": "customerId",
    "vendor_id": "vendorId",
}


def map_message_status(status: str) -> EmailStatus:
    """Unknown statuses fall back to ``sent``."""
    return MESSAGE_STATUS_MAP.get(status, EmailStatus.SENT)


def map_event_for_log(record_type: str) -> Optional[EmailEventType]:
    return EVENT_LOG_MAP.get(record_type)


def derive_status_from_event(record_type: str) -> Optional[EmailStatus]:
    return EVENT_STATUS_MAP.get(record_type)


class EmailStore(Protocol):
    async def get_by_postmark_id(self, postmark_message_id: str) -> Optional[Email]: ...
    async def create(self, **fields: Any) -> Email: ...
    async def update(self, email_id: int, **fields: Any) -> None: ...
    async def list_outbound_sent_between(self, from_date: datetime, to_date: datetime) -> list[Email]: ...
    async def get_or_create_thread_id(self, in_reply_to: Optional[str], message_id: str) -> str: ...


class DeliveryEventsClient(Protocol):
    is_configured: bool

    async def get_all_outbound_messages(self, from_date: datetime, to_date: datetime) -> list[OutboundMessage]: ...
    async def get_all_inbound_messages(self, from_date: datetime, to_date: datetime) -> list[InboundMessage]: ...
    async def get_message_events(self, message_id: str) -> list[MessageEvent]: ...
    async def health_check(self) -> bool: ...


@dataclass(slots=True)
class PhaseOutcome:
    summary: ReconciliationSummary
    error: str | None = None


def _batches(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _is_newer(timestamp: datetime, last_reconciled_at: Optional[datetime]) -> bool:
    last = ensure_utc(last_reconciled_at)
    return last is None or ensure_utc(timestamp) > last


class PostmarkReconciliationTask(ReconciliationTask):
    id = "postmark"
    name = "Postmark Email"
    description = "Reconcile Postmark outbound/inbound messages and delivery events"

    def __init__(
        self,
        client: DeliveryEventsClient,
        emails: EmailStore,
        event_logger: ReconciliationEventLogger,
        batch_size: int | None = None,
    ):
        self.client = client
        self.emails = emails
        self.event_logger = event_logger
        self.batch_size = max(1, int(batch_size or RECONCILIATION_SETTINGS["batch_size"]))

    async def validate_config(self) -> list[str]:
        problems: list[str] = []
        if not self.client.is_configured:
            problems.append("POSTMARK_API_TOKEN environment variable is not set")
        try:
            if not await self.client.health_check():
                problems.append("Postmark API health check failed")
        except Exception as e:
            problems.append(f"Postmark API connection failed: {e}")
        return problems

    async def execute(self, options: ReconciliationOptions) -> ReconciliationResult:
        to_date = utc_now()
        from_date = to_date - timedelta(hours=options.window_hours)
        logger.info(
            "Starting Postmark reconciliation",
            window_hours=options.window_hours,
            from_date=from_date.isoformat(),
            to_date=to_date.isoformat(),
            trigger_source=options.trigger_source.value,
        )

        phases: list[tuple[str, Callable[[datetime, datetime], Awaitable[ReconciliationSummary]]]] = [
            ("Outbound", self._reconcile_outbound),
            ("Inbound", self._reconcile_inbound),
            ("Events", self._reconcile_events),
        ]
        summary = ReconciliationSummary()
        errors: list[str] = []
        for label, phase in phases:
            outcome = await self._run_phase(label, phase, from_date, to_date)
            summary = summary + outcome.summary
            if outcome.error:
                errors.append(outcome.error)

        logger.info(
            "Postmark reconciliation complete",
            **summary.as_dict(),
            error_count=len(errors),
        )
        return ReconciliationResult(success=not errors, summary=summary, errors=errors)

    async def _run_phase(
        self,
        label: str,
        phase: Callable[[datetime, datetime], Awaitable[ReconciliationSummary]],
        from_date: datetime,
        to_date: datetime,
    ) -> PhaseOutcome:
        try:
            return PhaseOutcome(summary=await phase(from_date, to_date))
        except Exception as e:
            message = f"{label} reconciliation failed: {e}"
            logger.error(message, phase=label.lower(), exc_info=True)
            return PhaseOutcome(summary=ReconciliationSummary(), error=message)

    # ------------------------------------------------------------------ #
    # Phase 1: outbound messages
    # ------------------------------------------------------------------ #
    async def _reconcile_outbound(self, from_date: datetime, to_date: datetime) -> ReconciliationSummary:
        messages = await self.client.get_all_outbound_messages(from_date, to_date)
        summary = ReconciliationSummary(items_fetched=len(messages))
        total_batches = (len(messages) + self.batch_size - 1) // self.batch_size
        for number, batch in enumerate(_batches(messages, self.batch_size), start=1):
            logger.debug("Processing outbound batch", batch=number, total_batches=total_batches, size=len(batch))
            for message in batch:
                try:
                    outcome = await self._process_outbound(message)
                except Exception as e:
                    logger.error(
                        "Failed to process outbound message",
                        postmark_message_id=message.message_id,
                        error=str(e),
                        exc_info=True,
                    )
                    continue
                if outcome == "new":
                    summary.items_new += 1
                elif outcome == "updated":
                    summary.items_updated += 1
        return summary

    async def _process_outbound(self, message: OutboundMessage) -> str:
        existing = await self.emails.get_by_postmark_id(message.message_id)
        if existing is None:
            metadata = message.metadata
            await self.emails.create(
                postmark_message_id=message.message_id,
                postmark_message_stream_id=message.message_stream,
                thread_id=metadata.get("threadId") or str(uuid.uuid4()),
                direction=EmailDirection.OUTBOUND,
                status=map_message_status(message.status),
                from_address=message.from_address,
                to_addresses=[recipient.email for recipient in message.to],
                subject=message.subject,
                message_id=f"<{message.message_id}>",
                provider_metadata={"postmark": metadata},
                sent_at=message.received_at,
                state_source=StateSource.RECONCILIATION,
                last_reconciled_at=utc_now(),
                **{field: _int_or_none(metadata.get(key)) for field, key in _ENTITY_METADATA_KEYS.items()},
            )
            logger.info("Backfilled outbound message", postmark_message_id=message.message_id)
            return "new"

        if _is_newer(message.received_at, existing.last_reconciled_at):
            await self.emails.update(
                existing.id,
                status=map_message_status(message.status),
                state_source=StateSource.RECONCILIATION,
                last_reconciled_at=utc_now(),
            )
            return "updated"
        return "skipped"

    # ------------------------------------------------------------------ #
    # Phase 2: inbound messages
    # ------------------------------------------------------------------ #
    async def _reconcile_inbound(self, from_date: datetime, to_date: datetime) -> ReconciliationSummary:
        messages = await self.client.get_all_inbound_messages(from_date, to_date)
        summary = ReconciliationSummary(items_fetched=len(messages))
        total_batches = (len(messages) + self.batch_size - 1) // self.batch_size
        for number, batch in enumerate(_batches(messages, self.batch_size), start=1):
            logger.debug("Processing inbound batch", batch=number, total_batches=total_batches, size=len(batch))
            for message in batch:
                try:
                    outcome = await self._process_inbound(message)
                except Exception as e:
                    logger.error(
                        "Failed to process inbound message",
                        postmark_message_id=message.message_id,
                        error=str(e),
                        exc_info=True,
                    )
                    continue
                if outcome == "new":
                    summary.items_new += 1
                elif outcome == "updated":
                    summary.items_updated += 1
        return summary

    async def _process_inbound(self, message: InboundMessage) -> str:
        existing = await self.emails.get_by_postmark_id(message.message_id)
        if existing is None:
            in_reply_to = message.header("In-Reply-To")
            # Same thread matching as webhook ingestion so backfilled replies join their conversation.
            thread_id = await self.emails.get_or_create_thread_id(in_reply_to, message.message_id)
            sender = message.from_full
            await self.emails.create(
                postmark_message_id=message.message_id,
                thread_id=thread_id,
                direction=EmailDirection.INBOUND,
                status=EmailStatus.DELIVERED,
                from_address=sender.email if sender else message.from_address,
                from_name=(sender.name or None) if sender else None,
                to_addresses=[r.email for r in message.to_full] or [message.to],
                cc_addresses=[r.email for r in message.cc_full],
                subject=message.subject,
                text_body=message.text_body or None,
                html_body=message.html_body or None,
                message_id=f"<{message.message_id}>",
                in_reply_to=in_reply_to,
                sent_at=message.date,
                delivered_at=message.date,
                state_source=StateSource.RECONCILIATION,
                last_reconciled_at=utc_now(),
            )
            logger.info(
                "Backfilled inbound message",
                postmark_message_id=message.message_id,
                thread_id=thread_id,
                is_reply=bool(in_reply_to),
            )
            return "new"

        if _is_newer(message.date, existing.last_reconciled_at):
            await self.emails.update(existing.id, last_reconciled_at=utc_now())
            return "updated"
        return "skipped"

    # ------------------------------------------------------------------ #
    # Phase 3: delivery events for known outbound messages
    # ------------------------------------------------------------------ #
    async def _reconcile_events(self, from_date: datetime, to_date: datetime) -> ReconciliationSummary:
        emails = await self.emails.list_outbound_sent_between(from_date, to_date)
        logger.info("Fetching events for outbound emails in window", email_count=len(emails))
        summary = ReconciliationSummary()
        total_batches = (len(emails) + self.batch_size - 1) // self.batch_size
        for number, batch in enumerate(_batches(emails, self.batch_size), start=1):
            logger.debug("Processing events batch", batch=number, total_batches=total_batches, size=len(batch))
            for email in batch:
                if not email.postmark_message_id:
                    continue
                try:
                    event_count, state_changed = await self._process_email_events(email)
                except Exception as e:
                    logger.error(
                        "Failed to reconcile events for email",
                        email_id=email.id,
                        postmark_message_id=email.postmark_message_id,
                        error=str(e),
                        exc_info=True,
                    )
                    continue
                summary.items_fetched += event_count
                if state_changed:
                    summary.items_updated += 1
                    summary.corrections += 1
        return summary

    async def _process_email_events(self, email: Email) -> tuple[int, bool]:
        events = await self.client.get_message_events(email.postmark_message_id)
        high_water_mark = email.last_reconciled_at
        current_status = EmailStatus(email.status)
        event_count = 0
        state_changed = False

        for event in events:
            if not _is_newer(event.received_at, high_water_mark):
                continue
            event_count += 1

            log_type = map_event_for_log(event.record_type)
            if log_type is not None:
                await self.event_logger.log_email_event(email.id, log_type, EmailEventDetails(
                    postmark_message_id=email.postmark_message_id,
                    source=StateSource.RECONCILIATION,
                    recipient=event.recipient,
                    bounce_reason=event.description or event.detail("Summary"),
                    bounce_type=event.type if log_type is EmailEventType.BOUNCED else None,
                    clicked_url=event.detail("OriginalLink") if log_type is EmailEventType.CLICKED else None,
                ))

            new_status = derive_status_from_event(event.record_type)
            if new_status is None or new_status == current_status:
                continue

            fields: dict[str, Any] = {
                "status": new_status,
                "state_source": StateSource.RECONCILIATION,
                "last_reconciled_at": utc_now(),
                "reconciliation_notes": (
                    f"State corrected from {current_status.value} to {new_status.value} "
                    f"based on {event.record_type} event"
                ),
            }
            if new_status is EmailStatus.DELIVERED:
                fields["delivered_at"] = event.received_at
            elif new_status is EmailStatus.BOUNCED:
                fields["bounced_at"] = event.received_at
            await self.emails.update(email.id, **fields)
            logger.info(
                "Email state corrected",
                email_id=email.id,
                from_status=current_status.value,
                to_status=new_status.value,
                record_type=event.record_type,
            )
            current_status = new_status
            state_changed = True

        if event_count > 0:
            await self.emails.update(email.id, last_reconciled_at=utc_now())
        return event_count, state_changed


__all__ = [
    "PostmarkReconciliationTask",
    "PhaseOutcome",
    "EmailStore",
    "DeliveryEventsClient",
    "map_message_status",
    "map_event_for_log",
    "derive_status_from_event",
]
