"""SQLAlchemy-backed stores against an in-memory SQLite database."""
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from email_reconciler.models.db.enums import EmailDirection, EmailStatus, StateSource
from email_reconciler.reconciliation.event_logger import EventLogInput
from email_reconciler.services.developer_settings import DeveloperSettingsStore
from email_reconciler.services.email_repository import EmailRepository
from email_reconciler.services.events import EventLogStore
from email_reconciler.utils.time import ensure_utc, utc_now


def _outbound(postmark_id: str, sent_at, **extra) -> dict:
    fields = {
        "postmark_message_id": postmark_id,
        "thread_id": f"thread-{postmark_id}",
        "direction": EmailDirection.OUTBOUND,
        "status": EmailStatus.SENT,
        "from_address": "sales@example.com",
        "to_addresses": ["buyer@example.com"],
        "message_id": f"<{postmark_id}>",
        "sent_at": sent_at,
    }
    fields.update(extra)
    return fields


@pytest.mark.asyncio
async def test_create_and_lookup_by_postmark_id(session_factory):
    repo = EmailRepository(session_factory)
    created = await repo.create(**_outbound("msg-1", utc_now(), provider_metadata={"postmark": {"quoteId": "4"}}))

    found = await repo.get_by_postmark_id("msg-1")

    assert found is not None
    assert found.id == created.id
    assert found.status == EmailStatus.SENT
    assert found.state_source == StateSource.WEBHOOK
    assert found.provider_metadata == {"postmark": {"quoteId": "4"}}
    assert await repo.get_by_postmark_id("missing") is None


@pytest.mark.asyncio
async def test_duplicate_postmark_id_is_rejected(session_factory):
    repo = EmailRepository(session_factory)
    await repo.create(**_outbound("msg-1", utc_now()))

    with pytest.raises(IntegrityError):
        await repo.create(**_outbound("msg-1", utc_now()))


@pytest.mark.asyncio
async def test_update_stamps_updated_at(session_factory):
    repo = EmailRepository(session_factory)
    email = await repo.create(**_outbound("msg-1", utc_now()))
    bounced_at = utc_now()

    await repo.update(email.id, status=EmailStatus.BOUNCED, bounced_at=bounced_at, state_source=StateSource.RECONCILIATION)
    await repo.update(9999, status=EmailStatus.BOUNCED)

    reloaded = await repo.get_by_postmark_id("msg-1")
    assert reloaded.status == EmailStatus.BOUNCED
    assert reloaded.state_source == StateSource.RECONCILIATION
    assert ensure_utc(reloaded.bounced_at) == bounced_at
    assert reloaded.updated_at is not None


@pytest.mark.asyncio
async def test_list_outbound_in_window(session_factory):
    repo = EmailRepository(session_factory)
    now = utc_now()
    await repo.create(**_outbound("late", now - timedelta(hours=1)))
    await repo.create(**_outbound("early", now - timedelta(hours=5)))
    await repo.create(**_outbound("too-old", now - timedelta(hours=80)))
    await repo.create(**_outbound("inbound", now - timedelta(hours=2), direction=EmailDirection.INBOUND))

    emails = await repo.list_outbound_sent_between(now - timedelta(hours=72), now)

    assert [e.postmark_message_id for e in emails] == ["early", "late"]


@pytest.mark.asyncio
async def test_thread_matching_ignores_angle_brackets(session_factory):
    repo = EmailRepository(session_factory)
    await repo.create(**_outbound("msg-1", utc_now(), thread_id="thread-quote-9"))
    await repo.create(**_outbound("msg-2", utc_now(), thread_id="thread-bare", message_id="bare-id@mail"))

    assert await repo.get_or_create_thread_id("<msg-1>", "reply-1") == "thread-quote-9"
    assert await repo.get_or_create_thread_id("msg-1", "reply-2") == "thread-quote-9"
    assert await repo.get_or_create_thread_id("<bare-id@mail>", "reply-3") == "thread-bare"

    fresh = await repo.get_or_create_thread_id("<unknown@mail>", "reply-4")
    assert fresh not in {"thread-quote-9", "thread-bare"}
    assert await repo.get_or_create_thread_id(None, "new") != await repo.get_or_create_thread_id(None, "new")


@pytest.mark.asyncio
async def test_event_log_store_persists_events(session_factory):
    store = EventLogStore(session_factory)
    event_id = await store.create_event(EventLogInput(
        entity_type="email",
        entity_id="7",
        event_type="email_bounced",
        event_category="communication",
        title="Email Bounced",
        description="mailbox full",
        metadata={"source": "reconciliation"},
    ))
    await store.create_event(EventLogInput(
        entity_type="system",
        entity_id="reconciliation_postmark",
        event_type="reconciliation_started",
        event_category="system",
        title="Postmark Email Reconciliation Started",
    ))

    rows = await store.list_for_entity("email", "7")

    assert len(event_id) == 36
    assert [r.id for r in rows] == [event_id]
    assert rows[0].event_metadata == {"source": "reconciliation"}
    assert rows[0].is_dismissed is False


@pytest.mark.asyncio
async def test_developer_settings_upsert(session_factory):
    store = DeveloperSettingsStore(session_factory)
    assert await store.get("reconciliation_postmark_cron") is None

    await store.set("reconciliation_postmark_cron", "*/15 * * * *", updated_by="ops")
    await store.set("reconciliation_postmark_cron", "0 * * * *", updated_by="ops")
    await store.set("reconciliation_postmark_enabled", None)

    assert await store.get("reconciliation_postmark_cron") == "0 * * * *"
    assert await store.get("reconciliation_postmark_enabled") is None


@pytest.mark.asyncio
async def test_developer_settings_read_failure_returns_none():
    def broken_factory():
        raise RuntimeError("database unavailable")

    assert await DeveloperSettingsStore(broken_factory).get("anything") is None
