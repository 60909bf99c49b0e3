from __future__ import annotations
"""SQLAlchemy model for email records (inbound and outbound)."""
from datetime import datetime

from sqlalchemy import Integer, String, Text, DateTime, Enum, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from email_reconciler.database import Base
from .enums import EmailDirection, EmailStatus, StateSource


class Email(Base):
    __tablename__ = "emails"
    __table_args__ = (
        Index("ix_emails_direction_sent_at", "direction", "sent_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # Provider-assigned id; the natural idempotency key for reconciliation.
    postmark_message_id: Mapped[str | None] = mapped_column(String(255), unique=True, index=True, nullable=True)
    postmark_message_stream_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    thread_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    direction: Mapped[EmailDirection] = mapped_column(Enum(EmailDirection), nullable=False)
    status: Mapped[EmailStatus] = mapped_column(Enum(EmailStatus), nullable=False, default=EmailStatus.SENT, index=True)

    from_address: Mapped[str] = mapped_column(String(320), nullable=False)
    from_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    to_addresses: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    cc_addresses: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    text_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    html_body: Mapped[str | None] = mapped_column(Text, nullable=True)

    # RFC 5322 Message-ID / In-Reply-To, used for thread matching.
    message_id: Mapped[str | None] = mapped_column(String(512), nullable=True, index=True)
    in_reply_to: Mapped[str | None] = mapped_column(String(512), nullable=True)
    provider_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    bounced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # High-water mark: events at or before this instant are never re-applied.
    last_reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    state_source: Mapped[StateSource] = mapped_column(Enum(StateSource), nullable=False, default=StateSource.WEBHOOK)
    reconciliation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Cross references extracted from provider metadata (ids of records in the wider app).
    quote_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    order_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    customer_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    vendor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Email id={self.id} postmark_message_id={self.postmark_message_id!r} status={self.status}>"
