"""
Pydantic schemas for Postmark Messages API responses.
Field names follow Postmark's PascalCase payloads via aliases; timestamps are
parsed into aware UTC datetimes (Postmark uses 7 fractional digits).
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from email_reconciler.utils.time import parse_timestamp


class _PostmarkModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Recipient(_PostmarkModel):
    email: str = Field(alias="Email")
    name: Optional[str] = Field(None, alias="Name")


class MessageHeader(_PostmarkModel):
    name: str = Field(alias="Name")
    value: str = Field(alias="Value")


class OutboundMessage(_PostmarkModel):
    """Row of GET /messages/outbound."""
    message_id: str = Field(alias="MessageID")
    status: str = Field(alias="Status")
    received_at: datetime = Field(alias="ReceivedAt")
    to: List[Recipient] = Field(default_factory=list, alias="To")
    from_address: str = Field("", alias="From")
    subject: Optional[str] = Field(None, alias="Subject")
    message_stream: Optional[str] = Field(None, alias="MessageStream")
    tag: Optional[str] = Field(None, alias="Tag")
    metadata: Dict[str, str] = Field(default_factory=dict, alias="Metadata")

    @field_validator("received_at", mode="before")
    @classmethod
    def _parse_received_at(cls, value: Any) -> datetime:
        return parse_timestamp(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_or_empty(cls, value: Any) -> Dict[str, str]:
        return {str(k): str(v) for k, v in (value or {}).items()}


class MessageEvent(_PostmarkModel):
    """One delivery-lifecycle event (Delivery, Bounce, Open, Click, ...)."""
    message_id: str = Field(alias="MessageID")
    record_type: str = Field(alias="RecordType")
    received_at: datetime = Field(alias="ReceivedAt")
    type: Optional[str] = Field(None, alias="Type")
    recipient: Optional[str] = Field(None, alias="Recipient")
    description: Optional[str] = Field(None, alias="Description")
    details: Optional[Union[Dict[str, Any], str]] = Field(None, alias="Details")
    tag: Optional[str] = Field(None, alias="Tag")
    metadata: Dict[str, str] = Field(default_factory=dict, alias="Metadata")

    @field_validator("received_at", mode="before")
    @classmethod
    def _parse_received_at(cls, value: Any) -> datetime:
        return parse_timestamp(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_or_empty(cls, value: Any) -> Dict[str, str]:
        return {str(k): str(v) for k, v in (value or {}).items()}

    def detail(self, key: str) -> Optional[str]:
        if isinstance(self.details, dict):
            value = self.details.get(key)
            return str(value) if value is not None else None
        return None


class OutboundMessageDetails(OutboundMessage):
    """GET /messages/outbound/{id}/details, including the event history."""
    text_body: Optional[str] = Field(None, alias="TextBody")
    html_body: Optional[str] = Field(None, alias="HtmlBody")
    message_events: List[Dict[str, Any]] = Field(default_factory=list, alias="MessageEvents")


class InboundMessage(_PostmarkModel):
    """Row of GET /messages/inbound."""
    message_id: str = Field(alias="MessageID")
    date: datetime = Field(alias="Date")
    from_address: str = Field("", alias="From")
    from_full: Optional[Recipient] = Field(None, alias="FromFull")
    to: str = Field("", alias="To")
    to_full: List[Recipient] = Field(default_factory=list, alias="ToFull")
    cc_full: List[Recipient] = Field(default_factory=list, alias="CcFull")
    subject: Optional[str] = Field(None, alias="Subject")
    text_body: Optional[str] = Field(None, alias="TextBody")
    html_body: Optional[str] = Field(None, alias="HtmlBody")
    mailbox_hash: Optional[str] = Field(None, alias="MailboxHash")
    tag: Optional[str] = Field(None, alias="Tag")
    headers: List[MessageHeader] = Field(default_factory=list, alias="Headers")

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value: Any) -> datetime:
        return parse_timestamp(value)

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for header in self.headers:
            if header.name.lower() == wanted:
                return header.value
        return None


__all__ = [
    "Recipient",
    "MessageHeader",
    "OutboundMessage",
    "OutboundMessageDetails",
    "MessageEvent",
    "InboundMessage",
]
