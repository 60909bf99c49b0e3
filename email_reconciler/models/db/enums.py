"""Central Enum definitions for email delivery and reconciliation states.

These replace scattered string literals to ensure consistency across
DB models, schemas, and reconciliation logic.
"""
from __future__ import annotations
import enum


class EmailDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class EmailStatus(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    BOUNCED = "bounced"
    SPAM_COMPLAINT = "spam_complaint"
    FAILED = "failed"


class StateSource(str, enum.Enum):
    """Which writer last touched an email's delivery state."""
    WEBHOOK = "webhook"
    RECONCILIATION = "reconciliation"

# ------------------ Reconciliation / Audit Enums ------------------ #

class TriggerSource(str, enum.Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    STARTUP = "startup"
    API = "api"


class EmailEventType(str, enum.Enum):
    DELIVERED = "delivered"
    BOUNCED = "bounced"
    OPENED = "opened"
    CLICKED = "clicked"
    SPAM_COMPLAINT = "spam_complaint"


class EventCategory(str, enum.Enum):
    SYSTEM = "system"
    COMMUNICATION = "communication"


__all__ = [
    "EmailDirection",
    "EmailStatus",
    "StateSource",
    "TriggerSource",
    "EmailEventType",
    "EventCategory",
]
