from .emails import Email
from .event_logs import EventLog
from .developer_settings import DeveloperSetting
from .enums import EmailDirection, EmailStatus, StateSource, TriggerSource, EmailEventType, EventCategory

__all__ = [
    "Email",
    "EventLog",
    "DeveloperSetting",
    "EmailDirection",
    "EmailStatus",
    "StateSource",
    "TriggerSource",
    "EmailEventType",
    "EventCategory",
]
