from .base import ResponseBase
from .postmark import (
    Recipient,
    MessageHeader,
    OutboundMessage,
    OutboundMessageDetails,
    MessageEvent,
    InboundMessage,
)
from .reconciliation import (
    ReconciliationSummaryRead,
    ReconciliationResultRead,
    ScheduledJobRead,
    SchedulerStatusRead,
    TaskConfigRead,
    TaskRead,
    TaskConfigUpdate,
    TaskRunRequest,
    TaskValidationRead,
)

__all__ = [
    # Base
    "ResponseBase",

    # Postmark payloads
    "Recipient",
    "MessageHeader",
    "OutboundMessage",
    "OutboundMessageDetails",
    "MessageEvent",
    "InboundMessage",

    # Admin API
    "ReconciliationSummaryRead",
    "ReconciliationResultRead",
    "ScheduledJobRead",
    "SchedulerStatusRead",
    "TaskConfigRead",
    "TaskRead",
    "TaskConfigUpdate",
    "TaskRunRequest",
    "TaskValidationRead",
]
