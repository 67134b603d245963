from leadrelay.schemas.inbound import (
    IngressResult,
    IngressStatus,
    InboundMessage,
    MediaInfo,
    MessageKind,
)
from leadrelay.schemas.webhook import StatsResponse, WebhookResponse

__all__ = [
    "IngressResult",
    "IngressStatus",
    "InboundMessage",
    "MediaInfo",
    "MessageKind",
    "StatsResponse",
    "WebhookResponse",
]
