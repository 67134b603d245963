from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class MessageKind(str, Enum):
    TEXT = "text"
    MEDIA = "media"
    SYSTEM = "system"


class IngressStatus(str, Enum):
    IGNORED_NON_MESSAGE = "ignored_non_message"
    IGNORED_SELF_ORIGINATED = "ignored_self_originated"
    DUPLICATE = "duplicate"
    INVALID_MISSING_SENDER = "invalid_missing_sender"
    INVALID = "invalid"
    VALID = "valid"


@dataclass
class MediaInfo:
    media_type: str
    mime_type: Optional[str] = None
    url: Optional[str] = None
    caption: Optional[str] = None
    file_name: Optional[str] = None
    seconds: Optional[int] = None


@dataclass
class InboundMessage:
    """Normalized inbound message, independent of the provider payload shape."""

    kind: MessageKind
    contact_id: str
    message_id: str
    text: str
    message_type: str
    timestamp: float
    push_name: Optional[str] = None
    is_group: bool = False
    synthesized_id: bool = False
    needs_transcription: bool = False
    media: Optional[MediaInfo] = None
    raw_event: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class IngressResult:
    status: IngressStatus
    message: Optional[InboundMessage] = None
    identity: Optional[str] = None
    reason: Optional[str] = None

    @property
    def admitted(self) -> bool:
        return self.status == IngressStatus.VALID
