from leadrelay.models.conversation_record import ConversationRecord
from leadrelay.models.handoff_record import HandoffRecord
from leadrelay.models.verification import BotBlock, VerificationChallenge

__all__ = [
    "ConversationRecord",
    "HandoffRecord",
    "VerificationChallenge",
    "BotBlock",
]
