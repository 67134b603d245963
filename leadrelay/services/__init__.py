from leadrelay.services.conversation_service import (
    get_or_create_conversation,
    load_state,
    record_handoff,
    save_continuation,
)
from leadrelay.services.errors import (
    DeliveryFailedError,
    LeadRelayError,
    PersistenceError,
)
from leadrelay.services.state_machine import (
    AgentRole,
    InvalidTransitionError,
    can_transition,
    transition,
)
