from leadrelay.services.agents.base import (
    Agent,
    AgentEngine,
    ConversationState,
    Continuation,
    Handoff,
    HandoffEntry,
    TurnResult,
)
from leadrelay.services.agents.intake import IntakeAgent
from leadrelay.services.agents.qualification import QualificationAgent
from leadrelay.services.agents.scheduling import SchedulingAgent
from leadrelay.services.agents.support import SupportAgent
from leadrelay.services.state_machine import AgentRole


def build_default_agents() -> dict[AgentRole, Agent]:
    return {
        AgentRole.INTAKE: IntakeAgent(),
        AgentRole.QUALIFICATION: QualificationAgent(),
        AgentRole.SCHEDULING: SchedulingAgent(),
        AgentRole.SUPPORT: SupportAgent(),
    }


__all__ = [
    "Agent",
    "AgentEngine",
    "ConversationState",
    "Continuation",
    "Handoff",
    "HandoffEntry",
    "TurnResult",
    "IntakeAgent",
    "QualificationAgent",
    "SchedulingAgent",
    "SupportAgent",
    "build_default_agents",
]
