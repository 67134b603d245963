import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Union

from leadrelay.schemas.inbound import InboundMessage
from leadrelay.services.state_machine import AgentRole


@dataclass
class HandoffEntry:
    from_role: str
    to_role: str
    reason: str
    payload: dict
    at: float


@dataclass
class ConversationState:
    """What an agent sees of a conversation during one turn."""

    contact_id: str
    current_role: AgentRole
    slots: dict = field(default_factory=dict)
    agent_state: dict = field(default_factory=dict)
    message_count: int = 0
    handoff_history: list[HandoffEntry] = field(default_factory=list)
    verification_status: str = "none"
    is_new: bool = False


@dataclass
class Continuation:
    reply: Optional[str]
    updated_state: dict
    slots: Optional[dict] = None


@dataclass
class Handoff:
    reply: Optional[str]
    target_role: Union[AgentRole, str]
    payload: dict = field(default_factory=dict)


TurnResult = Union[Continuation, Handoff]


class AgentEngine:
    """Per-contact working object of an agent.

    Cached by the router between turns but always reloaded from the persisted
    snapshot before use; ``snapshot()`` is what gets written back.
    """

    def __init__(self, role: AgentRole, contact_id: str):
        self.role = role
        self.contact_id = contact_id
        self.restores = 0
        self.turns = 0
        self.load({})

    def restore(self, snapshot: Optional[dict]) -> "AgentEngine":
        self.load(copy.deepcopy(snapshot or {}))
        self.restores += 1
        return self

    def snapshot(self) -> dict:
        return copy.deepcopy(self.dump())

    def load(self, data: dict) -> None:
        self.state = data

    def dump(self) -> dict:
        return self.state


class Agent(ABC):
    """A conversation role. Per-contact state lives in the engine, never on the agent."""

    role: AgentRole
    engine_class: type[AgentEngine] = AgentEngine

    def create_engine(self, contact_id: str) -> AgentEngine:
        return self.engine_class(self.role, contact_id)

    @abstractmethod
    async def process_turn(self, message: InboundMessage, state: ConversationState, engine: AgentEngine) -> TurnResult:
        """Handle one inbound message, working on the contact's restored engine."""
        pass

    async def on_handoff_received(self, payload: dict) -> dict:
        """Build this role's initial engine snapshot from the carried payload."""
        return {"handoff_payload": dict(payload)}
