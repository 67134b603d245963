from leadrelay.schemas.inbound import InboundMessage
from leadrelay.services.agents.base import Agent, AgentEngine, ConversationState, Continuation, TurnResult
from leadrelay.services.state_machine import AgentRole


class SupportEngine(AgentEngine):
    def load(self, data: dict) -> None:
        self.handoff_payload = dict(data.get("handoff_payload") or {})
        self.tickets = list(data.get("tickets") or [])

    def dump(self) -> dict:
        return {"handoff_payload": self.handoff_payload, "tickets": self.tickets}


class SupportAgent(Agent):
    """Terminal role: logs each issue as a ticket."""

    role = AgentRole.SUPPORT
    engine_class = SupportEngine

    async def on_handoff_received(self, payload: dict) -> dict:
        issue = payload.get("issue")
        return {"handoff_payload": dict(payload), "tickets": [issue] if issue else []}

    async def process_turn(self, message: InboundMessage, state: ConversationState, engine: SupportEngine) -> TurnResult:
        text = (message.text or "").strip()
        if text:
            engine.tickets.append(text)
        return Continuation(
            reply=f"Thanks, I've logged that (ticket #{len(engine.tickets)}). Our team will follow up shortly.",
            updated_state=engine.snapshot(),
        )
