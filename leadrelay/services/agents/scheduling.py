import re

from leadrelay.schemas.inbound import InboundMessage
from leadrelay.services.agents.base import Agent, AgentEngine, ConversationState, Continuation, Handoff, TurnResult
from leadrelay.services.agents.qualification import SUPPORT_PATTERN
from leadrelay.services.state_machine import AgentRole

EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")

WHEN_PATTERN = re.compile(
    r"\b("
    r"(?:today|tomorrow|monday|tuesday|wednesday|thursday|friday|saturday|sunday)"
    r"|(?:hoje|amanh[aã]|segunda|ter[cç]a|quarta|quinta|sexta|s[aá]bado|domingo)"
    r"|\d{1,2}/\d{1,2}(?:/\d{2,4})?"
    r")\b"
    r"(?:[^\d]{0,12}(\d{1,2}(?::\d{2})?\s*(?:am|pm|h)?))?",
    re.IGNORECASE,
)
TIME_ONLY_PATTERN = re.compile(r"\b(\d{1,2}(?::\d{2})\s*(?:am|pm|h)?|\d{1,2}\s*(?:am|pm|h))\b", re.IGNORECASE)

ASK_EMAIL = "What's the best email to send the meeting invite to?"
ASK_WHEN = "What day and time work best for you?"


def find_slot_time(text: str) -> str | None:
    match = WHEN_PATTERN.search(text)
    if match:
        return match.group(0).strip()
    match = TIME_ONLY_PATTERN.search(text)
    return match.group(0).strip() if match else None


class SchedulingEngine(AgentEngine):
    def load(self, data: dict) -> None:
        self.handoff_payload = dict(data.get("handoff_payload") or {})
        self.stage = data.get("stage", "collecting_email")

    def dump(self) -> dict:
        return {"handoff_payload": self.handoff_payload, "stage": self.stage}


class SchedulingAgent(Agent):
    role = AgentRole.SCHEDULING
    engine_class = SchedulingEngine

    async def on_handoff_received(self, payload: dict) -> dict:
        return {"handoff_payload": dict(payload), "stage": "collecting_email"}

    async def process_turn(
        self, message: InboundMessage, state: ConversationState, engine: SchedulingEngine
    ) -> TurnResult:
        text = (message.text or "").strip()

        if SUPPORT_PATTERN.search(text):
            return Handoff(
                reply="Let me get our support team on this for you.",
                target_role=AgentRole.SUPPORT,
                payload={"issue": text, "stage": engine.stage},
            )

        if engine.stage == "collecting_email":
            email = EMAIL_PATTERN.search(text)
            if not email:
                return Continuation(reply=ASK_EMAIL, updated_state=engine.snapshot())
            engine.stage = "proposing"
            return Continuation(reply=ASK_WHEN, updated_state=engine.snapshot(), slots={"email": email.group(0)})

        if engine.stage == "proposing":
            when = find_slot_time(text)
            if not when:
                return Continuation(reply=ASK_WHEN, updated_state=engine.snapshot())
            engine.stage = "confirmed"
            return Continuation(
                reply=f"Done! You're booked for {when}. You'll get a confirmation by email.",
                updated_state=engine.snapshot(),
                slots={"appointment": when},
            )

        appointment = state.slots.get("appointment")
        return Continuation(
            reply=f"Your meeting is set for {appointment}. Anything else I can help with?",
            updated_state=engine.snapshot(),
        )
