"""BANT qualification: need, budget, authority, timeline."""

import re

from leadrelay.schemas.inbound import InboundMessage
from leadrelay.services.agents.base import Agent, AgentEngine, ConversationState, Continuation, Handoff, TurnResult
from leadrelay.services.agents.intake import extract_budget, extract_need
from leadrelay.services.state_machine import AgentRole

BANT_SLOTS = ("need", "budget", "authority", "timeline")

QUESTIONS = {
    "need": "What problem are you trying to solve?",
    "budget": "Do you have a budget range in mind?",
    "authority": "Who else is involved in making this decision?",
    "timeline": "When would you like to have this in place?",
}

SUPPORT_PATTERN = re.compile(
    r"\b(problem|issue|not working|broken|error|bug|complaint|refund|support|"
    r"problema|erro|n[aã]o funciona|reclama[cç][aã]o|suporte)\b",
    re.IGNORECASE,
)

AUTHORITY_PATTERN = re.compile(
    r"\b(i decide|i'?m the (?:owner|decision maker|ceo|founder)|just me|only me|my (?:boss|partner|manager|team)|"
    r"eu decido|sou o dono|sou a dona|meu s[oó]cio|minha s[oó]cia|meu chefe)\b",
    re.IGNORECASE,
)

TIMELINE_PATTERN = re.compile(
    r"\b(asap|urgent|today|tomorrow|this week|next week|this month|next month|in \d+ (?:days|weeks|months)|"
    r"urgente|hoje|amanh[aã]|esta semana|pr[oó]xima semana|este m[eê]s|pr[oó]ximo m[eê]s)\b",
    re.IGNORECASE,
)


def missing_slots(slots: dict) -> list[str]:
    return [name for name in BANT_SLOTS if not slots.get(name)]


def detect_slots(text: str) -> dict:
    found = {}
    need = extract_need(text)
    if need:
        found["need"] = need
    budget = extract_budget(text)
    if budget:
        found["budget"] = budget
    authority = AUTHORITY_PATTERN.search(text)
    if authority:
        found["authority"] = authority.group(0)
    timeline = TIMELINE_PATTERN.search(text)
    if timeline:
        found["timeline"] = timeline.group(0)
    return found


class QualificationEngine(AgentEngine):
    def load(self, data: dict) -> None:
        self.handoff_payload = dict(data.get("handoff_payload") or {})
        self.pending_slot = data.get("pending_slot")
        self.answered = list(data.get("answered") or [])

    def dump(self) -> dict:
        return {
            "handoff_payload": self.handoff_payload,
            "pending_slot": self.pending_slot,
            "answered": self.answered,
        }


class QualificationAgent(Agent):
    role = AgentRole.QUALIFICATION
    engine_class = QualificationEngine

    async def on_handoff_received(self, payload: dict) -> dict:
        return {
            "handoff_payload": dict(payload),
            "pending_slot": None,
            "answered": sorted(k for k in BANT_SLOTS if payload.get(k)),
        }

    async def process_turn(
        self, message: InboundMessage, state: ConversationState, engine: QualificationEngine
    ) -> TurnResult:
        text = (message.text or "").strip()
        slots = dict(state.slots)

        if SUPPORT_PATTERN.search(text):
            return Handoff(
                reply="Sorry to hear that. I'm bringing in our support team to help.",
                target_role=AgentRole.SUPPORT,
                payload={"issue": text, **{k: v for k, v in slots.items() if k in BANT_SLOTS}},
            )

        updates = detect_slots(text)
        if engine.pending_slot and text:
            # a direct answer to the question we just asked wins over pattern hits
            updates[engine.pending_slot] = text
        filled = {k: v for k, v in updates.items() if not slots.get(k)}
        slots.update(filled)

        remaining = missing_slots(slots)
        if not remaining:
            return Handoff(
                reply="Thanks, that's everything I need. Let's find a time to talk.",
                target_role=AgentRole.SCHEDULING,
                payload={k: slots[k] for k in BANT_SLOTS},
            )

        engine.pending_slot = remaining[0]
        engine.answered = sorted(k for k in BANT_SLOTS if slots.get(k))
        return Continuation(reply=QUESTIONS[engine.pending_slot], updated_state=engine.snapshot(), slots=filled or None)
