import re

from leadrelay.schemas.inbound import InboundMessage
from leadrelay.services.agents.base import Agent, AgentEngine, ConversationState, Continuation, Handoff, TurnResult
from leadrelay.services.state_machine import AgentRole

NEED_PATTERNS = [
    re.compile(
        r"\b(?:i need|i want|i'?m looking for|looking for|i'?d like|interested in)\s+(?P<need>[^,.;!?]+)",
        re.IGNORECASE,
    ),
    re.compile(r"\b(?:preciso de|preciso|quero|gostaria de|procuro)\s+(?P<need>[^,.;!?]+)", re.IGNORECASE),
]

BUDGET_PATTERNS = [
    re.compile(r"\bbudget\s*(?:is|of|:|around|about)?\s*(?P<budget>[^,.;!?]+)", re.IGNORECASE),
    re.compile(r"\bor[cç]amento\s*(?:[eé]|de|:)?\s*(?P<budget>[^,.;!?]+)", re.IGNORECASE),
    re.compile(r"(?P<budget>(?:R\$|US\$|\$|€)\s?\d[\d.,]*\s*(?:k|mil)?)", re.IGNORECASE),
]

GREETING = "Hi! Thanks for reaching out. What are you looking for?"
ASK_NEED = "Could you tell me a bit more about what you need?"


def _search(patterns: list[re.Pattern], text: str, group: str) -> str | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            value = match.group(group).strip()
            if value:
                return value
    return None


def extract_need(text: str) -> str | None:
    need = _search(NEED_PATTERNS, text, "need")
    if need:
        # "a website and my budget is 5k" -> "a website"
        need = re.split(r"\s+(?:and|e)\s+(?:my\s+|o\s+|meu\s+)?(?:budget|or[cç]amento)\b", need, flags=re.IGNORECASE)[0]
    return need


def extract_budget(text: str) -> str | None:
    return _search(BUDGET_PATTERNS, text, "budget")


class IntakeEngine(AgentEngine):
    def load(self, data: dict) -> None:
        self.greeted = bool(data.get("greeted"))
        self.prompts = int(data.get("prompts", 0))

    def dump(self) -> dict:
        return {"greeted": self.greeted, "prompts": self.prompts}


class IntakeAgent(Agent):
    role = AgentRole.INTAKE
    engine_class = IntakeEngine

    async def process_turn(self, message: InboundMessage, state: ConversationState, engine: IntakeEngine) -> TurnResult:
        text = message.text or ""
        need = extract_need(text)
        budget = extract_budget(text)

        if need:
            payload = {"need": need}
            if budget:
                payload["budget"] = budget
            return Handoff(
                reply=f"Got it, {need}. Let me ask a few quick questions so we can help.",
                target_role=AgentRole.QUALIFICATION,
                payload=payload,
            )

        slots = {"budget": budget} if budget else None
        if not engine.greeted:
            engine.greeted = True
            return Continuation(reply=GREETING, updated_state=engine.snapshot(), slots=slots)

        engine.prompts += 1
        return Continuation(reply=ASK_NEED, updated_state=engine.snapshot(), slots=slots)
