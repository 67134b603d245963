"""Bot/human classification of admitted messages."""

import math
import re
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session

from leadrelay.logging_config import get_logger
from leadrelay.schemas.inbound import InboundMessage
from leadrelay.services import verification_service
from leadrelay.services.cache import BoundedTTLCache
from leadrelay.services.verification_service import BlockReason, VerificationStatus

logger = get_logger("classifier")


class Decision(str, Enum):
    ALLOW = "allow"
    CHALLENGE = "challenge"
    REPROMPT = "reprompt"
    VERIFIED = "verified"
    BLOCK = "block"
    BLOCKED = "blocked"


AUTO_RESPONSE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        # menus
        r"\b(digite|escolha|selecione|responda com)\s+(o\s+)?(n[uú]mero|op[cç][aã]o)",
        r"\b(type|press|reply with|choose|select)\s+(the\s+)?(number|option|\d)\b",
        r"\bpress\s+\d+\s+(for|to)\b",
        r"\bmenu\s+(principal|de op[cç][oõ]es|options?)\b",
        r"\bmain menu\b",
        r"\bop[cç][aã]o\s+inv[aá]lida\b|\binvalid option\b",
        # away / out-of-office
        r"\b(fora do|nosso)\s+hor[aá]rio de (atendimento|funcionamento)\b",
        r"\bout of (the )?office\b",
        r"\boutside (our|of) (business|working|office) hours\b",
        r"\b(no momento|neste momento)\s+n[aã]o\s+(podemos|posso|estamos)",
        r"\b(we|i) (are|am) (currently )?(unavailable|away|closed)\b",
        r"\bresponderemos (assim que|em breve)\b|\bwe will (get back|reply|respond) (to you )?(as soon as|shortly)\b",
        r"\bmensagem autom[aá]tica\b|\bautomatic (reply|message)\b|\bauto-?reply\b",
        r"\bobrigad[oa] (pelo|por) (seu )?contato\b|\bthank you for (contacting|your message)\b",
        # assistant self-introductions
        r"\b(sou|eu sou) (o |a )?(assistente|atendente) virtual\b",
        r"\b(i am|i'm) (a |an |the )?(virtual assistant|automated assistant|chatbot|bot)\b",
        r"\bthis is an automated\b",
    )
]

_NUMBERED_OPTION = re.compile(r"^\s*(\d{1,2}|[a-e])\s*[\).:\-–]\s*\S", re.MULTILINE | re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def matches_auto_response(text: str) -> bool:
    if not text:
        return False
    if any(p.search(text) for p in AUTO_RESPONSE_PATTERNS):
        return True
    return len(_NUMBERED_OPTION.findall(text)) >= 2


def _normalize_text(text: str) -> str:
    return _WHITESPACE.sub(" ", text.strip().lower())


def character_entropy(text: str) -> float:
    """Shannon entropy in bits per character."""
    if not text:
        return 0.0
    counts = Counter(text)
    total = len(text)
    return -sum((c / total) * math.log2(c / total) for c in counts.values())


@dataclass
class Weights:
    frequency: float = 0.10
    latency: float = 0.35
    entropy: float = 0.10
    content: float = 0.35
    carryover: float = 0.10

    def as_dict(self) -> dict[str, float]:
        return {
            "frequency": self.frequency,
            "latency": self.latency,
            "entropy": self.entropy,
            "content": self.content,
            "carryover": self.carryover,
        }


@dataclass
class BotScoreRecord:
    history_size: int = 10
    timestamps: deque = field(default_factory=deque)
    texts: deque = field(default_factory=deque)
    penalty: float = 0.0
    penalty_at: Optional[float] = None
    signals: dict[str, float] = field(default_factory=dict)
    aggregate: float = 0.0
    decision: Optional[Decision] = None

    def observe(self, text: str, now: float) -> None:
        self.timestamps.append(now)
        self.texts.append(_normalize_text(text))
        while len(self.texts) > self.history_size:
            self.texts.popleft()
        while len(self.timestamps) > self.history_size * 4:
            self.timestamps.popleft()


@dataclass
class Classification:
    decision: Decision
    contact_id: str
    score: float = 0.0
    signals: dict[str, float] = field(default_factory=dict)
    reason: Optional[str] = None

    @property
    def admitted(self) -> bool:
        return self.decision == Decision.ALLOW


class OutboundTimestampStore:
    """Last successful send time per contact, written by delivery, read by latency scoring."""

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 10000,
        evict_fraction: float = 0.2,
        clock: Callable[[], float] = time.time,
    ):
        self._cache = BoundedTTLCache(ttl_seconds, max_entries, evict_fraction, clock=clock, name="outbound_ts")

    def __len__(self) -> int:
        return len(self._cache)

    def record(self, contact_id: str, sent_at: float) -> None:
        self._cache.set(contact_id, sent_at)

    def consume(self, contact_id: str, preserve: bool = False) -> Optional[float]:
        """Read the timestamp, clearing it unless ``preserve`` is set."""
        if preserve:
            return self._cache.get(contact_id)
        return self._cache.pop(contact_id)

    def peek(self, contact_id: str) -> Optional[float]:
        return self._cache.get(contact_id)

    def sweep(self) -> int:
        return self._cache.sweep()


class BotClassifier:
    def __init__(
        self,
        outbound_timestamps: OutboundTimestampStore,
        weights: Optional[Weights] = None,
        low_threshold: float = 0.30,
        high_threshold: float = 0.75,
        frequency_window_seconds: float = 10.0,
        frequency_limit: int = 5,
        latency_instant_seconds: float = 1.0,
        latency_human_seconds: float = 5.0,
        history_size: int = 10,
        entropy_reference_bits: float = 4.0,
        carryover_half_life_seconds: float = 1800.0,
        score_inactivity_seconds: float = 3600.0,
        score_max_entries: int = 10000,
        score_evict_fraction: float = 0.2,
        verification_max_attempts: int = 2,
        verification_timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        if not 0 <= low_threshold < high_threshold <= 1:
            raise ValueError("thresholds must satisfy 0 <= low < high <= 1")
        self.outbound_timestamps = outbound_timestamps
        self.weights = weights or Weights()
        self.low_threshold = low_threshold
        self.high_threshold = high_threshold
        self.frequency_window_seconds = frequency_window_seconds
        self.frequency_limit = max(2, frequency_limit)
        self.latency_instant_seconds = latency_instant_seconds
        self.latency_human_seconds = latency_human_seconds
        self.history_size = history_size
        self.entropy_reference_bits = entropy_reference_bits
        self.carryover_half_life_seconds = carryover_half_life_seconds
        self.verification_max_attempts = verification_max_attempts
        self.verification_timeout_seconds = verification_timeout_seconds
        self._clock = clock
        self.records = BoundedTTLCache(
            score_inactivity_seconds,
            score_max_entries,
            score_evict_fraction,
            clock=clock,
            name="bot_scores",
        )
        self.counters = {decision.value: 0 for decision in Decision}

    def stats(self) -> dict:
        return {**self.counters, "tracked_contacts": len(self.records)}

    def sweep(self) -> int:
        return self.records.sweep() + self.outbound_timestamps.sweep()

    # signals

    def frequency_signal(self, record: BotScoreRecord, now: float) -> float:
        recent = [ts for ts in record.timestamps if now - ts <= self.frequency_window_seconds]
        return min(1.0, max(0, len(recent) - 1) / (self.frequency_limit - 1))

    def latency_signal(self, elapsed: Optional[float]) -> float:
        if elapsed is None or elapsed < 0:
            return 0.0
        if elapsed <= self.latency_instant_seconds:
            return 1.0
        if elapsed >= self.latency_human_seconds:
            return 0.0
        span = self.latency_human_seconds - self.latency_instant_seconds
        return (self.latency_human_seconds - elapsed) / span

    def entropy_signal(self, record: BotScoreRecord) -> float:
        repetition = 0.0
        texts = [t for t in record.texts if t]
        if len(texts) >= 3:
            repetition = 1.0 - len(set(texts)) / len(texts)

        flatness = 0.0
        current = texts[-1] if texts else ""
        if len(current) >= 8:
            max_bits = min(self.entropy_reference_bits, math.log2(len(current)))
            flatness = max(0.0, 1.0 - character_entropy(current) / max_bits)
        return min(1.0, max(repetition, flatness))

    def content_signal(self, text: str) -> float:
        return 1.0 if matches_auto_response(text) else 0.0

    def carryover_signal(self, record: BotScoreRecord, now: float) -> float:
        if not record.penalty or record.penalty_at is None:
            return 0.0
        elapsed = max(0.0, now - record.penalty_at)
        return record.penalty * 0.5 ** (elapsed / self.carryover_half_life_seconds)

    def aggregate(self, signals: dict[str, float]) -> float:
        weights = self.weights.as_dict()
        total = sum(weights.values())
        if total <= 0:
            return 0.0
        return sum(weights[name] * signals.get(name, 0.0) for name in weights) / total

    def score(self, message: InboundMessage, pending: bool = False) -> tuple[float, dict[str, float]]:
        """Update the contact's rolling record and return (aggregate, signals)."""
        now = self._clock()
        record, _ = self.records.get_or_insert(
            message.contact_id, lambda: BotScoreRecord(history_size=self.history_size)
        )
        self.records.get(message.contact_id, touch=True)

        carryover = self.carryover_signal(record, now)
        record.observe(message.text, now)

        sent_at = self.outbound_timestamps.consume(message.contact_id, preserve=pending)
        elapsed = None if sent_at is None else now - sent_at

        signals = {
            "frequency": self.frequency_signal(record, now),
            "latency": self.latency_signal(elapsed),
            "entropy": self.entropy_signal(record),
            "content": self.content_signal(message.text),
            "carryover": carryover,
        }
        aggregate = self.aggregate(signals)

        if aggregate >= self.low_threshold:
            record.penalty = max(carryover, aggregate)
            record.penalty_at = now
        record.signals = signals
        record.aggregate = aggregate
        return aggregate, signals

    def evaluate(self, db: Session, message: InboundMessage) -> Classification:
        contact_id = message.contact_id
        now = self._clock()

        status = verification_service.current_status(db, contact_id, now, self.verification_timeout_seconds)
        if status == VerificationStatus.BLOCKED:
            # lazy timeout expiry lands here too; the block was written by current_status
            return self._finish(Classification(Decision.BLOCKED, contact_id, reason="block_list"))

        if status == VerificationStatus.VERIFIED:
            self.outbound_timestamps.consume(contact_id)
            return self._finish(Classification(Decision.ALLOW, contact_id, reason="verified"))

        pending = status == VerificationStatus.PENDING
        score, signals = self.score(message, pending=pending)

        if pending:
            if score >= self.high_threshold:
                verification_service.block_contact(db, contact_id, BlockReason.SCORE, now, score=score)
                return self._finish(Classification(Decision.BLOCK, contact_id, score, signals, "score_during_challenge"))

            outcome = verification_service.register_reply(
                db, contact_id, message.text, now, self.verification_max_attempts
            )
            if outcome == VerificationStatus.VERIFIED:
                self.outbound_timestamps.consume(contact_id)
                return self._finish(Classification(Decision.VERIFIED, contact_id, score, signals))
            if outcome == VerificationStatus.BLOCKED:
                return self._finish(Classification(Decision.BLOCK, contact_id, score, signals, "max_attempts"))
            return self._finish(Classification(Decision.REPROMPT, contact_id, score, signals))

        if score < self.low_threshold:
            return self._finish(Classification(Decision.ALLOW, contact_id, score, signals))

        if score < self.high_threshold:
            verification_service.issue_challenge(db, contact_id, now)
            return self._finish(Classification(Decision.CHALLENGE, contact_id, score, signals))

        verification_service.block_contact(db, contact_id, BlockReason.SCORE, now, score=score)
        return self._finish(Classification(Decision.BLOCK, contact_id, score, signals, "score_above_threshold"))

    def _finish(self, result: Classification) -> Classification:
        self.counters[result.decision.value] += 1
        record = self.records.get(result.contact_id)
        if record is not None:
            record.decision = result.decision
        if result.decision != Decision.ALLOW:
            logger.info(
                "Classifier decision",
                extra={
                    "context": {
                        "contact_id": result.contact_id,
                        "decision": result.decision.value,
                        "score": round(result.score, 3),
                        "signals": {k: round(v, 3) for k, v in result.signals.items()},
                        "reason": result.reason,
                    }
                },
            )
        return result

