"""Conversation router: owns which agent role answers each contact."""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from leadrelay.logging_config import contact_logger, get_logger
from leadrelay.schemas.inbound import InboundMessage
from leadrelay.services import conversation_service
from leadrelay.services.agents.base import Agent, AgentEngine, ConversationState, Continuation, Handoff, TurnResult
from leadrelay.services.cache import BoundedTTLCache
from leadrelay.services.errors import AgentTurnError
from leadrelay.services.result import Result
from leadrelay.services.state_machine import INITIAL_ROLE, AgentRole, InvalidTransitionError, transition

logger = get_logger("router")

DEFAULT_FALLBACK_REPLY = "Sorry, something went wrong on our side. Could you send that again?"


@dataclass
class TurnOutcome:
    contact_id: str
    role: AgentRole
    reply: Optional[str]
    handed_off_to: Optional[AgentRole] = None
    failed: bool = False
    error_code: Optional[str] = None


@dataclass
class _AppliedHandoff:
    target: AgentRole
    initial_state: dict


class AgentRouter:
    def __init__(
        self,
        agents: dict[AgentRole, Agent],
        engine_idle_seconds: float = 1800.0,
        engine_max_entries: int = 1000,
        engine_evict_fraction: float = 0.2,
        handoff_history_limit: int = 10,
        fallback_reply: str = DEFAULT_FALLBACK_REPLY,
        clock: Callable[[], float] = time.time,
    ):
        missing = [role.value for role in AgentRole if role not in agents]
        if missing:
            raise ValueError(f"No agent registered for roles: {', '.join(missing)}")
        self.agents = agents
        self.handoff_history_limit = handoff_history_limit
        self.fallback_reply = fallback_reply
        self._clock = clock
        self.engines = BoundedTTLCache(
            engine_idle_seconds, engine_max_entries, engine_evict_fraction, clock=clock, name="agent_engines"
        )
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_refs: dict[str, int] = {}
        self.counters = {"turns": 0, "handoffs": 0, "failures": 0, "engine_rebuilds": 0}

    def stats(self) -> dict:
        return {**self.counters, "cached_engines": len(self.engines), "active_locks": len(self._locks)}

    def sweep(self) -> int:
        return self.engines.sweep()

    @asynccontextmanager
    async def contact_lock(self, contact_id: str):
        """Serialize turns per contact. Locks exist only while someone holds or waits on them."""
        lock = self._locks.get(contact_id)
        if lock is None:
            lock = self._locks[contact_id] = asyncio.Lock()
        self._lock_refs[contact_id] = self._lock_refs.get(contact_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_refs[contact_id] -= 1
            if self._lock_refs[contact_id] == 0:
                del self._lock_refs[contact_id]
                del self._locks[contact_id]

    def _engine_for(self, state: ConversationState) -> AgentEngine:
        engine = self.engines.get(state.contact_id, touch=True)
        if engine is None or engine.role != state.current_role:
            engine = self.agents[state.current_role].create_engine(state.contact_id)
            self.engines.set(state.contact_id, engine)
            self.counters["engine_rebuilds"] += 1
        # the durable snapshot wins over whatever the cached engine remembers
        return engine.restore(state.agent_state)

    def drop_engine(self, contact_id: str) -> None:
        self.engines.pop(contact_id)

    async def handle(self, db: Session, message: InboundMessage) -> TurnOutcome:
        """Run one turn for the message's contact.

        Agent failures become a fallback reply with nothing persisted.
        PersistenceError propagates.
        """
        async with self.contact_lock(message.contact_id):
            return await self._handle_locked(db, message)

    async def _handle_locked(self, db: Session, message: InboundMessage) -> TurnOutcome:
        log = contact_logger(logger, message.contact_id, message_id=message.message_id)
        record, created = conversation_service.get_or_create_conversation(db, message.contact_id)
        state = conversation_service.load_state(db, record, self.handoff_history_limit, is_new=created)
        role = state.current_role
        engine = self._engine_for(state)

        turn = await self._run_turn(self.agents[role], message, state, engine)
        if not turn.ok:
            return self._fail(db, message.contact_id, role, turn, log)

        result = turn.value
        if isinstance(result, Handoff):
            applied = await self._prepare_handoff(role, result)
            if not applied.ok:
                return self._fail(db, message.contact_id, role, applied, log)

            target = applied.value.target
            conversation_service.record_handoff(
                db,
                record,
                target,
                result.payload,
                applied.value.initial_state,
                handed_off_at=self._clock(),
            )
            conversation_service.commit(db, "handoff")

            engine = self.agents[target].create_engine(message.contact_id)
            engine.restore(applied.value.initial_state)
            self.engines.set(message.contact_id, engine)

            self.counters["turns"] += 1
            self.counters["handoffs"] += 1
            log.info("Handoff executed", context={"from_role": role.value, "to_role": target.value})
            return TurnOutcome(message.contact_id, role, result.reply, handed_off_to=target)

        conversation_service.save_continuation(db, record, result.updated_state, result.slots)
        conversation_service.commit(db, "continuation")
        self.counters["turns"] += 1
        return TurnOutcome(message.contact_id, role, result.reply)

    async def _run_turn(
        self, agent: Agent, message: InboundMessage, state: ConversationState, engine: AgentEngine
    ) -> Result[TurnResult]:
        engine.turns += 1
        try:
            result = await agent.process_turn(message, state, engine)
            if not isinstance(result, (Continuation, Handoff)):
                raise AgentTurnError(agent.role.value, f"unexpected turn result {type(result).__name__}")
        except AgentTurnError as e:
            logger.error(str(e), extra={"context": {"contact_id": message.contact_id}})
            return Result.from_exception(e, "invalid_turn_result")
        except Exception as e:
            logger.exception(
                "Agent turn failed",
                extra={"context": {"contact_id": message.contact_id, "role": agent.role.value, "error": str(e)}},
            )
            return Result.from_exception(e, "agent_error")
        return Result.success(result)

    async def _prepare_handoff(self, from_role: AgentRole, handoff: Handoff) -> Result[_AppliedHandoff]:
        try:
            target = transition(from_role, handoff.target_role)
        except InvalidTransitionError as e:
            logger.error(f"Rejected handoff: {e}")
            return Result.from_exception(e, "invalid_handoff")

        try:
            initial_state = await self.agents[target].on_handoff_received(dict(handoff.payload or {}))
        except Exception as e:
            logger.exception(f"Handoff initializer failed for {target.value}: {e}")
            return Result.from_exception(e, "handoff_init_error")
        return Result.success(_AppliedHandoff(target=target, initial_state=dict(initial_state or {})))

    def _fail(self, db: Session, contact_id: str, role: AgentRole, result: Result, log) -> TurnOutcome:
        self.drop_engine(contact_id)
        conversation_service.rollback(db, "discard_failed_turn")
        self.counters["failures"] += 1
        log.warning("Turn failed, fallback reply sent", context={"role": role.value, "error_code": result.error_code})
        return TurnOutcome(contact_id, role, self.fallback_reply, failed=True, error_code=result.error_code)

    async def reset_conversation(self, db: Session, contact_id: str) -> AgentRole:
        """Operator reset: hand the contact back to intake with a clean slate."""
        async with self.contact_lock(contact_id):
            record, _ = conversation_service.get_or_create_conversation(db, contact_id)
            if record.current_role != INITIAL_ROLE.value or record.slots or record.agent_state:
                conversation_service.record_handoff(
                    db,
                    record,
                    INITIAL_ROLE,
                    payload={},
                    initial_state={},
                    handed_off_at=self._clock(),
                    reason="reset",
                    count_message=False,
                )
            conversation_service.commit(db, "reset_conversation")
            self.drop_engine(contact_id)
            logger.info(f"Conversation reset: contact={contact_id}")
            return INITIAL_ROLE
