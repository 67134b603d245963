from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadrelay.logging_config import get_logger
from leadrelay.models import ConversationRecord, HandoffRecord
from leadrelay.services.agents.base import ConversationState, HandoffEntry
from leadrelay.services.errors import PersistenceError
from leadrelay.services.state_machine import INITIAL_ROLE, AgentRole
from leadrelay.services.verification_service import peek_status

logger = get_logger("conversation_service")


def get_or_create_conversation(db: Session, contact_id: str) -> tuple[ConversationRecord, bool]:
    """Find the contact's conversation or create one owned by the intake role."""
    try:
        record = db.query(ConversationRecord).filter(ConversationRecord.contact_id == contact_id).first()
        if record:
            return record, False

        record = ConversationRecord(
            contact_id=contact_id,
            current_role=INITIAL_ROLE.value,
            slots={},
            agent_state={},
            message_count=0,
        )
        db.add(record)
        db.flush()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError("get_or_create_conversation", e) from e

    logger.info(f"Conversation created: contact={contact_id}")
    return record, True


def load_state(db: Session, record: ConversationRecord, history_limit: int = 10, is_new: bool = False) -> ConversationState:
    try:
        history = (
            db.query(HandoffRecord)
            .filter(HandoffRecord.conversation_id == record.id)
            .order_by(HandoffRecord.id.desc())
            .limit(history_limit)
            .all()
        )
        verification = peek_status(db, record.contact_id)
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError("load_state", e) from e

    return ConversationState(
        contact_id=record.contact_id,
        current_role=AgentRole(record.current_role),
        slots=dict(record.slots or {}),
        agent_state=dict(record.agent_state or {}),
        message_count=record.message_count or 0,
        handoff_history=[
            HandoffEntry(
                from_role=h.from_role,
                to_role=h.to_role,
                reason=h.reason,
                payload=dict(h.payload or {}),
                at=h.handed_off_at,
            )
            for h in reversed(history)
        ],
        verification_status=verification.value,
        is_new=is_new,
    )


def merge_slots(current: dict, updates: dict | None) -> dict:
    """Non-empty update values overwrite; empty ones never erase collected data."""
    merged = dict(current or {})
    for key, value in (updates or {}).items():
        if value not in (None, "", [], {}):
            merged[key] = value
    return merged


def save_continuation(db: Session, record: ConversationRecord, agent_state: dict, slots: dict | None = None) -> None:
    record.agent_state = dict(agent_state or {})
    if slots:
        record.slots = merge_slots(record.slots, slots)
    record.message_count = (record.message_count or 0) + 1
    record.updated_at = datetime.now(timezone.utc)


def record_handoff(
    db: Session,
    record: ConversationRecord,
    to_role: AgentRole,
    payload: dict,
    initial_state: dict,
    handed_off_at: float,
    reason: str = "handoff",
    count_message: bool = True,
) -> HandoffRecord:
    """Append the handoff and swap the owning role. Caller commits."""
    handoff = HandoffRecord(
        conversation_id=record.id,
        from_role=record.current_role,
        to_role=to_role.value,
        reason=reason,
        payload=dict(payload or {}),
        handed_off_at=handed_off_at,
    )
    db.add(handoff)

    record.current_role = to_role.value
    record.slots = merge_slots(record.slots, payload) if reason == "handoff" else dict(payload or {})
    record.agent_state = dict(initial_state or {})
    if count_message:
        record.message_count = (record.message_count or 0) + 1
    record.updated_at = datetime.now(timezone.utc)
    return handoff


def commit(db: Session, operation: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Commit failed during {operation}: {e}")
        raise PersistenceError(operation, e) from e


def rollback(db: Session, operation: str) -> None:
    try:
        db.rollback()
    except SQLAlchemyError as e:
        logger.error(f"Rollback failed during {operation}: {e}")
        raise PersistenceError(operation, e) from e
