from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from leadrelay.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationRecord(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(String(64), nullable=False, unique=True, index=True)
    current_role = Column(String(32), nullable=False, default="intake")  # intake, qualification, scheduling, support
    slots = Column(JSON, nullable=False, default=dict)
    agent_state = Column(JSON, nullable=False, default=dict)
    message_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    handoffs = relationship(
        "HandoffRecord",
        back_populates="conversation",
        order_by="HandoffRecord.id",
        cascade="all, delete-orphan",
    )
