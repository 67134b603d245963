from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from leadrelay.database import Base
from leadrelay.models.conversation_record import _utcnow


class HandoffRecord(Base):
    __tablename__ = "handoff_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    from_role = Column(String(32), nullable=False)
    to_role = Column(String(32), nullable=False)
    reason = Column(String(32), nullable=False, default="handoff")  # handoff, reset
    payload = Column(JSON, nullable=False, default=dict)
    handed_off_at = Column(Float, nullable=False)  # epoch seconds
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    conversation = relationship("ConversationRecord", back_populates="handoffs")
