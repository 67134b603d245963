from sqlalchemy import Column, DateTime, Float, Integer, String

from leadrelay.database import Base
from leadrelay.models.conversation_record import _utcnow


class VerificationChallenge(Base):
    __tablename__ = "verification_challenges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(String(64), nullable=False, unique=True, index=True)
    status = Column(String(16), nullable=False, default="pending")  # pending, verified, blocked
    attempts = Column(Integer, nullable=False, default=0)
    issued_at = Column(Float, nullable=False)  # epoch seconds
    last_attempt_at = Column(Float)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class BotBlock(Base):
    """Permanent block list. Rows outlive the challenge that produced them."""

    __tablename__ = "bot_blocks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(String(64), nullable=False, unique=True, index=True)
    reason = Column(String(64), nullable=False)  # max_attempts_exceeded, verification_timeout, score_above_threshold
    score = Column(Float)
    blocked_at = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
