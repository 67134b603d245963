"""Human verification handshake and the durable bot block list.

Every state change is committed before the function returns, so a restart
never loses a pending challenge or a block.
"""

import re
import unicodedata
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadrelay.logging_config import get_logger
from leadrelay.models import BotBlock, VerificationChallenge
from leadrelay.services.errors import PersistenceError

logger = get_logger("verification")


class VerificationStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    VERIFIED = "verified"
    BLOCKED = "blocked"


class BlockReason(str, Enum):
    MAX_ATTEMPTS = "max_attempts_exceeded"
    TIMEOUT = "verification_timeout"
    SCORE = "score_above_threshold"


CONFIRMATION_PHRASES = (
    "i am human",
    "i'm human",
    "im human",
    "i am a human",
    "i am a person",
    "real person",
    "human",
    "yes i am",
    "yes",
    "yep",
    "sou humano",
    "sou humana",
    "sou uma pessoa",
    "sou real",
    "sim",
    "claro",
    "obvio",
)

# Whole-token match: "sim" must not fire inside "assim", nor "yes" inside "yesterday".
_CONFIRMATION_PATTERN = re.compile(
    r"(?<!\w)(?:"
    + "|".join(re.escape(p) for p in sorted(CONFIRMATION_PHRASES, key=len, reverse=True))
    + r")(?!\w)"
)


def _fold(text: str) -> str:
    text = text.replace("’", "'").lower()
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def is_confirmation(text: Optional[str]) -> bool:
    if not text:
        return False
    return _CONFIRMATION_PATTERN.search(_fold(text)) is not None


def _commit(db: Session, operation: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Commit failed during {operation}: {e}")
        raise PersistenceError(operation, e) from e


def _get_challenge(db: Session, contact_id: str) -> Optional[VerificationChallenge]:
    try:
        return db.query(VerificationChallenge).filter(VerificationChallenge.contact_id == contact_id).first()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError("load_challenge", e) from e


def is_blocked(db: Session, contact_id: str) -> bool:
    """True once the contact is on the block list, whatever its challenge row says."""
    try:
        return db.query(BotBlock.id).filter(BotBlock.contact_id == contact_id).first() is not None
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError("load_block", e) from e


def block_contact(
    db: Session,
    contact_id: str,
    reason: BlockReason,
    now: float,
    score: Optional[float] = None,
) -> None:
    challenge = _get_challenge(db, contact_id)
    if challenge is not None:
        challenge.status = VerificationStatus.BLOCKED.value
        challenge.last_attempt_at = now

    if not is_blocked(db, contact_id):
        db.add(BotBlock(contact_id=contact_id, reason=reason.value, score=score, blocked_at=now))

    _commit(db, "block_contact")
    logger.warning(
        "Contact blocked as automated",
        extra={"context": {"contact_id": contact_id, "reason": reason.value, "score": score}},
    )


def current_status(db: Session, contact_id: str, now: float, timeout_seconds: float) -> VerificationStatus:
    """Resolve the contact's verification status, expiring a stale challenge on the way."""
    if is_blocked(db, contact_id):
        return VerificationStatus.BLOCKED

    challenge = _get_challenge(db, contact_id)
    if challenge is None:
        return VerificationStatus.NONE

    status = VerificationStatus(challenge.status)
    if status == VerificationStatus.PENDING:
        prompted_at = challenge.last_attempt_at or challenge.issued_at
        if now - prompted_at > timeout_seconds:
            block_contact(db, contact_id, BlockReason.TIMEOUT, now)
            return VerificationStatus.BLOCKED
    return status


def issue_challenge(db: Session, contact_id: str, now: float) -> VerificationChallenge:
    challenge = _get_challenge(db, contact_id)
    if challenge is None:
        challenge = VerificationChallenge(contact_id=contact_id, attempts=0, issued_at=now)
        db.add(challenge)

    challenge.status = VerificationStatus.PENDING.value
    challenge.attempts = (challenge.attempts or 0) + 1
    challenge.issued_at = now
    challenge.last_attempt_at = now
    _commit(db, "issue_challenge")

    logger.info(
        "Verification challenge issued",
        extra={"context": {"contact_id": contact_id, "attempts": challenge.attempts}},
    )
    return challenge


def register_reply(
    db: Session,
    contact_id: str,
    text: Optional[str],
    now: float,
    max_attempts: int,
) -> VerificationStatus:
    """Judge a reply to a pending challenge.

    Returns VERIFIED on a confirmation phrase, PENDING when the contact gets
    another try, BLOCKED once the attempt budget is spent.
    """
    challenge = _get_challenge(db, contact_id)
    if challenge is None or challenge.status != VerificationStatus.PENDING.value:
        return VerificationStatus(challenge.status) if challenge else VerificationStatus.NONE

    if is_confirmation(text):
        challenge.status = VerificationStatus.VERIFIED.value
        challenge.last_attempt_at = now
        _commit(db, "verify_contact")
        logger.info("Contact verified as human", extra={"context": {"contact_id": contact_id}})
        return VerificationStatus.VERIFIED

    challenge.attempts += 1
    if challenge.attempts > max_attempts:
        block_contact(db, contact_id, BlockReason.MAX_ATTEMPTS, now)
        return VerificationStatus.BLOCKED

    challenge.last_attempt_at = now
    _commit(db, "register_reply")
    logger.info(
        "Verification reply did not confirm",
        extra={"context": {"contact_id": contact_id, "attempts": challenge.attempts, "max_attempts": max_attempts}},
    )
    return VerificationStatus.PENDING


def clear_challenge(db: Session, contact_id: str) -> bool:
    """Delete the challenge row. The block list is untouched."""
    challenge = _get_challenge(db, contact_id)
    if challenge is None:
        return False
    db.delete(challenge)
    _commit(db, "clear_challenge")
    return True


def peek_status(db: Session, contact_id: str) -> VerificationStatus:
    """Stored status without applying timeout expiry."""
    if is_blocked(db, contact_id):
        return VerificationStatus.BLOCKED
    challenge = _get_challenge(db, contact_id)
    return VerificationStatus(challenge.status) if challenge else VerificationStatus.NONE
