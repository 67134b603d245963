import pytest

from leadrelay.models import BotBlock, VerificationChallenge
from leadrelay.services.verification_service import (
    BlockReason,
    VerificationStatus,
    block_contact,
    clear_challenge,
    current_status,
    is_blocked,
    is_confirmation,
    issue_challenge,
    register_reply,
)

CONTACT = "5511988887777"


class TestConfirmationMatcher:
    @pytest.mark.parametrize(
        "text",
        ["I am human", "i'm human", "I’m human!", "yes", "Yes, I am", "sim", "Sim!", "sou humano", "óbvio", "claro que sim"],
    )
    def test_confirmations(self, text):
        assert is_confirmation(text) is True

    @pytest.mark.parametrize("text", ["assim", "yesterday", "inhuman", "simples", "", None, "press 1"])
    def test_not_confirmations(self, text):
        assert is_confirmation(text) is False


class TestChallengeLifecycle:
    def test_issue_creates_pending_with_first_attempt(self, db_session):
        challenge = issue_challenge(db_session, CONTACT, now=100.0)
        assert challenge.status == "pending"
        assert challenge.attempts == 1
        assert challenge.issued_at == 100.0
        assert current_status(db_session, CONTACT, 110.0, timeout_seconds=60) == VerificationStatus.PENDING

    def test_confirmation_verifies(self, db_session):
        issue_challenge(db_session, CONTACT, now=100.0)
        assert register_reply(db_session, CONTACT, "I am human", 105.0, max_attempts=2) == VerificationStatus.VERIFIED
        assert current_status(db_session, CONTACT, 10_000.0, timeout_seconds=60) == VerificationStatus.VERIFIED

    def test_attempt_budget_exhausted_blocks(self, db_session):
        issue_challenge(db_session, CONTACT, now=100.0)
        assert register_reply(db_session, CONTACT, "what?", 101.0, max_attempts=2) == VerificationStatus.PENDING
        assert register_reply(db_session, CONTACT, "menu", 102.0, max_attempts=2) == VerificationStatus.BLOCKED

        block = db_session.query(BotBlock).filter_by(contact_id=CONTACT).one()
        assert block.reason == BlockReason.MAX_ATTEMPTS.value
        assert is_blocked(db_session, CONTACT) is True

    def test_timeout_checked_lazily(self, db_session):
        issue_challenge(db_session, CONTACT, now=100.0)
        assert current_status(db_session, CONTACT, 160.0, timeout_seconds=60) == VerificationStatus.PENDING
        assert current_status(db_session, CONTACT, 161.0, timeout_seconds=60) == VerificationStatus.BLOCKED
        block = db_session.query(BotBlock).filter_by(contact_id=CONTACT).one()
        assert block.reason == BlockReason.TIMEOUT.value

    def test_reply_to_non_pending_is_noop(self, db_session):
        assert register_reply(db_session, CONTACT, "yes", 1.0, max_attempts=2) == VerificationStatus.NONE


class TestDurability:
    def test_pending_survives_new_session(self, session_factory):
        first = session_factory()
        issue_challenge(first, CONTACT, now=100.0)
        first.close()

        second = session_factory()
        try:
            assert current_status(second, CONTACT, 120.0, timeout_seconds=60) == VerificationStatus.PENDING
        finally:
            second.close()

    def test_block_outlives_challenge_row(self, db_session):
        issue_challenge(db_session, CONTACT, now=100.0)
        block_contact(db_session, CONTACT, BlockReason.SCORE, now=101.0, score=0.9)

        assert clear_challenge(db_session, CONTACT) is True
        assert db_session.query(VerificationChallenge).count() == 0
        assert current_status(db_session, CONTACT, 102.0, timeout_seconds=60) == VerificationStatus.BLOCKED

    def test_block_is_idempotent(self, db_session):
        block_contact(db_session, CONTACT, BlockReason.SCORE, now=1.0)
        block_contact(db_session, CONTACT, BlockReason.TIMEOUT, now=2.0)
        assert db_session.query(BotBlock).count() == 1
