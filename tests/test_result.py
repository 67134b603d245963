from leadrelay.services.errors import AgentTurnError
from leadrelay.services.result import Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("reply")
        assert result.ok is True
        assert result.value == "reply"
        assert result.error is None


class TestResultFailure:
    def test_from_exception(self):
        result = Result.from_exception(KeyError("need"), "invalid_handoff")
        assert result.ok is False
        assert "need" in result.error
        assert result.error_code == "invalid_handoff"
        assert result.value is None

    def test_from_exception_default_code(self):
        assert Result.from_exception(ValueError("bad")).error_code == "unknown"

    def test_from_exception_without_message(self):
        assert Result.from_exception(RuntimeError()).error == "RuntimeError"

    def test_agent_turn_error_message(self):
        result = Result.from_exception(AgentTurnError("intake", "unexpected turn result str"), "invalid_turn_result")
        assert result.error == "Agent intake failed: unexpected turn result str"
