from unittest.mock import MagicMock, Mock, patch

from leadrelay.services.alert_service import (
    format_alert,
    send_alert,
)


def _ok_client(mock_client_class, status_code=200):
    mock_client = MagicMock()
    mock_client_class.return_value.__enter__.return_value = mock_client
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_client.post.return_value = mock_response
    return mock_client


class TestFormatAlert:
    def test_level_icon_and_message(self):
        text = format_alert("CRITICAL", "Database unreachable")
        assert text.startswith("🔥 *CRITICAL*")
        assert "Database unreachable" in text
        assert "```" not in text

    def test_context_rendered_as_block(self):
        text = format_alert("ERROR", "Outbound delivery failed", {"contact_id": "5511988887777", "attempts": 3})
        assert "❌" in text
        assert "  contact_id: 5511988887777" in text
        assert "  attempts: 3" in text

    def test_unknown_level_gets_generic_icon(self):
        assert format_alert("NOTICE", "x").startswith("📢")


class TestSendAlert:
    @patch("leadrelay.services.alert_service.ALERT_BOT_TOKEN", None)
    @patch("leadrelay.services.alert_service.ALERT_CHAT_ID", None)
    @patch("leadrelay.services.alert_service.httpx.Client")
    def test_returns_false_when_not_configured(self, mock_client_class):
        assert send_alert("ERROR", "Test message") is False
        mock_client_class.assert_not_called()

    @patch("leadrelay.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("leadrelay.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("leadrelay.services.alert_service.httpx.Client")
    def test_posts_to_telegram(self, mock_client_class):
        mock_client = _ok_client(mock_client_class)

        result = send_alert("ERROR", "Outbound delivery failed", {"contact_id": "123"})

        assert result is True
        url = mock_client.post.call_args[0][0]
        assert url == "https://api.telegram.org/bottest-token/sendMessage"
        json_data = mock_client.post.call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "contact_id: 123" in json_data["text"]

    @patch("leadrelay.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("leadrelay.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("leadrelay.services.alert_service.httpx.Client")
    def test_returns_false_on_telegram_error(self, mock_client_class):
        _ok_client(mock_client_class, status_code=400)
        assert send_alert("ERROR", "Test message") is False

    @patch("leadrelay.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("leadrelay.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("leadrelay.services.alert_service.httpx.Client")
    def test_returns_false_on_exception(self, mock_client_class):
        mock_client_class.return_value.__enter__.side_effect = Exception("Network error")
        assert send_alert("ERROR", "Test message") is False

