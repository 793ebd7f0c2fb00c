from unittest.mock import MagicMock, Mock, patch

import httpx

from setter_api.services.alert_service import (
    alert_critical,
    alert_error,
    alert_warning,
    format_alert,
    send_alert,
)

CONFIGURED = {"ALERT_BOT_TOKEN": "test-token", "ALERT_CHAT_ID": "test-chat"}


class TestSendAlert:
    def test_returns_false_when_not_configured(self, mock_env):
        result = send_alert("ERROR", "Test message")
        assert result is False

    @patch.dict("os.environ", CONFIGURED)
    @patch("setter_api.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client

        mock_response = Mock()
        mock_response.status_code = 200
        mock_client.post.return_value = mock_response

        result = send_alert("ERROR", "Job dead-lettered")

        assert result is True
        call_args = mock_client.post.call_args
        assert "api.telegram.org/bottest-token" in call_args[0][0]
        json_data = call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "ERROR" in json_data["text"]
        assert "Job dead-lettered" in json_data["text"]

    @patch.dict("os.environ", CONFIGURED)
    @patch("setter_api.services.alert_service.httpx.Client")
    def test_returns_false_on_telegram_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_response = Mock()
        mock_response.status_code = 400
        mock_client.post.return_value = mock_response

        assert send_alert("ERROR", "Test message") is False

    @patch.dict("os.environ", CONFIGURED)
    @patch("setter_api.services.alert_service.httpx.Client")
    def test_returns_false_on_network_error(self, mock_client_class):
        mock_client_class.return_value.__enter__.side_effect = httpx.ConnectError("Network error")

        assert send_alert("ERROR", "Test message") is False


class TestFormatAlert:
    def test_includes_context(self):
        text = format_alert("CRITICAL", "Reply not delivered", {"conversation_id": "c-1", "error": "400"})
        assert "CRITICAL" in text
        assert "conversation_id: c-1" in text

    def test_truncates_long_context_values(self):
        text = format_alert("ERROR", "boom", {"error": "x" * 1000})
        assert "x" * 301 not in text
        assert "…" in text


class TestAlertShortcuts:
    @patch("setter_api.services.alert_service.send_alert")
    def test_levels(self, mock_send):
        mock_send.return_value = True

        alert_error("e", {"a": 1})
        alert_critical("c")
        alert_warning("w")

        assert [call[0][0] for call in mock_send.call_args_list] == ["ERROR", "CRITICAL", "WARNING"]
        assert mock_send.call_args_list[0][0][2] == {"a": 1}
