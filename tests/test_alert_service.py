from unittest.mock import patch

from app.services.alert_service import alert_critical, alert_error, send_alert


class TestSendAlert:
    def test_returns_false_when_not_configured(self, mock_env, monkeypatch):
        monkeypatch.setattr(mock_env, "alert_line_to", None)
        assert send_alert("ERROR", "Test message") is False

    @patch("app.services.alert_service.LineService")
    def test_pushes_to_admin_chat(self, mock_line_class, mock_env, monkeypatch):
        monkeypatch.setattr(mock_env, "alert_line_to", "U-admin")
        mock_line_class.return_value.push_message.return_value = True

        result = send_alert("ERROR", "Webhook failed", {"org_id": "123"})

        assert result is True
        to, text = mock_line_class.return_value.push_message.call_args.args
        assert to == "U-admin"
        assert "ERROR" in text
        assert "Webhook failed" in text
        assert "org_id: 123" in text

    def test_missing_access_token_returns_false(self, mock_env, monkeypatch):
        monkeypatch.setattr(mock_env, "alert_line_to", "U-admin")
        monkeypatch.setattr(mock_env, "line_channel_access_token", None)
        assert send_alert("CRITICAL", "x") is False


class TestAlertShortcuts:
    @patch("app.services.alert_service.send_alert")
    def test_alert_error(self, mock_send):
        alert_error("boom", {"a": 1})
        mock_send.assert_called_once_with("ERROR", "boom", {"a": 1})

    @patch("app.services.alert_service.send_alert")
    def test_alert_critical(self, mock_send):
        alert_critical("down")
        mock_send.assert_called_once_with("CRITICAL", "down", None)
