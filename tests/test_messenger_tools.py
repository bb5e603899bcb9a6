"""Unit tests for messenger_tools: Send API calls and failure classification."""
from unittest.mock import MagicMock, patch

import requests

from tools.messenger_tools import booking_quick_replies, send_message


MESSENGER_MODULE = "tools.messenger_tools"


def _response(status_code, payload=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    if payload is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = payload
    return resp


class TestSendMessage:
    @patch(f"{MESSENGER_MODULE}.requests.post")
    @patch(f"{MESSENGER_MODULE}._page_token", return_value="page-token")
    def test_sends_successfully(self, mock_token, mock_post):
        mock_post.return_value = _response(200, {"message_id": "m_1", "recipient_id": "psid-1"})

        result = send_message("page-1", "psid-1", "Hi there")

        assert result["message_id"] == "m_1"
        assert result["error"] is None
        call = mock_post.call_args
        assert call.args[0].endswith("/page-1/messages")
        assert call.kwargs["params"] == {"access_token": "page-token"}
        assert call.kwargs["json"] == {
            "recipient": {"id": "psid-1"},
            "message": {"text": "Hi there"},
            "messaging_type": "RESPONSE",
        }

    @patch(f"{MESSENGER_MODULE}.requests.post")
    @patch(f"{MESSENGER_MODULE}._page_token", return_value="page-token")
    def test_tag_and_quick_replies_in_body(self, mock_token, mock_post):
        mock_post.return_value = _response(200, {"message_id": "m_2"})

        send_message(
            "page-1", "psid-1", "Checking in",
            booking_quick_replies("https://cal.example/book"), "MESSAGE_TAG", "ACCOUNT_UPDATE",
        )

        body = mock_post.call_args.kwargs["json"]
        assert body["messaging_type"] == "MESSAGE_TAG"
        assert body["tag"] == "ACCOUNT_UPDATE"
        assert body["message"]["quick_replies"][0]["payload"] == "BOOK_CALL|https://cal.example/book"

    @patch(f"{MESSENGER_MODULE}.requests.post")
    @patch(f"{MESSENGER_MODULE}._page_token", return_value="page-token")
    def test_timeout_is_retryable(self, mock_token, mock_post):
        mock_post.side_effect = requests.Timeout("read timed out")

        result = send_message("page-1", "psid-1", "Hi")

        assert result["message_id"] is None
        assert result["reason"] == "timeout"
        assert result["retryable"] is True

    @patch(f"{MESSENGER_MODULE}.requests.post")
    @patch(f"{MESSENGER_MODULE}._page_token", return_value="page-token")
    def test_rate_limited(self, mock_token, mock_post):
        mock_post.return_value = _response(429, {"error": {"message": "Too many calls", "code": 4}})

        result = send_message("page-1", "psid-1", "Hi")

        assert result["reason"] == "rate_limited"
        assert result["retryable"] is True
        assert result["status_code"] == 429

    @patch(f"{MESSENGER_MODULE}.requests.post")
    @patch(f"{MESSENGER_MODULE}._page_token", return_value="page-token")
    def test_outside_messaging_window(self, mock_token, mock_post):
        mock_post.return_value = _response(
            400, {"error": {"message": "outside allowed window", "code": 10, "error_subcode": 2018278}}
        )

        result = send_message("page-1", "psid-1", "Hi")

        assert result["reason"] == "outside_messaging_window"
        assert result["retryable"] is False

    @patch(f"{MESSENGER_MODULE}.requests.post")
    @patch(f"{MESSENGER_MODULE}._page_token", return_value="page-token")
    def test_server_error_without_json(self, mock_token, mock_post):
        mock_post.return_value = _response(502, text="Bad gateway")

        result = send_message("page-1", "psid-1", "Hi")

        assert result["reason"] == "server_error"
        assert result["retryable"] is True
        assert result["error"] == "Bad gateway"

    @patch(f"{MESSENGER_MODULE}.requests.post")
    @patch(f"{MESSENGER_MODULE}._page_token", return_value="page-token")
    def test_rejected_request(self, mock_token, mock_post):
        mock_post.return_value = _response(400, {"error": {"message": "Invalid parameter", "code": 100}})

        result = send_message("page-1", "psid-1", "Hi")

        assert result["reason"] == "rejected"
        assert result["retryable"] is False

    @patch(f"{MESSENGER_MODULE}.requests.post")
    def test_missing_token(self, mock_post, monkeypatch):
        monkeypatch.delenv("MESSENGER_PAGE_TOKEN", raising=False)

        result = send_message("page-1", "psid-1", "Hi")

        assert result["reason"] == "missing_token"
        mock_post.assert_not_called()


class TestBookingQuickReplies:
    def test_title_truncated(self):
        replies = booking_quick_replies("https://cal.example", title="Book a discovery call today")
        assert replies[0]["title"] == "Book a discovery cal"
        assert replies[0]["content_type"] == "text"
