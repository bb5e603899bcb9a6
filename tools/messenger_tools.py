"""Messenger delivery via the Graph API Send endpoint.

Calls the Graph API REST endpoint directly. Functions return a dict with
'message_id' on success, or 'error' plus a machine-readable 'reason' and a
'retryable' flag on failure; they never raise.
"""
import os
from typing import Any, Dict, List, Optional

import requests


GRAPH_BASE = "https://graph.facebook.com/v21.0"

# Graph API error codes that mean the contact can't be reached right now,
# not that the request was malformed.
_THROTTLE_CODES = {4, 17, 32, 613}
_OUTSIDE_WINDOW_SUBCODES = {2018278, 2018108}


def _graph_base() -> str:
    return os.environ.get("MESSENGER_GRAPH_URL", GRAPH_BASE)


def _page_token() -> str:
    return os.environ["MESSENGER_PAGE_TOKEN"]


def _send_timeout() -> float:
    return float(os.environ.get("MESSENGER_SEND_TIMEOUT", "10"))


def _failure(error: str, reason: str, retryable: bool, status_code: Optional[int] = None) -> Dict[str, Any]:
    return {
        "message_id": None,
        "error": error,
        "reason": reason,
        "retryable": retryable,
        "status_code": status_code,
    }


def booking_quick_replies(booking_url: str, title: str = "Book a call") -> List[Dict[str, Any]]:
    return [{"content_type": "text", "title": title[:20], "payload": f"BOOK_CALL|{booking_url}"}]


def send_message(
    page_id: str,
    recipient_id: str,
    text: str,
    quick_replies: Optional[List[Dict[str, Any]]] = None,
    messaging_type: str = "RESPONSE",
    tag: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Send one text message to a Messenger recipient.

    Args:
        page_id: The sending page (account) id.
        recipient_id: Page-scoped id of the contact.
        text: Message body.
        quick_replies: Optional quick-reply buttons for this message.
        messaging_type: RESPONSE, UPDATE or MESSAGE_TAG.
        tag: Message tag, required when messaging_type is MESSAGE_TAG.
        access_token: Page token; defaults to MESSENGER_PAGE_TOKEN.

    Returns:
        Dict with 'message_id' and 'recipient_id', or a failure dict.
    """
    message: Dict[str, Any] = {"text": text}
    if quick_replies:
        message["quick_replies"] = quick_replies
    body: Dict[str, Any] = {
        "recipient": {"id": recipient_id},
        "message": message,
        "messaging_type": messaging_type,
    }
    if tag:
        body["tag"] = tag

    try:
        resp = requests.post(
            f"{_graph_base()}/{page_id}/messages",
            params={"access_token": access_token or _page_token()},
            json=body,
            timeout=_send_timeout(),
        )
    except requests.Timeout as e:
        return _failure(f"Send timed out: {e}", "timeout", True)
    except requests.ConnectionError as e:
        return _failure(f"Connection failed: {e}", "connection_error", True)
    except KeyError:
        return _failure("MESSENGER_PAGE_TOKEN is not set", "missing_token", False)
    except requests.RequestException as e:
        return _failure(str(e), "request_error", False)

    if resp.status_code >= 400:
        try:
            err = resp.json().get("error", {})
        except ValueError:
            err = {}
        code = err.get("code")
        subcode = err.get("error_subcode")
        detail = err.get("message") or resp.text[:200]
        if resp.status_code == 429 or code in _THROTTLE_CODES:
            return _failure(detail, "rate_limited", True, resp.status_code)
        if subcode in _OUTSIDE_WINDOW_SUBCODES or code == 10:
            return _failure(detail, "outside_messaging_window", False, resp.status_code)
        if code == 551:
            return _failure(detail, "recipient_unavailable", False, resp.status_code)
        if resp.status_code >= 500:
            return _failure(detail, "server_error", True, resp.status_code)
        return _failure(detail, "rejected", False, resp.status_code)

    data = resp.json()
    return {
        "message_id": data.get("message_id"),
        "recipient_id": data.get("recipient_id", recipient_id),
        "error": None,
    }
