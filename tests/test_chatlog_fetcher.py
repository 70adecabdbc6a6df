"""Tests for chatlog_fetcher module."""

from datetime import datetime
from unittest.mock import MagicMock, patch
from zoneinfo import ZoneInfo

import pytest
import requests

from chatlens.chatlog_fetcher import _normalize_base_url, fetch, list_chatrooms
from chatlens.exceptions import TranscriptFetchError
from chatlens.models import Recent
from chatlens.time_window import resolve

SHANGHAI = ZoneInfo("Asia/Shanghai")
NOW = datetime(2025, 7, 2, 12, 0, tzinfo=SHANGHAI)
WINDOW = resolve(Recent(7), NOW)


def _response(text: str = "", content_type: str = "text/plain; charset=utf-8", json_body=None):
    resp = MagicMock()
    resp.text = text
    resp.headers = {"content-type": content_type}
    resp.json.return_value = json_body
    return resp


def test_normalize_base_url():
    assert _normalize_base_url("127.0.0.1:5030/") == "http://127.0.0.1:5030"
    assert _normalize_base_url("https://chat.example.com") == "https://chat.example.com"
    with pytest.raises(TranscriptFetchError):
        _normalize_base_url("")


def test_fetch_sends_room_and_window():
    body = "Alice 2025-07-01 10:00:00\nhello"
    with patch("chatlens.chatlog_fetcher.requests.get", return_value=_response(body)) as mock_get:
        messages = fetch("127.0.0.1:5030", "Dev Group", WINDOW, now=NOW)

    assert [m.content for m in messages] == ["hello"]
    args, kwargs = mock_get.call_args
    assert args[0] == "http://127.0.0.1:5030/api/v1/chatlog"
    assert kwargs["params"] == {"talker": "Dev Group", "time": "2025-06-25~2025-07-02", "format": "text"}
    assert kwargs["timeout"] > 0


def test_fetch_decodes_json_responses():
    resp = _response(content_type="application/json", json_body=[{"sender": "A", "content": "x"}])
    with patch("chatlens.chatlog_fetcher.requests.get", return_value=resp):
        messages = fetch("http://svc", "room", WINDOW, now=NOW)
    assert messages[0].sender == "A"


def test_fetch_empty_body_returns_no_messages():
    with patch("chatlens.chatlog_fetcher.requests.get", return_value=_response("  \n")):
        assert fetch("http://svc", "room", WINDOW, now=NOW) == []


def test_fetch_rejects_html_error_page():
    page = "<!DOCTYPE html><html><body>Not Found</body></html>"
    with patch("chatlens.chatlog_fetcher.requests.get", return_value=_response(page)):
        with pytest.raises(TranscriptFetchError, match="HTML page"):
            fetch("http://svc", "room", WINDOW, now=NOW)


def test_fetch_wraps_connection_errors():
    with patch(
        "chatlens.chatlog_fetcher.requests.get",
        side_effect=requests.exceptions.ConnectionError("refused"),
    ):
        with pytest.raises(TranscriptFetchError, match="unreachable"):
            fetch("http://svc", "room", WINDOW, now=NOW)


def test_fetch_wraps_bad_status():
    resp = _response("oops")
    resp.raise_for_status.side_effect = requests.exceptions.HTTPError("500 Server Error")
    with patch("chatlens.chatlog_fetcher.requests.get", return_value=resp):
        with pytest.raises(TranscriptFetchError):
            fetch("http://svc", "room", WINDOW, now=NOW)


def test_list_chatrooms_tries_endpoints_in_order():
    csv_listing = "Name,Remark,NickName,Owner,UserCount\n1@chatroom,,Dev,wxid,3\n"
    responses = [
        requests.exceptions.ConnectionError("refused"),
        _response("<html><body>login</body></html>"),
        _response(csv_listing),
    ]
    with patch("chatlens.chatlog_fetcher.requests.get", side_effect=responses) as mock_get:
        rooms = list_chatrooms("svc:5030")

    assert rooms == ["Dev"]
    assert mock_get.call_count == 3


def test_list_chatrooms_raises_when_nothing_works():
    with patch(
        "chatlens.chatlog_fetcher.requests.get",
        side_effect=requests.exceptions.Timeout("slow"),
    ):
        with pytest.raises(TranscriptFetchError, match="Could not list chatrooms"):
            list_chatrooms("svc:5030")
