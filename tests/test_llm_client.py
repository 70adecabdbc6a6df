"""Tests for llm_client module."""

from unittest.mock import MagicMock, patch

import requests

from chatlens.exceptions import USER_MESSAGES, ErrorKind, LLMAPIError
from chatlens.html_report import ReportContext
from chatlens.llm_client import (
    CallResult,
    analyze,
    classify_exception,
    classify_status,
    kimi_max_tokens,
    with_retry,
)
from chatlens.models import OutputShape

CONTEXT = ReportContext(task_name="weekly", room="dev", message_count=12)
DOCUMENT = "<!DOCTYPE html><html><body>report</body></html>"


def _configure(mock_settings, **overrides):
    mock_settings.deepseek_api_key = "sk-test"
    mock_settings.gemini_api_key = "gm-test"
    mock_settings.kimi_api_key = ""
    mock_settings.llm_proxy_url = ""
    mock_settings.llm_timeout_seconds = 120
    mock_settings.llm_max_attempts = 2
    mock_settings.llm_retry_delay_seconds = 2.0
    for key, value in overrides.items():
        setattr(mock_settings, key, value)


def _ok_response(body: dict):
    resp = MagicMock()
    resp.ok = True
    resp.status_code = 200
    resp.json.return_value = body
    return resp


def _error_response(status: int):
    resp = MagicMock()
    resp.ok = False
    resp.status_code = status
    resp.text = "error body"
    return resp


def _chat_body(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


# --- Retry ---


def test_with_retry_succeeds_on_second_attempt():
    results = [CallResult(error_kind=ErrorKind.RATE_LIMITED, error="429"), CallResult(text="done")]
    sleeps = []

    result = with_retry(lambda attempt: results[attempt - 1], 2, lambda a: a * 2.0, sleep=sleeps.append)

    assert result.ok
    assert result.text == "done"
    assert sleeps == [2.0]


def test_with_retry_returns_last_failure():
    attempts = []
    sleeps = []

    def attempt_fn(attempt):
        attempts.append(attempt)
        return CallResult(error_kind=ErrorKind.TIMEOUT, error=f"attempt {attempt}")

    result = with_retry(attempt_fn, 2, lambda a: 1.0, sleep=sleeps.append)

    assert attempts == [1, 2]
    assert sleeps == [1.0]
    assert result.error == "attempt 2"


# --- Classification ---


def test_classify_status():
    assert classify_status(401) == ErrorKind.UNAUTHENTICATED
    assert classify_status(403) == ErrorKind.UNAUTHENTICATED
    assert classify_status(413) == ErrorKind.PAYLOAD_TOO_LARGE
    assert classify_status(429) == ErrorKind.RATE_LIMITED
    assert classify_status(503) == ErrorKind.UNREACHABLE
    assert classify_status(504) == ErrorKind.TIMEOUT
    assert classify_status(500) == ErrorKind.UNKNOWN


def test_classify_exception():
    assert classify_exception(requests.exceptions.ReadTimeout()) == ErrorKind.TIMEOUT
    assert classify_exception(requests.exceptions.ConnectionError()) == ErrorKind.UNREACHABLE
    assert classify_exception(LLMAPIError("x", ErrorKind.RATE_LIMITED)) == ErrorKind.RATE_LIMITED
    assert classify_exception(ValueError("bad json")) == ErrorKind.UPSTREAM_MALFORMED
    assert classify_exception(RuntimeError("?")) == ErrorKind.UNKNOWN


# --- analyze ---


def test_analyze_deepseek_success():
    with patch("chatlens.llm_client.settings") as mock_settings, \
         patch("chatlens.llm_client.requests.post", return_value=_ok_response(_chat_body(DOCUMENT))) as mock_post:
        _configure(mock_settings)
        outcome = analyze("prompt text", "deepseek-chat", CONTEXT, sleep=lambda s: None)

    assert outcome.success is True
    assert outcome.shape == OutputShape.FULL_DOCUMENT
    assert outcome.html == DOCUMENT
    assert outcome.room == "dev"

    _, kwargs = mock_post.call_args
    assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
    assert kwargs["json"]["model"] == "deepseek-chat"
    assert kwargs["json"]["temperature"] == 0.7
    assert kwargs["json"]["stream"] is False
    assert kwargs["proxies"] is None


def test_analyze_reasoner_omits_temperature():
    with patch("chatlens.llm_client.settings") as mock_settings, \
         patch("chatlens.llm_client.requests.post", return_value=_ok_response(_chat_body(DOCUMENT))) as mock_post:
        _configure(mock_settings, llm_proxy_url="http://proxy:8080")
        analyze("prompt text", "deepseek-reasoner", CONTEXT, sleep=lambda s: None)

    _, kwargs = mock_post.call_args
    assert "temperature" not in kwargs["json"]
    assert kwargs["json"]["max_tokens"] <= 16000
    assert kwargs["proxies"] == {"http": "http://proxy:8080", "https": "http://proxy:8080"}


def test_missing_key_fails_without_request():
    with patch("chatlens.llm_client.settings") as mock_settings, \
         patch("chatlens.llm_client.requests.post") as mock_post:
        _configure(mock_settings)
        outcome = analyze("prompt text", "moonshot-v1-8k", CONTEXT, sleep=lambda s: None)

    mock_post.assert_not_called()
    assert outcome.success is False
    assert outcome.error_kind == ErrorKind.UNAUTHENTICATED


def test_rate_limited_twice_renders_failure_page():
    sleeps = []
    with patch("chatlens.llm_client.settings") as mock_settings, \
         patch("chatlens.llm_client.requests.post", return_value=_error_response(429)) as mock_post:
        _configure(mock_settings)
        outcome = analyze("prompt text", "deepseek-chat", CONTEXT, sleep=sleeps.append)

    assert mock_post.call_count == 2
    assert sleeps == [2.0]
    assert outcome.success is False
    assert outcome.error_kind == ErrorKind.RATE_LIMITED
    assert outcome.error == USER_MESSAGES[ErrorKind.RATE_LIMITED]
    assert "分析失败" in outcome.html
    assert USER_MESSAGES[ErrorKind.RATE_LIMITED] in outcome.html
    assert "error body" not in outcome.html


def test_timeout_is_classified():
    with patch("chatlens.llm_client.settings") as mock_settings, \
         patch("chatlens.llm_client.requests.post", side_effect=requests.exceptions.ReadTimeout("slow")):
        _configure(mock_settings, llm_max_attempts=1)
        outcome = analyze("prompt text", "deepseek-chat", CONTEXT, sleep=lambda s: None)

    assert outcome.error_kind == ErrorKind.TIMEOUT


def test_empty_completion_is_malformed():
    with patch("chatlens.llm_client.settings") as mock_settings, \
         patch("chatlens.llm_client.requests.post", return_value=_ok_response(_chat_body("  "))):
        _configure(mock_settings, llm_max_attempts=1)
        outcome = analyze("prompt text", "deepseek-chat", CONTEXT, sleep=lambda s: None)

    assert outcome.error_kind == ErrorKind.UPSTREAM_MALFORMED


def test_gemini_success_and_auth_header():
    body = {"candidates": [{"content": {"parts": [{"text": "Plain summary of the week."}]}, "finishReason": "STOP"}]}
    with patch("chatlens.llm_client.settings") as mock_settings, \
         patch("chatlens.llm_client.requests.post", return_value=_ok_response(body)) as mock_post:
        _configure(mock_settings)
        outcome = analyze("prompt text", "gemini-2.5-pro", CONTEXT, sleep=lambda s: None)

    assert outcome.success is True
    assert outcome.shape == OutputShape.PLAIN_TEXT
    assert "Plain summary of the week." in outcome.html
    args, kwargs = mock_post.call_args
    assert args[0].endswith("/gemini-2.5-pro:generateContent")
    assert kwargs["headers"]["x-goog-api-key"] == "gm-test"
    assert kwargs["json"]["generationConfig"]["maxOutputTokens"] == 8192


def test_gemini_safety_block_is_malformed():
    body = {"promptFeedback": {"blockReason": "SAFETY"}}
    with patch("chatlens.llm_client.settings") as mock_settings, \
         patch("chatlens.llm_client.requests.post", return_value=_ok_response(body)):
        _configure(mock_settings, llm_max_attempts=1)
        outcome = analyze("prompt text", "gemini-2.5-pro", CONTEXT, sleep=lambda s: None)

    assert outcome.success is False
    assert outcome.error_kind == ErrorKind.UPSTREAM_MALFORMED


def test_non_object_body_is_retried_and_malformed():
    with patch("chatlens.llm_client.settings") as mock_settings, \
         patch("chatlens.llm_client.requests.post", return_value=_ok_response([])) as mock_post:
        _configure(mock_settings)
        outcome = analyze("prompt text", "gemini-2.5-pro", CONTEXT, sleep=lambda s: None)

    assert mock_post.call_count == 2
    assert outcome.success is False
    assert outcome.error_kind == ErrorKind.UPSTREAM_MALFORMED


def test_gemini_odd_shapes_are_malformed():
    bodies = [
        {"candidates": ["not a candidate"]},
        {"candidates": {"0": {}}},
        {"promptFeedback": "blocked", "candidates": [7]},
    ]
    for body in bodies:
        with patch("chatlens.llm_client.settings") as mock_settings, \
             patch("chatlens.llm_client.requests.post", return_value=_ok_response(body)):
            _configure(mock_settings, llm_max_attempts=1)
            outcome = analyze("prompt text", "gemini-2.5-pro", CONTEXT, sleep=lambda s: None)

        assert outcome.error_kind == ErrorKind.UPSTREAM_MALFORMED, body


def test_kimi_max_tokens_floor():
    assert kimi_max_tokens("moonshot-v1-8k", 7500) == 1000
    assert kimi_max_tokens("moonshot-v1-8k", 1000) == 3000
    assert kimi_max_tokens("moonshot-v1-32k", 1000) == 4000
