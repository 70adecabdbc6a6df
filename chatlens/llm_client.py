"""LLM gateway — DeepSeek, Gemini and Kimi behind one ``analyze`` call."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

import requests

from config import settings
from chatlens.exceptions import USER_MESSAGES, ErrorKind, LLMAPIError
from chatlens.html_report import ReportContext, postprocess, render_failure
from chatlens.model_catalog import ModelConfig, get_model_config
from chatlens.models import AnalysisOutcome, PromptBundle
from chatlens.prompt_builder import estimate_tokens

logger = logging.getLogger(__name__)

DEEPSEEK_URL = "https://api.deepseek.com/v1/chat/completions"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models"
KIMI_URL = "https://api.moonshot.cn/v1/chat/completions"

TEMPERATURE = 0.7

GEMINI_SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_MEDIUM_AND_ABOVE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]

STATUS_KINDS = {
    401: ErrorKind.UNAUTHENTICATED,
    403: ErrorKind.UNAUTHENTICATED,
    408: ErrorKind.TIMEOUT,
    413: ErrorKind.PAYLOAD_TOO_LARGE,
    429: ErrorKind.RATE_LIMITED,
    502: ErrorKind.UNREACHABLE,
    503: ErrorKind.UNREACHABLE,
    504: ErrorKind.TIMEOUT,
}


@dataclass(frozen=True)
class CallResult:
    """Outcome of one provider attempt: text, or a classified failure."""

    text: str | None = None
    error_kind: ErrorKind | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.error_kind is None and self.text is not None


def classify_status(status_code: int) -> ErrorKind:
    return STATUS_KINDS.get(status_code, ErrorKind.UNKNOWN)


def classify_exception(exc: Exception) -> ErrorKind:
    """Map a transport or gateway exception onto an error kind."""
    if isinstance(exc, LLMAPIError):
        return exc.kind
    if isinstance(exc, requests.exceptions.Timeout):
        return ErrorKind.TIMEOUT
    if isinstance(exc, requests.exceptions.ConnectionError):
        return ErrorKind.UNREACHABLE
    if isinstance(exc, ValueError):
        return ErrorKind.UPSTREAM_MALFORMED
    return ErrorKind.UNKNOWN


def with_retry(
    attempt_fn: Callable[[int], CallResult],
    max_attempts: int,
    delay_fn: Callable[[int], float],
    sleep: Callable[[float], None] = time.sleep,
) -> CallResult:
    """Run ``attempt_fn(1..max_attempts)`` until one succeeds.

    Every failure kind is retried; ``delay_fn(attempt)`` gives the wait
    after a failed attempt. Returns the last result.
    """
    result = CallResult(error_kind=ErrorKind.UNKNOWN, error="no attempt made")
    for attempt in range(1, max(1, max_attempts) + 1):
        result = attempt_fn(attempt)
        if result.ok:
            return result
        logger.warning(
            "LLM attempt %d/%d failed (%s): %s",
            attempt, max_attempts, result.error_kind, result.error,
        )
        if attempt < max_attempts:
            wait = delay_fn(attempt)
            logger.info("Waiting %.1fs before retrying", wait)
            sleep(wait)
    logger.error("All %d LLM attempts failed (%s)", max_attempts, result.error_kind)
    return result


def _post(provider: str, url: str, headers: dict, payload: dict) -> dict:
    """POST a provider request and return the decoded JSON body.

    Raises:
        LLMAPIError: With the classified kind on any transport or HTTP failure.
    """
    proxies = None
    if settings.llm_proxy_url:
        proxies = {"http": settings.llm_proxy_url, "https": settings.llm_proxy_url}

    try:
        resp = requests.post(
            url,
            headers=headers,
            json=payload,
            timeout=settings.llm_timeout_seconds,
            proxies=proxies,
        )
    except requests.exceptions.RequestException as e:
        raise LLMAPIError(f"{provider} request failed: {e}", classify_exception(e)) from e

    if not resp.ok:
        raise LLMAPIError(
            f"{provider} API {resp.status_code}: {resp.text[:200]}",
            classify_status(resp.status_code),
        )

    try:
        data = resp.json()
    except ValueError as e:
        raise LLMAPIError(f"{provider} returned a non-JSON body", ErrorKind.UPSTREAM_MALFORMED) from e
    if not isinstance(data, dict):
        raise LLMAPIError(
            f"{provider} returned a {type(data).__name__} body, expected an object",
            ErrorKind.UPSTREAM_MALFORMED,
        )
    return data


def _require_key(provider: str, key: str) -> str:
    if not key:
        raise LLMAPIError(f"No API key configured for {provider}", ErrorKind.UNAUTHENTICATED)
    return key


def _chat_completion_text(provider: str, data: dict) -> str:
    """Text of an OpenAI-style chat completion (``content`` only)."""
    try:
        content = data["choices"][0]["message"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError) as e:
        raise LLMAPIError(f"{provider} response has no choices", ErrorKind.UPSTREAM_MALFORMED) from e
    if not content or not str(content).strip():
        raise LLMAPIError(f"{provider} response content is empty", ErrorKind.UPSTREAM_MALFORMED)
    return str(content)


# --- Providers ---

def deepseek_max_tokens(model: str, input_tokens: int) -> int:
    if model == "deepseek-reasoner":
        return min(16000, 65536 - input_tokens - 1000)
    return min(20000, max(4000, 65536 - input_tokens - 1000))


def call_deepseek(cfg: ModelConfig, prompt: str, input_tokens: int) -> str:
    key = _require_key("DeepSeek", settings.deepseek_api_key)
    payload = {
        "model": cfg.id,
        "messages": [{"role": "user", "content": prompt}],
        "max_tokens": deepseek_max_tokens(cfg.id, input_tokens),
        "stream": False,
    }
    # The reasoner rejects sampling parameters
    if cfg.id != "deepseek-reasoner":
        payload["temperature"] = TEMPERATURE

    headers = {"Content-Type": "application/json", "Authorization": f"Bearer {key}"}
    data = _post("DeepSeek", DEEPSEEK_URL, headers, payload)
    return _chat_completion_text("DeepSeek", data)


def _gemini_text(candidate: dict) -> str | None:
    content = candidate.get("content")
    if isinstance(content, dict):
        parts = content.get("parts") or []
        if parts and isinstance(parts[0], dict) and parts[0].get("text"):
            return parts[0]["text"]
        if content.get("text"):
            return content["text"]
    if isinstance(content, str) and content:
        return content
    return candidate.get("text") or None


def call_gemini(cfg: ModelConfig, prompt: str, input_tokens: int) -> str:
    key = _require_key("Gemini", settings.gemini_api_key)
    payload = {
        "contents": [{"parts": [{"text": prompt}]}],
        "generationConfig": {
            "maxOutputTokens": cfg.max_output_tokens,
            "temperature": TEMPERATURE,
            "topP": 0.8,
            "topK": 40,
        },
        "safetySettings": GEMINI_SAFETY_SETTINGS,
    }
    headers = {"Content-Type": "application/json", "x-goog-api-key": key}
    data = _post("Gemini", f"{GEMINI_URL}/{cfg.id}:generateContent", headers, payload)

    feedback = data.get("promptFeedback")
    block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
    if block_reason:
        raise LLMAPIError(f"Gemini blocked the prompt: {block_reason}", ErrorKind.UPSTREAM_MALFORMED)

    candidates = data.get("candidates") or []
    if not candidates:
        raise LLMAPIError("Gemini response has no candidates", ErrorKind.UPSTREAM_MALFORMED)

    candidate = candidates[0] if isinstance(candidates, list) else None
    if not isinstance(candidate, dict):
        raise LLMAPIError("Gemini candidate is not an object", ErrorKind.UPSTREAM_MALFORMED)
    finish_reason = candidate.get("finishReason")
    if finish_reason == "SAFETY":
        raise LLMAPIError("Gemini stopped for safety reasons", ErrorKind.UPSTREAM_MALFORMED)
    if finish_reason == "MAX_TOKENS":
        logger.warning("Gemini output hit maxOutputTokens (%d), report may be truncated", cfg.max_output_tokens)

    text = _gemini_text(candidate)
    if not text:
        raise LLMAPIError("Gemini response has no text", ErrorKind.UPSTREAM_MALFORMED)
    return text


def kimi_max_tokens(model: str, input_tokens: int) -> int:
    if "32k" in model:
        tokens = min(4000, 32768 - input_tokens - 3000)
    elif "128k" in model:
        tokens = min(8000, 128000 - input_tokens - 3000)
    else:
        tokens = min(3000, 8000 - input_tokens - 1000)
    return max(1000, tokens)


def call_kimi(cfg: ModelConfig, prompt: str, input_tokens: int) -> str:
    key = _require_key("Kimi", settings.kimi_api_key)
    payload = {
        "model": cfg.id,
        "messages": [{"role": "user", "content": prompt}],
        "max_tokens": kimi_max_tokens(cfg.id, input_tokens),
        "temperature": TEMPERATURE,
    }
    headers = {"Content-Type": "application/json", "Authorization": f"Bearer {key}"}
    data = _post("Kimi", KIMI_URL, headers, payload)
    return _chat_completion_text("Kimi", data)


PROVIDERS: dict[str, Callable[[ModelConfig, str, int], str]] = {
    "deepseek": call_deepseek,
    "gemini": call_gemini,
    "kimi": call_kimi,
}


def call_model(model_id: str, prompt: str, input_tokens: int | None = None) -> CallResult:
    """One provider attempt, with failures returned as data."""
    cfg = get_model_config(model_id)
    if input_tokens is None:
        input_tokens = estimate_tokens(prompt)
    try:
        return CallResult(text=PROVIDERS[cfg.provider](cfg, prompt, input_tokens))
    except LLMAPIError as e:
        return CallResult(error_kind=e.kind, error=str(e))


def analyze(
    prompt: PromptBundle | str,
    model_id: str,
    context: ReportContext,
    sleep: Callable[[float], None] = time.sleep,
) -> AnalysisOutcome:
    """Analyze a prompt with retry and turn the answer into report HTML.

    A call that exhausts its attempts still yields HTML: a report page
    explaining the classified failure, with ``success=False``.
    """
    if isinstance(prompt, PromptBundle):
        text, input_tokens = prompt.text, prompt.estimated_tokens
    else:
        text, input_tokens = prompt, estimate_tokens(prompt)

    cfg = get_model_config(model_id)
    context = replace(context, model=cfg.name)
    logger.info(
        "Analyzing %s with %s (%s), ~%d input tokens",
        context.room, cfg.id, cfg.provider, input_tokens,
    )

    result = with_retry(
        lambda attempt: call_model(cfg.id, text, input_tokens),
        settings.llm_max_attempts,
        lambda attempt: attempt * settings.llm_retry_delay_seconds,
        sleep=sleep,
    )

    if result.ok:
        shape, html = postprocess(result.text, context)
        return AnalysisOutcome(room=context.room, raw_text=result.text, html=html, success=True, shape=shape)

    kind = result.error_kind or ErrorKind.UNKNOWN
    return AnalysisOutcome(
        room=context.room,
        raw_text="",
        html=render_failure(context, kind),
        success=False,
        error=USER_MESSAGES[kind],
        error_kind=kind,
    )
