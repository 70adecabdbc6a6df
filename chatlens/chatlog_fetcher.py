"""Chatlog service client — fetch room transcripts and list chatrooms."""

import logging
from datetime import datetime

import requests

from config import settings
from chatlens.exceptions import TranscriptFetchError
from chatlens.models import Message, TimeWindow
from chatlens.transcript_parser import parse_chatroom_listing, parse_payload

logger = logging.getLogger(__name__)

USER_AGENT = "chatlens/1.0"
CHATLOG_ENDPOINT = "/api/v1/chatlog"

# Listing endpoints, tried in order until one yields rooms
CHATROOM_ENDPOINTS = [
    ("/api/v1/chatroom", {"format": "json"}),
    ("/api/v1/chatroom", {"format": "csv"}),
    ("/api/v1/chatroom", {"limit": 100}),
    ("/api/v1/chatroom", {}),
    ("/api/chatroom", {"format": "json"}),
    ("/chatroom", {}),
]


def _normalize_base_url(service_url: str) -> str:
    """Add a missing scheme and drop the trailing slash."""
    url = (service_url or "").strip()
    if not url:
        raise TranscriptFetchError("Chatlog service URL is not configured")
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


def _is_html_page(text: str) -> bool:
    head = text.lstrip()[:20].lower()
    return head.startswith("<!doctype") or head.startswith("<html")


def _decode_body(resp: requests.Response):
    """Return decoded JSON when the service says it is JSON, else the text."""
    content_type = resp.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return resp.json()
        except ValueError:
            logger.warning("Response declared JSON but did not decode, treating as text")
    return resp.text


def _get(url: str, params: dict, timeout: int):
    try:
        resp = requests.get(
            url,
            params=params,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json, text/plain, */*"},
            timeout=timeout,
        )
        resp.raise_for_status()
    except requests.exceptions.Timeout as e:
        raise TranscriptFetchError(f"Chatlog service timed out after {timeout}s: {url}") from e
    except requests.exceptions.ConnectionError as e:
        raise TranscriptFetchError(f"Chatlog service unreachable: {url}") from e
    except requests.exceptions.RequestException as e:
        raise TranscriptFetchError(f"Chatlog request failed: {e}") from e
    return resp


def fetch(
    service_url: str,
    room: str,
    window: TimeWindow,
    now: datetime | None = None,
) -> list[Message]:
    """Fetch one room's transcript for ``window``.

    Args:
        service_url: Base URL of the chatlog service.
        room: Room identifier, sent as ``talker``.
        window: The run's resolved time window; its wire string is sent as ``time``.
        now: Reference clock for transcript headers without a full date.

    Returns:
        Parsed messages, not yet filtered by the window.

    Raises:
        TranscriptFetchError: If the service is unreachable, answers with a
            bad status or returns an HTML page instead of data.
        TranscriptParseError: If the payload matches no known shape.
    """
    url = _normalize_base_url(service_url) + CHATLOG_ENDPOINT
    params = {"talker": room, "time": window.wire, "format": "text"}
    logger.info("Fetching chatlog for %s (%s)", room, window.wire)

    resp = _get(url, params, settings.transcript_timeout_seconds)
    body = _decode_body(resp)

    if isinstance(body, str):
        if not body.strip():
            logger.info("Chatlog service returned no data for %s", room)
            return []
        if _is_html_page(body):
            raise TranscriptFetchError(
                f"Chatlog service returned an HTML page instead of data for {room}"
            )

    parsed = parse_payload(body, now=now)
    logger.info("Room %s: %d messages (%s)", room, len(parsed.messages), parsed.shape)
    return parsed.messages


def list_chatrooms(service_url: str) -> list[str]:
    """List chatroom display names, trying each known listing endpoint.

    Raises:
        TranscriptFetchError: If no endpoint returns a usable listing.
    """
    base = _normalize_base_url(service_url)
    errors = []

    for endpoint, params in CHATROOM_ENDPOINTS:
        try:
            resp = _get(base + endpoint, params, settings.transcript_timeout_seconds)
        except TranscriptFetchError as e:
            logger.debug("Chatroom listing %s %s failed: %s", endpoint, params, e)
            errors.append(str(e))
            continue

        body = _decode_body(resp)
        if isinstance(body, str) and _is_html_page(body):
            logger.debug("Chatroom listing %s %s returned HTML, skipping", endpoint, params)
            continue

        rooms = parse_chatroom_listing(body)
        if rooms:
            logger.info("Found %d chatrooms via %s", len(rooms), endpoint)
            return rooms

    detail = errors[-1] if errors else "no endpoint returned chatrooms"
    raise TranscriptFetchError(f"Could not list chatrooms: {detail}")
