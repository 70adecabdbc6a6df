"""Transcript parsing — turn whatever the chatlog service returns into messages.

The service answers with a JSON array, a JSON object wrapping an array,
CSV, or a free-text transcript. Each shape has one parse attempt; the
attempts run in order and the first ``Parsed`` result wins.
"""

import csv
import io
import json
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime

from chatlens.exceptions import TranscriptParseError
from chatlens.models import Message
from chatlens.time_window import now_local

logger = logging.getLogger(__name__)

DEFAULT_SENDER = "未知用户"

# Field names seen in chatlog message records (compared lower-cased)
SENDER_KEYS = ("sender", "sendername", "from", "talker", "nickname")
CONTENT_KEYS = ("content", "text", "message", "msg")
TIMESTAMP_KEYS = ("timestamp", "time", "createtime")

# Object keys that wrap a message array
WRAPPER_KEYS = ("data", "messages", "records")

# How many non-empty lines are inspected when sniffing a text transcript
SNIFF_LINES = 10

TIME_PATTERNS = [
    re.compile(r"\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2}:\d{2}"),
    re.compile(r"\d{2}-\d{2}\s+\d{2}:\d{2}:\d{2}"),
    re.compile(r"\d{2}:\d{2}:\d{2}"),
]

# Header lines: "<sender>[(id)] <timestamp>", most specific form first
HEADER_FULL = re.compile(r"^(.+?)\s+(\d{4}-\d{2}-\d{2})\s+(\d{2}:\d{2}:\d{2})$")
HEADER_MONTH_DAY = re.compile(r"^(.+?)\s+(\d{2}-\d{2})\s+(\d{2}:\d{2}:\d{2})$")
HEADER_TIME_ONLY = re.compile(r"^(.+?)\s+(\d{2}:\d{2}:\d{2})$")

SENDER_WITH_ID = re.compile(r"^(.+?)\(([^)]+)\)$")

# Chatroom listing: display-name preference for JSON records
ROOM_NAME_KEYS = ("nickname", "remark", "name", "id")
ROOM_WRAPPER_KEYS = ("data", "chatrooms", "rooms", "groups", "chatroom")


@dataclass(frozen=True)
class Parsed:
    """A payload recognized by one of the parse attempts."""

    messages: list[Message]
    shape: str


@dataclass(frozen=True)
class Unrecognized:
    """A parse attempt that does not apply to the payload."""

    reason: str


ParseResult = Parsed | Unrecognized


# --- Record normalization ---

def _first(record: Mapping, keys: tuple[str, ...]):
    for key in keys:
        value = record.get(key)
        if value is not None and value != "":
            return value
    return None


def _message_from_record(record: Mapping) -> Message | None:
    """Map one message-like record onto a Message, or None if it has no content."""
    lowered = {str(k).lower(): v for k, v in record.items()}
    content = _first(lowered, CONTENT_KEYS)
    if content is None or not str(content).strip():
        return None
    sender = _first(lowered, SENDER_KEYS) or DEFAULT_SENDER
    return Message(
        sender=str(sender).strip(),
        content=str(content).strip(),
        timestamp=_first(lowered, TIMESTAMP_KEYS),
    )


def _messages_from_records(records: list) -> list[Message]:
    messages = []
    for record in records:
        if isinstance(record, Mapping):
            message = _message_from_record(record)
            if message:
                messages.append(message)
    return messages


# --- Parse attempts ---

def parse_message_array(payload, now: datetime) -> ParseResult:
    """(a) An already-decoded array of message-like objects."""
    if not isinstance(payload, list):
        return Unrecognized("not an array")
    return Parsed(_messages_from_records(payload), "array")


def parse_wrapped_object(payload, now: datetime) -> ParseResult:
    """(b) An object carrying the array under a known wrapper key."""
    if not isinstance(payload, Mapping):
        return Unrecognized("not an object")
    for key in WRAPPER_KEYS:
        if isinstance(payload.get(key), list):
            return Parsed(_messages_from_records(payload[key]), f"object.{key}")
    return Unrecognized(f"no wrapper key among {', '.join(WRAPPER_KEYS)}")


def parse_csv(payload, now: datetime) -> ParseResult:
    """CSV with a header row naming a content column and a sender or time column."""
    if not isinstance(payload, str) or not payload.strip():
        return Unrecognized("not text")

    text = payload.strip()
    header_line = text.splitlines()[0]
    if "," not in header_line:
        return Unrecognized("no CSV header")
    header = {h.strip().lower() for h in header_line.split(",")}
    has_content = bool(header & set(CONTENT_KEYS))
    has_context = bool(header & (set(SENDER_KEYS) | set(TIMESTAMP_KEYS)))
    if not (has_content and has_context):
        return Unrecognized("CSV header lacks message columns")

    reader = csv.DictReader(io.StringIO(text))
    rows = [{(k or "").strip(): v for k, v in row.items()} for row in reader]
    return Parsed(_messages_from_records(rows), "csv")


def looks_like_transcript(text: str) -> bool:
    """Check the first non-empty lines for a chat timestamp."""
    inspected = 0
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        if any(p.search(line) for p in TIME_PATTERNS):
            return True
        inspected += 1
        if inspected >= SNIFF_LINES:
            break
    return False


def _clean_sender(raw: str) -> str:
    """Strip a trailing parenthesized id: 'Alice(wxid_1)' -> 'Alice'."""
    raw = raw.strip()
    match = SENDER_WITH_ID.match(raw)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return raw


def _match_header(line: str, now: datetime) -> tuple[str, int | None] | None:
    """Return (sender, epoch ms) if the line opens a new message."""
    tz = now.tzinfo
    try:
        if match := HEADER_FULL.match(line):
            moment = datetime.strptime(f"{match.group(2)} {match.group(3)}", "%Y-%m-%d %H:%M:%S")
        elif match := HEADER_MONTH_DAY.match(line):
            moment = datetime.strptime(
                f"{now.year}-{match.group(2)} {match.group(3)}", "%Y-%m-%d %H:%M:%S"
            )
        elif match := HEADER_TIME_ONLY.match(line):
            clock = datetime.strptime(match.group(2), "%H:%M:%S").time()
            moment = datetime.combine(now.date(), clock)
        else:
            return None
    except ValueError:
        # Header-shaped line with an impossible date; keep it as a header
        return _clean_sender(match.group(1)), None

    return _clean_sender(match.group(1)), int(moment.replace(tzinfo=tz).timestamp() * 1000)


def parse_transcript_text(text: str, now: datetime | None = None) -> list[Message]:
    """Parse a free-text transcript.

    A header line opens a message and flushes the open one; any other
    non-empty line is appended to the open message's content. Lines before
    the first header are ignored. Messages with no content are dropped.

    Args:
        text: Raw transcript text.
        now: Reference clock for headers that omit the year or the date.
    """
    now = now or now_local()
    messages: list[Message] = []
    sender: str | None = None
    timestamp: int | None = None
    content_lines: list[str] = []

    def _flush() -> None:
        content = "\n".join(content_lines).strip()
        if sender is not None and content:
            messages.append(Message(sender=sender, content=content, timestamp=timestamp))

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        header = _match_header(line, now)
        if header:
            _flush()
            sender, timestamp = header
            content_lines = []
        elif sender is not None:
            content_lines.append(line)

    _flush()
    return messages


def parse_text_transcript(payload, now: datetime) -> ParseResult:
    """(c) A free-text transcript recognized by its timestamps."""
    if not isinstance(payload, str):
        return Unrecognized("not text")
    if not looks_like_transcript(payload):
        return Unrecognized("no timestamp in leading lines")
    messages = parse_transcript_text(payload, now)
    if not messages:
        return Unrecognized("no message headers found")
    return Parsed(messages, "text")


def parse_json_string(payload, now: datetime) -> ParseResult:
    """(d) A JSON document that arrived as a string."""
    if not isinstance(payload, str):
        return Unrecognized("not text")
    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError as e:
        return Unrecognized(f"invalid JSON: {e}")
    for attempt in (parse_message_array, parse_wrapped_object):
        result = attempt(decoded, now)
        if isinstance(result, Parsed):
            return Parsed(result.messages, f"json-string/{result.shape}")
    return Unrecognized("JSON without a message array")


PARSE_ATTEMPTS: list[Callable[..., ParseResult]] = [
    parse_message_array,
    parse_wrapped_object,
    parse_csv,
    parse_text_transcript,
    parse_json_string,
]


def parse_payload(payload, now: datetime | None = None) -> Parsed:
    """Run the parse attempts in order and return the first success.

    Raises:
        TranscriptParseError: If no attempt recognizes the payload.
    """
    now = now or now_local()
    reasons = []
    for attempt in PARSE_ATTEMPTS:
        result = attempt(payload, now)
        if isinstance(result, Parsed):
            logger.info("Transcript recognized as %s (%d messages)", result.shape, len(result.messages))
            return result
        reasons.append(f"{attempt.__name__}: {result.reason}")

    preview = payload[:120] if isinstance(payload, str) else type(payload).__name__
    logger.error("Unrecognized transcript payload: %r", preview)
    raise TranscriptParseError("Unrecognized transcript payload (" + "; ".join(reasons) + ")")


# --- Chatroom listing ---

def _room_name(entry) -> str | None:
    if isinstance(entry, str):
        return entry.strip() or None
    if isinstance(entry, Mapping):
        lowered = {str(k).lower(): v for k, v in entry.items()}
        name = _first(lowered, ROOM_NAME_KEYS)
        return str(name).strip() if name else None
    return None


def _parse_room_csv(text: str) -> list[str]:
    """Parse the ``Name,Remark,NickName,Owner,UserCount`` listing."""
    reader = csv.DictReader(io.StringIO(text))
    names = []
    for row in reader:
        row = {(k or "").strip(): (v or "").strip() for k, v in row.items()}
        if not row.get("Name"):
            continue
        names.append(row.get("NickName") or row.get("Remark") or row["Name"])
    return names


def parse_chatroom_listing(payload) -> list[str]:
    """Extract unique chatroom display names from a listing response."""
    entries: list = []

    if isinstance(payload, str):
        text = payload.strip()
        first_line = text.splitlines()[0] if text else ""
        if "," in first_line and "Name" in first_line.split(","):
            entries = _parse_room_csv(text)
        else:
            try:
                payload = json.loads(text)
            except json.JSONDecodeError:
                entries = [line for line in text.splitlines() if line.strip()]

    if isinstance(payload, list):
        entries = payload
    elif isinstance(payload, Mapping):
        for key in ROOM_WRAPPER_KEYS:
            if isinstance(payload.get(key), list) and payload[key]:
                entries = payload[key]
                break
        else:
            entries = next((v for v in payload.values() if isinstance(v, list)), [])

    names = [n for n in (_room_name(e) for e in entries) if n and n != "undefined"]
    return list(dict.fromkeys(names))
