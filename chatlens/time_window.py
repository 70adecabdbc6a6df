"""Time-window resolution — one concrete window per run, shared by fetch and filter."""

import logging
import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, tzinfo

from config import settings
from chatlens.models import AllTime, Custom, Message, Recent, TimeRangeSpec, TimeWindow

logger = logging.getLogger(__name__)

DEFAULT_RECENT_DAYS = 7

# Sentinel range sent to the chatlog service for "all" (inclusive dates)
ALL_TIME_START = date(2020, 1, 1)
ALL_TIME_END = date(2030, 12, 31)
ALL_TIME_WIRE = f"{ALL_TIME_START.isoformat()}~{ALL_TIME_END.isoformat()}"

RECENT_TYPE_PATTERN = re.compile(r"^recent_(\d+)d$")

# Custom range field names, current pair first, legacy camelCase last
CUSTOM_FIELD_PAIRS = (
    ("start_date", "end_date"),
    ("start", "end"),
    ("startDate", "endDate"),
)


@dataclass
class FilterStats:
    """Counters filled in by :func:`filter_messages`."""

    kept: int = 0
    out_of_range: int = 0
    missing_timestamp: int = 0


def parse_time_range(raw: TimeRangeSpec | Mapping | None) -> TimeRangeSpec:
    """Turn a stored time-range mapping into a spec object.

    Accepts ``{"type": "all"}``, ``{"type": "recent_7d"}``,
    ``{"type": "recent", "days": 3}`` and ``{"type": "custom", ...}`` with
    either the current or the legacy date field names. Anything else
    becomes the default recent window.
    """
    if isinstance(raw, (Recent, Custom, AllTime)):
        return raw
    if not raw:
        return Recent(DEFAULT_RECENT_DAYS)

    kind = str(raw.get("type", "")).strip().lower()

    if kind == "all":
        return AllTime()

    if kind == "custom":
        for start_key, end_key in CUSTOM_FIELD_PAIRS:
            if raw.get(start_key) and raw.get(end_key):
                return Custom(start=str(raw[start_key]), end=str(raw[end_key]))
        return Custom()

    match = RECENT_TYPE_PATTERN.match(kind)
    if match and int(match.group(1)) > 0:
        return Recent(int(match.group(1)))
    if kind == "recent":
        try:
            days = int(raw.get("days", DEFAULT_RECENT_DAYS))
        except (TypeError, ValueError):
            days = DEFAULT_RECENT_DAYS
        return Recent(days if days > 0 else DEFAULT_RECENT_DAYS)

    logger.warning("Unknown time range type %r, using last %d days", kind, DEFAULT_RECENT_DAYS)
    return Recent(DEFAULT_RECENT_DAYS)


def _parse_bound(value: str, tz: tzinfo, end_of_day: bool) -> datetime:
    """Parse a custom range bound. Date-only values cover the whole day."""
    text = value.strip()
    if len(text) == 10:
        day = date.fromisoformat(text)
        return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=tz)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz)


def _wire(start: datetime, end: datetime) -> str:
    return f"{start.date().isoformat()}~{end.date().isoformat()}"


def _recent(days: int, now: datetime) -> TimeWindow:
    start = now - timedelta(days=days)
    return TimeWindow(start=start, end=now, wire=_wire(start, now))


def resolve(spec: TimeRangeSpec | Mapping | None, now: datetime) -> TimeWindow:
    """Resolve a time-range spec against ``now``.

    Pure in ``(spec, now)``. Callers capture ``now`` once per run and hand
    the same window to both the transcript request and the local filter.
    """
    spec = parse_time_range(spec)
    if now.tzinfo is None:
        now = now.replace(tzinfo=settings.tz)
    tz = now.tzinfo

    if isinstance(spec, AllTime):
        return TimeWindow(
            start=datetime.combine(ALL_TIME_START, time.min, tzinfo=tz),
            end=datetime.combine(ALL_TIME_END, time.max, tzinfo=tz),
            wire=ALL_TIME_WIRE,
            unbounded=True,
        )

    if isinstance(spec, Custom):
        if spec.start and spec.end:
            try:
                start = _parse_bound(spec.start, tz, end_of_day=False)
                end = _parse_bound(spec.end, tz, end_of_day=True)
                if start > end:
                    logger.warning("Custom time range starts after it ends: %s > %s", spec.start, spec.end)
                return TimeWindow(start=start, end=end, wire=_wire(start, end))
            except ValueError as e:
                logger.warning(
                    "Invalid custom time range (%s ~ %s): %s — using last %d days",
                    spec.start, spec.end, e, DEFAULT_RECENT_DAYS,
                )
        else:
            logger.warning("Custom time range is missing dates, using last %d days", DEFAULT_RECENT_DAYS)
        return _recent(DEFAULT_RECENT_DAYS, now)

    return _recent(spec.days, now)


def to_wire_format(window: TimeWindow) -> str:
    """Render a window as the chatlog service's ``YYYY-MM-DD~YYYY-MM-DD``."""
    if window.unbounded:
        return ALL_TIME_WIRE
    return _wire(window.start, window.end)


def normalize_timestamp(value, tz: tzinfo | None = None) -> int | None:
    """Convert a raw message timestamp into epoch milliseconds.

    Ten-digit numbers are epoch seconds, other numbers are milliseconds,
    strings are parsed as ISO-style date-times in ``tz`` when naive.
    Returns None when nothing usable is present.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # json.loads accepts NaN and Infinity
        if isinstance(value, float) and not math.isfinite(value):
            return None
        number = int(value)
        if number <= 0:
            return None
        return number * 1000 if len(str(number)) == 10 else number

    text = str(value).strip()
    if not text:
        return None
    if text.isdigit():
        return normalize_timestamp(int(text), tz)

    try:
        parsed = datetime.fromisoformat(text.replace("/", "-"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz or settings.tz)
    return int(parsed.timestamp() * 1000)


def filter_messages(
    messages: Iterable[Message],
    window: TimeWindow,
    stats: FilterStats | None = None,
) -> list[Message]:
    """Keep messages inside ``[window.start, window.end]``.

    Kept messages come back with their timestamp normalized to epoch
    milliseconds. Messages without a usable timestamp are dropped and
    counted in ``stats.missing_timestamp``. An unbounded window applies
    no range check.
    """
    stats = stats if stats is not None else FilterStats()
    tz = window.start.tzinfo
    start_ms, end_ms = window.start_ms, window.end_ms
    kept: list[Message] = []

    for message in messages:
        ts = normalize_timestamp(message.timestamp, tz)
        if ts is None:
            stats.missing_timestamp += 1
            continue
        if not window.unbounded and not (start_ms <= ts <= end_ms):
            stats.out_of_range += 1
            continue
        kept.append(message if message.timestamp == ts else replace(message, timestamp=ts))

    stats.kept = len(kept)
    logger.info(
        "Time filter %s: kept %d, out of range %d, missing timestamp %d",
        window.wire, stats.kept, stats.out_of_range, stats.missing_timestamp,
    )
    if stats.missing_timestamp:
        logger.warning("%d messages had no usable timestamp and were dropped", stats.missing_timestamp)
    return kept


def now_local() -> datetime:
    """Current time in the configured zone — the single clock read per run."""
    return datetime.now(settings.tz)
