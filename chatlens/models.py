"""Data models for the chatlog analysis pipeline."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from chatlens.exceptions import ErrorKind


class ProgressState(StrEnum):
    """Task progress as shown to users."""

    NOT_STARTED = "not_started"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(StrEnum):
    """Aggregate outcome of one task run."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class ReportStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


class OutputShape(StrEnum):
    """Shape of raw model output, decided before formatting."""

    FULL_DOCUMENT = "full_document"
    FENCED_DOCUMENT = "fenced_document"
    PARTIAL_HTML = "partial_html"
    PLAIN_TEXT = "plain_text"


# --- Schedule specs ---

@dataclass(frozen=True)
class Once:
    """Fire a single time at ``instant``."""

    instant: datetime


@dataclass(frozen=True)
class Recurring:
    """Fire on a five-field crontab expression."""

    cron_expression: str


ScheduleSpec = Once | Recurring


# --- Time-range specs ---

@dataclass(frozen=True)
class Recent:
    """The last ``days`` days up to the run's clock."""

    days: int


@dataclass(frozen=True)
class Custom:
    """An explicit date range. Either bound may be missing in stored data."""

    start: str | None = None
    end: str | None = None


@dataclass(frozen=True)
class AllTime:
    """No time restriction."""


TimeRangeSpec = Recent | Custom | AllTime


@dataclass(frozen=True)
class TimeWindow:
    """A resolved time range plus its transcript-service wire string."""

    start: datetime
    end: datetime
    wire: str
    unbounded: bool = False

    @property
    def start_ms(self) -> int:
        return int(self.start.timestamp() * 1000)

    @property
    def end_ms(self) -> int:
        return int(self.end.timestamp() * 1000)


@dataclass(frozen=True)
class Message:
    """A single chat message.

    ``timestamp`` is epoch milliseconds once the message has passed the
    time-window filter; before that it holds whatever the source sent
    (epoch seconds, epoch milliseconds, a date string, or nothing).
    """

    sender: str
    content: str
    timestamp: int | float | str | None = None


@dataclass
class Task:
    """A schedulable analysis job, as read from the task store."""

    id: int
    name: str
    rooms: list[str]
    schedule: ScheduleSpec | None = None
    time_range: TimeRangeSpec = field(default_factory=lambda: Recent(7))
    model: str = "deepseek-chat"
    prompt: str = ""
    prompt_template_id: int | None = None
    enabled: bool = True
    progress: ProgressState = ProgressState.NOT_STARTED


# --- Prompt ---

@dataclass(frozen=True)
class RoomBlock:
    """One room's rendered transcript inside a prompt."""

    room: str
    lines: tuple[str, ...]

    @property
    def header(self) -> str:
        return f"=== 群聊：{self.room} ==="

    @property
    def message_count(self) -> int:
        return len(self.lines)

    @property
    def text(self) -> str:
        return "\n".join((self.header, *self.lines))


@dataclass(frozen=True)
class PromptBundle:
    """A fully assembled prompt. Rebuilt, never mutated, when compressed."""

    system_prompt: str
    blocks: tuple[RoomBlock, ...]
    text: str
    estimated_tokens: int
    compressed: bool = False

    @property
    def message_count(self) -> int:
        return sum(b.message_count for b in self.blocks)


# --- Results ---

@dataclass
class AnalysisOutcome:
    """What the LLM gateway produced for one room."""

    room: str
    raw_text: str
    html: str
    success: bool
    shape: OutputShape | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None


@dataclass
class Report:
    """A persisted report record. ``id`` is assigned by the report store."""

    task_id: int
    task_name: str
    room: str | None
    status: ReportStatus
    time_window: TimeWindow | None = None
    file: str | None = None
    message_count: int = 0
    error_message: str | None = None
    execution_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: int | None = None


@dataclass
class RunState:
    """Ephemeral per-run bookkeeping."""

    total_messages: int = 0
    outcomes: list[AnalysisOutcome] = field(default_factory=list)
    success_count: int = 0
    fail_count: int = 0

    def record(self, outcome: AnalysisOutcome, report_ok: bool) -> None:
        self.outcomes.append(outcome)
        if outcome.success and report_ok:
            self.success_count += 1
        else:
            self.fail_count += 1

    @property
    def status(self) -> RunStatus:
        if self.fail_count == 0:
            return RunStatus.SUCCESS
        if self.success_count == 0:
            return RunStatus.FAILED
        return RunStatus.PARTIAL
