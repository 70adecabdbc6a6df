"""Custom exception hierarchy for chatlens."""

from enum import StrEnum


class ErrorKind(StrEnum):
    """Provider-independent classification of an LLM call failure."""

    UNAUTHENTICATED = "unauthenticated"
    RATE_LIMITED = "rate_limited"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    UPSTREAM_MALFORMED = "upstream_malformed"
    UNKNOWN = "unknown"


USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.UNAUTHENTICATED: "API密钥未配置或无效，请在设置中检查对应服务的密钥。",
    ErrorKind.RATE_LIMITED: "API调用频率超限，请等待一两分钟后重试。",
    ErrorKind.PAYLOAD_TOO_LARGE: "请求内容过大，请减少消息数量或缩短时间范围。",
    ErrorKind.TIMEOUT: "AI服务响应超时，可能是网络较慢或服务繁忙。",
    ErrorKind.UNREACHABLE: "无法连接到AI服务，请检查网络、代理和DNS设置。",
    ErrorKind.UPSTREAM_MALFORMED: "AI服务返回的内容为空或格式异常。",
    ErrorKind.UNKNOWN: "分析过程中出现未知错误。",
}


class ChatlensError(Exception):
    """Base exception for all chatlens errors."""


class TranscriptFetchError(ChatlensError):
    """Raised when the chatlog service cannot deliver a room's transcript."""


class TranscriptParseError(ChatlensError):
    """Raised when no parser recognizes a transcript payload."""


class LLMAPIError(ChatlensError):
    """Raised when an LLM provider call fails.

    The ``kind`` attribute is the classified failure; the message is the
    operator-facing detail and never reaches a report unclassified.
    """

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.UNKNOWN):
        super().__init__(message)
        self.kind = kind


class ReportAssemblyError(ChatlensError):
    """Raised when writing a report file fails."""


class TaskNotFoundError(ChatlensError):
    """Raised when the task store has no record for a task id."""


class ScheduleError(ChatlensError):
    """Raised when a task's schedule cannot be turned into a trigger."""
