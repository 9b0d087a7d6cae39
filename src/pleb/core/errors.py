import enum
from typing import Optional


class FailureKind(str, enum.Enum):
    TRANSIENT = "transient"
    SELF_HEALING = "self_healing"
    INVALID_INPUT = "invalid_input"
    FATAL = "fatal"


class PlebError(Exception):
    """Base error; ``kind`` tells callers whether to retry, ignore, or abort."""

    default_kind = FailureKind.TRANSIENT

    def __init__(self, message: str, *, kind: Optional[FailureKind] = None):
        super().__init__(message)
        self.kind = kind or self.default_kind

    @property
    def retryable(self) -> bool:
        return self.kind in (FailureKind.TRANSIENT, FailureKind.SELF_HEALING)


class StateStoreError(PlebError):
    def __init__(
        self,
        message: str,
        *,
        kind: Optional[FailureKind] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, kind=kind)
        self.status_code = status_code


class InvalidTransitionError(PlebError):
    default_kind = FailureKind.INVALID_INPUT


class HookProtocolError(PlebError):
    default_kind = FailureKind.INVALID_INPUT


class PromptError(PlebError):
    default_kind = FailureKind.FATAL
