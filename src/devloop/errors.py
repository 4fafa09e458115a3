"""Error taxonomy for the development loop.

Every failure that reaches the loop controller is reduced to an ``ErrorKind``
before the retry policy looks at it. Exceptions raised by third-party code
(httpx, the OS, timeouts) are treated as transient backend failures.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Optional


class ErrorKind(StrEnum):
    TRANSIENT = "transient"
    INVALID_PLAN = "invalid_plan"
    STALE_SESSION = "stale_session"
    CLEANUP = "cleanup"


class DevloopError(Exception):
    kind: ErrorKind = ErrorKind.TRANSIENT


class ConfigError(DevloopError):
    """Configuration could not be assembled into a usable record."""


class InvalidPlanError(DevloopError):
    kind = ErrorKind.INVALID_PLAN


class AgentBackendError(DevloopError):
    """Base class for failures talking to the agent backend."""


class NoActiveSession(AgentBackendError):
    def __init__(self, message: str = "No active session") -> None:
        super().__init__(message)


class EmptyResponse(AgentBackendError):
    def __init__(self, message: str = "Empty response from agent backend") -> None:
        super().__init__(message)


class BackendError(AgentBackendError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BackendUnavailable(AgentBackendError):
    """The backend could not be reached while starting up."""


class SessionNotFound(AgentBackendError):
    kind = ErrorKind.STALE_SESSION

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} no longer exists")
        self.session_id = session_id


class ProcessExitNonZero(AgentBackendError):
    def __init__(self, code: int, stderr_tail: str = "") -> None:
        message = f"Agent process exited with code {code}"
        if stderr_tail:
            message = f"{message}: {stderr_tail}"
        super().__init__(message)
        self.code = code


class TerminatedBySignal(AgentBackendError):
    def __init__(self, signum: int) -> None:
        super().__init__(f"Agent process terminated by signal {signum}")
        self.signum = signum


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, DevloopError):
        return exc.kind
    return ErrorKind.TRANSIENT
