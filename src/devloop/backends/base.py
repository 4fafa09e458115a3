from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from ..config import ModelSpec
from .events import BackendEvent


@dataclass(frozen=True)
class SessionRef:
    id: str
    title: Optional[str] = None


class AgentBackend(ABC):
    """Transport to a coding-agent backend.

    Implementations raise ``SessionNotFound`` when the backend reports a
    session gone and other ``AgentBackendError`` subclasses for everything
    else that should be retried.
    """

    async def start(self) -> None:
        return None

    @abstractmethod
    async def create_session(self, title: str) -> SessionRef:
        raise NotImplementedError

    @abstractmethod
    async def get_session(self, session_id: str) -> SessionRef:
        raise NotImplementedError

    @abstractmethod
    async def send_prompt(self, session_id: str, text: str, model: ModelSpec) -> str:
        raise NotImplementedError

    @abstractmethod
    def subscribe_events(self) -> AsyncIterator[BackendEvent]:
        raise NotImplementedError

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def abort_session(self, session_id: str) -> None:
        raise NotImplementedError

    def resolve_session_id(self, session_id: str) -> str:
        """The id that continues this session from a fresh backend instance."""
        return session_id

    def forget_session(self, session_id: str) -> None:
        """Drop local bookkeeping for a session the caller no longer uses."""
        return None

    async def close(self) -> None:
        return None

    def kill_now(self) -> None:
        """Synchronously kill any child processes. Used on forced exit."""
        return None
