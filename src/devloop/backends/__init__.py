from __future__ import annotations

from ..config import LoopConfig
from .base import AgentBackend, SessionRef
from .events import BackendEvent, EventDispatcher, EventKind, SessionStats
from .http import HttpAgentBackend
from .process import ManagedProcess, ProcessAgentBackend


def create_backend(config: LoopConfig) -> AgentBackend:
    if config.backend == "process":
        return ProcessAgentBackend(config)
    return HttpAgentBackend(config)


__all__ = [
    "AgentBackend",
    "BackendEvent",
    "EventDispatcher",
    "EventKind",
    "HttpAgentBackend",
    "ManagedProcess",
    "ProcessAgentBackend",
    "SessionRef",
    "SessionStats",
    "create_backend",
]
