"""Backend event model and dispatch to the reporter."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional

if TYPE_CHECKING:
    from ..reporter import LoopReporter

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    TEXT = "message.part.text"
    TOOL_START = "message.part.tool.start"
    TOOL_RESULT = "message.part.tool.result"
    THINKING = "message.part.thinking"
    MESSAGE_COMPLETE = "message.complete"
    MESSAGE_ERROR = "message.error"
    FILE_EDITED = "file.edited"
    FILE_CREATED = "file.created"
    FILE_DELETED = "file.deleted"
    SESSION_STATUS = "session.status"
    SESSION_COMPLETE = "session.complete"
    SESSION_ABORT = "session.abort"
    STDERR = "process.stderr"
    UNKNOWN = "unknown"


NOISY_EVENT_TYPES = frozenset(
    {
        "message.part.updated",
        "session.updated",
        "session.diff",
        "lsp.updated",
        "lsp.client.diagnostics",
    }
)

_KNOWN_KINDS = {kind.value: kind for kind in EventKind if kind is not EventKind.UNKNOWN}


@dataclass(frozen=True)
class BackendEvent:
    kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)
    raw_type: str = ""

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "BackendEvent":
        raw_type = str(raw.get("type") or "")
        properties = raw.get("properties")
        if not isinstance(properties, dict):
            properties = {}
        return cls(
            kind=_KNOWN_KINDS.get(raw_type, EventKind.UNKNOWN),
            payload=properties,
            raw_type=raw_type,
        )

    @classmethod
    def text(cls, text: str) -> "BackendEvent":
        return cls(kind=EventKind.TEXT, payload={"text": text}, raw_type=EventKind.TEXT.value)

    @classmethod
    def stderr(cls, line: str) -> "BackendEvent":
        return cls(kind=EventKind.STDERR, payload={"line": line}, raw_type=EventKind.STDERR.value)


# USD per million tokens, matched by substring of the model id
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-opus-4": (15.0, 75.0),
    "claude-sonnet-4": (3.0, 15.0),
    "claude-3-5-sonnet": (3.0, 15.0),
    "claude-3-opus": (15.0, 75.0),
    "claude-3-sonnet": (3.0, 15.0),
    "claude-3-haiku": (0.25, 1.25),
    "gpt-4o-mini": (0.15, 0.6),
    "gpt-4o": (2.5, 10.0),
    "gpt-4-turbo": (10.0, 30.0),
    "gpt-4": (30.0, 60.0),
    "gpt-3.5-turbo": (0.5, 1.5),
}
DEFAULT_PRICING = (3.0, 15.0)


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    model_id = model.split("/", 1)[1] if "/" in model else model
    input_price, output_price = DEFAULT_PRICING
    lowered = model_id.lower()
    for key, prices in MODEL_PRICING.items():
        if key in lowered:
            input_price, output_price = prices
            break
    return input_tokens / 1_000_000 * input_price + output_tokens / 1_000_000 * output_price


@dataclass
class SessionStats:
    model: str = ""
    tool_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    files_modified: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)

    @property
    def cost_usd(self) -> float:
        return estimate_cost(self.model, self.input_tokens, self.output_tokens)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at

    def note_file(self, path: str) -> None:
        if path not in self.files_modified:
            self.files_modified.append(path)


def tool_context(tool_input: Any) -> str:
    """Short description of what a tool call is operating on."""
    if isinstance(tool_input, str):
        return f"{tool_input[:50]}..." if len(tool_input) > 50 else tool_input
    if isinstance(tool_input, dict):
        for key in ("filePath", "path", "pattern"):
            if key in tool_input:
                return str(tool_input[key])
        if "command" in tool_input:
            command = str(tool_input["command"])
            return f"{command[:50]}..." if len(command) > 50 else command
        if "query" in tool_input:
            return f'"{tool_input["query"]}"'
    return ""


class EventDispatcher:
    """Routes backend events to the reporter and accumulates ``SessionStats``."""

    def __init__(self, reporter: "LoopReporter", stats: Optional[SessionStats] = None) -> None:
        self.reporter = reporter
        self.stats = stats or SessionStats()
        self._handlers: dict[EventKind, Callable[[BackendEvent], None]] = {
            EventKind.TEXT: self._on_text,
            EventKind.TOOL_START: self._on_tool_start,
            EventKind.TOOL_RESULT: self._on_tool_result,
            EventKind.THINKING: self._on_thinking,
            EventKind.MESSAGE_COMPLETE: self._on_message_complete,
            EventKind.MESSAGE_ERROR: self._on_message_error,
            EventKind.FILE_EDITED: self._on_file_change,
            EventKind.FILE_CREATED: self._on_file_change,
            EventKind.FILE_DELETED: self._on_file_change,
            EventKind.SESSION_STATUS: self._on_session_status,
            EventKind.SESSION_COMPLETE: self._on_session_end,
            EventKind.SESSION_ABORT: self._on_session_end,
            EventKind.STDERR: self._on_stderr,
            EventKind.UNKNOWN: self._on_unknown,
        }

    def handle(self, event: BackendEvent) -> None:
        self._handlers[event.kind](event)

    def _on_text(self, event: BackendEvent) -> None:
        text = event.payload.get("text")
        if isinstance(text, str):
            self.reporter.stop_spinner()
            self.reporter.stream(text)

    def _on_tool_start(self, event: BackendEvent) -> None:
        name = event.payload.get("name")
        if not isinstance(name, str):
            return
        tool_input = event.payload.get("input")
        self.reporter.stop_spinner()
        self.reporter.stream_end()
        self.reporter.tool_call(name, tool_input)
        self.stats.tool_calls += 1
        context = tool_context(tool_input)
        self.reporter.start_spinner(f"Running {name}: {context}..." if context else f"Running {name}...")

    def _on_tool_result(self, event: BackendEvent) -> None:
        self.reporter.stop_spinner()
        output = event.payload.get("output")
        if isinstance(output, str) and output:
            self.reporter.tool_result(output)

    def _on_thinking(self, event: BackendEvent) -> None:
        text = event.payload.get("text")
        if isinstance(text, str):
            self.reporter.stop_spinner()
            self.reporter.thinking(text)

    def _on_message_complete(self, event: BackendEvent) -> None:
        self.reporter.stop_spinner()
        self.reporter.stream_end()
        usage = event.payload.get("usage")
        if not isinstance(usage, dict):
            return
        input_tokens, output_tokens = usage.get("input"), usage.get("output")
        if isinstance(input_tokens, int) and isinstance(output_tokens, int):
            self.reporter.tokens(input_tokens, output_tokens)
            self.stats.input_tokens += input_tokens
            self.stats.output_tokens += output_tokens

    def _on_message_error(self, event: BackendEvent) -> None:
        self.reporter.stop_spinner()
        message = event.payload.get("message")
        if isinstance(message, str):
            self.reporter.error(message)

    def _on_file_change(self, event: BackendEvent) -> None:
        path = event.payload.get("path") or event.payload.get("filePath")
        if not isinstance(path, str):
            return
        action = {
            EventKind.FILE_EDITED: "Edited",
            EventKind.FILE_CREATED: "Created",
            EventKind.FILE_DELETED: "Deleted",
        }[event.kind]
        self.reporter.file_change(action, path)
        self.stats.note_file(path)

    def _on_session_status(self, event: BackendEvent) -> None:
        status = event.payload.get("status")
        if isinstance(status, str) and status != "idle":
            self.reporter.step("Session", status)

    def _on_session_end(self, event: BackendEvent) -> None:
        self.reporter.stop_spinner()
        self.reporter.verbose_log(f"Session {event.raw_type}")

    def _on_stderr(self, event: BackendEvent) -> None:
        line = event.payload.get("line")
        if isinstance(line, str) and line.strip():
            self.reporter.verbose_log(f"[stderr] {line}")

    def _on_unknown(self, event: BackendEvent) -> None:
        if not event.raw_type or event.raw_type in NOISY_EVENT_TYPES:
            return
        if event.raw_type.startswith("server."):
            return
        self.reporter.verbose_log(f"Event: {event.raw_type}")
