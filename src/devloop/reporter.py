"""Console and file reporting for the development loop.

``LoopReporter`` is the only thing the loop, session manager and event
dispatcher talk to when they want something shown to the operator. Console
rendering goes through ``rich``; everything is also written to
``logs/main.log`` (and the current cycle log) through stdlib ``logging`` so
timestamps are formatted in one place.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Optional

import logfire
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.status import Status

from .workspace import WorkspacePaths, cleanup_old_files

logger = logging.getLogger(__name__)

ACTIVITY_LOGGER = "devloop.activity"
ALERTS_LOGGER = "devloop.alerts"
FILE_FORMAT = "[%(asctime)s] %(message)s"
DIAGNOSTIC_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

LOGFIRE_TOKEN_VARS = ("LOGFIRE_TOKEN", "LOGFIRE_WRITE_TOKEN")

_configured_handlers: list[logging.Handler] = []


def _logfire_token() -> Optional[str]:
    for name in LOGFIRE_TOKEN_VARS:
        value = os.getenv(name)
        if value:
            return value
    return None


def configure_logfire() -> bool:
    """Configure Logfire tracing if a token is available."""
    if (os.getenv("DEVLOOP_DISABLE_LOGFIRE") or "").strip().lower() in {"1", "true", "yes", "on"}:
        return False
    token = _logfire_token()
    if not token:
        return False
    logfire.configure(
        service_name="devloop",
        console=False,
        token=token,
        send_to_logfire="if-token-present",
    )
    try:
        logfire.instrument_httpx()
    except Exception as exc:
        logger.debug("httpx instrumentation unavailable: %s", exc)
    return True


def configure_logging(paths: WorkspacePaths, verbose: bool = False) -> None:
    """Route ``devloop.*`` diagnostics to main.log and warnings to the console."""
    package_logger = logging.getLogger("devloop")
    for handler in _configured_handlers:
        package_logger.removeHandler(handler)
        handler.close()
    _configured_handlers.clear()

    paths.main_log.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(paths.main_log, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    file_handler.setFormatter(logging.Formatter(DIAGNOSTIC_FORMAT))

    console_handler = RichHandler(
        level=logging.DEBUG if verbose else logging.WARNING,
        show_path=False,
        rich_tracebacks=True,
    )

    for handler in (file_handler, console_handler):
        package_logger.addHandler(handler)
        _configured_handlers.append(handler)
    package_logger.setLevel(logging.DEBUG)


def _shorten(text: str, limit: int) -> str:
    return f"{text[:limit]}..." if len(text) > limit else text


def format_tool_input(tool_input: Any) -> str:
    if tool_input is None or tool_input == "" or tool_input == {}:
        return ""
    if isinstance(tool_input, str):
        return f" {_shorten(tool_input, 80)}"
    if isinstance(tool_input, dict):
        for key in ("filePath", "path", "pattern"):
            if key in tool_input:
                return f" {tool_input[key]}"
        if "command" in tool_input:
            return f" {_shorten(str(tool_input['command']), 60)}"
        if "query" in tool_input:
            return f' "{tool_input["query"]}"'
        try:
            encoded = json.dumps(tool_input, default=str)
        except (TypeError, ValueError):
            encoded = str(tool_input)
        return f" {_shorten(encoded, 80)}"
    return f" {_shorten(str(tool_input), 80)}"


class LoopReporter:
    """Narrow reporting surface used by the loop and its collaborators."""

    def __init__(
        self,
        paths: WorkspacePaths,
        verbose: bool = False,
        console: Optional[Console] = None,
    ) -> None:
        self.paths = paths
        self.verbose = verbose
        self.console = console or Console(highlight=False)
        self._status: Optional[Status] = None
        self._stream_buffer: list[str] = []
        self._cycle_handler: Optional[logging.FileHandler] = None

        self._activity = logging.getLogger(ACTIVITY_LOGGER)
        self._alerts = logging.getLogger(ALERTS_LOGGER)
        for target in (self._activity, self._alerts):
            target.propagate = False
            target.setLevel(logging.DEBUG)
            for handler in list(target.handlers):
                target.removeHandler(handler)
                handler.close()

        paths.main_log.parent.mkdir(parents=True, exist_ok=True)
        self._main_handler = self._file_handler(paths.main_log)
        self._activity.addHandler(self._main_handler)
        self._alerts_handler = self._file_handler(paths.alerts_file)
        self._alerts.addHandler(self._alerts_handler)

    @staticmethod
    def _file_handler(path) -> logging.FileHandler:
        handler = logging.FileHandler(path, encoding="utf-8", delay=True)
        handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        return handler

    def _record(self, message: str) -> None:
        self._activity.info(message)

    # --- plain messages -------------------------------------------------

    def log(self, message: str) -> None:
        """File only."""
        self._record(message)

    def say(self, message: str) -> None:
        self.stop_spinner()
        self.console.print(message, markup=False)
        self._record(message)

    def info(self, message: str) -> None:
        self.stop_spinner()
        self.console.print(f"[blue]{escape(message)}[/blue]")
        self._record(message)

    def success(self, message: str) -> None:
        self.stop_spinner()
        self.console.print(f"[green]{escape(message)}[/green]")
        self._record(message)

    def warn(self, message: str) -> None:
        self.stop_spinner()
        self.console.print(f"[yellow]\\[WARN] {escape(message)}[/yellow]")
        self._record(f"[WARN] {message}")

    def error(self, message: str) -> None:
        formatted = f"[ERROR] {message}"
        self.stop_spinner()
        self.console.print(f"[red]{escape(formatted)}[/red]")
        self._record(formatted)
        self._alerts.error(formatted)

    def alert(self, message: str) -> None:
        formatted = f"[ALERT] {message}"
        self.stop_spinner()
        self.console.print(f"[bold red]{escape(formatted)}[/bold red]")
        self._record(formatted)
        self._alerts.critical(formatted)
        logfire.warn("devloop_alert", message=message)

    def verbose_log(self, message: str) -> None:
        if self.verbose:
            self.stop_spinner()
            self.console.print(f"[dim]\\[VERBOSE] {escape(message)}[/dim]")
        self._record(f"[VERBOSE] {message}")

    # --- structured activity --------------------------------------------

    def phase(self, name: str, detail: str = "") -> None:
        self.stop_spinner()
        suffix = f" [dim]{escape(detail)}[/dim]" if detail else ""
        self.console.print(f"[cyan]● [bold]{escape(name)}[/bold][/cyan]{suffix}")
        self._record(f"[PHASE] {name} {detail}".rstrip())

    def step(self, action: str, detail: str = "") -> None:
        self.stop_spinner()
        suffix = f" [dim]{escape(detail)}[/dim]" if detail else ""
        self.console.print(f"  [blue]◦ {escape(action)}[/blue]{suffix}")
        self._record(f"[STEP] {action} {detail}".rstrip())

    def tool_call(self, name: str, tool_input: Any = None) -> None:
        self.stop_spinner()
        rendered = format_tool_input(tool_input)
        self.console.print(f"[cyan]🔧 [bold]{escape(name)}[/bold][/cyan][dim]{escape(rendered)}[/dim]")
        self._record(f"[TOOL] {name}{rendered}")

    def tool_result(self, output: str) -> None:
        if self.verbose:
            first_line = _shorten(output, 200).split("\n")[0]
        else:
            first_line = _shorten(output.split("\n")[0], 100)
        self.console.print(f"[bright_black]  → {escape(first_line)}[/bright_black]")
        self._record(f"[RESULT] {output}")

    def thinking(self, text: str) -> None:
        self.stop_spinner()
        first_line = _shorten(text.split("\n")[0], 150)
        self.console.print(f"[magenta]💭 [italic]{escape(first_line)}[/italic][/magenta]")
        self._record(f"[THINKING] {text}")

    def stream(self, text: str) -> None:
        self.stop_spinner()
        self.console.print(text, end="", markup=False, highlight=False, soft_wrap=True)
        self._stream_buffer.append(text)

    def stream_end(self) -> None:
        if not self._stream_buffer:
            return
        self.console.print()
        self._record("".join(self._stream_buffer))
        self._stream_buffer.clear()

    def tokens(self, input_tokens: int, output_tokens: int) -> None:
        message = f"[TOKENS] in: {input_tokens}, out: {output_tokens}"
        if self.verbose:
            self.console.print(f"[dim]{escape(message)}[/dim]")
        self._record(message)

    def file_change(self, action: str, path: str) -> None:
        self.stop_spinner()
        short = f"...{path[-57:]}" if len(path) > 60 else path
        self.console.print(f"  [green]✓ {escape(action)}: {escape(short)}[/green]")
        self._record(f"[FILE] {action}: {path}")

    # --- spinner --------------------------------------------------------

    def start_spinner(self, message: str) -> None:
        self.stop_spinner()
        self._status = self.console.status(message, spinner="dots")
        self._status.start()

    def stop_spinner(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None

    @property
    def spinning(self) -> bool:
        return self._status is not None

    # --- files ----------------------------------------------------------

    def set_cycle_log(self, cycle: int) -> None:
        if self._cycle_handler is not None:
            self._activity.removeHandler(self._cycle_handler)
            self._cycle_handler.close()
        self.paths.cycle_log_dir.mkdir(parents=True, exist_ok=True)
        self._cycle_handler = self._file_handler(self.paths.cycle_log(cycle))
        self._activity.addHandler(self._cycle_handler)

    def cleanup(self, max_age_days: int) -> int:
        deleted = cleanup_old_files(self.paths.cycle_log_dir, max_age_days)
        if deleted:
            self.verbose_log(f"Removed {deleted} old cycle log(s)")
        return deleted

    def flush(self) -> None:
        for target in (self._activity, self._alerts):
            for handler in target.handlers:
                handler.flush()

    def close(self) -> None:
        self.stop_spinner()
        self.stream_end()
        for target in (self._activity, self._alerts):
            for handler in list(target.handlers):
                target.removeHandler(handler)
                handler.close()
        self._cycle_handler = None
