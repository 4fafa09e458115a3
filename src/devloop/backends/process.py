"""Executable backend: one agent process per prompt, owned as a process group.

The agent CLI can spawn its own children (build tools, test runners). Each
run is started as the leader of a new session so the whole tree can be
signalled at once with ``os.killpg``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import time
import uuid
from collections import deque
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Sequence

from ..config import LoopConfig, ModelSpec
from ..errors import (
    BackendError,
    EmptyResponse,
    ProcessExitNonZero,
    SessionNotFound,
    TerminatedBySignal,
)
from .base import AgentBackend, SessionRef
from .events import BackendEvent, EventKind

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]

STREAM_LIMIT = 4 * 1024 * 1024
POLL_INTERVAL = 0.1
REAP_TIMEOUT = 5.0
STDERR_TAIL_LINES = 20
DELETED_SESSION_LIMIT = 256


def _noop(_line: str) -> None:
    return None


class ManagedProcess:
    """A child process running as leader of its own process group."""

    def __init__(
        self,
        argv: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        env: Optional[dict[str, str]] = None,
        on_stdout: Optional[LineCallback] = None,
        on_stderr: Optional[LineCallback] = None,
    ) -> None:
        self.argv = list(argv)
        self.cwd = cwd
        self.env = env
        self.on_stdout = on_stdout or _noop
        self.on_stderr = on_stderr or _noop
        self.pid: Optional[int] = None
        self.pgid: Optional[int] = None
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._pumps: list[asyncio.Task] = []
        self.stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    @property
    def started(self) -> bool:
        return self._proc is not None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc is not None else None

    async def start(self) -> None:
        self._proc = await asyncio.create_subprocess_exec(
            *self.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.cwd) if self.cwd else None,
            env=self.env,
            start_new_session=True,
            limit=STREAM_LIMIT,
        )
        self.pid = self._proc.pid
        try:
            self.pgid = os.getpgid(self.pid)
        except ProcessLookupError:
            self.pgid = self.pid
        logger.debug("Spawned %s (pid=%s pgid=%s)", self.argv[0], self.pid, self.pgid)
        self._pumps = [
            asyncio.create_task(self._pump(self._proc.stdout, self.on_stdout)),
            asyncio.create_task(self._pump(self._proc.stderr, self._capture_stderr)),
        ]

    def _capture_stderr(self, line: str) -> None:
        self.stderr_tail.append(line)
        self.on_stderr(line)

    async def _pump(self, stream: Optional[asyncio.StreamReader], callback: LineCallback) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                raw = await stream.read(STREAM_LIMIT)
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            try:
                callback(line)
            except Exception:
                logger.exception("Output callback failed")

    async def wait(self) -> int:
        if self._proc is None:
            raise RuntimeError("process not started")
        code = await self._proc.wait()
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)
        return code

    def signal_group(self, signum: int) -> bool:
        if self.pgid is None:
            return False
        try:
            os.killpg(self.pgid, signum)
            return True
        except ProcessLookupError:
            return False
        except PermissionError as exc:
            logger.debug("Cannot signal process group %s: %s", self.pgid, exc)
            return False

    def group_alive(self) -> bool:
        if self.pgid is None:
            return False
        try:
            os.killpg(self.pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    async def _wait_group_gone(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not self.group_alive():
                return True
            await asyncio.sleep(POLL_INTERVAL)
        return not self.group_alive()

    async def terminate(self, grace: float = 5.0) -> Optional[int]:
        """SIGTERM the group, wait up to ``grace`` seconds, then SIGKILL and reap."""
        if self._proc is None:
            return None
        if self.signal_group(signal.SIGTERM):
            if not await self._wait_group_gone(grace):
                logger.warning("Process group %s ignored SIGTERM, sending SIGKILL", self.pgid)
                self.signal_group(signal.SIGKILL)
                if not await self._wait_group_gone(REAP_TIMEOUT):
                    logger.warning("Process group %s still present after SIGKILL", self.pgid)
        elif self._proc.returncode is None:
            try:
                self._proc.kill()
            except ProcessLookupError:
                pass
        try:
            return await asyncio.wait_for(self.wait(), timeout=REAP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Timed out reaping pid %s", self.pid)
            return self._proc.returncode

    def kill_now(self) -> None:
        """Synchronous SIGKILL of the whole group, for forced exit."""
        if self._proc is None or self.pgid is None:
            return
        self.signal_group(signal.SIGKILL)


class ProcessAgentBackend(AgentBackend):
    """Runs ``<agent_command> run ...`` once per prompt."""

    def __init__(self, config: LoopConfig) -> None:
        self.config = config
        self._sessions: dict[str, SessionRef] = {}
        self._remote_ids: dict[str, str] = {}
        self._deleted: deque[str] = deque(maxlen=DELETED_SESSION_LIMIT)
        self._running: dict[str, ManagedProcess] = {}
        self._events: asyncio.Queue[Optional[BackendEvent]] = asyncio.Queue()
        self._closed = False

    async def create_session(self, title: str) -> SessionRef:
        ref = SessionRef(id=f"local-{uuid.uuid4().hex[:12]}", title=title)
        self._sessions[ref.id] = ref
        return ref

    async def get_session(self, session_id: str) -> SessionRef:
        if session_id in self._deleted:
            raise SessionNotFound(session_id)
        ref = self._sessions.get(session_id)
        if ref is None:
            # An id persisted by a previous run: continue it remotely.
            ref = SessionRef(id=session_id)
            self._sessions[session_id] = ref
            if not session_id.startswith("local-"):
                self._remote_ids[session_id] = session_id
        return ref

    def build_argv(self, session_id: str, text: str, model: ModelSpec) -> list[str]:
        ref = self._sessions.get(session_id)
        argv = [
            self.config.agent_command,
            "run",
            "--model",
            f"{model.provider_id}/{model.model_id}",
            "--title",
            (ref.title if ref and ref.title else "devloop"),
        ]
        remote_id = self._remote_ids.get(session_id)
        if remote_id:
            argv += ["--session", remote_id]
        argv.append(text)
        return argv

    def _handle_stdout(self, session_id: str, chunks: list[str], line: str) -> None:
        stripped = line.strip()
        if stripped.startswith("{"):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict) and parsed.get("type"):
                event = BackendEvent.from_raw(parsed)
                remote_id = parsed.get("sessionID") or event.payload.get("sessionID")
                if isinstance(remote_id, str) and remote_id:
                    self._remote_ids[session_id] = remote_id
                if event.kind is EventKind.TEXT and isinstance(event.payload.get("text"), str):
                    chunks.append(event.payload["text"])
                self._events.put_nowait(event)
                return
        chunks.append(line + "\n")
        self._events.put_nowait(BackendEvent.text(line + "\n"))

    async def send_prompt(self, session_id: str, text: str, model: ModelSpec) -> str:
        if session_id in self._deleted:
            raise SessionNotFound(session_id)
        chunks: list[str] = []
        process = ManagedProcess(
            self.build_argv(session_id, text, model),
            cwd=self.config.project_dir,
            on_stdout=lambda line: self._handle_stdout(session_id, chunks, line),
            on_stderr=lambda line: self._events.put_nowait(BackendEvent.stderr(line)),
        )
        try:
            await process.start()
        except OSError as exc:
            raise BackendError(f"Failed to start {self.config.agent_command}: {exc}") from exc

        self._running[session_id] = process
        try:
            if self.config.request_timeout:
                code = await asyncio.wait_for(process.wait(), timeout=self.config.request_timeout)
            else:
                code = await process.wait()
        except asyncio.TimeoutError:
            await process.terminate(self.config.shutdown_grace_seconds)
            raise BackendError(f"Agent process timed out after {self.config.request_timeout}s")
        except asyncio.CancelledError:
            await process.terminate(self.config.shutdown_grace_seconds)
            raise
        finally:
            self._running.pop(session_id, None)

        if code < 0:
            raise TerminatedBySignal(-code)
        if code > 0:
            raise ProcessExitNonZero(code, " | ".join(process.stderr_tail)[-500:])
        output = "".join(chunks).strip()
        if not output:
            raise EmptyResponse()
        return output

    async def subscribe_events(self) -> AsyncIterator[BackendEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def delete_session(self, session_id: str) -> None:
        self.forget_session(session_id)
        if session_id not in self._deleted:
            self._deleted.append(session_id)

    def forget_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._remote_ids.pop(session_id, None)

    def resolve_session_id(self, session_id: str) -> str:
        return self._remote_ids.get(session_id, session_id)

    async def abort_session(self, session_id: str) -> None:
        process = self._running.get(session_id)
        if process is not None:
            await process.terminate(self.config.shutdown_grace_seconds)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for process in list(self._running.values()):
            await process.terminate(self.config.shutdown_grace_seconds)
        self._events.put_nowait(None)

    def kill_now(self) -> None:
        for process in list(self._running.values()):
            process.kill_now()
