"""Session lifecycle on top of an ``AgentBackend``.

One session is opened per plan and reused by every build task of that plan.
Evaluation and idea selection use their own short-lived sessions. Live events
from the backend are consumed by a background task and routed to the
reporter while prompts are in flight.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import logfire

from .backends.base import AgentBackend
from .backends.events import EventDispatcher, SessionStats
from .config import LoopConfig, parse_model
from .errors import EmptyResponse, NoActiveSession, SessionNotFound
from .prompts import eval_prompt, idea_plan_prompt, idea_selection_prompt, plan_prompt, task_prompt
from .reporter import LoopReporter
from .shutdown import ShutdownToken
from .tasks import extract_plan_from_response

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildResult:
    success: bool
    output: str = ""
    error: Optional[str] = None


class AgentSessionManager:
    def __init__(
        self,
        config: LoopConfig,
        backend: AgentBackend,
        reporter: LoopReporter,
        shutdown: Optional[ShutdownToken] = None,
    ) -> None:
        self.config = config
        self.backend = backend
        self.reporter = reporter
        self.shutdown_token = shutdown
        self.dispatcher = EventDispatcher(reporter, SessionStats(model=config.build_model))
        self._session_id: Optional[str] = None
        self._events_task: Optional[asyncio.Task] = None

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def resumable_session_id(self) -> Optional[str]:
        """Session id to persist, resolved to what a restarted backend can continue."""
        if not self._session_id:
            return None
        return self.backend.resolve_session_id(self._session_id)

    @property
    def stats(self) -> SessionStats:
        return self.dispatcher.stats

    def reset_stats(self, model: Optional[str] = None) -> None:
        self.dispatcher.stats = SessionStats(model=model or self.config.build_model)

    async def start(self) -> None:
        await self.backend.start()
        self._events_task = asyncio.create_task(self._consume_events(), name="devloop-events")
        if self.shutdown_token is not None:
            self.shutdown_token.add_force_callback(self.kill_now)

    async def _consume_events(self) -> None:
        try:
            async for event in self.backend.subscribe_events():
                try:
                    self.dispatcher.handle(event)
                except Exception:
                    logger.exception("Failed to handle backend event %s", event.raw_type)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.reporter.verbose_log(f"Event stream ended: {exc}")

    # --- sessions -------------------------------------------------------

    def restore_session(self, session_id: Optional[str]) -> None:
        self._session_id = session_id

    def clear_session(self) -> None:
        if self._session_id:
            self.backend.forget_session(self._session_id)
        self._session_id = None

    async def _open_session(self, title: str) -> str:
        session = await self.backend.create_session(title)
        self.reporter.verbose_log(f"Created session: {session.id}")
        return session.id

    async def ensure_session(self, cycle: int, title: Optional[str] = None) -> str:
        """Reuse the current session if the backend still knows it, else open one."""
        if self._session_id:
            try:
                await self.backend.get_session(self._session_id)
                self.reporter.verbose_log(f"Resuming with existing session: {self._session_id}")
                return self._session_id
            except SessionNotFound:
                self.reporter.verbose_log(
                    f"Session {self._session_id} no longer exists, creating new session"
                )
                self.clear_session()
        self._session_id = await self._open_session(title or f"Cycle {cycle}")
        return self._session_id

    async def _delete_quietly(self, session_id: str) -> None:
        try:
            await self.backend.delete_session(session_id)
        except Exception as exc:
            self.reporter.verbose_log(f"Failed to delete session {session_id}: {exc}")

    async def _send(self, session_id: Optional[str], prompt: str, model: str, label: str) -> str:
        if not session_id:
            raise NoActiveSession()
        spec = parse_model(model)
        self.reporter.verbose_log(f"{label} with {model}...")
        self.reporter.start_spinner(f"{label}...")
        try:
            return await self.backend.send_prompt(session_id, prompt, spec)
        finally:
            self.reporter.stop_spinner()
            self.reporter.stream_end()

    # --- phases ---------------------------------------------------------

    async def run_plan(self, cycle: int, hint: Optional[str] = None) -> str:
        self.reporter.phase("Planning", f"Cycle {cycle}")
        with logfire.span("devloop_plan", cycle=cycle):
            self.clear_session()
            self._session_id = await self._open_session(f"Cycle {cycle}")
            self.reset_stats(self.config.plan_model)
            result = await self._send(
                self._session_id, plan_prompt(cycle, hint), self.config.plan_model, "Planning"
            )
        return extract_plan_from_response(result)

    async def run_idea_plan(self, content: str, filename: str, cycle: int) -> str:
        self.reporter.phase("Planning from Idea", f"Cycle {cycle}")
        self.reporter.step("Idea", filename)
        with logfire.span("devloop_idea_plan", cycle=cycle, idea=filename):
            self.clear_session()
            self._session_id = await self._open_session(f"Cycle {cycle} - {filename}")
            self.reset_stats(self.config.plan_model)
            result = await self._send(
                self._session_id,
                idea_plan_prompt(content, filename, cycle),
                self.config.plan_model,
                "Planning",
            )
        return extract_plan_from_response(result)

    async def run_task(self, description: str, cycle: int, task_num: int, total_tasks: int) -> BuildResult:
        """Run one build task.

        An empty reply is reported as an unsuccessful result. Backend failures
        propagate so the caller's retry policy can handle them.
        """
        self.reporter.phase("Building", f"Task {task_num}/{total_tasks}")
        self.reporter.say(f"  {description}")
        with logfire.span("devloop_task", cycle=cycle, task=task_num, total=total_tasks):
            session_id = await self.ensure_session(cycle, f"Cycle {cycle} - Recovery")
            self.reset_stats(self.config.build_model)
            try:
                output = await self._send(
                    session_id,
                    task_prompt(description, cycle, task_num, total_tasks),
                    self.config.build_model,
                    "Building",
                )
            except EmptyResponse as exc:
                return BuildResult(success=False, error=str(exc))
            except SessionNotFound:
                self.clear_session()
                raise
        self._report_stats()
        return BuildResult(success=True, output=output)

    async def run_eval(self, cycle: int, plan_text: str) -> str:
        self.reporter.phase("Evaluating", f"Cycle {cycle}")
        with logfire.span("devloop_eval", cycle=cycle):
            session_id = await self._open_session(f"Cycle {cycle} - Eval")
            try:
                return await self._send(
                    session_id, eval_prompt(cycle, plan_text), self.config.plan_model, "Evaluating"
                )
            finally:
                await self._delete_quietly(session_id)

    async def run_idea_selection(self, ideas_formatted: str, cycle: int) -> str:
        self.reporter.info("Selecting idea from queue...")
        session_id = await self._open_session(f"Cycle {cycle} - Idea Selection")
        try:
            return await self._send(
                session_id, idea_selection_prompt(ideas_formatted), self.config.plan_model, "Selecting"
            )
        finally:
            await self._delete_quietly(session_id)

    def _report_stats(self) -> None:
        stats = self.stats
        if stats.tool_calls or stats.input_tokens or stats.output_tokens:
            self.reporter.verbose_log(
                f"Task stats: {stats.tool_calls} tool calls, {len(stats.files_modified)} files, "
                f"~${stats.cost_usd:.4f}"
            )

    # --- teardown -------------------------------------------------------

    async def abort_session(self) -> None:
        if not self._session_id:
            return
        try:
            await self.backend.abort_session(self._session_id)
            self.reporter.verbose_log("Session aborted")
        except Exception as exc:
            self.reporter.verbose_log(f"Failed to abort session: {exc}")

    async def shutdown(self) -> None:
        if self._events_task is not None:
            self._events_task.cancel()
            try:
                await self._events_task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                self.reporter.verbose_log(f"Event consumer failed: {exc}")
            self._events_task = None
        await self.abort_session()
        try:
            await self.backend.close()
        except Exception as exc:
            self.reporter.verbose_log(f"Failed to close backend: {exc}")

    def kill_now(self) -> None:
        try:
            self.backend.kill_now()
        except Exception as exc:
            logger.debug("kill_now failed: %s", exc)
