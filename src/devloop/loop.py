"""The plan -> build -> eval loop controller.

Each iteration runs exactly one unit of work for the current phase, then
persists ``state.json``. Errors never leave the loop: they are classified,
counted against the retry budget and, once the budget is spent, remediated
per phase.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import logfire

from .config import LoopConfig
from .errors import BackendUnavailable, ErrorKind, InvalidPlanError, classify_error
from .evaluation import EvalVerdict, extract_evaluation_reason, parse_evaluation
from .ideas import Idea, IdeaQueue, format_ideas_for_selection, parse_idea_selection
from .metrics import MetricsRecorder
from .reporter import LoopReporter
from .retry import RetryPolicy
from .session import AgentSessionManager
from .shutdown import ShutdownToken
from .state import (
    LoopState,
    Phase,
    cycle_elapsed_seconds,
    load_state,
    record_failure,
    reset_retries,
    save_state,
    start_new_cycle,
)
from .tasks import mark_task_complete, mark_task_skipped, next_task, parse_tasks, validate_plan
from .workspace import WorkspacePaths, read_text_or_none, timestamp_for_filename, write_text_atomic

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoopController:
    def __init__(
        self,
        config: LoopConfig,
        paths: WorkspacePaths,
        reporter: LoopReporter,
        manager: AgentSessionManager,
        *,
        ideas: Optional[IdeaQueue] = None,
        metrics: Optional[MetricsRecorder] = None,
        shutdown: Optional[ShutdownToken] = None,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config
        self.paths = paths
        self.reporter = reporter
        self.manager = manager
        self.ideas = ideas or IdeaQueue(paths.ideas_dir, paths.ideas_history_dir)
        self.metrics = metrics or MetricsRecorder(paths.metrics_file)
        self.shutdown = shutdown or ShutdownToken()
        self.policy = policy or RetryPolicy.from_config(config)
        self.clock = clock
        self.state: LoopState = load_state(paths.state_file)
        self._autonomous_next = False
        self._recovered_stale = False

    # --- lifecycle ------------------------------------------------------

    async def run(self) -> int:
        self._log_startup()
        try:
            await self.manager.start()
        except BackendUnavailable as exc:
            self.reporter.error(f"Failed to start agent backend: {exc}")
            await self.manager.shutdown()
            return 1
        self.reporter.success("Agent backend ready")

        self.reporter.cleanup(self.config.log_retention_days)
        removed = self.ideas.cleanup_empty()
        if removed:
            self.reporter.verbose_log(f"Removed {removed} empty idea file(s)")
        self.reconcile()
        self.persist()

        try:
            while not self.shutdown.requested:
                await self.step()
        finally:
            self.reporter.flush()
            await self.manager.shutdown()
            self.persist()
            self.reporter.say("devloop stopped.")
        return 0

    def _log_startup(self) -> None:
        self.reporter.say(f"Project: {self.config.project_dir}")
        self.reporter.say(f"Plan model: {self.config.plan_model}")
        self.reporter.say(f"Build model: {self.config.build_model}")
        if self.config.user_hint:
            self.reporter.say(f"Hint: {self.config.user_hint}")
        self.reporter.say(f"Resuming from cycle {self.state.cycle}, phase: {self.state.phase}")

    def persist(self) -> None:
        try:
            save_state(self.paths.state_file, self.state)
        except OSError:
            logger.exception("Failed to save state to %s", self.paths.state_file)

    def reconcile(self) -> None:
        """Re-derive resumable state from what is actually on disk."""
        state = self.state
        plan_text = read_text_or_none(self.paths.current_plan)

        if state.phase in (Phase.BUILD, Phase.EVAL) and plan_text is None:
            self.reporter.warn(f"No plan file found for {state.phase} phase, returning to plan phase")
            state.phase = Phase.PLAN
            state.task_index = 0
        elif state.phase is Phase.BUILD and plan_text is not None:
            state.task_index = sum(1 for task in parse_tasks(plan_text) if task.completed)

        if state.current_idea_path and not Path(state.current_idea_path).is_file():
            self.reporter.verbose_log(
                f"Pinned idea {state.current_idea_filename or state.current_idea_path} is gone, clearing it"
            )
            state.clear_idea()

        if state.session_id:
            self.manager.restore_session(state.session_id)

    # --- iteration ------------------------------------------------------

    async def step(self) -> None:
        """Run one iteration and persist the resulting state."""
        self.reporter.set_cycle_log(self.state.cycle)
        try:
            if self._apply_cycle_timeout():
                return
            phase = self.state.phase
            try:
                with logfire.span("devloop_phase", phase=str(phase), cycle=self.state.cycle):
                    if phase in (Phase.INIT, Phase.PLAN):
                        await self.run_plan_phase()
                    elif phase is Phase.BUILD:
                        await self.run_build_phase()
                    else:
                        await self.run_eval_phase()
                self._recovered_stale = False
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await self.handle_failure(phase, exc)
        finally:
            self.persist()

    def _cycle_timed_out(self) -> bool:
        timeout = self.config.cycle_timeout_seconds
        elapsed = cycle_elapsed_seconds(self.state, self.clock())
        return timeout is not None and elapsed is not None and elapsed >= timeout

    def _apply_cycle_timeout(self) -> bool:
        if not self._cycle_timed_out():
            return False
        state = self.state
        minutes = self.config.cycle_timeout_minutes
        if state.phase in (Phase.INIT, Phase.PLAN):
            self.reporter.warn(f"Cycle {state.cycle} exceeded {minutes:g} minutes while planning, starting a new cycle")
            self.metrics.record_cycle_timeout()
            logfire.warn("devloop_cycle_timeout", cycle=state.cycle, phase=str(state.phase))
            start_new_cycle(state)
            self.manager.clear_session()
            return True
        if state.phase is Phase.BUILD:
            plan_text = read_text_or_none(self.paths.current_plan) or ""
            remaining = sum(1 for task in parse_tasks(plan_text) if not task.completed)
            self.reporter.warn(
                f"Cycle {state.cycle} exceeded {minutes:g} minutes, skipping {remaining} remaining task(s) and evaluating"
            )
            self.metrics.record_cycle_timeout()
            self.metrics.record_task_skipped(remaining)
            logfire.warn("devloop_cycle_timeout", cycle=state.cycle, phase=str(state.phase), skipped=remaining)
            state.phase = Phase.EVAL
            reset_retries(state)
            return True
        return False

    async def handle_failure(self, phase: Phase, exc: BaseException) -> None:
        kind = classify_error(exc)
        state = self.state

        if kind is ErrorKind.STALE_SESSION:
            self.manager.clear_session()
            state.session_id = None
            if not self._recovered_stale:
                # One free recreation; a fresh session that is also gone is a backend fault.
                self._recovered_stale = True
                self.reporter.verbose_log(f"{exc}; a new session will be created")
                return

        retry_count = record_failure(state)
        self.metrics.record_retry()
        if kind is ErrorKind.INVALID_PLAN:
            self.reporter.warn(f"Invalid plan: {exc}")
        else:
            self.reporter.error(f"Error in {phase} phase: {exc}")
            logger.debug("Phase %s failed", phase, exc_info=exc)

        if self.policy.exhausted(retry_count):
            self.reporter.alert(
                f"{str(phase).capitalize()} phase failed {retry_count} times in a row (last error: {exc})"
            )
            reset_retries(state)
            self._remediate(phase)
            if phase is Phase.EVAL:
                await self._backoff(self.policy.max_retries)
            return

        if kind is ErrorKind.INVALID_PLAN:
            return
        await self._backoff(retry_count)

    async def _backoff(self, retry_count: int) -> None:
        if self.shutdown.requested:
            return
        delay = self.policy.delay(retry_count)
        self.reporter.say(f"Retrying in {delay:.1f} seconds (attempt {retry_count}/{self.policy.max_retries})...")
        await self.shutdown.sleep(delay)

    def _remediate(self, phase: Phase) -> None:
        state = self.state
        if phase is Phase.BUILD:
            plan_text = read_text_or_none(self.paths.current_plan)
            task = next_task(plan_text) if plan_text else None
            if task is None:
                return
            write_text_atomic(self.paths.current_plan, mark_task_skipped(plan_text, task.line_number))
            state.task_index += 1
            self.metrics.record_task_failed()
            self.reporter.warn(f"Skipping task: {task.description}")
        elif phase in (Phase.INIT, Phase.PLAN):
            if state.has_idea:
                self.reporter.warn(
                    f"Dropping idea {state.current_idea_filename}, falling back to autonomous planning"
                )
                state.clear_idea()
            self._autonomous_next = True

    # --- plan -----------------------------------------------------------

    async def run_plan_phase(self) -> None:
        state = self.state
        if state.phase is Phase.INIT:
            state.phase = Phase.PLAN
        if state.cycle_start_time is None:
            state.cycle_start_time = self.clock()

        plan_text, idea = await self._obtain_plan()
        validation = validate_plan(plan_text)
        if not validation.valid:
            raise InvalidPlanError(validation.error or "Plan is invalid")

        write_text_atomic(self.paths.current_plan, plan_text)
        state.clear_idea()
        state.phase = Phase.BUILD
        state.task_index = 0
        state.session_id = self.manager.resumable_session_id
        reset_retries(state)
        self._autonomous_next = False
        # The idea may only leave the queue once state.json points at its plan.
        self.persist()
        if idea is not None:
            if self.ideas.archive(idea.path):
                self.reporter.verbose_log(f"Archived idea {idea.filename}")
            self.metrics.record_idea_processed()

        tasks = parse_tasks(plan_text)
        self.reporter.success(f"Plan created with {len(tasks)} tasks")
        logfire.info("devloop_plan_created", cycle=state.cycle, tasks=len(tasks), idea=idea.filename if idea else None)

    async def _obtain_plan(self) -> tuple[str, Optional[Idea]]:
        cycle = self.state.cycle
        if self._autonomous_next:
            return await self.manager.run_plan(cycle, self.config.user_hint), None

        idea = self._pinned_idea()
        if idea is None:
            idea = await self._select_idea()
            if idea is not None:
                self.state.pin_idea(idea.path, idea.filename)
                self.persist()
        if idea is not None:
            return await self.manager.run_idea_plan(idea.content, idea.filename, cycle), idea
        return await self.manager.run_plan(cycle, self.config.user_hint), None

    def _pinned_idea(self) -> Optional[Idea]:
        state = self.state
        if not state.current_idea_path:
            return None
        idea = self.ideas.load(Path(state.current_idea_path))
        if idea is None:
            self.reporter.verbose_log(f"Pinned idea {state.current_idea_filename} is no longer available")
            state.clear_idea()
            return None
        self.reporter.say(f"Resuming with idea: {idea.filename}")
        return idea

    async def _select_idea(self) -> Optional[Idea]:
        ideas = self.ideas.list()
        if not ideas:
            return None
        self.reporter.info(f"Found {len(ideas)} idea(s) in queue")
        if len(ideas) == 1:
            self.reporter.say(f"Using idea: {ideas[0].filename}")
            return ideas[0]

        response = await self.manager.run_idea_selection(format_ideas_for_selection(ideas), self.state.cycle)
        index = parse_idea_selection(response)
        if index is None or index >= len(ideas):
            self.reporter.warn("Could not parse idea selection, falling back to autonomous plan")
            return None
        self.reporter.success(f"Selected idea: {ideas[index].filename}")
        return ideas[index]

    # --- build ----------------------------------------------------------

    async def run_build_phase(self) -> None:
        state = self.state
        plan_text = read_text_or_none(self.paths.current_plan)
        if plan_text is None:
            self.reporter.warn("No plan file found, returning to plan phase")
            state.phase = Phase.PLAN
            return

        tasks = parse_tasks(plan_text)
        remaining = [task for task in tasks if not task.completed]
        if not remaining:
            self.reporter.success("All tasks completed")
            state.phase = Phase.EVAL
            reset_retries(state)
            return
        if self.shutdown.requested:
            return

        task = remaining[0]
        task_num = tasks.index(task) + 1
        state.task_index = task_num - 1

        result = await self.manager.run_task(task.description, state.cycle, task_num, len(tasks))
        state.session_id = self.manager.resumable_session_id

        write_text_atomic(self.paths.current_plan, mark_task_complete(plan_text, task.line_number))
        state.task_index = task_num
        reset_retries(state)
        if result.success:
            self.metrics.record_task_completed()
            self.reporter.success(f"Task {task_num}/{len(tasks)} complete")
        else:
            self.metrics.record_task_failed()
            self.reporter.warn(f"Task {task_num}/{len(tasks)} failed: {result.error}")

        if len(remaining) > 1 and self.config.task_pause_seconds > 0:
            await self.shutdown.sleep(self.config.task_pause_seconds)

    # --- eval -----------------------------------------------------------

    async def run_eval_phase(self) -> None:
        state = self.state
        plan_text = read_text_or_none(self.paths.current_plan)
        if plan_text is None:
            self.reporter.warn("No plan file found for evaluation, returning to plan phase")
            state.phase = Phase.PLAN
            return

        response = await self.manager.run_eval(state.cycle, plan_text)
        verdict = parse_evaluation(response)
        reason = extract_evaluation_reason(response)

        if verdict is EvalVerdict.COMPLETE:
            self.reporter.success(f"Cycle {state.cycle} complete")
            if reason:
                self.reporter.say(f"Reason: {reason}")
            self._finish_cycle(plan_text, completed=True)
            return

        if reason:
            self.reporter.say(f"Reason: {reason}")
        has_remaining = any(not task.completed for task in parse_tasks(plan_text))
        if has_remaining and not self._cycle_timed_out():
            self.reporter.warn("Cycle needs more work, continuing build")
            state.phase = Phase.BUILD
            reset_retries(state)
            return
        self.reporter.warn("Evaluation reported NEEDS_WORK with nothing left to build, starting a new cycle")
        self._finish_cycle(plan_text, completed=False)

    def _finish_cycle(self, plan_text: str, *, completed: bool) -> None:
        state = self.state
        archive_path = self.paths.history_dir / f"plan_{timestamp_for_filename()}_cycle{state.cycle}.md"
        write_text_atomic(archive_path, plan_text)
        self.paths.current_plan.unlink(missing_ok=True)
        self.reporter.verbose_log(f"Plan archived to {archive_path.name}")

        if completed:
            elapsed = cycle_elapsed_seconds(state, self.clock())
            self.metrics.record_cycle_completed(int((elapsed or 0) * 1000))
            logfire.info("devloop_cycle_complete", cycle=state.cycle, duration_s=elapsed)

        start_new_cycle(state)
        self.manager.clear_session()
