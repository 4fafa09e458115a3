import asyncio
import json
from datetime import datetime, timedelta, timezone

from devloop.config import with_overrides
from devloop.errors import BackendError, BackendUnavailable, EmptyResponse, SessionNotFound
from devloop.loop import LoopController
from devloop.metrics import load_metrics
from devloop.session import AgentSessionManager
from devloop.shutdown import ShutdownToken
from devloop.state import LoopState, Phase, save_state

from fakes import FakeBackend

PLAN_AB = "```markdown\n# Plan: Cycle\n- [ ] a\n- [ ] b\n```"


def _controller(loop_config, paths, reporter, backend, *, clock=None, shutdown=None):
    shutdown = shutdown or ShutdownToken(exit_func=lambda code: None)
    manager = AgentSessionManager(loop_config, backend, reporter, shutdown)
    kwargs = {"shutdown": shutdown}
    if clock is not None:
        kwargs["clock"] = clock
    return LoopController(loop_config, paths, reporter, manager, **kwargs)


class RecordingShutdown(ShutdownToken):
    def __init__(self):
        super().__init__(exit_func=lambda code: None)
        self.sleeps: list[float] = []

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        return False


def _steps(controller, count):
    async def run():
        for _ in range(count):
            await controller.step()

    asyncio.run(run())


def _saved_state(paths):
    return json.loads(paths.state_file.read_text())


def test_full_cycle_plan_build_eval(loop_config, paths, reporter):
    backend = FakeBackend([PLAN_AB, "did a", "did b", "COMPLETE\nReason: everything works"])
    controller = _controller(loop_config, paths, reporter, backend)

    _steps(controller, 1)
    assert controller.state.phase == Phase.BUILD
    assert paths.current_plan.read_text() == "# Plan: Cycle\n- [ ] a\n- [ ] b"
    assert _saved_state(paths)["sessionId"] == "ses_1"

    _steps(controller, 2)
    assert paths.current_plan.read_text() == "# Plan: Cycle\n- [x] a\n- [x] b"
    assert controller.state.task_index == 2

    _steps(controller, 2)
    assert controller.state.cycle == 2
    assert controller.state.phase == Phase.PLAN
    assert not paths.current_plan.exists()
    archived = list(paths.history_dir.glob("plan_*_cycle1.md"))
    assert len(archived) == 1

    metrics = load_metrics(paths.metrics_file)
    assert metrics.cycles_completed == 1
    assert metrics.tasks_completed == 2
    assert len(backend.prompts) == 4
    assert backend.deleted == ["ses_2"]
    assert _saved_state(paths)["cycle"] == 2


def test_resume_build_with_nothing_left_goes_to_eval(loop_config, paths, reporter):
    paths.current_plan.write_text("- [x] a\n- [x] b")
    save_state(paths.state_file, LoopState(phase=Phase.BUILD, task_index=0))
    backend = FakeBackend()
    controller = _controller(loop_config, paths, reporter, backend)

    controller.reconcile()
    assert controller.state.task_index == 2
    _steps(controller, 1)

    assert controller.state.phase == Phase.EVAL
    assert backend.prompts == []


def test_resume_without_plan_file_replans(loop_config, paths, reporter):
    save_state(paths.state_file, LoopState(cycle=3, phase=Phase.EVAL, session_id="ses_old"))
    controller = _controller(loop_config, paths, reporter, FakeBackend())
    controller.reconcile()
    assert controller.state.phase == Phase.PLAN
    assert controller.state.cycle == 3
    assert controller.manager.session_id == "ses_old"


def test_no_ideas_plans_autonomously(loop_config, paths, reporter):
    config = with_overrides(loop_config, user_hint="improve the docs")
    backend = FakeBackend([PLAN_AB])
    controller = _controller(config, paths, reporter, backend)
    _steps(controller, 1)
    assert backend.titles == ["Cycle 1"]
    assert "improve the docs" in backend.prompts[0][1]


def test_single_idea_used_without_selection(loop_config, paths, reporter):
    idea = paths.ideas_dir / "dark-mode.md"
    idea.write_text("# Dark mode\nAdd a dark theme.")
    backend = FakeBackend([PLAN_AB])
    controller = _controller(loop_config, paths, reporter, backend)

    _steps(controller, 1)

    assert backend.titles == ["Cycle 1 - dark-mode.md"]
    assert "Add a dark theme." in backend.prompts[0][1]
    assert not idea.exists()
    assert len(list(paths.ideas_history_dir.glob("*_dark-mode.md"))) == 1
    assert controller.state.current_idea_path is None
    assert load_metrics(paths.metrics_file).ideas_processed == 1


def test_selected_idea_from_several(loop_config, paths, reporter):
    (paths.ideas_dir / "a.md").write_text("idea alpha")
    (paths.ideas_dir / "b.md").write_text("idea beta")
    backend = FakeBackend(["SELECTED_IDEA: 2\nREASON: smaller", PLAN_AB])
    controller = _controller(loop_config, paths, reporter, backend)

    _steps(controller, 1)

    assert backend.titles == ["Cycle 1 - Idea Selection", "Cycle 1 - b.md"]
    assert backend.deleted == ["ses_1"]
    assert (paths.ideas_dir / "a.md").exists()
    assert not (paths.ideas_dir / "b.md").exists()


def test_unparseable_selection_falls_back_to_autonomous(loop_config, paths, reporter):
    (paths.ideas_dir / "a.md").write_text("idea alpha")
    (paths.ideas_dir / "b.md").write_text("idea beta")
    backend = FakeBackend(["I like both", PLAN_AB])
    controller = _controller(loop_config, paths, reporter, backend)

    _steps(controller, 1)

    assert backend.titles == ["Cycle 1 - Idea Selection", "Cycle 1"]
    assert sorted(p.name for p in paths.ideas_dir.glob("*.md")) == ["a.md", "b.md"]
    assert controller.state.phase == Phase.BUILD


def test_failed_plan_keeps_pinned_idea(loop_config, paths, reporter):
    (paths.ideas_dir / "a.md").write_text("idea alpha")
    backend = FakeBackend([BackendError("HTTP 502", status_code=502), PLAN_AB])
    controller = _controller(loop_config, paths, reporter, backend)

    _steps(controller, 1)
    assert controller.state.current_idea_filename == "a.md"
    assert _saved_state(paths)["currentIdeaFilename"] == "a.md"
    assert controller.state.retry_count == 1
    assert (paths.ideas_dir / "a.md").exists()

    _steps(controller, 1)
    assert backend.titles == ["Cycle 1 - a.md", "Cycle 1 - a.md"]
    assert not (paths.ideas_dir / "a.md").exists()
    assert controller.state.retry_count == 0


def test_invalid_plans_exhaust_to_autonomous(loop_config, paths, reporter):
    (paths.ideas_dir / "a.md").write_text("idea alpha")
    backend = FakeBackend(["- [x] done", "- [x] done", "- [x] done", PLAN_AB])
    controller = _controller(loop_config, paths, reporter, backend)

    _steps(controller, 3)
    assert controller.state.phase == Phase.PLAN
    assert controller.state.retry_count == 0
    assert controller.state.current_idea_path is None
    assert not paths.current_plan.exists()

    _steps(controller, 1)
    assert backend.titles[-1] == "Cycle 1"
    assert controller.state.phase == Phase.BUILD
    assert load_metrics(paths.metrics_file).total_retries == 3


def test_build_exhaustion_skips_only_the_failing_task(loop_config, paths, reporter):
    paths.current_plan.write_text("- [x] a\n- [ ] b\n- [ ] c")
    save_state(paths.state_file, LoopState(phase=Phase.BUILD, task_index=1))
    backend = FakeBackend([BackendError("boom")] * 3)
    controller = _controller(loop_config, paths, reporter, backend)

    _steps(controller, 2)
    assert controller.state.retry_count == 2
    assert paths.current_plan.read_text() == "- [x] a\n- [ ] b\n- [ ] c"

    _steps(controller, 1)
    assert paths.current_plan.read_text() == "- [x] a\n- [x] [SKIPPED] b\n- [ ] c"
    assert controller.state.retry_count == 0
    assert controller.state.task_index == 2
    metrics = load_metrics(paths.metrics_file)
    assert metrics.tasks_failed == 1
    assert metrics.total_retries == 3
    assert "[ALERT]" in paths.alerts_file.read_text()

    _steps(controller, 1)
    assert paths.current_plan.read_text() == "- [x] a\n- [x] [SKIPPED] b\n- [x] c"


def test_empty_task_reply_counts_as_failed_task(loop_config, paths, reporter):
    paths.current_plan.write_text("- [ ] a\n- [ ] b")
    save_state(paths.state_file, LoopState(phase=Phase.BUILD))
    backend = FakeBackend([EmptyResponse()])
    controller = _controller(loop_config, paths, reporter, backend)

    _steps(controller, 1)

    assert paths.current_plan.read_text() == "- [x] a\n- [ ] b"
    assert load_metrics(paths.metrics_file).tasks_failed == 1
    assert controller.state.retry_count == 0


def test_stale_session_does_not_count_as_retry(loop_config, paths, reporter):
    paths.current_plan.write_text("- [ ] a")
    save_state(paths.state_file, LoopState(phase=Phase.BUILD))
    backend = FakeBackend([SessionNotFound("ses_1"), "did a"])
    controller = _controller(loop_config, paths, reporter, backend)

    _steps(controller, 1)
    assert controller.state.retry_count == 0
    assert controller.state.session_id is None
    assert controller.manager.session_id is None

    _steps(controller, 1)
    assert paths.current_plan.read_text() == "- [x] a"
    assert backend.titles == ["Cycle 1 - Recovery", "Cycle 1 - Recovery"]


def test_build_timeout_skips_to_eval_then_new_cycle(loop_config, paths, reporter):
    now = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
    paths.current_plan.write_text("- [x] a\n- [ ] b\n- [ ] c")
    save_state(
        paths.state_file,
        LoopState(phase=Phase.BUILD, task_index=1, cycle_start_time=now - timedelta(minutes=90)),
    )
    backend = FakeBackend(["NEEDS_WORK\nReason: b and c missing"])
    controller = _controller(loop_config, paths, reporter, backend, clock=lambda: now)

    _steps(controller, 1)
    assert controller.state.phase == Phase.EVAL
    assert backend.prompts == []
    metrics = load_metrics(paths.metrics_file)
    assert metrics.cycles_timed_out == 1
    assert metrics.tasks_skipped == 2

    _steps(controller, 1)
    assert controller.state.cycle == 2
    assert controller.state.phase == Phase.PLAN
    assert load_metrics(paths.metrics_file).cycles_completed == 0
    assert len(list(paths.history_dir.glob("plan_*_cycle1.md"))) == 1


def test_plan_timeout_starts_new_cycle(loop_config, paths, reporter):
    now = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
    save_state(paths.state_file, LoopState(cycle=4, phase=Phase.PLAN, cycle_start_time=now - timedelta(hours=2)))
    backend = FakeBackend()
    controller = _controller(loop_config, paths, reporter, backend, clock=lambda: now)

    _steps(controller, 1)

    assert controller.state.cycle == 5
    assert controller.state.cycle_start_time is None
    assert backend.prompts == []


def test_needs_work_with_remaining_tasks_resumes_build(loop_config, paths, reporter):
    paths.current_plan.write_text("- [x] a\n- [ ] b")
    save_state(paths.state_file, LoopState(phase=Phase.EVAL))
    backend = FakeBackend(["NEEDS_WORK\nReason: b"])
    controller = _controller(loop_config, paths, reporter, backend)

    _steps(controller, 1)

    assert controller.state.phase == Phase.BUILD
    assert controller.state.cycle == 1
    assert paths.current_plan.exists()


def test_run_stops_after_current_operation(loop_config, paths, reporter):
    backend = FakeBackend([PLAN_AB])

    async def run():
        shutdown = ShutdownToken(exit_func=lambda code: None)
        backend.on_prompt = lambda text: shutdown.request("test")
        controller = _controller(loop_config, paths, reporter, backend, shutdown=shutdown)
        return await controller.run(), controller

    code, controller = asyncio.run(run())
    assert code == 0
    assert controller.state.phase == Phase.BUILD
    assert backend.closed
    assert _saved_state(paths)["phase"] == "build"
    assert "devloop stopped." in reporter.console.file.getvalue()


def test_run_reports_unavailable_backend(loop_config, paths, reporter):
    class DownBackend(FakeBackend):
        async def start(self):
            raise BackendUnavailable("connection refused")

    backend = DownBackend()

    async def run():
        return await _controller(loop_config, paths, reporter, backend).run()

    assert asyncio.run(run()) == 1
    assert backend.closed
    reporter.flush()
    assert "Failed to start agent backend" in paths.alerts_file.read_text()


def test_idea_archived_only_after_plan_state_is_saved(loop_config, paths, reporter):
    (paths.ideas_dir / "a.md").write_text("idea alpha")
    backend = FakeBackend([PLAN_AB])
    controller = _controller(loop_config, paths, reporter, backend)
    saved_at_archive = []
    archive = controller.ideas.archive

    def archive_after_snapshot(path):
        saved_at_archive.append(_saved_state(paths))
        return archive(path)

    controller.ideas.archive = archive_after_snapshot
    _steps(controller, 1)

    snapshot = saved_at_archive[0]
    assert snapshot["phase"] == "build"
    assert snapshot["currentIdeaPath"] is None
    assert snapshot["sessionId"] == "ses_1"

    # A crash right after archiving resumes into the idea's plan, not a new one.
    paths.state_file.write_text(json.dumps(snapshot))
    resumed_backend = FakeBackend(["did a"])
    resumed = _controller(loop_config, paths, reporter, resumed_backend)
    resumed.reconcile()
    _steps(resumed, 1)

    assert resumed_backend.titles == ["Cycle 1 - Recovery"]
    assert paths.current_plan.read_text() == "# Plan: Cycle\n- [x] a\n- [ ] b"


def test_repeated_missing_session_goes_through_retry_budget(loop_config, paths, reporter):
    paths.current_plan.write_text("- [ ] a\n- [ ] b")
    save_state(paths.state_file, LoopState(phase=Phase.BUILD))
    backend = FakeBackend([SessionNotFound("gone")] * 4)
    shutdown = RecordingShutdown()
    controller = _controller(loop_config, paths, reporter, backend, shutdown=shutdown)

    _steps(controller, 1)
    assert controller.state.retry_count == 0
    assert shutdown.sleeps == []

    _steps(controller, 2)
    assert controller.state.retry_count == 2
    assert len(shutdown.sleeps) == 2

    _steps(controller, 1)
    assert paths.current_plan.read_text() == "- [x] [SKIPPED] a\n- [ ] b"
    assert controller.state.retry_count == 0
    assert len(backend.titles) == 4
    assert load_metrics(paths.metrics_file).total_retries == 3
    reporter.flush()
    assert "[ALERT]" in paths.alerts_file.read_text()


def test_eval_exhaustion_stays_in_eval_and_backs_off(loop_config, paths, reporter):
    paths.current_plan.write_text("- [x] a")
    save_state(paths.state_file, LoopState(cycle=2, phase=Phase.EVAL))
    backend = FakeBackend([BackendError("HTTP 500", status_code=500)] * 3)
    shutdown = RecordingShutdown()
    controller = _controller(loop_config, paths, reporter, backend, shutdown=shutdown)

    _steps(controller, 2)
    assert controller.state.retry_count == 2
    assert len(shutdown.sleeps) == 2

    _steps(controller, 1)
    assert controller.state.phase == Phase.EVAL
    assert controller.state.retry_count == 0
    assert controller.state.cycle == 2
    assert len(shutdown.sleeps) == 3
    assert paths.current_plan.read_text() == "- [x] a"
    assert backend.deleted == ["ses_1", "ses_2", "ses_3"]
    reporter.flush()
    assert "Eval phase failed 3 times" in paths.alerts_file.read_text()
    assert _saved_state(paths)["phase"] == "eval"


def test_needs_work_with_nothing_left_starts_new_cycle(loop_config, paths, reporter):
    paths.current_plan.write_text("- [x] a\n- [x] b")
    save_state(paths.state_file, LoopState(cycle=3, phase=Phase.EVAL, session_id="ses_old"))
    backend = FakeBackend(["NEEDS_WORK\nReason: tests are flaky"])
    controller = _controller(loop_config, paths, reporter, backend)
    controller.reconcile()

    _steps(controller, 1)

    assert controller.state.cycle == 4
    assert controller.state.phase == Phase.PLAN
    assert controller.state.session_id is None
    assert controller.manager.session_id is None
    assert not paths.current_plan.exists()
    assert len(list(paths.history_dir.glob("plan_*_cycle3.md"))) == 1
    assert load_metrics(paths.metrics_file).cycles_completed == 0
