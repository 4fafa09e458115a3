import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .backends import create_backend
from .config import BACKENDS, LoopConfig, load_config, resolve_project_dir
from .errors import ConfigError
from .ideas import IdeaQueue, idea_summary
from .loop import LoopController
from .metrics import MetricsRecorder
from .reporter import LoopReporter, configure_logfire, configure_logging
from .session import AgentSessionManager
from .shutdown import ShutdownToken
from .state import load_state
from .tasks import parse_tasks
from .workspace import WorkspacePaths, ensure_directories, initialize_paths, read_text_or_none

EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devloop",
        description="Autonomous plan/build/eval development loop",
        epilog="Manage the idea queue with: devloop idea add TEXT | devloop idea list",
    )
    parser.add_argument("hint", nargs="?", default=None, help="Optional hint for the first plan")
    parser.add_argument("-p", "--project", default=None, help="Project directory (default: cwd)")
    parser.add_argument("-m", "--model", default=None, help="Model for both plan and build (provider/model)")
    parser.add_argument("-P", "--plan-model", default=None, help="Model for plan and eval")
    parser.add_argument("-B", "--build-model", default=None, help="Model for build tasks")
    parser.add_argument("-v", "--verbose", action="store_true", default=None)
    parser.add_argument("--backend", choices=BACKENDS, default=None)
    parser.add_argument("--status", action="store_true", help="Show state and metrics, then exit")
    parser.add_argument("--metrics-reset", action="store_true", help="Reset metrics, then exit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_idea_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="devloop idea", description="Manage the idea queue")
    parser.add_argument("-p", "--project", default=None, help="Project directory (default: cwd)")
    subparsers = parser.add_subparsers(dest="idea_cmd", required=True)

    add_parser = subparsers.add_parser("add", help="Queue a new idea")
    add_parser.add_argument("text", nargs="+")

    subparsers.add_parser("list", help="List queued ideas")
    return parser


def _overrides(args: argparse.Namespace) -> dict:
    return {
        "plan_model": args.plan_model or args.model,
        "build_model": args.build_model or args.model,
        "verbose": args.verbose,
        "backend": args.backend,
        "user_hint": args.hint,
    }


def _workspace(project: Optional[str]) -> WorkspacePaths:
    paths = initialize_paths(resolve_project_dir(project))
    ensure_directories(paths)
    return paths


def _cmd_status(paths: WorkspacePaths) -> None:
    state = load_state(paths.state_file)
    print(f"Cycle: {state.cycle}")
    print(f"Phase: {state.phase}")
    plan_text = read_text_or_none(paths.current_plan)
    if plan_text is not None:
        tasks = parse_tasks(plan_text)
        done = sum(1 for task in tasks if task.completed)
        print(f"Plan: {done}/{len(tasks)} tasks complete")
    if state.current_idea_filename:
        print(f"Current idea: {state.current_idea_filename}")
    print(f"Queued ideas: {IdeaQueue(paths.ideas_dir, paths.ideas_history_dir).count()}")
    if state.last_update:
        print(f"Last update: {state.last_update.isoformat()}")
    print()
    print(MetricsRecorder(paths.metrics_file).summary())


def _cmd_idea(argv: list[str]) -> int:
    args = build_idea_parser().parse_args(argv)
    paths = _workspace(args.project)
    queue = IdeaQueue(paths.ideas_dir, paths.ideas_history_dir)
    if args.idea_cmd == "add":
        try:
            path = queue.add(" ".join(args.text))
        except ValueError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        print(f"Queued {path.name}")
        return 0
    ideas = queue.list()
    if not ideas:
        print("No ideas queued")
        return 0
    for number, idea in enumerate(ideas, start=1):
        print(f"{number}. {idea.filename}: {idea_summary(idea.content)}")
    return 0


async def _run_loop(config: LoopConfig, paths: WorkspacePaths, reporter: LoopReporter) -> int:
    shutdown = ShutdownToken()
    shutdown.add_request_callback(
        lambda reason: reporter.warn(
            f"{reason.capitalize()}. Finishing current operation, press Ctrl+C again to force quit."
        )
    )
    shutdown.install_signal_handlers()
    manager = AgentSessionManager(config, create_backend(config), reporter, shutdown)
    controller = LoopController(config, paths, reporter, manager, shutdown=shutdown)
    try:
        return await controller.run()
    finally:
        shutdown.remove_signal_handlers()


def main(argv: Optional[list[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if argv and argv[0] == "idea":
        return _cmd_idea(argv[1:])

    args = build_parser().parse_args(argv)

    if args.status or args.metrics_reset:
        paths = _workspace(args.project)
        if args.metrics_reset:
            MetricsRecorder(paths.metrics_file).reset()
            print("Metrics reset")
        if args.status:
            _cmd_status(paths)
        return 0

    try:
        config = load_config(args.project, _overrides(args))
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    paths = initialize_paths(config.project_dir)
    ensure_directories(paths)
    configure_logging(paths, config.verbose)
    configure_logfire()
    reporter = LoopReporter(paths, verbose=config.verbose)
    reporter.say(f"devloop v{__version__}")
    try:
        return asyncio.run(_run_loop(config, paths, reporter))
    except KeyboardInterrupt:
        return 130
    finally:
        reporter.close()


if __name__ == "__main__":
    raise SystemExit(main())
