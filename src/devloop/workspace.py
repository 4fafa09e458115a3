"""Workspace layout and small filesystem helpers."""

from __future__ import annotations

import logging
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import CONFIG_FILENAME, WORKSPACE_DIRNAME

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkspacePaths:
    root: Path
    state_file: Path
    metrics_file: Path
    current_plan: Path
    main_log: Path
    cycle_log_dir: Path
    alerts_file: Path
    history_dir: Path
    ideas_dir: Path
    ideas_history_dir: Path
    config_file: Path

    def cycle_log(self, cycle: int) -> Path:
        return self.cycle_log_dir / f"cycle_{cycle:03d}.log"


def initialize_paths(project_dir: Path | str) -> WorkspacePaths:
    root = Path(project_dir).resolve() / WORKSPACE_DIRNAME
    ideas_dir = root / "ideas"
    return WorkspacePaths(
        root=root,
        state_file=root / "state.json",
        metrics_file=root / "metrics.json",
        current_plan=root / "current_plan.md",
        main_log=root / "logs" / "main.log",
        cycle_log_dir=root / "logs" / "cycles",
        alerts_file=root / "alerts.log",
        history_dir=root / "history",
        ideas_dir=ideas_dir,
        ideas_history_dir=ideas_dir / "history",
        config_file=root / CONFIG_FILENAME,
    )


def ensure_directories(paths: WorkspacePaths) -> None:
    for directory in (
        paths.root,
        paths.main_log.parent,
        paths.cycle_log_dir,
        paths.history_dir,
        paths.ideas_dir,
        paths.ideas_history_dir,
    ):
        directory.mkdir(parents=True, exist_ok=True)


def read_text_or_none(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Failed to read %s: %s", path, exc)
        return None


def write_text_atomic(path: Path, content: str, *, fsync: bool = True) -> None:
    """Write ``content`` to ``path`` via a temp file in the same directory.

    Readers either see the previous file or the complete new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            if fsync:
                os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def append_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(content)


def iso_timestamp(when: Optional[datetime] = None) -> str:
    return (when or datetime.now(timezone.utc)).isoformat()


def parse_iso_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamp_for_filename(when: Optional[datetime] = None) -> str:
    return (when or datetime.now()).strftime("%Y%m%d_%H%M%S")


def cleanup_old_files(directory: Path, max_age_days: int) -> int:
    """Delete regular files in ``directory`` older than ``max_age_days``."""
    if not directory.is_dir():
        return 0
    cutoff = time.time() - max_age_days * 24 * 60 * 60
    deleted = 0
    for entry in directory.iterdir():
        try:
            if entry.is_file() and entry.stat().st_mtime < cutoff:
                entry.unlink()
                deleted += 1
        except OSError as exc:
            logger.debug("Could not remove %s: %s", entry, exc)
    return deleted
