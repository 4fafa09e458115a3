"""Idea queue: user supplied markdown documents describing prioritised work.

Ideas are ``*.md`` files dropped into ``.devloop/ideas/``. A consumed idea is
moved into ``ideas/history/`` only after the plan built from it has been
written to disk.
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .workspace import timestamp_for_filename, write_text_atomic

logger = logging.getLogger(__name__)

MAX_IDEA_LENGTH = 8192
SUMMARY_LIMIT = 100
IDEA_SUFFIX = ".md"

_SELECTED_IDEA = re.compile(r"SELECTED_IDEA:\s*(\d+)", re.IGNORECASE)
_HEADER_PREFIX = re.compile(r"^#+\s*")
_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class Idea:
    path: Path
    filename: str
    content: str


class IdeaQueue:
    def __init__(self, ideas_dir: Path, history_dir: Optional[Path] = None) -> None:
        self.ideas_dir = ideas_dir
        self.history_dir = history_dir or ideas_dir / "history"

    def _idea_files(self) -> list[Path]:
        if not self.ideas_dir.is_dir():
            return []
        return sorted(
            (entry for entry in self.ideas_dir.iterdir() if entry.is_file() and entry.suffix == IDEA_SUFFIX),
            key=lambda entry: entry.name,
        )

    def list(self) -> list[Idea]:
        ideas: list[Idea] = []
        for path in self._idea_files():
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.debug("Skipping unreadable idea %s: %s", path.name, exc)
                continue
            if not content.strip():
                continue
            if len(content) > MAX_IDEA_LENGTH:
                content = content[:MAX_IDEA_LENGTH]
            ideas.append(Idea(path=path, filename=path.name, content=content))
        return ideas

    def count(self) -> int:
        return len(self._idea_files())

    def load(self, path: Path) -> Optional[Idea]:
        """Reload a pinned idea, or ``None`` if it is gone or empty."""
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None
        if not content.strip():
            return None
        return Idea(path=path, filename=path.name, content=content[:MAX_IDEA_LENGTH])

    def archive(self, idea_path: Path) -> bool:
        """Move a consumed idea into history, deleting it if the move fails."""
        if not idea_path.exists():
            return False
        target = self.history_dir / f"{timestamp_for_filename()}_{idea_path.name}"
        try:
            self.history_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(idea_path), str(target))
            return True
        except OSError as exc:
            logger.warning("Could not archive idea %s (%s), removing it instead", idea_path.name, exc)
        try:
            idea_path.unlink()
            return True
        except OSError as exc:
            logger.warning("Could not remove idea %s: %s", idea_path.name, exc)
            return False

    def cleanup_empty(self) -> int:
        removed = 0
        for path in self._idea_files():
            try:
                empty = not path.read_text(encoding="utf-8").strip()
            except (OSError, UnicodeDecodeError) as exc:
                logger.debug("Unreadable idea %s: %s", path.name, exc)
                empty = True
            if not empty:
                continue
            try:
                path.unlink()
                removed += 1
            except OSError as exc:
                logger.debug("Failed to remove %s: %s", path.name, exc)
        return removed

    def add(self, text: str, name: Optional[str] = None) -> Path:
        content = text.strip()
        if not content:
            raise ValueError("Idea text is empty")
        slug = _SLUG_CHARS.sub("-", (name or idea_summary(content)).lower()).strip("-")[:40] or "idea"
        self.ideas_dir.mkdir(parents=True, exist_ok=True)
        path = self.ideas_dir / f"{timestamp_for_filename()}_{slug}{IDEA_SUFFIX}"
        suffix = 1
        while path.exists():
            suffix += 1
            path = self.ideas_dir / f"{timestamp_for_filename()}_{slug}_{suffix}{IDEA_SUFFIX}"
        write_text_atomic(path, content + "\n")
        return path


def idea_summary(content: str) -> str:
    trimmed = content.strip()
    for line in trimmed.split("\n"):
        clean = _HEADER_PREFIX.sub("", line).strip()
        if clean:
            return f"{clean[:SUMMARY_LIMIT]}..." if len(clean) > SUMMARY_LIMIT else clean
    return f"{trimmed[:SUMMARY_LIMIT]}..." if len(trimmed) > SUMMARY_LIMIT else trimmed


def format_ideas_for_selection(ideas: list[Idea]) -> str:
    sections = []
    for number, idea in enumerate(ideas, start=1):
        sections.append(
            f"## Idea {number}: {idea.filename}\n\n"
            f"Summary: {idea_summary(idea.content)}\n\n"
            f"Full content:\n```\n{idea.content}\n```\n"
        )
    return "\n".join(sections)


def parse_idea_selection(response: str) -> Optional[int]:
    """Return the 0-based index named by ``SELECTED_IDEA: <n>``."""
    match = _SELECTED_IDEA.search(response)
    if not match:
        return None
    selected = int(match.group(1))
    return selected - 1 if selected > 0 else None
