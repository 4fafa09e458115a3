"""Persisted loop state.

``state.json`` is the single source of truth for where the loop is. It is
rewritten after every loop iteration, including failed ones, so the process
can be killed at any point and resumed.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .workspace import write_text_atomic

logger = logging.getLogger(__name__)


class Phase(StrEnum):
    INIT = "init"
    PLAN = "plan"
    BUILD = "build"
    EVAL = "eval"


class LoopState(BaseModel):
    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    cycle: int = Field(default=1, ge=1)
    phase: Phase = Phase.INIT
    task_index: int = Field(default=0, ge=0, alias="taskIndex")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    retry_count: int = Field(default=0, ge=0, alias="retryCount")
    last_error_time: Optional[datetime] = Field(default=None, alias="lastErrorTime")
    cycle_start_time: Optional[datetime] = Field(default=None, alias="cycleStartTime")
    current_idea_path: Optional[str] = Field(default=None, alias="currentIdeaPath")
    current_idea_filename: Optional[str] = Field(default=None, alias="currentIdeaFilename")
    last_update: Optional[datetime] = Field(default=None, alias="lastUpdate")

    @property
    def has_idea(self) -> bool:
        return bool(self.current_idea_path)

    def pin_idea(self, path: Path | str, filename: str) -> None:
        self.current_idea_path = str(path)
        self.current_idea_filename = filename

    def clear_idea(self) -> None:
        self.current_idea_path = None
        self.current_idea_filename = None

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True), indent=2)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validated_fields(raw: dict[str, Any], source: Path) -> dict[str, Any]:
    accepted: dict[str, Any] = {}
    for name, field in LoopState.model_fields.items():
        key = field.alias or name
        if key not in raw:
            continue
        candidate = {**accepted, key: raw[key]}
        try:
            LoopState.model_validate(candidate)
        except ValidationError:
            logger.warning(
                "Invalid %s in %s (got %r). Using default %r.",
                key,
                source,
                raw[key],
                field.default,
            )
            continue
        accepted = candidate
    return accepted


def load_state(path: Path) -> LoopState:
    """Load state, falling back to defaults field by field."""
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return LoopState()
    except OSError as exc:
        logger.warning("Failed to read %s, using default state: %s", path, exc)
        return LoopState()

    if not content.strip():
        return LoopState()
    try:
        raw = json.loads(content)
    except json.JSONDecodeError as exc:
        logger.warning("Failed to parse %s (file may be corrupted), using default state: %s", path, exc)
        return LoopState()
    if not isinstance(raw, dict):
        logger.warning("Ignoring %s: expected a JSON object", path)
        return LoopState()

    return LoopState.model_validate(_validated_fields(raw, path))


def save_state(path: Path, state: LoopState) -> None:
    state.last_update = _utcnow()
    write_text_atomic(path, state.to_json())


def start_new_cycle(state: LoopState) -> None:
    """Advance to the next cycle and reset every per-cycle field."""
    state.cycle += 1
    state.phase = Phase.PLAN
    state.task_index = 0
    state.session_id = None
    state.clear_idea()
    state.retry_count = 0
    state.last_error_time = None
    state.cycle_start_time = None


def reset_retries(state: LoopState) -> None:
    state.retry_count = 0
    state.last_error_time = None


def record_failure(state: LoopState) -> int:
    state.retry_count += 1
    state.last_error_time = _utcnow()
    return state.retry_count


def cycle_elapsed_seconds(state: LoopState, now: Optional[datetime] = None) -> Optional[float]:
    if state.cycle_start_time is None:
        return None
    started = state.cycle_start_time
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return ((now or _utcnow()) - started).total_seconds()
