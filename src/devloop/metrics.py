"""Cumulative run metrics, persisted to ``metrics.json``."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .workspace import iso_timestamp, write_text_atomic

logger = logging.getLogger(__name__)


class Metrics(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cycles_completed: int = Field(default=0, ge=0, alias="cyclesCompleted")
    cycles_timed_out: int = Field(default=0, ge=0, alias="cyclesTimedOut")
    tasks_completed: int = Field(default=0, ge=0, alias="tasksCompleted")
    tasks_failed: int = Field(default=0, ge=0, alias="tasksFailed")
    tasks_skipped: int = Field(default=0, ge=0, alias="tasksSkipped")
    total_retries: int = Field(default=0, ge=0, alias="totalRetries")
    ideas_processed: int = Field(default=0, ge=0, alias="ideasProcessed")
    total_cycle_duration_ms: int = Field(default=0, ge=0, alias="totalCycleDurationMs")
    first_run_time: Optional[str] = Field(default=None, alias="firstRunTime")
    last_activity_time: Optional[str] = Field(default=None, alias="lastActivityTime")

    @property
    def average_cycle_duration_ms(self) -> int:
        if self.cycles_completed == 0:
            return 0
        return int(self.total_cycle_duration_ms / self.cycles_completed + 0.5)

    @property
    def task_success_rate(self) -> int:
        """Percentage of finished tasks that succeeded; 100 when nothing ran."""
        total = self.tasks_completed + self.tasks_failed + self.tasks_skipped
        if total == 0:
            return 100
        return int(self.tasks_completed / total * 100 + 0.5)


def load_metrics(path: Path) -> Metrics:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return Metrics(last_activity_time=iso_timestamp())
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to load metrics from %s, starting fresh: %s", path, exc)
        return Metrics(last_activity_time=iso_timestamp())
    if not isinstance(raw, dict):
        return Metrics(last_activity_time=iso_timestamp())

    accepted: dict = {}
    for name, field in Metrics.model_fields.items():
        key = field.alias or name
        if key not in raw:
            continue
        try:
            Metrics.model_validate({key: raw[key]})
        except ValidationError:
            logger.warning("Ignoring invalid metrics field %s=%r", key, raw[key])
            continue
        accepted[key] = raw[key]
    metrics = Metrics.model_validate(accepted)
    if metrics.last_activity_time is None:
        metrics.last_activity_time = iso_timestamp()
    return metrics


def save_metrics(path: Path, metrics: Metrics) -> None:
    now = iso_timestamp()
    metrics.last_activity_time = now
    if not metrics.first_run_time:
        metrics.first_run_time = now
    write_text_atomic(path, json.dumps(metrics.model_dump(mode="json", by_alias=True), indent=2))


def format_duration(ms: float) -> str:
    seconds = int(ms // 1000)
    minutes = seconds // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def format_metrics_summary(metrics: Metrics) -> str:
    average = metrics.average_cycle_duration_ms
    lines = [
        f"Cycles: {metrics.cycles_completed} completed, {metrics.cycles_timed_out} timed out",
        (
            f"Tasks: {metrics.tasks_completed} completed, {metrics.tasks_failed} failed, "
            f"{metrics.tasks_skipped} skipped ({metrics.task_success_rate}% success)"
        ),
        f"Retries: {metrics.total_retries} total",
        f"Ideas: {metrics.ideas_processed} processed",
        f"Avg cycle duration: {format_duration(average) if average > 0 else 'N/A'}",
    ]
    if metrics.first_run_time:
        lines.append(f"First run: {metrics.first_run_time}")
    return "\n".join(lines)


class MetricsRecorder:
    """Owns the in-memory ``Metrics`` and rewrites the file after each event."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.metrics = load_metrics(path)

    def _save(self) -> None:
        try:
            save_metrics(self.path, self.metrics)
        except OSError as exc:
            logger.warning("Failed to save metrics to %s: %s", self.path, exc)

    def record_cycle_completed(self, duration_ms: int) -> None:
        self.metrics.cycles_completed += 1
        self.metrics.total_cycle_duration_ms += max(0, int(duration_ms))
        self._save()

    def record_cycle_timeout(self) -> None:
        self.metrics.cycles_timed_out += 1
        self._save()

    def record_task_completed(self) -> None:
        self.metrics.tasks_completed += 1
        self._save()

    def record_task_failed(self) -> None:
        self.metrics.tasks_failed += 1
        self._save()

    def record_task_skipped(self, count: int = 1) -> None:
        if count <= 0:
            return
        self.metrics.tasks_skipped += count
        self._save()

    def record_retry(self) -> None:
        self.metrics.total_retries += 1
        self._save()

    def record_idea_processed(self) -> None:
        self.metrics.ideas_processed += 1
        self._save()

    def reset(self) -> None:
        now = iso_timestamp()
        self.metrics = Metrics(first_run_time=now, last_activity_time=now)
        self._save()

    def summary(self) -> str:
        return format_metrics_summary(self.metrics)
