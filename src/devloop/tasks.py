"""Plan document parsing and in-place task updates.

A plan is markdown. Tasks are recognised per line, first match wins:

* ``- [ ] task`` / ``- [x] task`` checkboxes
* ``1. task`` numbered items
* ``### Step 1: task`` / ``## Task 2. task`` headings
* ``- task`` / ``* task`` plain bullets

Non-checkbox formats are completed by inserting a ``[DONE]`` marker in front
of the description. A plan with no structured tasks becomes a single
``[FULL PLAN]`` task, completed by prepending a ``[COMPLETED]`` line.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

FALLBACK_PREFIX = "[FULL PLAN]"
COMPLETED_MARKER = "[COMPLETED]"
DONE_MARKER = "[DONE]"
SKIPPED_MARKER = "[SKIPPED]"
SUMMARY_LIMIT = 100

_CHECKBOX_OPEN = re.compile(r"^- \[ \] (.+)$")
_CHECKBOX_DONE = re.compile(r"^- \[[xX]\] (.+)$")
_CHECKBOX_ANY = re.compile(r"^- \[[ xX]\]")
_NUMBERED = re.compile(r"^\d+\.\s+(.+)$")
_STEP_HEADER = re.compile(r"^#{1,4}\s*(?:Step|Task)\s*\d*[:.]\s*(.+)$", re.IGNORECASE)
_BULLET = re.compile(r"^[-*]\s+(.+)$")
_DONE_PREFIX = re.compile(r"^\[DONE\]\s*")

_EDIT_CHECKBOX = re.compile(r"^(\s*)- \[ \]")
_EDIT_NUMBERED = re.compile(r"^(\s*\d+\.\s+)")
_EDIT_STEP_HEADER = re.compile(r"^(\s*#{1,4}\s*(?:Step|Task)\s*\d*[:.]\s*)", re.IGNORECASE)
_EDIT_BULLET = re.compile(r"^(\s*[-*]\s+)")

_FENCED_PLAN = re.compile(r"```(?:markdown)?\n?([\s\S]*?)```")


@dataclass(frozen=True)
class Task:
    line_number: int
    description: str
    completed: bool

    @property
    def is_fallback(self) -> bool:
        return self.description.startswith(FALLBACK_PREFIX)


@dataclass(frozen=True)
class PlanValidation:
    valid: bool
    error: Optional[str] = None


def _split_done(description: str) -> tuple[str, bool]:
    description = description.strip()
    if _DONE_PREFIX.match(description):
        return _DONE_PREFIX.sub("", description, count=1), True
    return description, False


def _parse_line(line: str) -> Optional[tuple[str, bool]]:
    match = _CHECKBOX_DONE.match(line)
    if match:
        return match.group(1).strip(), True
    match = _CHECKBOX_OPEN.match(line)
    if match:
        return match.group(1).strip(), False
    match = _NUMBERED.match(line)
    if match:
        return _split_done(match.group(1))
    match = _STEP_HEADER.match(line)
    if match:
        return _split_done(match.group(1))
    if _CHECKBOX_ANY.match(line) or line.startswith("#"):
        return None
    match = _BULLET.match(line)
    if match:
        return _split_done(match.group(1))
    return None


def _fallback_summary(lines: list[str]) -> str:
    for raw in lines:
        candidate = raw.strip()
        if candidate and not candidate.startswith("#") and len(candidate) > 10:
            summary = candidate[:SUMMARY_LIMIT]
            return f"{summary}..." if len(summary) >= SUMMARY_LIMIT else summary
    return "Execute plan"


def parse_tasks(plan_text: str) -> list[Task]:
    lines = plan_text.split("\n")
    plan_completed = plan_text.lstrip().startswith(COMPLETED_MARKER)
    tasks: list[Task] = []

    for index, raw in enumerate(lines):
        line = raw.strip()
        if not line or line == COMPLETED_MARKER:
            continue
        parsed = _parse_line(line)
        if parsed is None:
            continue
        description, completed = parsed
        tasks.append(Task(line_number=index + 1, description=description, completed=completed))

    if tasks or not plan_text.strip():
        return tasks
    if plan_completed:
        return [Task(line_number=1, description=f"{FALLBACK_PREFIX} Completed", completed=True)]
    return [
        Task(
            line_number=1,
            description=f"{FALLBACK_PREFIX} {_fallback_summary(lines)}",
            completed=False,
        )
    ]


def uncompleted_tasks(plan_text: str) -> list[Task]:
    return [task for task in parse_tasks(plan_text) if not task.completed]


def next_task(plan_text: str) -> Optional[Task]:
    remaining = uncompleted_tasks(plan_text)
    return remaining[0] if remaining else None


def _is_fallback_target(plan_text: str, line_number: int) -> bool:
    if line_number != 1:
        return False
    tasks = parse_tasks(plan_text)
    return len(tasks) == 1 and tasks[0].is_fallback and not tasks[0].completed


def _annotate_line(line: str, annotation: str) -> str:
    stripped = line.strip()
    prefix = f"{annotation} " if annotation else ""

    if _EDIT_CHECKBOX.match(line):
        return _EDIT_CHECKBOX.sub(lambda m: f"{m.group(1)}- [x]", line, count=1).replace(
            "- [x] ", f"- [x] {prefix}", 1
        )

    numbered = _NUMBERED.match(stripped)
    if numbered:
        if _DONE_PREFIX.match(numbered.group(1)):
            return line
        return _EDIT_NUMBERED.sub(lambda m: f"{m.group(1)}{DONE_MARKER} {prefix}", line, count=1)

    header = _STEP_HEADER.match(stripped)
    if header:
        if _DONE_PREFIX.match(header.group(1)):
            return line
        return _EDIT_STEP_HEADER.sub(lambda m: f"{m.group(1)}{DONE_MARKER} {prefix}", line, count=1)

    if _CHECKBOX_ANY.match(stripped) or stripped.startswith("#"):
        return line
    bullet = _BULLET.match(stripped)
    if bullet and not _DONE_PREFIX.match(bullet.group(1)):
        return _EDIT_BULLET.sub(lambda m: f"{m.group(1)}{DONE_MARKER} {prefix}", line, count=1)
    return line


def _mark(plan_text: str, line_number: int, annotation: str) -> str:
    if _is_fallback_target(plan_text, line_number):
        return f"{COMPLETED_MARKER}\n{plan_text}"
    lines = plan_text.split("\n")
    index = line_number - 1
    if 0 <= index < len(lines) and lines[index]:
        lines[index] = _annotate_line(lines[index], annotation)
    return "\n".join(lines)


def mark_task_complete(plan_text: str, line_number: int) -> str:
    """Return ``plan_text`` with the task on ``line_number`` completed.

    Lines that are already complete, or are not tasks, are left untouched.
    """
    return _mark(plan_text, line_number, "")


def mark_task_skipped(plan_text: str, line_number: int) -> str:
    """Complete the task on ``line_number`` and tag it ``[SKIPPED]``."""
    return _mark(plan_text, line_number, SKIPPED_MARKER)


def validate_plan(plan_text: str) -> PlanValidation:
    if not plan_text.strip():
        return PlanValidation(valid=False, error="Plan is empty")
    tasks = parse_tasks(plan_text)
    if not tasks:
        return PlanValidation(valid=False, error="Plan is empty")
    if all(task.completed for task in tasks):
        return PlanValidation(valid=False, error="All tasks are already completed")
    return PlanValidation(valid=True)


def extract_plan_from_response(response: str) -> str:
    match = _FENCED_PLAN.search(response)
    if match and match.group(1):
        return match.group(1).strip()
    return response.strip()
