"""Prompt templates sent to the agent backend."""

from __future__ import annotations

from typing import Optional

_PLAN_FORMAT = """\
```markdown
# Plan: [Descriptive Title]
Created: [ISO timestamp]
Cycle: {cycle}{source_line}

## Context
[Brief description of the current focus - 2-3 sentences]

## Tasks
- [ ] Task 1: Specific, actionable description
- [ ] Task 2: Specific, actionable description
- [ ] Task 3: Specific, actionable description
...
- [ ] Run project linting and tests to ensure everything passes

## Notes
[Any additional context, dependencies, or considerations]
```"""


def _plan_format(cycle: int, source: Optional[str] = None) -> str:
    source_line = f"\nSource: {source}" if source else ""
    return _PLAN_FORMAT.format(cycle=cycle, source_line=source_line)


def plan_prompt(cycle: int, hint: Optional[str] = None) -> str:
    hint_section = f"\n\nUser hint for this cycle: {hint}" if hint else ""
    return f"""You are an autonomous development agent working on a software project. This is cycle {cycle} of continuous development.

Your task is to analyze the current state of the project and create a development plan.{hint_section}

## Instructions

1. Explore the project structure to understand what exists
2. Review existing code, documentation and configuration
3. Identify the most impactful improvements or features to work on
4. Create a focused plan with specific, actionable tasks

## Plan Format

{_plan_format(cycle)}

## Guidelines

- Keep tasks specific and completable in one focused session
- Include 3-7 tasks per plan
- Always include a final task to run linting/tests
- Tasks must be completable without user interaction

Now analyze the project and create your plan."""


def task_prompt(task: str, cycle: int, task_num: int, total_tasks: int) -> str:
    return f"""You are an autonomous development agent. This is cycle {cycle}, task {task_num} of {total_tasks}.

## Current Task
{task}

## Instructions

1. Complete this task fully and autonomously
2. Make all necessary code changes
3. If the task involves running commands (tests, linting), run them and fix any issues
4. Do not stop until the task is complete or you hit an unresolvable blocker

## Guidelines

- Make focused, minimal changes
- Follow the existing code style and conventions
- Fix any linting errors or test failures before finishing

Begin working on the task now."""


def eval_prompt(cycle: int, plan_text: str) -> str:
    return f"""You are evaluating cycle {cycle} of an autonomous development session.

## Current Plan
```markdown
{plan_text}
```

## Instructions

Review the work done in this cycle and decide whether the plan has been completed successfully.

Check that every task is marked complete, the changes are correct, tests pass and the codebase is in a good state.

## Response Format

Respond with exactly one of these formats:

If the cycle is complete:
```
COMPLETE
Reason: [Brief explanation of what was accomplished]
```

If more work is needed:
```
NEEDS_WORK
Reason: [What still needs to be done]
```

Evaluate the cycle now."""


def idea_selection_prompt(ideas_formatted: str) -> str:
    return f"""You are an autonomous development agent selecting the next idea to work on.

## Available Ideas

{ideas_formatted}

## Selection Criteria

Choose the idea that best matches these criteria, in priority order:
1. Quick wins first: prefer tasks that can be completed quickly
2. Dependencies: if one idea is a prerequisite for others, select it first
3. Priority: bug fixes > small features > documentation > refactoring > large features

## Response Format

Respond with exactly this format:

```
SELECTED_IDEA: <number>
REASON: <one sentence explaining the choice>
```

Select the best idea now."""


def idea_plan_prompt(idea_content: str, idea_filename: str, cycle: int) -> str:
    return f"""You are an autonomous development agent working on a software project. This is cycle {cycle} of continuous development.

## Idea to Implement

**Source**: {idea_filename}

{idea_content}

## Instructions

1. Analyze the idea and understand what needs to be done
2. Explore the relevant parts of the codebase
3. Create a focused plan to implement this idea

## Plan Format

{_plan_format(cycle, idea_filename)}

## Guidelines

- Break the idea down into specific, actionable tasks
- Include 3-7 tasks per plan
- Always include a final task to run linting/tests
- Tasks must be completable without user interaction

Now analyze the project and create your plan to implement this idea."""
