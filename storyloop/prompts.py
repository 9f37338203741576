"""
Prompt builders for every generation call.

Each builder states the exact JSON shape it expects back; parsing.py holds
the matching parsers.
"""

from __future__ import annotations

import json
from typing import Any, Optional, Sequence

from storyloop.models import Epic, Failure, Story, Task
from storyloop.records import GeneratedFile

TASK_LIST_SHAPE = """Respond with a ```json fenced array only:
[
  {"title": "...", "description": "...", "priority": "high|medium|low"}
]"""

FAILURE_SHAPE = """{"severity": "high|medium|low",
   "category": "ui|api|database|integration|edge-case",
   "scenario": "...", "expectedBehavior": "...", "actualBehavior": "...",
   "steps": ["..."], "evidence": "..."}"""


def _requirements_text(requirements: dict[str, Any]) -> str:
    content = requirements.get("content")
    if isinstance(content, str) and content:
        return content
    return json.dumps(requirements, indent=2)


def _files_block(files: Sequence[GeneratedFile], limit: int = 40_000) -> str:
    parts = []
    used = 0
    for generated in files:
        chunk = f"### {generated.path}\n```\n{generated.content}\n```\n"
        if used + len(chunk) > limit:
            parts.append(f"### {generated.path}\n(omitted, context limit reached)\n")
            continue
        parts.append(chunk)
        used += len(chunk)
    return "\n".join(parts) if parts else "(no files)"


def requirements_prompt(title: str, document: str, option_count: int = 2) -> str:
    return f"""# Requirements analysis

Project: {title}

Turn the source document below into {option_count} alternative product
requirements documents that differ in scope (minimal first).

## Source document
{document}

Respond with a ```json fenced object only:
{{"options": [{{"title": "...", "content": "markdown PRD"}}]}}
"""


def decomposition_prompt(requirements: dict[str, Any]) -> str:
    return f"""# Epic and story decomposition

Split the requirements into ordered epics, each with ordered user stories.
Earlier epics must not depend on later ones.

## Requirements
{_requirements_text(requirements)}

Respond with a ```json fenced object only:
{{"epics": [{{"id": "epic-1", "title": "...", "description": "..."}}],
  "stories": [{{"id": "story-1", "epic_id": "epic-1", "title": "...",
               "body": "As a ... I want ... so that ...", "story_points": 3}}]}}
"""


def task_generation_prompt(
    requirements: dict[str, Any],
    epic: Epic,
    story: Story,
) -> str:
    return f"""# Task list for one story

Break the story into small implementation tasks (a few minutes each),
ordered so that each task builds on the previous ones. Size the list to the
story ({story.story_points} points).

## Epic {epic.ordinal}: {epic.title}
{epic.description}

## Story {epic.ordinal}.{story.ordinal}: {story.title}
{story.body}

## Requirements
{_requirements_text(requirements)}

{TASK_LIST_SHAPE}
"""


def corrective_tasks_prompt(
    requirements: dict[str, Any],
    scope: str,
    failures: Sequence[Failure],
    tasks: Sequence[Task],
    summary: str = "",
) -> str:
    failure_lines = "\n".join(
        f"- [{f.severity.value}/{f.category.value}] {f.scenario}\n"
        f"  expected: {f.expected_behavior}\n  actual: {f.actual_behavior}"
        for f in failures
    ) or "(no structured failures)"
    task_lines = "\n".join(f"- {t.id}: {t.title} ({t.status.value})" for t in tasks)
    return f"""# Corrective tasks ({scope})

The {scope} check rejected the work below. Write one focused task per
distinct defect. Do not repeat work that is already completed.

## Failures
{failure_lines}

## Reviewer/tester summary
{summary or "(none)"}

## Existing tasks
{task_lines or "(none)"}

## Requirements
{_requirements_text(requirements)}

{TASK_LIST_SHAPE}
"""


def developer_prompt(
    requirements: dict[str, Any],
    task: Task,
    story: Optional[Story],
    existing_paths: Sequence[str],
) -> str:
    story_text = f"{story.title}\n{story.body}" if story else "(corrective task outside a story)"
    paths = "\n".join(f"- {p}" for p in existing_paths) or "(empty workspace)"
    return f"""# Implement task {task.id}

## Task
{task.title}

{task.description}

## Story
{story_text}

## Files already in the workspace
{paths}

## Requirements
{_requirements_text(requirements)}

Return complete file contents for every file you create or change.
Respond with a ```json fenced object only:
{{"files": [{{"path": "relative/path.ext", "content": "..."}}], "notes": "..."}}
"""


def review_prompt(task: Task, files: Sequence[GeneratedFile]) -> str:
    return f"""# Code review for {task.id}

Review the implementation of this task for correctness, security and
completeness. Score it from 0 to 100.

## Task
{task.title}

{task.description}

## Files
{_files_block(files)}

Respond with a ```json fenced object only:
{{"score": 0, "summary": "...", "failures": [{FAILURE_SHAPE}]}}
"""


def test_prompt(scope: str, subject: str, files: Sequence[GeneratedFile]) -> str:
    return f"""# {scope.capitalize()} test

Exercise the following {subject} across UI, API and database behavior.
List every scenario you checked: passing ones as successes, the rest as
failures.

## Files
{_files_block(files)}

Respond with a ```json fenced object only:
{{"successes": ["scenario that passed"], "failures": [{FAILURE_SHAPE}]}}
"""


def escalation_prompt(role_id: str, error: dict[str, Any], context: dict[str, Any]) -> str:
    return f"""# Pipeline failure triage

The '{role_id}' step failed.

## Error
{json.dumps(error, indent=2, default=str)}

## Context
{json.dumps(context, indent=2, default=str)[:8000]}

Diagnose the most likely cause and list concrete next actions for a human.
Respond with a ```json fenced object only:
{{"diagnosis": "...", "suggested_actions": ["..."]}}
"""
