"""
Work-item model: pure functions over collections of Tasks.

Nothing here touches the store or the generation capability. The phase
engine calls these on every invocation to re-derive the current Task set
from history, so the same history always yields the same result.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional, Sequence

from storyloop.errors import CatalogMismatchError
from storyloop.models import (
    STATUS_RANK,
    Catalog,
    Failure,
    RoleId,
    Task,
    TaskStatus,
    TaskSummary,
    TaskUpdate,
)
from storyloop.records import ExecutionRecord, ScrumOutput

# Corrective tasks sort after every generated task of their story.
STORY_FIX_ORDER_BASE = 999
EPIC_FIX_ORDER_BASE = 1000
INTEGRATION_FIX_ORDER_BASE = 2000


def story_key(epic_ordinal: int, story_ordinal: int) -> str:
    """Canonical grouping key for a story."""
    return f"{epic_ordinal}-{story_ordinal}"


def task_id(epic_ordinal: int, story_ordinal: int, n: int) -> str:
    return f"task-{epic_ordinal}-{story_ordinal}-{n}"


def story_fix_task_id(epic_ordinal: int, story_ordinal: int, k: int) -> str:
    return f"task-{epic_ordinal}-{story_ordinal}-fix-{k}"


def epic_fix_task_id(epic_ordinal: int, k: int) -> str:
    return f"task-epic-{epic_ordinal}-fix-{k}"


def integration_fix_task_id(k: int) -> str:
    return f"task-integration-fix-{k}"


def next_fix_index(tasks: Iterable[Task], prefix: str) -> int:
    """
    First unused k for ids of the form '<prefix>-fix-<k>'.

    Continuing the counter keeps corrective ids unique across repeated
    failures of the same story or epic.
    """
    pattern = re.compile(re.escape(prefix) + r"-fix-(\d+)$")
    highest = 0
    for task in tasks:
        match = pattern.match(task.id)
        if match:
            highest = max(highest, int(match.group(1)))
    return highest + 1


def tasks_for_story(tasks: Iterable[Task], epic_ordinal: int, story_ordinal: int) -> list[Task]:
    return [
        t for t in tasks
        if t.epic_ordinal == epic_ordinal and t.story_ordinal == story_ordinal
    ]


def is_story_complete(tasks: Sequence[Task]) -> bool:
    """True iff the set is non-empty and every Task is completed."""
    return bool(tasks) and all(t.status == TaskStatus.COMPLETED for t in tasks)


def is_epic_complete(tasks: Sequence[Task], catalog: Catalog, epic_ordinal: int) -> bool:
    """
    Every story of the epic is complete, and so is any epic-level
    corrective work (story ordinal 0) aimed at it.
    """
    stories = catalog.stories_in(epic_ordinal)
    if not stories:
        return False
    for story in stories:
        if not is_story_complete(tasks_for_story(tasks, epic_ordinal, story.ordinal)):
            return False
    epic_fixes = tasks_for_story(tasks, epic_ordinal, 0)
    return all(t.status == TaskStatus.COMPLETED for t in epic_fixes)


def first_incomplete_story(tasks: Sequence[Task], catalog: Catalog) -> Optional[tuple[int, int]]:
    """First (epic, story) pair in catalog order that is not yet complete."""
    for epic_ordinal, story_ordinal in catalog.coordinates():
        if not is_story_complete(tasks_for_story(tasks, epic_ordinal, story_ordinal)):
            return epic_ordinal, story_ordinal
    return None


def accumulate(task_sets: Iterable[Iterable[Task]]) -> list[Task]:
    """
    Merge task sets given oldest first, deduplicating by Task id.

    A later set's status replaces an earlier one, except that a Task seen
    as completed is never reported with a lesser status afterwards. Order
    is the order in which ids were first seen.
    """
    merged: dict[str, Task] = {}
    for task_set in task_sets:
        for task in task_set:
            existing = merged.get(task.id)
            if existing is None:
                merged[task.id] = task.copy()
            elif existing.status == TaskStatus.COMPLETED:
                continue
            else:
                merged[task.id] = task.copy()
    return list(merged.values())


def apply_updates(
    tasks: Sequence[Task],
    updates: Iterable[TaskUpdate],
    allow_reset: bool = False,
) -> list[Task]:
    """
    Overlay role-reported status transitions on a Task set.

    completed is terminal. failed only moves back to pending, and only when
    allow_reset is set (explicit resume records). Updates for unknown ids
    are ignored.
    """
    by_id = {t.id: t.copy() for t in tasks}
    for update in updates:
        task = by_id.get(update.task_id)
        if task is None or task.status == TaskStatus.COMPLETED:
            continue
        if task.status == TaskStatus.FAILED:
            if allow_reset and update.status == TaskStatus.PENDING:
                task.status = TaskStatus.PENDING
            continue
        task.status = update.status
    return [by_id[t.id] for t in tasks]


def project_tasks(history: Sequence[ExecutionRecord]) -> list[Task]:
    """
    Current Task set derived from history given in any order.

    Completed scrum records contribute their task sets; every closed
    record carrying task_updates overlays its transitions in sequence
    order.
    """
    tasks: list[Task] = []
    for record in sorted(history, key=lambda r: r.sequence):
        if record.is_running or record.output is None:
            continue
        if record.role_id == RoleId.SCRUM_MASTER:
            if record.is_completed and isinstance(record.output, ScrumOutput):
                tasks = accumulate([tasks, record.output.tasks])
            continue
        updates = getattr(record.output, "task_updates", None)
        if updates:
            tasks = apply_updates(
                tasks,
                updates,
                allow_reset=record.role_id == RoleId.PIPELINE_CONTROL,
            )
    return tasks


def reset_failed(tasks: Sequence[Task]) -> list[TaskUpdate]:
    """Updates that move exactly the failed Tasks back to pending."""
    return [
        TaskUpdate(task_id=t.id, status=TaskStatus.PENDING)
        for t in tasks
        if t.status == TaskStatus.FAILED
    ]


def next_actionable(tasks: Sequence[Task]) -> Optional[Task]:
    """First Task in list order that is neither completed nor failed."""
    for task in tasks:
        if task.is_actionable:
            return task
    return None


def outstanding_corrective(tasks: Sequence[Task]) -> list[Task]:
    return [t for t in tasks if t.is_corrective and t.is_actionable]


def summarize(tasks: Sequence[Task]) -> TaskSummary:
    return TaskSummary(
        total_tasks=len(tasks),
        completed_tasks=sum(1 for t in tasks if t.status == TaskStatus.COMPLETED),
        failed_tasks=sum(1 for t in tasks if t.status == TaskStatus.FAILED),
    )


def check_catalog(tasks: Iterable[Task], catalog: Catalog) -> None:
    """
    Fail loudly when a Task points at an epic or story the catalog lacks.

    Raises:
        CatalogMismatchError: On the first unresolvable Task.
    """
    for task in tasks:
        if task.epic_ordinal == 0:
            continue
        if catalog.epic(task.epic_ordinal) is None:
            raise CatalogMismatchError(
                f"Task {task.id} references epic {task.epic_ordinal}, "
                f"but the catalog has {catalog.epic_count} epics"
            )
        if task.story_ordinal and catalog.story(task.epic_ordinal, task.story_ordinal) is None:
            raise CatalogMismatchError(
                f"Task {task.id} references story "
                f"{story_key(task.epic_ordinal, task.story_ordinal)}, which is not in the catalog"
            )


_STATUS_MARK = {
    TaskStatus.PENDING: " ",
    TaskStatus.DEVELOPING: "~",
    TaskStatus.REVIEWING: "~",
    TaskStatus.TESTING: "~",
    TaskStatus.COMPLETED: "x",
    TaskStatus.FAILED: "!",
}


def render_markdown(
    title: str,
    tasks: Sequence[Task],
    failures: Sequence[Failure] = (),
) -> str:
    """Markdown checklist of tasks, followed by the failures they address."""
    lines = [f"# {title}", ""]
    if not tasks:
        lines.append("_No tasks._")
    for task in sorted(tasks, key=lambda t: (t.task_order, STATUS_RANK[t.status])):
        lines.append(
            f"- [{_STATUS_MARK[task.status]}] **{task.id}** {task.title} "
            f"({task.priority.value}, {task.status.value})"
        )
    if failures:
        lines.extend(["", "## Failures addressed", ""])
        for failure in failures:
            lines.append(
                f"- [{failure.severity.value}/{failure.category.value}] {failure.scenario}"
            )
    return "\n".join(lines) + "\n"
