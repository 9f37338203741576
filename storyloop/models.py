"""
Core data models for Storyloop.

This module defines the work-item entities the engine reasons about:
- Enums for task status, priority, roles, phases and test scopes
- Epic / Story / Catalog as produced by decomposition
- Task and Failure as produced by generation
- JSON serialization support for all models

Validation happens in __post_init__ so malformed persisted data is rejected
at the boundary rather than deeper in the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class SchemaValidationError(Exception):
    """Raised when data doesn't conform to schema."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"Schema validation failed for '{field}': {message}")


class TaskStatus(str, Enum):
    """
    Lifecycle of a Task.

    pending -> developing -> reviewing -> testing -> completed, or any
    non-terminal stage -> failed on rejection. failed only returns to
    pending through an explicit resume.
    """
    PENDING = "pending"
    DEVELOPING = "developing"
    REVIEWING = "reviewing"
    TESTING = "testing"
    COMPLETED = "completed"
    FAILED = "failed"


# Ordering used when merging: completion is never downgraded.
STATUS_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.DEVELOPING: 1,
    TaskStatus.REVIEWING: 2,
    TaskStatus.TESTING: 3,
    TaskStatus.FAILED: 4,
    TaskStatus.COMPLETED: 5,
}


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class OwningRole(str, Enum):
    DEVELOPER = "developer"
    REVIEWER = "reviewer"
    TESTER = "tester"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class FailureCategory(str, Enum):
    UI = "ui"
    API = "api"
    DATABASE = "database"
    INTEGRATION = "integration"
    EDGE_CASE = "edge-case"


class RecordStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RoleId(str, Enum):
    """
    Roles the orchestrator can invoke.

    PIPELINE_CONTROL is not a work agent: its records carry explicit,
    auditable operator actions such as resume.
    """
    REQUIREMENT_ANALYZER = "requirement-analyzer"
    EPIC_STORY = "epic-story"
    SCRUM_MASTER = "scrum-master"
    DEVELOPER = "developer"
    FILE_GENERATOR = "file-generator"
    CODE_REVIEWER = "code-reviewer"
    TESTER = "tester"
    MANIFEST_BUILDER = "manifest-builder"
    PACKAGER = "packager"
    PUBLISHER = "publisher"
    DEPLOYER = "deployer"
    VERIFIER = "verifier"
    ISSUE_RESOLVER = "issue-resolver"
    PIPELINE_CONTROL = "pipeline-control"


# Roles whose records drive the development loop and phase engine.
DEVELOPMENT_ROLES = (
    RoleId.SCRUM_MASTER,
    RoleId.DEVELOPER,
    RoleId.FILE_GENERATOR,
    RoleId.CODE_REVIEWER,
    RoleId.TESTER,
    RoleId.PIPELINE_CONTROL,
)


class Phase(str, Enum):
    """Macro-state of the development loop."""
    TASK_CREATION = "task-creation"
    REVIEW_ANALYSIS = "review-analysis"
    TEST_ANALYSIS = "test-analysis"
    EPIC_TESTING = "epic-testing"
    INTEGRATION_TESTING = "integration-testing"
    COMPLETED = "completed"


class TestScope(str, Enum):
    __test__ = False  # keep pytest from collecting this enum

    STORY = "story"
    EPIC = "epic"
    INTEGRATION = "integration"


class TestResult(str, Enum):
    __test__ = False

    PASS = "pass"
    FAIL = "fail"


def _enum_value(enum_cls: type[Enum], name: str, value: Any) -> Any:
    """Coerce a raw value into an enum member or raise SchemaValidationError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(str(m.value) for m in enum_cls)
        raise SchemaValidationError(name, f"must be one of: {allowed}", value)


@dataclass
class Epic:
    """Top-level scope unit. Immutable after decomposition."""
    id: str
    title: str
    description: str = ""
    ordinal: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "ordinal": self.ordinal,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Epic:
        return cls(
            id=str(data.get("id", "")),
            title=data.get("title", ""),
            description=data.get("description", ""),
            ordinal=data.get("ordinal", 0),
        )


@dataclass
class Story:
    """A user-facing increment inside one Epic."""
    id: str
    epic_id: str
    title: str
    body: str = ""
    story_points: int = 0
    ordinal: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "epic_id": self.epic_id,
            "title": self.title,
            "body": self.body,
            "story_points": self.story_points,
            "ordinal": self.ordinal,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Story:
        return cls(
            id=str(data.get("id", "")),
            epic_id=str(data.get("epic_id", "")),
            title=data.get("title", ""),
            body=data.get("body", ""),
            story_points=data.get("story_points", 0),
            ordinal=data.get("ordinal", 0),
        )


@dataclass
class Catalog:
    """
    The Epic/Story catalog produced by decomposition.

    Ordinals are 1-based: epics by list position, stories by position
    within their epic. They are (re)assigned on construction so that the
    same decomposition output always yields the same coordinates.
    """
    epics: list[Epic] = field(default_factory=list)
    stories: list[Story] = field(default_factory=list)

    def __post_init__(self) -> None:
        epic_ids = set()
        for position, epic in enumerate(self.epics, start=1):
            if not epic.id:
                raise SchemaValidationError("epics.id", "epic id is required")
            if epic.id in epic_ids:
                raise SchemaValidationError("epics.id", "duplicate epic id", epic.id)
            epic_ids.add(epic.id)
            epic.ordinal = position

        counters: dict[str, int] = {}
        for story in self.stories:
            if story.epic_id not in epic_ids:
                raise SchemaValidationError("stories.epic_id", "references an unknown epic", story.epic_id)
            counters[story.epic_id] = counters.get(story.epic_id, 0) + 1
            story.ordinal = counters[story.epic_id]

    @property
    def epic_count(self) -> int:
        return len(self.epics)

    def epic(self, ordinal: int) -> Optional[Epic]:
        if 1 <= ordinal <= len(self.epics):
            return self.epics[ordinal - 1]
        return None

    def stories_in(self, epic_ordinal: int) -> list[Story]:
        epic = self.epic(epic_ordinal)
        if epic is None:
            return []
        return [s for s in self.stories if s.epic_id == epic.id]

    def story(self, epic_ordinal: int, story_ordinal: int) -> Optional[Story]:
        stories = self.stories_in(epic_ordinal)
        if 1 <= story_ordinal <= len(stories):
            return stories[story_ordinal - 1]
        return None

    def coordinates(self) -> list[tuple[int, int]]:
        """Every (epic, story) ordinal pair in execution order."""
        pairs = []
        for epic in self.epics:
            for story in self.stories_in(epic.ordinal):
                pairs.append((epic.ordinal, story.ordinal))
        return pairs

    def is_last_epic(self, epic_ordinal: int) -> bool:
        return epic_ordinal == len(self.epics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "epics": [e.to_dict() for e in self.epics],
            "stories": [s.to_dict() for s in self.stories],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Catalog:
        return cls(
            epics=[Epic.from_dict(e) for e in data.get("epics", [])],
            stories=[Story.from_dict(s) for s in data.get("stories", [])],
        )


@dataclass
class Task:
    """
    Smallest schedulable unit of work.

    The id is derived from (epic_ordinal, story_ordinal, sequence) and is
    stable across regenerations of the same story, which is what makes
    merge-by-id safe.
    """
    id: str
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    owner: OwningRole = OwningRole.DEVELOPER
    status: TaskStatus = TaskStatus.PENDING
    epic_ordinal: int = 0
    story_ordinal: int = 0
    task_order: int = 0

    def __post_init__(self) -> None:
        if not self.id:
            raise SchemaValidationError("task.id", "task id is required")
        if not self.title:
            raise SchemaValidationError("task.title", "task title is required", self.id)
        self.priority = _enum_value(Priority, "task.priority", self.priority)
        self.owner = _enum_value(OwningRole, "task.owner", self.owner)
        self.status = _enum_value(TaskStatus, "task.status", self.status)
        if self.epic_ordinal < 0 or self.story_ordinal < 0:
            raise SchemaValidationError("task.ordinal", "ordinals cannot be negative", self.id)

    @property
    def is_corrective(self) -> bool:
        return "-fix-" in self.id

    @property
    def is_actionable(self) -> bool:
        return self.status not in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    def copy(self, **changes: Any) -> Task:
        data = self.to_dict()
        data.update(changes)
        return Task.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "owner": self.owner.value,
            "status": self.status.value,
            "epic_ordinal": self.epic_ordinal,
            "story_ordinal": self.story_ordinal,
            "task_order": self.task_order,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            description=data.get("description", ""),
            priority=data.get("priority", Priority.MEDIUM),
            owner=data.get("owner", OwningRole.DEVELOPER),
            status=data.get("status", TaskStatus.PENDING),
            epic_ordinal=data.get("epic_ordinal", 0),
            story_ordinal=data.get("story_ordinal", 0),
            task_order=data.get("task_order", 0),
        )


@dataclass
class Failure:
    """
    Structured defect report from a review or test role.

    Failures never mutate Tasks; they only feed corrective generation.
    """
    severity: Severity
    category: FailureCategory
    scenario: str
    expected_behavior: str = ""
    actual_behavior: str = ""
    steps: list[str] = field(default_factory=list)
    evidence: Optional[str] = None

    def __post_init__(self) -> None:
        self.severity = _enum_value(Severity, "failure.severity", self.severity)
        self.category = _enum_value(FailureCategory, "failure.category", self.category)
        if not self.scenario:
            raise SchemaValidationError("failure.scenario", "scenario is required")
        if not isinstance(self.steps, list):
            raise SchemaValidationError("failure.steps", "must be a list", self.steps)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "severity": self.severity.value,
            "category": self.category.value,
            "scenario": self.scenario,
            "expected_behavior": self.expected_behavior,
            "actual_behavior": self.actual_behavior,
            "steps": list(self.steps),
        }
        if self.evidence is not None:
            data["evidence"] = self.evidence
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Failure:
        return cls(
            severity=data.get("severity", ""),
            category=data.get("category", ""),
            scenario=data.get("scenario", ""),
            expected_behavior=data.get("expected_behavior", ""),
            actual_behavior=data.get("actual_behavior", ""),
            steps=data.get("steps", []),
            evidence=data.get("evidence"),
        )


@dataclass
class TaskUpdate:
    """A status transition a role reports for one Task."""
    task_id: str
    status: TaskStatus

    def __post_init__(self) -> None:
        if not self.task_id:
            raise SchemaValidationError("task_update.task_id", "task id is required")
        self.status = _enum_value(TaskStatus, "task_update.status", self.status)

    def to_dict(self) -> dict[str, Any]:
        return {"task_id": self.task_id, "status": self.status.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskUpdate:
        return cls(task_id=data.get("task_id", ""), status=data.get("status", ""))


@dataclass
class TaskSummary:
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "failed_tasks": self.failed_tasks,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskSummary:
        return cls(
            total_tasks=data.get("total_tasks", 0),
            completed_tasks=data.get("completed_tasks", 0),
            failed_tasks=data.get("failed_tasks", 0),
        )
