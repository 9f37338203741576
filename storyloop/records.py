"""
Execution records and per-role output schemas.

Every role invocation produces exactly one ExecutionRecord. The record's
output is a tagged variant keyed by role id; parse_output() is the single
place where raw persisted dicts become typed outputs, so schema mismatches
are rejected at the persistence boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

from storyloop.models import (
    Catalog,
    Failure,
    Phase,
    RecordStatus,
    RoleId,
    SchemaValidationError,
    Task,
    TaskSummary,
    TaskUpdate,
    TestResult,
    TestScope,
    _enum_value,
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _updates_from(data: dict[str, Any]) -> list[TaskUpdate]:
    return [TaskUpdate.from_dict(u) for u in data.get("task_updates", [])]


def _failures_from(data: dict[str, Any], key: str = "failures") -> list[Failure]:
    return [Failure.from_dict(f) for f in data.get(key, [])]


@dataclass
class RequirementsOutput:
    """requirement-analyzer: candidate requirements documents."""
    options: list[dict[str, Any]]
    selected: int = 0

    def __post_init__(self) -> None:
        if not self.options:
            raise SchemaValidationError("options", "at least one requirements document is required")
        if not 0 <= self.selected < len(self.options):
            raise SchemaValidationError("selected", "out of range", self.selected)

    @property
    def selected_document(self) -> dict[str, Any]:
        return self.options[self.selected]

    def to_dict(self) -> dict[str, Any]:
        return {"options": self.options, "selected": self.selected}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RequirementsOutput:
        return cls(options=data.get("options", []), selected=data.get("selected", 0))


@dataclass
class DecompositionOutput:
    """epic-story: the Epic/Story catalog."""
    catalog: Catalog

    def __post_init__(self) -> None:
        if not self.catalog.epics:
            raise SchemaValidationError("epics", "decomposition produced no epics")

    def to_dict(self) -> dict[str, Any]:
        return self.catalog.to_dict()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DecompositionOutput:
        return cls(catalog=Catalog.from_dict(data))


@dataclass
class EpicRef:
    ordinal: int
    title: str
    total: int

    def to_dict(self) -> dict[str, Any]:
        return {"ordinal": self.ordinal, "title": self.title, "total": self.total}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EpicRef:
        return cls(ordinal=data["ordinal"], title=data.get("title", ""), total=data.get("total", 0))


@dataclass
class StoryRef:
    epic_ordinal: int
    story_ordinal: int
    title: str
    total_tasks: int = 0

    @property
    def key(self) -> str:
        return f"{self.epic_ordinal}-{self.story_ordinal}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "epic_ordinal": self.epic_ordinal,
            "story_ordinal": self.story_ordinal,
            "title": self.title,
            "total_tasks": self.total_tasks,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoryRef:
        return cls(
            epic_ordinal=data["epic_ordinal"],
            story_ordinal=data["story_ordinal"],
            title=data.get("title", ""),
            total_tasks=data.get("total_tasks", 0),
        )


@dataclass
class TestResultRef:
    """Which test record a scrum decision was based on."""
    __test__ = False

    result: TestResult
    tested_at: str
    record_id: str
    epic_ordinal: Optional[int] = None

    def __post_init__(self) -> None:
        self.result = _enum_value(TestResult, "test_result_ref.result", self.result)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "result": self.result.value,
            "tested_at": self.tested_at,
            "record_id": self.record_id,
        }
        if self.epic_ordinal is not None:
            data["epic_ordinal"] = self.epic_ordinal
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TestResultRef:
        return cls(
            result=data.get("result", ""),
            tested_at=data.get("tested_at", ""),
            record_id=data.get("record_id", ""),
            epic_ordinal=data.get("epic_ordinal"),
        )


@dataclass
class TestRequest:
    """Marker asking the development loop to run the Tester at a scope."""
    __test__ = False

    scope: TestScope
    epic_ordinal: Optional[int] = None

    def __post_init__(self) -> None:
        self.scope = _enum_value(TestScope, "test_request.scope", self.scope)
        if self.scope == TestScope.STORY:
            raise SchemaValidationError("test_request.scope", "story tests are requested per task")
        if self.scope == TestScope.EPIC and not self.epic_ordinal:
            raise SchemaValidationError("test_request.epic_ordinal", "epic tests need an epic ordinal")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"scope": self.scope.value}
        if self.epic_ordinal is not None:
            data["epic_ordinal"] = self.epic_ordinal
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TestRequest:
        return cls(scope=data.get("scope", ""), epic_ordinal=data.get("epic_ordinal"))


@dataclass
class ScrumOutput:
    """
    scrum-master: the full project-to-date Task set plus phase markers.

    tasks always holds every known Task, not only the current story's.
    """
    current_phase: Phase
    tasks: list[Task] = field(default_factory=list)
    current_epic: Optional[EpicRef] = None
    current_story: Optional[StoryRef] = None
    task_list_markdown: str = ""
    summary: TaskSummary = field(default_factory=TaskSummary)
    review_failures: list[Failure] = field(default_factory=list)
    test_failures: list[Failure] = field(default_factory=list)
    epic_test_result: Optional[TestResultRef] = None
    integration_test_result: Optional[TestResultRef] = None
    test_request: Optional[TestRequest] = None
    source_record_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.current_phase = _enum_value(Phase, "current_phase", self.current_phase)
        seen = set()
        for task in self.tasks:
            if task.id in seen:
                raise SchemaValidationError("tasks", "duplicate task id", task.id)
            seen.add(task.id)
        if self.current_phase == Phase.COMPLETED and self.tasks:
            raise SchemaValidationError("tasks", "completed phase carries no tasks")
        if self.test_request is not None and self.current_phase not in (
            Phase.EPIC_TESTING, Phase.INTEGRATION_TESTING,
        ):
            raise SchemaValidationError("test_request", "only testing phases request tests", self.current_phase)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "current_phase": self.current_phase.value,
            "current_epic": self.current_epic.to_dict() if self.current_epic else None,
            "current_story": self.current_story.to_dict() if self.current_story else None,
            "tasks": [t.to_dict() for t in self.tasks],
            "task_list_markdown": self.task_list_markdown,
            "summary": self.summary.to_dict(),
        }
        if self.review_failures:
            data["review_failures"] = [f.to_dict() for f in self.review_failures]
        if self.test_failures:
            data["test_failures"] = [f.to_dict() for f in self.test_failures]
        if self.epic_test_result:
            data["epic_test_result"] = self.epic_test_result.to_dict()
        if self.integration_test_result:
            data["integration_test_result"] = self.integration_test_result.to_dict()
        if self.test_request:
            data["test_request"] = self.test_request.to_dict()
        if self.source_record_id:
            data["source_record_id"] = self.source_record_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScrumOutput:
        epic = data.get("current_epic")
        story = data.get("current_story")
        epic_result = data.get("epic_test_result")
        integration_result = data.get("integration_test_result")
        request = data.get("test_request")
        return cls(
            current_phase=data.get("current_phase", ""),
            tasks=[Task.from_dict(t) for t in data.get("tasks", [])],
            current_epic=EpicRef.from_dict(epic) if epic else None,
            current_story=StoryRef.from_dict(story) if story else None,
            task_list_markdown=data.get("task_list_markdown", ""),
            summary=TaskSummary.from_dict(data.get("summary", {})),
            review_failures=_failures_from(data, "review_failures"),
            test_failures=_failures_from(data, "test_failures"),
            epic_test_result=TestResultRef.from_dict(epic_result) if epic_result else None,
            integration_test_result=(
                TestResultRef.from_dict(integration_result) if integration_result else None
            ),
            test_request=TestRequest.from_dict(request) if request else None,
            source_record_id=data.get("source_record_id"),
        )


@dataclass
class GeneratedFile:
    path: str
    content: str

    def __post_init__(self) -> None:
        if not self.path or self.path.startswith("/") or ".." in self.path.split("/"):
            raise SchemaValidationError("files.path", "must be a relative path inside the workspace", self.path)

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GeneratedFile:
        return cls(path=data.get("path", ""), content=data.get("content", ""))


@dataclass
class DeveloperOutput:
    """developer: source files produced for one Task."""
    task_id: str
    files: list[GeneratedFile] = field(default_factory=list)
    notes: str = ""
    task_updates: list[TaskUpdate] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.task_id:
            raise SchemaValidationError("task_id", "developer output must name its task")

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "files": [f.to_dict() for f in self.files],
            "notes": self.notes,
            "task_updates": [u.to_dict() for u in self.task_updates],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeveloperOutput:
        return cls(
            task_id=data.get("task_id", ""),
            files=[GeneratedFile.from_dict(f) for f in data.get("files", [])],
            notes=data.get("notes", ""),
            task_updates=_updates_from(data),
        )


@dataclass
class FileGenerationOutput:
    """file-generator: paths materialized into the workspace."""
    task_id: str
    written: list[str] = field(default_factory=list)
    task_updates: list[TaskUpdate] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "written": list(self.written),
            "task_updates": [u.to_dict() for u in self.task_updates],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileGenerationOutput:
        return cls(
            task_id=data.get("task_id", ""),
            written=data.get("written", []),
            task_updates=_updates_from(data),
        )


@dataclass
class ReviewerOutput:
    """code-reviewer: verdict and failures for one Task."""
    task_id: str
    passed: bool
    score: int = 0
    failures: list[Failure] = field(default_factory=list)
    summary: str = ""
    task_updates: list[TaskUpdate] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not 0 <= self.score <= 100:
            raise SchemaValidationError("score", "must be between 0 and 100", self.score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "passed": self.passed,
            "score": self.score,
            "failures": [f.to_dict() for f in self.failures],
            "summary": self.summary,
            "task_updates": [u.to_dict() for u in self.task_updates],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewerOutput:
        return cls(
            task_id=data.get("task_id", ""),
            passed=bool(data.get("passed", False)),
            score=data.get("score", 0),
            failures=_failures_from(data),
            summary=data.get("summary", ""),
            task_updates=_updates_from(data),
        )


@dataclass
class TesterOutput:
    """tester: result at story, epic or integration scope."""
    __test__ = False

    test_type: TestScope
    test_result: TestResult
    overall_score: int = 0
    failures: list[Failure] = field(default_factory=list)
    successes: list[str] = field(default_factory=list)
    summary: str = ""
    epic_ordinal: Optional[int] = None
    task_id: Optional[str] = None
    task_updates: list[TaskUpdate] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.test_type = _enum_value(TestScope, "test_type", self.test_type)
        self.test_result = _enum_value(TestResult, "test_result", self.test_result)
        if not 0 <= self.overall_score <= 100:
            raise SchemaValidationError("overall_score", "must be between 0 and 100", self.overall_score)
        if self.test_type == TestScope.EPIC and not self.epic_ordinal:
            raise SchemaValidationError("epic_ordinal", "epic tests must name their epic")

    @property
    def passed(self) -> bool:
        return self.test_result == TestResult.PASS

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "test_type": self.test_type.value,
            "test_result": self.test_result.value,
            "overall_score": self.overall_score,
            "failures": [f.to_dict() for f in self.failures],
            "successes": list(self.successes),
            "summary": self.summary,
            "task_updates": [u.to_dict() for u in self.task_updates],
        }
        if self.epic_ordinal is not None:
            data["epic_ordinal"] = self.epic_ordinal
        if self.task_id is not None:
            data["task_id"] = self.task_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TesterOutput:
        return cls(
            test_type=data.get("test_type", ""),
            test_result=data.get("test_result", ""),
            overall_score=data.get("overall_score", 0),
            failures=_failures_from(data),
            successes=data.get("successes", []),
            summary=data.get("summary", ""),
            epic_ordinal=data.get("epic_ordinal"),
            task_id=data.get("task_id"),
            task_updates=_updates_from(data),
        )


@dataclass
class ControlOutput:
    """pipeline-control: an explicit operator action such as resume."""
    action: str
    task_updates: list[TaskUpdate] = field(default_factory=list)
    note: str = ""

    def __post_init__(self) -> None:
        if self.action not in ("resume", "pause"):
            raise SchemaValidationError("action", "must be resume or pause", self.action)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "task_updates": [u.to_dict() for u in self.task_updates],
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ControlOutput:
        return cls(
            action=data.get("action", ""),
            task_updates=_updates_from(data),
            note=data.get("note", ""),
        )


@dataclass
class StepOutput:
    """Packaging, deployment, verification and escalation steps."""
    skipped: bool = False
    reason: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"skipped": self.skipped, "reason": self.reason, "details": self.details}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepOutput:
        return cls(
            skipped=bool(data.get("skipped", False)),
            reason=data.get("reason", ""),
            details=data.get("details", {}),
        )


RoleOutput = Union[
    RequirementsOutput,
    DecompositionOutput,
    ScrumOutput,
    DeveloperOutput,
    FileGenerationOutput,
    ReviewerOutput,
    TesterOutput,
    ControlOutput,
    StepOutput,
]


OUTPUT_SCHEMAS: dict[RoleId, type] = {
    RoleId.REQUIREMENT_ANALYZER: RequirementsOutput,
    RoleId.EPIC_STORY: DecompositionOutput,
    RoleId.SCRUM_MASTER: ScrumOutput,
    RoleId.DEVELOPER: DeveloperOutput,
    RoleId.FILE_GENERATOR: FileGenerationOutput,
    RoleId.CODE_REVIEWER: ReviewerOutput,
    RoleId.TESTER: TesterOutput,
    RoleId.MANIFEST_BUILDER: StepOutput,
    RoleId.PACKAGER: StepOutput,
    RoleId.PUBLISHER: StepOutput,
    RoleId.DEPLOYER: StepOutput,
    RoleId.VERIFIER: StepOutput,
    RoleId.ISSUE_RESOLVER: StepOutput,
    RoleId.PIPELINE_CONTROL: ControlOutput,
}


def parse_output(role_id: RoleId, data: Optional[dict[str, Any]]) -> Optional[RoleOutput]:
    """
    Validate a raw output dict against its role's schema.

    Raises:
        SchemaValidationError: If the payload does not match the schema.
    """
    if data is None:
        return None
    if not isinstance(data, dict):
        raise SchemaValidationError("output", "must be an object", data)
    schema = OUTPUT_SCHEMAS[role_id]
    try:
        return schema.from_dict(data)
    except (KeyError, TypeError) as e:
        raise SchemaValidationError("output", f"{role_id.value} payload is incomplete: {e}")


def check_output(role_id: RoleId, output: Optional[RoleOutput]) -> None:
    """Reject an output object whose type does not belong to the role."""
    if output is None:
        return
    schema = OUTPUT_SCHEMAS[role_id]
    if not isinstance(output, schema):
        raise SchemaValidationError(
            "output",
            f"{role_id.value} expects {schema.__name__}, got {type(output).__name__}",
        )


@dataclass
class ExecutionRecord:
    """
    One role invocation.

    Created as running, then closed exactly once as completed or failed.
    sequence is assigned by the store and orders records within a project
    even when timestamps collide.
    """
    id: str
    project_id: str
    role_id: RoleId
    role_name: str
    status: RecordStatus = RecordStatus.RUNNING
    input: dict[str, Any] = field(default_factory=dict)
    output: Optional[RoleOutput] = None
    error: Optional[dict[str, Any]] = None
    started_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None
    sequence: int = 0

    def __post_init__(self) -> None:
        self.role_id = _enum_value(RoleId, "role_id", self.role_id)
        self.status = _enum_value(RecordStatus, "status", self.status)
        check_output(self.role_id, self.output)

    @property
    def is_running(self) -> bool:
        return self.status == RecordStatus.RUNNING

    @property
    def is_completed(self) -> bool:
        return self.status == RecordStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == RecordStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "role_id": self.role_id.value,
            "role_name": self.role_name,
            "status": self.status.value,
            "input": self.input,
            "output": self.output.to_dict() if self.output is not None else None,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionRecord:
        role_id = _enum_value(RoleId, "role_id", data.get("role_id", ""))
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            role_id=role_id,
            role_name=data.get("role_name", role_id.value),
            status=data.get("status", RecordStatus.RUNNING),
            input=data.get("input", {}),
            output=parse_output(role_id, data.get("output")),
            error=data.get("error"),
            started_at=data.get("started_at", ""),
            completed_at=data.get("completed_at"),
            sequence=data.get("sequence", 0),
        )


@dataclass
class PipelineControl:
    """
    Per-project pause intent and development-loop liveness.

    Persisted next to the execution records so both survive restarts and
    are shared between orchestrator processes.
    """
    project_id: str
    paused: bool = False
    active_since: Optional[str] = None
    owner: Optional[str] = None
    updated_at: str = field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.active_since is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "paused": self.paused,
            "active_since": self.active_since,
            "owner": self.owner,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineControl:
        return cls(
            project_id=data["project_id"],
            paused=bool(data.get("paused", False)),
            active_since=data.get("active_since"),
            owner=data.get("owner"),
            updated_at=data.get("updated_at", utc_now()),
        )

