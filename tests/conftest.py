"""Shared fixtures for storyloop tests."""

import inspect
import json
from typing import Any, Callable, Optional
from unittest.mock import AsyncMock, patch

import pytest

from storyloop.agents import AgentResult
from storyloop.config import StoryloopConfig, clear_config_cache
from storyloop.history_store import HistoryStore, clear_store_cache
from storyloop.logger import clear_logger_cache
from storyloop.models import (
    Catalog,
    Epic,
    Failure,
    RecordStatus,
    RoleId,
    Story,
    Task,
    TaskStatus,
    TaskUpdate,
    TestResult,
    TestScope,
)
from storyloop.orchestrator import Orchestrator
from storyloop.records import (
    DecompositionOutput,
    DeveloperOutput,
    ExecutionRecord,
    FileGenerationOutput,
    GeneratedFile,
    RequirementsOutput,
    ReviewerOutput,
    StepOutput,
    TesterOutput,
)
from storyloop.retry import RetryExecutor


class FakeGenerator:
    """
    Generation client that replays queued responses.

    Queue strings to return them, exceptions to raise them. Every prompt is
    kept so tests can assert on what was asked.
    """

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.prompts: list[str] = []

    def queue(self, *responses: Any) -> "FakeGenerator":
        self.responses.extend(responses)
        return self

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise AssertionError(f"Unexpected generation call:\n{prompt[:300]}")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


def _fenced(data: Any) -> str:
    return "Here you go:\n```json\n" + json.dumps(data, indent=2) + "\n```\n"


@pytest.fixture(autouse=True)
def _clear_caches():
    yield
    clear_config_cache()
    clear_logger_cache()
    clear_store_cache()


@pytest.fixture
def config(tmp_path):
    """Config rooted in a temp directory, with backoff delays intact."""
    return StoryloopConfig(repo_root=str(tmp_path))


@pytest.fixture
def store(config):
    return HistoryStore(config)


@pytest.fixture
def catalog():
    """Two epics: epic 1 has two stories, epic 2 has one."""
    return Catalog(
        epics=[
            Epic(id="epic-auth", title="Accounts", description="Sign up and sign in"),
            Epic(id="epic-notes", title="Notes", description="Create and list notes"),
        ],
        stories=[
            Story(id="s-signup", epic_id="epic-auth", title="Sign up", body="As a visitor I can sign up", story_points=3),
            Story(id="s-signin", epic_id="epic-auth", title="Sign in", body="As a user I can sign in", story_points=2),
            Story(id="s-notes", epic_id="epic-notes", title="Write notes", body="As a user I can write notes", story_points=5),
        ],
    )


@pytest.fixture
def requirements():
    return {"title": "Notes app", "content": "# Notes app\n\nUsers sign up and keep notes."}


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def fenced():
    """Wrap data in a fenced JSON block the way generation output arrives."""
    return _fenced


@pytest.fixture
def no_sleep():
    """Patch the retry executor's sleep and expose the mock."""
    with patch("storyloop.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


@pytest.fixture
def task_list_text():
    """Fenced JSON task list as the generation capability would return it."""
    def _make(*titles: str, priority: str = "medium") -> str:
        return _fenced([
            {"title": title, "description": f"Do {title.lower()}", "priority": priority}
            for title in titles
        ])
    return _make


@pytest.fixture
def make_tasks():
    """Tasks for one story: make_tasks(e, s, statuses)."""
    def _make(epic: int, story: int, statuses: list[str]) -> list[Task]:
        return [
            Task(
                id=f"task-{epic}-{story}-{n}",
                title=f"Task {n} of story {epic}.{story}",
                status=TaskStatus(status),
                epic_ordinal=epic,
                story_ordinal=story,
                task_order=n,
            )
            for n, status in enumerate(statuses, start=1)
        ]
    return _make


@pytest.fixture
def make_record():
    """In-memory ExecutionRecord builder for pure phase/work-item tests."""
    def _make(
        sequence: int,
        role_id: RoleId,
        output: Any = None,
        status: RecordStatus = RecordStatus.COMPLETED,
        error: Optional[dict] = None,
    ) -> ExecutionRecord:
        return ExecutionRecord(
            id=f"{role_id.value}-{sequence:04d}",
            project_id="notes",
            role_id=role_id,
            role_name=role_id.value,
            status=status,
            output=output,
            error=error,
            started_at=f"2026-01-01T00:00:{sequence % 60:02d}+00:00",
            completed_at=None if status == RecordStatus.RUNNING else f"2026-01-01T00:01:{sequence % 60:02d}+00:00",
            sequence=sequence,
        )
    return _make


@pytest.fixture
def write_record(store):
    """Open and close a record in the store: await write_record(project, role, output, failed=False)."""
    async def _write(
        project_id: str,
        role_id: RoleId,
        output: Any = None,
        failed: bool = False,
        error: Optional[dict] = None,
    ) -> ExecutionRecord:
        record = await store.open_record(project_id, role_id)
        if failed:
            return await store.fail_record(
                project_id, record.id, error or {"message": "rejected", "error_type": "rejected"}, output,
            )
        return await store.complete_record(project_id, record.id, output)
    return _write


@pytest.fixture
def seed_project(write_record, catalog, requirements):
    """Write completed analysis and decomposition records for a project."""
    async def _seed(project_id: str = "notes") -> None:
        await write_record(project_id, RoleId.REQUIREMENT_ANALYZER, RequirementsOutput(options=[requirements]))
        await write_record(project_id, RoleId.EPIC_STORY, DecompositionOutput(catalog=catalog))
    return _seed


class FakeRole:
    """
    Stand-in agent for orchestrator tests.

    handler(context) returns an AgentResult (or an awaitable of one) or
    raises. Every context it receives is kept in .contexts.
    """

    def __init__(self, role_id: RoleId, handler: Callable[[dict], Any]) -> None:
        self.role_id = role_id
        self.name = f"fake_{role_id.value.replace('-', '_')}"
        self.handler = handler
        self.contexts: list[dict] = []

    async def run(self, context: dict) -> AgentResult:
        self.contexts.append(context)
        result = self.handler(context)
        if inspect.isawaitable(result):
            result = await result
        return result


class FakeTeam:
    """
    Scripted developer, file-generator, reviewer, tester and issue-resolver.

    Everything passes unless told otherwise:
        team.reject_review("task-1-1-1", [failure])   # once
        team.fail_test(TestScope.EPIC, [failure])      # next test at that scope
    """

    def __init__(self) -> None:
        self._rejections: dict[str, list[Failure]] = {}
        self._test_failures: dict[TestScope, list[list[Failure]]] = {}
        self.developer = FakeRole(RoleId.DEVELOPER, self._develop)
        self.file_generator = FakeRole(RoleId.FILE_GENERATOR, self._write)
        self.reviewer = FakeRole(RoleId.CODE_REVIEWER, self._review)
        self.tester = FakeRole(RoleId.TESTER, self._test)
        self.issue_resolver = FakeRole(
            RoleId.ISSUE_RESOLVER,
            lambda ctx: AgentResult.success_result(StepOutput(details={"diagnosis": "look at logs"})),
        )

    @property
    def overrides(self) -> dict[RoleId, FakeRole]:
        return {
            role.role_id: role
            for role in (self.developer, self.file_generator, self.reviewer, self.tester, self.issue_resolver)
        }

    def reject_review(self, task_id: str, failures: list[Failure]) -> None:
        self._rejections[task_id] = failures

    def fail_test(self, scope: TestScope, failures: list[Failure]) -> None:
        self._test_failures.setdefault(scope, []).append(failures)

    @property
    def test_scopes(self) -> list[str]:
        return [TestScope(ctx.get("scope", TestScope.STORY)).value for ctx in self.tester.contexts]

    def _develop(self, context: dict) -> AgentResult:
        task = context["task"]
        return AgentResult.success_result(DeveloperOutput(
            task_id=task.id,
            files=[GeneratedFile(f"src/{task.id}.py", f"# {task.title}\n")],
            task_updates=[TaskUpdate(task.id, TaskStatus.REVIEWING)],
        ))

    def _write(self, context: dict) -> AgentResult:
        task = context["task"]
        return AgentResult.success_result(FileGenerationOutput(task_id=task.id, written=[f"src/{task.id}.py"]))

    def _review(self, context: dict) -> AgentResult:
        task = context["task"]
        failures = self._rejections.pop(task.id, None)
        passed = failures is None
        output = ReviewerOutput(
            task_id=task.id,
            passed=passed,
            score=90 if passed else 40,
            failures=failures or [],
            task_updates=[TaskUpdate(task.id, TaskStatus.TESTING if passed else TaskStatus.FAILED)],
        )
        if passed:
            return AgentResult.success_result(output)
        return AgentResult.failure_result(f"review rejected {task.id}", output)

    def _test(self, context: dict) -> AgentResult:
        scope = TestScope(context.get("scope", TestScope.STORY))
        queued = self._test_failures.get(scope)
        failures = queued.pop(0) if queued else []
        passed = not failures
        task = context.get("task")
        updates = []
        if scope == TestScope.STORY:
            updates = [TaskUpdate(task.id, TaskStatus.COMPLETED if passed else TaskStatus.FAILED)]
        output = TesterOutput(
            test_type=scope,
            test_result=TestResult.PASS if passed else TestResult.FAIL,
            overall_score=95 if passed else 50,
            failures=failures,
            epic_ordinal=context.get("epic_ordinal") if scope == TestScope.EPIC else None,
            task_id=task.id if task is not None else None,
            task_updates=updates,
        )
        if passed:
            return AgentResult.success_result(output)
        return AgentResult.failure_result(f"{scope.value} test failed", output)


@pytest.fixture
def fake_role():
    """FakeRole factory: fake_role(role_id, handler)."""
    return FakeRole


@pytest.fixture
def fake_team():
    return FakeTeam()


@pytest.fixture
def make_orchestrator(config, store, fake_generator, fake_team):
    """Orchestrator wired to the temp store, the fake generator and the fake team."""
    def _make(overrides: Optional[dict] = None) -> Orchestrator:
        agents = {**fake_team.overrides, **(overrides or {})}
        return Orchestrator(
            config,
            store=store,
            generator=fake_generator,
            retry=RetryExecutor(max_attempts=1),
            agent_overrides=agents,
        )
    return _make
