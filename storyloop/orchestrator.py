"""
Pipeline orchestrator for Storyloop.

This module orchestrates:
1. The macro-pipeline per project:
   analysis -> decomposition -> development loop -> packaging ->
   deployment -> post-deploy verification
2. The development loop:
   - Scrum role (phase engine) decides the next unit of work
   - Test request markers run the Tester at epic/integration scope
   - Otherwise the first actionable Task goes through
     developer -> file-generator -> reviewer -> tester
   - Stops when completed, paused, blocked on failed Tasks, or out of
     iterations
3. Pause / resume / reset, backed by the store's PipelineControl row

Every role invocation is one execution record: opened as running, closed
exactly once. Failures are persisted, escalated best-effort, then
re-raised.
"""

from __future__ import annotations

import asyncio
import os
import socket
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from storyloop.agents import AGENT_CLASSES, AgentResult, BaseAgent
from storyloop.errors import (
    ConcurrentInvocationError,
    ErrorCategory,
    MissingPreconditionError,
    RetryLimitError,
    RoleFailedError,
    RoleTimeoutError,
    StoryloopError,
    classify_error,
)
from storyloop.history_store import get_store
from storyloop.logger import get_logger
from storyloop.models import (
    DEVELOPMENT_ROLES,
    Catalog,
    Phase,
    RoleId,
    Task,
    TaskStatus,
    TaskSummary,
    TestScope,
)
from storyloop.phase_engine import determine_phase
from storyloop.records import (
    ControlOutput,
    ExecutionRecord,
    ScrumOutput,
    StepOutput,
    TesterOutput,
    TestRequest,
)
from storyloop.retry import RetryExecutor
from storyloop.work_items import next_actionable, project_tasks, reset_failed, summarize

if TYPE_CHECKING:
    from storyloop.config import StoryloopConfig
    from storyloop.generation import GenerationClient
    from storyloop.history_store import HistoryStore
    from storyloop.logger import StoryloopLogger


# Roles whose success=False result is a routine rejection carrying Failures.
REJECTING_ROLES = (RoleId.CODE_REVIEWER, RoleId.TESTER)

POST_DEVELOPMENT_STEPS = (
    RoleId.MANIFEST_BUILDER,
    RoleId.PACKAGER,
    RoleId.PUBLISHER,
    RoleId.DEPLOYER,
    RoleId.VERIFIER,
)

# Context keys too large or too derived to snapshot into a record's input.
_SNAPSHOT_SKIP = frozenset({"project_id", "catalog", "requirements", "tasks"})


class LoopOutcome(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    BLOCKED = "blocked"
    ITERATION_LIMIT = "iteration_limit"


@dataclass
class LoopResult:
    """Outcome of one development-loop run."""

    outcome: LoopOutcome
    project_id: str
    iterations: int
    summary: TaskSummary = field(default_factory=TaskSummary)
    message: str = ""


@dataclass
class PipelineResult:
    """
    Result from a full pipeline run.

    status is "completed", or the development-loop outcome that stopped
    the pipeline before packaging.
    """

    status: str
    project_id: str
    loop: Optional[LoopResult] = None
    steps_run: list[str] = field(default_factory=list)
    steps_skipped: list[str] = field(default_factory=list)


@dataclass
class ProjectStatus:
    """Snapshot for status displays. Derived from history on every call."""

    project_id: str
    phase: Optional[Phase]
    tasks: list[Task]
    summary: TaskSummary
    paused: bool
    active: bool
    has_requirements: bool
    has_catalog: bool
    record_count: int


def production_mode() -> bool:
    return os.environ.get("STORYLOOP_ENV", "").lower() == "production"


def serialize_error(error: BaseException) -> dict[str, Any]:
    """
    Error detail persisted on a failed record.

    The stack trace is left out in production.
    """
    if isinstance(error, StoryloopError):
        data = error.to_dict()
    else:
        data = {"message": str(error) or type(error).__name__, "error_type": type(error).__name__}
    category = classify_error(error)
    data["category"] = category.value
    data["retryable"] = category == ErrorCategory.TRANSIENT
    if not production_mode():
        data["stack_trace"] = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
    return data


def _snapshot(context: dict[str, Any]) -> dict[str, Any]:
    snapshot: dict[str, Any] = {}
    for key, value in context.items():
        if key in _SNAPSHOT_SKIP:
            continue
        if hasattr(value, "to_dict"):
            value = value.to_dict()
        elif isinstance(value, Enum):
            value = value.value
        snapshot[key] = value
    return snapshot


class Orchestrator:
    """
    Drives roles through the pipeline for any number of projects.

    Agents are built lazily per (project, role) so each logs to its
    project's log. agent_overrides replaces the agent for a role, which is
    how tests and alternative role implementations plug in.
    """

    def __init__(
        self,
        config: StoryloopConfig,
        store: Optional[HistoryStore] = None,
        generator: Optional[GenerationClient] = None,
        retry: Optional[RetryExecutor] = None,
        agent_overrides: Optional[dict[RoleId, BaseAgent]] = None,
    ) -> None:
        self.config = config
        self.store = store or get_store(config)
        self._generator = generator
        self._retry = retry or RetryExecutor(config.retry)
        self._overrides = dict(agent_overrides or {})
        self._agents: dict[tuple[str, RoleId], BaseAgent] = {}

    def _logger(self, project_id: str) -> StoryloopLogger:
        return get_logger(project_id, self.config)

    def _log(
        self,
        project_id: str,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        log_data = {"component": "orchestrator"}
        if data:
            log_data.update(data)
        self._logger(project_id).log(event_type, log_data, level=level)

    def agent(self, project_id: str, role_id: RoleId) -> BaseAgent:
        if role_id in self._overrides:
            return self._overrides[role_id]
        key = (project_id, role_id)
        if key not in self._agents:
            self._agents[key] = AGENT_CLASSES[role_id](
                self.config,
                self.store,
                generator=self._generator,
                retry=self._retry,
                logger=self._logger(project_id),
            )
        return self._agents[key]

    # ------------------------------------------------------------------
    # Single role invocation
    # ------------------------------------------------------------------

    async def run_role(
        self,
        project_id: str,
        role_id: RoleId,
        context: Optional[dict[str, Any]] = None,
        escalate: bool = True,
    ) -> ExecutionRecord:
        """
        Invoke one role and close its record.

        Returns the closed record. A reviewer/tester rejection returns a
        failed record carrying the Failures; any other failure is persisted,
        escalated, and re-raised.

        Raises:
            RoleTimeoutError: The role exceeded its configured timeout.
            RoleFailedError: A non-rejecting role reported failure.
            Exception: Whatever the role raised, after persisting it.
        """
        context = dict(context or {})
        context["project_id"] = project_id
        agent = self.agent(project_id, role_id)
        record = await self.store.open_record(
            project_id, role_id, agent.name, input=_snapshot(context),
        )
        timeout = self.config.roles.timeout_for(role_id.value)
        logger = self._logger(project_id)

        result: Optional[AgentResult] = None
        with logger.record_context(record.id):
            try:
                try:
                    result = await asyncio.wait_for(agent.run(context), timeout)
                except asyncio.TimeoutError:
                    raise RoleTimeoutError(role_id.value, timeout)
                if not result.success and role_id not in REJECTING_ROLES:
                    raise RoleFailedError(
                        f"{role_id.value} failed: {'; '.join(result.errors) or 'no detail'}"
                    )
            except Exception as e:
                await self._fail(
                    project_id, record, e, context, escalate,
                    output=result.output if result is not None else None,
                )
                raise

            if not result.success:
                return await self.store.fail_record(project_id, record.id, {
                    "message": "; ".join(result.errors),
                    "error_type": "rejected",
                    "retryable": False,
                }, output=result.output)
            return await self.store.complete_record(project_id, record.id, result.output)

    async def _fail(
        self,
        project_id: str,
        record: ExecutionRecord,
        error: BaseException,
        context: dict[str, Any],
        escalate: bool,
        output: Any = None,
    ) -> None:
        detail = serialize_error(error)
        self._log(project_id, "role_failed", {
            "role_id": record.role_id.value,
            "record_id": record.id,
            "error_type": detail.get("error_type"),
            "message": detail.get("message"),
        }, level="error")
        await self.store.fail_record(project_id, record.id, detail, output=output)
        if escalate:
            await self.escalate(project_id, record.role_id, record.id, detail, context)

    async def escalate(
        self,
        project_id: str,
        failed_role: RoleId,
        failed_record_id: Optional[str],
        error: dict[str, Any],
        context: dict[str, Any],
    ) -> Optional[ExecutionRecord]:
        """
        Hand a failure to the issue-resolver role.

        Best-effort: an escalation failure is logged and never replaces the
        original error.
        """
        if failed_role == RoleId.ISSUE_RESOLVER:
            return None
        try:
            return await self.run_role(project_id, RoleId.ISSUE_RESOLVER, {
                "failed_role": failed_role.value,
                "failed_record_id": failed_record_id,
                "error": {k: v for k, v in error.items() if k != "stack_trace"},
                "step_context": _snapshot(context),
            }, escalate=False)
        except Exception as e:
            self._log(project_id, "escalation_failed", {
                "failed_role": failed_role.value,
                "error": str(e),
            }, level="warn")
            return None

    # ------------------------------------------------------------------
    # Macro-pipeline
    # ------------------------------------------------------------------

    async def run_pipeline(
        self,
        project_id: str,
        title: str = "",
        document: str = "",
    ) -> PipelineResult:
        """
        Run the whole pipeline, skipping stages whose output already exists.

        Raises:
            MissingPreconditionError: No requirements and no document given.
        """
        result = PipelineResult(status="running", project_id=project_id)

        if await self.store.load_requirements(project_id) is None:
            await self.run_role(project_id, RoleId.REQUIREMENT_ANALYZER, {
                "title": title or project_id,
                "document": document,
            })
            result.steps_run.append(RoleId.REQUIREMENT_ANALYZER.value)
        if await self.store.load_catalog(project_id) is None:
            await self.run_role(project_id, RoleId.EPIC_STORY)
            result.steps_run.append(RoleId.EPIC_STORY.value)

        result.loop = await self.run_development_loop(project_id)
        if result.loop.outcome != LoopOutcome.COMPLETED:
            result.status = result.loop.outcome.value
            return result

        for role_id in POST_DEVELOPMENT_STEPS:
            record = await self.run_role(project_id, role_id)
            output = record.output
            if isinstance(output, StepOutput) and output.skipped:
                self._log(project_id, "step_skipped", {
                    "role_id": role_id.value,
                    "reason": output.reason,
                })
                result.steps_skipped.append(role_id.value)
            else:
                result.steps_run.append(role_id.value)

        result.status = "completed"
        self._log(project_id, "pipeline_completed", {
            "steps_run": result.steps_run,
            "steps_skipped": result.steps_skipped,
        })
        return result

    # ------------------------------------------------------------------
    # Development loop
    # ------------------------------------------------------------------

    async def _history(self, project_id: str) -> list[ExecutionRecord]:
        return await self.store.list_records(project_id, DEVELOPMENT_ROLES)

    async def run_development_loop(
        self,
        project_id: str,
        max_iterations: Optional[int] = None,
        owner: Optional[str] = None,
    ) -> LoopResult:
        """
        Run scrum/develop/review/test iterations until the loop stops.

        Raises:
            ConcurrentInvocationError: Another live loop owns the project.
            MissingPreconditionError: No requirements or catalog yet.
        """
        owner = owner or f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"
        claimed = await self.store.claim_development(
            project_id, owner, self.config.development.stale_active_minutes,
        )
        if not claimed:
            raise ConcurrentInvocationError(
                f"A development loop is already active for {project_id}"
            )

        try:
            await self.store.recover_interrupted(project_id)
            catalog = await self.store.load_catalog(project_id)
            if catalog is None:
                raise MissingPreconditionError(
                    f"No epic/story catalog for {project_id}; run decomposition first"
                )
            requirements = await self.store.load_requirements(project_id)
            if requirements is None:
                raise MissingPreconditionError(
                    f"No selected requirements document for {project_id}"
                )
            limit = max_iterations or self.config.development.max_iterations
            self._log(project_id, "development_started", {"owner": owner, "max_iterations": limit})

            for iteration in range(1, limit + 1):
                control = await self.store.get_control(project_id)
                if control.paused:
                    return await self._finish(project_id, LoopOutcome.PAUSED, iteration - 1)

                scrum = await self.run_role(project_id, RoleId.SCRUM_MASTER, {
                    "catalog": catalog,
                    "requirements": requirements,
                    "iteration": iteration,
                })
                output = scrum.output
                assert isinstance(output, ScrumOutput)

                if output.current_phase == Phase.COMPLETED:
                    return await self._finish(project_id, LoopOutcome.COMPLETED, iteration)

                tasks = project_tasks(await self._history(project_id))
                if output.test_request is not None:
                    await self._run_scope_test(project_id, output.test_request, tasks)
                    continue

                task = next_actionable(tasks)
                if task is None:
                    failed = [t.id for t in tasks if t.status == TaskStatus.FAILED]
                    message = (
                        f"{len(failed)} failed tasks await resume: {', '.join(failed)}"
                        if failed else "no actionable tasks"
                    )
                    return await self._finish(project_id, LoopOutcome.BLOCKED, iteration, message)

                await self._advance_task(project_id, task, catalog, requirements)

            return await self._finish(project_id, LoopOutcome.ITERATION_LIMIT, limit)
        finally:
            await self.store.release_development(project_id, owner)

    async def _finish(
        self,
        project_id: str,
        outcome: LoopOutcome,
        iterations: int,
        message: str = "",
    ) -> LoopResult:
        summary = summarize(project_tasks(await self._history(project_id)))
        self._log(project_id, f"development_{outcome.value}", {
            "iterations": iterations,
            "summary": summary.to_dict(),
            "message": message,
        }, level="warn" if outcome == LoopOutcome.BLOCKED else "info")
        return LoopResult(
            outcome=outcome,
            project_id=project_id,
            iterations=iterations,
            summary=summary,
            message=message,
        )

    async def _advance_task(
        self,
        project_id: str,
        task: Task,
        catalog: Catalog,
        requirements: dict[str, Any],
    ) -> None:
        """Take one Task from its current status through to a story test."""
        context = {"task": task, "catalog": catalog, "requirements": requirements}
        status = task.status

        if status in (TaskStatus.PENDING, TaskStatus.DEVELOPING):
            await self.run_role(project_id, RoleId.DEVELOPER, context)
            await self.run_role(project_id, RoleId.FILE_GENERATOR, context)
            status = TaskStatus.REVIEWING

        if status == TaskStatus.REVIEWING:
            review = await self.run_role(project_id, RoleId.CODE_REVIEWER, context)
            if review.is_failed:
                return
            status = TaskStatus.TESTING

        if status == TaskStatus.TESTING:
            await self.run_role(project_id, RoleId.TESTER, {**context, "scope": TestScope.STORY})

    async def _run_scope_test(
        self,
        project_id: str,
        request: TestRequest,
        tasks: list[Task],
    ) -> ExecutionRecord:
        """
        Run the Tester at epic or integration scope.

        Raises:
            RetryLimitError: The scope already failed as often as allowed.
        """
        history = await self._history(project_id)
        failures = sum(
            1 for r in history
            if isinstance(r.output, TesterOutput)
            and r.output.test_type == request.scope
            and not r.output.passed
            and (request.scope != TestScope.EPIC or r.output.epic_ordinal == request.epic_ordinal)
        )
        limit = (
            self.config.development.max_epic_retries
            if request.scope == TestScope.EPIC
            else self.config.development.max_integration_retries
        )
        if failures >= limit:
            target = f"epic {request.epic_ordinal}" if request.scope == TestScope.EPIC else "integration"
            error = RetryLimitError(f"{target} tests failed {failures} times (limit {limit})")
            await self.escalate(
                project_id, RoleId.TESTER, None, serialize_error(error), request.to_dict(),
            )
            raise error

        return await self.run_role(project_id, RoleId.TESTER, {
            "scope": request.scope,
            "epic_ordinal": request.epic_ordinal,
            "tasks": tasks,
        })

    # ------------------------------------------------------------------
    # Pause / resume / reset
    # ------------------------------------------------------------------

    async def _control_record(
        self,
        project_id: str,
        action: str,
        output: ControlOutput,
    ) -> ExecutionRecord:
        record = await self.store.open_record(
            project_id, RoleId.PIPELINE_CONTROL, "pipeline_control", {"action": action},
        )
        return await self.store.complete_record(project_id, record.id, output)

    async def pause(self, project_id: str) -> None:
        """Ask the development loop to stop before its next iteration."""
        await self.store.set_paused(project_id, True)
        await self._control_record(project_id, "pause", ControlOutput(action="pause"))
        self._log(project_id, "development_pause_requested")

    async def resume(self, project_id: str, restart: bool = True) -> Optional[LoopResult]:
        """
        Clear the pause flag and reset every failed Task to pending.

        The reset is an auditable control record, so it survives in history
        and is replayed by the task projection. When restart is set and no
        loop is active, the loop is started and its result returned.
        """
        await self.store.set_paused(project_id, False)
        tasks = project_tasks(await self._history(project_id))
        updates = reset_failed(tasks)
        await self._control_record(project_id, "resume", ControlOutput(
            action="resume",
            task_updates=updates,
            note=f"reset {len(updates)} failed tasks to pending",
        ))
        self._log(project_id, "tasks_reset", {"task_ids": [u.task_id for u in updates]})
        self._log(project_id, "development_resumed", {"restart": restart})

        if restart and not await self.is_development_active(project_id):
            return await self.run_development_loop(project_id)
        return None

    async def is_development_active(self, project_id: str) -> bool:
        """True when a loop holds a claim that is not stale."""
        control = await self.store.get_control(project_id)
        if not control.is_active:
            return False
        try:
            since = datetime.fromisoformat(control.active_since or "")
        except ValueError:
            return False
        stale_after = timedelta(minutes=self.config.development.stale_active_minutes)
        return datetime.now(timezone.utc) - since < stale_after

    async def reset_development(self, project_id: str) -> int:
        """
        Archive development records and clear the control row.

        Analysis and decomposition are kept, so the next loop starts again
        from task creation for the first story.

        Raises:
            ConcurrentInvocationError: A development loop is active.
        """
        if await self.is_development_active(project_id):
            raise ConcurrentInvocationError(
                f"Cannot reset {project_id} while a development loop is active"
            )
        archived = await self.store.archive_development(project_id)
        await self.store.clear_control(project_id)
        self._log(project_id, "development_reset", {"archived_records": archived})
        return archived

    async def project_status(self, project_id: str) -> ProjectStatus:
        records = await self.store.list_records(project_id)
        history = [r for r in records if r.role_id in DEVELOPMENT_ROLES]
        catalog = await self.store.load_catalog(project_id)
        tasks = project_tasks(history)
        control = await self.store.get_control(project_id)
        phase = (
            determine_phase(history, catalog, self.config.development.history_window).phase
            if catalog is not None else None
        )
        return ProjectStatus(
            project_id=project_id,
            phase=phase,
            tasks=tasks,
            summary=summarize(tasks),
            paused=control.paused,
            active=await self.is_development_active(project_id),
            has_requirements=await self.store.load_requirements(project_id) is not None,
            has_catalog=catalog is not None,
            record_count=len(records),
        )
