"""
Phase engine for the development loop.

The current phase is never stored. determine_phase() is a pure function of
the execution history and the catalog; PhaseEngine.next_output() runs the
transition action for that phase and returns the Scrum output to persist.

┌──────────────────────┐ reviewer rejects  ┌──────────────────────┐
│    task-creation     │ ───────────────▶ │   review-analysis    │
│ (reuse or generate)  │ ◀─────────────── │ (corrective tasks)   │
└──────────────────────┘                  └──────────────────────┘
   │  ▲          │ story test fails       ┌──────────────────────┐
   │  │          └──────────────────────▶ │    test-analysis     │
   │  └──────────────────────────────────  └──────────────────────┘
   │ story test passes, epic complete
   ▼
┌──────────────────────┐  last epic  ┌──────────────────────┐ pass ┌───────────┐
│     epic-testing     │ ──────────▶ │ integration-testing  │ ───▶ │ completed │
│ (fail: stay, fix)    │             │ (fail: stay, fix)    │      └───────────┘
└──────────────────────┘             └──────────────────────┘
   │ pass, more epics
   └──────▶ task-creation
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Optional, Sequence, Union

from storyloop.errors import CatalogMismatchError
from storyloop.models import (
    Catalog,
    Failure,
    Phase,
    Priority,
    RoleId,
    Task,
    TaskStatus,
    TestScope,
)
from storyloop.parsing import TaskDraft, parse_task_drafts
from storyloop.prompts import corrective_tasks_prompt, task_generation_prompt
from storyloop.records import (
    EpicRef,
    ExecutionRecord,
    ReviewerOutput,
    ScrumOutput,
    StoryRef,
    TesterOutput,
    TestRequest,
    TestResultRef,
)
from storyloop.work_items import (
    EPIC_FIX_ORDER_BASE,
    INTEGRATION_FIX_ORDER_BASE,
    STORY_FIX_ORDER_BASE,
    accumulate,
    check_catalog,
    epic_fix_task_id,
    first_incomplete_story,
    integration_fix_task_id,
    is_epic_complete,
    next_fix_index,
    outstanding_corrective,
    project_tasks,
    render_markdown,
    story_fix_task_id,
    summarize,
    task_id,
    tasks_for_story,
)

if TYPE_CHECKING:
    from storyloop.generation import GenerationClient
    from storyloop.logger import StoryloopLogger
    from storyloop.retry import RetryExecutor


# ----------------------------------------------------------------------
# Phase states
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class TaskCreation:
    phase: ClassVar[Phase] = Phase.TASK_CREATION
    reason: str = ""


@dataclass(frozen=True)
class ReviewAnalysis:
    phase: ClassVar[Phase] = Phase.REVIEW_ANALYSIS
    trigger: ExecutionRecord = None  # type: ignore[assignment]


@dataclass(frozen=True)
class TestAnalysis:
    __test__ = False
    phase: ClassVar[Phase] = Phase.TEST_ANALYSIS
    trigger: ExecutionRecord = None  # type: ignore[assignment]


@dataclass(frozen=True)
class EpicTesting:
    phase: ClassVar[Phase] = Phase.EPIC_TESTING
    epic_ordinal: int = 0


@dataclass(frozen=True)
class IntegrationTesting:
    phase: ClassVar[Phase] = Phase.INTEGRATION_TESTING


@dataclass(frozen=True)
class Completed:
    phase: ClassVar[Phase] = Phase.COMPLETED


PhaseState = Union[
    TaskCreation, ReviewAnalysis, TestAnalysis, EpicTesting, IntegrationTesting, Completed,
]


# ----------------------------------------------------------------------
# Pure phase determination
# ----------------------------------------------------------------------

# Records that never decide a phase on their own.
_IGNORED_ROLES = (RoleId.PIPELINE_CONTROL,)


def newest_first(history: Sequence[ExecutionRecord]) -> list[ExecutionRecord]:
    return sorted(history, key=lambda r: r.sequence, reverse=True)


def _find(history: Sequence[ExecutionRecord], record_id: Optional[str]) -> Optional[ExecutionRecord]:
    if not record_id:
        return None
    for record in history:
        if record.id == record_id:
            return record
    return None


def _after_story_pass(
    latest: ExecutionRecord,
    tasks: Sequence[Task],
    catalog: Catalog,
) -> PhaseState:
    output = latest.output
    assert isinstance(output, TesterOutput)
    tested = next((t for t in tasks if t.id == output.task_id), None)
    epic_ordinal = tested.epic_ordinal if tested else 0

    if any(t.is_actionable for t in tasks):
        return TaskCreation("work remains after story test pass")

    if epic_ordinal and is_epic_complete(tasks, catalog, epic_ordinal):
        if catalog.is_last_epic(epic_ordinal):
            return IntegrationTesting()
        return EpicTesting(epic_ordinal)

    if epic_ordinal == 0 and first_incomplete_story(tasks, catalog) is None:
        return IntegrationTesting()

    return TaskCreation("story test passed, epic not complete")


def _reenter(
    latest: ExecutionRecord,
    recent: Sequence[ExecutionRecord],
) -> PhaseState:
    """Re-enter the phase a completed Scrum record was in."""
    output = latest.output
    assert isinstance(output, ScrumOutput)
    phase = output.current_phase

    if phase == Phase.COMPLETED:
        return Completed()
    if phase == Phase.REVIEW_ANALYSIS:
        trigger = _find(recent, output.source_record_id)
        return ReviewAnalysis(trigger) if trigger else TaskCreation("review trigger out of window")
    if phase == Phase.TEST_ANALYSIS:
        trigger = _find(recent, output.source_record_id)
        return TestAnalysis(trigger) if trigger else TaskCreation("test trigger out of window")
    if phase == Phase.EPIC_TESTING:
        ordinal = None
        if output.test_request and output.test_request.epic_ordinal:
            ordinal = output.test_request.epic_ordinal
        elif output.epic_test_result and output.epic_test_result.epic_ordinal:
            ordinal = output.epic_test_result.epic_ordinal
        elif output.current_epic:
            ordinal = output.current_epic.ordinal
        if ordinal:
            return EpicTesting(ordinal)
        return TaskCreation("epic-testing record without an epic")
    if phase == Phase.INTEGRATION_TESTING:
        return IntegrationTesting()
    return TaskCreation("re-entering task creation")


def determine_phase(
    history: Sequence[ExecutionRecord],
    catalog: Catalog,
    window: Optional[int] = 30,
) -> PhaseState:
    """
    Map an execution history onto the current phase.

    Only the newest `window` records decide the phase; the task projection
    uses the whole history. Running and control records are skipped, as
    are Scrum records that did not complete; a failed task-generation
    attempt leaves the phase of the record before it in force. The
    function has no side effects.
    """
    ordered = newest_first(history)
    recent = ordered[:window] if window else ordered
    deciding = [
        r for r in recent
        if not r.is_running
        and r.role_id not in _IGNORED_ROLES
        and not (r.role_id == RoleId.SCRUM_MASTER and not r.is_completed)
    ]
    if not deciding:
        return TaskCreation("no history")

    latest = deciding[0]
    output = latest.output

    if latest.role_id == RoleId.TESTER and isinstance(output, TesterOutput):
        if output.test_type == TestScope.EPIC:
            if not output.passed:
                return EpicTesting(output.epic_ordinal or 0)
            if catalog.is_last_epic(output.epic_ordinal or 0):
                return IntegrationTesting()
            return TaskCreation("epic test passed")
        if output.test_type == TestScope.INTEGRATION:
            return Completed() if output.passed else IntegrationTesting()
        if latest.is_failed or not output.passed:
            return TestAnalysis(latest)
        return _after_story_pass(latest, project_tasks(history), catalog)

    if latest.role_id == RoleId.CODE_REVIEWER and latest.is_failed:
        if isinstance(output, ReviewerOutput):
            return ReviewAnalysis(latest)
        return TaskCreation("reviewer failed without findings")

    if latest.role_id == RoleId.SCRUM_MASTER and latest.is_completed:
        return _reenter(latest, recent)

    # Developer and file-generator results, and failed invocations without
    # role findings, route back to the task-creation check.
    return TaskCreation(f"latest record is {latest.role_id.value} {latest.status.value}")


def current_test(
    history: Sequence[ExecutionRecord],
    scope: TestScope,
    epic_ordinal: Optional[int] = None,
) -> Optional[ExecutionRecord]:
    """
    Latest test record at a scope, provided no development happened since.

    A developer record newer than the test makes it stale.
    """
    for record in newest_first(history):
        if record.role_id == RoleId.DEVELOPER:
            return None
        if record.role_id != RoleId.TESTER or record.is_running:
            continue
        output = record.output
        if not isinstance(output, TesterOutput) or output.test_type != scope:
            continue
        if scope == TestScope.EPIC and output.epic_ordinal != epic_ordinal:
            continue
        return record
    return None


def already_handled(history: Sequence[ExecutionRecord], trigger_id: str) -> bool:
    """True if a completed Scrum record already produced work for trigger_id."""
    return any(
        r.role_id == RoleId.SCRUM_MASTER
        and r.is_completed
        and isinstance(r.output, ScrumOutput)
        and r.output.source_record_id == trigger_id
        for r in history
    )


# ----------------------------------------------------------------------
# Transition actions
# ----------------------------------------------------------------------

class PhaseEngine:
    """
    Runs the transition action for the current phase.

    Generation calls go through the retry executor. Everything else is
    recomputed from history, so re-running after a crash reproduces the
    same Task set instead of regenerating it.
    """

    def __init__(
        self,
        generator: GenerationClient,
        retry: RetryExecutor,
        logger: Optional[StoryloopLogger] = None,
        window: Optional[int] = 30,
    ) -> None:
        self.generator = generator
        self.retry = retry
        self._logger = logger
        self.window = window

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            log_data = {"component": "phase_engine"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    async def next_output(
        self,
        history: Sequence[ExecutionRecord],
        catalog: Catalog,
        requirements: dict[str, Any],
    ) -> ScrumOutput:
        """
        Decide the phase and produce the Scrum output for it.

        Raises:
            CatalogMismatchError: History references work the catalog lacks.
            RetriesExhaustedError / GenerationError: Generation failed.
        """
        tasks = project_tasks(history)
        check_catalog(tasks, catalog)

        state = determine_phase(history, catalog, self.window)
        self._log("phase_determined", {
            "phase": state.phase.value,
            "reason": getattr(state, "reason", ""),
            "tasks": len(tasks),
        })

        handlers: dict[type, Callable[..., Any]] = {
            TaskCreation: self._task_creation,
            ReviewAnalysis: self._review_analysis,
            TestAnalysis: self._test_analysis,
            EpicTesting: self._epic_testing,
            IntegrationTesting: self._integration_testing,
            Completed: self._completed,
        }
        return await handlers[type(state)](state, history, tasks, catalog, requirements)

    # -- task-creation --------------------------------------------------

    async def _task_creation(
        self,
        state: TaskCreation,
        history: Sequence[ExecutionRecord],
        tasks: list[Task],
        catalog: Catalog,
        requirements: dict[str, Any],
    ) -> ScrumOutput:
        pending_fixes = outstanding_corrective(tasks)
        if pending_fixes:
            first = pending_fixes[0]
            self._log("corrective_tasks_outstanding", {"count": len(pending_fixes)})
            return self._output(
                Phase.TASK_CREATION, tasks, catalog,
                epic_ordinal=first.epic_ordinal,
                story_ordinal=first.story_ordinal,
                title="Outstanding corrective tasks",
                shown=pending_fixes,
            )

        pair = first_incomplete_story(tasks, catalog)
        if pair is None:
            unfinished = [t for t in tasks if t.status != TaskStatus.COMPLETED]
            if unfinished:
                return self._output(
                    Phase.TASK_CREATION, tasks, catalog,
                    title="Unfinished tasks",
                    shown=unfinished,
                )
            return await self._completed(Completed(), history, tasks, catalog, requirements)

        epic_ordinal, story_ordinal = pair
        epic = catalog.epic(epic_ordinal)
        story = catalog.story(epic_ordinal, story_ordinal)
        assert epic is not None and story is not None

        story_tasks = tasks_for_story(tasks, epic_ordinal, story_ordinal)
        if story_tasks:
            self._log("tasks_reused", {
                "story": f"{epic_ordinal}-{story_ordinal}",
                "count": len(story_tasks),
            })
        else:
            drafts = await self._generate(
                task_generation_prompt(requirements, epic, story),
                f"task generation for story {epic_ordinal}-{story_ordinal}",
            )
            story_tasks = [
                Task(
                    id=task_id(epic_ordinal, story_ordinal, n),
                    title=draft.title,
                    description=draft.description,
                    priority=draft.priority,
                    epic_ordinal=epic_ordinal,
                    story_ordinal=story_ordinal,
                    task_order=n,
                )
                for n, draft in enumerate(drafts, start=1)
            ]
            tasks = accumulate([tasks, story_tasks])
            self._log("tasks_generated", {
                "story": f"{epic_ordinal}-{story_ordinal}",
                "count": len(story_tasks),
            })

        return self._output(
            Phase.TASK_CREATION, tasks, catalog,
            epic_ordinal=epic_ordinal,
            story_ordinal=story_ordinal,
            title=f"Task List: {story.title}",
            shown=tasks_for_story(tasks, epic_ordinal, story_ordinal),
        )

    # -- review-analysis / test-analysis ---------------------------------

    async def _review_analysis(
        self,
        state: ReviewAnalysis,
        history: Sequence[ExecutionRecord],
        tasks: list[Task],
        catalog: Catalog,
        requirements: dict[str, Any],
    ) -> ScrumOutput:
        output = state.trigger.output
        assert isinstance(output, ReviewerOutput)
        return await self._analysis(
            Phase.REVIEW_ANALYSIS, state.trigger, output.task_id, output.failures,
            output.summary, history, tasks, catalog, requirements,
        )

    async def _test_analysis(
        self,
        state: TestAnalysis,
        history: Sequence[ExecutionRecord],
        tasks: list[Task],
        catalog: Catalog,
        requirements: dict[str, Any],
    ) -> ScrumOutput:
        output = state.trigger.output
        assert isinstance(output, TesterOutput)
        return await self._analysis(
            Phase.TEST_ANALYSIS, state.trigger, output.task_id, output.failures,
            output.summary, history, tasks, catalog, requirements,
        )

    async def _analysis(
        self,
        phase: Phase,
        trigger: ExecutionRecord,
        target_id: Optional[str],
        failures: list[Failure],
        summary: str,
        history: Sequence[ExecutionRecord],
        tasks: list[Task],
        catalog: Catalog,
        requirements: dict[str, Any],
    ) -> ScrumOutput:
        target = next((t for t in tasks if t.id == target_id), None)
        if target is None:
            raise CatalogMismatchError(
                f"{trigger.role_id.value} record {trigger.id} refers to unknown task {target_id!r}"
            )

        review = phase == Phase.REVIEW_ANALYSIS
        extra: dict[str, Any] = {
            "review_failures" if review else "test_failures": failures,
            "source_record_id": trigger.id,
        }

        if already_handled(history, trigger.id):
            self._log("corrective_tasks_reused", {"trigger": trigger.id})
            return self._output(
                phase, tasks, catalog,
                epic_ordinal=target.epic_ordinal,
                story_ordinal=target.story_ordinal,
                title=f"Corrective tasks for {target.id}",
                shown=outstanding_corrective(tasks),
                failures=failures,
                **extra,
            )

        drafts = await self._generate(
            corrective_tasks_prompt(
                requirements,
                "code review" if review else "story test",
                failures,
                tasks_for_story(tasks, target.epic_ordinal, target.story_ordinal),
                summary,
            ),
            f"{phase.value} for {target.id}",
        )
        new_tasks = self._corrective_tasks(
            drafts, tasks, target.epic_ordinal, target.story_ordinal,
        )
        tasks = accumulate([tasks, new_tasks])
        self._log("corrective_tasks_generated", {
            "trigger": trigger.id,
            "phase": phase.value,
            "task_ids": [t.id for t in new_tasks],
        })
        return self._output(
            phase, tasks, catalog,
            epic_ordinal=target.epic_ordinal,
            story_ordinal=target.story_ordinal,
            title=f"Corrective tasks for {target.id}",
            shown=new_tasks,
            failures=failures,
            **extra,
        )

    def _corrective_tasks(
        self,
        drafts: Sequence[TaskDraft],
        tasks: Sequence[Task],
        epic_ordinal: int,
        story_ordinal: int,
    ) -> list[Task]:
        """High-priority tasks in the namespace matching the target's location."""
        if epic_ordinal and story_ordinal:
            prefix = f"task-{epic_ordinal}-{story_ordinal}"
            make_id = lambda k: story_fix_task_id(epic_ordinal, story_ordinal, k)  # noqa: E731
            base = STORY_FIX_ORDER_BASE
        elif epic_ordinal:
            prefix = f"task-epic-{epic_ordinal}"
            make_id = lambda k: epic_fix_task_id(epic_ordinal, k)  # noqa: E731
            base = EPIC_FIX_ORDER_BASE
        else:
            prefix = "task-integration"
            make_id = integration_fix_task_id
            base = INTEGRATION_FIX_ORDER_BASE

        start = next_fix_index(tasks, prefix)
        return [
            Task(
                id=make_id(k),
                title=draft.title,
                description=draft.description,
                priority=Priority.HIGH,
                epic_ordinal=epic_ordinal,
                story_ordinal=story_ordinal,
                task_order=base + k,
            )
            for k, draft in enumerate(drafts, start=start)
        ]

    # -- epic-testing / integration-testing -----------------------------

    async def _epic_testing(
        self,
        state: EpicTesting,
        history: Sequence[ExecutionRecord],
        tasks: list[Task],
        catalog: Catalog,
        requirements: dict[str, Any],
    ) -> ScrumOutput:
        epic = catalog.epic(state.epic_ordinal)
        if epic is None:
            raise CatalogMismatchError(
                f"Epic {state.epic_ordinal} is not in the catalog ({catalog.epic_count} epics)"
            )
        return await self._scope_testing(
            Phase.EPIC_TESTING, TestScope.EPIC, state.epic_ordinal,
            history, tasks, catalog, requirements,
        )

    async def _integration_testing(
        self,
        state: IntegrationTesting,
        history: Sequence[ExecutionRecord],
        tasks: list[Task],
        catalog: Catalog,
        requirements: dict[str, Any],
    ) -> ScrumOutput:
        return await self._scope_testing(
            Phase.INTEGRATION_TESTING, TestScope.INTEGRATION, None,
            history, tasks, catalog, requirements,
        )

    async def _scope_testing(
        self,
        phase: Phase,
        scope: TestScope,
        epic_ordinal: Optional[int],
        history: Sequence[ExecutionRecord],
        tasks: list[Task],
        catalog: Catalog,
        requirements: dict[str, Any],
    ) -> ScrumOutput:
        test = current_test(history, scope, epic_ordinal)

        if test is None:
            self._log("test_requested", {"scope": scope.value, "epic": epic_ordinal})
            return self._output(
                phase, [], catalog,
                epic_ordinal=epic_ordinal or 0,
                title=f"{scope.value.capitalize()} test requested",
                summary_tasks=tasks,
                test_request=TestRequest(scope=scope, epic_ordinal=epic_ordinal),
            )

        output = test.output
        assert isinstance(output, TesterOutput)
        ref = TestResultRef(
            result=output.test_result,
            tested_at=test.completed_at or test.started_at,
            record_id=test.id,
            epic_ordinal=epic_ordinal,
        )
        result_field = "epic_test_result" if scope == TestScope.EPIC else "integration_test_result"

        if output.passed:
            # determine_phase routes passes elsewhere; only reached when a
            # scrum record re-enters a testing phase after its test passed.
            if scope == TestScope.INTEGRATION:
                return await self._completed(Completed(), history, tasks, catalog, requirements)
            if catalog.is_last_epic(epic_ordinal or 0):
                return await self._integration_testing(
                    IntegrationTesting(), history, tasks, catalog, requirements,
                )
            return await self._task_creation(
                TaskCreation("epic test passed"), history, tasks, catalog, requirements,
            )

        extra: dict[str, Any] = {
            result_field: ref,
            "test_failures": output.failures,
            "source_record_id": test.id,
        }
        label = f"Epic {epic_ordinal}" if scope == TestScope.EPIC else "Integration"

        if already_handled(history, test.id):
            self._log("corrective_tasks_reused", {"trigger": test.id})
            return self._output(
                phase, tasks, catalog,
                epic_ordinal=epic_ordinal or 0,
                title=f"{label} corrective tasks",
                shown=[t for t in outstanding_corrective(tasks) if t.story_ordinal == 0],
                failures=output.failures,
                **extra,
            )

        location_tasks = [
            t for t in tasks if epic_ordinal is None or t.epic_ordinal == epic_ordinal
        ]
        drafts = await self._generate(
            corrective_tasks_prompt(
                requirements, f"{scope.value} test", output.failures, location_tasks, output.summary,
            ),
            f"{scope.value} corrective tasks",
        )
        new_tasks = self._corrective_tasks(drafts, tasks, epic_ordinal or 0, 0)
        tasks = accumulate([tasks, new_tasks])
        self._log("corrective_tasks_generated", {
            "trigger": test.id,
            "phase": phase.value,
            "task_ids": [t.id for t in new_tasks],
        })
        return self._output(
            phase, tasks, catalog,
            epic_ordinal=epic_ordinal or 0,
            title=f"{label} corrective tasks",
            shown=new_tasks,
            failures=output.failures,
            **extra,
        )

    # -- completed ------------------------------------------------------

    async def _completed(
        self,
        state: Completed,
        history: Sequence[ExecutionRecord],
        tasks: list[Task],
        catalog: Catalog,
        requirements: dict[str, Any],
    ) -> ScrumOutput:
        return ScrumOutput(
            current_phase=Phase.COMPLETED,
            tasks=[],
            task_list_markdown="# All stories complete\n\nEvery epic and story is done.\n",
            summary=summarize(tasks),
        )

    # -- helpers --------------------------------------------------------

    async def _generate(self, prompt: str, description: str) -> list[TaskDraft]:
        async def call() -> list[TaskDraft]:
            return parse_task_drafts(await self.generator.generate(prompt))

        return await self.retry.run(call, description)

    def _output(
        self,
        phase: Phase,
        tasks: list[Task],
        catalog: Catalog,
        epic_ordinal: int = 0,
        story_ordinal: int = 0,
        title: str = "",
        shown: Optional[Sequence[Task]] = None,
        failures: Sequence[Failure] = (),
        summary_tasks: Optional[Sequence[Task]] = None,
        **extra: Any,
    ) -> ScrumOutput:
        epic = catalog.epic(epic_ordinal) if epic_ordinal else None
        story = catalog.story(epic_ordinal, story_ordinal) if story_ordinal else None
        shown = list(shown if shown is not None else tasks)
        return ScrumOutput(
            current_phase=phase,
            tasks=list(tasks),
            current_epic=(
                EpicRef(ordinal=epic.ordinal, title=epic.title, total=catalog.epic_count)
                if epic else None
            ),
            current_story=(
                StoryRef(
                    epic_ordinal=epic_ordinal,
                    story_ordinal=story_ordinal,
                    title=story.title,
                    total_tasks=len(tasks_for_story(tasks, epic_ordinal, story_ordinal)),
                )
                if story else None
            ),
            task_list_markdown=render_markdown(title, shown, failures),
            summary=summarize(summary_tasks if summary_tasks is not None else tasks),
            **extra,
        )
