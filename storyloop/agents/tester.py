"""
Tester role.

Runs at three scopes:
- story: one Task's files, after a passing review
- epic: every file produced for the epic's Tasks
- integration: the whole workspace
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

from storyloop.agents.base import AgentResult, BaseAgent
from storyloop.agents.scoring import is_passing, scenario_score
from storyloop.errors import MalformedResponseError, MissingPreconditionError
from storyloop.models import Failure, RoleId, Task, TaskStatus, TaskUpdate, TestResult, TestScope
from storyloop.parsing import parse_failures, parse_object
from storyloop.prompts import test_prompt
from storyloop.records import TesterOutput


def _parse_results(text: str) -> tuple[list[str], list[Failure], str]:
    data = parse_object(text)
    successes = data.get("successes", [])
    if not isinstance(successes, list):
        raise MalformedResponseError("successes must be a list", raw=text[:1000])
    return (
        [str(s) for s in successes],
        parse_failures(data.get("failures", [])),
        str(data.get("summary", "")),
    )


class TesterAgent(BaseAgent):
    """
    Tests a Task, an Epic, or the whole project.

    Context:
        scope: TestScope (default story).
        task: The Task under test (story scope).
        epic_ordinal: The Epic under test (epic scope).
        tasks: Current Task set (epic scope, to select the epic's files).
    """

    __test__ = False

    name = "tester"
    role_id = RoleId.TESTER

    async def run(self, context: dict[str, Any]) -> AgentResult:
        project_id = context["project_id"]
        scope = TestScope(context.get("scope", TestScope.STORY))
        task: Optional[Task] = context.get("task")
        epic_ordinal: Optional[int] = context.get("epic_ordinal")

        if scope == TestScope.STORY:
            if task is None:
                raise MissingPreconditionError("Story tests need a task")
            files = await self.developer_files(project_id, [task.id])
            subject = f"task {task.id}: {task.title}"
        elif scope == TestScope.EPIC:
            if not epic_ordinal:
                raise MissingPreconditionError("Epic tests need an epic ordinal")
            tasks: Sequence[Task] = context.get("tasks", [])
            files = await self.developer_files(
                project_id, [t.id for t in tasks if t.epic_ordinal == epic_ordinal],
            )
            subject = f"epic {epic_ordinal}"
        else:
            files = await self.developer_files(project_id)
            subject = "whole project"

        if not files:
            raise MissingPreconditionError(f"Nothing to test for {subject}")

        successes, failures, summary = await self.generate_parsed(
            test_prompt(scope.value, subject, files), _parse_results, f"{scope.value} test",
        )
        score = scenario_score(successes, failures)
        passed = is_passing(score, self.config.scoring.threshold_for(scope.value), failures)

        updates = []
        if scope == TestScope.STORY and task is not None:
            updates.append(TaskUpdate(
                task_id=task.id,
                status=TaskStatus.COMPLETED if passed else TaskStatus.FAILED,
            ))
        output = TesterOutput(
            test_type=scope,
            test_result=TestResult.PASS if passed else TestResult.FAIL,
            overall_score=score,
            failures=failures,
            successes=successes,
            summary=summary,
            epic_ordinal=epic_ordinal if scope == TestScope.EPIC else None,
            task_id=task.id if task is not None else None,
            task_updates=updates,
        )
        self._log("test_complete", {
            "scope": scope.value,
            "subject": subject,
            "score": score,
            "passed": passed,
        }, level="info" if passed else "warn")

        if not passed:
            return AgentResult.failure_result(
                f"{scope.value.capitalize()} test failed for {subject} (score {score})", output,
            )
        return AgentResult.success_result(output)
