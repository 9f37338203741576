"""Code reviewer role."""

from __future__ import annotations

from typing import Any

from storyloop.agents.base import AgentResult, BaseAgent
from storyloop.agents.scoring import is_passing
from storyloop.errors import MalformedResponseError, MissingPreconditionError
from storyloop.models import Failure, RoleId, Task, TaskStatus, TaskUpdate
from storyloop.parsing import parse_failures, parse_object
from storyloop.prompts import review_prompt
from storyloop.records import ReviewerOutput


def _parse_review(text: str) -> tuple[int, list[Failure], str]:
    data = parse_object(text, required=("score",))
    try:
        score = int(data["score"])
    except (TypeError, ValueError):
        raise MalformedResponseError(f"Review score is not a number: {data['score']!r}", raw=text[:1000])
    if not 0 <= score <= 100:
        raise MalformedResponseError(f"Review score out of range: {score}", raw=text[:1000])
    return score, parse_failures(data.get("failures", [])), str(data.get("summary", ""))


class CodeReviewerAgent(BaseAgent):
    """
    Reviews the files produced for one Task.

    A rejection is reported as success=False with the Failures attached,
    and marks the Task failed. Passing moves it on to testing.
    """

    name = "code_reviewer"
    role_id = RoleId.CODE_REVIEWER

    async def run(self, context: dict[str, Any]) -> AgentResult:
        task: Task = context["task"]
        files = await self.developer_files(context["project_id"], [task.id])
        if not files:
            raise MissingPreconditionError(f"No developer output to review for {task.id}")

        score, failures, summary = await self.generate_parsed(
            review_prompt(task, files), _parse_review, f"review of {task.id}",
        )
        passed = is_passing(score, self.config.scoring.reviewer, failures)
        output = ReviewerOutput(
            task_id=task.id,
            passed=passed,
            score=score,
            failures=failures,
            summary=summary,
            task_updates=[TaskUpdate(
                task_id=task.id,
                status=TaskStatus.TESTING if passed else TaskStatus.FAILED,
            )],
        )
        self._log("review_complete", {
            "task_id": task.id,
            "score": score,
            "passed": passed,
            "failures": len(failures),
        }, level="info" if passed else "warn")

        if not passed:
            return AgentResult.failure_result(
                f"Review rejected {task.id} (score {score}, {len(failures)} failures)", output,
            )
        return AgentResult.success_result(output)
