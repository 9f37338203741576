"""Issue escalation role: triages a failed step for a human."""

from __future__ import annotations

from typing import Any

from storyloop.agents.base import AgentResult, BaseAgent
from storyloop.models import RoleId
from storyloop.parsing import parse_object
from storyloop.prompts import escalation_prompt
from storyloop.records import StepOutput


class IssueResolverAgent(BaseAgent):
    """
    Produces a diagnosis and suggested actions for a failure.

    Context:
        failed_role: Role id of the step that failed.
        failed_record_id: Its execution record.
        error: Serialized error.
        step_context: Whatever the failed step was given.
    """

    name = "issue_resolver"
    role_id = RoleId.ISSUE_RESOLVER

    async def run(self, context: dict[str, Any]) -> AgentResult:
        data = await self.generate_parsed(
            escalation_prompt(
                context.get("failed_role", "unknown"),
                context.get("error", {}),
                context.get("step_context", {}),
            ),
            lambda text: parse_object(text, required=("diagnosis",)),
            "escalation",
        )
        actions = data.get("suggested_actions", [])
        if not isinstance(actions, list):
            actions = [str(actions)]
        return AgentResult.success_result(StepOutput(details={
            "failed_role": context.get("failed_role"),
            "failed_record_id": context.get("failed_record_id"),
            "diagnosis": str(data["diagnosis"]),
            "suggested_actions": [str(a) for a in actions],
        }))
