"""Scrum role: runs the phase engine over the project's development history."""

from __future__ import annotations

from typing import Any, Optional

from storyloop.agents.base import AgentResult, BaseAgent
from storyloop.errors import MissingPreconditionError
from storyloop.models import DEVELOPMENT_ROLES, RoleId
from storyloop.phase_engine import PhaseEngine


class ScrumMasterAgent(BaseAgent):
    """
    Decides the next unit of work.

    The output always carries the full project-to-date Task set (or a test
    request marker), which is what later invocations accumulate.
    """

    name = "scrum_master"
    role_id = RoleId.SCRUM_MASTER

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._engine: Optional[PhaseEngine] = None

    @property
    def engine(self) -> PhaseEngine:
        if self._engine is None:
            self._engine = PhaseEngine(
                self.generator,
                self.retry,
                logger=self._logger,
                window=self.config.development.history_window,
            )
        return self._engine

    async def run(self, context: dict[str, Any]) -> AgentResult:
        project_id = context["project_id"]
        catalog = context.get("catalog") or await self.store.load_catalog(project_id)
        if catalog is None:
            raise MissingPreconditionError(f"No epic/story catalog for {project_id}")
        requirements = context.get("requirements") or await self.store.load_requirements(project_id)
        if requirements is None:
            raise MissingPreconditionError(f"No selected requirements document for {project_id}")

        history = await self.store.list_records(project_id, DEVELOPMENT_ROLES)
        output = await self.engine.next_output(history, catalog, requirements)
        self._log("scrum_output", {
            "phase": output.current_phase.value,
            "tasks": len(output.tasks),
            "test_request": output.test_request.to_dict() if output.test_request else None,
        })
        return AgentResult.success_result(output)
