"""
Analysis and decomposition roles.

RequirementAnalyzerAgent turns a source document into candidate
requirements documents; EpicStoryAgent splits the selected one into the
Epic/Story catalog the development loop walks.
"""

from __future__ import annotations

from typing import Any

from storyloop.agents.base import AgentResult, BaseAgent
from storyloop.errors import MalformedResponseError, MissingPreconditionError
from storyloop.models import Catalog, RoleId, SchemaValidationError
from storyloop.parsing import parse_object
from storyloop.prompts import decomposition_prompt, requirements_prompt
from storyloop.records import DecompositionOutput, RequirementsOutput


def _parse_options(text: str) -> list[dict[str, Any]]:
    data = parse_object(text, required=("options",))
    options = data["options"]
    if not isinstance(options, list) or not options:
        raise MalformedResponseError("Requirements analysis returned no options", raw=text[:1000])
    for index, option in enumerate(options, start=1):
        if not isinstance(option, dict) or not option.get("content"):
            raise MalformedResponseError(f"Option {index} has no content", raw=text[:1000])
    return options


def _parse_catalog(text: str) -> Catalog:
    data = parse_object(text, required=("epics", "stories"))
    try:
        catalog = Catalog.from_dict(data)
    except SchemaValidationError as e:
        raise MalformedResponseError(f"Decomposition is inconsistent: {e}", raw=text[:1000])
    if not catalog.epics:
        raise MalformedResponseError("Decomposition produced no epics", raw=text[:1000])
    for epic in catalog.epics:
        if not catalog.stories_in(epic.ordinal):
            raise MalformedResponseError(f"Epic {epic.id} has no stories", raw=text[:1000])
    return catalog


class RequirementAnalyzerAgent(BaseAgent):
    """
    Produces requirements documents from the project's source document.

    Context:
        title: Project title.
        document: Source document text.
        option_count: How many alternatives to request (default 2).
        selected: Index of the option to select (default 0).
    """

    name = "requirement_analyzer"
    role_id = RoleId.REQUIREMENT_ANALYZER

    async def run(self, context: dict[str, Any]) -> AgentResult:
        document = context.get("document", "")
        if not str(document).strip():
            raise MissingPreconditionError("Requirements analysis needs a source document")

        options = await self.generate_parsed(
            requirements_prompt(
                context.get("title", context["project_id"]),
                document,
                context.get("option_count", 2),
            ),
            _parse_options,
            "requirements analysis",
        )
        selected = min(int(context.get("selected", 0)), len(options) - 1)
        self._log("requirements_generated", {"options": len(options), "selected": selected})
        return AgentResult.success_result(RequirementsOutput(options=options, selected=selected))


class EpicStoryAgent(BaseAgent):
    """Decomposes the selected requirements into Epics and Stories."""

    name = "epic_story"
    role_id = RoleId.EPIC_STORY

    async def run(self, context: dict[str, Any]) -> AgentResult:
        requirements = await self.store.load_requirements(context["project_id"])
        if requirements is None:
            raise MissingPreconditionError(
                f"No selected requirements document for {context['project_id']}; "
                "run requirements analysis first"
            )

        catalog = await self.generate_parsed(
            decomposition_prompt(requirements), _parse_catalog, "decomposition",
        )
        self._log("catalog_generated", {
            "epics": catalog.epic_count,
            "stories": len(catalog.stories),
        })
        return AgentResult.success_result(DecompositionOutput(catalog=catalog))
