"""
Developer and file-generator roles.

The developer asks the generation capability for complete file contents
for one Task; the file generator materializes the latest developer output
into the project workspace.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from storyloop.agents.base import AgentResult, BaseAgent
from storyloop.errors import MalformedResponseError, MissingPreconditionError
from storyloop.models import Catalog, RoleId, SchemaValidationError, Task, TaskStatus, TaskUpdate
from storyloop.parsing import parse_object
from storyloop.prompts import developer_prompt
from storyloop.records import DeveloperOutput, FileGenerationOutput, GeneratedFile
from storyloop.utils.fs import FileSystemError, resolve_inside, safe_write


def _parse_files(text: str) -> tuple[list[GeneratedFile], str]:
    data = parse_object(text, required=("files",))
    if not isinstance(data["files"], list) or not data["files"]:
        raise MalformedResponseError("Developer output lists no files", raw=text[:1000])
    try:
        files = [GeneratedFile.from_dict(f) for f in data["files"]]
    except (SchemaValidationError, AttributeError) as e:
        raise MalformedResponseError(f"Developer output has an invalid file entry: {e}", raw=text[:1000])
    return files, str(data.get("notes", ""))


def _existing_paths(root: Path) -> list[str]:
    if not root.exists():
        return []
    return sorted(
        str(p.relative_to(root)) for p in root.rglob("*")
        if p.is_file() and not p.name.startswith(".")
    )


class DeveloperAgent(BaseAgent):
    """
    Implements a single Task.

    Context:
        task: The Task to implement.
        requirements: Selected requirements document.
        catalog: Optional Catalog, for the Task's story text.
    """

    name = "developer"
    role_id = RoleId.DEVELOPER

    async def run(self, context: dict[str, Any]) -> AgentResult:
        task: Task = context["task"]
        requirements = context.get("requirements") or await self.store.load_requirements(
            context["project_id"]
        )
        if requirements is None:
            raise MissingPreconditionError("Developer needs the selected requirements document")

        catalog: Optional[Catalog] = context.get("catalog")
        story = catalog.story(task.epic_ordinal, task.story_ordinal) if catalog else None

        files, notes = await self.generate_parsed(
            developer_prompt(
                requirements,
                task,
                story,
                _existing_paths(self.config.workspace_path),
            ),
            _parse_files,
            f"development of {task.id}",
        )
        self._log("task_developed", {"task_id": task.id, "files": [f.path for f in files]})
        return AgentResult.success_result(DeveloperOutput(
            task_id=task.id,
            files=files,
            notes=notes,
            task_updates=[TaskUpdate(task_id=task.id, status=TaskStatus.REVIEWING)],
        ))


class FileGeneratorAgent(BaseAgent):
    """Writes the latest developer output for a Task into the workspace."""

    name = "file_generator"
    role_id = RoleId.FILE_GENERATOR

    async def run(self, context: dict[str, Any]) -> AgentResult:
        task: Task = context["task"]
        developed = await self.latest_developer_output(context["project_id"], task.id)
        if developed is None:
            raise MissingPreconditionError(f"No completed developer output for {task.id}")

        root = self.config.workspace_path
        written = []
        for generated in developed.files:
            try:
                target = resolve_inside(root, generated.path)
            except FileSystemError as e:
                return AgentResult.failure_result(str(e))
            safe_write(target, generated.content)
            written.append(generated.path)

        self._log("files_written", {"task_id": task.id, "count": len(written)})
        return AgentResult.success_result(FileGenerationOutput(task_id=task.id, written=written))
