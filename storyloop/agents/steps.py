"""
Packaging, deployment and verification steps.

These roles do not generate anything. They run the shell commands from
the deployment config against the workspace. Each is optional: with no
target repository, or no command for the step, it completes as skipped
instead of failing.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
from typing import Any, Optional

from storyloop.agents.base import AgentResult, BaseAgent
from storyloop.models import RoleId
from storyloop.records import StepOutput
from storyloop.utils.fs import safe_write

MANIFEST_FILE = "storyloop-manifest.json"

# Keep the tail of command output in records; logs get the same.
OUTPUT_TAIL = 4000


def skipped(reason: str) -> AgentResult:
    return AgentResult.success_result(StepOutput(skipped=True, reason=reason))


class ManifestBuilderAgent(BaseAgent):
    """Writes a manifest of the workspace files for the packaging step."""

    name = "manifest_builder"
    role_id = RoleId.MANIFEST_BUILDER

    async def run(self, context: dict[str, Any]) -> AgentResult:
        if not self.config.deployment.target_repository:
            return skipped("no target repository configured")

        root = self.config.workspace_path
        if not root.exists():
            return AgentResult.failure_result(f"Workspace {root} does not exist")

        entries = []
        for path in sorted(root.rglob("*")):
            if not path.is_file() or path.name == MANIFEST_FILE or path.name.startswith("."):
                continue
            data = path.read_bytes()
            entries.append({
                "path": str(path.relative_to(root)),
                "size": len(data),
                "sha256": hashlib.sha256(data).hexdigest(),
            })

        manifest = {
            "project_id": context["project_id"],
            "target_repository": self.config.deployment.target_repository,
            "files": entries,
        }
        safe_write(root / MANIFEST_FILE, json.dumps(manifest, indent=2))
        self._log("manifest_written", {"files": len(entries)})
        return AgentResult.success_result(StepOutput(details={
            "manifest": MANIFEST_FILE,
            "files": len(entries),
        }))


class CommandStepAgent(BaseAgent):
    """Runs one configured shell command in the workspace."""

    name = "command_step"
    # Attribute of DeploymentConfig holding this step's command.
    command_field: str = ""

    def _command(self) -> str:
        return getattr(self.config.deployment, self.command_field, "")

    def _env(self, project_id: str) -> dict[str, str]:
        env = os.environ.copy()
        env["STORYLOOP_PROJECT_ID"] = project_id
        env["STORYLOOP_TARGET_REPOSITORY"] = self.config.deployment.target_repository
        env["STORYLOOP_WORKSPACE"] = str(self.config.workspace_path)
        return env

    async def _execute(self, command: str, project_id: str) -> tuple[Optional[int], str]:
        timeout = self.config.deployment.timeout_seconds
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=self.config.workspace_path,
            env=self._env(project_id),
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return None, f"Command timed out after {timeout} seconds"
        return proc.returncode, stdout.decode("utf-8", errors="replace")

    async def run(self, context: dict[str, Any]) -> AgentResult:
        if not self.config.deployment.target_repository:
            return skipped("no target repository configured")
        command = self._command()
        if not command:
            return skipped(f"no {self.command_field} configured")
        if not self.config.workspace_path.exists():
            return AgentResult.failure_result(f"Workspace {self.config.workspace_path} does not exist")

        returncode, output = await self._execute(command, context["project_id"])
        details = {"command": command, "returncode": returncode, "output": output[-OUTPUT_TAIL:]}
        self._log("command_finished", {"command": command, "returncode": returncode},
                  level="info" if returncode == 0 else "error")

        if returncode != 0:
            return AgentResult.failure_result(
                f"{self.name} command failed with exit code {returncode}",
                StepOutput(details=details),
            )
        return AgentResult.success_result(StepOutput(details=details))


class PackagerAgent(CommandStepAgent):
    name = "packager"
    role_id = RoleId.PACKAGER
    command_field = "package_command"


class PublisherAgent(CommandStepAgent):
    """Pushes the packaged sources to the target repository."""

    name = "publisher"
    role_id = RoleId.PUBLISHER
    command_field = "publish_command"


class DeployerAgent(CommandStepAgent):
    name = "deployer"
    role_id = RoleId.DEPLOYER
    command_field = "deploy_command"


class VerifierAgent(CommandStepAgent):
    """Post-deploy smoke check."""

    name = "verifier"
    role_id = RoleId.VERIFIER
    command_field = "verify_command"
