"""
Claude Code CLI adapter for the generation capability.

The engine only needs generate(prompt) -> text. ClaudeCliGenerator runs the
CLI as an asyncio subprocess so that a project's pipeline suspends on the
call instead of blocking other projects, and classifies failures into
GenerationErrorType so the retry executor can decide what to retry.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional, Protocol

from storyloop.errors import ErrorClassifier, GenerationError, GenerationErrorType

if TYPE_CHECKING:
    from storyloop.config import StoryloopConfig
    from storyloop.logger import StoryloopLogger


class GenerationClient(Protocol):
    """Anything that turns a prompt into text."""

    async def generate(self, prompt: str) -> str:
        ...


@dataclass
class ClaudeCliGenerator:
    """
    Runner for the Claude Code CLI.

    Executes prompts with --output-format json and returns the result text.
    """

    config: StoryloopConfig
    logger: Optional[StoryloopLogger] = None

    def _build_command(self, prompt: str, max_turns: Optional[int] = None) -> list[str]:
        return [
            self.config.claude.binary,
            "--print",
            "--output-format", "json",
            "--max-turns", str(max_turns or self.config.claude.max_turns),
            "--allowedTools", "",
            # -- keeps prompts that start with dashes from parsing as options
            "--", prompt,
        ]

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self.logger:
            self.logger.log(event_type, data, level=level)

    def _parse_output(self, stdout: str) -> dict[str, Any]:
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise GenerationError(
                f"Failed to parse Claude output as JSON: {e}",
                error_type=GenerationErrorType.MALFORMED_RESPONSE,
                stderr=stdout[:500],
                returncode=0,
            )
        if not isinstance(data, dict):
            raise GenerationError(
                "Claude output is not a JSON object",
                error_type=GenerationErrorType.MALFORMED_RESPONSE,
                returncode=0,
            )
        return data

    async def generate(self, prompt: str, max_turns: Optional[int] = None) -> str:
        """
        Execute a prompt and return the model's text.

        Raises:
            GenerationError: Classified failure (timeout, crash, auth, ...).
        """
        cmd = self._build_command(prompt, max_turns)
        timeout_seconds = self.config.claude.timeout_seconds

        self._log("generation_start", {
            "prompt_length": len(prompt),
            "timeout": timeout_seconds,
        })

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.config.repo_root,
            )
        except FileNotFoundError:
            raise GenerationError(
                f"{self.config.claude.binary} CLI not found. Please install it first.",
                error_type=GenerationErrorType.CLI_NOT_FOUND,
            )

        try:
            stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout_seconds)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            self._log("generation_timeout", {"timeout_seconds": timeout_seconds}, level="error")
            raise GenerationError(
                f"Claude CLI timed out after {timeout_seconds} seconds",
                error_type=GenerationErrorType.TIMEOUT,
            )
        except BaseException:
            # Cancelled from outside (role timeout, shutdown): the child
            # must not outlive the call.
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
                self._log("generation_cancelled", {"pid": proc.pid}, level="warning")
            raise

        stdout = stdout_b.decode("utf-8", errors="replace")
        stderr = stderr_b.decode("utf-8", errors="replace")

        if proc.returncode != 0:
            error_type = ErrorClassifier.classify_output(stderr, stdout, proc.returncode)
            self._log("generation_error", {
                "returncode": proc.returncode,
                "error_type": error_type.name,
                "stderr": stderr[:500],
            }, level="error")
            raise GenerationError(
                f"Claude CLI exited with code {proc.returncode}",
                error_type=error_type,
                stderr=stderr,
                returncode=proc.returncode,
            )

        data = self._parse_output(stdout)
        if data.get("is_error") or str(data.get("subtype", "")).startswith("error_"):
            text = str(data.get("result", ""))
            error_type = ErrorClassifier.classify_output(text, "", 1)
            raise GenerationError(
                f"Claude CLI returned error: {data.get('subtype') or text[:200]}",
                error_type=error_type,
                stderr=text,
                returncode=0,
            )

        self._log("generation_complete", {
            "cost_usd": data.get("total_cost_usd", 0.0),
            "num_turns": data.get("num_turns", 0),
            "duration_ms": data.get("duration_ms", 0),
        })
        return str(data.get("result", ""))
