"""
Base class for Storyloop role agents.

This module provides the foundation for every role in the pipeline:
- BaseAgent abstract class with common functionality
- AgentResult dataclass for standardized return values
- Retried generation calls with parsing inside the retried operation
- Lookup of developer-produced files recorded in the history store
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, TypeVar

from storyloop.generation import ClaudeCliGenerator
from storyloop.models import RoleId
from storyloop.records import DeveloperOutput, GeneratedFile, RoleOutput
from storyloop.retry import RetryExecutor

if TYPE_CHECKING:
    from storyloop.config import StoryloopConfig
    from storyloop.generation import GenerationClient
    from storyloop.history_store import HistoryStore
    from storyloop.logger import StoryloopLogger

T = TypeVar("T")


@dataclass
class AgentResult:
    """
    Result from an agent execution.

    success=False with an output means the role ran and rejected the work
    (a failing review or test). The orchestrator persists that output on
    the failed record so the phase engine can act on it.
    """

    success: bool
    output: Optional[RoleOutput] = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "output": self.output.to_dict() if self.output is not None else None,
            "errors": self.errors,
        }

    @classmethod
    def success_result(cls, output: Optional[RoleOutput] = None) -> AgentResult:
        """Create a successful result."""
        return cls(success=True, output=output)

    @classmethod
    def failure_result(cls, error: str, output: Optional[RoleOutput] = None) -> AgentResult:
        """Create a failed result with a single error."""
        return cls(success=False, output=output, errors=[error])


class BaseAgent(ABC):
    """
    Abstract base class for all Storyloop role agents.

    Provides common functionality:
    - Configuration, store and logger access
    - Generation client (Claude CLI by default) behind the retry executor
    - Standard async run() interface

    Subclasses set role_id and implement run().
    """

    # Agent name used in logs (override in subclasses)
    name: str = "base_agent"
    role_id: RoleId

    def __init__(
        self,
        config: StoryloopConfig,
        store: HistoryStore,
        generator: Optional[GenerationClient] = None,
        retry: Optional[RetryExecutor] = None,
        logger: Optional[StoryloopLogger] = None,
    ) -> None:
        self.config = config
        self.store = store
        self._generator = generator
        self._retry = retry
        self._logger = logger

    @property
    def logger(self) -> Optional[StoryloopLogger]:
        return self._logger

    @property
    def generator(self) -> GenerationClient:
        """Get the generation client (lazy initialization)."""
        if self._generator is None:
            self._generator = ClaudeCliGenerator(config=self.config, logger=self._logger)
        return self._generator

    @property
    def retry(self) -> RetryExecutor:
        if self._retry is None:
            self._retry = RetryExecutor(self.config.retry)
        return self._retry

    def _log(
        self, event_type: str, data: Optional[dict] = None, level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"agent": self.name}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    async def generate_parsed(
        self,
        prompt: str,
        parse: Callable[[str], T],
        description: Optional[str] = None,
    ) -> T:
        """
        Generate and parse under the retry policy.

        Parse errors are MalformedResponseError, which the executor does not
        retry.
        """
        async def call() -> T:
            return parse(await self.generator.generate(prompt))

        return await self.retry.run(call, description or self.name)

    async def developer_files(
        self,
        project_id: str,
        task_ids: Optional[Iterable[str]] = None,
    ) -> list[GeneratedFile]:
        """
        Latest content per path from completed developer records.

        Restricted to the given task ids when provided.
        """
        wanted = set(task_ids) if task_ids is not None else None
        by_path: dict[str, GeneratedFile] = {}
        for record in await self.store.list_records(project_id, [RoleId.DEVELOPER]):
            output = record.output
            if not record.is_completed or not isinstance(output, DeveloperOutput):
                continue
            if wanted is not None and output.task_id not in wanted:
                continue
            for generated in output.files:
                by_path[generated.path] = generated
        return [by_path[path] for path in sorted(by_path)]

    async def latest_developer_output(
        self, project_id: str, task_id: str
    ) -> Optional[DeveloperOutput]:
        for record in await self.store.latest(project_id, [RoleId.DEVELOPER], limit=None):
            output = record.output
            if record.is_completed and isinstance(output, DeveloperOutput) and output.task_id == task_id:
                return output
        return None

    @abstractmethod
    async def run(self, context: dict[str, Any]) -> AgentResult:
        """
        Execute the role.

        Args:
            context: Always carries project_id; other keys vary by role.

        Returns:
            AgentResult with success/failure status and the role output.
        """
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"
