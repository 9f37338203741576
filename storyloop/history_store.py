"""
History store for execution records and pipeline control rows.

Layout under the configured state directory:

    .storyloop/
    ├── history/<project>/
    │   ├── 000001_requirement-analyzer-<hex>.json
    │   ├── 000002_epic-story-<hex>.json
    │   ├── .lock                      # serializes sequence allocation and closes
    │   └── archive/<stamp>/           # development records moved aside by reset
    └── control/<project>.json          # PipelineControl row (+ .lock)

Records are append-only: a record is written once when opened and once more
when closed, and never again. The file lock makes open/close and the
control-row compare-and-set safe across orchestrator processes; the asyncio
lock keeps coroutines in one process from contending on it.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import aiofiles
import aiofiles.os
from filelock import AsyncFileLock, Timeout

from storyloop.config import StoryloopConfig
from storyloop.errors import ConcurrentInvocationError, HistoryStoreError
from storyloop.logger import get_logger
from storyloop.models import (
    DEVELOPMENT_ROLES,
    Catalog,
    RecordStatus,
    RoleId,
    SchemaValidationError,
)
from storyloop.records import (
    DecompositionOutput,
    ExecutionRecord,
    PipelineControl,
    RequirementsOutput,
    RoleOutput,
    check_output,
    utc_now,
)
from storyloop.utils.fs import ensure_dir, move_into

LOCK_TIMEOUT_SECONDS = 10


class HistoryStore:
    """
    File-backed, per-project append-only log of execution records.

    Every read goes to disk; nothing cached here is authoritative.
    """

    def __init__(self, config: StoryloopConfig, log_events: bool = True) -> None:
        self.config = config
        self.history_path = config.history_path
        self.control_path = config.control_path
        self._log_events = log_events
        self._locks: dict[str, asyncio.Lock] = {}

    def _log(
        self,
        project_id: str,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = "info",
    ) -> None:
        if self._log_events:
            log_data = {"component": "history_store"}
            if data:
                log_data.update(data)
            get_logger(project_id, self.config).log(event_type, log_data, level=level)

    # ------------------------------------------------------------------
    # Paths and locking
    # ------------------------------------------------------------------

    def _project_dir(self, project_id: str) -> Path:
        if not project_id or "/" in project_id or project_id.startswith("."):
            raise HistoryStoreError(f"Invalid project id: {project_id!r}")
        return self.history_path / project_id

    def _project_lock(self, project_id: str) -> asyncio.Lock:
        if project_id not in self._locks:
            self._locks[project_id] = asyncio.Lock()
        return self._locks[project_id]

    def _file_lock(self, path: Path) -> AsyncFileLock:
        ensure_dir(path.parent)
        return AsyncFileLock(str(path), timeout=LOCK_TIMEOUT_SECONDS)

    def _record_files(self, project_id: str) -> list[Path]:
        project_dir = self._project_dir(project_id)
        if not project_dir.exists():
            return []
        return sorted(project_dir.glob("[0-9]*_*.json"))

    def _record_file(self, project_id: str, record_id: str) -> Optional[Path]:
        matches = list(self._project_dir(project_id).glob(f"*_{record_id}.json"))
        return matches[0] if matches else None

    # ------------------------------------------------------------------
    # Raw IO
    # ------------------------------------------------------------------

    async def _write_json(self, path: Path, data: dict[str, Any]) -> None:
        ensure_dir(path.parent)
        temp_path = path.with_name(f".{path.name}.tmp")
        async with aiofiles.open(temp_path, "w") as f:
            await f.write(json.dumps(data, indent=2))
        await aiofiles.os.replace(temp_path, path)

    async def _read_json(self, path: Path) -> dict[str, Any]:
        try:
            async with aiofiles.open(path, "r") as f:
                content = await f.read()
            return json.loads(content)
        except (OSError, json.JSONDecodeError) as e:
            raise HistoryStoreError(f"Unreadable record file {path.name}: {e}")

    async def _read_record(self, project_id: str, path: Path) -> ExecutionRecord:
        data = await self._read_json(path)
        try:
            return ExecutionRecord.from_dict(data)
        except SchemaValidationError as e:
            # Keep the record in the timeline but refuse its payload.
            self._log(project_id, "invalid_record_output", {
                "record_id": data.get("id"),
                "role_id": data.get("role_id"),
                "error": str(e),
            }, level="warn")
            return ExecutionRecord.from_dict({**data, "output": None})
        except KeyError as e:
            raise HistoryStoreError(f"Record file {path.name} is missing {e}")

    # ------------------------------------------------------------------
    # Execution records
    # ------------------------------------------------------------------

    async def open_record(
        self,
        project_id: str,
        role_id: RoleId,
        role_name: Optional[str] = None,
        input: Optional[dict[str, Any]] = None,
    ) -> ExecutionRecord:
        """
        Create a running record for a role invocation.

        Raises:
            ConcurrentInvocationError: If the role already has a running
                record for this project.
        """
        project_dir = self._project_dir(project_id)
        async with self._project_lock(project_id):
            try:
                async with self._file_lock(project_dir / ".lock"):
                    files = self._record_files(project_id)
                    for path in files:
                        if f"_{role_id.value}-" not in path.name:
                            continue
                        existing = await self._read_json(path)
                        if existing.get("status") == RecordStatus.RUNNING.value:
                            raise ConcurrentInvocationError(
                                f"{role_id.value} already running for {project_id} "
                                f"(record {existing.get('id')})"
                            )
                    sequence = self._next_sequence(files)
                    record = ExecutionRecord(
                        id=f"{role_id.value}-{uuid.uuid4().hex[:12]}",
                        project_id=project_id,
                        role_id=role_id,
                        role_name=role_name or role_id.value,
                        input=input or {},
                        sequence=sequence,
                    )
                    await self._write_json(
                        project_dir / f"{sequence:06d}_{record.id}.json",
                        record.to_dict(),
                    )
            except Timeout:
                raise HistoryStoreError(f"Timeout acquiring history lock for {project_id}")

        self._log(project_id, "record_created", {
            "record_id": record.id,
            "role_id": role_id.value,
            "sequence": record.sequence,
        })
        return record

    @staticmethod
    def _next_sequence(files: list[Path]) -> int:
        if not files:
            return 1
        return int(files[-1].name.split("_", 1)[0]) + 1

    async def _close(
        self,
        project_id: str,
        record_id: str,
        status: RecordStatus,
        output: Optional[RoleOutput],
        error: Optional[dict[str, Any]],
    ) -> ExecutionRecord:
        project_dir = self._project_dir(project_id)
        async with self._project_lock(project_id):
            try:
                async with self._file_lock(project_dir / ".lock"):
                    path = self._record_file(project_id, record_id)
                    if path is None:
                        raise HistoryStoreError(f"Record {record_id} not found for {project_id}")
                    record = await self._read_record(project_id, path)
                    if not record.is_running:
                        raise HistoryStoreError(
                            f"Record {record_id} is already {record.status.value}; "
                            "closed records are never rewritten"
                        )
                    check_output(record.role_id, output)
                    record.status = status
                    record.output = output
                    record.error = error
                    record.completed_at = utc_now()
                    await self._write_json(path, record.to_dict())
            except Timeout:
                raise HistoryStoreError(f"Timeout acquiring history lock for {project_id}")

        self._log(project_id, "record_closed", {
            "record_id": record_id,
            "role_id": record.role_id.value,
            "status": status.value,
        }, level="info" if status == RecordStatus.COMPLETED else "warn")
        return record

    async def complete_record(
        self,
        project_id: str,
        record_id: str,
        output: Optional[RoleOutput],
    ) -> ExecutionRecord:
        """Close a running record as completed with its output."""
        return await self._close(project_id, record_id, RecordStatus.COMPLETED, output, None)

    async def fail_record(
        self,
        project_id: str,
        record_id: str,
        error: dict[str, Any],
        output: Optional[RoleOutput] = None,
    ) -> ExecutionRecord:
        """Close a running record as failed. Output may carry role findings."""
        return await self._close(project_id, record_id, RecordStatus.FAILED, output, error)

    async def get(self, project_id: str, record_id: str) -> Optional[ExecutionRecord]:
        path = self._record_file(project_id, record_id)
        if path is None:
            return None
        return await self._read_record(project_id, path)

    async def list_records(
        self,
        project_id: str,
        roles: Optional[Iterable[RoleId]] = None,
    ) -> list[ExecutionRecord]:
        """All records for a project, oldest first."""
        wanted = {r.value for r in roles} if roles is not None else None
        records = []
        for path in self._record_files(project_id):
            if wanted is not None and path.name.split("_", 1)[1].rsplit("-", 1)[0] not in wanted:
                continue
            records.append(await self._read_record(project_id, path))
        return records

    async def latest(
        self,
        project_id: str,
        roles: Optional[Iterable[RoleId]] = None,
        limit: Optional[int] = 30,
    ) -> list[ExecutionRecord]:
        """Latest N records for (project, role-set), newest first."""
        records = await self.list_records(project_id, roles)
        records.reverse()
        return records[:limit] if limit is not None else records

    async def latest_completed(self, project_id: str, role_id: RoleId) -> Optional[ExecutionRecord]:
        for record in await self.latest(project_id, [role_id], limit=None):
            if record.is_completed:
                return record
        return None

    async def load_catalog(self, project_id: str) -> Optional[Catalog]:
        """Catalog from the latest completed decomposition, if any."""
        record = await self.latest_completed(project_id, RoleId.EPIC_STORY)
        if record is None or not isinstance(record.output, DecompositionOutput):
            return None
        return record.output.catalog

    async def load_requirements(self, project_id: str) -> Optional[dict[str, Any]]:
        """Selected requirements document from the latest completed analysis."""
        record = await self.latest_completed(project_id, RoleId.REQUIREMENT_ANALYZER)
        if record is None or not isinstance(record.output, RequirementsOutput):
            return None
        return record.output.selected_document

    async def recover_interrupted(
        self,
        project_id: str,
        roles: Iterable[RoleId] = DEVELOPMENT_ROLES,
    ) -> list[ExecutionRecord]:
        """
        Close records left running by a dead process as failed.

        Callers must hold the development claim so no live invocation can
        own one of these records.
        """
        recovered = []
        for record in await self.list_records(project_id, roles):
            if record.is_running:
                recovered.append(await self.fail_record(project_id, record.id, {
                    "message": "Invocation interrupted before completion",
                    "error_type": "interrupted",
                    "retryable": True,
                }))
        if recovered:
            self._log(project_id, "interrupted_records_recovered", {
                "record_ids": [r.id for r in recovered],
            }, level="warn")
        return recovered

    async def archive_development(self, project_id: str) -> int:
        """
        Move development-loop records aside so the loop restarts from
        task creation. Analysis and decomposition records stay.
        """
        project_dir = self._project_dir(project_id)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        prefixes = tuple(f"_{role.value}-" for role in DEVELOPMENT_ROLES)
        moved = 0
        async with self._project_lock(project_id):
            try:
                async with self._file_lock(project_dir / ".lock"):
                    for path in self._record_files(project_id):
                        if any(p in path.name for p in prefixes):
                            move_into(path, project_dir / "archive" / stamp)
                            moved += 1
            except Timeout:
                raise HistoryStoreError(f"Timeout acquiring history lock for {project_id}")
        self._log(project_id, "development_archived", {"records": moved, "archive": stamp})
        return moved

    # ------------------------------------------------------------------
    # Pipeline control row
    # ------------------------------------------------------------------

    def _control_file(self, project_id: str) -> Path:
        self._project_dir(project_id)  # validates the id
        return self.control_path / f"{project_id}.json"

    async def _read_control(self, project_id: str) -> PipelineControl:
        path = self._control_file(project_id)
        if not path.exists():
            return PipelineControl(project_id=project_id)
        return PipelineControl.from_dict(await self._read_json(path))

    async def get_control(self, project_id: str) -> PipelineControl:
        return await self._read_control(project_id)

    async def _update_control(self, project_id: str, mutate) -> Any:
        """Run mutate(control) under both locks and persist the row."""
        path = self._control_file(project_id)
        async with self._project_lock(project_id):
            try:
                async with self._file_lock(path.with_name(path.name + ".lock")):
                    control = await self._read_control(project_id)
                    result = mutate(control)
                    control.updated_at = utc_now()
                    await self._write_json(path, control.to_dict())
                    return result
            except Timeout:
                raise HistoryStoreError(f"Timeout acquiring control lock for {project_id}")

    async def set_paused(self, project_id: str, paused: bool) -> PipelineControl:
        def mutate(control: PipelineControl) -> PipelineControl:
            control.paused = paused
            return control

        control = await self._update_control(project_id, mutate)
        self._log(project_id, "pause_flag_set", {"paused": paused})
        return control

    async def claim_development(
        self,
        project_id: str,
        owner: str,
        stale_after_minutes: int = 120,
    ) -> bool:
        """
        Compare-and-set the development liveness flag.

        Succeeds when no loop is active, when the current claim is stale, or
        when the caller already owns it. Two concurrent restarts cannot both
        succeed.
        """
        now = datetime.now(timezone.utc)

        def mutate(control: PipelineControl) -> bool:
            if control.active_since and control.owner != owner:
                try:
                    since = datetime.fromisoformat(control.active_since)
                except ValueError:
                    since = None
                if since is not None and now - since < timedelta(minutes=stale_after_minutes):
                    return False
            control.active_since = now.isoformat()
            control.owner = owner
            return True

        claimed = await self._update_control(project_id, mutate)
        self._log(project_id, "development_claim", {"owner": owner, "claimed": claimed})
        return claimed

    async def release_development(self, project_id: str, owner: str) -> None:
        def mutate(control: PipelineControl) -> None:
            if control.owner == owner:
                control.active_since = None
                control.owner = None

        await self._update_control(project_id, mutate)

    async def clear_control(self, project_id: str) -> None:
        def mutate(control: PipelineControl) -> None:
            control.paused = False
            control.active_since = None
            control.owner = None

        await self._update_control(project_id, mutate)


_store_cache: dict[str, HistoryStore] = {}


def get_store(config: StoryloopConfig) -> HistoryStore:
    """One store per state directory so in-process locks are shared."""
    key = str(config.state_path)
    if key not in _store_cache:
        _store_cache[key] = HistoryStore(config)
    return _store_cache[key]


def clear_store_cache() -> None:
    """Clear the store cache. Useful for testing."""
    global _store_cache
    _store_cache = {}
