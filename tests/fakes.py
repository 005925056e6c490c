"""Test doubles for processors, artifact storage and the Supabase client."""

import asyncio
import copy
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from factor_jobs.jobs.errors import NetworkError
from factor_jobs.jobs.models import JobRecord, TaskType
from factor_jobs.processors.base import OutputFile, ProcessorMode, ProcessorOutput, RemoteProcessor
from factor_jobs.processors.modelling import ModelGenerationProcessor
from factor_jobs.storage.artifacts import ArtifactStorage, StagedInput


def gcode_output(name: str = "part.gcode", body: bytes = b"G1 X10 Y10\n") -> ProcessorOutput:
    return ProcessorOutput(
        primary=OutputFile(name=name, content=body, content_type="text/x-gcode"),
        metadata={"gcode_metadata": {"print_time": 3600}},
    )


class ScriptedSlicer(RemoteProcessor):
    """SYNC processor that replays a list of outcomes (exceptions are raised)."""

    task_type = TaskType.SLICING
    mode = ProcessorMode.SYNC

    def __init__(self, outcomes: List[Any], gate: Optional[asyncio.Event] = None):
        super().__init__("http://ai.test")
        self.outcomes = list(outcomes)
        self.gate = gate
        self.calls = 0

    async def run(self, job: JobRecord, staged: Optional[StagedInput]) -> ProcessorOutput:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class ScriptedModeller(ModelGenerationProcessor):
    """Model generation with canned submit/status responses; parsing is real."""

    def __init__(self, statuses: List[Any], task_id: str = "task-1"):
        super().__init__("http://ai.test")
        self.statuses = list(statuses)
        self.task_id = task_id
        self.submitted = 0
        self.status_calls = 0

    async def submit(self, job: JobRecord, staged: Optional[StagedInput]) -> str:
        self.submitted += 1
        return self.task_id

    async def get_status(self, provider_job_id: str) -> Dict[str, Any]:
        self.status_calls += 1
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(status, BaseException):
            raise status
        return status


def modelling_status(state: str, progress: Optional[float] = None, **data) -> Dict[str, Any]:
    body = {"status": state, **data}
    if progress is not None:
        body["progress"] = progress
    return {"status": "ok", "data": body}


class MemoryArtifactStore(ArtifactStorage):
    """Keeps artifacts in a dict; remote downloads are served from ``remote``."""

    def __init__(self, remote: Optional[Dict[str, bytes]] = None):
        super().__init__()
        self.remote = dict(remote or {})
        self.files: Dict[str, bytes] = {}

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        self.files[path] = data
        return f"memory://{path}"

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [p for p in self.files if p.startswith(prefix)]
        for path in doomed:
            del self.files[path]
        return len(doomed)

    async def fetch(self, url: str) -> bytes:
        if url not in self.remote:
            raise NetworkError(f"download {url} failed")
        return self.remote[url]


class _Response:
    def __init__(self, data):
        self.data = data


class _Query:
    """Enough of the PostgREST query builder for the stores under test."""

    def __init__(self, db: "FakeSupabase", table: str):
        self._db = db
        self._table = table
        self._op = "select"
        self._payload = None
        self._filters = []
        self._order = None
        self._limit = None
        self._on_conflict = None

    def select(self, *_columns):
        self._op = "select"
        return self

    def insert(self, row):
        self._op, self._payload = "insert", row
        return self

    def update(self, changes):
        self._op, self._payload = "update", changes
        return self

    def upsert(self, row, on_conflict=None):
        self._op, self._payload, self._on_conflict = "upsert", row, on_conflict
        return self

    def delete(self):
        self._op = "delete"
        return self

    def eq(self, column, value):
        self._filters.append(lambda r: r.get(column) == value)
        return self

    def in_(self, column, values):
        values = list(values)
        self._filters.append(lambda r: r.get(column) in values)
        return self

    def like(self, column, pattern):
        prefix = pattern[:-1].replace("\\_", "_").replace("\\%", "%").replace("\\\\", "\\")
        self._filters.append(lambda r: str(r.get(column, "")).startswith(prefix))
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def _matching(self, rows):
        return [r for r in rows if all(f(r) for f in self._filters)]

    def execute(self):
        with self._db.lock:
            rows = self._db.tables.setdefault(self._table, [])
            if self._op == "insert":
                rows.append(copy.deepcopy(self._payload))
                return _Response([copy.deepcopy(self._payload)])
            if self._op == "upsert":
                key = self._on_conflict
                rows[:] = [r for r in rows if r.get(key) != self._payload.get(key)]
                rows.append(copy.deepcopy(self._payload))
                return _Response([copy.deepcopy(self._payload)])
            matched = self._matching(rows)
            if self._op == "update":
                for row in matched:
                    row.update(copy.deepcopy(self._payload))
                return _Response(copy.deepcopy(matched))
            if self._op == "delete":
                rows[:] = [r for r in rows if r not in matched]
                return _Response(copy.deepcopy(matched))
            if self._order is not None:
                column, desc = self._order
                matched = sorted(matched, key=lambda r: r.get(column) or "", reverse=desc)
            if self._limit is not None:
                matched = matched[: self._limit]
            return _Response(copy.deepcopy(matched))


def _timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class _Rpc:
    def __init__(self, db: "FakeSupabase", name: str, params: Dict[str, Any]):
        self._db = db
        self._name = name
        self._params = params

    def execute(self):
        with self._db.lock:
            rows = self._db.tables.setdefault("background_tasks", [])
            if self._name == "create_background_task_if_absent":
                task = copy.deepcopy(self._params["p_task"])
                for row in rows:
                    if row["resource_key"] == task["resource_key"] and row["status"] in ("pending", "processing"):
                        return _Response({"created": False, "job": copy.deepcopy(row)})
                task.setdefault("id", str(uuid.uuid4()))
                task["status"] = "pending"
                task["retry_count"] = 0
                rows.append(task)
                return _Response({"created": True, "job": copy.deepcopy(task)})
            if self._name == "get_pending_tasks":
                stale_before = self._params.get("p_stale_before")
                pending = sorted(
                    (
                        r for r in rows
                        if r["status"] == "pending"
                        or (
                            r["status"] == "processing"
                            and stale_before is not None
                            and _timestamp(r["updated_at"]) <= _timestamp(stale_before)
                        )
                    ),
                    key=lambda r: r["created_at"],
                )
                return _Response([{"id": r["id"]} for r in pending[: self._params["p_limit"]]])
        raise NotImplementedError(self._name)


class FakeSupabase:
    """In-memory stand-in for the synchronous supabase ``Client``."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.lock = threading.Lock()

    def table(self, name: str) -> _Query:
        return _Query(self, name)

    def rpc(self, name: str, params: Dict[str, Any]) -> _Rpc:
        return _Rpc(self, name, params)


async def settle(rounds: int = 20) -> None:
    """Let notifier drain tasks and other ready callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
