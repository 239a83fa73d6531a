"""Durable task ledger.

The ledger is one JSON document holding every task the orchestrator has
delegated. It is shared with the worker entrypoint running inside the
container, so keys are camelCase on disk. Every write replaces the whole
document atomically. Writers in one process hold ``TaskLedger.write_lock``
across their read-modify-write; across processes the last writer wins.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import threading
from typing import Callable, List, Optional
import uuid

from syntropy.core.store import DataStore, read_json, write_json_atomic

logger = logging.getLogger("syntropy.ledger")

LEDGER_VERSION = 1

TASK_STATUSES = {"pending", "running", "completed", "failed", "aborted"}
TERMINAL_STATUSES = {"completed", "failed", "aborted"}
ACTIVE_STATUSES = {"pending", "running"}

TASK_TYPE_STANDARD = "standard"
TASK_TYPE_REBUILD = "privileged-rebuild"
TASK_TYPES = {TASK_TYPE_STANDARD, TASK_TYPE_REBUILD}

PRIORITIES = {"low", "normal", "high"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def new_task_id() -> str:
    return str(uuid.uuid4())


@dataclass
class TaskPayload:
    instruction: str
    context: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"instruction": self.instruction}
        if self.context is not None:
            d["context"] = self.context
        return d

    @classmethod
    def from_dict(cls, d: dict) -> TaskPayload:
        # "task" is the key older ledgers used for the instruction
        return cls(
            instruction=d.get("instruction", d.get("task", "")),
            context=d.get("context"),
        )


@dataclass
class Task:
    """A unit of delegated work with tracked lifecycle state."""
    id: str
    payload: TaskPayload
    status: str = "pending"             # pending|running|completed|failed|aborted
    type: str = TASK_TYPE_STANDARD      # standard|privileged-rebuild
    created_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    priority: str = "normal"

    worker_ref: Optional[str] = None
    exit_code: Optional[int] = None
    output: Optional[str] = None        # truncated tail
    summary: Optional[str] = None       # untruncated summary section
    error: Optional[str] = None

    attempts: int = 0
    max_attempts: int = 3

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def failed(self) -> bool:
        return self.status == "failed" or (self.exit_code is not None and self.exit_code != 0)

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "status": self.status,
            "type": self.type,
            "createdAt": format_ts(self.created_at),
            "startedAt": format_ts(self.started_at),
            "completedAt": format_ts(self.completed_at),
            "priority": self.priority,
            "payload": self.payload.to_dict(),
            "workerRef": self.worker_ref,
            "exitCode": self.exit_code,
            "output": self.output,
            "summary": self.summary,
            "error": self.error,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
        }
        return {k: v for k, v in d.items() if v is not None}

    @classmethod
    def from_dict(cls, d: dict) -> Task:
        return cls(
            id=d["id"],
            payload=TaskPayload.from_dict(d.get("payload", {})),
            status=d.get("status", "pending"),
            type=d.get("type", TASK_TYPE_STANDARD),
            created_at=parse_ts(d.get("createdAt")) or _now(),
            started_at=parse_ts(d.get("startedAt")),
            completed_at=parse_ts(d.get("completedAt")),
            priority=d.get("priority", "normal"),
            worker_ref=d.get("workerRef", d.get("workerId")),
            exit_code=d.get("exitCode"),
            output=d.get("output"),
            summary=d.get("summary"),
            error=d.get("error"),
            attempts=d.get("attempts", 0),
            max_attempts=d.get("maxAttempts", 3),
        )


class TaskLedger:
    """Whole-document reader/writer for the task ledger file."""

    def __init__(self, store: DataStore) -> None:
        self.store = store
        self.write_lock = threading.RLock()

    @property
    def path(self) -> str:
        return self.store.ledger_path

    def read(self) -> List[Task]:
        raw = read_json(self.path)
        if not isinstance(raw, dict):
            return []
        tasks: List[Task] = []
        for item in raw.get("tasks", []):
            try:
                task = Task.from_dict(item)
            except (KeyError, TypeError) as exc:
                logger.warning("Skipping malformed ledger entry: %s", exc)
                continue
            if task.type not in TASK_TYPES:
                task.type = TASK_TYPE_STANDARD
            tasks.append(task)
        return tasks

    def write(self, tasks: List[Task]) -> None:
        write_json_atomic(self.path, {"version": LEDGER_VERSION, "tasks": [t.to_dict() for t in tasks]})

    def get(self, task_id: str) -> Optional[Task]:
        for task in self.read():
            if task.id == task_id:
                return task
        return None

    def append(self, task: Task) -> Task:
        with self.write_lock:
            tasks = self.read()
            if any(t.id == task.id for t in tasks):
                raise ValueError(f"Task id already in ledger: {task.id}")
            tasks.append(task)
            self.write(tasks)
        return task

    def update(self, task_id: str, mutate: Callable[[Task], None]) -> Optional[Task]:
        """Read-modify-write a single task. Returns the updated task or None."""
        with self.write_lock:
            tasks = self.read()
            for task in tasks:
                if task.id == task_id:
                    mutate(task)
                    self.write(tasks)
                    return task
        return None

    def last_completed(self) -> Optional[Task]:
        """The task with the most recent ``completed_at``, if any."""
        done = [t for t in self.read() if t.completed_at is not None]
        if not done:
            return None
        return max(done, key=lambda t: t.completed_at)

    def active(self) -> List[Task]:
        return [t for t in self.read() if t.status in ACTIVE_STATUSES]
