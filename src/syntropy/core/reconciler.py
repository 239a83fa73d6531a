"""Pull-based status reconciliation.

Nothing polls workers in the background. When a caller asks for a task's
status the reconciler compares the ledger with what the runtime reports
and, if the worker is gone, records the terminal state:

    pending ──▶ running ──▶ completed | failed | aborted
       └──────────────────▶ completed | failed | aborted

Completion is therefore detected lazily, at the next poll.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from syntropy.core.audit import log_event
from syntropy.core.ledger import (
    ACTIVE_STATUSES,
    TASK_STATUSES,
    Task,
    TaskLedger,
    _now,
    format_ts,
)
from syntropy.core.lock import LAUNCH_GRACE, WorkerLock
from syntropy.core.runtime import ContainerRuntime
from syntropy.core.spawner import worker_name
from syntropy.core.store import DataStore
from syntropy.core.worker_events import EVENT_SPAWN, WorkerEventStore

logger = logging.getLogger("syntropy.reconciler")

OUTPUT_TAIL_CHARS = 2000
SNAPSHOT_OUTPUT_CHARS = 3000
PREVIEW_CHARS = 100

_SUMMARY_RE = re.compile(r"^[\t ]*##\s+summary.*$", re.IGNORECASE | re.MULTILINE)


def extract_summary(output: str) -> Optional[str]:
    """Return everything from the first ``## Summary`` heading onwards."""
    match = _SUMMARY_RE.search(output)
    if not match:
        return None
    return output[match.start():]


def read_output_artifact(path: str) -> tuple[Optional[str], Optional[str]]:
    """Read an output artifact. Returns ``(tail, summary)``."""
    if not os.path.exists(path):
        return None, None
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            output = f.read()
    except OSError as exc:
        logger.warning("Cannot read output artifact %s: %s", path, exc)
        return None, None
    return output[-OUTPUT_TAIL_CHARS:], extract_summary(output)


def task_snapshot(task: Task) -> dict:
    return {
        "taskId": task.id,
        "status": task.status,
        "type": task.type,
        "priority": task.priority,
        "createdAt": format_ts(task.created_at),
        "startedAt": format_ts(task.started_at),
        "completedAt": format_ts(task.completed_at),
        "attempts": task.attempts,
        "exitCode": task.exit_code,
        "summary": task.summary,
        "output": task.output[-SNAPSHOT_OUTPUT_CHARS:] if task.output else None,
        "error": task.error,
        "workerRef": task.worker_ref,
    }


@dataclass
class Observation:
    status: str
    exit_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class StatusResult:
    ok: bool
    task: Optional[Task] = None
    error: str = ""

    def to_dict(self) -> dict:
        if not self.ok or self.task is None:
            return {"ok": False, "error": self.error}
        return {"ok": True, **task_snapshot(self.task)}


class StatusReconciler:
    def __init__(
        self,
        store: DataStore,
        ledger: TaskLedger,
        events: WorkerEventStore,
        lock: WorkerLock,
        runtime: ContainerRuntime,
        worker_prefix: str,
        launch_grace: timedelta = LAUNCH_GRACE,
        audit_max_entries: int = 1000,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.events = events
        self.lock = lock
        self.runtime = runtime
        self.worker_prefix = worker_prefix
        self.launch_grace = launch_grace
        self.audit_max_entries = audit_max_entries

    def worker_ref(self, task: Task) -> str:
        return task.worker_ref or worker_name(self.worker_prefix, task.id, task.type)

    # ── observation ──────────────────────────────────────────

    def _backfill_running_event(self, task: Task) -> None:
        if task.status != "running" or self.events.has_running_spawn(task.id):
            return
        spawn = self.events.first_spawn(task.id)
        spawn_time = spawn.spawn_time if spawn and spawn.spawn_time else format_ts(task.started_at)
        self.events.record(task.id, self.worker_ref(task), EVENT_SPAWN, status="running", spawn_time=spawn_time)

    def observe(self, task: Task, now: Optional[datetime] = None) -> Optional[Observation]:
        """Decide whether an active task has ended. ``None`` means still live."""
        if task.status not in ACTIVE_STATUSES:
            return None
        # The worker records its exit code and drops the lock before its
        # container stops, so a recorded code ends the task on its own.
        if task.exit_code is not None:
            return Observation("completed" if task.exit_code == 0 else "failed", exit_code=task.exit_code)
        state = self.runtime.inspect(self.worker_ref(task))
        if state.alive:
            return None
        if state.exists:
            return Observation("completed" if state.exit_code == 0 else "failed", exit_code=state.exit_code)

        # Worker removed before we saw it exit.
        if task.status == "running":
            return Observation("aborted", error="Worker disappeared without a recorded exit")
        now = now or _now()
        if task.error or now - task.created_at > self.launch_grace:
            return Observation("aborted", error=task.error or "Worker disappeared before start")
        return None

    def finalize(self, task_id: str, observation: Observation, now: Optional[datetime] = None) -> Optional[Task]:
        """Record a terminal transition once. Returns the stored task."""
        now = now or _now()
        with self.ledger.write_lock:
            tasks = self.ledger.read()
            task = next((t for t in tasks if t.id == task_id), None)
            if task is None:
                return None
            if task.is_terminal:
                return task

            task.status = observation.status
            task.completed_at = now
            if observation.exit_code is not None:
                task.exit_code = observation.exit_code
            if observation.error:
                task.error = observation.error
            tail, summary = read_output_artifact(self.store.output_path(task_id))
            if tail is not None:
                task.output = tail
                task.summary = summary
            self.ledger.write(tasks)
        log_event(
            self.store.data_dir,
            "worker.status_updated",
            {"task_id": task_id, "status": task.status, "exit_code": task.exit_code},
            max_entries=self.audit_max_entries,
        )

        self.events.record_terminal(
            task_id,
            self.worker_ref(task),
            task.status,
            now,
            exit_code=task.exit_code,
            error=observation.error,
        )
        self.lock.release(task_id)
        logger.info("Task %s reconciled to %s (exit=%s)", task_id, task.status, task.exit_code)
        return task

    # ── public operations ────────────────────────────────────

    def status(self, task_id: str, now: Optional[datetime] = None) -> StatusResult:
        task = self.ledger.get(task_id)
        if task is None:
            return StatusResult(ok=False, error=f"Task {task_id} not found in ledger")

        self._backfill_running_event(task)
        observation = self.observe(task, now)
        if observation is not None:
            task = self.finalize(task_id, observation, now) or task
        return StatusResult(ok=True, task=task)

    def list_tasks(self, status: str = "all", limit: int = 10) -> dict:
        if status != "all" and status not in TASK_STATUSES:
            return {"ok": False, "error": f"Invalid status filter: {status}"}
        all_tasks = self.ledger.read()
        tasks = all_tasks if status == "all" else [t for t in all_tasks if t.status == status]
        tasks = sorted(tasks, key=lambda t: t.created_at, reverse=True)[: max(limit, 0)]
        return {
            "ok": True,
            "total": len(all_tasks),
            "filtered": len(tasks),
            "tasks": [
                {
                    "id": t.id,
                    "status": t.status,
                    "type": t.type,
                    "createdAt": format_ts(t.created_at),
                    "completedAt": format_ts(t.completed_at),
                    "exitCode": t.exit_code,
                    "taskPreview": t.payload.instruction[:PREVIEW_CHARS],
                }
                for t in tasks
            ],
        }

    def read_logs(self, task_id: str, lines: int = 200) -> dict:
        """Tail a worker's live log, falling back to its output artifact.

        ``task_id == "live"`` reads the shared live log of all worker runs.
        """
        if task_id == "live":
            log_path = self.store.live_log_path()
        else:
            log_path = self.store.worker_log_path(task_id)
            if not os.path.exists(log_path):
                log_path = self.store.output_path(task_id)
        if not os.path.exists(log_path):
            hint = "No workers have run yet" if task_id == "live" else (
                f"Worker {task_id} may not have started or logs were cleaned up"
            )
            return {"ok": False, "error": f"Log file not found: {log_path}", "hint": hint}
        try:
            with open(log_path, "r", encoding="utf-8", errors="replace") as f:
                all_lines = f.read().split("\n")
        except OSError as exc:
            return {"ok": False, "error": f"Failed to read log: {exc}"}
        requested = all_lines[-lines:] if lines > 0 else []
        return {
            "ok": True,
            "logPath": log_path,
            "totalLines": len(all_lines),
            "returnedLines": len(requested),
            "content": "\n".join(requested),
        }
