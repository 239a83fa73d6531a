"""Retention and cleanup sweep for the task ledger and output artifacts."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from syntropy.core.audit import log_event
from syntropy.core.ledger import Task, TaskLedger, _now
from syntropy.core.lock import WorkerLock
from syntropy.core.runtime import ContainerRuntime, ContainerRuntimeError
from syntropy.core.spawner import worker_name
from syntropy.core.store import DataStore
from syntropy.core.worker_events import WorkerEventStore

logger = logging.getLogger("syntropy.cleanup")

ABORT_ERROR = "Worker no longer running; task aborted by cleanup"


@dataclass
class CleanupResult:
    aborted: int = 0
    removed: int = 0
    orphaned: int = 0
    remaining: int = 0

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "aborted": self.aborted,
            "removed": self.removed,
            "orphaned": self.orphaned,
            "remaining": self.remaining,
        }


def _remove_file(path: str) -> bool:
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.warning("Failed to delete %s: %s", path, exc)
        return False


class TaskCleaner:
    def __init__(
        self,
        store: DataStore,
        ledger: TaskLedger,
        events: WorkerEventStore,
        lock: WorkerLock,
        runtime: ContainerRuntime,
        worker_prefix: str,
        audit_max_entries: int = 1000,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.events = events
        self.lock = lock
        self.runtime = runtime
        self.worker_prefix = worker_prefix
        self.audit_max_entries = audit_max_entries

    def _worker_gone(self, task: Task) -> Optional[int]:
        """Return the exit code (or -1) if the task's worker is gone, else None."""
        name = task.worker_ref or worker_name(self.worker_prefix, task.id, task.type)
        state = self.runtime.inspect(name)
        if state.alive:
            return None
        return state.exit_code

    def _sweep(
        self, tasks: list[Task], now: datetime, retention: timedelta
    ) -> tuple[list[Task], list[Task], list[Task]]:
        """Abort dead running tasks in place, then split out expired ones.

        Returns ``(aborted, expired, kept)``.
        """
        aborted: list[Task] = []
        for task in tasks:
            if task.status != "running":
                continue
            try:
                exit_code = self._worker_gone(task)
            except ContainerRuntimeError as exc:
                logger.warning("Could not check worker for %s: %s", task.id, exc)
                continue
            if exit_code is None:
                continue
            task.status = "aborted"
            task.completed_at = now
            task.error = task.error or ABORT_ERROR
            if exit_code >= 0:
                task.exit_code = exit_code
            aborted.append(task)

        kept: list[Task] = []
        expired: list[Task] = []
        for task in tasks:
            if task.is_terminal and now - (task.completed_at or task.created_at) > retention:
                expired.append(task)
            else:
                kept.append(task)
        return aborted, expired, kept

    def cleanup(self, retention_days: float = 7, now: Optional[datetime] = None) -> CleanupResult:
        now = now or _now()
        retention = timedelta(days=retention_days)
        result = CleanupResult()
        with self.ledger.write_lock:
            tasks = self.ledger.read()
            aborted, expired, kept = self._sweep(tasks, now, retention)
            self.ledger.write(kept)
        result.aborted = len(aborted)
        result.removed = len(expired)
        result.remaining = len(kept)

        for task in aborted:
            try:
                self.events.record_terminal(
                    task.id,
                    task.worker_ref or worker_name(self.worker_prefix, task.id, task.type),
                    "aborted",
                    now,
                    exit_code=task.exit_code,
                    error=task.error,
                )
                self.lock.release(task.id)
            except OSError as exc:
                logger.warning("Failed to record abort for %s: %s", task.id, exc)

        for task in expired:
            _remove_file(self.store.output_path(task.id))

        kept_ids = {t.id for t in kept}
        for task_id, path in self.store.output_artifacts().items():
            if task_id not in kept_ids and _remove_file(path):
                result.orphaned += 1

        log_event(
            self.store.data_dir,
            "worker.cleanup",
            {"aborted": result.aborted, "removed": result.removed, "orphaned": result.orphaned},
            max_entries=self.audit_max_entries,
        )
        logger.info(
            "Cleanup done: aborted=%d removed=%d orphaned=%d remaining=%d",
            result.aborted, result.removed, result.orphaned, result.remaining,
        )
        return result
