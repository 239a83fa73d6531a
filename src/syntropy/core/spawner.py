"""Worker spawner: guards, ledger entry, detached launch.

A spawn passes three gates in order: the failure cooldown, the
single-flight lock, then best-effort housekeeping of exited workers. On
success a pending task is appended to the ledger and the worker is
launched without waiting for it to finish.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from syntropy.core.audit import log_event
from syntropy.core.ledger import (
    PRIORITIES,
    TASK_TYPE_REBUILD,
    TASK_TYPE_STANDARD,
    Task,
    TaskLedger,
    TaskPayload,
    _now,
    format_ts,
    new_task_id,
)
from syntropy.core.lock import WorkerLock
from syntropy.core.runtime import ContainerRuntime, ContainerRuntimeError
from syntropy.core.store import DataStore
from syntropy.core.worker_events import EVENT_SPAWN, WorkerEventStore

logger = logging.getLogger("syntropy.spawner")

DEFAULT_COOLDOWN = timedelta(seconds=60)


def worker_name(prefix: str, task_id: str, task_type: str = TASK_TYPE_STANDARD) -> str:
    """Deterministic worker name derived from the task id."""
    if task_type == TASK_TYPE_REBUILD:
        return f"{prefix}-rebuild-{task_id[:8]}"
    return f"{prefix}-{task_id[:8]}"


@dataclass
class SpawnResult:
    ok: bool
    task_id: Optional[str] = None
    worker_ref: Optional[str] = None
    message: str = ""
    error: str = ""
    running_task_id: Optional[str] = None
    running_task_status: Optional[str] = None
    wait_seconds: Optional[int] = None

    def to_dict(self) -> dict:
        if self.ok:
            return {
                "ok": True,
                "taskId": self.task_id,
                "workerRef": self.worker_ref,
                "status": "spawned",
                "message": self.message,
            }
        d: dict = {"ok": False, "error": self.error}
        if self.task_id:
            d["taskId"] = self.task_id
        if self.running_task_id:
            d["runningTaskId"] = self.running_task_id
            d["runningTaskStatus"] = self.running_task_status
        if self.wait_seconds is not None:
            d["waitSeconds"] = self.wait_seconds
        return d


class Spawner:
    def __init__(
        self,
        store: DataStore,
        ledger: TaskLedger,
        events: WorkerEventStore,
        lock: WorkerLock,
        runtime: ContainerRuntime,
        worker_prefix: str,
        host_root: str,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        audit_max_entries: int = 1000,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.events = events
        self.lock = lock
        self.runtime = runtime
        self.worker_prefix = worker_prefix
        self.host_root = host_root
        self.cooldown = cooldown
        self.audit_max_entries = audit_max_entries

    def _audit(self, event_type: str, payload: dict) -> None:
        log_event(self.store.data_dir, event_type, payload, max_entries=self.audit_max_entries)

    # ── guards ───────────────────────────────────────────────

    def check_cooldown(self, now: Optional[datetime] = None) -> Optional[SpawnResult]:
        """Reject if the most recently completed task failed under a minute ago."""
        last = self.ledger.last_completed()
        if last is None or not last.failed:
            return None
        now = now or _now()
        remaining = self.cooldown - (now - last.completed_at)
        if remaining <= timedelta(0):
            return None
        wait = math.ceil(remaining.total_seconds())
        self._audit("worker.spawn_rejected", {
            "reason": "cooldown_after_failure",
            "wait_seconds": wait,
            "last_task_id": last.id,
        })
        return SpawnResult(
            ok=False,
            error=f"Spawn cooldown active (last task failed). Wait {wait}s before retrying. Last task: {last.id}",
            running_task_id=last.id,
            running_task_status=last.status,
            wait_seconds=wait,
        )

    def _busy_result(self, reason: str, holder_task_id: Optional[str]) -> SpawnResult:
        occupying: Optional[Task] = self.ledger.get(holder_task_id) if holder_task_id else None
        if occupying is None:
            active = self.ledger.active()
            occupying = next((t for t in active if t.status == "running"), active[0] if active else None)
        running_id = occupying.id if occupying else holder_task_id
        self._audit("worker.spawn_rejected", {
            "reason": "worker_busy",
            "detail": reason,
            "running_task_id": running_id,
        })
        return SpawnResult(
            ok=False,
            error=f"Another worker is currently running (single-flight enforced). {reason}",
            running_task_id=running_id,
            running_task_status=occupying.status if occupying else None,
        )

    def _live_active_task(self) -> Optional[Task]:
        """First pending/running task whose worker container is still alive."""
        for task in self.ledger.active():
            name = task.worker_ref or worker_name(self.worker_prefix, task.id, task.type)
            if self.runtime.inspect(name).alive:
                return task
        return None

    def _housekeeping(self) -> None:
        try:
            removed, attempted = self.runtime.remove_exited(self.worker_prefix)
        except ContainerRuntimeError as exc:
            logger.warning("Worker housekeeping failed: %s", exc)
            return
        if attempted:
            logger.info("Cleaned up exited worker containers: removed=%d/%d", removed, attempted)

    # ── spawn ────────────────────────────────────────────────

    def spawn(
        self,
        instruction: str,
        context: Optional[str] = None,
        priority: str = "normal",
    ) -> SpawnResult:
        """Spawn an ordinary worker task."""
        return self._spawn(instruction, context, priority, TASK_TYPE_STANDARD)

    def spawn_privileged_rebuild(self, instruction: str, context: Optional[str] = None) -> SpawnResult:
        """Spawn the self-rebuild task. Skips the cooldown; still needs the lock."""
        return self._spawn(instruction, context, "high", TASK_TYPE_REBUILD, max_attempts=1, bypass_cooldown=True)

    def _spawn(
        self,
        instruction: str,
        context: Optional[str],
        priority: str,
        task_type: str,
        max_attempts: int = 3,
        bypass_cooldown: bool = False,
    ) -> SpawnResult:
        if not instruction or not instruction.strip():
            return SpawnResult(ok=False, error="instruction is required")
        if priority not in PRIORITIES:
            return SpawnResult(ok=False, error=f"Invalid priority: {priority}")
        logger.info("Spawn requested (type=%s, priority=%s): %s", task_type, priority, instruction[:200])

        if not bypass_cooldown:
            rejected = self.check_cooldown()
            if rejected:
                return rejected

        task_id = new_task_id()
        lock = self.lock.acquire(task_id)
        if not lock.acquired:
            return self._busy_result(lock.reason, lock.holder_task_id)
        live = self._live_active_task()
        if live is not None:
            # Lock file gone (released early by the worker) but its task is not settled.
            self.lock.release(task_id)
            return self._busy_result(f"Task {live.id} is still {live.status}", live.id)

        self._housekeeping()

        name = worker_name(self.worker_prefix, task_id, task_type)
        task = Task(
            id=task_id,
            payload=TaskPayload(instruction=instruction, context=context),
            type=task_type,
            priority=priority,
            worker_ref=name,
            max_attempts=max_attempts,
        )
        self.ledger.append(task)
        self._audit("worker.task_created", {"task_id": task_id, "type": task_type, "task": instruction[:500]})

        self.lock.tag(task_id, name)
        self.events.record(task_id, name, EVENT_SPAWN, status="pending", spawn_time=format_ts(_now()))

        try:
            self.runtime.launch(name, task_id, self.host_root)
        except ContainerRuntimeError as exc:
            # The pending row stays; the reconciler aborts it after the launch grace period.
            logger.error("Worker launch failed for %s: %s", task_id, exc)
            self.ledger.update(task_id, lambda t: setattr(t, "error", str(exc)))
            self.lock.release(task_id)
            self._audit("worker.spawn_failed", {"task_id": task_id, "error": str(exc)})
            return SpawnResult(ok=False, task_id=task_id, error=str(exc))

        self._audit("worker.spawned", {"task_id": task_id, "container": name})
        return SpawnResult(
            ok=True,
            task_id=task_id,
            worker_ref=name,
            message=f"Worker spawned. Task ID: {task_id[:8]}. Poll status('{task_id}') to monitor progress.",
        )
