"""Orchestrator facade.

Wires the data store, ledger, event store, lock, runtime and the
components built on them, and exposes the public operations. Every
operation returns a plain dict with ``ok`` (and ``error`` when not ok);
unexpected exceptions are logged and turned into error results so a
caller never has to catch.
"""
from __future__ import annotations

from datetime import timedelta
import functools
import logging
from typing import Any, Callable, Dict, Optional

from syntropy.core.cleanup import TaskCleaner
from syntropy.core.config import Settings
from syntropy.core.ledger import TASK_STATUSES, TaskLedger
from syntropy.core.lock import WorkerLock
from syntropy.core.rebuild import SelfRebuildCoordinator
from syntropy.core.reconciler import StatusReconciler
from syntropy.core.runtime import ContainerRuntime, DockerRuntime
from syntropy.core.spawner import Spawner
from syntropy.core.store import DataStore
from syntropy.core.worker_events import WorkerEventStore

logger = logging.getLogger("syntropy.orchestrator")


def _never_raises(fn: Callable[..., Dict[str, Any]]) -> Callable[..., Dict[str, Any]]:
    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Dict[str, Any]:
        try:
            return fn(*args, **kwargs)
        except Exception as exc:  # noqa: BLE001
            logger.exception("%s failed", fn.__name__)
            return {"ok": False, "error": f"{fn.__name__} failed: {exc}"}
    return wrapper


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        runtime: Optional[ContainerRuntime] = None,
    ) -> None:
        self.settings = settings
        self.store = DataStore(settings.data_dir, settings.log_dir)
        self.runtime = runtime or DockerRuntime(settings.root_dir, service=settings.worker_service)
        self.ledger = TaskLedger(self.store)
        self.events = WorkerEventStore(self.store)
        self.lock = WorkerLock(self.store, self.runtime, settings.worker_prefix)
        audit_max = settings.audit_max_entries
        self.spawner = Spawner(
            self.store,
            self.ledger,
            self.events,
            self.lock,
            self.runtime,
            settings.worker_prefix,
            settings.host_root,
            cooldown=timedelta(seconds=settings.spawn_cooldown_seconds),
            audit_max_entries=audit_max,
        )
        self.reconciler = StatusReconciler(
            self.store, self.ledger, self.events, self.lock, self.runtime,
            settings.worker_prefix, audit_max_entries=audit_max,
        )
        self.cleaner = TaskCleaner(
            self.store, self.ledger, self.events, self.lock, self.runtime,
            settings.worker_prefix, audit_max_entries=audit_max,
        )
        self.rebuilder = SelfRebuildCoordinator(
            self.spawner,
            settings.continuity_path,
            settings.root_dir,
            settings.health_url,
            audit_max_entries=audit_max,
        )

    def _reconcile_active(self) -> None:
        """Settle active tasks so finished workers free the lock and feed the cooldown."""
        for task in self.ledger.active():
            self.reconciler.status(task.id)

    @_never_raises
    def spawn(self, instruction: str, context: Optional[str] = None, priority: str = "normal") -> Dict[str, Any]:
        self._reconcile_active()
        return self.spawner.spawn(instruction, context, priority).to_dict()

    @_never_raises
    def status(self, task_id: str) -> Dict[str, Any]:
        return self.reconciler.status(task_id).to_dict()

    @_never_raises
    def list(self, status: str = "all", limit: int = 10) -> Dict[str, Any]:
        return self.reconciler.list_tasks(status, limit)

    @_never_raises
    def cleanup(self, retention_days: Optional[float] = None) -> Dict[str, Any]:
        days = self.settings.retention_days if retention_days is None else retention_days
        return self.cleaner.cleanup(days).to_dict()

    @_never_raises
    def schedule_self_rebuild(self, reason: str, git_ref: Optional[str] = None) -> Dict[str, Any]:
        self._reconcile_active()
        return self.rebuilder.schedule(reason, git_ref)

    @_never_raises
    def healing(self) -> Dict[str, Any]:
        found = self.events.detect_healing(
            threshold=timedelta(seconds=self.settings.healing_threshold_seconds)
        )
        return {
            "ok": True,
            "healing": [e.to_dict() for e in found["healing"]],
            "active": [e.to_dict() for e in found["active"]],
        }

    @_never_raises
    def read_logs(self, task_id: str, lines: int = 200) -> Dict[str, Any]:
        return self.reconciler.read_logs(task_id, lines)

    @_never_raises
    def control_status(self) -> Dict[str, Any]:
        tasks = self.ledger.read()
        counts = {status: 0 for status in sorted(TASK_STATUSES)}
        for task in tasks:
            counts[task.status] = counts.get(task.status, 0) + 1
        holder = self.lock.holder()
        healing = self.events.detect_healing(
            threshold=timedelta(seconds=self.settings.healing_threshold_seconds)
        )
        return {
            "ok": True,
            "tasks": counts,
            "total": len(tasks),
            "lock": holder.to_dict() if holder else None,
            "healing": len(healing["healing"]),
            "active": len(healing["active"]),
        }
