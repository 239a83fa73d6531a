"""Single-flight worker lock.

The lock is a marker file created exclusively: a fully written temp file
is hard-linked into place, which fails if the lock already exists. Its
existence means a worker may be running. Staleness is judged by the
liveness of the worker the lock names. The orchestrator releases the lock
explicitly when it observes the holder's terminal state, and the worker
entrypoint removes it on exit if it still names its task.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from syntropy.core.ledger import _now, format_ts, parse_ts
from syntropy.core.runtime import ContainerRuntime
from syntropy.core.store import LOCK_FILE, DataStore, write_json_atomic

logger = logging.getLogger("syntropy.lock")

# A freshly tagged lock may name a worker the runtime has not created yet.
LAUNCH_GRACE = timedelta(seconds=120)


@dataclass
class LockInfo:
    task_id: Optional[str]
    worker_ref: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        d = {"taskId": self.task_id, "createdAt": format_ts(self.created_at)}
        if self.worker_ref:
            d["workerRef"] = self.worker_ref
        return d


@dataclass
class LockResult:
    acquired: bool
    reason: str = ""
    holder_task_id: Optional[str] = None


class WorkerLock:
    """File-based mutex gating worker spawn."""

    def __init__(
        self,
        store: DataStore,
        runtime: ContainerRuntime,
        worker_prefix: str,
        launch_grace: timedelta = LAUNCH_GRACE,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.worker_prefix = worker_prefix
        self.launch_grace = launch_grace

    @property
    def path(self) -> str:
        return self.store.lock_path

    def _read_raw(self) -> Optional[str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Cannot read worker lock: %s", exc)
            return ""

    @staticmethod
    def _parse(raw: str) -> LockInfo:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return LockInfo(task_id=None)
        if not isinstance(data, dict):
            return LockInfo(task_id=None)
        return LockInfo(
            task_id=data.get("taskId"),
            worker_ref=data.get("workerRef"),
            created_at=parse_ts(data.get("createdAt")),
        )

    def holder(self) -> Optional[LockInfo]:
        """Return the current lock contents, or ``None`` when unlocked."""
        raw = self._read_raw()
        if raw is None:
            return None
        return self._parse(raw)

    def is_stale(self, info: LockInfo, now: Optional[datetime] = None) -> bool:
        now = now or _now()
        if info.worker_ref:
            state = self.runtime.inspect(info.worker_ref)
            if state.alive:
                return False
            if state.exists:
                return True
        elif self.runtime.list_running(self.worker_prefix):
            return False
        young = info.created_at is not None and now - info.created_at < self.launch_grace
        return not young

    def _remove_if_unchanged(self, raw: str) -> bool:
        if self._read_raw() != raw:
            return False
        try:
            os.remove(self.path)
        except FileNotFoundError:
            return False
        return True

    def _create_exclusive(self, info: LockInfo) -> bool:
        """Publish a fully written lock file; False if one already exists."""
        fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(self.path), prefix=LOCK_FILE + ".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(info.to_dict(), f, indent=2)
            os.chmod(tmp_path, 0o644)
            # fails with EEXIST like O_CREAT|O_EXCL; readers never see an empty lock
            os.link(tmp_path, self.path)
        except FileExistsError:
            return False
        finally:
            os.remove(tmp_path)
        return True

    def acquire(self, task_id: str) -> LockResult:
        self.store.ensure()

        raw = self._read_raw()
        if raw is not None:
            info = self._parse(raw)
            if self.is_stale(info):
                if self._remove_if_unchanged(raw):
                    logger.info("Removed stale worker lock held by %s", info.task_id)

        if not self._create_exclusive(LockInfo(task_id=task_id, created_at=_now())):
            info = self.holder()
            running = self.runtime.list_running(self.worker_prefix)
            reason = f"Worker already running: {', '.join(running)}" if running else "Worker lock already held"
            return LockResult(
                acquired=False,
                reason=reason,
                holder_task_id=info.task_id if info else None,
            )
        logger.info("Acquired worker lock for %s", task_id)
        return LockResult(acquired=True)

    def tag(self, task_id: str, worker_ref: Optional[str] = None) -> None:
        """Point the held lock at the real task and its worker."""
        write_json_atomic(self.path, LockInfo(task_id=task_id, worker_ref=worker_ref, created_at=_now()).to_dict())

    def release(self, task_id: str) -> bool:
        """Remove the lock if ``task_id`` holds it. Returns True if removed."""
        raw = self._read_raw()
        if raw is None:
            return False
        if self._parse(raw).task_id != task_id:
            return False
        removed = self._remove_if_unchanged(raw)
        if removed:
            logger.info("Released worker lock held by %s", task_id)
        return removed
