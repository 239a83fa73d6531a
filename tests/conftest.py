from __future__ import annotations

import threading
from typing import Optional

import pytest

from syntropy.core.cleanup import TaskCleaner
from syntropy.core.config import Settings
from syntropy.core.ledger import TaskLedger
from syntropy.core.lock import WorkerLock
from syntropy.core.reconciler import StatusReconciler
from syntropy.core.runtime import MISSING, ContainerRuntime, ContainerRuntimeError, WorkerState
from syntropy.core.spawner import Spawner
from syntropy.core.store import DataStore
from syntropy.core.worker_events import WorkerEventStore

PREFIX = "syntropy-worker"


class FakeRuntime(ContainerRuntime):
    """In-memory container runtime. Safe to share between threads."""

    def __init__(self) -> None:
        self.containers: dict[str, WorkerState] = {}
        self.launched: list[tuple[str, str, str]] = []
        self.removed: list[str] = []
        self.fail_launch: Optional[str] = None
        self._mutex = threading.Lock()

    def _snapshot(self) -> list[tuple[str, WorkerState]]:
        with self._mutex:
            return list(self.containers.items())

    def list_running(self, prefix: str) -> list[str]:
        return [n for n, s in self._snapshot() if n.startswith(f"{prefix}-") and s.alive]

    def list_exited(self, prefix: str) -> list[str]:
        return [n for n, s in self._snapshot() if n.startswith(f"{prefix}-") and s.exited]

    def inspect(self, name: str) -> WorkerState:
        with self._mutex:
            return self.containers.get(name, MISSING)

    def launch(self, name: str, task_id: str, host_root: str) -> None:
        if self.fail_launch:
            raise ContainerRuntimeError(self.fail_launch)
        with self._mutex:
            self.launched.append((name, task_id, host_root))
            self.containers[name] = WorkerState(exists=True, exited=False, exit_code=0, status="running")

    def remove(self, names: list[str]) -> int:
        with self._mutex:
            for name in names:
                self.containers.pop(name, None)
                self.removed.append(name)
        return len(names)

    # test helpers

    def exit(self, name: str, code: int = 0) -> None:
        self.containers[name] = WorkerState(exists=True, exited=True, exit_code=code, status="exited")

    def vanish(self, name: str) -> None:
        self.containers.pop(name, None)


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def store(tmp_path):
    s = DataStore(str(tmp_path / "data"), str(tmp_path / "logs"))
    s.ensure()
    return s


@pytest.fixture
def ledger(store):
    return TaskLedger(store)


@pytest.fixture
def events(store):
    return WorkerEventStore(store)


@pytest.fixture
def lock(store, runtime):
    return WorkerLock(store, runtime, PREFIX)


@pytest.fixture
def spawner(store, ledger, events, lock, runtime):
    return Spawner(store, ledger, events, lock, runtime, PREFIX, "/srv/syntropy")


@pytest.fixture
def reconciler(store, ledger, events, lock, runtime):
    return StatusReconciler(store, ledger, events, lock, runtime, PREFIX)


@pytest.fixture
def cleaner(store, ledger, events, lock, runtime):
    return TaskCleaner(store, ledger, events, lock, runtime, PREFIX)


@pytest.fixture
def settings(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    return Settings(
        log_level="info",
        log_dir=str(tmp_path / "logs"),
        data_dir=str(tmp_path / "data"),
        root_dir=str(root),
        host_root="/srv/syntropy",
        continuity_path=str(root / "CONTINUITY.md"),
        worker_prefix=PREFIX,
        worker_service="worker",
        worker_command="opencode run",
        worker_timeout=60,
        spawn_cooldown_seconds=60,
        healing_threshold_seconds=1200,
        retention_days=7,
        health_url="http://syntropy:3000/health",
        host="127.0.0.1",
        port=3000,
        mcp_token=None,
        audit_max_entries=1000,
        clear_logs_on_launch=False,
    )


def write_artifact(store: DataStore, task_id: str, text: str) -> str:
    path = store.output_path(task_id)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    return path
