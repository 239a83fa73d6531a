from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import os
import threading
from concurrent.futures import ThreadPoolExecutor

from syntropy.core.lock import LockInfo, WorkerLock
from syntropy.core.store import write_json_atomic

from conftest import PREFIX


def _write_lock(store, task_id, worker_ref=None, age=timedelta(0)):
    created = datetime.now(timezone.utc) - age
    write_json_atomic(store.lock_path, LockInfo(task_id, worker_ref, created).to_dict())


class TestAcquire:
    def test_acquire_creates_lock(self, lock, store):
        result = lock.acquire("t1")
        assert result.acquired
        with open(store.lock_path, encoding="utf-8") as f:
            assert json.load(f)["taskId"] == "t1"

    def test_second_acquire_rejected_while_holder_alive(self, lock, runtime):
        assert lock.acquire("t1").acquired
        lock.tag("t1", f"{PREFIX}-t1")
        runtime.launch(f"{PREFIX}-t1", "t1", "/srv")
        result = lock.acquire("t2")
        assert not result.acquired
        assert result.holder_task_id == "t1"
        assert f"{PREFIX}-t1" in result.reason

    def test_young_untagged_lock_is_respected(self, lock, store):
        _write_lock(store, "t1")
        result = lock.acquire("t2")
        assert not result.acquired
        assert result.holder_task_id == "t1"

    def test_stale_lock_with_exited_worker_is_replaced(self, lock, store, runtime):
        runtime.exit(f"{PREFIX}-t1", 0)
        _write_lock(store, "t1", f"{PREFIX}-t1")
        assert lock.acquire("t2").acquired
        assert lock.holder().task_id == "t2"

    def test_old_lock_without_worker_is_stale(self, lock, store):
        _write_lock(store, "t1", f"{PREFIX}-t1", age=timedelta(minutes=5))
        assert lock.acquire("t2").acquired

    def test_untagged_lock_kept_while_any_worker_runs(self, lock, store, runtime):
        runtime.launch(f"{PREFIX}-other", "other", "/srv")
        _write_lock(store, None, age=timedelta(minutes=5))
        assert not lock.acquire("t2").acquired

    def test_unreadable_lock_is_stale_when_idle(self, lock, store):
        with open(store.lock_path, "w", encoding="utf-8") as f:
            f.write("garbage")
        assert lock.acquire("t2").acquired


class TestRelease:
    def test_release_by_holder(self, lock, store):
        lock.acquire("t1")
        assert lock.release("t1")
        assert not os.path.exists(store.lock_path)
        assert lock.holder() is None

    def test_release_by_other_task_is_noop(self, lock, store):
        lock.acquire("t1")
        assert not lock.release("t2")
        assert os.path.exists(store.lock_path)

    def test_release_without_lock(self, lock):
        assert not lock.release("t1")


def test_tag_rewrites_lock(lock):
    lock.acquire("t1")
    lock.tag("t1", f"{PREFIX}-t1")
    info = lock.holder()
    assert info.task_id == "t1"
    assert info.worker_ref == f"{PREFIX}-t1"


def test_only_one_of_many_acquires_wins(store, runtime):
    locks = [WorkerLock(store, runtime, PREFIX) for _ in range(5)]
    results = [lk.acquire(f"t{i}") for i, lk in enumerate(locks)]
    assert sum(r.acquired for r in results) == 1


def test_concurrent_acquires_admit_one_and_name_it(store, runtime):
    barrier = threading.Barrier(8)

    def _try(i):
        lk = WorkerLock(store, runtime, PREFIX)
        barrier.wait()
        return f"t{i}", lk.acquire(f"t{i}")

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(_try, range(8)))

    winners = [task_id for task_id, r in outcomes if r.acquired]
    assert len(winners) == 1
    assert all(r.holder_task_id == winners[0] for _, r in outcomes if not r.acquired)
    assert WorkerLock(store, runtime, PREFIX).holder().task_id == winners[0]
    assert [n for n in os.listdir(store.data_dir) if n.endswith(".tmp")] == []
