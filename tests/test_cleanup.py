from __future__ import annotations

from datetime import datetime, timedelta, timezone
import os

from syntropy.core.audit import read_events
from syntropy.core.ledger import Task, TaskPayload
from syntropy.core.spawner import worker_name

from conftest import PREFIX, write_artifact

NOW = datetime.now(timezone.utc)


def _done(task_id: str, days_ago: float, status: str = "completed") -> Task:
    return Task(
        id=task_id,
        payload=TaskPayload(instruction="x"),
        status=status,
        created_at=NOW - timedelta(days=days_ago, hours=1),
        completed_at=NOW - timedelta(days=days_ago),
        exit_code=0 if status == "completed" else 1,
    )


def test_removes_only_expired_tasks_and_their_artifacts(cleaner, ledger, store):
    ledger.append(_done("old", days_ago=8))
    ledger.append(_done("recent", days_ago=1))
    old_path = write_artifact(store, "old", "old output")
    recent_path = write_artifact(store, "recent", "recent output")

    result = cleaner.cleanup(7)

    assert (result.removed, result.aborted, result.orphaned, result.remaining) == (1, 0, 0, 1)
    assert [t.id for t in ledger.read()] == ["recent"]
    assert not os.path.exists(old_path)
    assert os.path.exists(recent_path)


def test_uses_created_at_when_never_completed(cleaner, ledger):
    ledger.append(Task(
        id="ancient",
        payload=TaskPayload(instruction="x"),
        status="aborted",
        created_at=NOW - timedelta(days=30),
    ))
    assert cleaner.cleanup(7).removed == 1


def test_active_tasks_are_never_removed(cleaner, ledger, runtime):
    task = Task(
        id="long-running",
        payload=TaskPayload(instruction="x"),
        status="running",
        created_at=NOW - timedelta(days=30),
    )
    ledger.append(task)
    runtime.launch(worker_name(PREFIX, task.id), task.id, "/srv")
    result = cleaner.cleanup(7)
    assert result.removed == 0
    assert ledger.get("long-running").status == "running"


def test_running_task_without_worker_is_aborted(cleaner, ledger, events, lock):
    ledger.append(Task(id="lost", payload=TaskPayload(instruction="x"), status="running"))
    lock.acquire("lost")

    result = cleaner.cleanup(7)

    assert result.aborted == 1
    task = ledger.get("lost")
    assert task.status == "aborted"
    assert task.completed_at is not None
    assert task.error
    terminal = [e for e in events.for_task("lost") if e.event_type == "aborted"]
    assert len(terminal) == 1
    assert lock.holder() is None


def test_running_task_with_exited_worker_is_aborted(cleaner, ledger, runtime):
    task = Task(id="exited-1", payload=TaskPayload(instruction="x"), status="running")
    ledger.append(task)
    runtime.exit(worker_name(PREFIX, task.id), 2)
    cleaner.cleanup(7)
    stored = ledger.get("exited-1")
    assert stored.status == "aborted"
    assert stored.exit_code == 2


def test_orphaned_artifacts_are_reaped(cleaner, ledger, store):
    ledger.append(_done("kept", days_ago=1))
    kept = write_artifact(store, "kept", "x")
    orphan = write_artifact(store, "no-such-task", "x")

    result = cleaner.cleanup(7)

    assert result.orphaned == 1
    assert os.path.exists(kept)
    assert not os.path.exists(orphan)


def test_unrelated_files_untouched(cleaner, store):
    other = os.path.join(store.data_dir, "notes.txt")
    with open(other, "w", encoding="utf-8") as f:
        f.write("keep me")
    cleaner.cleanup(7)
    assert os.path.exists(other)


def test_cleanup_is_audited(cleaner, ledger, store):
    ledger.append(_done("old", days_ago=10, status="failed"))
    cleaner.cleanup(7)
    audit = [e for e in read_events(store.data_dir) if e["type"] == "worker.cleanup"]
    assert audit[-1]["payload"] == {"aborted": 0, "removed": 1, "orphaned": 0}


def test_result_dict(cleaner):
    assert cleaner.cleanup(7).to_dict() == {
        "ok": True, "aborted": 0, "removed": 0, "orphaned": 0, "remaining": 0,
    }
