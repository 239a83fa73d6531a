from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from syntropy.core.orchestrator import Orchestrator


@pytest.fixture
def orch(settings, runtime):
    return Orchestrator(settings, runtime=runtime)


def test_finished_worker_frees_the_lock_for_next_spawn(orch, runtime):
    first = orch.spawn("echo one")
    runtime.exit(first["workerRef"], 0)
    second = orch.spawn("echo two")
    assert second["ok"], second
    assert orch.status(first["taskId"])["status"] == "completed"


def test_failed_worker_triggers_cooldown_without_status_poll(orch, runtime):
    first = orch.spawn("exit 1")
    runtime.exit(first["workerRef"], 1)
    retry = orch.spawn("exit 1 again")
    assert not retry["ok"]
    assert retry["runningTaskId"] == first["taskId"]
    assert 55 <= retry["waitSeconds"] <= 60


def test_operations_never_raise(orch):
    with patch.object(orch.reconciler, "status", side_effect=RuntimeError("disk on fire")):
        result = orch.status("anything")
    assert result == {"ok": False, "error": "status failed: disk on fire"}


def test_cleanup_uses_configured_retention(orch, settings):
    with patch.object(orch.cleaner, "cleanup", wraps=orch.cleaner.cleanup) as spy:
        assert orch.cleanup()["ok"]
    spy.assert_called_once_with(settings.retention_days)


def test_list_and_logs(orch):
    spawned = orch.spawn("echo hi")
    assert orch.list()["tasks"][0]["id"] == spawned["taskId"]
    assert not orch.read_logs(spawned["taskId"])["ok"]


def test_rebuild_rejected_while_busy(orch):
    busy = orch.spawn("long job")
    result = orch.schedule_self_rebuild("deploy")
    assert not result["scheduled"]
    assert result["runningTaskId"] == busy["taskId"]


def test_control_status_counts(orch, runtime):
    first = orch.spawn("a")
    runtime.exit(first["workerRef"], 0)
    orch.status(first["taskId"])
    orch.spawn("b")
    status = orch.control_status()
    assert status["tasks"]["completed"] == 1
    assert status["tasks"]["pending"] == 1
    assert status["total"] == 2


def _worker_exits_early(orch, task_id, code):
    """What the worker entrypoint does before its container stops."""
    def _ran(task):
        task.status = "running"
        task.exit_code = code

    orch.ledger.update(task_id, _ran)
    orch.lock.release(task_id)


def test_early_lock_release_after_failure_keeps_cooldown(orch):
    first = orch.spawn("exit 1")
    _worker_exits_early(orch, first["taskId"], 1)
    retry = orch.spawn("next")
    assert not retry["ok"]
    assert retry["runningTaskId"] == first["taskId"]
    assert retry["waitSeconds"] > 0
    assert orch.ledger.get(first["taskId"]).status == "failed"
    assert len(orch.ledger.read()) == 1


def test_early_lock_release_after_success_settles_first(orch, runtime):
    first = orch.spawn("echo one")
    _worker_exits_early(orch, first["taskId"], 0)
    second = orch.spawn("echo two")
    assert second["ok"], second
    assert orch.ledger.get(first["taskId"]).status == "completed"
    statuses = {t.id: t.status for t in orch.ledger.read()}
    assert sum(s in ("pending", "running") for s in statuses.values()) == 1


def test_concurrent_spawns_admit_exactly_one(orch, runtime):
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda i: orch.spawn(f"job {i}"), range(8)))

    winners = [r for r in results if r["ok"]]
    assert len(winners) == 1, results
    winner = winners[0]["taskId"]
    rejected = [r for r in results if not r["ok"]]
    assert len(rejected) == 7
    assert all(r["runningTaskId"] == winner for r in rejected), rejected
    assert [t.id for t in orch.ledger.read()] == [winner]
    assert len(runtime.launched) == 1
