"""Self-rebuild coordination.

The orchestrator cannot restart itself, so it hands the job to a
``privileged-rebuild`` worker: the current context is preserved in the
continuity document, then the worker pulls, rebuilds and restarts the
orchestrator service and waits for it to report healthy.
"""
from __future__ import annotations

import logging
import os
import shlex
from datetime import datetime
from typing import Optional

from syntropy.core.audit import log_event
from syntropy.core.ledger import _now, format_ts
from syntropy.core.spawner import Spawner

logger = logging.getLogger("syntropy.rebuild")

HEALTH_WAIT_SECONDS = 300
ORCHESTRATOR_SERVICE = "syntropy"


def continuity_note(reason: str, git_ref: Optional[str], existing: str, now: datetime) -> str:
    lines = [
        "",
        "## Self-Rebuild Scheduled",
        "",
        f"**Time**: {format_ts(now)}",
        f"**Reason**: {reason}",
    ]
    if git_ref:
        lines.append(f"**Git Ref**: {git_ref}")
    lines += [
        "",
        "Previous context preserved below.",
        "",
        "---",
        "",
        existing,
    ]
    return "\n".join(lines)


def rebuild_instruction(
    reason: str,
    git_ref: Optional[str],
    project_dir: str,
    health_url: str,
    service: str = ORCHESTRATOR_SERVICE,
) -> str:
    checkout = f"git checkout {shlex.quote(git_ref)}" if git_ref else "git pull origin main"
    return f"""SYNTROPY SELF-REBUILD PROTOCOL
==============================
Reason: {reason}

Steps:
1. cd {shlex.quote(project_dir)} && git fetch origin
2. {checkout}
3. docker compose build {service}
4. docker compose up -d {service}
5. Wait up to 5 minutes for the health check:
   syntropy wait-healthy --url {health_url} --timeout {HEALTH_WAIT_SECONDS}
6. If healthy within 5 minutes: exit 0 (success)
7. If NOT healthy:
   - docker compose logs {service} --tail=100
   - Report: the rebuild failed and manual intervention may be needed.
   - exit 1 (failure)

The new instance reads the continuity document to restore context.
"""


class SelfRebuildCoordinator:
    def __init__(
        self,
        spawner: Spawner,
        continuity_path: str,
        project_dir: str,
        health_url: str,
        audit_max_entries: int = 1000,
    ) -> None:
        self.spawner = spawner
        self.continuity_path = continuity_path
        self.project_dir = project_dir
        self.health_url = health_url
        self.audit_max_entries = audit_max_entries

    def _preserve_context(self, reason: str, git_ref: Optional[str], now: datetime) -> None:
        existing = ""
        if os.path.exists(self.continuity_path):
            with open(self.continuity_path, "r", encoding="utf-8") as f:
                existing = f.read()
        os.makedirs(os.path.dirname(self.continuity_path) or ".", exist_ok=True)
        with open(self.continuity_path, "w", encoding="utf-8") as f:
            f.write(continuity_note(reason, git_ref, existing, now))

    def schedule(self, reason: str, git_ref: Optional[str] = None) -> dict:
        if not reason or not reason.strip():
            return {"ok": False, "scheduled": False, "error": "reason is required"}
        now = _now()
        logger.info("Self-rebuild requested (ref=%s): %s", git_ref or "main", reason)

        try:
            self._preserve_context(reason, git_ref, now)
        except OSError as exc:
            logger.error("Failed to update continuity document: %s", exc)
            return {"ok": False, "scheduled": False, "error": f"Failed to save continuity: {exc}"}

        log_event(
            self.spawner.store.data_dir,
            "worker.rebuild_scheduled",
            {"reason": reason, "git_ref": git_ref},
            max_entries=self.audit_max_entries,
        )
        result = self.spawner.spawn_privileged_rebuild(
            rebuild_instruction(reason, git_ref, self.project_dir, self.health_url),
            context=f"Self-rebuild triggered at {format_ts(now)}. Reason: {reason}",
        )
        if not result.ok:
            return {**result.to_dict(), "scheduled": False}
        return {
            "ok": True,
            "scheduled": True,
            "taskId": result.task_id,
            "workerRef": result.worker_ref,
        }
