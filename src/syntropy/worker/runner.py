"""Worker entrypoint, run inside the worker container.

``syntropy worker-run`` reads ``TASK_ID`` from the environment, marks the
task running, runs the agent command on the task briefing and streams
its output to the output artifact and the live logs. Terminal status is
not written here: the orchestrator's reconciler observes the container
exit and records it.
"""
from __future__ import annotations

import logging
import os
import shlex
import socket
import subprocess
import threading
from typing import Callable, Optional

from syntropy.core.config import Settings
from syntropy.core.guardrails import guardrail_rules
from syntropy.core.ledger import TASK_TYPE_REBUILD, Task, TaskLedger, _now
from syntropy.core.lock import WorkerLock
from syntropy.core.logging_config import append_to_file
from syntropy.core.runtime import DockerRuntime
from syntropy.core.store import DataStore

logger = logging.getLogger("syntropy.worker")

EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127


def build_briefing(task: Task, host_root: str) -> str:
    parts = []
    if task.type != TASK_TYPE_REBUILD:
        parts.append(guardrail_rules(host_root))
    parts.append(f"TASK:\n{task.payload.instruction}")
    if task.payload.context:
        parts.append(f"CONTEXT:\n{task.payload.context}")
    parts.append(
        "When finished, end your output with a '## Summary' section describing what you did."
    )
    return "\n\n".join(parts)


def _mark_running(task: Task, hostname: str) -> None:
    if task.status == "pending":
        task.status = "running"
    task.started_at = task.started_at or _now()
    task.worker_ref = task.worker_ref or hostname
    task.attempts += 1


class WorkerRunner:
    def __init__(
        self,
        settings: Settings,
        task_id: str,
        *,
        hostname: Optional[str] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self.settings = settings
        self.task_id = task_id
        self.hostname = hostname or socket.gethostname()
        self.popen = popen
        self.store = DataStore(settings.data_dir, settings.log_dir)
        self.ledger = TaskLedger(self.store)
        self.short_id = task_id[:8]

    def _log(self, line: str) -> None:
        append_to_file(self.store.worker_log_path(self.task_id), line)
        append_to_file(self.store.live_log_path(), f"[{self.short_id}] {line}")

    def _stream(self, cmd: list[str], task: Task) -> int:
        env = dict(os.environ)
        env["TASK_ID"] = self.task_id
        env["TASK_TYPE"] = task.type
        output_path = self.store.output_path(self.task_id)
        os.makedirs(os.path.dirname(output_path), exist_ok=True)
        os.makedirs(self.store.logs_dir, exist_ok=True)

        timed_out = threading.Event()
        with open(output_path, "w", encoding="utf-8") as artifact, \
                open(self.store.worker_log_path(self.task_id), "a", encoding="utf-8") as worker_log, \
                open(self.store.live_log_path(), "a", encoding="utf-8") as live_log:
            try:
                process = self.popen(
                    cmd,
                    cwd=self.settings.root_dir if os.path.isdir(self.settings.root_dir) else None,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    env=env,
                    encoding="utf-8",
                    errors="replace",
                )
            except FileNotFoundError as exc:
                artifact.write(f"[ERROR] Agent command not found: {exc}\n")
                logger.error("Agent command not found: %s", exc)
                return EXIT_NOT_FOUND

            if process.stdout is None:
                process.kill()
                artifact.write("[ERROR] Agent process has no output pipe\n")
                logger.error("Agent process for %s has no output pipe", self.task_id)
                return 1

            def _kill() -> None:
                timed_out.set()
                process.kill()

            timer = threading.Timer(self.settings.worker_timeout, _kill)
            timer.daemon = True
            timer.start()
            try:
                for line in process.stdout:
                    artifact.write(line)
                    artifact.flush()
                    worker_log.write(line)
                    worker_log.flush()
                    live_log.write(f"[{self.short_id}] {line}")
                    live_log.flush()
                process.wait()
            finally:
                timer.cancel()

            if timed_out.is_set():
                note = f"\n[TIMEOUT] Worker exceeded {self.settings.worker_timeout}s and was terminated\n"
                artifact.write(note)
                worker_log.write(note)
                return EXIT_TIMEOUT
            return process.returncode

    def run(self) -> int:
        task = self.ledger.get(self.task_id)
        if task is None:
            logger.error("Task %s not found in ledger", self.task_id)
            return 1
        if task.is_terminal:
            logger.error("Task %s is already %s", self.task_id, task.status)
            return 1
        task = self.ledger.update(self.task_id, lambda t: _mark_running(t, self.hostname)) or task

        self._log(f"=== Worker {self.hostname} starting task {self.task_id} ({task.type}) ===")
        cmd = shlex.split(self.settings.worker_command) + [build_briefing(task, self.settings.host_root)]
        exit_code = self._stream(cmd, task)
        self._log(f"=== Worker finished task {self.task_id} with exit code {exit_code} ===")

        self.ledger.update(self.task_id, lambda t: setattr(t, "exit_code", exit_code))
        lock = WorkerLock(self.store, DockerRuntime(self.settings.root_dir), self.settings.worker_prefix)
        lock.release(self.task_id)
        logger.info("Task %s exited %d", self.task_id, exit_code)
        return exit_code


def run_worker(settings: Settings, task_id: Optional[str] = None) -> int:
    task_id = task_id or os.getenv("TASK_ID")
    if not task_id:
        logger.error("TASK_ID is not set")
        return 1
    return WorkerRunner(settings, task_id).run()
