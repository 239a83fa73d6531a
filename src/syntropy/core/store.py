"""Data directory layout shared by every orchestration component.

A single :class:`DataStore` is constructed at startup with its root
directory injected and handed to the ledger, event store, lock and
cleanup code, so nothing reaches for a module-level path.

Layout::

    data/
    ├── task-ledger.json             # TaskLedger document
    ├── worker-events.json           # WorkerEventStore document
    ├── worker-lock.json             # single-flight lock marker
    ├── worker-output-{task_id}.txt  # per-task output artifact
    └── audit.jsonl                  # audit trail
"""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass
from typing import Any, Optional

from syntropy.core.logging_config import get_live_log_path, get_worker_log_path

logger = logging.getLogger("syntropy.store")

LEDGER_FILE = "task-ledger.json"
EVENTS_FILE = "worker-events.json"
LOCK_FILE = "worker-lock.json"
OUTPUT_PREFIX = "worker-output-"
OUTPUT_SUFFIX = ".txt"

_OUTPUT_RE = re.compile(rf"^{re.escape(OUTPUT_PREFIX)}(.+){re.escape(OUTPUT_SUFFIX)}$")


# Serialises writers inside one process; unique temp names keep
# writers in other processes (the worker container) apart.
_write_lock = threading.Lock()


def write_json_atomic(path: str, payload: Any) -> None:
    """Write ``payload`` as JSON via temp file + fsync + rename.

    Readers see either the previous or the new document, never a
    partial one.
    """
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    with _write_lock:
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=os.path.basename(path) + ".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)


def read_json(path: str) -> Optional[Any]:
    """Load a JSON document, returning ``None`` if missing or corrupt."""
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Failed to read %s: %s", path, exc)
        return None


@dataclass(frozen=True)
class DataStore:
    """Resolves every artifact path under an operator-chosen data directory."""

    data_dir: str
    log_dir: str = ""

    @property
    def ledger_path(self) -> str:
        return os.path.join(self.data_dir, LEDGER_FILE)

    @property
    def events_path(self) -> str:
        return os.path.join(self.data_dir, EVENTS_FILE)

    @property
    def lock_path(self) -> str:
        return os.path.join(self.data_dir, LOCK_FILE)

    @property
    def logs_dir(self) -> str:
        return self.log_dir or os.path.join(os.path.dirname(os.path.abspath(self.data_dir)), "logs")

    def output_path(self, task_id: str) -> str:
        return os.path.join(self.data_dir, f"{OUTPUT_PREFIX}{task_id}{OUTPUT_SUFFIX}")

    def worker_log_path(self, task_id: str) -> str:
        return get_worker_log_path(task_id, self.logs_dir)

    def live_log_path(self) -> str:
        return get_live_log_path(self.logs_dir)

    def ensure(self) -> None:
        os.makedirs(self.data_dir, exist_ok=True)

    def output_artifacts(self) -> dict[str, str]:
        """Map task id → path for every output artifact in the data dir."""
        if not os.path.isdir(self.data_dir):
            return {}
        found: dict[str, str] = {}
        for name in os.listdir(self.data_dir):
            match = _OUTPUT_RE.match(name)
            if match:
                found[match.group(1)] = os.path.join(self.data_dir, name)
        return found
