from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
import tempfile
import threading
from typing import Any, Dict, Optional

logger = logging.getLogger("syntropy.audit")

AUDIT_FILE = "audit.jsonl"
DEFAULT_MAX_ENTRIES = 1000

_audit_lock = threading.Lock()


def audit_path(data_dir: str) -> str:
    return os.path.join(data_dir, AUDIT_FILE)


def log_event(
    data_dir: str,
    event_type: str,
    payload: Dict[str, Any],
    request_id: Optional[str] = None,
    max_entries: int = DEFAULT_MAX_ENTRIES,
) -> None:
    """Append an audit record, keeping at most ``max_entries`` lines (FIFO).

    Audit failures are logged, never raised: the audit trail must not
    break the operation it describes.
    """
    record: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "type": event_type,
        "payload": payload,
    }
    if request_id:
        record["request_id"] = request_id
    path = audit_path(data_dir)
    with _audit_lock:
        try:
            os.makedirs(data_dir, exist_ok=True)
            with open(path, "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, default=str) + "\n")
        except OSError as exc:
            logger.error("Failed to write audit event %s: %s", event_type, exc)
            return
        logger.info("Audit: %s", event_type)

        try:
            _prune(path, max_entries)
        except OSError as exc:
            logger.debug("Audit pruning skipped: %s", exc)


def _prune(path: str, max_entries: int) -> None:
    if max_entries <= 0:
        return
    with open(path, "r", encoding="utf-8") as handle:
        lines = [line for line in handle if line.strip()]
    if len(lines) <= max_entries:
        return
    fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(path), prefix=AUDIT_FILE + ".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.writelines(lines[-max_entries:])
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def read_events(data_dir: str, limit: int = 50) -> list[dict]:
    path = audit_path(data_dir)
    if not os.path.exists(path):
        return []
    records: list[dict] = []
    with open(path, "r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return records[-limit:]
