"""Centralized logging configuration for syntropy.

Sets up Python's logging system to write to both stdout and a rotating
log file in the configured log directory, plus a dedicated JSONL logger
for MCP calls.

Log directory structure::

    logs/
    ├── syntropy.log              # All Python logger output (rotating)
    ├── mcp-calls.log             # Every MCP JSON-RPC request/response (JSONL)
    ├── opencode_live.log         # Shared live log of every worker run
    └── worker-{task_id[:8]}.log  # Per-worker live log
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import time
from typing import Any, Optional

# Module-level log directory, set by setup_logging()
_log_dir: Optional[str] = None

mcp_call_logger = logging.getLogger("syntropy._mcp_calls")

LIVE_LOG_NAME = "opencode_live.log"


def get_log_dir() -> str:
    """Return the configured log directory, falling back to the env/default."""
    if _log_dir:
        return _log_dir
    return os.getenv("SYNTROPY_LOG_DIR", os.path.join(os.getcwd(), "logs"))


def clear_logs(log_dir: str) -> None:
    """Remove ``*.log`` and ``*.jsonl`` files from the log directory.

    Called **before** any handlers are attached so there are no open-file
    conflicts.
    """
    if not os.path.isdir(log_dir):
        return
    for pattern in ("*.log", "*.jsonl"):
        for path in glob.glob(os.path.join(log_dir, pattern)):
            try:
                os.remove(path)
            except OSError:
                pass


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Configure the logging system with both stdout and file handlers.

    This should be called once at application startup.
    """
    global _log_dir
    _log_dir = log_dir

    if clear_on_launch:
        clear_logs(log_dir)

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "syntropy.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    _setup_jsonl_logger(mcp_call_logger, os.path.join(log_dir, "mcp-calls.log"))

    logging.getLogger("syntropy").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


def log_mcp_call(
    method: str,
    tool_name: str | None = None,
    tool_args: dict[str, Any] | None = None,
    result: Any = None,
    error: str | None = None,
    duration_ms: float | None = None,
) -> None:
    """Log an MCP JSON-RPC call to the dedicated MCP calls log."""
    record: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "method": method,
    }
    if tool_name:
        record["tool"] = tool_name
    if tool_args is not None:
        record["tool_args"] = tool_args
    if duration_ms is not None:
        record["duration_ms"] = round(duration_ms, 1)
    if error:
        record["error"] = error[:5000]
    elif result is not None:
        result_str = json.dumps(result, default=str)
        if len(result_str) > 10000:
            record["result_preview"] = result_str[:10000] + "..."
        else:
            record["result"] = result
    try:
        mcp_call_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass


def get_live_log_path(log_dir: str | None = None) -> str:
    """Return the shared live log that every worker run appends to."""
    return os.path.join(log_dir or get_log_dir(), LIVE_LOG_NAME)


def get_worker_log_path(task_id: str, log_dir: str | None = None) -> str:
    """Return the per-worker live log path (keyed by the short task id)."""
    return os.path.join(log_dir or get_log_dir(), f"worker-{task_id[:8]}.log")


def append_to_file(path: str, line: str) -> None:
    """Append a timestamped line to a log file, flushing immediately."""
    try:
        ts = time.strftime("%Y-%m-%dT%H:%M:%S")
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{ts} {line}\n")
            f.flush()
    except Exception:  # noqa: BLE001
        pass
