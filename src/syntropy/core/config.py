from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    root_dir: str
    host_root: str
    continuity_path: str
    worker_prefix: str
    worker_service: str
    worker_command: str
    worker_timeout: int
    spawn_cooldown_seconds: int
    healing_threshold_seconds: int
    retention_days: int
    health_url: str
    host: str
    port: int
    mcp_token: str | None
    audit_max_entries: int
    clear_logs_on_launch: bool

    @staticmethod
    def from_env() -> "Settings":
        default_root = "/app" if os.path.exists("/.dockerenv") else str(Path.cwd())
        root_dir = os.getenv("SYNTROPY_ROOT") or default_root
        return Settings(
            log_level=os.getenv("SYNTROPY_LOG_LEVEL", "info"),
            log_dir=os.getenv("SYNTROPY_LOG_DIR") or str(Path(root_dir) / "logs"),
            data_dir=os.getenv("SYNTROPY_DATA_DIR") or str(Path(root_dir) / "data"),
            root_dir=root_dir,
            host_root=os.getenv("HOST_ROOT") or root_dir,
            continuity_path=os.getenv("SYNTROPY_CONTINUITY_PATH") or str(Path(root_dir) / "CONTINUITY.md"),
            worker_prefix=os.getenv("SYNTROPY_WORKER_PREFIX", "syntropy-worker"),
            worker_service=os.getenv("SYNTROPY_WORKER_SERVICE", "worker"),
            worker_command=os.getenv("SYNTROPY_WORKER_COMMAND", "opencode run"),
            worker_timeout=int(os.getenv("SYNTROPY_WORKER_TIMEOUT_SECONDS", "2700")),
            spawn_cooldown_seconds=int(os.getenv("SYNTROPY_SPAWN_COOLDOWN_SECONDS", "60")),
            healing_threshold_seconds=int(os.getenv("SYNTROPY_HEALING_THRESHOLD_SECONDS", "1200")),
            retention_days=int(os.getenv("SYNTROPY_RETENTION_DAYS", "7")),
            health_url=os.getenv("SYNTROPY_HEALTH_URL", "http://syntropy:3000/health"),
            host=os.getenv("SYNTROPY_HOST", "127.0.0.1"),
            port=int(os.getenv("SYNTROPY_PORT", "3000")),
            mcp_token=os.getenv("SYNTROPY_MCP_TOKEN"),
            audit_max_entries=int(os.getenv("SYNTROPY_AUDIT_MAX_ENTRIES", "1000")),
            clear_logs_on_launch=_env_bool("SYNTROPY_CLEAR_LOGS_ON_LAUNCH"),
        )
