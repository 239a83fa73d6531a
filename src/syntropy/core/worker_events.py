"""Worker event store: spawn and terminal events for every worker.

The store is a single JSON document (``worker-events.json``) rewritten
atomically on each append. It is used for duration accounting and for
spotting workers that have been running for a long time.
"""
from __future__ import annotations

import logging
import random
import string
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from syntropy.core.ledger import _now, format_ts, parse_ts
from syntropy.core.store import DataStore, read_json, write_json_atomic

logger = logging.getLogger("syntropy.worker_events")

EVENTS_VERSION = 1

EVENT_SPAWN = "spawn"
EVENT_COMPLETE = "complete"
EVENT_FAILED = "failed"
EVENT_ABORTED = "aborted"
TERMINAL_EVENTS = {EVENT_COMPLETE, EVENT_FAILED, EVENT_ABORTED}

DEFAULT_HEALING_THRESHOLD = timedelta(minutes=20)


def _event_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"evt-{int(time.time() * 1000)}-{suffix}"


@dataclass
class WorkerEvent:
    """A single lifecycle event for a worker."""
    id: str
    task_id: str
    container_name: str
    event_type: str           # spawn | complete | failed | aborted
    timestamp: str
    status: Optional[str] = None
    spawn_time: Optional[str] = None
    completion_time: Optional[str] = None
    duration_ms: Optional[int] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "taskId": self.task_id,
            "containerName": self.container_name,
            "eventType": self.event_type,
            "timestamp": self.timestamp,
            "status": self.status,
            "spawnTime": self.spawn_time,
            "completionTime": self.completion_time,
            "durationMs": self.duration_ms,
            "exitCode": self.exit_code,
            "error": self.error,
        }
        return {k: v for k, v in d.items() if v is not None}

    @classmethod
    def from_dict(cls, d: dict) -> "WorkerEvent":
        return cls(
            id=d.get("id", ""),
            task_id=d.get("taskId", ""),
            container_name=d.get("containerName", ""),
            event_type=d.get("eventType", ""),
            timestamp=d.get("timestamp", ""),
            status=d.get("status"),
            spawn_time=d.get("spawnTime"),
            completion_time=d.get("completionTime"),
            duration_ms=d.get("durationMs", d.get("buildDurationMs")),
            exit_code=d.get("exitCode"),
            error=d.get("error"),
        )


class WorkerEventStore:
    """Append-only event log for worker spawns and terminations."""

    def __init__(self, store: DataStore) -> None:
        self.store = store
        self._save_lock = threading.RLock()

    @property
    def path(self) -> str:
        return self.store.events_path

    def read(self) -> List[WorkerEvent]:
        raw = read_json(self.path)
        if not isinstance(raw, dict):
            return []
        return [WorkerEvent.from_dict(item) for item in raw.get("events", [])]

    def write(self, events: List[WorkerEvent]) -> None:
        write_json_atomic(self.path, {"version": EVENTS_VERSION, "events": [e.to_dict() for e in events]})

    def record(self, task_id: str, container_name: str, event_type: str, **fields: Any) -> WorkerEvent:
        """Append an event, stamping its id and timestamp. Returns the event."""
        event = WorkerEvent(
            id=_event_id(),
            task_id=task_id,
            container_name=container_name,
            event_type=event_type,
            timestamp=format_ts(_now()),
            **fields,
        )
        with self._save_lock:
            events = self.read()
            events.append(event)
            self.write(events)
        logger.info("Recorded %s event for task %s", event_type, task_id)
        return event

    def for_task(self, task_id: str) -> List[WorkerEvent]:
        return [e for e in self.read() if e.task_id == task_id]

    def first_spawn(self, task_id: str) -> Optional[WorkerEvent]:
        for event in self.for_task(task_id):
            if event.event_type == EVENT_SPAWN:
                return event
        return None

    def has_running_spawn(self, task_id: str) -> bool:
        return any(
            e.event_type == EVENT_SPAWN and e.status == "running"
            for e in self.for_task(task_id)
        )

    def terminal_event(self, task_id: str) -> Optional[WorkerEvent]:
        for event in self.for_task(task_id):
            if event.event_type in TERMINAL_EVENTS:
                return event
        return None

    def record_terminal(
        self,
        task_id: str,
        container_name: str,
        status: str,
        completed_at: datetime,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> Optional[WorkerEvent]:
        """Record the terminal event for a task at most once.

        Returns the new event, or ``None`` if one was already recorded.
        """
        with self._save_lock:
            if self.terminal_event(task_id) is not None:
                logger.debug("Terminal event for %s already recorded; skipping", task_id)
                return None
            event_type = {"completed": EVENT_COMPLETE, "failed": EVENT_FAILED}.get(status, EVENT_ABORTED)
            spawn = self.first_spawn(task_id)
            spawn_time = spawn.spawn_time if spawn else None
            duration_ms = None
            spawned_at = parse_ts(spawn_time)
            if spawned_at:
                duration_ms = int((completed_at - spawned_at).total_seconds() * 1000)
            return self.record(
                task_id,
                container_name,
                event_type,
                status=status,
                spawn_time=spawn_time,
                completion_time=format_ts(completed_at),
                duration_ms=duration_ms,
                exit_code=exit_code,
                error=error,
            )

    def detect_healing(
        self,
        now: Optional[datetime] = None,
        threshold: timedelta = DEFAULT_HEALING_THRESHOLD,
    ) -> Dict[str, List[WorkerEvent]]:
        """Classify long-running workers.

        ``active`` holds every running spawn event without a terminal
        counterpart; ``healing`` holds copies of those older than
        ``threshold`` with ``duration_ms`` set to the elapsed time.
        Observational only: nothing is terminated.
        """
        now = now or _now()
        events = self.read()
        finished = {e.task_id for e in events if e.event_type in TERMINAL_EVENTS}
        active: List[WorkerEvent] = []
        healing: List[WorkerEvent] = []
        for event in events:
            if event.event_type != EVENT_SPAWN or event.status != "running":
                continue
            if event.task_id in finished:
                continue
            active.append(event)
            started = parse_ts(event.spawn_time or event.timestamp)
            if started is None:
                continue
            elapsed = now - started
            if elapsed > threshold:
                healing.append(replace(event, duration_ms=int(elapsed.total_seconds() * 1000)))
        return {"healing": healing, "active": active}
