"""Container runtime used to launch and observe worker processes.

Workers are detached Docker containers started through ``docker compose
run`` under the ``worker`` profile. The orchestrator only ever lists,
inspects, launches and removes them; it never waits on one.
"""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("syntropy.runtime")

QUERY_TIMEOUT = 30
LAUNCH_TIMEOUT = 60


class ContainerRuntimeError(RuntimeError):
    pass


@dataclass
class WorkerState:
    """Observed state of a named worker process."""

    exists: bool
    exited: bool
    exit_code: int
    status: str = ""

    @property
    def alive(self) -> bool:
        return self.exists and not self.exited


MISSING = WorkerState(exists=False, exited=True, exit_code=-1, status="missing")


class ContainerRuntime:
    """Interface the orchestrator needs from a process runtime."""

    def list_running(self, prefix: str) -> list[str]:
        raise NotImplementedError

    def list_exited(self, prefix: str) -> list[str]:
        raise NotImplementedError

    def inspect(self, name: str) -> WorkerState:
        raise NotImplementedError

    def launch(self, name: str, task_id: str, host_root: str) -> None:
        raise NotImplementedError

    def remove(self, names: list[str]) -> int:
        raise NotImplementedError

    def remove_exited(self, prefix: str) -> tuple[int, int]:
        """Remove exited workers. Returns ``(removed, attempted)``."""
        names = self.list_exited(prefix)
        if not names:
            return 0, 0
        return self.remove(names), len(names)


def _parse_names(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


class DockerRuntime(ContainerRuntime):
    """Docker CLI backed runtime."""

    def __init__(
        self,
        project_dir: str,
        service: str = "worker",
        profile: str = "worker",
        docker_bin: str = "docker",
    ) -> None:
        self.project_dir = project_dir
        self.service = service
        self.profile = profile
        self.docker_bin = docker_bin

    def _run(self, *args: str, timeout: int = QUERY_TIMEOUT, cwd: Optional[str] = None) -> subprocess.CompletedProcess[str]:
        cmd = [self.docker_bin] + list(args)
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
                cwd=cwd,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ContainerRuntimeError(f"{' '.join(cmd[:3])} failed: {exc}") from exc

    def _list(self, *filters: str) -> list[str]:
        args = ["ps"]
        if "status=exited" in filters:
            args.append("-a")
        for flt in filters:
            args.extend(["--filter", flt])
        args.extend(["--format", "{{.Names}}"])
        try:
            result = self._run(*args)
        except ContainerRuntimeError as exc:
            logger.warning("Listing workers failed: %s", exc)
            return []
        if result.returncode != 0:
            logger.warning("docker ps exited %s: %s", result.returncode, result.stderr.strip())
            return []
        return _parse_names(result.stdout)

    def list_running(self, prefix: str) -> list[str]:
        return self._list(f"name={prefix}-")

    def list_exited(self, prefix: str) -> list[str]:
        return self._list(f"name={prefix}-", "status=exited")

    def inspect(self, name: str) -> WorkerState:
        try:
            result = self._run("inspect", "--format", "{{.State.Status}}:{{.State.ExitCode}}", name)
        except ContainerRuntimeError as exc:
            logger.warning("Inspecting %s failed: %s", name, exc)
            return MISSING
        if result.returncode != 0:
            return MISSING
        status, _, code = result.stdout.strip().partition(":")
        try:
            exit_code = int(code)
        except ValueError:
            logger.warning("Unparseable exit code from inspect %s: %r", name, result.stdout)
            exit_code = -1
        return WorkerState(
            exists=True,
            exited=status in ("exited", "dead"),
            exit_code=exit_code,
            status=status,
        )

    def launch(self, name: str, task_id: str, host_root: str) -> None:
        result = self._run(
            "compose", "--profile", self.profile,
            "run", "-d",
            "--name", name,
            "-e", f"TASK_ID={task_id}",
            "-e", f"HOST_ROOT={host_root}",
            self.service,
            timeout=LAUNCH_TIMEOUT,
            cwd=self.project_dir,
        )
        if result.returncode != 0:
            raise ContainerRuntimeError(
                f"Failed to spawn worker {name}: {result.stderr.strip() or f'exit {result.returncode}'}"
            )
        logger.info("Launched worker %s for task %s", name, task_id)

    def remove(self, names: list[str]) -> int:
        if not names:
            return 0
        try:
            result = self._run("rm", "-f", *names)
        except ContainerRuntimeError as exc:
            logger.warning("Removing workers failed: %s", exc)
            return 0
        return len(names) if result.returncode == 0 else 0
