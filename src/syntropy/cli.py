from __future__ import annotations

import json
from typing import Any, Dict, Optional

import typer
import uvicorn
from dotenv import load_dotenv

app = typer.Typer(add_completion=False, help="Syntropy worker orchestration.")


def _load_env() -> None:
    load_dotenv()


def _settings():
    from syntropy.core.config import Settings

    return Settings.from_env()


def _setup_logging() -> None:
    """Configure centralized logging to both stdout and log files."""
    from syntropy.core.logging_config import setup_logging

    settings = _settings()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)


def _orchestrator():
    from syntropy.core.orchestrator import Orchestrator

    _load_env()
    _setup_logging()
    return Orchestrator(_settings())


def _emit(result: Dict[str, Any]) -> None:
    typer.echo(json.dumps(result, indent=2, default=str))
    if not result.get("ok", False):
        raise typer.Exit(code=1)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default SYNTROPY_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default SYNTROPY_PORT)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    _load_env()
    settings = _settings()
    _setup_logging()
    uvicorn.run(
        "syntropy.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        factory=True,
    )


@app.command()
def version() -> None:
    from syntropy import __version__

    typer.echo(__version__)


@app.command()
def spawn(
    instruction: str = typer.Argument(..., help="What the worker should do"),
    context: Optional[str] = typer.Option(None, help="Extra context for the worker"),
    priority: str = typer.Option("normal", help="low | normal | high (advisory)"),
) -> None:
    """Spawn a worker for a task."""
    _emit(_orchestrator().spawn(instruction, context, priority))


@app.command()
def status(task_id: str = typer.Argument(..., help="Task id")) -> None:
    """Show (and reconcile) a task's status."""
    _emit(_orchestrator().status(task_id))


@app.command("list")
def list_tasks(
    status: str = typer.Option("all", help="Status filter"),
    limit: int = typer.Option(10, help="Maximum tasks to show"),
) -> None:
    _emit(_orchestrator().list(status, limit))


@app.command()
def cleanup(
    retention_days: Optional[float] = typer.Option(None, help="Retention window in days (default SYNTROPY_RETENTION_DAYS)"),
) -> None:
    """Abort dead tasks, drop old ones and reap orphaned output files."""
    _emit(_orchestrator().cleanup(retention_days))


@app.command()
def rebuild(
    reason: str = typer.Argument(..., help="Why the rebuild is needed"),
    git_ref: Optional[str] = typer.Option(None, "--git-ref", help="Git ref to check out (default: pull main)"),
) -> None:
    """Schedule a self-rebuild through a privileged worker."""
    _emit(_orchestrator().schedule_self_rebuild(reason, git_ref))


@app.command()
def healing() -> None:
    """List workers running longer than the healing threshold."""
    _emit(_orchestrator().healing())


@app.command()
def logs(
    task_id: str = typer.Argument("live", help="Task id, or 'live' for the shared log"),
    lines: int = typer.Option(200, help="Lines to show"),
) -> None:
    result = _orchestrator().read_logs(task_id, lines)
    if result.get("ok"):
        typer.echo(result["content"])
        return
    _emit(result)


@app.command("worker-run")
def worker_run(
    task_id: Optional[str] = typer.Option(None, envvar="TASK_ID", help="Task to run (default TASK_ID)"),
) -> None:
    """Run a task inside the worker container."""
    from syntropy.worker.runner import run_worker

    _load_env()
    _setup_logging()
    raise typer.Exit(code=run_worker(_settings(), task_id))


@app.command("guard-check")
def guard_check(
    command: str = typer.Argument(..., help="Shell command to check"),
    task_type: str = typer.Option("standard", envvar="TASK_TYPE", help="Task type of the calling worker"),
) -> None:
    """Exit 0 if a worker may run COMMAND, 1 otherwise."""
    from syntropy.core.guardrails import check_command

    verdict = check_command(command, task_type)
    if not verdict.allowed:
        typer.secho(f"BLOCKED: {verdict.reason}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo("allowed")


@app.command("wait-healthy")
def wait_healthy(
    url: Optional[str] = typer.Option(None, help="Health URL (default SYNTROPY_HEALTH_URL)"),
    timeout: float = typer.Option(300.0, help="Seconds to wait"),
    interval: float = typer.Option(10.0, help="Seconds between polls"),
) -> None:
    """Poll a health endpoint until it answers 200; exit 1 on timeout."""
    from syntropy.core.health import wait_for_health

    _load_env()
    target = url or _settings().health_url
    if not wait_for_health(target, timeout=timeout, interval=interval):
        typer.secho(f"{target} not healthy after {timeout:.0f}s", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"{target} healthy")


if __name__ == "__main__":
    app()
