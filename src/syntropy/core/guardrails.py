"""Worker guardrails: which shell commands a worker may run.

Two rules apply to ordinary tasks:

  1. ``docker compose`` lifecycle commands must pass ``--project-directory``
     so they act on the host project, not the worker's mount.
  2. Nothing may rebuild the orchestrator service; that is reserved for
     ``privileged-rebuild`` tasks, which bypass every rule.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import re

from syntropy.core.ledger import TASK_TYPE_REBUILD

logger = logging.getLogger("syntropy.guardrails")

COMPOSE_LIFECYCLE_SUBCOMMANDS = ("up", "down", "restart", "build", "logs", "exec", "run")

_COMPOSE_RE = re.compile(
    r"\bdocker(?:\s+compose|-compose)\b(?P<rest>.*)$",
    re.IGNORECASE,
)

# Commands that would rebuild the orchestrator itself
DENIED_REBUILD_PATTERNS = (
    r"docker compose.*{service}.*build",
    r"docker-compose.*{service}.*build",
    r"docker compose.*build.*{service}",
    r"docker-compose.*build.*{service}",
    r"docker build.*{service}",
    r"docker compose up.*--build.*{service}",
    r"docker compose up -d --build\s*$",
)


@dataclass
class GuardrailVerdict:
    allowed: bool
    reason: str = ""


def _compose_subcommand(rest: str) -> str:
    """First positional token after ``docker compose`` (skipping flags)."""
    tokens = rest.split()
    skip_value = False
    for token in tokens:
        if skip_value:
            skip_value = False
            continue
        if token.startswith("-"):
            # --flag value / -f value pairs
            if "=" not in token and token in ("-f", "--file", "-p", "--project-name",
                                              "--project-directory", "--profile", "--env-file"):
                skip_value = True
            continue
        return token.lower()
    return ""


def check_command(command: str, task_type: str = "standard", service: str = "syntropy") -> GuardrailVerdict:
    """Decide whether a worker may run ``command``."""
    if task_type == TASK_TYPE_REBUILD:
        return GuardrailVerdict(allowed=True, reason="privileged rebuild task")
    cmd = " ".join(command.strip().split())
    if not cmd:
        return GuardrailVerdict(allowed=True)

    for pattern in DENIED_REBUILD_PATTERNS:
        if re.search(pattern.format(service=re.escape(service)), cmd, re.IGNORECASE):
            logger.warning("Guardrail: '%s' would rebuild %s -> denied", cmd, service)
            return GuardrailVerdict(
                allowed=False,
                reason=f"Workers cannot rebuild {service}; schedule a self-rebuild instead",
            )

    match = _COMPOSE_RE.search(cmd)
    if match:
        sub = _compose_subcommand(match.group("rest"))
        if sub in COMPOSE_LIFECYCLE_SUBCOMMANDS and "--project-directory" not in cmd:
            logger.warning("Guardrail: '%s' lacks --project-directory -> denied", cmd)
            return GuardrailVerdict(
                allowed=False,
                reason=f"docker compose {sub} requires --project-directory",
            )
    return GuardrailVerdict(allowed=True)


def guardrail_rules(host_root: str, service: str = "syntropy") -> str:
    """Human-readable rules prepended to every standard worker briefing."""
    return (
        "GUARDRAILS:\n"
        f"- Always pass --project-directory {host_root} to docker compose "
        f"({', '.join(COMPOSE_LIFECYCLE_SUBCOMMANDS)}).\n"
        f"- Never rebuild or restart the {service} service; it is rebuilt only "
        "through a scheduled self-rebuild.\n"
        "- Check a command with `syntropy guard-check \"<command>\"` when unsure.\n"
    )
