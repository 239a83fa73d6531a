from __future__ import annotations

import logging
import time
from typing import Callable

import httpx

logger = logging.getLogger("syntropy.health")


def check_health(url: str, timeout: float = 5.0) -> bool:
    """Return True if ``url`` answers HTTP 200."""
    try:
        with httpx.Client(timeout=timeout) as client:
            resp = client.get(url)
    except httpx.HTTPError as exc:
        logger.debug("Health check %s failed: %s", url, exc)
        return False
    return resp.status_code == 200


def wait_for_health(
    url: str,
    timeout: float = 300.0,
    interval: float = 10.0,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll ``url`` until it reports healthy or ``timeout`` seconds pass."""
    deadline = clock() + timeout
    attempt = 0
    while True:
        attempt += 1
        if check_health(url, timeout=min(interval, 10.0) or 5.0):
            logger.info("%s healthy after %d attempt(s)", url, attempt)
            return True
        if clock() + interval > deadline:
            logger.warning("%s not healthy after %.0fs", url, timeout)
            return False
        sleep(interval)
