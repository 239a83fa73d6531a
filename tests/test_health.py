from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx

from syntropy.core.health import check_health, wait_for_health


def _client_returning(*outcomes):
    """Patchable httpx.Client whose get() yields the given status codes / exceptions."""
    client = MagicMock()
    side_effects = []
    for outcome in outcomes:
        if isinstance(outcome, Exception):
            side_effects.append(outcome)
        else:
            side_effects.append(MagicMock(status_code=outcome))
    client.get.side_effect = side_effects
    factory = MagicMock()
    factory.return_value.__enter__.return_value = client
    return factory, client


def test_check_health_ok():
    factory, client = _client_returning(200)
    with patch("syntropy.core.health.httpx.Client", factory):
        assert check_health("http://svc/health")
    client.get.assert_called_once_with("http://svc/health")


def test_check_health_connection_error():
    factory, _ = _client_returning(httpx.ConnectError("refused"))
    with patch("syntropy.core.health.httpx.Client", factory):
        assert not check_health("http://svc/health")


def test_wait_until_healthy():
    factory, client = _client_returning(httpx.ConnectError("refused"), 503, 200)
    sleeps = []
    with patch("syntropy.core.health.httpx.Client", factory):
        assert wait_for_health("http://svc/health", timeout=60, interval=10, sleep=sleeps.append, clock=lambda: 0.0)
    assert client.get.call_count == 3
    assert sleeps == [10, 10]


def test_wait_gives_up_after_timeout():
    factory, client = _client_returning(*([503] * 10))
    now = [0.0]

    def fake_sleep(seconds):
        now[0] += seconds

    with patch("syntropy.core.health.httpx.Client", factory):
        assert not wait_for_health("http://svc/health", timeout=30, interval=10, sleep=fake_sleep, clock=lambda: now[0])
    # polls at t=0, 10, 20, 30
    assert client.get.call_count == 4
