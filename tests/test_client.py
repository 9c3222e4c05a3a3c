from concurrent.futures import ThreadPoolExecutor
from threading import Barrier
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import requests
from easyscheduler import ConfigurationError, Duration, WindowConfig
from easyscheduler.client import ScheduledClient


@pytest.fixture
def client():
    return ScheduledClient([{"duration": Duration.SECOND, "call_limit": 10}])


def _session_cls_returning(session_cls: MagicMock) -> MagicMock:
    """Make `with requests.Session() as s` and `requests.Session()` yield the same mock."""
    session = session_cls.return_value
    session.__enter__.return_value = session
    response = session.request.return_value
    response.raise_for_status.return_value = None
    return session


@patch("easyscheduler.client.requests.Session")
def test_request_outside_context_uses_fresh_session(session_cls: MagicMock, client):
    session = _session_cls_returning(session_cls)

    response = client.get("https://example.com/api", params={"a": 1})

    assert response is session.request.return_value
    args, kwargs = session.request.call_args
    assert args == ("GET", "https://example.com/api")
    assert kwargs["params"] == {"a": 1}
    assert kwargs["timeout"] == 10
    session.__exit__.assert_called_once()


@patch("easyscheduler.client.requests.Session")
def test_context_manager_reuses_and_closes_session(session_cls: MagicMock, client):
    session = _session_cls_returning(session_cls)

    with client as c:
        assert c is client
        c.post("https://example.com/a", json={"x": 1})
        c.post("https://example.com/b", timeout=3)

    assert session_cls.call_count == 1
    assert session.request.call_count == 2
    assert session.request.call_args.kwargs["timeout"] == 3
    session.close.assert_called_once()


@patch("easyscheduler.client.requests.Session")
def test_every_request_is_counted_against_windows(session_cls: MagicMock):
    _session_cls_returning(session_cls)
    c = ScheduledClient([(60_000, 3)], clock=lambda: 0)

    for _ in range(3):
        c.get("https://example.com")

    assert c.scheduler.time_until_available() == 60_000


@patch("easyscheduler.scheduler.time.sleep")
@patch("easyscheduler.client.requests.Session")
def test_requests_wait_for_window(session_cls: MagicMock, sleep: MagicMock):
    _session_cls_returning(session_cls)
    now = {"t": 0}
    sleep.side_effect = lambda seconds: now.update(t=now["t"] + round(seconds * 1000))
    c = ScheduledClient([(1000, 1)], clock=lambda: now["t"])

    c.get("https://example.com")
    c.get("https://example.com")

    sleep.assert_called_once_with(1.0)
    assert now["t"] == 1000


@patch("easyscheduler.client.time.sleep")
@patch("easyscheduler.client.requests.Session")
def test_http_error_is_raised_without_retries(
    session_cls: MagicMock, sleep: MagicMock, client
):
    session = _session_cls_returning(session_cls)
    session.request.return_value.raise_for_status.side_effect = (
        requests.exceptions.HTTPError(response=SimpleNamespace(status_code=500))
    )

    with pytest.raises(requests.exceptions.HTTPError):
        client.get("https://example.com")

    assert session.request.call_count == 1
    sleep.assert_not_called()


@patch("easyscheduler.client.time.sleep")
@patch("easyscheduler.client.requests.Session")
def test_retries_are_scheduled_and_counted(session_cls: MagicMock, sleep: MagicMock):
    session = _session_cls_returning(session_cls)
    session.request.side_effect = requests.exceptions.ConnectionError("down")
    c = ScheduledClient([(60_000, 10)], max_retries=2, clock=lambda: 0)

    with pytest.raises(requests.exceptions.ConnectionError):
        c.get("https://example.com")

    assert session.request.call_count == 3
    assert sleep.call_count == 2
    assert len(c.scheduler._histories[0]) == 3


@patch("easyscheduler.client.requests.Session")
def test_retry_recovers_after_transient_failure(session_cls: MagicMock):
    session = _session_cls_returning(session_cls)
    ok = MagicMock()
    session.request.side_effect = [requests.exceptions.Timeout("slow"), ok]
    c = ScheduledClient([(1000, 10)], max_retries=1)

    with patch("easyscheduler.client.time.sleep"):
        assert c.get("https://example.com") is ok


def test_threaded_sessions_are_closed_on_exit():
    c = ScheduledClient([(1000, 100)])
    barrier = Barrier(3)
    created_sessions = []

    def make_session():
        s = MagicMock()
        s.request.return_value.raise_for_status.return_value = None
        created_sessions.append(s)
        return s

    def work(_):
        # keep all three workers busy so each one opens its own session
        barrier.wait(timeout=5)
        return c.get("https://example.com")

    with patch("easyscheduler.client.requests.Session", side_effect=make_session):
        with c:
            with ThreadPoolExecutor(max_workers=3) as ex:
                list(ex.map(work, range(3)))
            assert not any(s.close.called for s in created_sessions)

    assert len(created_sessions) == 3
    for s in created_sessions:
        s.close.assert_called_once()


@patch("easyscheduler.client.requests.Session")
def test_nested_context_keeps_session_until_outer_exit(session_cls: MagicMock, client):
    session = _session_cls_returning(session_cls)

    with client:
        with client:
            client.get("https://example.com/inner")
        session.close.assert_not_called()
        client.get("https://example.com/outer")
        session.close.assert_not_called()

    assert session_cls.call_count == 1
    session.close.assert_called_once()

    # a fresh session is opened for the next block
    with client:
        client.get("https://example.com/again")
    assert session_cls.call_count == 2


def test_from_env(monkeypatch):
    monkeypatch.setenv("EASYSCHEDULER_WINDOWS", "1000:10, 86400000:500")

    c = ScheduledClient.from_env(max_retries=1)

    assert c.scheduler.windows == (
        WindowConfig(duration=1000, call_limit=10),
        WindowConfig(duration=Duration.DAY, call_limit=500),
    )


def test_from_env_requires_variable(monkeypatch):
    monkeypatch.delenv("EASYSCHEDULER_WINDOWS", raising=False)

    with pytest.raises(ConfigurationError):
        ScheduledClient.from_env()
