import logging
import os
import random
import threading
import time
import weakref
from collections.abc import Iterable
from contextlib import contextmanager
from typing import Any

import requests

from .scheduler import BlockingScheduler, Clock
from .windows import parse_windows

logger = logging.getLogger(__name__)

DEFAULT_WINDOWS_ENV = "EASYSCHEDULER_WINDOWS"


def _close_sessions(sessions: set[requests.Session]) -> None:
    for session in list(sessions):
        try:
            session.close()
        except Exception:
            logger.warning("Failed to close session", exc_info=True)
    sessions.clear()


class ScheduledClient:
    """
    A small HTTP client whose requests are admitted through a BlockingScheduler.

    Inside ``with client:`` each thread keeps one session, and every one of them
    is closed when the outermost block exits.

    Args:
        windows: Window definitions the requests must respect
        max_retries: Attempts to retry after a requests exception. Each retry is
            scheduled again and counts against the windows.
        timeout: Request timeout in seconds
        clock: Clock for the underlying scheduler, in milliseconds
    """

    def __init__(
        self,
        windows: Iterable[Any],
        *,
        max_retries: int = 0,
        timeout: int = 10,
        clock: Clock | None = None,
    ) -> None:
        self._scheduler = BlockingScheduler(windows, clock=clock)
        self._max_retries = max_retries
        self._timeout = timeout
        self._state_lock = threading.Lock()
        self._depth = 0
        self._local = threading.local()
        self._sessions: set[requests.Session] = set()
        self._finalizer = weakref.finalize(self, _close_sessions, self._sessions)

    @classmethod
    def from_env(cls, var: str = DEFAULT_WINDOWS_ENV, **kwargs: Any) -> "ScheduledClient":
        """
        Create a ScheduledClient from windows stored in an environment variable.

        Args:
            var: Name of the variable holding ``duration:call_limit`` pairs
            **kwargs: Passed through to the constructor

        Raises:
            ConfigurationError: If the variable is unset or malformed
        """
        return cls(parse_windows(os.getenv(var, "")), **kwargs)

    @property
    def scheduler(self) -> BlockingScheduler:
        return self._scheduler

    def _shared_session(self) -> requests.Session | None:
        with self._state_lock:
            if not self._depth:
                return None
            local = self._local
            session = getattr(local, "session", None)
            if session is None:
                session = requests.Session()
                self._sessions.add(session)
                local.session = session
            return session

    @contextmanager
    def _get_session(self) -> requests.Session:
        session = self._shared_session()
        if session is not None:
            yield session
        else:
            with requests.Session() as session:
                yield session

    def __enter__(self) -> "ScheduledClient":
        with self._state_lock:
            self._depth += 1
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        with self._state_lock:
            self._depth -= 1
            if self._depth:
                return
            sessions = set(self._sessions)
            self._sessions.clear()
            # drop every thread's reference along with the closed sessions
            self._local = threading.local()
        _close_sessions(sessions)

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self._timeout)
        with self._get_session() as session:
            response = session.request(method, url, **kwargs)
            response.raise_for_status()
            return response

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """
        Send a request once the scheduler admits it.

        Args:
            method: HTTP method
            url: Request URL
            **kwargs: Passed through to requests.Session.request

        Returns:
            The response

        Raises:
            requests.exceptions.HTTPError: If the response status is not successful
            requests.exceptions.RequestException: If the request fails after all retries
        """
        for attempt in range(self._max_retries + 1):
            try:
                return self._scheduler.schedule(self._send, method, url, **kwargs)
            except requests.exceptions.RequestException as e:
                if attempt == self._max_retries:
                    logger.error(f"{method} {url} failed after {attempt + 1} attempt(s): {e}")
                    raise
                backoff = 2 ** (attempt + 1) + random.uniform(0, 1)
                logger.warning(f"{method} {url} failed ({e}), retrying in {backoff:.1f}s")
                time.sleep(backoff)

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("POST", url, **kwargs)
