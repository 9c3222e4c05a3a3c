import asyncio
import inspect
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Any, TypeVar

from .windows import CallHistory, WindowConfig, build_histories, time_until_available

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")

Clock = Callable[[], int]


def wall_clock_ms() -> int:
    return time.time_ns() // 1_000_000


class _BaseScheduler:
    def __init__(self, windows: Iterable[Any], *, clock: Clock | None = None) -> None:
        self._histories: list[CallHistory] = build_histories(windows)
        self._clock = clock or wall_clock_ms
        self._lock = threading.Lock()

    @property
    def windows(self) -> tuple[WindowConfig, ...]:
        """Configured windows, in registration order"""
        return tuple(h.window for h in self._histories)

    def time_until_available(self) -> int:
        """
        Milliseconds until the next call could be admitted.

        Expired entries are evicted as a side effect, but nothing is recorded.

        Returns:
            0 if a call would be admitted now, otherwise the summed wait across windows
        """
        with self._lock:
            return time_until_available(self._histories, self._clock())

    def _try_admit(self) -> int:
        """Record a call in every window if all have room. Returns the wait otherwise."""
        with self._lock:
            now = self._clock()
            wait = time_until_available(self._histories, now)
            if wait == 0:
                for history in self._histories:
                    history.record(now)
            return wait

    def __repr__(self) -> str:
        windows = ", ".join(f"{w.call_limit}/{w.duration}ms" for w in self.windows)
        return f"{type(self).__name__}([{windows}])"


class Scheduler(_BaseScheduler):
    """
    Asyncio scheduler that admits calls only while every window has spare capacity.

    Args:
        windows: Window definitions, as WindowConfig objects, mappings with
            ``duration``/``call_limit`` keys, or ``(duration, call_limit)`` pairs
        clock: Zero-argument callable returning the current time in milliseconds

    Raises:
        ConfigurationError: If any window is invalid

    Example:
        scheduler = Scheduler([{"duration": Duration.SECOND, "call_limit": 10}])
        results = await asyncio.gather(*(scheduler.schedule(fetch, i) for i in range(30)))
    """

    def schedule(
        self, fn: Callable[..., T], *args: Any, **kwargs: Any
    ) -> "asyncio.Task[T]":
        """
        Submit `fn` to run as soon as every window allows it.

        The admission check runs at submission: a call that fits is recorded
        immediately, otherwise a task waits and re-checks. Must be called with
        a running event loop.

        Args:
            fn: Callable to run. If it returns an awaitable, the awaitable is awaited.
            *args: Positional arguments for `fn`
            **kwargs: Keyword arguments for `fn`

        Returns:
            A task resolving to whatever `fn` returns. Exceptions raised by `fn`
            propagate unchanged when the task is awaited.
        """
        loop = asyncio.get_running_loop()
        wait = self._try_admit()
        return loop.create_task(self._run(fn, args, kwargs, wait))

    async def _run(
        self, fn: Callable[..., T], args: tuple, kwargs: dict[str, Any], wait: int
    ) -> T:
        while wait > 0:
            logger.debug(f"Rate limited, retrying {fn!r} in {wait}ms")
            await asyncio.sleep(wait / 1000)
            wait = self._try_admit()

        result = fn(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    def map(
        self, fn: Callable[[T, int, Sequence[T]], U]
    ) -> Callable[[T, int, Sequence[T]], Awaitable[U]]:
        """
        Wrap `fn` so each element of a sequence is scheduled independently.

        Example:
            adapter = scheduler.map(lambda v, i, seq: v * 10)
            results = await asyncio.gather(*(adapter(v, i, nums) for i, v in enumerate(nums)))
        """

        def adapter(value: T, index: int, sequence: Sequence[T]) -> Awaitable[U]:
            return self.schedule(fn, value, index, sequence)

        return adapter

    async def map_all(
        self, fn: Callable[[T, int, Sequence[T]], U], sequence: Sequence[T]
    ) -> list[U]:
        """
        Schedule `fn(value, index, sequence)` for every element and gather the results.

        Returns:
            Results in element order, regardless of admission order
        """
        adapter = self.map(fn)
        return list(
            await asyncio.gather(
                *(adapter(value, index, sequence) for index, value in enumerate(sequence))
            )
        )


class BlockingScheduler(_BaseScheduler):
    """
    Thread-safe scheduler for synchronous code. Waiting callers sleep in their own thread.

    Args:
        windows: Window definitions, see Scheduler
        clock: Zero-argument callable returning the current time in milliseconds
    """

    def schedule(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Block until every window allows a call, then return `fn(*args, **kwargs)`."""
        while (wait := self._try_admit()) > 0:
            logger.debug(f"Rate limited, retrying {fn!r} in {wait}ms")
            time.sleep(wait / 1000)
        return fn(*args, **kwargs)

    def map(
        self, fn: Callable[[T, int, Sequence[T]], U]
    ) -> Callable[[T, int, Sequence[T]], U]:
        """
        Wrap `fn` for per-element scheduling, e.g. with ThreadPoolExecutor.map.

        Example:
            with ThreadPoolExecutor() as ex:
                out = list(ex.map(scheduler.map(fn), items, range(len(items)), repeat(items)))
        """

        def adapter(value: T, index: int, sequence: Sequence[T]) -> U:
            return self.schedule(fn, value, index, sequence)

        return adapter
