from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .errors import ConfigurationError


@dataclass(frozen=True)
class WindowConfig:
    """
    A sliding-window quota.

    Args:
        duration: Length of the window in milliseconds
        call_limit: Maximum number of calls admitted within any window of `duration`
    """

    duration: int
    call_limit: int

    def __post_init__(self) -> None:
        for name in ("duration", "call_limit"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(
                    f"{name} must be an integer, got {type(value).__name__}"
                )
            if value <= 0:
                raise ConfigurationError(f"{name} must be > 0, got {value}")
            object.__setattr__(self, name, int(value))

    @classmethod
    def coerce(cls, value: Any) -> "WindowConfig":
        """
        Build a WindowConfig from a WindowConfig, a mapping or a (duration, call_limit) pair.

        Raises:
            ConfigurationError: If the value cannot be interpreted as a window
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            try:
                return cls(duration=value["duration"], call_limit=value["call_limit"])
            except KeyError as e:
                raise ConfigurationError(f"window is missing {e.args[0]!r}") from e
        if isinstance(value, Sequence) and not isinstance(value, str | bytes):
            if len(value) != 2:
                raise ConfigurationError(
                    f"window must be a (duration, call_limit) pair, got {value!r}"
                )
            return cls(duration=value[0], call_limit=value[1])
        raise ConfigurationError(f"Unsupported window definition: {value!r}")


@dataclass
class CallHistory:
    """Admission timestamps recorded under one window, oldest first."""

    window: WindowConfig
    timestamps: deque[int] = field(default_factory=deque)

    def __len__(self) -> int:
        return len(self.timestamps)

    def record(self, now: int) -> None:
        self.timestamps.append(now)

    def required_delay(self, now: int) -> int:
        """
        Milliseconds this window needs before it can admit another call.

        Evicts the eldest timestamp when it has aged out of the window. At most
        one entry is evicted per check.
        """
        if len(self.timestamps) < self.window.call_limit:
            return 0

        elapsed = max(0, now - self.timestamps[0])
        if elapsed < self.window.duration:
            return self.window.duration - elapsed

        self.timestamps.popleft()
        return 0


def build_histories(windows: Iterable[Any]) -> list[CallHistory]:
    """
    Validate window definitions and create one empty history per window.

    Histories are kept in registration order, so windows sharing a duration are
    tracked independently.

    Raises:
        ConfigurationError: If no windows are given or any window is invalid
    """
    if not isinstance(windows, Iterable) or isinstance(windows, str | bytes | Mapping):
        raise ConfigurationError(
            f"windows must be a list of window definitions, got {type(windows).__name__}"
        )
    histories = [CallHistory(WindowConfig.coerce(w)) for w in windows]
    if not histories:
        raise ConfigurationError("At least one window is required")
    return histories


def time_until_available(histories: Iterable[CallHistory], now: int) -> int:
    """
    Compute how long the next call has to wait so that every window has room.

    Per-window delays are summed, not maxed: a call against two saturated
    windows waits for both remaining times back to back.

    Args:
        histories: Call histories in registration order
        now: Current time in milliseconds

    Returns:
        Milliseconds to wait, 0 if the call can be admitted now
    """
    return sum(history.required_delay(now) for history in histories)


def parse_windows(text: str) -> list[WindowConfig]:
    """
    Parse windows from a string such as ``"1000:10,3600000:100"``.

    Args:
        text: Comma separated ``duration:call_limit`` pairs, durations in milliseconds

    Returns:
        List of WindowConfig in the order given

    Raises:
        ConfigurationError: If the string is empty or malformed
    """
    if not text or not text.strip():
        raise ConfigurationError("No windows defined")

    windows = []
    for chunk in text.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        duration, sep, call_limit = chunk.partition(":")
        if not sep:
            raise ConfigurationError(f"Expected duration:call_limit, got {chunk!r}")
        try:
            duration, call_limit = int(duration), int(call_limit)
        except ValueError as e:
            raise ConfigurationError(f"Invalid window {chunk!r}") from e
        windows.append(WindowConfig(duration=duration, call_limit=call_limit))

    if not windows:
        raise ConfigurationError("No windows defined")
    return windows
