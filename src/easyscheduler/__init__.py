from .client import ScheduledClient
from .durations import Duration
from .errors import ConfigurationError
from .scheduler import BlockingScheduler, Scheduler
from .windows import CallHistory, WindowConfig, parse_windows, time_until_available

__all__ = [
    "Scheduler",
    "BlockingScheduler",
    "ScheduledClient",
    "Duration",
    "WindowConfig",
    "CallHistory",
    "ConfigurationError",
    "parse_windows",
    "time_until_available",
]
