from enum import IntEnum


class Duration(IntEnum):
    """Commonly used durations, in milliseconds."""

    SECOND = 1000
    MINUTE = 60 * SECOND
    HOUR = 60 * MINUTE
    DAY = 24 * HOUR
