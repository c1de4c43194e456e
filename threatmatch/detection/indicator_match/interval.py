"""Guard that aborts a run once it outlives its schedule interval."""

import re
import time
from collections.abc import Callable
from datetime import timedelta

from threatmatch.exceptions import ExecutionIntervalExceededError, InvalidRuleIntervalError


def parse_duration(duration_str: str) -> timedelta:
    """Parse duration string like '5m', '1h', '30s' into timedelta.

    Args:
        duration_str: Duration string (e.g., '5m', '1h', '30s', '2d')

    Returns:
        timedelta object
    """
    match = re.match(r"^(\d+)([smhdw])$", duration_str.strip().lower())
    if not match:
        raise ValueError(f"Invalid duration format: {duration_str}")

    value = int(match.group(1))
    unit = match.group(2)

    units = {
        "s": "seconds",
        "m": "minutes",
        "h": "hours",
        "d": "days",
        "w": "weeks",
    }

    return timedelta(**{units[unit]: value})


def build_execution_interval_validator(
    interval: str,
    clock: Callable[[], float] = time.monotonic,
) -> Callable[[], None]:
    """Return a callable that raises once ``interval`` has elapsed.

    The clock starts when the validator is built.

    Raises:
        InvalidRuleIntervalError: the interval cannot be parsed
    """
    try:
        allotted = parse_duration(interval).total_seconds()
    except ValueError as e:
        raise InvalidRuleIntervalError(interval) from e

    deadline = clock() + allotted

    def verify_execution_can_proceed() -> None:
        if clock() > deadline:
            raise ExecutionIntervalExceededError(interval)

    return verify_execution_can_proceed
