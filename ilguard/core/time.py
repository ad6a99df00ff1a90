"""
ilguard/core/time.py

Timestamps and clocks.

Wire format: YYYY-MM-DDTHH:MM:SS.mmmZ (milliseconds, explicit Z).

Deadlines are compared as float epoch seconds obtained from an injectable
clock callable. Components default to system_clock; tests pass a manual one.
"""

import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], float]


def system_clock() -> float:
    """Current UTC time as epoch seconds."""
    return time.time()


def iso_timestamp(epoch: float = None) -> str:
    """
    Render epoch seconds (default: now) in wire format.
    Format: YYYY-MM-DDTHH:MM:SS.mmmZ  (exactly 3 fractional digits, Z suffix)
    """
    if epoch is None:
        epoch = system_clock()
    moment = datetime.fromtimestamp(epoch, tz=timezone.utc)
    ms     = moment.microsecond // 1000
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms:03d}Z"
