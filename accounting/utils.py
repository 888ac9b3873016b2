"""
Shared helpers for time range validation and msat parsing.
"""

import time
from typing import Any, Optional

from .errors import EndBeforeStartError, FutureRangeError, ZeroRangeError

# Optional checks for validate_time_range
DISALLOW_ZERO_RANGE = "disallow_zero_range"
DISALLOW_FUTURE_RANGE = "disallow_future_range"


def validate_time_range(start: int, end: int, *options: str,
                        now: Optional[int] = None) -> None:
    """
    Check that a [start, end) range is usable.

    Equal start and end is allowed unless DISALLOW_ZERO_RANGE is passed, and
    a range ending in the future is allowed unless DISALLOW_FUTURE_RANGE is
    passed.

    Raises:
        EndBeforeStartError, ZeroRangeError, FutureRangeError
    """
    if end < start:
        raise EndBeforeStartError(start, end)

    if DISALLOW_ZERO_RANGE in options and start == end:
        raise ZeroRangeError()

    if DISALLOW_FUTURE_RANGE in options:
        if now is None:
            now = int(time.time())
        if end > now:
            raise FutureRangeError()


def parse_msat(msat_val: Any) -> int:
    """
    Safely convert msat values to integers.
    Handles '1000msat' strings, raw integers, Millisatoshi objects, and plain numeric strings.
    """
    if msat_val is None:
        return 0
    if hasattr(msat_val, 'millisatoshis'):
        return int(msat_val.millisatoshis)
    if isinstance(msat_val, int):
        return msat_val
    if isinstance(msat_val, str):
        if msat_val.endswith('msat'):
            clean_val = msat_val[:-4]
        else:
            clean_val = msat_val

        try:
            return int(clean_val)
        except ValueError:
            return 0
    return 0


def sats_to_msat(sats: int) -> int:
    return sats * 1000


def inverted_sats_to_msat(sats: int) -> int:
    """Convert a positive sat amount to a negative msat amount (a debit)."""
    return sats * -1000
