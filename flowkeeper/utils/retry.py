from __future__ import annotations

from typing import Optional


def compute_backoff(
    attempt: int,
    base: float,
    multiplier: float = 2.0,
    maximum: Optional[float] = None,
) -> int:
    """Compute an exponential backoff delay in whole seconds.

    The first attempt waits ``base`` seconds, each following attempt
    multiplies the previous delay by ``multiplier``. ``maximum`` caps the
    result when given.
    """
    if attempt <= 1 or base <= 0:
        delay = base
    else:
        delay = base * multiplier ** (attempt - 1)
    if maximum is not None:
        delay = min(delay, maximum)
    return int(delay)
