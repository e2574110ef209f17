"""
Delay calculations for refresh retries and self-scheduled refreshes.
"""

import random


def calculate_exponential_backoff(
    retry_count: int,
    base_delay: int = 1,
    max_delay: int = 300,
    multiplier: float = 2.0,
    jitter: bool = True,
) -> int:
    """
    Calculate exponential backoff delay with optional jitter.

    Args:
        retry_count: Current retry attempt (0-based)
        base_delay: Base delay in seconds (default: 1)
        max_delay: Maximum delay in seconds (default: 300 = 5 minutes)
        multiplier: Exponential multiplier (default: 2.0)
        jitter: Whether to add +/-25% randomization (default: True)

    Returns:
        Delay in seconds before next retry

    Example:
        retry_count=0: ~1s
        retry_count=1: ~2s
        retry_count=2: ~4s
        retry_count=9: 300s (capped at max_delay)
    """
    if retry_count < 0:
        return base_delay

    delay = min(base_delay * (multiplier**retry_count), max_delay)

    if jitter:
        jitter_range = delay * 0.25
        delay = min(delay + random.uniform(-jitter_range, jitter_range), max_delay)

    # Never go below the base delay so the progression stays monotonic
    return max(int(delay), base_delay)


def calculate_next_refresh_delay(
    expires_in: int,
    buffer_seconds: int = 1800,
    min_delay: int = 60,
) -> int:
    """
    Delay until the next proactive refresh after a successful one.

    Returns ``max(min_delay, expires_in - buffer_seconds)`` so that a
    short-lived token is still refreshed no faster than once per ``min_delay``.
    """
    return max(min_delay, int(expires_in) - buffer_seconds)


def calculate_initial_refresh_delay(
    seconds_until_expiry: float,
    refresh_before_expiry: int,
) -> float:
    """
    Delay for the first refresh of a stored credential at startup.

    Zero means the credential is already inside the refresh window.
    """
    return max(0.0, seconds_until_expiry - refresh_before_expiry)
