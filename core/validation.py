"""Validation helpers for keytally."""

import logging

log = logging.getLogger("keytally.validation")


def clamp_interval_ms(previous_ms: int, current_ms: int) -> int:
    """Calculate the gap between two keystrokes, never negative.

    Clock jitter or late delivery can hand us a timestamp earlier than the
    previous one; such gaps count as zero.

    Args:
        previous_ms: Previous keystroke timestamp in milliseconds
        current_ms: Current keystroke timestamp in milliseconds

    Returns:
        Interval in milliseconds (non-negative)
    """
    interval = current_ms - previous_ms
    if interval < 0:
        log.debug(f"Negative interval clamped: {interval}ms (previous={previous_ms}, current={current_ms})")
        return 0
    return interval


def validate_limit(limit: int) -> int:
    """Clamp a result limit to at least zero."""
    if limit < 0:
        log.warning(f"Negative result limit {limit} treated as 0")
        return 0
    return limit
