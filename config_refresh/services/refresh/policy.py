"""
Refresh Policy

Decides whether a refresh attempt is due, from elapsed time alone.
"""


def is_due(now: float, last_check: float | None, interval: float) -> bool:
    """
    Check whether the cache expiration interval has elapsed.

    Args:
        now: Current time (monotonic seconds)
        last_check: Time of the last check, or None if never checked
        interval: Cache expiration in seconds; <= 0 means always due

    Returns:
        True if a refresh attempt should be made
    """
    if interval <= 0:
        return True
    if last_check is None:
        return True
    return now - last_check >= interval


class RefreshPolicy:
    """Cache expiration policy with a fixed interval"""

    def __init__(self, cache_expiration_s: float = 30.0):
        self.cache_expiration_s = cache_expiration_s

    def is_due(self, now: float, last_check: float | None) -> bool:
        return is_due(now, last_check, self.cache_expiration_s)

    def next_due(self, last_check: float | None) -> float | None:
        """Time at which the next check becomes due (None = now)"""
        if last_check is None or self.cache_expiration_s <= 0:
            return None
        return last_check + self.cache_expiration_s
