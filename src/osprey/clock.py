# =============================================================================
# Clock
# =============================================================================
# Two time sources, kept apart on purpose:
#   - now_ms(): wall-clock epoch milliseconds, for message dates and windows
#   - elapsed_ms(): monotonic milliseconds, for "time since last full sync"
#
# The monotonic value resets on reboot, so a stored stamp can end up in the
# future. Callers treat a negative difference as "interval elapsed".
# =============================================================================

import time


class Clock:
    """Default clock backed by the time module. Tests substitute their own."""

    def now_ms(self) -> int:
        """Wall-clock time in epoch milliseconds."""
        return int(time.time() * 1000)

    def elapsed_ms(self) -> int:
        """Monotonic time in milliseconds."""
        return int(time.monotonic() * 1000)
