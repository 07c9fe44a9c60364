"""
Cooperative cancellation for long ledger scans and crank passes.
"""

import time


class CancellationToken:
    """
    Signals that a scan should stop and return what it has.

    Cancelled either explicitly via cancel() or implicitly once the optional
    monotonic deadline has passed. Callers poll `cancelled` between pages and
    fan-out batches; in-flight requests are allowed to finish.
    """

    def __init__(self, deadline: float | None = None):
        self._deadline = deadline
        self._cancelled = False

    @classmethod
    def with_timeout(cls, seconds: float | None) -> "CancellationToken":
        if seconds is None or seconds <= 0:
            return cls()
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())


def is_cancelled(token: CancellationToken | None) -> bool:
    return token is not None and token.cancelled
