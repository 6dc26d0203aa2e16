"""
Cooperative cancellation for long-running loads.

The caller keeps a CancellationToken and calls cancel() from any thread;
the chunk manager polls it between chunks and stops with
PipelineCancelledError.
"""

import threading

from ..core.errors import PipelineCancelledError


class CancellationToken:
    """Thread-safe cancellation flag."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, processed: int = 0) -> None:
        """
        Raises:
            PipelineCancelledError: If cancel() has been called
        """
        if self._event.is_set():
            raise PipelineCancelledError(processed)
