"""Cooperative cancellation primitive shared by the fetcher and downloader.

A reconciliation call fans out one task per parameter file.  The caller keeps
a :class:`CancellationToken` and may cancel it from any thread (for example a
SIGINT handler).  The orchestrator polls the token while it waits for tasks,
and the downloader checks it between body chunks.  Running threads are never
interrupted; cancellation is always observed at explicit check points.
"""

from __future__ import annotations

import threading
from typing import Optional


class CancellationToken:
    """Thread-safe cancellation token for cooperative task cancellation.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel()
        >>> token.is_cancelled()
        True
    """

    def __init__(self) -> None:
        self._is_cancelled = threading.Event()
        self._lock = threading.Lock()

    def cancel(self) -> None:
        """Signal that cancellation has been requested."""
        with self._lock:
            self._is_cancelled.set()

    def is_cancelled(self) -> bool:
        """Return ``True`` once cancellation has been requested."""
        return self._is_cancelled.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses.

        Returns:
            True if the token was cancelled, False on timeout.
        """
        return self._is_cancelled.wait(timeout)


__all__ = ["CancellationToken"]
