"""Cooperative cancellation shared by the scheduler and reasoning backends."""

from __future__ import annotations

import threading


class CancellationToken:
    """Thread-safe cancellation flag polled by long-running work."""

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()
