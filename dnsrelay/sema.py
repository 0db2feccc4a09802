"""Semaphores limiting the number of requests handled at once."""

from __future__ import annotations

import threading


class NoopSemaphore:
    """A semaphore without a limit; it only counts its holders."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.held = 0

    def acquire(self) -> None:
        """Take a slot; this never blocks."""
        with self._lock:
            self.held += 1

    def release(self) -> None:
        """Give a slot back; releasing an unheld semaphore does nothing."""
        with self._lock:
            if self.held > 0:
                self.held -= 1

    def __enter__(self) -> "NoopSemaphore":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class BoundedSemaphore:
    """A semaphore allowing at most max_res holders.

    acquire blocks until a slot is free; release never blocks, and releasing
    an unheld semaphore does nothing.
    """

    def __init__(self, max_res: int) -> None:
        if max_res < 1:
            raise ValueError(f"bad maxRes: {max_res}")
        self._sem = threading.BoundedSemaphore(max_res)

    def acquire(self) -> None:
        self._sem.acquire()

    def release(self) -> None:
        try:
            self._sem.release()
        except ValueError:
            pass

    def __enter__(self) -> "BoundedSemaphore":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


def new_semaphore(max_res: int) -> NoopSemaphore | BoundedSemaphore:
    """Return a semaphore bounded by max_res, or an unlimited one if it is not positive."""
    if max_res > 0:
        return BoundedSemaphore(max_res)
    return NoopSemaphore()