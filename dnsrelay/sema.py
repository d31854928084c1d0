"""Semaphores that bound the number of requests handled at once."""

from __future__ import annotations

import threading


class NoopSemaphore:
    """A semaphore without a limit: acquiring never blocks.

    It only counts the resources currently held.
    """

    def __init__(self) -> None:
        self._held = 0
        self._lock = threading.Lock()

    @property
    def held(self) -> int:
        """The number of resources currently held."""
        return self._held

    def acquire(self) -> None:
        """Take a resource; never waits."""
        with self._lock:
            self._held += 1

    def release(self) -> None:
        """Give a resource back if one is held."""
        with self._lock:
            if self._held > 0:
                self._held -= 1

    def __enter__(self) -> NoopSemaphore:
        self.acquire()
        return self

    def __exit__(self, *args) -> None:
        self.release()


class ChanSemaphore:
    """A semaphore holding at most ``max_res`` resources.

    ``acquire`` blocks until a resource is free.  ``release`` never blocks and
    does nothing when no resource is held.
    """

    def __init__(self, max_res: int) -> None:
        if max_res < 1:
            raise ValueError(f"bad maxRes: {max_res}")
        self._max_res = max_res
        self._sem = threading.BoundedSemaphore(max_res)

    @property
    def max_res(self) -> int:
        """The maximum number of resources."""
        return self._max_res

    def acquire(self) -> None:
        """Take a resource, waiting until one is free."""
        self._sem.acquire()

    def release(self) -> None:
        """Give a resource back if one is held."""
        try:
            self._sem.release()
        except ValueError:
            # Nothing was held; releasing an empty semaphore is a no-op.
            pass

    def __enter__(self) -> ChanSemaphore:
        self.acquire()
        return self

    def __exit__(self, *args) -> None:
        self.release()


def new_semaphore(max_goroutines: int) -> NoopSemaphore | ChanSemaphore:
    """Return a bounded semaphore for a positive limit, an unbounded one otherwise."""
    if max_goroutines > 0:
        return ChanSemaphore(max_goroutines)
    return NoopSemaphore()