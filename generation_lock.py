"""Per-user generation lock: a second caller for a busy user skips instead of waiting."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class GenerationLock:
    """Process-wide set of owners currently being generated for."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: set[Hashable] = set()

    def try_acquire(self, owner: Hashable) -> bool:
        with self._guard:
            if owner in self._held:
                return False
            self._held.add(owner)
            return True

    def release(self, owner: Hashable) -> None:
        with self._guard:
            self._held.discard(owner)

    def is_held(self, owner: Hashable) -> bool:
        with self._guard:
            return owner in self._held

    @contextmanager
    def hold(self, owner: Hashable) -> Iterator[bool]:
        """
        Yield True when the lock was acquired for owner, False when another caller holds it.
        An acquired lock is released on every exit path, including exceptions.
        """
        acquired = self.try_acquire(owner)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(owner)
