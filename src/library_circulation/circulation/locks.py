"""
Per-book lock registry.

Every mutation of a book's copy counter, reservation queue, loans or their
fines runs while holding that book's lock, and the lock is held across the
commit. Keys are book ids only, so the registry grows with the catalogue.
Locks are re-entrant so a check-in can promote the next reservation, and a
fulfilment can open its loan, without releasing the book in between.
Different books never share a lock.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class BookLockRegistry:
    """Hands out one ``threading.RLock`` per book id."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, book_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(book_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[book_id] = lock
            return lock

    @contextmanager
    def hold(self, book_id: str) -> Iterator[None]:
        """Serialize the enclosed block against every other holder of ``book_id``."""
        with self.lock_for(book_id):
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


_registry: BookLockRegistry | None = None
_registry_guard = threading.Lock()


def get_lock_registry() -> BookLockRegistry:
    """Process-wide registry shared by every engine instance."""
    global _registry  # noqa: PLW0603 - Singleton pattern for the lock registry
    with _registry_guard:
        if _registry is None:
            _registry = BookLockRegistry()
        return _registry
