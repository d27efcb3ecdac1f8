from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock


class UploadLockRegistry:
    """Per-key mutual exclusion for merging a staged upload.

    Entries are reference counted and dropped once nobody holds or waits on them,
    so the registry does not grow with the number of uploads ever merged.
    """

    def __init__(self) -> None:
        self._locks: dict[str, tuple[Lock, int]] = {}
        self._lock = Lock()

    def _checkout(self, key: str) -> Lock:
        with self._lock:
            lock, waiters = self._locks.get(key, (None, 0))
            if lock is None:
                lock = Lock()
            self._locks[key] = (lock, waiters + 1)
            return lock

    def _checkin(self, key: str) -> None:
        with self._lock:
            lock, waiters = self._locks[key]
            if waiters <= 1:
                self._locks.pop(key, None)
            else:
                self._locks[key] = (lock, waiters - 1)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)

    def active_keys(self) -> int:
        with self._lock:
            return len(self._locks)


upload_locks = UploadLockRegistry()
