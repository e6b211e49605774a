from __future__ import annotations

import threading
import time
import uuid
import weakref
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException, status

from atelier.metrics import observe_client_lock_wait


class _ClientLock:
    __slots__ = ("lock", "__weakref__")

    def __init__(self) -> None:
        self.lock = threading.Lock()


class ClientLockRegistry:
    """Keyed in-process locks serializing stage transitions per client.

    Entries are weakly referenced and vanish once no request holds them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary[uuid.UUID, _ClientLock] = weakref.WeakValueDictionary()

    def _get(self, client_id: uuid.UUID) -> _ClientLock:
        with self._guard:
            entry = self._locks.get(client_id)
            if entry is None:
                entry = _ClientLock()
                self._locks[client_id] = entry
            return entry

    @contextmanager
    def hold(self, client_id: uuid.UUID, *, timeout: float) -> Iterator[None]:
        entry = self._get(client_id)
        started = time.perf_counter()
        acquired = entry.lock.acquire(timeout=timeout)
        observe_client_lock_wait(time.perf_counter() - started, timed_out=not acquired)
        if not acquired:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="client is busy")
        try:
            yield
        finally:
            entry.lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


client_locks = ClientLockRegistry()
