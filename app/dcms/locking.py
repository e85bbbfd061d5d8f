"""
Per-key mutual exclusion.

Callers on the same key are serialized; callers on different keys never
contend. Entries are reference counted and dropped once unused so the registry
does not grow with the number of documents ever touched.
"""
from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager


class KeyedLocks:
    def __init__(self, name: str) -> None:
        self.name = name
        self._guard = threading.Lock()
        self._entries: dict[Hashable, list] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._entries[key] = entry
            entry[1] += 1
        lock: threading.Lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


# Workflow transitions and copy-number issuance are serialized independently.
document_locks = KeyedLocks("document")
counter_locks = KeyedLocks("control_copy_counter")
