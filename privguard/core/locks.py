from __future__ import annotations

import contextlib
import hashlib
import threading
from typing import Iterator, List


class KeyedLocks:
    """
    Fixed pool of re-entrant locks addressed by key.

    Two callers using the same key always get the same lock; unrelated keys
    usually land on different shards and do not contend.
    """

    def __init__(self, shards: int = 64):
        self._locks: List[threading.RLock] = [threading.RLock() for _ in range(max(1, int(shards)))]

    def _index(self, key: str) -> int:
        digest = hashlib.blake2b(str(key).encode("utf-8"), digest_size=4).digest()
        return int.from_bytes(digest, "big") % len(self._locks)

    @contextlib.contextmanager
    def lock(self, *parts: str) -> Iterator[None]:
        lk = self._locks[self._index("\x1f".join(str(p) for p in parts))]
        with lk:
            yield
