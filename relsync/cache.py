"""Process wide cache of K8s responses and the per resource lock registry.

Neither class is thread safe. Both are meant to be shared by the coroutines
of a single event loop, which makes the plain dictionaries safe because no
`await` happens while they are modified.

"""
import asyncio
import logging
import time
from typing import Dict, Tuple

from relsync.dtypes import CacheEntry, ResourceIdentity

logit = logging.getLogger("relsync")


class ClusterCache:
    """Cache the last seen object or error of every resource.

    Keys are `ResourceIdentity.id_with_version` strings. Entries never expire
    unless a `ttl` (in seconds) was specified.

    """
    def __init__(self, ttl: float | None = None) -> None:
        self.ttl = ttl
        self._entries: Dict[str, Tuple[float, CacheEntry]] = {}

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry for `key` or `None` if there is none (anymore)."""
        try:
            stamp, entry = self._entries[key]
        except KeyError:
            return None

        if self.ttl is not None and time.monotonic() - stamp > self.ttl:
            logit.debug(f"Cache entry for <{key}> expired")
            del self._entries[key]
            return None
        return entry

    def set(self, key: str, entry: CacheEntry) -> None:
        assert (entry.obj is None) != (entry.error is None)
        self._entries[key] = (time.monotonic(), entry)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)


class LockRegistry:
    """Hand out one `asyncio.Lock` per resource.

    Locks are created on first use and live as long as the registry. The
    lock key ignores the API version because different versions of the same
    resource still address the same object on the cluster.

    """
    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, identity: ResourceIdentity) -> asyncio.Lock:
        lock = self._locks.get(identity.id)
        if lock is None:
            lock = self._locks[identity.id] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)
