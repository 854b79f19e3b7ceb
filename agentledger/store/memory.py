import asyncio
import copy
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from agentledger.store.interface import KeyedStore


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class MemoryKeyedStore(KeyedStore):
    """
    In-process store with one asyncio.Lock per key.

    Suitable for a single worker and for tests. State is lost when the
    process exits; use RedisKeyedStore when several workers share state.

    A key's lock exists only while someone holds or waits on it. Values
    written with a ttl are swept on the next write after they expire.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._expires_at: Dict[str, float] = {}
        self._locks: Dict[str, _KeyLock] = {}
        self._clock = clock or time.time

    def _expired(self, key: str) -> bool:
        deadline = self._expires_at.get(key)
        return deadline is not None and self._clock() >= deadline

    def _sweep(self) -> None:
        now = self._clock()
        for key in [k for k, deadline in self._expires_at.items() if now >= deadline]:
            del self._expires_at[key]
            self._data.pop(key, None)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        if self._expired(key):
            return None
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def put(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None) -> None:
        self._sweep()
        self._data[key] = copy.deepcopy(value)
        if ttl is not None:
            self._expires_at[key] = self._clock() + ttl
        else:
            self._expires_at.pop(key, None)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._expires_at.pop(key, None)

    async def list_by_prefix(self, prefix: str) -> List[Tuple[str, Dict[str, Any]]]:
        return [
            (key, copy.deepcopy(value))
            for key, value in sorted(self._data.items())
            if key.startswith(prefix) and not self._expired(key)
        ]

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]
