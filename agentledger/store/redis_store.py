"""
Agent Ledger - Redis Keyed Store

Shared local state for multi-worker deployments.

Key Schema:
    agl:{namespace}:{key}           -> JSON value (EX set when written with a ttl)
    agl:locks:{namespace}:{key}     -> Distributed per-key write lock

Dependencies: redis >= 5.0.0
"""
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
import structlog

from agentledger.store.interface import KeyedStore

logger = structlog.get_logger()


class RedisKeyedStore(KeyedStore):

    def __init__(self, client: "aioredis.Redis", namespace: str, lock_ttl: int = 30):
        self._client = client
        self._namespace = namespace
        self._lock_ttl = lock_ttl

    @classmethod
    def from_url(cls, redis_url: str, namespace: str, lock_ttl: int = 30) -> "RedisKeyedStore":
        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=3,
            socket_timeout=2,
        )
        return cls(client, namespace, lock_ttl)

    def _key(self, key: str) -> str:
        return f"agl:{self._namespace}:{key}"

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self._client.get(self._key(key))
        return json.loads(raw) if raw else None

    async def put(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None) -> None:
        await self._client.set(self._key(key), json.dumps(value, default=str), ex=ttl)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def list_by_prefix(self, prefix: str) -> List[Tuple[str, Dict[str, Any]]]:
        base = self._key("")
        full_keys = [k async for k in self._client.scan_iter(match=f"{base}{prefix}*", count=500)]
        if not full_keys:
            return []
        full_keys.sort()
        values = await self._client.mget(full_keys)
        return [
            (full_key[len(base):], json.loads(raw))
            for full_key, raw in zip(full_keys, values)
            if raw
        ]

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._client.lock(
            f"agl:locks:{self._namespace}:{key}",
            timeout=self._lock_ttl,
            blocking_timeout=self._lock_ttl,
        )
        async with lock:
            yield

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("keyed_store_disconnected", namespace=self._namespace)
