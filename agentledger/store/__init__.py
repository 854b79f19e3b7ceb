"""
Agent Ledger - Keyed Store Package
Re-exports for convenience.
"""
from agentledger.store.interface import KeyedStore
from agentledger.store.memory import MemoryKeyedStore
from agentledger.store.redis_store import RedisKeyedStore

__all__ = ["KeyedStore", "MemoryKeyedStore", "RedisKeyedStore"]
