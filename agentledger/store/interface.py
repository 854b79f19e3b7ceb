from abc import ABC, abstractmethod
from typing import Any, AsyncContextManager, Dict, List, Optional, Tuple


class KeyedStore(ABC):
    """
    Minimal persistence contract for local agent state.

    Values are JSON-compatible dicts. Writers that read-modify-write a key
    must hold ``lock(key)`` for the whole cycle; the store serializes them
    per key so concurrent registrations never lose each other's fields.

    ``put(..., ttl=seconds)`` makes a value expire; expired values read as
    missing and are eventually dropped by the backend.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def put(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def list_by_prefix(self, prefix: str) -> List[Tuple[str, Dict[str, Any]]]:
        ...

    @abstractmethod
    def lock(self, key: str) -> AsyncContextManager[None]:
        ...

    async def close(self) -> None:
        return None
