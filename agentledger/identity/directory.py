"""
Agent Ledger - Local Agent Directory & Signing-Key Store

Both sit on an injected KeyedStore and are joinable by agent id:

    agents:{agent_id} -> DirectoryEntry
    keys:{agent_id}   -> SigningKeyRecord   (custodial agents only)

Writers hold the per-key lock for the whole read-modify-write so two
concurrent registrations/updates of the same agent never lose fields.
"""
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional

import structlog
from eth_account import Account

from agentledger.errors import AgentNotFound, InvalidAgent
from agentledger.identity.model import DirectoryEntry, SigningKeyRecord
from agentledger.ledger.addresses import normalize_address
from agentledger.store.interface import KeyedStore

logger = structlog.get_logger()

AGENTS_PREFIX = "agents:"
KEYS_PREFIX = "keys:"


class LocalAgentDirectory:

    def __init__(self, store: KeyedStore):
        self._store = store

    @staticmethod
    def _key(agent_id: str) -> str:
        return f"{AGENTS_PREFIX}{agent_id}"

    @asynccontextmanager
    async def lock(self, agent_id: str) -> AsyncIterator[None]:
        async with self._store.lock(self._key(agent_id)):
            yield

    async def get(self, agent_id: str) -> Optional[DirectoryEntry]:
        record = await self._store.get(self._key(agent_id))
        return DirectoryEntry.from_record(record) if record else None

    async def put(self, entry: DirectoryEntry) -> None:
        """Callers hold `lock(entry.agent_id)`."""
        await self._store.put(self._key(entry.agent_id), entry.to_dict())

    async def list_all(self) -> List[DirectoryEntry]:
        return [DirectoryEntry.from_record(v) for _, v in await self._store.list_by_prefix(AGENTS_PREFIX)]

    async def find_by_address(self, address: str) -> List[DirectoryEntry]:
        address = normalize_address(address)
        return [e for e in await self.list_all() if e.settlement_address == address]

    async def find_by_registry_id(self, registry_id: int) -> Optional[DirectoryEntry]:
        for entry in await self.list_all():
            if entry.registry_id == registry_id:
                return entry
        return None

    async def update(self, agent_id: str, mutate: Callable[[DirectoryEntry], None]) -> DirectoryEntry:
        async with self.lock(agent_id):
            entry = await self.get(agent_id)
            if entry is None:
                raise AgentNotFound(agent_id)
            mutate(entry)
            await self.put(entry)
            return entry

    async def adjust_score(self, agent_id: str, delta: int) -> DirectoryEntry:
        def _apply(entry: DirectoryEntry) -> None:
            entry.local_score = max(0, min(100, entry.local_score + delta))

        return await self.update(agent_id, _apply)


class SigningKeyStore:

    def __init__(self, store: KeyedStore):
        self._store = store

    @staticmethod
    def _key(agent_id: str) -> str:
        return f"{KEYS_PREFIX}{agent_id}"

    async def get(self, agent_id: str) -> Optional[SigningKeyRecord]:
        record = await self._store.get(self._key(agent_id))
        return SigningKeyRecord.from_record(record) if record else None

    async def find_by_address(self, address: str) -> Optional[SigningKeyRecord]:
        address = normalize_address(address)
        for _, value in await self._store.list_by_prefix(KEYS_PREFIX):
            record = SigningKeyRecord.from_record(value)
            if record.derive_address() == address:
                return record
        return None

    async def create(self, agent_id: str, private_key: Optional[str] = None) -> SigningKeyRecord:
        """
        Generate (or import) the agent's key. If one is already held it is
        returned unchanged, so a retried registration keeps its address.
        """
        async with self._store.lock(self._key(agent_id)):
            existing = await self.get(agent_id)
            if existing is not None:
                return existing
            try:
                account = Account.from_key(private_key) if private_key else Account.create()
            except (ValueError, TypeError) as e:
                raise InvalidAgent("private_key is not a valid secp256k1 key", field="private_key") from e
            holder = await self.find_by_address(account.address)
            if holder is not None:
                raise InvalidAgent(
                    f"Key already belongs to agent {holder.agent_id}", field="private_key",
                )
            record = SigningKeyRecord(
                agent_id=agent_id,
                private_key=account.key.hex(),
                address=account.address.lower(),
                created_at=int(time.time()),
            )
            await self._store.put(self._key(agent_id), record.to_dict())
            logger.info("signing_key_created", agent_id=agent_id, address=record.address,
                        imported=bool(private_key))
            return record
