"""
Agent Ledger - Interaction Records

Status lifecycle:
    initiated -> completed (terminal)

Interactions have no expiry or cancellation path; a stale `initiated`
record stays until the target completes it.

Key schema:
    interactions:{interaction_id} -> Interaction
"""
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from agentledger.store.interface import KeyedStore

INTERACTIONS_PREFIX = "interactions:"


class InteractionStatus(str, Enum):
    INITIATED = "initiated"
    COMPLETED = "completed"


def new_interaction_id() -> str:
    return f"int_{uuid.uuid4().hex[:16]}"


@dataclass
class Interaction:
    interaction_id: str
    from_agent: str
    to_agent: str
    capability: Optional[str] = None
    status: str = InteractionStatus.INITIATED.value
    created_at: int = 0
    completed_at: Optional[int] = None

    def __post_init__(self):
        if not self.created_at:
            self.created_at = int(time.time())

    @property
    def is_open(self) -> bool:
        return self.status == InteractionStatus.INITIATED

    def involves(self, agent_id: str) -> bool:
        return agent_id in (self.from_agent, self.to_agent)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_record(record: Dict[str, Any]) -> "Interaction":
        completed_at = record.get("completed_at")
        return Interaction(
            interaction_id=record["interaction_id"],
            from_agent=record["from_agent"],
            to_agent=record["to_agent"],
            capability=record.get("capability"),
            status=InteractionStatus(record.get("status", "initiated")).value,
            created_at=int(record.get("created_at", 0)),
            completed_at=int(completed_at) if completed_at is not None else None,
        )


class InteractionRepository:

    def __init__(self, store: KeyedStore):
        self._store = store

    @staticmethod
    def _key(interaction_id: str) -> str:
        return f"{INTERACTIONS_PREFIX}{interaction_id}"

    @asynccontextmanager
    async def lock(self, interaction_id: str) -> AsyncIterator[None]:
        async with self._store.lock(self._key(interaction_id)):
            yield

    async def get(self, interaction_id: str) -> Optional[Interaction]:
        record = await self._store.get(self._key(interaction_id))
        return Interaction.from_record(record) if record else None

    async def put(self, interaction: Interaction) -> None:
        await self._store.put(self._key(interaction.interaction_id), interaction.to_dict())

    async def list_for_agent(self, agent_id: str) -> List[Interaction]:
        found = [
            Interaction.from_record(v)
            for _, v in await self._store.list_by_prefix(INTERACTIONS_PREFIX)
        ]
        found = [i for i in found if i.involves(agent_id)]
        found.sort(key=lambda i: (i.created_at, i.interaction_id))
        return found
