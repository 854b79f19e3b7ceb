import asyncio

import pytest

from agentledger.audit import AuditLog
from agentledger.ledger.memory import InMemoryLedger
from agentledger.services import build_services
from agentledger.store.memory import MemoryKeyedStore

PAYER = "0x" + "a1" * 20
PAYEE = "0x" + "b2" * 20
STRANGER = "0x" + "c3" * 20

START = 1_700_000_000
DAY = 86400


class ManualClock:
    def __init__(self, start: int = START):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def ledger(clock):
    return InMemoryLedger(clock=clock)


@pytest.fixture
def store():
    return MemoryKeyedStore()


@pytest.fixture
def audit(clock):
    return AuditLog(clock=clock)


@pytest.fixture
def services(store, ledger, audit):
    return build_services(store=store, ledger=ledger, audit=audit)


def run(coro):
    return asyncio.run(coro)


async def register_custodial(services, agent_id: str, capabilities=None, metadata=None):
    entry = await services.registrar.register(
        agent_id=agent_id,
        name=agent_id.title(),
        capabilities=capabilities or ["translate"],
        metadata=metadata,
        payment_mode="custodial",
    )
    return entry
