"""
Agent Ledger - Ledger Gateway

The shared ledger is an external collaborator. Everything that moves funds
or touches the identity/reputation registry goes through this interface.

Every call returns a result or raises one of:
    LedgerTimeout           no answer within the bound
    LedgerRejected(reason)  the ledger refused (atomic check failed, bad input, ...)
    LedgerNotFound          the escrow / registry entry does not exist

Rejection reasons the core maps to typed errors:
    not_active, unauthorized, expired, not_expired, insufficient_funds,
    invalid_amount, invalid_party, self_feedback, invalid_score
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

from agentledger.escrow.model import Escrow

T = TypeVar("T")


# =============================================
# FAILURES
# =============================================

class LedgerError(Exception):
    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation}: {message}")


class LedgerTimeout(LedgerError):
    def __init__(self, operation: str, timeout: float):
        self.timeout = timeout
        super().__init__(operation, f"no response within {timeout}s")


class LedgerRejected(LedgerError):
    def __init__(self, operation: str, reason: str):
        self.reason = reason
        super().__init__(operation, f"rejected ({reason})")


class LedgerNotFound(LedgerError):
    def __init__(self, operation: str, key: Any):
        self.key = key
        super().__init__(operation, f"{key} not found")


async def call_with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Bound any ledger/registry round-trip. Nothing waits indefinitely."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise LedgerTimeout(operation, timeout)


# =============================================
# REGISTRY RECORDS
# =============================================

@dataclass
class RegistryEntry:
    registry_id: int
    address: str
    name: str
    registered_at: int
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_record(record: Dict[str, Any]) -> "RegistryEntry":
        return RegistryEntry(
            registry_id=int(record["registry_id"]),
            address=record["address"].lower(),
            name=record.get("name", ""),
            registered_at=int(record.get("registered_at", 0)),
            active=bool(record.get("active", True)),
        )


@dataclass
class ReputationTally:
    registry_id: int
    count: int = 0
    average: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_record(record: Dict[str, Any]) -> "ReputationTally":
        return ReputationTally(
            registry_id=int(record["registry_id"]),
            count=int(record.get("count", 0)),
            average=float(record.get("average", 0.0)),
        )


@dataclass
class FeedbackEntry:
    registry_id: int
    from_address: str
    score: int
    payment_proof: Optional[str] = None
    created_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_record(record: Dict[str, Any]) -> "FeedbackEntry":
        return FeedbackEntry(
            registry_id=int(record["registry_id"]),
            from_address=record.get("from_address", "").lower(),
            score=int(record.get("score", 0)),
            payment_proof=record.get("payment_proof"),
            created_at=int(record.get("created_at", 0)),
        )


# =============================================
# INTERFACE
# =============================================

class LedgerGateway(ABC):

    # --- escrow writes (each one atomic check-and-set on the ledger) ---

    @abstractmethod
    async def submit_escrow_create(
        self, payer: str, payee: str, amount: int, description: str, expiration_days: int,
    ) -> Escrow:
        """Lock `amount` from the payer and create the record in one operation."""

    @abstractmethod
    async def submit_escrow_release(self, escrow_id: str, caller: str) -> Escrow:
        ...

    @abstractmethod
    async def submit_escrow_refund(self, escrow_id: str, caller: str) -> Escrow:
        ...

    @abstractmethod
    async def submit_escrow_dispute(self, escrow_id: str, caller: str, reason: str) -> Escrow:
        ...

    @abstractmethod
    async def submit_escrow_expire_claim(self, escrow_id: str, caller: str) -> Escrow:
        ...

    # --- escrow reads ---

    @abstractmethod
    async def query_escrow(self, escrow_id: str) -> Escrow:
        ...

    @abstractmethod
    async def query_escrows_by_party(self, address: str) -> List[Escrow]:
        ...

    @abstractmethod
    async def query_balance(self, address: str) -> int:
        ...

    # --- identity / reputation registry ---

    @abstractmethod
    async def query_identity_registry_entry(self, address: str) -> List[RegistryEntry]:
        """All registry entries whose settlement address is `address` (may be empty)."""

    @abstractmethod
    async def query_identity_registry_by_id(self, registry_id: int) -> RegistryEntry:
        ...

    @abstractmethod
    async def query_reputation_tally(self, registry_id: int) -> ReputationTally:
        ...

    @abstractmethod
    async def query_feedback(self, registry_id: int) -> List[FeedbackEntry]:
        ...

    @abstractmethod
    async def submit_identity_registration(self, address: str, name: str) -> RegistryEntry:
        ...

    @abstractmethod
    async def submit_feedback(
        self, registry_id: int, from_address: str, score: int, payment_proof: Optional[str] = None,
    ) -> FeedbackEntry:
        ...

    async def close(self) -> None:
        return None
