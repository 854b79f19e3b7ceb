"""
Agent Ledger - Identity Domain Model

Three loosely coupled sources describe an agent:

    keys:{agent_id}     signing key (custodial agents only)  -> authoritative address
    agents:{agent_id}   local directory entry                -> capabilities, metadata, address
    identity registry   on-chain entry                       -> registry id, registered_at, reputation

The reconciled, canonical view is `Agent`; where it came from is `source`,
one of OnChainOnly | LocalOnly | Reconciled.
"""
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from eth_account import Account

from agentledger.ledger.gateway import RegistryEntry


class PaymentMode(str, Enum):
    EXTERNALLY_OWNED = "externally_owned"
    CUSTODIAL = "custodial"


class OnChainStatus(str, Enum):
    NOT_REGISTERED = "not_registered"
    UNAVAILABLE = "unavailable"


def normalize_capabilities(capabilities: List[str]) -> List[str]:
    return sorted({c.strip() for c in capabilities if c and c.strip()})


def _to_iso(ts: Optional[int]) -> Optional[str]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


# =============================================
# LOCAL RECORDS
# =============================================

@dataclass
class DirectoryEntry:
    agent_id: str
    name: str
    settlement_address: str
    payment_mode: str = PaymentMode.EXTERNALLY_OWNED.value
    capabilities: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    registry_id: Optional[int] = None
    local_score: int = 50
    active: bool = True
    registered_at: int = 0

    def __post_init__(self):
        if not self.registered_at:
            self.registered_at = int(time.time())

    @property
    def is_custodial(self) -> bool:
        return self.payment_mode == PaymentMode.CUSTODIAL

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_record(record: Dict[str, Any]) -> "DirectoryEntry":
        registry_id = record.get("registry_id")
        return DirectoryEntry(
            agent_id=record["agent_id"],
            name=record.get("name", ""),
            settlement_address=record.get("settlement_address", "").lower(),
            payment_mode=PaymentMode(record.get("payment_mode", "externally_owned")).value,
            capabilities=list(record.get("capabilities", [])),
            metadata=dict(record.get("metadata") or {}),
            registry_id=int(registry_id) if registry_id is not None else None,
            local_score=int(record.get("local_score", 50)),
            active=bool(record.get("active", True)),
            registered_at=int(record.get("registered_at", 0)),
        )


@dataclass
class SigningKeyRecord:
    agent_id: str
    private_key: str
    address: str
    created_at: int = 0

    def derive_address(self) -> str:
        """The key, not the stored address, is authoritative."""
        return Account.from_key(self.private_key).address.lower()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_record(record: Dict[str, Any]) -> "SigningKeyRecord":
        return SigningKeyRecord(
            agent_id=record["agent_id"],
            private_key=record["private_key"],
            address=record.get("address", "").lower(),
            created_at=int(record.get("created_at", 0)),
        )


# =============================================
# SOURCE VARIANTS
# =============================================

@dataclass
class FieldConflict:
    field: str
    kept: Any
    kept_from: str
    discarded: Any
    discarded_from: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OnChainOnly:
    registry: RegistryEntry
    kind: str = "onchain_only"


@dataclass
class LocalOnly:
    entry: DirectoryEntry
    onchain_status: str = OnChainStatus.NOT_REGISTERED.value
    kind: str = "local_only"


@dataclass
class Reconciled:
    entry: DirectoryEntry
    registry: RegistryEntry
    conflicts: List[FieldConflict] = field(default_factory=list)
    kind: str = "reconciled"


AgentSource = Union[OnChainOnly, LocalOnly, Reconciled]


# =============================================
# CANONICAL VIEW
# =============================================

@dataclass
class Agent:
    agent_id: str
    settlement_address: str
    name: str
    payment_mode: str
    source: AgentSource
    registry_id: Optional[int] = None
    capabilities: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    registered_at: int = 0
    active: bool = True
    local_score: int = 50
    onchain_available: bool = True

    @property
    def is_custodial(self) -> bool:
        return self.payment_mode == PaymentMode.CUSTODIAL

    @property
    def conflicts(self) -> List[FieldConflict]:
        return self.source.conflicts if isinstance(self.source, Reconciled) else []

    def to_dict(self) -> Dict[str, Any]:
        source: Dict[str, Any] = {"kind": self.source.kind}
        if isinstance(self.source, LocalOnly):
            source["onchain_status"] = self.source.onchain_status
        if isinstance(self.source, Reconciled):
            source["conflicts"] = [c.to_dict() for c in self.source.conflicts]
        return {
            "agent_id": self.agent_id,
            "registry_id": self.registry_id,
            "settlement_address": self.settlement_address,
            "name": self.name,
            "capabilities": list(self.capabilities),
            "metadata": dict(self.metadata),
            "payment_mode": self.payment_mode,
            "registered_at": self.registered_at,
            "registered_at_iso": _to_iso(self.registered_at),
            "active": self.active,
            "local_score": self.local_score,
            "onchain_available": self.onchain_available,
            "source": source,
        }
