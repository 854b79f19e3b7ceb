"""
Agent Ledger - Escrow Domain Model

Records live on the ledger. This module only describes their shape and
the legal transitions the ledger's atomic check-and-set enforces.

Status lifecycle:
    active -> completed           (release, payer only, before expiry)
    active -> refunded            (refund, or claim-expired once expired)
    active -> disputed            (dispute, flag only, no fund movement)
    disputed -> completed         (release)
    disputed -> refunded          (refund, or claim-expired once expired)
    completed, refunded           (terminal)
"""
import hashlib
import json
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class EscrowStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class EscrowAction(str, Enum):
    RELEASE = "release"
    REFUND = "refund"
    DISPUTE = "dispute"
    EXPIRE_CLAIM = "expire_claim"


TRANSITIONS = {
    (EscrowStatus.ACTIVE, EscrowAction.RELEASE): EscrowStatus.COMPLETED,
    (EscrowStatus.ACTIVE, EscrowAction.REFUND): EscrowStatus.REFUNDED,
    (EscrowStatus.ACTIVE, EscrowAction.DISPUTE): EscrowStatus.DISPUTED,
    (EscrowStatus.ACTIVE, EscrowAction.EXPIRE_CLAIM): EscrowStatus.REFUNDED,
    (EscrowStatus.DISPUTED, EscrowAction.RELEASE): EscrowStatus.COMPLETED,
    (EscrowStatus.DISPUTED, EscrowAction.REFUND): EscrowStatus.REFUNDED,
    (EscrowStatus.DISPUTED, EscrowAction.EXPIRE_CLAIM): EscrowStatus.REFUNDED,
}

TERMINAL_STATUSES = frozenset({EscrowStatus.COMPLETED, EscrowStatus.REFUNDED})

# Only the payer may release; every other action is open to either party.
PAYER_ONLY_ACTIONS = frozenset({EscrowAction.RELEASE})

SECONDS_PER_DAY = 86400


def next_status(status: str, action: str) -> Optional[EscrowStatus]:
    """Target status for (status, action), or None when the transition is illegal."""
    return TRANSITIONS.get((EscrowStatus(status), EscrowAction(action)))


def compute_escrow_id(payer: str, payee: str, amount: int, created_at: int, nonce: int) -> str:
    content = json.dumps({
        "payer": payer,
        "payee": payee,
        "amount": amount,
        "created_at": created_at,
        "nonce": nonce,
    }, sort_keys=True, separators=(",", ":"))
    return "0x" + hashlib.sha256(content.encode()).hexdigest()


@dataclass
class Escrow:
    escrow_id: str
    payer: str
    payee: str
    amount: int
    description: str
    status: str
    created_at: int
    expires_at: int
    completed_at: Optional[int] = None
    dispute_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return EscrowStatus(self.status) in TERMINAL_STATUSES

    def is_party(self, address: str) -> bool:
        return address in (self.payer, self.payee)

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = EscrowStatus(self.status).value
        data["created_at_iso"] = _to_iso(self.created_at)
        data["expires_at_iso"] = _to_iso(self.expires_at)
        data["completed_at_iso"] = _to_iso(self.completed_at)
        return data

    @staticmethod
    def from_record(record: Dict[str, Any]) -> "Escrow":
        completed_at = record.get("completed_at")
        return Escrow(
            escrow_id=record["escrow_id"],
            payer=record["payer"].lower(),
            payee=record["payee"].lower(),
            amount=int(record["amount"]),
            description=record.get("description", ""),
            status=EscrowStatus(record.get("status", "active")).value,
            created_at=int(record["created_at"]),
            expires_at=int(record["expires_at"]),
            completed_at=int(completed_at) if completed_at is not None else None,
            dispute_reason=record.get("dispute_reason"),
        )


def _to_iso(ts: Optional[int]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
