"""
Agent Ledger - Audit Log

Every successful state transition emits exactly one event:

    {kind, subject_id, parties, amount, timestamp, prev_hash, event_hash}

Events are hash-chained the same way observation blocks are: each event's
hash covers its content plus the previous event's hash, so any edit breaks
the chain.

Delivery is fire-and-forget. With AUDIT_LOG_URL set, events are POSTed to
the message-log service; otherwise they go to the structured log. A failed
delivery is a warning, never a rollback.
"""
import hashlib
import json
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

import httpx
import structlog

logger = structlog.get_logger()

GENESIS_HASH = "0" * 64


class AuditKind(str, Enum):
    ESCROW_CREATED = "escrow_created"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_REFUNDED = "escrow_refunded"
    ESCROW_DISPUTED = "escrow_disputed"
    ESCROW_EXPIRE_CLAIMED = "escrow_expire_claimed"
    INTERACTION_INITIATED = "interaction_initiated"
    INTERACTION_COMPLETED = "interaction_completed"
    AGENT_REGISTERED = "agent_registered"
    AGENT_DEACTIVATED = "agent_deactivated"
    AGENT_SCORE_SET = "agent_score_set"
    FEEDBACK_SUBMITTED = "feedback_submitted"


@dataclass
class AuditEvent:
    kind: str
    subject_id: str
    parties: List[str] = field(default_factory=list)
    amount: Optional[int] = None
    timestamp: int = 0
    prev_hash: str = GENESIS_HASH
    event_hash: str = ""

    def __post_init__(self):
        if not self.event_hash:
            self.event_hash = self.compute_hash()

    def compute_hash(self) -> str:
        content = json.dumps({
            "kind": self.kind,
            "subject_id": self.subject_id,
            "parties": self.parties,
            "amount": self.amount,
            "timestamp": self.timestamp,
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(content.encode()).hexdigest()

    def verify(self) -> bool:
        return self.event_hash == self.compute_hash()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def verify_chain(events: List[AuditEvent]) -> Dict[str, Any]:
    """Recompute every hash and confirm each event links to its predecessor."""
    breaks = []
    prev = None
    for i, event in enumerate(events):
        if not event.verify():
            breaks.append({"index": i, "issue": "hash_mismatch", "event_hash": event.event_hash})
        if prev is not None and event.prev_hash != prev.event_hash:
            breaks.append({"index": i, "issue": "chain_break", "expected": prev.event_hash,
                           "found": event.prev_hash})
        prev = event
    return {"verified": not breaks, "events_checked": len(events), "breaks": breaks}


class AuditLog:

    def __init__(
        self,
        url: str = "",
        timeout: float = 3.0,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], int]] = None,
        keep: int = 1000,
    ):
        self._url = url
        self._timeout = timeout
        self._client = client
        self._clock = clock or (lambda: int(time.time()))
        self._head = GENESIS_HASH
        self._recent: Deque[AuditEvent] = deque(maxlen=keep)

    @property
    def head(self) -> str:
        return self._head

    def recent(self, kind: Optional[str] = None) -> List[AuditEvent]:
        events = list(self._recent)
        if kind:
            events = [e for e in events if e.kind == kind]
        return events

    async def emit(
        self,
        kind: AuditKind,
        subject_id: str,
        parties: List[str],
        amount: Optional[int] = None,
    ) -> AuditEvent:
        # Sealing and advancing the head happen without a suspension point in between.
        event = AuditEvent(
            kind=AuditKind(kind).value,
            subject_id=subject_id,
            parties=list(parties),
            amount=amount,
            timestamp=int(self._clock()),
            prev_hash=self._head,
        )
        self._head = event.event_hash
        self._recent.append(event)
        await self._deliver(event)
        return event

    async def _deliver(self, event: AuditEvent) -> None:
        if not self._url:
            logger.info("audit_event", **event.to_dict())
            return
        try:
            client = self._client or httpx.AsyncClient(timeout=self._timeout)
            try:
                resp = await client.post(self._url, json=event.to_dict(), timeout=self._timeout)
                resp.raise_for_status()
            finally:
                if self._client is None:
                    await client.aclose()
        except httpx.HTTPError as e:
            logger.warning("audit_delivery_failed", kind=event.kind, subject_id=event.subject_id,
                           event_hash=event.event_hash, error=str(e))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
