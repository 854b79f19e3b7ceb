"""
Agent Ledger - In-Process Ledger

Simulates the shared ledger for development and tests. Every write runs its
check and its mutation inside one critical section, the same atomic
check-and-set contract the real contract gives us.

Faults can be injected per operation to exercise timeout and rejection paths:
    ledger.inject_fault("escrow_release", hang=True)                     # never answers
    ledger.inject_fault("escrow_release", hang=True, after_apply=True)   # lands, then never answers
    ledger.inject_fault("reputation_tally", LedgerRejected("reputation_tally", "paused"))
"""
import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

import structlog

from agentledger.escrow.model import (
    Escrow,
    EscrowAction,
    EscrowStatus,
    PAYER_ONLY_ACTIONS,
    SECONDS_PER_DAY,
    compute_escrow_id,
    next_status,
)
from agentledger.ledger.addresses import normalize_address
from agentledger.ledger.gateway import (
    FeedbackEntry,
    LedgerGateway,
    LedgerNotFound,
    LedgerRejected,
    RegistryEntry,
    ReputationTally,
)

logger = structlog.get_logger()

HANG_SECONDS = 3600


@dataclass
class _Fault:
    error: Optional[Exception]
    hang: bool
    after_apply: bool


class InMemoryLedger(LedgerGateway):

    def __init__(self, clock: Optional[Callable[[], int]] = None, latency: float = 0.0):
        self._clock = clock or (lambda: int(time.time()))
        self._latency = latency
        self._lock = asyncio.Lock()
        self._escrows: Dict[str, Escrow] = {}
        self._balances: Dict[str, int] = defaultdict(int)
        self._nonces: Dict[str, int] = defaultdict(int)
        self._registry: Dict[int, RegistryEntry] = {}
        self._feedback: Dict[int, List[FeedbackEntry]] = defaultdict(list)
        self._faults: Dict[str, List[_Fault]] = defaultdict(list)
        self.submissions: Dict[str, int] = defaultdict(int)

    # =============================================
    # TEST / DEV HOOKS
    # =============================================

    def now(self) -> int:
        return int(self._clock())

    def fund(self, address: str, amount: int) -> None:
        self._balances[normalize_address(address)] += amount

    def inject_fault(
        self,
        operation: str,
        error: Optional[Exception] = None,
        *,
        hang: bool = False,
        after_apply: bool = False,
        times: int = 1,
    ) -> None:
        for _ in range(times):
            self._faults[operation].append(_Fault(error=error, hang=hang, after_apply=after_apply))

    def escrow_count(self) -> int:
        return len(self._escrows)

    async def _fault_point(self, operation: str, after_apply: bool) -> None:
        pending = self._faults.get(operation)
        if not pending or pending[0].after_apply != after_apply:
            return
        fault = pending.pop(0)
        if fault.hang:
            await asyncio.sleep(HANG_SECONDS)
        if fault.error is not None:
            raise fault.error

    async def _enter(self, operation: str) -> None:
        self.submissions[operation] += 1
        if self._latency:
            await asyncio.sleep(self._latency)
        await self._fault_point(operation, after_apply=False)

    # =============================================
    # ESCROW WRITES
    # =============================================

    async def submit_escrow_create(
        self, payer: str, payee: str, amount: int, description: str, expiration_days: int,
    ) -> Escrow:
        op = "escrow_create"
        await self._enter(op)
        payer = normalize_address(payer)
        payee = normalize_address(payee)
        async with self._lock:
            if not isinstance(amount, int) or amount <= 0:
                raise LedgerRejected(op, "invalid_amount")
            if payer == payee:
                raise LedgerRejected(op, "invalid_party")
            if self._balances[payer] < amount:
                raise LedgerRejected(op, "insufficient_funds")

            created_at = self.now()
            nonce = self._nonces[payer]
            self._nonces[payer] += 1
            escrow = Escrow(
                escrow_id=compute_escrow_id(payer, payee, amount, created_at, nonce),
                payer=payer,
                payee=payee,
                amount=amount,
                description=description,
                status=EscrowStatus.ACTIVE.value,
                created_at=created_at,
                expires_at=created_at + expiration_days * SECONDS_PER_DAY,
            )
            self._balances[payer] -= amount
            self._escrows[escrow.escrow_id] = escrow
        await self._fault_point(op, after_apply=True)
        return replace(escrow)

    async def _transition(
        self, op: str, escrow_id: str, caller: str, action: EscrowAction, reason: Optional[str] = None,
    ) -> Escrow:
        await self._enter(op)
        caller = normalize_address(caller)
        async with self._lock:
            escrow = self._escrows.get(escrow_id)
            if escrow is None:
                raise LedgerNotFound(op, escrow_id)

            if action in PAYER_ONLY_ACTIONS:
                if caller != escrow.payer:
                    raise LedgerRejected(op, "unauthorized")
            elif not escrow.is_party(caller):
                raise LedgerRejected(op, "unauthorized")

            target = next_status(escrow.status, action)
            if target is None:
                raise LedgerRejected(op, "not_active")

            now = self.now()
            if action == EscrowAction.RELEASE and escrow.is_expired(now):
                raise LedgerRejected(op, "expired")
            if action == EscrowAction.EXPIRE_CLAIM and not escrow.is_expired(now):
                raise LedgerRejected(op, "not_expired")

            if target == EscrowStatus.COMPLETED:
                self._balances[escrow.payee] += escrow.amount
            elif target == EscrowStatus.REFUNDED:
                self._balances[escrow.payer] += escrow.amount

            escrow.status = target.value
            if target in (EscrowStatus.COMPLETED, EscrowStatus.REFUNDED):
                escrow.completed_at = now
            if action == EscrowAction.DISPUTE:
                escrow.dispute_reason = reason
            result = replace(escrow)
        await self._fault_point(op, after_apply=True)
        return result

    async def submit_escrow_release(self, escrow_id: str, caller: str) -> Escrow:
        return await self._transition("escrow_release", escrow_id, caller, EscrowAction.RELEASE)

    async def submit_escrow_refund(self, escrow_id: str, caller: str) -> Escrow:
        return await self._transition("escrow_refund", escrow_id, caller, EscrowAction.REFUND)

    async def submit_escrow_dispute(self, escrow_id: str, caller: str, reason: str) -> Escrow:
        return await self._transition("escrow_dispute", escrow_id, caller, EscrowAction.DISPUTE, reason)

    async def submit_escrow_expire_claim(self, escrow_id: str, caller: str) -> Escrow:
        return await self._transition("escrow_expire_claim", escrow_id, caller, EscrowAction.EXPIRE_CLAIM)

    # =============================================
    # ESCROW READS
    # =============================================

    async def query_escrow(self, escrow_id: str) -> Escrow:
        await self._enter("escrow_get")
        escrow = self._escrows.get(escrow_id)
        if escrow is None:
            raise LedgerNotFound("escrow_get", escrow_id)
        return replace(escrow)

    async def query_escrows_by_party(self, address: str) -> List[Escrow]:
        await self._enter("escrow_list")
        address = normalize_address(address)
        found = [replace(e) for e in self._escrows.values() if e.is_party(address)]
        found.sort(key=lambda e: (e.created_at, e.escrow_id))
        return found

    async def query_balance(self, address: str) -> int:
        await self._enter("balance")
        return self._balances[normalize_address(address)]

    # =============================================
    # IDENTITY / REPUTATION
    # =============================================

    async def query_identity_registry_entry(self, address: str) -> List[RegistryEntry]:
        await self._enter("registry_by_address")
        address = normalize_address(address)
        return [replace(e) for e in self._registry.values() if e.address == address]

    async def query_identity_registry_by_id(self, registry_id: int) -> RegistryEntry:
        await self._enter("registry_by_id")
        entry = self._registry.get(int(registry_id))
        if entry is None:
            raise LedgerNotFound("registry_by_id", registry_id)
        return replace(entry)

    async def query_reputation_tally(self, registry_id: int) -> ReputationTally:
        await self._enter("reputation_tally")
        entries = self._feedback.get(int(registry_id), [])
        if not entries:
            return ReputationTally(registry_id=int(registry_id))
        average = sum(e.score for e in entries) / len(entries)
        return ReputationTally(registry_id=int(registry_id), count=len(entries), average=average)

    async def query_feedback(self, registry_id: int) -> List[FeedbackEntry]:
        await self._enter("feedback_list")
        return [replace(e) for e in self._feedback.get(int(registry_id), [])]

    async def submit_identity_registration(self, address: str, name: str) -> RegistryEntry:
        op = "identity_register"
        await self._enter(op)
        async with self._lock:
            registry_id = len(self._registry) + 1
            entry = RegistryEntry(
                registry_id=registry_id,
                address=normalize_address(address),
                name=name,
                registered_at=self.now(),
            )
            self._registry[registry_id] = entry
        await self._fault_point(op, after_apply=True)
        logger.debug("ledger_identity_registered", registry_id=registry_id, address=entry.address)
        return replace(entry)

    async def submit_feedback(
        self, registry_id: int, from_address: str, score: int, payment_proof: Optional[str] = None,
    ) -> FeedbackEntry:
        op = "feedback_submit"
        await self._enter(op)
        from_address = normalize_address(from_address)
        async with self._lock:
            target = self._registry.get(int(registry_id))
            if target is None:
                raise LedgerNotFound(op, registry_id)
            if not 0 <= score <= 100:
                raise LedgerRejected(op, "invalid_score")
            if target.address == from_address:
                raise LedgerRejected(op, "self_feedback")
            entry = FeedbackEntry(
                registry_id=int(registry_id),
                from_address=from_address,
                score=score,
                payment_proof=payment_proof,
                created_at=self.now(),
            )
            self._feedback[int(registry_id)].append(entry)
        await self._fault_point(op, after_apply=True)
        return replace(entry)
