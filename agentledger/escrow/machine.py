"""
Agent Ledger - Escrow State Machine

create -> release / refund / dispute / claim-expired, with at-most-once fund
movement under concurrent and retried requests.

The ledger's atomic check-and-set is the only correctness mechanism. The
pre-read before each transition exists to produce precise errors (who may
act, what state the escrow is in); it is never the guard. If two requests
race, the ledger lets exactly one through and the other comes back
`not_active`.

After a successful transition:
    1. one audit event (fire-and-forget)
    2. release only: both parties' local trust nudged upward (non-critical)
A transition that moved funds reports success even if 1 or 2 fail.
"""
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

import structlog

from agentledger.audit import AuditKind, AuditLog
from agentledger.config import settings
from agentledger.errors import (
    DescriptionRequired,
    DescriptionTooLong,
    EscrowNotFound,
    Expired,
    InsufficientFunds,
    InvalidAmount,
    InvalidParty,
    NotActive,
    NotExpired,
    ReasonTooLong,
    Unauthorized,
    UpstreamRejectedError,
    UpstreamTimeoutError,
    ValidationError,
)
from agentledger.escrow.model import (
    Escrow,
    EscrowAction,
    EscrowStatus,
    PAYER_ONLY_ACTIONS,
    next_status,
)
from agentledger.idempotency import IdempotencyGuard
from agentledger.ledger.addresses import ZERO_ADDRESS, is_address, normalize_address
from agentledger.ledger.gateway import (
    LedgerGateway,
    LedgerNotFound,
    LedgerRejected,
    LedgerTimeout,
    call_with_timeout,
)

logger = structlog.get_logger()

T = TypeVar("T")

_AUDIT_KINDS = {
    EscrowAction.RELEASE: AuditKind.ESCROW_RELEASED,
    EscrowAction.REFUND: AuditKind.ESCROW_REFUNDED,
    EscrowAction.DISPUTE: AuditKind.ESCROW_DISPUTED,
    EscrowAction.EXPIRE_CLAIM: AuditKind.ESCROW_EXPIRE_CLAIMED,
}

# Where a landed submission leaves the escrow, used when reconciling a timed-out write.
_LANDED_STATUS = {
    EscrowAction.RELEASE: EscrowStatus.COMPLETED,
    EscrowAction.REFUND: EscrowStatus.REFUNDED,
    EscrowAction.DISPUTE: EscrowStatus.DISPUTED,
    EscrowAction.EXPIRE_CLAIM: EscrowStatus.REFUNDED,
}


def resolve_expiration_days(days: Optional[int]) -> int:
    """Omitted or out-of-range expirations fall back to the default."""
    if days is None or isinstance(days, bool) or not isinstance(days, int):
        return settings.ESCROW_DEFAULT_EXPIRATION_DAYS
    if not settings.ESCROW_MIN_EXPIRATION_DAYS <= days <= settings.ESCROW_MAX_EXPIRATION_DAYS:
        return settings.ESCROW_DEFAULT_EXPIRATION_DAYS
    return days


def _party(value: Any, label: str) -> str:
    if not is_address(value):
        raise InvalidParty(f"{label} must be a 0x-prefixed 20-byte address", field=label)
    address = normalize_address(value)
    if address == ZERO_ADDRESS:
        raise InvalidParty(f"{label} cannot be the zero address", field=label)
    return address


class EscrowStateMachine:

    def __init__(
        self,
        ledger: LedgerGateway,
        audit: AuditLog,
        idempotency: IdempotencyGuard,
        nudger=None,
        timeout: Optional[float] = None,
    ):
        self._ledger = ledger
        self._audit = audit
        self._idempotency = idempotency
        self._nudger = nudger
        self._timeout = timeout if timeout is not None else settings.LEDGER_TIMEOUT_SECONDS

    # =============================================
    # CREATE
    # =============================================

    async def create(
        self,
        payer: str,
        payee: str,
        amount: int,
        description: str,
        expiration_days: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> Escrow:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(amount)
        payer = _party(payer, "payer")
        payee = _party(payee, "payee")
        if payer == payee:
            raise InvalidParty("Payee cannot be the payer", field="payee")
        if not description or not description.strip():
            raise DescriptionRequired()
        if len(description) > settings.ESCROW_DESCRIPTION_MAX_LENGTH:
            raise DescriptionTooLong(len(description), settings.ESCROW_DESCRIPTION_MAX_LENGTH)
        days = resolve_expiration_days(expiration_days)

        async def prepare() -> Dict[str, Any]:
            existing = await self._call("escrow_list", self._ledger.query_escrows_by_party(payer))
            return {"known_ids": [e.escrow_id for e in existing]}

        async def submit() -> Dict[str, Any]:
            escrow = await self._call(
                "escrow_create",
                self._ledger.submit_escrow_create(payer, payee, amount, description, days),
                amount=amount,
            )
            await self._after_create(escrow)
            return escrow.to_dict()

        async def reconcile(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            known = set(context.get("known_ids", []))
            existing = await self._call("escrow_list", self._ledger.query_escrows_by_party(payer))
            for escrow in existing:
                if (escrow.escrow_id not in known and escrow.payer == payer and escrow.payee == payee
                        and escrow.amount == amount and escrow.description == description):
                    await self._after_create(escrow)
                    return escrow.to_dict()
            return None

        result = await self._idempotency.run(
            "escrow_create", payer, idempotency_key, submit, reconcile=reconcile, prepare=prepare,
            params={"payee": payee, "amount": amount, "description": description, "expiration_days": days},
        )
        return Escrow.from_record(result)

    async def _after_create(self, escrow: Escrow) -> None:
        logger.info(
            "escrow_created",
            escrow_id=escrow.escrow_id,
            payer=escrow.payer,
            payee=escrow.payee,
            amount=escrow.amount,
            expires_at=escrow.expires_at,
        )
        await self._emit(AuditKind.ESCROW_CREATED, escrow, escrow.amount)

    # =============================================
    # TRANSITIONS
    # =============================================

    async def release(self, escrow_id: str, caller: str, idempotency_key: Optional[str] = None) -> Escrow:
        return await self._transition(EscrowAction.RELEASE, escrow_id, caller, idempotency_key)

    async def refund(self, escrow_id: str, caller: str, idempotency_key: Optional[str] = None) -> Escrow:
        return await self._transition(EscrowAction.REFUND, escrow_id, caller, idempotency_key)

    async def dispute(
        self, escrow_id: str, caller: str, reason: str, idempotency_key: Optional[str] = None,
    ) -> Escrow:
        if not reason or not reason.strip():
            raise ValidationError("Dispute reason is required", field="reason")
        if len(reason) > settings.DISPUTE_REASON_MAX_LENGTH:
            raise ReasonTooLong(len(reason), settings.DISPUTE_REASON_MAX_LENGTH)
        return await self._transition(EscrowAction.DISPUTE, escrow_id, caller, idempotency_key, reason)

    async def claim_expired(self, escrow_id: str, caller: str, idempotency_key: Optional[str] = None) -> Escrow:
        return await self._transition(EscrowAction.EXPIRE_CLAIM, escrow_id, caller, idempotency_key)

    async def _transition(
        self,
        action: EscrowAction,
        escrow_id: str,
        caller: str,
        idempotency_key: Optional[str],
        reason: Optional[str] = None,
    ) -> Escrow:
        caller = _party(caller, "caller")

        async def submit() -> Dict[str, Any]:
            current = await self.get(escrow_id)
            self._precheck(action, current, caller)
            updated = await self._call(
                f"escrow_{action.value}",
                self._submit(action, escrow_id, caller, reason),
                escrow=current,
                action=action,
            )
            await self._after_transition(action, updated)
            return updated.to_dict()

        async def reconcile(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            current = await self.get(escrow_id)
            if current.status != _LANDED_STATUS[action].value:
                return None
            await self._after_transition(action, current)
            return current.to_dict()

        result = await self._idempotency.run(
            f"escrow_{action.value}", caller, idempotency_key, submit, reconcile=reconcile,
            scope=escrow_id, params={"escrow_id": escrow_id, "reason": reason},
        )
        return Escrow.from_record(result)

    def _submit(self, action: EscrowAction, escrow_id: str, caller: str, reason: Optional[str]):
        if action == EscrowAction.RELEASE:
            return self._ledger.submit_escrow_release(escrow_id, caller)
        if action == EscrowAction.REFUND:
            return self._ledger.submit_escrow_refund(escrow_id, caller)
        if action == EscrowAction.DISPUTE:
            return self._ledger.submit_escrow_dispute(escrow_id, caller, reason)
        return self._ledger.submit_escrow_expire_claim(escrow_id, caller)

    @staticmethod
    def _precheck(action: EscrowAction, escrow: Escrow, caller: str) -> None:
        if action in PAYER_ONLY_ACTIONS:
            if caller != escrow.payer:
                raise Unauthorized("Only payer can release", escrow_id=escrow.escrow_id)
        elif not escrow.is_party(caller):
            raise Unauthorized(
                f"Only the payer or payee can {action.value.replace('_', ' ')}",
                escrow_id=escrow.escrow_id,
            )
        if next_status(escrow.status, action) is None:
            raise NotActive(escrow.escrow_id, escrow.status, action.value)

    async def _after_transition(self, action: EscrowAction, escrow: Escrow) -> None:
        moved = action != EscrowAction.DISPUTE
        logger.info(
            f"escrow_{action.value}",
            escrow_id=escrow.escrow_id,
            status=escrow.status,
            payer=escrow.payer,
            payee=escrow.payee,
            amount=escrow.amount if moved else None,
        )
        await self._emit(_AUDIT_KINDS[action], escrow, escrow.amount if moved else None)
        if action == EscrowAction.RELEASE and self._nudger is not None:
            await self._nudger.nudge_addresses(
                [escrow.payer, escrow.payee], settings.PAYMENT_TRUST_BOOST, reason="escrow_released",
            )

    async def _emit(self, kind: AuditKind, escrow: Escrow, amount: Optional[int]) -> None:
        try:
            await self._audit.emit(kind, escrow.escrow_id, [escrow.payer, escrow.payee], amount)
        except Exception as e:
            logger.warning("audit_emit_failed", kind=kind.value, escrow_id=escrow.escrow_id, error=str(e))

    # =============================================
    # READS
    # =============================================

    async def get(self, escrow_id: str) -> Escrow:
        return await self._call("escrow_get", self._ledger.query_escrow(escrow_id), escrow_id=escrow_id)

    async def list_for_party(self, address: str, role: Optional[str] = None) -> List[Escrow]:
        address = _party(address, "party")
        if role not in (None, "payer", "payee"):
            raise ValidationError("role must be 'payer' or 'payee'", field="role")
        escrows = await self._call("escrow_list", self._ledger.query_escrows_by_party(address))
        if role == "payer":
            return [e for e in escrows if e.payer == address]
        if role == "payee":
            return [e for e in escrows if e.payee == address]
        return escrows

    async def balance(self, address: str) -> int:
        address = _party(address, "address")
        return await self._call("balance", self._ledger.query_balance(address))

    # =============================================
    # LEDGER FAILURE MAPPING
    # =============================================

    async def _call(
        self,
        operation: str,
        awaitable: Awaitable[T],
        escrow_id: Optional[str] = None,
        escrow: Optional[Escrow] = None,
        action: Optional[EscrowAction] = None,
        amount: Optional[int] = None,
    ) -> T:
        try:
            return await call_with_timeout(awaitable, self._timeout, operation)
        except LedgerTimeout as e:
            logger.warning("ledger_timeout", operation=operation, timeout=e.timeout)
            raise UpstreamTimeoutError(operation, e.timeout)
        except LedgerNotFound:
            raise EscrowNotFound(escrow_id or (escrow.escrow_id if escrow else "unknown"))
        except LedgerRejected as e:
            raise await self._map_rejection(operation, e.reason, escrow, action, amount)

    async def _map_rejection(
        self,
        operation: str,
        reason: str,
        escrow: Optional[Escrow],
        action: Optional[EscrowAction],
        amount: Optional[int],
    ) -> Exception:
        escrow_id = escrow.escrow_id if escrow else "unknown"
        if reason == "not_active" and escrow is not None and action is not None:
            # Lost a race: report the state the winner left behind.
            status = "not active"
            try:
                status = (await self.get(escrow.escrow_id)).status
            except (UpstreamTimeoutError, EscrowNotFound) as e:
                logger.warning("escrow_status_requery_failed", escrow_id=escrow_id, error=str(e))
            logger.info("escrow_transition_lost_race", escrow_id=escrow_id, action=action.value, status=status)
            return NotActive(escrow_id, status, action.value)
        if reason == "unauthorized":
            return Unauthorized("Caller is not permitted to perform this action", escrow_id=escrow_id)
        if reason == "expired" and escrow is not None:
            return Expired(escrow_id, escrow.expires_at)
        if reason == "not_expired" and escrow is not None:
            return NotExpired(escrow_id, escrow.expires_at)
        if reason == "insufficient_funds":
            return InsufficientFunds("Payer balance is below the escrow amount", amount=amount)
        if reason == "invalid_amount":
            return InvalidAmount(amount)
        if reason == "invalid_party":
            return InvalidParty("Ledger rejected the escrow parties")
        logger.error("ledger_rejected_unmapped", operation=operation, reason=reason)
        return UpstreamRejectedError(operation, reason)
