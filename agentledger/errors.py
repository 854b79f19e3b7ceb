"""
Agent Ledger - Error Taxonomy

Every failure carries a machine-readable kind plus a human-readable reason.

    ValidationError       400  bad input shape/range, never retried
    AuthorizationError    403  wrong caller role, never retried
    StateConflictError    409  not in the expected state, caller must re-query
    NotFoundError         404  escrow / agent / interaction unknown
    UpstreamTimeoutError  504  ledger or registry unresponsive (reads are safe to retry)
    UpstreamRejectedError 502  ledger refused for a reason we have no mapping for
    PartialDataError      ---  one source unavailable; absorbed, never surfaced as a failure
"""
from typing import Any, Dict


class AgentLedgerError(Exception):
    kind = "internal_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, **detail: Any):
        self.message = message
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message, **self.detail}


# =============================================
# VALIDATION
# =============================================

class ValidationError(AgentLedgerError):
    kind = "validation_error"
    status_code = 400


class InvalidAmount(ValidationError):
    kind = "invalid_amount"

    def __init__(self, amount: Any):
        super().__init__(f"Amount must be a positive integer, got {amount!r}", amount=str(amount))


class InvalidParty(ValidationError):
    kind = "invalid_party"


class DescriptionRequired(ValidationError):
    kind = "description_required"

    def __init__(self):
        super().__init__("Service description is required")


class DescriptionTooLong(ValidationError):
    kind = "description_too_long"

    def __init__(self, length: int, limit: int):
        super().__init__(
            f"Service description is {length} characters; limit is {limit}",
            length=length, limit=limit,
        )


class ReasonTooLong(ValidationError):
    kind = "reason_too_long"

    def __init__(self, length: int, limit: int):
        super().__init__(f"Dispute reason is {length} characters; limit is {limit}",
                         length=length, limit=limit)


class InsufficientFunds(ValidationError):
    kind = "insufficient_funds"


class InvalidAgent(ValidationError):
    kind = "invalid_agent"


class IdempotencyKeyReused(ValidationError):
    kind = "idempotency_key_reused"

    def __init__(self, idempotency_key: str, action: str):
        super().__init__(
            f"Idempotency key {idempotency_key!r} was already used for a different {action} request",
            idempotency_key=idempotency_key, action=action,
        )


# =============================================
# AUTHORIZATION
# =============================================

class AuthorizationError(AgentLedgerError):
    kind = "authorization_error"
    status_code = 403


class Unauthorized(AuthorizationError):
    kind = "unauthorized"


class TrustTooLow(AuthorizationError):
    kind = "trust_too_low"

    def __init__(self, agent_id: str, required: int, actual: int):
        self.required = required
        self.actual = actual
        super().__init__(
            f"Trust score of {agent_id} is {actual}; interactions require at least {required}",
            agent_id=agent_id, required=required, actual=actual,
        )


class OperatorKeyRequired(AuthorizationError):
    kind = "operator_key_required"

    def __init__(self):
        super().__init__("A valid X-Operator-Key header is required for operator actions")


# =============================================
# STATE CONFLICTS
# =============================================

class StateConflictError(AgentLedgerError):
    kind = "state_conflict"
    status_code = 409


class NotActive(StateConflictError):
    kind = "not_active"

    def __init__(self, escrow_id: str, status: str, action: str):
        super().__init__(
            f"Escrow {escrow_id} is {status}; cannot {action}",
            escrow_id=escrow_id, status=status, action=action,
        )


class Expired(StateConflictError):
    kind = "expired"

    def __init__(self, escrow_id: str, expires_at: int):
        super().__init__(
            f"Escrow {escrow_id} expired; use claim-expired to return the funds to the payer",
            escrow_id=escrow_id, expires_at=expires_at,
        )


class NotExpired(StateConflictError):
    kind = "not_expired"

    def __init__(self, escrow_id: str, expires_at: int):
        super().__init__(f"Escrow {escrow_id} does not expire until {expires_at}",
                         escrow_id=escrow_id, expires_at=expires_at)


class RequestInProgress(StateConflictError):
    kind = "request_in_progress"

    def __init__(self, idempotency_key: str):
        super().__init__(f"A request with idempotency key {idempotency_key!r} is still in flight",
                         idempotency_key=idempotency_key)


class AmbiguousIdentity(StateConflictError):
    kind = "ambiguous_identity"

    def __init__(self, lookup: str, candidates: list):
        super().__init__(
            f"{lookup} resolves to {len(candidates)} distinct agents; look up by agent id instead",
            lookup=lookup, candidates=candidates,
        )


class MissingSigningKey(StateConflictError):
    kind = "missing_signing_key"

    def __init__(self, agent_id: str):
        super().__init__(f"Custodial agent {agent_id} has no signing key on record",
                         agent_id=agent_id)


class InteractionNotOpen(StateConflictError):
    kind = "interaction_not_open"


class AgentInactive(StateConflictError):
    kind = "agent_inactive"

    def __init__(self, agent_id: str):
        super().__init__(f"Agent {agent_id} is deactivated", agent_id=agent_id)


# =============================================
# NOT FOUND
# =============================================

class NotFoundError(AgentLedgerError):
    kind = "not_found"
    status_code = 404


class EscrowNotFound(NotFoundError):
    kind = "escrow_not_found"

    def __init__(self, escrow_id: str):
        super().__init__(f"Escrow {escrow_id} not found", escrow_id=escrow_id)


class AgentNotFound(NotFoundError):
    kind = "agent_not_found"

    def __init__(self, lookup: str):
        super().__init__(f"No agent found for {lookup}", lookup=lookup)


class InteractionNotFound(NotFoundError):
    kind = "interaction_not_found"

    def __init__(self, interaction_id: str):
        super().__init__(f"Interaction {interaction_id} not found", interaction_id=interaction_id)


# =============================================
# UPSTREAM
# =============================================

class UpstreamTimeoutError(AgentLedgerError):
    kind = "upstream_timeout"
    status_code = 504
    retryable = True

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            f"{operation} timed out after {timeout}s; re-query state before retrying a write",
            operation=operation, timeout=timeout,
        )


class UpstreamRejectedError(AgentLedgerError):
    kind = "upstream_rejected"
    status_code = 502

    def __init__(self, operation: str, reason: str):
        super().__init__(f"Ledger rejected {operation}: {reason}", operation=operation, reason=reason)


class PartialDataError(AgentLedgerError):
    kind = "partial_data"

    def __init__(self, source: str, reason: str):
        self.source = source
        super().__init__(f"{source} unavailable: {reason}", source=source, reason=reason)
