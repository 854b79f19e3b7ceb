"""
Agent Ledger - JSON-RPC Ledger Gateway

Talks to a ledger node (or the settlement contract's RPC facade) over
JSON-RPC 2.0 with httpx.

Method map:
    escrow_create / escrow_release / escrow_refund / escrow_dispute / escrow_expireClaim
    escrow_get / escrow_listByParty / ledger_getBalance
    identity_getByAddress / identity_getById / identity_register
    reputation_getTally / reputation_getFeedback / reputation_submitFeedback

Error codes:
    non-2xx or non-JSON body  -> LedgerRejected("http_{status}")
    -32004  not found         -> LedgerNotFound
    -32003  rejected          -> LedgerRejected(error.data.reason)
    other                     -> LedgerRejected(error.message)
"""
import itertools
from typing import Any, Dict, List, Optional

import httpx
import structlog

from agentledger.escrow.model import Escrow
from agentledger.ledger.addresses import normalize_address
from agentledger.ledger.gateway import (
    FeedbackEntry,
    LedgerGateway,
    LedgerNotFound,
    LedgerRejected,
    LedgerTimeout,
    RegistryEntry,
    ReputationTally,
)

logger = structlog.get_logger()

RPC_NOT_FOUND = -32004
RPC_REJECTED = -32003


class HttpLedgerGateway(LedgerGateway):

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._rpc_url = rpc_url
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(
            headers={"User-Agent": "AgentLedger/1.0"},
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
        )
        self._ids = itertools.count(1)

    async def _call(self, method: str, params: Dict[str, Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self._client.post(self._rpc_url, json=payload)
        except httpx.TimeoutException:
            logger.warning("ledger_rpc_timeout", method=method, timeout=self._timeout)
            raise LedgerTimeout(method, self._timeout)
        except httpx.HTTPError as e:
            logger.warning("ledger_rpc_transport_error", method=method, error=str(e))
            raise LedgerRejected(method, f"transport_error: {e}")

        if not resp.is_success:
            logger.warning("ledger_rpc_http_error", method=method, status=resp.status_code)
            raise LedgerRejected(method, f"http_{resp.status_code}")

        try:
            body = resp.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            logger.warning("ledger_rpc_bad_body", method=method, status=resp.status_code)
            raise LedgerRejected(method, f"http_{resp.status_code}")

        error = body.get("error")
        if error:
            code = error.get("code")
            if code == RPC_NOT_FOUND:
                raise LedgerNotFound(method, params.get("escrow_id") or params.get("registry_id"))
            data = error.get("data") or {}
            reason = data.get("reason") if code == RPC_REJECTED else None
            raise LedgerRejected(method, reason or error.get("message", "unknown"))
        return body.get("result")

    # --- escrow writes ---

    async def submit_escrow_create(
        self, payer: str, payee: str, amount: int, description: str, expiration_days: int,
    ) -> Escrow:
        result = await self._call("escrow_create", {
            "payer": normalize_address(payer),
            "payee": normalize_address(payee),
            "amount": amount,
            "description": description,
            "expiration_days": expiration_days,
        })
        return Escrow.from_record(result)

    async def submit_escrow_release(self, escrow_id: str, caller: str) -> Escrow:
        result = await self._call("escrow_release", {"escrow_id": escrow_id, "caller": normalize_address(caller)})
        return Escrow.from_record(result)

    async def submit_escrow_refund(self, escrow_id: str, caller: str) -> Escrow:
        result = await self._call("escrow_refund", {"escrow_id": escrow_id, "caller": normalize_address(caller)})
        return Escrow.from_record(result)

    async def submit_escrow_dispute(self, escrow_id: str, caller: str, reason: str) -> Escrow:
        result = await self._call("escrow_dispute", {
            "escrow_id": escrow_id,
            "caller": normalize_address(caller),
            "reason": reason,
        })
        return Escrow.from_record(result)

    async def submit_escrow_expire_claim(self, escrow_id: str, caller: str) -> Escrow:
        result = await self._call("escrow_expireClaim", {
            "escrow_id": escrow_id,
            "caller": normalize_address(caller),
        })
        return Escrow.from_record(result)

    # --- escrow reads ---

    async def query_escrow(self, escrow_id: str) -> Escrow:
        result = await self._call("escrow_get", {"escrow_id": escrow_id})
        if result is None:
            raise LedgerNotFound("escrow_get", escrow_id)
        return Escrow.from_record(result)

    async def query_escrows_by_party(self, address: str) -> List[Escrow]:
        result = await self._call("escrow_listByParty", {"address": normalize_address(address)})
        return [Escrow.from_record(r) for r in result or []]

    async def query_balance(self, address: str) -> int:
        result = await self._call("ledger_getBalance", {"address": normalize_address(address)})
        return int(result or 0)

    # --- identity / reputation ---

    async def query_identity_registry_entry(self, address: str) -> List[RegistryEntry]:
        result = await self._call("identity_getByAddress", {"address": normalize_address(address)})
        return [RegistryEntry.from_record(r) for r in result or []]

    async def query_identity_registry_by_id(self, registry_id: int) -> RegistryEntry:
        result = await self._call("identity_getById", {"registry_id": int(registry_id)})
        if result is None:
            raise LedgerNotFound("identity_getById", registry_id)
        return RegistryEntry.from_record(result)

    async def query_reputation_tally(self, registry_id: int) -> ReputationTally:
        result = await self._call("reputation_getTally", {"registry_id": int(registry_id)})
        return ReputationTally.from_record({"registry_id": registry_id, **(result or {})})

    async def query_feedback(self, registry_id: int) -> List[FeedbackEntry]:
        result = await self._call("reputation_getFeedback", {"registry_id": int(registry_id)})
        return [FeedbackEntry.from_record({"registry_id": registry_id, **r}) for r in result or []]

    async def submit_identity_registration(self, address: str, name: str) -> RegistryEntry:
        result = await self._call("identity_register", {"address": normalize_address(address), "name": name})
        return RegistryEntry.from_record(result)

    async def submit_feedback(
        self, registry_id: int, from_address: str, score: int, payment_proof: Optional[str] = None,
    ) -> FeedbackEntry:
        result = await self._call("reputation_submitFeedback", {
            "registry_id": int(registry_id),
            "from_address": normalize_address(from_address),
            "score": score,
            "payment_proof": payment_proof,
        })
        return FeedbackEntry.from_record({"registry_id": registry_id, **result})

    async def close(self) -> None:
        await self._client.aclose()
