"""
Shared request dependencies: caller identity, idempotency key, operator auth.

Caller identity arrives in X-Caller as a settlement address or an agent id.
"""
import hmac
from typing import Optional

from fastapi import Header

from agentledger.config import settings
from agentledger.errors import OperatorKeyRequired, Unauthorized
from agentledger.ledger.addresses import is_address, normalize_address
from agentledger.services import Services


async def caller_header(x_caller: Optional[str] = Header(None, alias="X-Caller")) -> str:
    if not x_caller or not x_caller.strip():
        raise Unauthorized("X-Caller header is required")
    return x_caller.strip()


async def idempotency_header(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> Optional[str]:
    if idempotency_key is None:
        return None
    return idempotency_key.strip()[:200] or None


async def require_operator(x_operator_key: Optional[str] = Header(None, alias="X-Operator-Key")) -> None:
    if not x_operator_key or not hmac.compare_digest(x_operator_key.encode(), settings.OPERATOR_KEY.encode()):
        raise OperatorKeyRequired()


async def caller_address(services: Services, caller: str) -> str:
    if is_address(caller):
        return normalize_address(caller)
    return await services.reconciler.resolve_address(caller)


async def caller_is_agent(services: Services, caller: str, agent_id: str) -> bool:
    if caller == agent_id:
        return True
    if is_address(caller):
        agents = await services.reconciler.resolve(caller)
        return len(agents) == 1 and agents[0].agent_id == agent_id
    return False
