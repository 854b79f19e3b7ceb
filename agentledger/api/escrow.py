"""
Agent Ledger - Escrow API

    POST /v1/escrows                         - Create (X-Caller is the payer)
    POST /v1/escrows/{id}/release            - Release to payee (payer only)
    POST /v1/escrows/{id}/refund             - Refund to payer (either party)
    POST /v1/escrows/{id}/dispute            - Flag as disputed (either party)
    POST /v1/escrows/{id}/claim-expired      - Refund after expiry (either party)
    GET  /v1/escrows/{id}                    - Current state
    GET  /v1/escrows?party=&role=            - Escrows for a party

Writes accept an Idempotency-Key header; a retried key replays the first result.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from agentledger.api.deps import caller_address, caller_header, idempotency_header
from agentledger.services import Services, get_services

router = APIRouter(prefix="/v1/escrows", tags=["escrows"])


# =============================================
# REQUEST/RESPONSE MODELS
# =============================================

class CreateEscrowRequest(BaseModel):
    payee: str = Field(..., min_length=1, description="Payee settlement address or agent id")
    amount: int
    description: str
    expiration_days: Optional[int] = None


class DisputeRequest(BaseModel):
    reason: str


class EscrowResponse(BaseModel):
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
    created_at_iso: Optional[str] = None
    expires_at_iso: Optional[str] = None
    completed_at_iso: Optional[str] = None


class EscrowListResponse(BaseModel):
    party: str
    role: Optional[str] = None
    escrows: List[EscrowResponse]
    total: int


# =============================================
# ENDPOINTS
# =============================================

@router.post("", response_model=EscrowResponse, status_code=201)
async def create_escrow(
    req: CreateEscrowRequest,
    caller: str = Depends(caller_header),
    idempotency_key: Optional[str] = Depends(idempotency_header),
    services: Services = Depends(get_services),
):
    payer = await caller_address(services, caller)
    payee = await caller_address(services, req.payee)
    escrow = await services.escrows.create(
        payer=payer,
        payee=payee,
        amount=req.amount,
        description=req.description,
        expiration_days=req.expiration_days,
        idempotency_key=idempotency_key,
    )
    return escrow.to_dict()


@router.post("/{escrow_id}/release", response_model=EscrowResponse)
async def release_escrow(
    escrow_id: str,
    caller: str = Depends(caller_header),
    idempotency_key: Optional[str] = Depends(idempotency_header),
    services: Services = Depends(get_services),
):
    address = await caller_address(services, caller)
    escrow = await services.escrows.release(escrow_id, address, idempotency_key=idempotency_key)
    return escrow.to_dict()


@router.post("/{escrow_id}/refund", response_model=EscrowResponse)
async def refund_escrow(
    escrow_id: str,
    caller: str = Depends(caller_header),
    idempotency_key: Optional[str] = Depends(idempotency_header),
    services: Services = Depends(get_services),
):
    address = await caller_address(services, caller)
    escrow = await services.escrows.refund(escrow_id, address, idempotency_key=idempotency_key)
    return escrow.to_dict()


@router.post("/{escrow_id}/dispute", response_model=EscrowResponse)
async def dispute_escrow(
    escrow_id: str,
    req: DisputeRequest,
    caller: str = Depends(caller_header),
    idempotency_key: Optional[str] = Depends(idempotency_header),
    services: Services = Depends(get_services),
):
    address = await caller_address(services, caller)
    escrow = await services.escrows.dispute(escrow_id, address, req.reason, idempotency_key=idempotency_key)
    return escrow.to_dict()


@router.post("/{escrow_id}/claim-expired", response_model=EscrowResponse)
async def claim_expired_escrow(
    escrow_id: str,
    caller: str = Depends(caller_header),
    idempotency_key: Optional[str] = Depends(idempotency_header),
    services: Services = Depends(get_services),
):
    address = await caller_address(services, caller)
    escrow = await services.escrows.claim_expired(escrow_id, address, idempotency_key=idempotency_key)
    return escrow.to_dict()


@router.get("/{escrow_id}", response_model=EscrowResponse)
async def get_escrow(escrow_id: str, services: Services = Depends(get_services)):
    escrow = await services.escrows.get(escrow_id)
    return escrow.to_dict()


@router.get("", response_model=EscrowListResponse)
async def list_escrows(
    party: str = Query(..., min_length=1, description="Settlement address or agent id"),
    role: Optional[str] = Query(None, pattern="^(payer|payee)$"),
    services: Services = Depends(get_services),
):
    address = await caller_address(services, party)
    escrows = await services.escrows.list_for_party(address, role)
    return {
        "party": address,
        "role": role,
        "escrows": [e.to_dict() for e in escrows],
        "total": len(escrows),
    }
