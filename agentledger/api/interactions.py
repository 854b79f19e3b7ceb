"""
Agent Ledger - Interactions API

    POST /v1/interactions                    - Open an interaction (X-Caller initiates; trust-gated)
    POST /v1/interactions/{id}/complete      - Complete (target agent only)
    GET  /v1/interactions/{id}               - Current state
    GET  /v1/interactions?agent_id=          - Interactions involving an agent
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from agentledger.api.deps import caller_header
from agentledger.services import Services, get_services

router = APIRouter(prefix="/v1/interactions", tags=["interactions"])


class InitiateInteractionRequest(BaseModel):
    to_agent: str = Field(..., min_length=1)
    capability: Optional[str] = Field(None, max_length=100)


class InteractionResponse(BaseModel):
    interaction_id: str
    from_agent: str
    to_agent: str
    capability: Optional[str] = None
    status: str
    created_at: int
    completed_at: Optional[int] = None


@router.post("", response_model=InteractionResponse, status_code=201)
async def initiate_interaction(
    req: InitiateInteractionRequest,
    caller: str = Depends(caller_header),
    services: Services = Depends(get_services),
):
    interaction = await services.gate.initiate(caller, req.to_agent, req.capability)
    return interaction.to_dict()


@router.post("/{interaction_id}/complete", response_model=InteractionResponse)
async def complete_interaction(
    interaction_id: str,
    caller: str = Depends(caller_header),
    services: Services = Depends(get_services),
):
    interaction = await services.gate.complete(interaction_id, caller)
    return interaction.to_dict()


@router.get("/{interaction_id}", response_model=InteractionResponse)
async def get_interaction(interaction_id: str, services: Services = Depends(get_services)):
    interaction = await services.gate.get(interaction_id)
    return interaction.to_dict()


@router.get("", response_model=List[InteractionResponse])
async def list_interactions(
    agent_id: str = Query(..., min_length=1),
    services: Services = Depends(get_services),
):
    return [i.to_dict() for i in await services.gate.list_for_agent(agent_id)]
