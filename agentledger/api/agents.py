"""
Agent Ledger - Agents API

Public:
    POST /v1/agents                              - Register (custodial or externally owned)
    GET  /v1/agents?capability=&min_trust=       - Discover, best trust first
    GET  /v1/agents/{lookup}                     - Canonical view (agent id, 0x address, registry:<id>)
    GET  /v1/agents/{lookup}/candidates          - Every agent behind a lookup
    GET  /v1/agents/{lookup}/trust               - Trust score with breakdown
    PUT  /v1/agents/{agent_id}/capabilities      - Replace capabilities (the agent itself)
    POST /v1/agents/{lookup}/feedback            - On-chain reputation feedback (X-Caller rates)

Operator (X-Operator-Key):
    PUT  /v1/admin/agents/{agent_id}/score       - Set local score
    POST /v1/admin/agents/{agent_id}/deactivate  - Deactivate
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from agentledger.api.deps import caller_address, caller_header, caller_is_agent, require_operator
from agentledger.errors import Unauthorized
from agentledger.services import Services, get_services

router = APIRouter(prefix="/v1/agents", tags=["agents"])
admin_router = APIRouter(prefix="/v1/admin/agents", tags=["admin-agents"],
                         dependencies=[Depends(require_operator)])


# =============================================
# REQUEST/RESPONSE MODELS
# =============================================

class RegisterAgentRequest(BaseModel):
    agent_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=100)
    capabilities: List[str] = Field(..., min_length=1, max_length=50)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    payment_mode: str = Field("externally_owned", pattern="^(externally_owned|custodial)$")
    settlement_address: Optional[str] = None
    private_key: Optional[str] = None


class CapabilitiesRequest(BaseModel):
    capabilities: List[str] = Field(..., min_length=1, max_length=50)


class FeedbackRequest(BaseModel):
    score: int
    payment_proof: Optional[str] = None


class ScoreRequest(BaseModel):
    score: int


class AgentSourceResponse(BaseModel):
    kind: str
    onchain_status: Optional[str] = None
    conflicts: List[Dict[str, Any]] = []


class AgentResponse(BaseModel):
    agent_id: str
    registry_id: Optional[int] = None
    settlement_address: str
    name: str
    capabilities: List[str]
    metadata: Dict[str, Any]
    payment_mode: str
    registered_at: int
    registered_at_iso: Optional[str] = None
    active: bool
    local_score: int
    onchain_available: bool
    source: AgentSourceResponse


class DiscoveredAgentResponse(AgentResponse):
    trust_score: int
    trust_partial: bool = False


class CandidatesResponse(BaseModel):
    lookup: str
    candidates: List[AgentResponse]
    ambiguous: bool


class TrustScoreResponse(BaseModel):
    agent_id: str
    score: int
    weights: Dict[str, float]
    breakdown: Dict[str, Dict[str, float]]
    formula: str
    chain_feedback_count: int
    unavailable_sources: List[str]
    partial: bool
    computed_at: int


class FeedbackResponse(BaseModel):
    registry_id: int
    from_address: str
    score: int
    payment_proof: Optional[str] = None
    created_at: int


# =============================================
# ENDPOINTS
# =============================================

@router.post("", response_model=AgentResponse, status_code=201)
async def register_agent(req: RegisterAgentRequest, services: Services = Depends(get_services)):
    entry = await services.registrar.register(
        agent_id=req.agent_id,
        name=req.name,
        capabilities=req.capabilities,
        metadata=req.metadata,
        payment_mode=req.payment_mode,
        settlement_address=req.settlement_address,
        private_key=req.private_key,
    )
    agent = await services.reconciler.get_agent(entry.agent_id)
    return agent.to_dict()


@router.get("", response_model=List[DiscoveredAgentResponse])
async def discover_agents(
    capability: Optional[str] = Query(None, max_length=100),
    min_trust: Optional[int] = Query(None, ge=0, le=100),
    payment_mode: Optional[str] = Query(None, pattern="^(externally_owned|custodial)$"),
    q: Optional[str] = Query(None, max_length=100),
    limit: int = Query(50, ge=1, le=200),
    services: Services = Depends(get_services),
):
    return await services.discovery.discover(
        capability=capability, min_trust=min_trust, payment_mode=payment_mode, query=q, limit=limit,
    )


@router.get("/{lookup}", response_model=AgentResponse)
async def get_agent(lookup: str, services: Services = Depends(get_services)):
    agent = await services.reconciler.get_agent(lookup)
    return agent.to_dict()


@router.get("/{lookup}/candidates", response_model=CandidatesResponse)
async def get_candidates(lookup: str, services: Services = Depends(get_services)):
    agents = await services.reconciler.resolve(lookup)
    return {
        "lookup": lookup,
        "candidates": [a.to_dict() for a in agents],
        "ambiguous": len(agents) > 1,
    }


@router.get("/{lookup}/trust", response_model=TrustScoreResponse)
async def get_trust_score(lookup: str, services: Services = Depends(get_services)):
    result = await services.aggregator.score_for(lookup)
    return result.to_dict()


@router.put("/{agent_id}/capabilities", response_model=AgentResponse)
async def update_capabilities(
    agent_id: str,
    req: CapabilitiesRequest,
    caller: str = Depends(caller_header),
    services: Services = Depends(get_services),
):
    if not await caller_is_agent(services, caller, agent_id):
        raise Unauthorized("Only the agent itself can change its capabilities", agent_id=agent_id)
    await services.registrar.update_capabilities(agent_id, req.capabilities)
    agent = await services.reconciler.get_agent(agent_id)
    return agent.to_dict()


@router.post("/{lookup}/feedback", response_model=FeedbackResponse, status_code=201)
async def submit_feedback(
    lookup: str,
    req: FeedbackRequest,
    caller: str = Depends(caller_header),
    services: Services = Depends(get_services),
):
    from_address = await caller_address(services, caller)
    entry = await services.registrar.submit_feedback(lookup, from_address, req.score, req.payment_proof)
    return entry.to_dict()


# =============================================
# OPERATOR
# =============================================

@admin_router.put("/{agent_id}/score", response_model=AgentResponse)
async def set_agent_score(agent_id: str, req: ScoreRequest, services: Services = Depends(get_services)):
    await services.registrar.set_score(agent_id, req.score)
    agent = await services.reconciler.get_agent(agent_id)
    return agent.to_dict()


@admin_router.post("/{agent_id}/deactivate", response_model=AgentResponse)
async def deactivate_agent(agent_id: str, services: Services = Depends(get_services)):
    await services.registrar.deactivate(agent_id)
    agent = await services.reconciler.get_agent(agent_id)
    return agent.to_dict()
