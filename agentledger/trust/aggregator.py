"""
Agent Ledger - Trust Score Aggregator

Blends on-chain reputation with locally observed signals into one 0-100 score.

    chain feedback present:  chain .70 | local .15 | tx .10 | payment .05
    no chain feedback:       chain  0  | local .50 | tx .30 | payment .20

    score = chain_avg*w_chain + local*w_local + tx_rate*w_tx + pay_rate*w_pay

tx_rate   completed escrows + completed interactions over everything tracked
          for the agent (neutral 50 when nothing is tracked)
pay_rate  feedback carrying a real payment proof over all feedback
          (neutral 50 when there is no feedback)

`compute_trust_score` is pure. `TrustAggregator` gathers its inputs
concurrently; a source that fails is listed in `unavailable_sources` and
treated as empty, so a score can always be rendered. Scores are advisory
snapshots: a release's nudge may or may not be reflected yet.
"""
import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from agentledger.config import settings
from agentledger.escrow.model import EscrowStatus
from agentledger.identity.model import Agent
from agentledger.identity.reconcile import IdentityReconciler
from agentledger.identity.registry import IdentityRegistryReader
from agentledger.interactions.model import InteractionRepository, InteractionStatus
from agentledger.ledger.addresses import is_payment_proof
from agentledger.ledger.gateway import ReputationTally, call_with_timeout

logger = structlog.get_logger()

NEUTRAL_RATE = 50

WEIGHTS_WITH_CHAIN = {"chain": 0.70, "local": 0.15, "tx": 0.10, "payment": 0.05}
WEIGHTS_LOCAL_ONLY = {"chain": 0.0, "local": 0.50, "tx": 0.30, "payment": 0.20}


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def round_half_up(value: float) -> int:
    return int(math.floor(round(value, 9) + 0.5))


@dataclass
class TrustInputs:
    chain_count: int = 0
    chain_average: float = 0.0
    local_score: int = NEUTRAL_RATE
    tx_total: int = 0
    tx_successful: int = 0
    feedback_total: int = 0
    feedback_with_payment: int = 0
    unavailable_sources: List[str] = field(default_factory=list)

    @property
    def tx_rate(self) -> float:
        if self.tx_total <= 0:
            return NEUTRAL_RATE
        return _clamp(self.tx_successful / self.tx_total * 100)

    @property
    def payment_rate(self) -> float:
        if self.feedback_total <= 0:
            return NEUTRAL_RATE
        return _clamp(self.feedback_with_payment / self.feedback_total * 100)


@dataclass
class TrustScoreResult:
    agent_id: str
    score: int
    weights: Dict[str, float]
    components: Dict[str, float]
    formula: str
    chain_count: int = 0
    unavailable_sources: List[str] = field(default_factory=list)
    computed_at: int = 0

    @property
    def breakdown(self) -> Dict[str, Dict[str, float]]:
        return {
            name: {
                "value": round(value, 2),
                "weight": self.weights[name],
                "contribution": round(value * self.weights[name], 2),
            }
            for name, value in self.components.items()
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "score": self.score,
            "weights": dict(self.weights),
            "breakdown": self.breakdown,
            "formula": self.formula,
            "chain_feedback_count": self.chain_count,
            "unavailable_sources": list(self.unavailable_sources),
            "partial": bool(self.unavailable_sources),
            "computed_at": self.computed_at,
        }


def compute_trust_score(inputs: TrustInputs, agent_id: str = "") -> TrustScoreResult:
    """Pure: same inputs, same result. Never raises for empty or missing sources."""
    weights = WEIGHTS_WITH_CHAIN if inputs.chain_count > 0 else WEIGHTS_LOCAL_ONLY
    components = {
        "chain": _clamp(inputs.chain_average) if inputs.chain_count > 0 else 0.0,
        "local": _clamp(inputs.local_score),
        "tx": inputs.tx_rate,
        "payment": inputs.payment_rate,
    }
    raw = sum(components[name] * weights[name] for name in weights)
    score = int(_clamp(round_half_up(raw)))
    formula = " + ".join(
        f"{name}({components[name]:.1f})*{weights[name]:.2f}" for name in ("chain", "local", "tx", "payment")
    ) + f" = {score}"
    return TrustScoreResult(
        agent_id=agent_id,
        score=score,
        weights=dict(weights),
        components=components,
        formula=formula,
        chain_count=inputs.chain_count,
        unavailable_sources=list(inputs.unavailable_sources),
        computed_at=int(time.time()),
    )


class TrustAggregator:

    def __init__(
        self,
        reconciler: IdentityReconciler,
        registry: IdentityRegistryReader,
        interactions: InteractionRepository,
        timeout: Optional[float] = None,
    ):
        self._reconciler = reconciler
        self._registry = registry
        self._interactions = interactions
        self._timeout = timeout if timeout is not None else settings.LEDGER_TIMEOUT_SECONDS

    async def score_for(self, lookup: str) -> TrustScoreResult:
        agent = await self._reconciler.get_agent(lookup)
        return await self.score(agent)

    async def gather_inputs(self, agent: Agent) -> TrustInputs:
        inputs = TrustInputs(local_score=agent.local_score)
        if not agent.onchain_available:
            inputs.unavailable_sources.append("identity_registry")

        sources: Dict[str, Any] = {}
        if agent.registry_id is not None and agent.onchain_available:
            sources["reputation"] = self._registry.reputation(agent.registry_id)
            sources["feedback"] = self._registry.feedback(agent.registry_id)
        sources["escrow_history"] = call_with_timeout(
            self._registry.ledger.query_escrows_by_party(agent.settlement_address),
            self._timeout,
            "escrow_list",
        )
        sources["interaction_history"] = self._interactions.list_for_agent(agent.agent_id)

        names = list(sources.keys())
        results = await asyncio.gather(*sources.values(), return_exceptions=True)

        fetched: Dict[str, Any] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.warning("trust_source_unavailable", agent_id=agent.agent_id, source=name,
                               error=str(result) or type(result).__name__)
                inputs.unavailable_sources.append(name)
                continue
            fetched[name] = result

        tally: ReputationTally = fetched.get("reputation") or ReputationTally(registry_id=agent.registry_id or 0)
        inputs.chain_count = tally.count
        inputs.chain_average = tally.average

        feedback = fetched.get("feedback", [])
        inputs.feedback_total = len(feedback)
        inputs.feedback_with_payment = sum(1 for f in feedback if is_payment_proof(f.payment_proof))

        escrows = fetched.get("escrow_history", [])
        interactions = fetched.get("interaction_history", [])
        inputs.tx_total = len(escrows) + len(interactions)
        inputs.tx_successful = (
            sum(1 for e in escrows if e.status == EscrowStatus.COMPLETED.value)
            + sum(1 for i in interactions if i.status == InteractionStatus.COMPLETED.value)
        )
        return inputs

    async def score(self, agent: Agent) -> TrustScoreResult:
        inputs = await self.gather_inputs(agent)
        result = compute_trust_score(inputs, agent.agent_id)
        logger.debug("trust_score_computed", agent_id=agent.agent_id, score=result.score,
                     unavailable=result.unavailable_sources)
        return result
