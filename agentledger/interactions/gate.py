"""
Agent Ledger - Interaction Gate

An agent may open a tracked interaction with another only when the target's
aggregated trust score meets MIN_INTERACTION_TRUST. Refusals create no record.
Completing an interaction nudges both parties' local score.
"""
import time
from typing import List, Optional

import structlog

from agentledger.audit import AuditKind, AuditLog
from agentledger.config import settings
from agentledger.errors import (
    AgentInactive,
    InteractionNotFound,
    InteractionNotOpen,
    InvalidAgent,
    TrustTooLow,
    Unauthorized,
)
from agentledger.identity.reconcile import IdentityReconciler
from agentledger.interactions.model import (
    Interaction,
    InteractionRepository,
    InteractionStatus,
    new_interaction_id,
)
from agentledger.ledger.addresses import is_address
from agentledger.trust.aggregator import TrustAggregator
from agentledger.trust.nudge import TrustNudger

logger = structlog.get_logger()


class InteractionGate:

    def __init__(
        self,
        reconciler: IdentityReconciler,
        aggregator: TrustAggregator,
        repository: InteractionRepository,
        audit: AuditLog,
        nudger: TrustNudger,
        min_trust: Optional[int] = None,
    ):
        self._reconciler = reconciler
        self._aggregator = aggregator
        self._repository = repository
        self._audit = audit
        self._nudger = nudger
        self._min_trust = min_trust if min_trust is not None else settings.MIN_INTERACTION_TRUST

    async def initiate(self, from_agent: str, to_agent: str, capability: Optional[str] = None) -> Interaction:
        source = await self._reconciler.get_agent(from_agent)
        target = await self._reconciler.get_agent(to_agent)
        if source.agent_id == target.agent_id:
            raise InvalidAgent("An agent cannot open an interaction with itself", agent_id=source.agent_id)
        if not source.active:
            raise AgentInactive(source.agent_id)
        if not target.active:
            raise AgentInactive(target.agent_id)
        if capability and target.capabilities:
            offered = {c.lower() for c in target.capabilities}
            if capability.strip().lower() not in offered:
                raise InvalidAgent(
                    f"{target.agent_id} does not offer capability {capability!r}",
                    agent_id=target.agent_id, capability=capability,
                )

        trust = await self._aggregator.score(target)
        if trust.score < self._min_trust:
            logger.info("interaction_refused", from_agent=source.agent_id, to_agent=target.agent_id,
                        score=trust.score, required=self._min_trust)
            raise TrustTooLow(target.agent_id, self._min_trust, trust.score)

        interaction = Interaction(
            interaction_id=new_interaction_id(),
            from_agent=source.agent_id,
            to_agent=target.agent_id,
            capability=capability.strip() if capability else None,
        )
        await self._repository.put(interaction)
        logger.info("interaction_initiated", interaction_id=interaction.interaction_id,
                    from_agent=source.agent_id, to_agent=target.agent_id, target_score=trust.score)
        await self._emit(AuditKind.INTERACTION_INITIATED, interaction)
        return interaction

    async def complete(self, interaction_id: str, caller: Optional[str] = None) -> Interaction:
        async with self._repository.lock(interaction_id):
            interaction = await self._repository.get(interaction_id)
            if interaction is None:
                raise InteractionNotFound(interaction_id)

            if caller is not None:
                caller_id = caller
                if is_address(caller):
                    caller_id = (await self._reconciler.get_agent(caller)).agent_id
                if caller_id != interaction.to_agent:
                    raise Unauthorized("Only the target agent can complete the interaction",
                                       interaction_id=interaction_id)

            if not interaction.is_open:
                raise InteractionNotOpen(
                    f"Interaction {interaction_id} is already {interaction.status}",
                    interaction_id=interaction_id, status=interaction.status,
                )

            interaction.status = InteractionStatus.COMPLETED.value
            interaction.completed_at = int(time.time())
            await self._repository.put(interaction)

        logger.info("interaction_completed", interaction_id=interaction_id,
                    from_agent=interaction.from_agent, to_agent=interaction.to_agent)
        await self._emit(AuditKind.INTERACTION_COMPLETED, interaction)
        await self._nudger.nudge_agents(
            [interaction.from_agent, interaction.to_agent],
            settings.INTERACTION_TRUST_BOOST,
            reason="interaction_completed",
        )
        return interaction

    async def get(self, interaction_id: str) -> Interaction:
        interaction = await self._repository.get(interaction_id)
        if interaction is None:
            raise InteractionNotFound(interaction_id)
        return interaction

    async def list_for_agent(self, agent_id: str) -> List[Interaction]:
        return await self._repository.list_for_agent(agent_id)

    async def _emit(self, kind: AuditKind, interaction: Interaction) -> None:
        try:
            await self._audit.emit(kind, interaction.interaction_id,
                                   [interaction.from_agent, interaction.to_agent])
        except Exception as e:
            logger.warning("audit_emit_failed", kind=kind.value,
                           interaction_id=interaction.interaction_id, error=str(e))
