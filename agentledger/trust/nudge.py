"""
Agent Ledger - Local Score Nudges

The only place the local trust component changes outside an operator action:

    escrow released          +PAYMENT_TRUST_BOOST     payer and payee
    interaction completed    +INTERACTION_TRUST_BOOST  initiator and target

Capped at 100. Nudges are non-critical: any failure is logged and swallowed
so the transition that triggered it still reports success.
"""
from typing import Iterable, Optional

import structlog

from agentledger.errors import AgentNotFound
from agentledger.identity.directory import LocalAgentDirectory, SigningKeyStore
from agentledger.ledger.addresses import normalize_address

logger = structlog.get_logger()


class TrustNudger:

    def __init__(self, directory: LocalAgentDirectory, keys: SigningKeyStore):
        self._directory = directory
        self._keys = keys

    async def _agent_for_address(self, address: str) -> Optional[str]:
        """Exactly one local agent behind the address, or None."""
        key = await self._keys.find_by_address(address)
        if key is not None:
            return key.agent_id
        entries = [e for e in await self._directory.find_by_address(address) if e.active]
        if len(entries) == 1:
            return entries[0].agent_id
        if len(entries) > 1:
            logger.warning("trust_nudge_ambiguous_address", address=address,
                           candidates=[e.agent_id for e in entries])
        return None

    async def nudge_addresses(self, addresses: Iterable[str], boost: int, reason: str) -> None:
        for address in addresses:
            address = normalize_address(address)
            try:
                agent_id = await self._agent_for_address(address)
                if agent_id is None:
                    logger.debug("trust_nudge_skipped", address=address, reason=reason)
                    continue
                await self._nudge(agent_id, boost, reason)
            except Exception as e:
                logger.warning("trust_nudge_failed", address=address, reason=reason, error=str(e))

    async def nudge_agents(self, agent_ids: Iterable[str], boost: int, reason: str) -> None:
        for agent_id in agent_ids:
            try:
                await self._nudge(agent_id, boost, reason)
            except AgentNotFound:
                logger.debug("trust_nudge_skipped", agent_id=agent_id, reason=reason)
            except Exception as e:
                logger.warning("trust_nudge_failed", agent_id=agent_id, reason=reason, error=str(e))

    async def _nudge(self, agent_id: str, boost: int, reason: str) -> None:
        entry = await self._directory.adjust_score(agent_id, boost)
        logger.info("trust_nudged", agent_id=agent_id, boost=boost, local_score=entry.local_score,
                    reason=reason)
