"""
Agent Ledger - Agent Discovery

Search the local directory by capability, payment mode and free text, score
every match, and return them best-first.
"""
import asyncio
from typing import Any, Dict, List, Optional

import structlog

from agentledger.errors import AgentLedgerError
from agentledger.identity.directory import LocalAgentDirectory
from agentledger.identity.model import DirectoryEntry
from agentledger.identity.reconcile import IdentityReconciler
from agentledger.trust.aggregator import TrustAggregator

logger = structlog.get_logger()


def _matches(entry: DirectoryEntry, capability: Optional[str], payment_mode: Optional[str],
             query: Optional[str]) -> bool:
    if capability:
        needle = capability.lower()
        if not any(needle in c.lower() for c in entry.capabilities):
            return False
    if payment_mode and entry.payment_mode != payment_mode:
        return False
    if query:
        needle = query.lower()
        haystack = " ".join([
            entry.agent_id,
            entry.name,
            str(entry.metadata.get("description", "")),
            " ".join(entry.capabilities),
        ]).lower()
        if needle not in haystack:
            return False
    return True


class AgentDiscovery:

    def __init__(
        self,
        directory: LocalAgentDirectory,
        reconciler: IdentityReconciler,
        aggregator: TrustAggregator,
    ):
        self._directory = directory
        self._reconciler = reconciler
        self._aggregator = aggregator

    async def discover(
        self,
        capability: Optional[str] = None,
        min_trust: Optional[int] = None,
        payment_mode: Optional[str] = None,
        query: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        entries = [
            e for e in await self._directory.list_all()
            if e.active and _matches(e, capability, payment_mode, query)
        ]
        scored = await asyncio.gather(*(self._scored(e.agent_id) for e in entries))
        results = [r for r in scored if r is not None]
        if min_trust is not None:
            results = [r for r in results if r["trust_score"] >= min_trust]
        results.sort(key=lambda r: (-r["trust_score"], r["agent_id"]))
        return results[:limit]

    async def _scored(self, agent_id: str) -> Optional[Dict[str, Any]]:
        try:
            agent = await self._reconciler.get_agent(agent_id)
            trust = await self._aggregator.score(agent)
        except AgentLedgerError as e:
            logger.warning("discovery_agent_skipped", agent_id=agent_id, error=e.kind)
            return None
        return {**agent.to_dict(), "trust_score": trust.score,
                "trust_partial": bool(trust.unavailable_sources)}
