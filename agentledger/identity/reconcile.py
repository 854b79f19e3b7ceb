"""
Agent Ledger - Identity Reconciliation Engine

Turns a lookup (agent id, 0x settlement address, or registry:<id>) into
canonical Agent views.

Resolution order, all sources consulted:
    1. signing key held  -> custodial; the key's derived address is authoritative
    2. directory entry   -> its settlement address is authoritative
    3. registry          -> queried by the authoritative address (or the entry's
                            registry reference); with no local record at all the
                            registry id becomes the logical id: registry:<id>
    4. merge             -> local wins name / capabilities / metadata,
                            registry wins registered_at and reputation

Distinct logical agents that share an address (externally-owned agents parked
on the backend wallet) come back as distinct views; get_agent refuses to pick
one. A registry outage never fails a lookup that has local data: the view is
LocalOnly(unavailable) with onchain_available=False so scoring can reweight.
"""
from typing import List, Optional

import structlog

from agentledger.config import settings
from agentledger.errors import (
    AgentNotFound,
    AmbiguousIdentity,
    MissingSigningKey,
    PartialDataError,
    UpstreamRejectedError,
    UpstreamTimeoutError,
)
from agentledger.identity.directory import LocalAgentDirectory, SigningKeyStore
from agentledger.identity.model import (
    Agent,
    DirectoryEntry,
    FieldConflict,
    LocalOnly,
    OnChainOnly,
    OnChainStatus,
    PaymentMode,
    Reconciled,
)
from agentledger.identity.registry import IdentityRegistryReader
from agentledger.ledger.addresses import is_address, normalize_address
from agentledger.ledger.gateway import RegistryEntry

logger = structlog.get_logger()

REGISTRY_PREFIX = "registry:"

_UNAVAILABLE = (UpstreamTimeoutError, PartialDataError)


class IdentityReconciler:

    def __init__(
        self,
        directory: LocalAgentDirectory,
        keys: SigningKeyStore,
        registry: IdentityRegistryReader,
    ):
        self._directory = directory
        self._keys = keys
        self._registry = registry

    # =============================================
    # PUBLIC
    # =============================================

    async def resolve(self, lookup: str) -> List[Agent]:
        """Every distinct agent the lookup refers to (never empty; AgentNotFound otherwise)."""
        lookup = (lookup or "").strip()
        if not lookup:
            raise AgentNotFound(lookup)
        if lookup.startswith(REGISTRY_PREFIX):
            return [await self._resolve_registry_id(lookup)]
        if is_address(lookup):
            return await self._resolve_address(normalize_address(lookup))

        entry = await self._directory.get(lookup)
        if entry is None:
            raise AgentNotFound(lookup)
        return [await self._resolve_entry(entry)]

    async def get_agent(self, lookup: str) -> Agent:
        agents = await self.resolve(lookup)
        if len(agents) > 1:
            logger.info("identity_ambiguous", lookup=lookup, candidates=[a.agent_id for a in agents])
            raise AmbiguousIdentity(lookup, [a.agent_id for a in agents])
        return agents[0]

    async def resolve_address(self, lookup: str) -> str:
        """Settlement address for an agent id or address; addresses pass through unchanged."""
        if is_address(lookup):
            return normalize_address(lookup)
        return (await self.get_agent(lookup)).settlement_address

    # =============================================
    # LOOKUP KINDS
    # =============================================

    async def _resolve_registry_id(self, lookup: str) -> Agent:
        try:
            registry_id = int(lookup[len(REGISTRY_PREFIX):])
        except ValueError:
            raise AgentNotFound(lookup)

        local = await self._directory.find_by_registry_id(registry_id)
        if local is not None:
            return await self._resolve_entry(local)

        try:
            registry = await self._registry.entry_by_id(registry_id)
        except PartialDataError as e:
            raise UpstreamRejectedError("registry_by_id", e.detail.get("reason", "unavailable"))
        if registry is None:
            raise AgentNotFound(lookup)
        return self._onchain_only(registry)

    async def _resolve_address(self, address: str) -> List[Agent]:
        key = await self._keys.find_by_address(address)
        if key is not None:
            entry = await self._directory.get(key.agent_id)
            if entry is not None:
                # Custodial addresses are unique by construction.
                return [await self._resolve_entry(entry)]

        entries = await self._directory.find_by_address(address)
        if entries:
            try:
                onchain = await self._registry.entries_for_address(address)
                registry_down = False
            except _UNAVAILABLE as e:
                logger.warning("registry_unavailable_for_lookup", address=address, error=str(e))
                onchain, registry_down = None, True
            return [
                await self._resolve_entry(entry, onchain, len(entries), registry_down)
                for entry in entries
            ]

        try:
            onchain = await self._registry.entries_for_address(address)
        except PartialDataError as e:
            raise UpstreamRejectedError("registry_by_address", e.detail.get("reason", "unavailable"))
        if not onchain:
            raise AgentNotFound(address)
        return [self._onchain_only(r) for r in onchain]

    # =============================================
    # MERGE
    # =============================================

    async def _resolve_entry(
        self,
        entry: DirectoryEntry,
        onchain_at_address: Optional[List[RegistryEntry]] = None,
        local_at_address: Optional[int] = None,
        registry_down: bool = False,
    ) -> Agent:
        conflicts: List[FieldConflict] = []
        address = entry.settlement_address

        if entry.is_custodial:
            key = await self._keys.get(entry.agent_id)
            if key is None:
                logger.error("custodial_key_missing", agent_id=entry.agent_id)
                raise MissingSigningKey(entry.agent_id)
            derived = key.derive_address()
            if derived != address:
                conflicts.append(FieldConflict(
                    field="settlement_address",
                    kept=derived, kept_from="signing_key",
                    discarded=address, discarded_from="directory",
                ))
                address = derived

        if registry_down:
            return self._local_only(entry, address, OnChainStatus.UNAVAILABLE)
        try:
            registry = await self._match_registry(entry, address, onchain_at_address, local_at_address)
        except _UNAVAILABLE as e:
            logger.warning("registry_unavailable_for_lookup", agent_id=entry.agent_id, error=str(e))
            return self._local_only(entry, address, OnChainStatus.UNAVAILABLE)

        if registry is None:
            return self._local_only(entry, address, OnChainStatus.NOT_REGISTERED)

        if registry.address != address:
            conflicts.append(FieldConflict(
                field="settlement_address",
                kept=address, kept_from="signing_key" if entry.is_custodial else "directory",
                discarded=registry.address, discarded_from="registry",
            ))
        if registry.name and registry.name != entry.name:
            conflicts.append(FieldConflict(
                field="name",
                kept=entry.name, kept_from="directory",
                discarded=registry.name, discarded_from="registry",
            ))
        if conflicts:
            logger.info("identity_conflicts", agent_id=entry.agent_id,
                        fields=[c.field for c in conflicts])

        return Agent(
            agent_id=entry.agent_id,
            registry_id=registry.registry_id,
            settlement_address=address,
            name=entry.name,
            capabilities=list(entry.capabilities),
            metadata=dict(entry.metadata),
            payment_mode=entry.payment_mode,
            registered_at=registry.registered_at,
            active=entry.active and registry.active,
            local_score=entry.local_score,
            onchain_available=True,
            source=Reconciled(entry=entry, registry=registry, conflicts=conflicts),
        )

    async def _match_registry(
        self,
        entry: DirectoryEntry,
        address: str,
        onchain_at_address: Optional[List[RegistryEntry]],
        local_at_address: Optional[int],
    ) -> Optional[RegistryEntry]:
        if entry.registry_id is not None:
            return await self._registry.entry_by_id(entry.registry_id)

        candidates = onchain_at_address
        if candidates is None:
            candidates = await self._registry.entries_for_address(address)
        if len(candidates) != 1:
            return None

        # Without a reference, adopt a lone registry entry only when no other
        # local agent could claim it.
        if local_at_address is None:
            local_at_address = len(await self._directory.find_by_address(address))
        if not entry.is_custodial and local_at_address > 1:
            return None
        claimed = await self._directory.find_by_registry_id(candidates[0].registry_id)
        if claimed is not None and claimed.agent_id != entry.agent_id:
            return None
        return candidates[0]

    @staticmethod
    def _local_only(
        entry: DirectoryEntry,
        address: str,
        status: OnChainStatus,
    ) -> Agent:
        return Agent(
            agent_id=entry.agent_id,
            registry_id=entry.registry_id,
            settlement_address=address,
            name=entry.name,
            capabilities=list(entry.capabilities),
            metadata=dict(entry.metadata),
            payment_mode=entry.payment_mode,
            registered_at=entry.registered_at,
            active=entry.active,
            local_score=entry.local_score,
            onchain_available=status != OnChainStatus.UNAVAILABLE,
            source=LocalOnly(entry=entry, onchain_status=status.value),
        )

    @staticmethod
    def _onchain_only(registry: RegistryEntry) -> Agent:
        return Agent(
            agent_id=f"{REGISTRY_PREFIX}{registry.registry_id}",
            registry_id=registry.registry_id,
            settlement_address=registry.address,
            name=registry.name,
            payment_mode=PaymentMode.EXTERNALLY_OWNED.value,
            registered_at=registry.registered_at,
            active=registry.active,
            local_score=settings.LOCAL_SCORE_BASE,
            onchain_available=True,
            source=OnChainOnly(registry=registry),
        )
