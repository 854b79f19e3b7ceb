"""
Agent Ledger - Service Wiring

Builds every component once, on explicitly injected stores and gateways.
The HTTP layer reaches them through `get_services()`; tests build their own
with `build_services(...)` and override the dependency.

    AGL_STORE_BACKEND=memory|redis    keyed store for directory/keys/interactions/idempotency
    AGL_LEDGER_BACKEND=memory|http    in-process ledger or JSON-RPC gateway
"""
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from agentledger.audit import AuditLog
from agentledger.config import Settings, settings as default_settings
from agentledger.escrow.machine import EscrowStateMachine
from agentledger.identity.directory import LocalAgentDirectory, SigningKeyStore
from agentledger.identity.discovery import AgentDiscovery
from agentledger.identity.reconcile import IdentityReconciler
from agentledger.identity.registration import AgentRegistrar
from agentledger.identity.registry import IdentityRegistryReader
from agentledger.idempotency import IdempotencyGuard
from agentledger.interactions.gate import InteractionGate
from agentledger.interactions.model import InteractionRepository
from agentledger.ledger.gateway import LedgerGateway
from agentledger.ledger.http import HttpLedgerGateway
from agentledger.ledger.memory import InMemoryLedger
from agentledger.store.interface import KeyedStore
from agentledger.store.memory import MemoryKeyedStore
from agentledger.store.redis_store import RedisKeyedStore
from agentledger.trust.aggregator import TrustAggregator
from agentledger.trust.nudge import TrustNudger

logger = structlog.get_logger()


@dataclass
class Services:
    store: KeyedStore
    ledger: LedgerGateway
    audit: AuditLog
    idempotency: IdempotencyGuard
    directory: LocalAgentDirectory
    keys: SigningKeyStore
    registry: IdentityRegistryReader
    reconciler: IdentityReconciler
    interactions: InteractionRepository
    nudger: TrustNudger
    aggregator: TrustAggregator
    escrows: EscrowStateMachine
    gate: InteractionGate
    registrar: AgentRegistrar
    discovery: AgentDiscovery

    async def close(self) -> None:
        await self.audit.close()
        await self.ledger.close()
        await self.store.close()


def _default_store(cfg: Settings) -> KeyedStore:
    if cfg.STORE_BACKEND == "redis":
        logger.info("keyed_store_backend", backend="redis")
        return RedisKeyedStore.from_url(cfg.REDIS_URL, namespace="state", lock_ttl=cfg.STORE_LOCK_TTL)
    return MemoryKeyedStore()


def _default_ledger(cfg: Settings) -> LedgerGateway:
    if cfg.LEDGER_BACKEND == "http":
        logger.info("ledger_backend", backend="http", rpc_url=cfg.LEDGER_RPC_URL)
        return HttpLedgerGateway(cfg.LEDGER_RPC_URL, timeout=cfg.LEDGER_TIMEOUT_SECONDS)
    return InMemoryLedger()


def build_services(
    store: Optional[KeyedStore] = None,
    ledger: Optional[LedgerGateway] = None,
    audit: Optional[AuditLog] = None,
    cfg: Optional[Settings] = None,
    clock: Optional[Callable[[], float]] = None,
) -> Services:
    cfg = cfg or default_settings
    store = store or _default_store(cfg)
    ledger = ledger or _default_ledger(cfg)
    audit = audit or AuditLog(url=cfg.AUDIT_LOG_URL, timeout=cfg.AUDIT_TIMEOUT_SECONDS)

    directory = LocalAgentDirectory(store)
    keys = SigningKeyStore(store)
    registry = IdentityRegistryReader(ledger, timeout=cfg.LEDGER_TIMEOUT_SECONDS)
    reconciler = IdentityReconciler(directory, keys, registry)
    interactions = InteractionRepository(store)
    nudger = TrustNudger(directory, keys)
    aggregator = TrustAggregator(reconciler, registry, interactions, timeout=cfg.LEDGER_TIMEOUT_SECONDS)
    idempotency = IdempotencyGuard(
        store,
        stale_after=cfg.IDEMPOTENCY_STALE_SECONDS,
        retention=cfg.IDEMPOTENCY_RETENTION_SECONDS,
        clock=clock,
    )

    return Services(
        store=store,
        ledger=ledger,
        audit=audit,
        idempotency=idempotency,
        directory=directory,
        keys=keys,
        registry=registry,
        reconciler=reconciler,
        interactions=interactions,
        nudger=nudger,
        aggregator=aggregator,
        escrows=EscrowStateMachine(ledger, audit, idempotency, nudger, timeout=cfg.LEDGER_TIMEOUT_SECONDS),
        gate=InteractionGate(reconciler, aggregator, interactions, audit, nudger,
                             min_trust=cfg.MIN_INTERACTION_TRUST),
        registrar=AgentRegistrar(directory, keys, registry, reconciler, audit),
        discovery=AgentDiscovery(directory, reconciler, aggregator),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


async def shutdown() -> None:
    global _services
    if _services is not None:
        await _services.close()
        _services = None
