"""
Agent Ledger - Agent Registration & Lifecycle

Payment modes:
    custodial          we generate (or import) the signing key; the agent's own
                       derived address settles and is registered on-chain
    externally_owned   the agent brings an address, or is parked on the shared
                       backend wallet until it has one

Initial local score:
    LOCAL_SCORE_BASE (50) + 5 with metadata + 5 at >=3 capabilities + 5 at >=5

On-chain registration failure never fails the local registration; the entry
is kept without a registry id and a later re-registration retries it. An
agent that already has a registry id is returned unchanged.
"""
import re
from typing import Any, Dict, List, Optional

import structlog

from agentledger.audit import AuditKind, AuditLog
from agentledger.config import settings
from agentledger.errors import (
    InvalidAgent,
    InvalidParty,
    PartialDataError,
    UpstreamRejectedError,
    UpstreamTimeoutError,
    ValidationError,
)
from agentledger.identity.directory import LocalAgentDirectory, SigningKeyStore
from agentledger.identity.model import DirectoryEntry, PaymentMode, normalize_capabilities
from agentledger.identity.reconcile import REGISTRY_PREFIX, IdentityReconciler
from agentledger.identity.registry import IdentityRegistryReader, registry_call
from agentledger.ledger.addresses import ZERO_ADDRESS, is_address, normalize_address
from agentledger.ledger.gateway import FeedbackEntry, RegistryEntry

logger = structlog.get_logger()

_AGENT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,63}$")
NAME_MAX_LENGTH = 100


def initial_local_score(metadata: Optional[Dict[str, Any]], capabilities: List[str]) -> int:
    score = settings.LOCAL_SCORE_BASE
    if metadata:
        score += 5
    if len(capabilities) >= 3:
        score += 5
    if len(capabilities) >= 5:
        score += 5
    return min(100, score)


def _validate_agent_id(agent_id: str) -> str:
    agent_id = (agent_id or "").strip()
    if not _AGENT_ID_RE.match(agent_id) or agent_id.startswith("0x") or agent_id.startswith(REGISTRY_PREFIX):
        raise InvalidAgent(
            "agent_id must be 1-64 letters, digits, '.', '_' or '-' and must not look like an address",
            field="agent_id",
        )
    return agent_id


def _validate_capabilities(capabilities: List[str]) -> List[str]:
    normalized = normalize_capabilities(capabilities or [])
    if not normalized:
        raise InvalidAgent("At least one capability is required", field="capabilities")
    return normalized


class AgentRegistrar:

    def __init__(
        self,
        directory: LocalAgentDirectory,
        keys: SigningKeyStore,
        registry: IdentityRegistryReader,
        reconciler: IdentityReconciler,
        audit: AuditLog,
    ):
        self._directory = directory
        self._keys = keys
        self._registry = registry
        self._reconciler = reconciler
        self._audit = audit

    # =============================================
    # REGISTRATION
    # =============================================

    async def register(
        self,
        agent_id: str,
        name: str,
        capabilities: List[str],
        metadata: Optional[Dict[str, Any]] = None,
        payment_mode: str = PaymentMode.EXTERNALLY_OWNED.value,
        settlement_address: Optional[str] = None,
        private_key: Optional[str] = None,
    ) -> DirectoryEntry:
        agent_id = _validate_agent_id(agent_id)
        name = (name or "").strip()
        if not name or len(name) > NAME_MAX_LENGTH:
            raise InvalidAgent(f"name must be 1-{NAME_MAX_LENGTH} characters", field="name")
        capabilities = _validate_capabilities(capabilities)
        try:
            mode = PaymentMode(payment_mode)
        except ValueError:
            raise InvalidAgent(f"Unknown payment_mode {payment_mode!r}", field="payment_mode")
        if mode == PaymentMode.CUSTODIAL and settlement_address:
            raise InvalidAgent("Custodial agents settle at their key's address; omit settlement_address",
                               field="settlement_address")
        if mode == PaymentMode.EXTERNALLY_OWNED and private_key:
            raise InvalidAgent("Externally-owned agents keep their own keys", field="private_key")

        async with self._directory.lock(agent_id):
            entry = await self._directory.get(agent_id)
            if entry is not None and entry.registry_id is not None:
                logger.info("agent_already_registered", agent_id=agent_id, registry_id=entry.registry_id)
                return entry

            if entry is None:
                address = await self._settlement_address(agent_id, mode, settlement_address, private_key)
                entry = DirectoryEntry(
                    agent_id=agent_id,
                    name=name,
                    settlement_address=address,
                    payment_mode=mode.value,
                    capabilities=capabilities,
                    metadata=dict(metadata or {}),
                    local_score=initial_local_score(metadata, capabilities),
                )
            else:
                # Retry of a registration whose on-chain step failed; refresh local fields.
                entry.name = name
                entry.capabilities = capabilities
                entry.metadata = dict(metadata or entry.metadata)

            registry = await self._register_onchain(entry)
            if registry is not None:
                entry.registry_id = registry.registry_id
            await self._directory.put(entry)

        logger.info("agent_registered", agent_id=agent_id, payment_mode=entry.payment_mode,
                    address=entry.settlement_address, registry_id=entry.registry_id,
                    local_score=entry.local_score)
        await self._emit(AuditKind.AGENT_REGISTERED, agent_id, [entry.settlement_address])
        return entry

    async def _settlement_address(
        self,
        agent_id: str,
        mode: PaymentMode,
        settlement_address: Optional[str],
        private_key: Optional[str],
    ) -> str:
        if mode == PaymentMode.CUSTODIAL:
            key = await self._keys.create(agent_id, private_key)
            return key.derive_address()
        if not settlement_address:
            return settings.BACKEND_ADDRESS
        if not is_address(settlement_address) or normalize_address(settlement_address) == ZERO_ADDRESS:
            raise InvalidParty("settlement_address must be a non-zero 0x address", field="settlement_address")
        return normalize_address(settlement_address)

    async def _register_onchain(self, entry: DirectoryEntry) -> Optional[RegistryEntry]:
        try:
            if entry.is_custodial:
                # A custodial address is ours alone; adopt an entry an earlier attempt already landed.
                existing = await self._registry.entries_for_address(entry.settlement_address)
                if existing:
                    return existing[0]
            return await registry_call(
                self._registry.ledger.submit_identity_registration(entry.settlement_address, entry.name),
                self._registry.timeout,
                "identity_register",
            )
        except (UpstreamTimeoutError, UpstreamRejectedError, PartialDataError) as e:
            logger.warning("onchain_registration_failed", agent_id=entry.agent_id, error=e.message)
        return None

    # =============================================
    # UPDATES
    # =============================================

    async def update_capabilities(self, agent_id: str, capabilities: List[str]) -> DirectoryEntry:
        capabilities = _validate_capabilities(capabilities)

        def _apply(entry: DirectoryEntry) -> None:
            entry.capabilities = capabilities

        entry = await self._directory.update(agent_id, _apply)
        logger.info("agent_capabilities_updated", agent_id=agent_id, capabilities=capabilities)
        return entry

    async def set_score(self, agent_id: str, score: int) -> DirectoryEntry:
        if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
            raise ValidationError("score must be an integer between 0 and 100", field="score")

        def _apply(entry: DirectoryEntry) -> None:
            entry.local_score = score

        entry = await self._directory.update(agent_id, _apply)
        logger.info("agent_score_set", agent_id=agent_id, local_score=score)
        await self._emit(AuditKind.AGENT_SCORE_SET, agent_id, [entry.settlement_address])
        return entry

    async def deactivate(self, agent_id: str) -> DirectoryEntry:
        def _apply(entry: DirectoryEntry) -> None:
            entry.active = False

        entry = await self._directory.update(agent_id, _apply)
        logger.info("agent_deactivated", agent_id=agent_id)
        await self._emit(AuditKind.AGENT_DEACTIVATED, agent_id, [entry.settlement_address])
        return entry

    # =============================================
    # FEEDBACK
    # =============================================

    async def submit_feedback(
        self,
        target: str,
        from_address: str,
        score: int,
        payment_proof: Optional[str] = None,
    ) -> FeedbackEntry:
        if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
            raise ValidationError("score must be an integer between 0 and 100", field="score")
        if not is_address(from_address):
            raise InvalidParty("Feedback must come from a settlement address", field="from_address")
        from_address = normalize_address(from_address)

        agent = await self._reconciler.get_agent(target)
        if agent.registry_id is None:
            raise InvalidAgent(f"{agent.agent_id} is not registered on-chain", agent_id=agent.agent_id)
        if agent.settlement_address == from_address:
            raise InvalidParty("Agents cannot rate themselves", field="from_address")

        try:
            entry = await registry_call(
                self._registry.ledger.submit_feedback(agent.registry_id, from_address, score, payment_proof),
                self._registry.timeout,
                "feedback_submit",
            )
        except UpstreamRejectedError as e:
            reason = e.detail.get("reason")
            if reason == "self_feedback":
                raise InvalidParty("Agents cannot rate themselves", field="from_address")
            if reason == "invalid_score":
                raise ValidationError("score must be an integer between 0 and 100", field="score")
            raise

        logger.info("feedback_submitted", agent_id=agent.agent_id, registry_id=agent.registry_id,
                    score=score, has_payment_proof=bool(payment_proof))
        await self._emit(AuditKind.FEEDBACK_SUBMITTED, agent.agent_id, [from_address, agent.settlement_address])
        return entry

    async def _emit(self, kind: AuditKind, subject_id: str, parties: List[str]) -> None:
        try:
            await self._audit.emit(kind, subject_id, parties)
        except Exception as e:
            logger.warning("audit_emit_failed", kind=kind.value, subject_id=subject_id, error=str(e))
