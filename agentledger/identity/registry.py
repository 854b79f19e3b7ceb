"""
Agent Ledger - Identity Registry Reader

Bounded, failure-typed reads of the on-chain identity/reputation registry.

    timeout           -> UpstreamTimeoutError   (retryable)
    rejection/outage  -> PartialDataError       (caller degrades to local data)
    not found         -> empty result           (not an error for readers)

Writes (registration, feedback) go through `registry_call`, which surfaces
UpstreamTimeoutError / UpstreamRejectedError to the caller instead.
"""
from typing import Awaitable, List, Optional, TypeVar

import structlog

from agentledger.config import settings
from agentledger.errors import PartialDataError, UpstreamRejectedError, UpstreamTimeoutError
from agentledger.ledger.gateway import (
    FeedbackEntry,
    LedgerGateway,
    LedgerNotFound,
    LedgerRejected,
    LedgerTimeout,
    RegistryEntry,
    ReputationTally,
    call_with_timeout,
)

logger = structlog.get_logger()

T = TypeVar("T")

SOURCE = "identity_registry"


async def registry_call(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    try:
        return await call_with_timeout(awaitable, timeout, operation)
    except LedgerTimeout as e:
        raise UpstreamTimeoutError(operation, e.timeout)
    except LedgerRejected as e:
        raise UpstreamRejectedError(operation, e.reason)
    except LedgerNotFound:
        raise UpstreamRejectedError(operation, "not_found")


class IdentityRegistryReader:

    def __init__(self, ledger: LedgerGateway, timeout: Optional[float] = None):
        self._ledger = ledger
        self._timeout = timeout if timeout is not None else settings.LEDGER_TIMEOUT_SECONDS

    @property
    def ledger(self) -> LedgerGateway:
        return self._ledger

    @property
    def timeout(self) -> float:
        return self._timeout

    async def _read(self, awaitable: Awaitable[T], operation: str, empty: T) -> T:
        try:
            return await call_with_timeout(awaitable, self._timeout, operation)
        except LedgerNotFound:
            return empty
        except LedgerTimeout as e:
            logger.warning("registry_timeout", operation=operation, timeout=e.timeout)
            raise UpstreamTimeoutError(operation, e.timeout)
        except LedgerRejected as e:
            logger.warning("registry_unavailable", operation=operation, reason=e.reason)
            raise PartialDataError(SOURCE, e.reason)

    async def entries_for_address(self, address: str) -> List[RegistryEntry]:
        return await self._read(
            self._ledger.query_identity_registry_entry(address), "registry_by_address", [],
        )

    async def entry_by_id(self, registry_id: int) -> Optional[RegistryEntry]:
        return await self._read(
            self._ledger.query_identity_registry_by_id(registry_id), "registry_by_id", None,
        )

    async def reputation(self, registry_id: int) -> ReputationTally:
        return await self._read(
            self._ledger.query_reputation_tally(registry_id),
            "reputation_tally",
            ReputationTally(registry_id=registry_id),
        )

    async def feedback(self, registry_id: int) -> List[FeedbackEntry]:
        return await self._read(self._ledger.query_feedback(registry_id), "feedback_list", [])
