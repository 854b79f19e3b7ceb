"""
Agent Ledger - Idempotency Keys

Write operations accept an Idempotency-Key scoped by (action, caller, scope),
where scope is the escrow id for transitions and empty for creates.

    completed     -> replay the stored result, nothing is resubmitted
    in_progress   -> a duplicate is still running: RequestInProgress
    unknown       -> the earlier submission timed out; re-query the ledger
                     first and return what landed, resubmit only if nothing did

Each record carries a fingerprint of the request parameters. Reusing a key
with different parameters raises IdempotencyKeyReused instead of replaying.
Records expire after the retention window.

Key schema (keyed store, "idempotency:" namespace):
    idempotency:{action}:{caller}:{scope}:{key}
        -> {state, fingerprint, result, context, started_at}
"""
import hashlib
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from agentledger.errors import (
    AgentLedgerError,
    IdempotencyKeyReused,
    RequestInProgress,
    UpstreamTimeoutError,
)
from agentledger.store.interface import KeyedStore

logger = structlog.get_logger()

STATE_IN_PROGRESS = "in_progress"
STATE_COMPLETED = "completed"
STATE_UNKNOWN = "unknown"

Result = Dict[str, Any]


def request_fingerprint(params: Dict[str, Any]) -> str:
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class IdempotencyGuard:

    def __init__(
        self,
        store: KeyedStore,
        stale_after: int = 120,
        retention: int = 86400,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._store = store
        self._stale_after = stale_after
        self._retention = retention
        self._clock = clock or time.time

    @staticmethod
    def store_key(action: str, caller: str, key: str, scope: str = "") -> str:
        return f"idempotency:{action}:{caller}:{scope}:{key}"

    async def run(
        self,
        action: str,
        caller: str,
        key: Optional[str],
        submit: Callable[[], Awaitable[Result]],
        reconcile: Optional[Callable[[Dict[str, Any]], Awaitable[Optional[Result]]]] = None,
        prepare: Optional[Callable[[], Awaitable[Dict[str, Any]]]] = None,
        scope: str = "",
        params: Optional[Dict[str, Any]] = None,
    ) -> Result:
        """
        Run `submit` at most once per key.

        `params` are the request parameters the key is bound to; a later
        call with the same key must repeat them exactly. `prepare`
        snapshots whatever `reconcile` needs to recognise the submission
        later (stored with the in-flight record). `reconcile` returns the
        result if an earlier, timed-out submission actually landed, else None.
        """
        if not key:
            return await submit()

        skey = self.store_key(action, caller, key, scope)
        fingerprint = request_fingerprint(params or {})
        async with self._store.lock(skey):
            record = await self._store.get(skey)
            state = record.get("state") if record else None

            if record and record.get("fingerprint") != fingerprint:
                logger.warning("idempotency_key_reused", action=action, caller=caller, key=key)
                raise IdempotencyKeyReused(key, action)

            if state == STATE_COMPLETED:
                logger.info("idempotent_replay", action=action, caller=caller, key=key)
                return record["result"]

            if state == STATE_IN_PROGRESS and not self._is_stale(record):
                raise RequestInProgress(key)

            if state in (STATE_IN_PROGRESS, STATE_UNKNOWN) and reconcile is not None:
                landed = await reconcile(record.get("context") or {})
                if landed is not None:
                    logger.info("idempotent_reconciled", action=action, caller=caller, key=key)
                    await self._save(skey, {**record, "state": STATE_COMPLETED, "result": landed})
                    return landed
                context = record.get("context") or {}
            else:
                context = await prepare() if prepare else {}

            record = {
                "state": STATE_IN_PROGRESS,
                "fingerprint": fingerprint,
                "context": context,
                "started_at": self._clock(),
            }
            await self._save(skey, record)

        try:
            result = await submit()
        except UpstreamTimeoutError:
            await self._save(skey, {**record, "state": STATE_UNKNOWN})
            logger.warning("idempotent_outcome_unknown", action=action, caller=caller, key=key)
            raise
        except AgentLedgerError:
            # The ledger answered definitively, so the key is free for a corrected retry.
            await self._store.delete(skey)
            raise
        except BaseException:
            await self._save(skey, {**record, "state": STATE_UNKNOWN})
            raise

        await self._save(skey, {**record, "state": STATE_COMPLETED, "result": result})
        return result

    async def _save(self, skey: str, record: Dict[str, Any]) -> None:
        await self._store.put(skey, record, ttl=self._retention)

    def _is_stale(self, record: Dict[str, Any]) -> bool:
        return self._clock() - float(record.get("started_at", 0)) > self._stale_after
