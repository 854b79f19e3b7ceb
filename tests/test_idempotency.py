import time

import pytest

from agentledger.errors import (
    IdempotencyKeyReused,
    InsufficientFunds,
    RequestInProgress,
    Unauthorized,
    UpstreamTimeoutError,
)
from agentledger.escrow.machine import EscrowStateMachine
from agentledger.idempotency import IdempotencyGuard, request_fingerprint
from agentledger.store.memory import MemoryKeyedStore

from tests.conftest import PAYEE, PAYER, STRANGER, ManualClock, run


@pytest.fixture
def machine(services, ledger, audit):
    """State machine with a short ledger bound so timeouts trip quickly."""
    return EscrowStateMachine(ledger, audit, services.idempotency, services.nudger, timeout=0.05)


class TestGuard:
    def test_submit_runs_once_per_key(self, store):
        guard = IdempotencyGuard(store)
        calls = []

        async def submit():
            calls.append(1)
            return {"n": len(calls)}

        async def scenario():
            first = await guard.run("act", PAYER, "k1", submit)
            second = await guard.run("act", PAYER, "k1", submit)
            return first, second

        first, second = run(scenario())
        assert first == second == {"n": 1}
        assert len(calls) == 1

    def test_without_key_every_call_submits(self, store):
        guard = IdempotencyGuard(store)
        calls = []

        async def submit():
            calls.append(1)
            return {}

        async def scenario():
            await guard.run("act", PAYER, None, submit)
            await guard.run("act", PAYER, None, submit)
            return await store.list_by_prefix("idempotency:")

        assert run(scenario()) == []
        assert len(calls) == 2

    def test_fresh_in_flight_record_blocks_duplicate(self, store):
        guard = IdempotencyGuard(store)
        skey = IdempotencyGuard.store_key("act", PAYER, "k1")

        async def submit():
            return {}

        async def scenario():
            await store.put(skey, {
                "state": "in_progress",
                "fingerprint": request_fingerprint({}),
                "context": {},
                "started_at": time.time(),
            })
            await guard.run("act", PAYER, "k1", submit)

        with pytest.raises(RequestInProgress):
            run(scenario())

    def test_keys_are_scoped_by_action_and_caller(self, store):
        guard = IdempotencyGuard(store)
        calls = []

        async def submit():
            calls.append(1)
            return {"n": len(calls)}

        async def scenario():
            await guard.run("act", PAYER, "k1", submit)
            await guard.run("act", PAYEE, "k1", submit)
            await guard.run("other", PAYER, "k1", submit)

        run(scenario())
        assert len(calls) == 3

    def test_key_reused_with_different_params_is_refused(self, store):
        guard = IdempotencyGuard(store)
        calls = []

        async def submit():
            calls.append(1)
            return {"n": len(calls)}

        async def scenario():
            await guard.run("act", PAYER, "k1", submit, params={"amount": 10})
            await guard.run("act", PAYER, "k1", submit, params={"amount": 50})

        with pytest.raises(IdempotencyKeyReused):
            run(scenario())
        assert len(calls) == 1

    def test_records_expire_after_retention(self):
        clock = ManualClock()
        store = MemoryKeyedStore(clock=clock)
        guard = IdempotencyGuard(store, retention=60, clock=clock)
        calls = []

        async def submit():
            calls.append(1)
            return {"n": len(calls)}

        async def scenario():
            for n in range(5):
                await guard.run("act", PAYER, f"k{n}", submit)
            clock.advance(61)
            again = await guard.run("act", PAYER, "k0", submit, params={"amount": 1})
            return again, await store.list_by_prefix("idempotency:")

        again, records = run(scenario())
        assert again == {"n": 6}
        assert [key for key, _ in records] == [IdempotencyGuard.store_key("act", PAYER, "k0")]
        assert len(store._data) == 1
        assert store._locks == {}


class TestEscrowIdempotency:
    def test_retried_create_replays_first_result(self, services, ledger):
        ledger.fund(PAYER, 100)

        async def scenario():
            first = await services.escrows.create(PAYER, PAYEE, 10, "job", idempotency_key="create-1")
            second = await services.escrows.create(PAYER, PAYEE, 10, "job", idempotency_key="create-1")
            return first, second, await services.escrows.balance(PAYER)

        first, second, balance = run(scenario())
        assert first.escrow_id == second.escrow_id
        assert ledger.escrow_count() == 1
        assert ledger.submissions["escrow_create"] == 1
        assert balance == 90

    def test_retried_release_replays_without_resubmitting(self, services, ledger):
        ledger.fund(PAYER, 100)

        async def scenario():
            escrow = await services.escrows.create(PAYER, PAYEE, 10, "job")
            first = await services.escrows.release(escrow.escrow_id, PAYER, idempotency_key="rel-1")
            second = await services.escrows.release(escrow.escrow_id, PAYER, idempotency_key="rel-1")
            return first, second

        first, second = run(scenario())
        assert first.status == second.status == "completed"
        assert ledger.submissions["escrow_release"] == 1

    def test_key_reused_on_another_escrow_acts_on_that_escrow(self, services, ledger):
        ledger.fund(PAYER, 100)

        async def scenario():
            first = await services.escrows.create(PAYER, PAYEE, 10, "job a")
            second = await services.escrows.create(PAYER, PAYEE, 10, "job b")
            await services.escrows.release(first.escrow_id, PAYER, idempotency_key="rel-1")
            released = await services.escrows.release(second.escrow_id, PAYER, idempotency_key="rel-1")
            stored = await services.escrows.get(second.escrow_id)
            return second, released, stored, await services.escrows.balance(PAYEE)

        second, released, stored, payee_balance = run(scenario())
        assert released.escrow_id == second.escrow_id
        assert stored.status == "completed"
        assert payee_balance == 20
        assert ledger.submissions["escrow_release"] == 2

    def test_key_reused_for_a_different_create_is_refused(self, services, ledger):
        ledger.fund(PAYER, 100)

        async def scenario():
            await services.escrows.create(PAYER, PAYEE, 10, "job a", idempotency_key="create-1")
            with pytest.raises(IdempotencyKeyReused):
                await services.escrows.create(PAYER, PAYEE, 50, "job b", idempotency_key="create-1")
            return await services.escrows.balance(PAYER)

        assert run(scenario()) == 90
        assert ledger.escrow_count() == 1
        assert ledger.submissions["escrow_create"] == 1

    def test_key_reused_with_a_different_dispute_reason_is_refused(self, services, ledger):
        ledger.fund(PAYER, 100)

        async def scenario():
            escrow = await services.escrows.create(PAYER, PAYEE, 10, "job")
            first = await services.escrows.dispute(escrow.escrow_id, PAYEE, "late", idempotency_key="d-1")
            replayed = await services.escrows.dispute(escrow.escrow_id, PAYEE, "late", idempotency_key="d-1")
            with pytest.raises(IdempotencyKeyReused):
                await services.escrows.dispute(escrow.escrow_id, PAYEE, "wrong file", idempotency_key="d-1")
            return first, replayed

        first, replayed = run(scenario())
        assert first.dispute_reason == replayed.dispute_reason == "late"
        assert ledger.submissions["escrow_dispute"] == 1

    def test_definitive_failure_frees_the_key(self, services, ledger, store):
        async def scenario():
            with pytest.raises(InsufficientFunds):
                await services.escrows.create(PAYER, PAYEE, 10, "job", idempotency_key="create-1")
            ledger.fund(PAYER, 100)
            return await services.escrows.create(PAYER, PAYEE, 10, "job", idempotency_key="create-1")

        escrow = run(scenario())
        assert escrow.status == "active"
        assert ledger.escrow_count() == 1

    def test_unauthorized_attempt_leaves_no_record(self, services, ledger, store):
        ledger.fund(PAYER, 100)

        async def scenario():
            escrow = await services.escrows.create(PAYER, PAYEE, 10, "job")
            with pytest.raises(Unauthorized):
                await services.escrows.release(escrow.escrow_id, STRANGER, idempotency_key="rel-1")
            return await store.get(IdempotencyGuard.store_key("escrow_release", STRANGER, "rel-1", escrow.escrow_id))

        assert run(scenario()) is None

    def test_timed_out_release_that_landed_is_not_resubmitted(self, machine, ledger, audit):
        ledger.fund(PAYER, 100)
        escrow = run(machine.create(PAYER, PAYEE, 10, "job"))
        ledger.inject_fault("escrow_release", hang=True, after_apply=True)

        with pytest.raises(UpstreamTimeoutError):
            run(machine.release(escrow.escrow_id, PAYER, idempotency_key="rel-1"))

        retried = run(machine.release(escrow.escrow_id, PAYER, idempotency_key="rel-1"))
        assert retried.status == "completed"
        assert ledger.submissions["escrow_release"] == 1
        assert run(machine.balance(PAYEE)) == 10
        assert len(audit.recent("escrow_released")) == 1

    def test_timed_out_release_that_never_landed_is_resubmitted(self, machine, ledger):
        ledger.fund(PAYER, 100)
        escrow = run(machine.create(PAYER, PAYEE, 10, "job"))
        ledger.inject_fault("escrow_release", hang=True)

        with pytest.raises(UpstreamTimeoutError):
            run(machine.release(escrow.escrow_id, PAYER, idempotency_key="rel-1"))
        assert run(machine.get(escrow.escrow_id)).status == "active"

        retried = run(machine.release(escrow.escrow_id, PAYER, idempotency_key="rel-1"))
        assert retried.status == "completed"
        assert ledger.submissions["escrow_release"] == 2
        assert run(machine.balance(PAYEE)) == 10

    def test_timed_out_create_that_landed_returns_the_same_escrow(self, machine, ledger):
        ledger.fund(PAYER, 100)
        ledger.inject_fault("escrow_create", hang=True, after_apply=True)

        with pytest.raises(UpstreamTimeoutError):
            run(machine.create(PAYER, PAYEE, 10, "job", idempotency_key="create-1"))
        assert ledger.escrow_count() == 1

        retried = run(machine.create(PAYER, PAYEE, 10, "job", idempotency_key="create-1"))
        assert ledger.escrow_count() == 1
        assert ledger.submissions["escrow_create"] == 1
        assert retried.amount == 10
        assert run(machine.balance(PAYER)) == 90

    def test_reconciled_create_ignores_escrows_that_existed_before(self, machine, ledger):
        ledger.fund(PAYER, 100)
        earlier = run(machine.create(PAYER, PAYEE, 10, "job"))
        ledger.inject_fault("escrow_create", hang=True, after_apply=True)

        with pytest.raises(UpstreamTimeoutError):
            run(machine.create(PAYER, PAYEE, 10, "job", idempotency_key="create-1"))

        retried = run(machine.create(PAYER, PAYEE, 10, "job", idempotency_key="create-1"))
        assert retried.escrow_id != earlier.escrow_id
        assert ledger.escrow_count() == 2

    def test_stale_in_flight_record_is_reconciled(self, services, ledger, store):
        ledger.fund(PAYER, 100)
        escrow = run(services.escrows.create(PAYER, PAYEE, 10, "job"))
        skey = IdempotencyGuard.store_key("escrow_release", PAYER, "rel-1", escrow.escrow_id)

        async def scenario():
            await store.put(skey, {
                "state": "in_progress",
                "fingerprint": request_fingerprint({"escrow_id": escrow.escrow_id, "reason": None}),
                "context": {},
                "started_at": time.time() - 3600,
            })
            return await services.escrows.release(escrow.escrow_id, PAYER, idempotency_key="rel-1")

        assert run(scenario()).status == "completed"
