import itertools

import pytest

from agentledger.config import settings
from agentledger.errors import AmbiguousIdentity
from agentledger.ledger.addresses import ZERO_HASH
from agentledger.ledger.gateway import LedgerRejected
from agentledger.trust.aggregator import (
    WEIGHTS_LOCAL_ONLY,
    WEIGHTS_WITH_CHAIN,
    TrustInputs,
    compute_trust_score,
    round_half_up,
)

from tests.conftest import PAYER, STRANGER, register_custodial, run

PROOF = "0x" + "ab" * 32


class TestComputeTrustScore:
    def test_new_agent_is_neutral(self):
        result = compute_trust_score(TrustInputs())
        assert result.score == 50
        assert result.weights == WEIGHTS_LOCAL_ONLY
        assert result.unavailable_sources == []

    def test_weights_sum_to_one(self):
        assert sum(WEIGHTS_WITH_CHAIN.values()) == pytest.approx(1.0)
        assert sum(WEIGHTS_LOCAL_ONLY.values()) == pytest.approx(1.0)

    def test_chain_feedback_switches_weights(self):
        inputs = TrustInputs(
            chain_count=2, chain_average=90, local_score=60,
            tx_total=4, tx_successful=4, feedback_total=2, feedback_with_payment=1,
        )
        result = compute_trust_score(inputs, "alice")
        # 90*.70 + 60*.15 + 100*.10 + 50*.05 = 84.5
        assert result.score == 85
        assert result.weights == WEIGHTS_WITH_CHAIN
        assert result.breakdown["chain"]["contribution"] == pytest.approx(63.0)
        assert result.to_dict()["chain_feedback_count"] == 2

    def test_local_only_formula(self):
        inputs = TrustInputs(local_score=80, tx_total=4, tx_successful=1)
        # 80*.5 + 25*.3 + 50*.2 = 57.5
        assert compute_trust_score(inputs).score == 58

    def test_rounding_is_half_up(self):
        assert round_half_up(84.5) == 85
        assert round_half_up(84.49999999999999) == 85
        assert round_half_up(84.4) == 84
        assert round_half_up(0.5) == 1

    def test_extremes_are_clamped(self):
        high = TrustInputs(chain_count=1, chain_average=250, local_score=100,
                           tx_total=1, tx_successful=1, feedback_total=1, feedback_with_payment=1)
        low = TrustInputs(chain_count=1, chain_average=-40, local_score=0, tx_total=3)
        assert compute_trust_score(high).score == 100
        # only the neutral payment rate contributes: 50*.05 = 2.5
        assert compute_trust_score(low).score == 3

    def test_score_always_in_range(self):
        for chain, local, tx, feedback in itertools.product((0, 3), (0, 50, 100), (0, 1, 5), (0, 2)):
            inputs = TrustInputs(
                chain_count=chain, chain_average=70 if chain else 0, local_score=local,
                tx_total=tx, tx_successful=tx // 2, feedback_total=feedback, feedback_with_payment=feedback // 2,
            )
            assert 0 <= compute_trust_score(inputs).score <= 100

    def test_partial_flag(self):
        result = compute_trust_score(TrustInputs(unavailable_sources=["reputation"]))
        assert result.to_dict()["partial"] is True
        assert result.score == 50


class TestAggregator:
    def test_fresh_agent_scores_neutral_plus_nothing(self, services):
        async def scenario():
            await register_custodial(services, "alice")
            return await services.aggregator.score_for("alice")

        result = run(scenario())
        assert result.score == 50
        assert result.unavailable_sources == []
        assert result.chain_count == 0

    def test_chain_feedback_and_payment_proofs(self, services):
        async def scenario():
            await register_custodial(services, "alice")
            await services.registrar.submit_feedback("alice", PAYER, 100, PROOF)
            await services.registrar.submit_feedback("alice", STRANGER, 80, ZERO_HASH)
            return await services.aggregator.score_for("alice")

        result = run(scenario())
        # 90*.70 + 50*.15 + 50*.10 + 50*.05
        assert result.chain_count == 2
        assert result.components["payment"] == 50
        assert result.score == round_half_up(90 * 0.70 + 50 * 0.15 + 50 * 0.10 + 50 * 0.05)

    def test_escrow_history_counts_towards_tx_rate(self, services, ledger):
        async def scenario():
            payer = await register_custodial(services, "alice")
            payee = await register_custodial(services, "bob")
            ledger.fund(payer.settlement_address, 100)
            done = await services.escrows.create(payer.settlement_address, payee.settlement_address, 10, "one")
            await services.escrows.create(payer.settlement_address, payee.settlement_address, 10, "two")
            await services.escrows.release(done.escrow_id, payer.settlement_address)
            return await services.aggregator.score_for("bob")

        result = run(scenario())
        assert result.components["tx"] == 50
        assert result.components["local"] == 52

    def test_failed_source_is_reported_not_raised(self, services, ledger):
        async def scenario():
            await register_custodial(services, "alice")
            await services.registrar.submit_feedback("alice", PAYER, 100, PROOF)
            ledger.inject_fault("reputation_tally", LedgerRejected("reputation_tally", "paused"))
            return await services.aggregator.score_for("alice")

        result = run(scenario())
        assert result.unavailable_sources == ["reputation"]
        assert result.weights == WEIGHTS_LOCAL_ONLY
        assert result.to_dict()["partial"] is True

    def test_registry_outage_reweights_to_local(self, services, ledger):
        async def scenario():
            await register_custodial(services, "alice")
            await services.registrar.submit_feedback("alice", PAYER, 100, PROOF)
            ledger.inject_fault("registry_by_id", LedgerRejected("registry_by_id", "paused"))
            return await services.aggregator.score_for("alice")

        result = run(scenario())
        assert "identity_registry" in result.unavailable_sources
        assert result.chain_count == 0
        assert 0 <= result.score <= 100

    def test_ambiguous_address_is_not_scored(self, services):
        async def scenario():
            for agent_id in ("one", "two"):
                await services.registrar.register(agent_id=agent_id, name=agent_id, capabilities=["x"])
            await services.aggregator.score_for(settings.BACKEND_ADDRESS)

        with pytest.raises(AmbiguousIdentity):
            run(scenario())


class TestNudger:
    def test_shared_address_is_never_nudged(self, services, ledger):
        async def scenario():
            for agent_id in ("one", "two"):
                await services.registrar.register(agent_id=agent_id, name=agent_id, capabilities=["x"])
            await services.nudger.nudge_addresses([settings.BACKEND_ADDRESS], 2, reason="escrow_released")
            return [await services.directory.get(a) for a in ("one", "two")]

        assert [e.local_score for e in run(scenario())] == [50, 50]

    def test_unknown_agents_are_skipped(self, services):
        async def scenario():
            await register_custodial(services, "alice")
            await services.nudger.nudge_agents(["ghost", "alice"], 1, reason="interaction_completed")
            return await services.directory.get("alice")

        assert run(scenario()).local_score == 51
