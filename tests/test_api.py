import pytest
from fastapi.testclient import TestClient

from agentledger.config import settings
from agentledger.escrow.machine import EscrowStateMachine
from agentledger.main import app
from agentledger.services import get_services


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def agents(client, ledger):
    """Two custodial agents; alice is funded."""
    created = {}
    for agent_id, capabilities in (("alice", ["summarize"]), ("bob", ["translate", "ocr"])):
        resp = client.post("/v1/agents", json={
            "agent_id": agent_id,
            "name": agent_id.title(),
            "capabilities": capabilities,
            "payment_mode": "custodial",
        })
        assert resp.status_code == 201
        created[agent_id] = resp.json()
    ledger.fund(created["alice"]["settlement_address"], 100)
    return created


def create_escrow(client, amount=40, key=None):
    headers = {"X-Caller": "alice"}
    if key:
        headers["Idempotency-Key"] = key
    return client.post("/v1/escrows", headers=headers, json={
        "payee": "bob", "amount": amount, "description": "translate the report",
    })


class TestSystem:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_request_id_is_echoed(self, client):
        resp = client.get("/", headers={"X-Request-Id": "req-123"})
        assert resp.headers["X-Request-Id"] == "req-123"
        assert resp.headers["X-Response-Time"].endswith("ms")


class TestAgentsApi:
    def test_registration_returns_reconciled_view(self, agents):
        alice = agents["alice"]
        assert alice["payment_mode"] == "custodial"
        assert alice["registry_id"] == 1
        assert alice["source"]["kind"] == "reconciled"
        assert alice["settlement_address"].startswith("0x")

    def test_lookup_by_address(self, client, agents):
        resp = client.get(f"/v1/agents/{agents['bob']['settlement_address']}")
        assert resp.status_code == 200
        assert resp.json()["agent_id"] == "bob"

    def test_unknown_agent(self, client):
        resp = client.get("/v1/agents/nobody")
        assert resp.status_code == 404
        assert resp.json()["error"] == "agent_not_found"

    def test_shared_address_is_ambiguous(self, client):
        for agent_id in ("one", "two"):
            client.post("/v1/agents", json={"agent_id": agent_id, "name": agent_id, "capabilities": ["x"]})

        resp = client.get(f"/v1/agents/{settings.BACKEND_ADDRESS}")
        assert resp.status_code == 409
        assert sorted(resp.json()["candidates"]) == ["one", "two"]

        resp = client.get(f"/v1/agents/{settings.BACKEND_ADDRESS}/candidates")
        assert resp.status_code == 200
        assert resp.json()["ambiguous"] is True
        assert len(resp.json()["candidates"]) == 2

    def test_discover_by_capability(self, client, agents):
        resp = client.get("/v1/agents", params={"capability": "trans"})
        assert resp.status_code == 200
        assert [a["agent_id"] for a in resp.json()] == ["bob"]
        assert resp.json()[0]["trust_score"] == 50

    def test_trust_endpoint(self, client, agents):
        resp = client.get("/v1/agents/bob/trust")
        assert resp.status_code == 200
        body = resp.json()
        assert body["score"] == 50
        assert set(body["breakdown"]) == {"chain", "local", "tx", "payment"}
        assert body["partial"] is False

    def test_only_the_agent_updates_its_capabilities(self, client, agents):
        resp = client.put("/v1/agents/bob/capabilities", headers={"X-Caller": "alice"},
                          json={"capabilities": ["hack"]})
        assert resp.status_code == 403

        resp = client.put("/v1/agents/bob/capabilities", headers={"X-Caller": "bob"},
                          json={"capabilities": ["translate"]})
        assert resp.status_code == 200
        assert resp.json()["capabilities"] == ["translate"]

    def test_feedback(self, client, agents):
        resp = client.post("/v1/agents/bob/feedback", headers={"X-Caller": "alice"},
                           json={"score": 90, "payment_proof": "0x" + "ab" * 32})
        assert resp.status_code == 201
        assert resp.json()["registry_id"] == agents["bob"]["registry_id"]

        resp = client.get("/v1/agents/bob/trust")
        assert resp.json()["chain_feedback_count"] == 1


class TestOperatorApi:
    def test_operator_key_required(self, client, agents):
        resp = client.put("/v1/admin/agents/bob/score", json={"score": 10})
        assert resp.status_code == 403
        assert resp.json()["error"] == "operator_key_required"

        resp = client.put("/v1/admin/agents/bob/score", json={"score": 10},
                          headers={"X-Operator-Key": "wrong"})
        assert resp.status_code == 403

    def test_set_score_and_deactivate(self, client, agents):
        headers = {"X-Operator-Key": settings.OPERATOR_KEY}
        resp = client.put("/v1/admin/agents/bob/score", json={"score": 10}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["local_score"] == 10

        resp = client.post("/v1/admin/agents/bob/deactivate", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["active"] is False


class TestEscrowApi:
    def test_full_release_flow(self, client, agents):
        resp = create_escrow(client)
        assert resp.status_code == 201
        escrow = resp.json()
        assert escrow["status"] == "active"
        assert escrow["payer"] == agents["alice"]["settlement_address"]
        assert escrow["payee"] == agents["bob"]["settlement_address"]

        resp = client.post(f"/v1/escrows/{escrow['escrow_id']}/release", headers={"X-Caller": "bob"})
        assert resp.status_code == 403
        assert resp.json()["error"] == "unauthorized"
        assert resp.json()["retryable"] is False

        resp = client.post(f"/v1/escrows/{escrow['escrow_id']}/release", headers={"X-Caller": "alice"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"

        resp = client.post(f"/v1/escrows/{escrow['escrow_id']}/refund", headers={"X-Caller": "bob"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "not_active"
        assert resp.json()["status"] == "completed"

        resp = client.get("/v1/escrows", params={"party": "bob", "role": "payee"})
        assert resp.json()["total"] == 1

    def test_dispute_then_refund(self, client, agents):
        escrow_id = create_escrow(client).json()["escrow_id"]
        resp = client.post(f"/v1/escrows/{escrow_id}/dispute", headers={"X-Caller": "bob"},
                           json={"reason": "scope changed"})
        assert resp.status_code == 200
        assert resp.json()["dispute_reason"] == "scope changed"

        resp = client.post(f"/v1/escrows/{escrow_id}/refund", headers={"X-Caller": "bob"})
        assert resp.json()["status"] == "refunded"

    def test_claim_expired_too_early(self, client, agents):
        escrow_id = create_escrow(client).json()["escrow_id"]
        resp = client.post(f"/v1/escrows/{escrow_id}/claim-expired", headers={"X-Caller": "alice"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "not_expired"

    def test_missing_caller(self, client, agents):
        resp = client.post("/v1/escrows", json={"payee": "bob", "amount": 1, "description": "x"})
        assert resp.status_code == 403

    def test_invalid_amount(self, client, agents):
        resp = create_escrow(client, amount=0)
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_amount"

    def test_insufficient_funds(self, client, agents, ledger):
        resp = create_escrow(client, amount=1000)
        assert resp.status_code == 400
        assert resp.json()["error"] == "insufficient_funds"
        assert ledger.escrow_count() == 0

    def test_idempotent_create(self, client, agents, ledger):
        first = create_escrow(client, key="order-77")
        second = create_escrow(client, key="order-77")
        assert first.json()["escrow_id"] == second.json()["escrow_id"]
        assert ledger.escrow_count() == 1

    def test_key_reused_for_a_different_amount(self, client, agents, ledger):
        create_escrow(client, amount=10, key="order-78")
        resp = create_escrow(client, amount=50, key="order-78")
        assert resp.status_code == 400
        assert resp.json()["error"] == "idempotency_key_reused"
        assert ledger.escrow_count() == 1

    def test_unknown_escrow(self, client):
        resp = client.get("/v1/escrows/0xdeadbeef")
        assert resp.status_code == 404
        assert resp.json()["error"] == "escrow_not_found"

    def test_ledger_timeout_is_retryable(self, client, agents, services, ledger, audit):
        escrow_id = create_escrow(client).json()["escrow_id"]
        services.escrows = EscrowStateMachine(ledger, audit, services.idempotency, services.nudger, timeout=0.05)
        ledger.inject_fault("escrow_get", hang=True)

        resp = client.get(f"/v1/escrows/{escrow_id}")
        assert resp.status_code == 504
        assert resp.json()["retryable"] is True
        assert resp.headers["Retry-After"] == "1"


class TestInteractionsApi:
    def test_initiate_and_complete(self, client, agents):
        resp = client.post("/v1/interactions", headers={"X-Caller": "alice"},
                           json={"to_agent": "bob", "capability": "translate"})
        assert resp.status_code == 201
        interaction_id = resp.json()["interaction_id"]

        resp = client.post(f"/v1/interactions/{interaction_id}/complete", headers={"X-Caller": "alice"})
        assert resp.status_code == 403

        resp = client.post(f"/v1/interactions/{interaction_id}/complete", headers={"X-Caller": "bob"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"

        resp = client.get("/v1/interactions", params={"agent_id": "alice"})
        assert [i["interaction_id"] for i in resp.json()] == [interaction_id]

    def test_low_trust_target_is_refused(self, client, agents):
        client.put("/v1/admin/agents/bob/score", json={"score": 0},
                   headers={"X-Operator-Key": settings.OPERATOR_KEY})

        resp = client.post("/v1/interactions", headers={"X-Caller": "alice"}, json={"to_agent": "bob"})
        assert resp.status_code == 403
        body = resp.json()
        assert body["error"] == "trust_too_low"
        assert body["required"] == 40
        assert body["actual"] == 25
        assert client.get("/v1/interactions", params={"agent_id": "alice"}).json() == []
