import json

import httpx

from agentledger.audit import GENESIS_HASH, AuditKind, AuditLog, verify_chain

from tests.conftest import PAYEE, PAYER, run


class TestChain:
    def test_first_event_links_to_genesis(self, audit):
        event = run(audit.emit(AuditKind.ESCROW_CREATED, "0xabc", [PAYER, PAYEE], 10))
        assert event.prev_hash == GENESIS_HASH
        assert audit.head == event.event_hash
        assert event.verify()

    def test_events_link_in_order(self, audit):
        async def scenario():
            first = await audit.emit(AuditKind.ESCROW_CREATED, "0xabc", [PAYER, PAYEE], 10)
            second = await audit.emit(AuditKind.ESCROW_RELEASED, "0xabc", [PAYER, PAYEE], 10)
            return first, second

        first, second = run(scenario())
        assert second.prev_hash == first.event_hash
        report = verify_chain(audit.recent())
        assert report == {"verified": True, "events_checked": 2, "breaks": []}

    def test_tampering_is_detected(self, audit):
        async def scenario():
            await audit.emit(AuditKind.ESCROW_CREATED, "0xabc", [PAYER, PAYEE], 10)
            await audit.emit(AuditKind.ESCROW_RELEASED, "0xabc", [PAYER, PAYEE], 10)

        run(scenario())
        events = audit.recent()
        events[0].amount = 1_000_000
        report = verify_chain(events)
        assert report["verified"] is False
        assert report["breaks"][0] == {"index": 0, "issue": "hash_mismatch", "event_hash": events[0].event_hash}

    def test_recent_filters_by_kind(self, audit):
        async def scenario():
            await audit.emit(AuditKind.AGENT_REGISTERED, "alice", [PAYER])
            await audit.emit(AuditKind.ESCROW_CREATED, "0xabc", [PAYER, PAYEE], 10)

        run(scenario())
        assert [e.subject_id for e in audit.recent("agent_registered")] == ["alice"]


class TestDelivery:
    def test_events_are_posted_to_the_log_service(self, clock):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        audit = AuditLog(url="http://audit.test/events", client=client, clock=clock)
        event = run(audit.emit(AuditKind.ESCROW_REFUNDED, "0xabc", [PAYER, PAYEE], 10))

        assert received == [event.to_dict()]
        assert received[0]["kind"] == "escrow_refunded"
        assert received[0]["timestamp"] == clock.now

    def test_delivery_failure_keeps_the_chain(self, clock):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        audit = AuditLog(url="http://audit.test/events", client=client, clock=clock)
        event = run(audit.emit(AuditKind.ESCROW_DISPUTED, "0xabc", [PAYER, PAYEE]))

        assert audit.head == event.event_hash
        assert audit.recent() == [event]
