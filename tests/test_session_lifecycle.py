"""End-to-end session lifecycle: briefing, discovery, cart, checkout."""

import asyncio

import pytest

from conftest import make_product
from multicart.errors import InvalidTransitionError, MissingShoppingSpecError
from multicart.models import SessionStatus, ShoppingConstraints, ShoppingSpec
from multicart.orchestrator.graph import discovery_queries, merge_products
from multicart.orchestrator.state import ALLOWED_TRANSITIONS, can_transition
from multicart.streaming import SessionEventStream

OPENING_MESSAGE = "Skiing outfit, size M, budget $400, delivery in 5 days"

CHECKOUT_BODY = {
    "shipping_address": {
        "name": "Jordan Smith",
        "street": "1 Main St",
        "city": "Denver",
        "state": "CO",
        "zip_code": "80202",
    },
    "payment_method": {
        "type": "credit_card",
        "last_four": "4242",
        "expiry_month": 12,
        "expiry_year": 2030,
    },
}


class TestFullLifecycle:
    async def test_briefing_to_complete(self, client, container, clock):
        resp = await client.post("/api/v1/sessions", json={"initial_message": OPENING_MESSAGE})
        assert resp.status_code == 201
        created = resp.json()
        session_id = created["session"]["id"]
        assert created["session"]["status"] == "BRIEFING"
        assert created["parsed_intent"]["scenario"] == "skiing outfit"
        assert created["stream_url"] == f"/api/v1/sessions/{session_id}/stream"
        spec = created["session"]["shopping_spec"]
        assert spec["constraints"]["budget"] == 400
        assert spec["constraints"]["sizes"] == {"default": "M"}

        resp = await client.post(f"/api/v1/sessions/{session_id}/discover")
        assert resp.status_code == 200
        outcome = resp.json()
        assert outcome["products_found"] > 0
        assert outcome["carts_generated"] >= 1
        cart_id = outcome["carts"][0]["id"]

        resp = await client.get(f"/api/v1/sessions/{session_id}")
        assert resp.json()["session"]["status"] == "CART"

        resp = await client.post(f"/api/v1/carts/{cart_id}/select", json={"session_id": session_id})
        assert resp.status_code == 200
        assert resp.json()["is_selected"] is True

        resp = await client.post(
            "/api/v1/checkout/start",
            json={"session_id": session_id, "cart_id": cart_id, **CHECKOUT_BODY},
        )
        assert resp.status_code == 201
        checkout_id = resp.json()["id"]
        assert resp.json()["status"] == "PROCESSING"

        clock.advance(10)
        resp = await client.get(f"/api/v1/checkout/{checkout_id}/status")
        status = resp.json()
        assert status["status"] == "COMPLETE"
        assert all(o["confirmation_number"] for o in status["retailer_orders"])

        resp = await client.get(f"/api/v1/sessions/{session_id}")
        details = resp.json()
        assert details["session"]["status"] == "COMPLETE"
        assert [c["id"] for c in details["checkouts"]] == [checkout_id]

        assert container.events.event_types(session_id)[-1] == "checkout_completed"

    async def test_status_changes_are_announced_in_order(self, container):
        session, _ = await container.sessions.create_session(OPENING_MESSAGE)
        await container.sessions.start_discovery(session.id)

        changes = [
            (e.data["from"], e.data["to"])
            for e in container.events.get_history(session.id)
            if e.event_type == "status_changed"
        ]
        assert changes == [
            ("BRIEFING", "DISCOVERING"),
            ("DISCOVERING", "RANKING"),
            ("RANKING", "CART"),
        ]
        types = container.events.event_types(session.id)
        assert types.index("products_found") < types.index("carts_ranked")


class TestBriefing:
    async def test_create_without_message(self, container):
        session, intent = await container.sessions.create_session()
        assert intent is None
        assert session.shopping_spec is None
        assert container.events.event_types(session.id) == ["session_created"]

    async def test_blank_message_is_ignored(self, container):
        session, intent = await container.sessions.create_session("   ")
        assert intent is None

    async def test_update_spec_replaces_wholesale(self, container):
        session, _ = await container.sessions.create_session(OPENING_MESSAGE)
        spec = ShoppingSpec(scenario="home office", must_haves=["desk"])

        updated = await container.sessions.update_spec(session.id, spec)
        assert updated.shopping_spec == spec
        assert updated.shopping_spec.constraints.budget is None
        assert "spec_updated" in container.events.event_types(session.id)

    async def test_second_message_keeps_earlier_constraints(self, container):
        session, _ = await container.sessions.create_session("ski gear, budget $500")
        session, intent = await container.sessions.apply_intent(session.id, "need it by tomorrow")

        assert session.shopping_spec.constraints.budget == 500
        assert session.shopping_spec.constraints.deadline is not None
        assert session.shopping_spec.scenario == intent.scenario

    async def test_clarify_updates_stored_spec(self, container):
        session, _ = await container.sessions.create_session("ski jacket")
        response = await container.sessions.clarify(session.id, "around $250")

        assert response.updated_spec.constraints.budget == 250
        stored = await container.sessions.get_session(session.id)
        assert stored.shopping_spec.constraints.budget == 250
        assert stored.shopping_spec.must_haves == ["ski", "jacket"]

    async def test_pending_questions(self, container):
        session, _ = await container.sessions.create_session()
        assert len(await container.sessions.pending_questions(session.id)) == 4

        complete = ShoppingSpec(
            scenario="x",
            constraints=ShoppingConstraints(
                budget=100,
                sizes={"default": "M"},
                colors=["black"],
            ),
        )
        await container.sessions.update_spec(session.id, complete)
        assert len(await container.sessions.pending_questions(session.id)) == 1


class TestDiscoveryFailures:
    async def test_discover_without_spec(self, container, client):
        session, _ = await container.sessions.create_session()

        with pytest.raises(MissingShoppingSpecError):
            await container.sessions.start_discovery(session.id)
        assert (await container.sessions.get_session(session.id)).status == SessionStatus.BRIEFING

        resp = await client.post(f"/api/v1/sessions/{session.id}/discover")
        assert resp.status_code == 400

    async def test_discover_twice(self, container, client):
        session, _ = await container.sessions.create_session(OPENING_MESSAGE)
        await container.sessions.start_discovery(session.id)

        with pytest.raises(InvalidTransitionError):
            await container.sessions.start_discovery(session.id)

        resp = await client.post(f"/api/v1/sessions/{session.id}/discover")
        assert resp.status_code == 400
        assert (await container.sessions.get_session(session.id)).status == SessionStatus.CART

    async def test_pipeline_failure_marks_session_failed(self, container, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("ranking exploded")

        monkeypatch.setattr(container.ranking, "generate_ranked_carts", broken)
        session, _ = await container.sessions.create_session(OPENING_MESSAGE)

        with pytest.raises(RuntimeError):
            await container.sessions.start_discovery(session.id)

        assert (await container.sessions.get_session(session.id)).status == SessionStatus.FAILED
        history = container.events.get_history(session.id)
        assert history[-1].event_type == "error"
        assert "ranking exploded" in history[-1].data["error"]


class TestTransitions:
    @pytest.mark.parametrize("status", list(SessionStatus))
    def test_reapplying_status_is_allowed(self, status):
        assert can_transition(status, status)

    def test_terminal_states(self):
        assert ALLOWED_TRANSITIONS[SessionStatus.COMPLETE] == frozenset()
        assert ALLOWED_TRANSITIONS[SessionStatus.FAILED] == frozenset()
        assert not can_transition(SessionStatus.COMPLETE, SessionStatus.BRIEFING)

    def test_no_skipping_phases(self):
        assert not can_transition(SessionStatus.BRIEFING, SessionStatus.CART)
        assert not can_transition(SessionStatus.CART, SessionStatus.DISCOVERING)
        assert can_transition(SessionStatus.CART, SessionStatus.FAILED)

    async def test_same_status_emits_nothing(self, container):
        session, _ = await container.sessions.create_session()
        await container.transitions.transition(session.id, SessionStatus.BRIEFING)
        assert "status_changed" not in container.events.event_types(session.id)

    async def test_concurrent_transitions_apply_once(self, container):
        session, _ = await container.sessions.create_session()
        results = await asyncio.gather(
            *(container.transitions.transition(session.id, SessionStatus.DISCOVERING) for _ in range(3)),
        )
        assert all(s.status == SessionStatus.DISCOVERING for s in results)
        assert container.events.event_types(session.id).count("status_changed") == 1


class TestPipelineHelpers:
    def test_queries_are_deduplicated(self):
        spec = ShoppingSpec(scenario="Ski Jacket", must_haves=["ski jacket", " gloves ", "Gloves", ""])
        assert discovery_queries(spec) == ["ski jacket", "gloves"]

    def test_merge_keeps_first_occurrence(self):
        a, b = make_product("a", price=10), make_product("b")
        duplicate = make_product("a", price=99)
        merged = merge_products([[a, b], [duplicate]])
        assert [p.id for p in merged] == ["a", "b"]
        assert merged[0].price == 10


class TestEventStream:
    async def test_replays_history_and_stops_at_terminal_event(self):
        stream = SessionEventStream()
        await stream.emit("s1", "session_created")
        await stream.emit("s1", "checkout_completed")
        await stream.emit("s1", "status_changed")

        seen = [e.event_type async for e in stream.subscribe("s1")]
        assert seen == ["session_created", "checkout_completed"]

    async def test_live_events_reach_subscriber(self):
        stream = SessionEventStream()
        received = []

        async def consume():
            async for event in stream.subscribe("s1"):
                received.append(event.event_type)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await stream.emit("s1", "products_found")
        await stream.emit("s1", "error", data={"error": "boom"})
        await asyncio.wait_for(task, timeout=1)

        assert received == ["products_found", "error"]

    async def test_close_ends_subscription(self):
        stream = SessionEventStream()
        received = []

        async def consume():
            async for event in stream.subscribe("s1"):
                received.append(event.event_type)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        stream.close("s1")
        await asyncio.wait_for(task, timeout=1)
        assert received == []

    async def test_history_keeps_newest_events(self):
        stream = SessionEventStream(max_history=3)
        for i in range(5):
            await stream.emit("s1", "status_changed", data={"n": i})

        assert [e.data["n"] for e in stream.get_history("s1")] == [2, 3, 4]
        seen = []
        await stream.emit("s1", "checkout_completed")
        async for event in stream.subscribe("s1"):
            seen.append(event.event_type)
        assert seen == ["status_changed", "status_changed", "checkout_completed"]

    async def test_clear_drops_history_and_ends_subscribers(self):
        stream = SessionEventStream()
        await stream.emit("s1", "session_created")
        await stream.emit("s2", "session_created")
        received = []

        async def consume():
            async for event in stream.subscribe("s1"):
                received.append(event.event_type)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        stream.clear("s1")
        await asyncio.wait_for(task, timeout=1)

        assert received == ["session_created"]
        assert stream.get_history("s1") == []
        assert stream.session_ids() == ["s2"]

    async def test_container_shutdown_clears_streams(self, container):
        session, _ = await container.sessions.create_session()
        assert container.events.get_history(session.id)

        await container.shutdown()
        assert container.events.session_ids() == []
