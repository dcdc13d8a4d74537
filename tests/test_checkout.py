"""Tests for the simulated multi-retailer checkout."""

import asyncio

import pytest

from conftest import NOW
from multicart.agents.checkout_agent import (
    CHECKOUT_STEPS,
    advance,
    confirmation_code,
    group_by_retailer,
)
from multicart.errors import (
    CartNotFoundError,
    CheckoutNotFoundError,
    InvalidInputError,
    InvalidTransitionError,
)
from multicart.models import (
    Cart,
    CheckoutState,
    PaymentMethod,
    SessionStatus,
    ShippingAddress,
)

ADDRESS = ShippingAddress(
    name="Jordan Smith",
    street="1 Main St",
    city="Denver",
    state="CO",
    zip_code="80202",
)
PAYMENT = PaymentMethod(type="credit_card", last_four="4242", expiry_month=12, expiry_year=2030)


async def cart_in_session(container, product_ids=("vso-001", "mgp-003", "vso-003")):
    session = await container.store.create_session()
    await container.store.update_session(session.id, status=SessionStatus.CART)
    cart = await container.store.create_cart(Cart(id="cart-1", session_id=session.id, name="Mine"), [])
    for product_id in product_ids:
        await container.carts.add_item(cart.id, product_id)
    await container.carts.select_cart(session.id, cart.id)
    return session, await container.carts.get_cart(cart.id)


class TestStartCheckout:
    async def test_start(self, container):
        session, cart = await cart_in_session(container)
        simulation = await container.checkout.start_checkout(session.id, cart.id, ADDRESS, PAYMENT)

        assert simulation.status == CheckoutState.PROCESSING
        assert simulation.current_step == 0
        assert simulation.progress == 0.0
        assert [s.name for s in simulation.steps] == [name for name, _ in CHECKOUT_STEPS]
        assert [s.status for s in simulation.steps] == [
            "in_progress",
            "pending",
            "pending",
            "pending",
            "pending",
        ]

        orders = simulation.retailer_orders
        assert [o.retailer_id for o in orders] == ["valuesport-outlet", "mountain-gear-pro"]
        assert all(o.status == "pending" for o in orders)
        assert orders[0].subtotal == pytest.approx(154.98)
        assert orders[0].shipping == 9.99
        assert orders[0].total == pytest.approx(164.97)

        assert (await container.sessions.get_session(session.id)).status == SessionStatus.CHECKOUT

    async def test_payment_is_not_stored_in_full(self, container):
        session, cart = await cart_in_session(container)
        simulation = await container.checkout.start_checkout(session.id, cart.id, ADDRESS, PAYMENT)
        summary = await container.checkout.get_checkout_summary(simulation.id)

        assert summary.payment_method.model_dump() == {"type": "credit_card", "last_four": "4242"}
        assert summary.total_amount == cart.total_cost
        assert summary.shipping_address == ADDRESS

    async def test_empty_cart(self, container):
        session, cart = await cart_in_session(container, product_ids=())
        with pytest.raises(InvalidInputError):
            await container.checkout.start_checkout(session.id, cart.id, ADDRESS, PAYMENT)

    async def test_cart_must_be_selected(self, container):
        session, cart = await cart_in_session(container)
        await container.store.update_cart(cart.id, is_selected=False)
        with pytest.raises(InvalidInputError, match="not selected"):
            await container.checkout.start_checkout(session.id, cart.id, ADDRESS, PAYMENT)
        assert (await container.sessions.get_session(session.id)).status == SessionStatus.CART

    async def test_cart_from_other_session(self, container):
        _, cart = await cart_in_session(container)
        other = await container.store.create_session()
        with pytest.raises(CartNotFoundError):
            await container.checkout.start_checkout(other.id, cart.id, ADDRESS, PAYMENT)

    async def test_requires_cart_phase(self, container):
        session, cart = await cart_in_session(container)
        await container.store.update_session(session.id, status=SessionStatus.BRIEFING)
        with pytest.raises(InvalidTransitionError):
            await container.checkout.start_checkout(session.id, cart.id, ADDRESS, PAYMENT)
        assert await container.store.list_checkouts(session.id) == []

    async def test_unknown_checkout(self, container):
        with pytest.raises(CheckoutNotFoundError):
            await container.checkout.get_checkout_status("missing")


class TestProgress:
    async def test_progression_over_time(self, container, clock):
        session, cart = await cart_in_session(container)
        simulation = await container.checkout.start_checkout(session.id, cart.id, ADDRESS, PAYMENT)

        clock.advance(3)
        status = await container.checkout.get_checkout_status(simulation.id)
        assert status.progress == pytest.approx(0.3)
        assert status.current_step == 1
        assert [s.status for s in status.steps][:3] == ["complete", "in_progress", "pending"]
        assert [o.status for o in status.retailer_orders] == ["processing", "processing"]

        clock.advance(3)
        status = await container.checkout.get_checkout_status(simulation.id)
        assert status.current_step == 3
        assert [o.status for o in status.retailer_orders] == ["confirmed", "processing"]
        first_code = status.retailer_orders[0].confirmation_number

        clock.advance(4)
        status = await container.checkout.get_checkout_status(simulation.id)
        assert status.status == CheckoutState.COMPLETE
        assert status.progress == 1.0
        assert status.current_step == len(CHECKOUT_STEPS) - 1
        assert all(s.status == "complete" for s in status.steps)
        assert all(o.status == "confirmed" for o in status.retailer_orders)
        assert status.retailer_orders[0].confirmation_number == first_code

        assert (await container.sessions.get_session(session.id)).status == SessionStatus.COMPLETE
        summary = await container.checkout.get_checkout_summary(simulation.id)
        assert summary.status == CheckoutState.COMPLETE
        assert summary.completed_at == NOW.replace(second=10)

    async def test_progress_is_monotonic(self, container, clock):
        session, cart = await cart_in_session(container)
        simulation = await container.checkout.start_checkout(session.id, cart.id, ADDRESS, PAYMENT)

        seen = []
        for _ in range(8):
            clock.advance(1.7)
            status = await container.checkout.get_checkout_status(simulation.id)
            seen.append((status.progress, status.current_step))
        assert seen == sorted(seen)
        assert seen[-1][0] == 1.0

    async def test_reads_after_completion_are_stable(self, container, clock):
        session, cart = await cart_in_session(container)
        simulation = await container.checkout.start_checkout(session.id, cart.id, ADDRESS, PAYMENT)

        clock.advance(11)
        first = await container.checkout.get_checkout_status(simulation.id)
        clock.advance(60)
        second = await container.checkout.get_checkout_status(simulation.id)

        assert first.retailer_orders == second.retailer_orders
        assert second.status == CheckoutState.COMPLETE
        assert container.events.event_types(session.id).count("checkout_completed") == 1

    async def test_concurrent_completion_writes_once(self, container, clock):
        session, cart = await cart_in_session(container)
        simulation = await container.checkout.start_checkout(session.id, cart.id, ADDRESS, PAYMENT)

        clock.advance(10)
        results = await asyncio.gather(
            *(container.checkout.get_checkout_status(simulation.id) for _ in range(5))
        )

        assert all(r.status == CheckoutState.COMPLETE for r in results)
        assert len({tuple(o.confirmation_number for o in r.retailer_orders) for r in results}) == 1
        assert container.events.event_types(session.id).count("checkout_completed") == 1

    async def test_status_reads_leave_history_unchanged(self, container, clock):
        session, cart = await cart_in_session(container)
        simulation = await container.checkout.start_checkout(session.id, cart.id, ADDRESS, PAYMENT)
        before = container.events.get_history(session.id)

        for _ in range(50):
            await container.checkout.get_checkout_status(simulation.id)
        clock.advance(2)
        for _ in range(50):
            await container.checkout.get_checkout_status(simulation.id)

        assert container.events.get_history(session.id) == before
        assert before[-1].event_type == "checkout_started"


class TestSimulationHelpers:
    def test_confirmation_code_is_deterministic(self):
        code = confirmation_code("checkout-1", "valuesport-outlet")
        assert code == confirmation_code("checkout-1", "valuesport-outlet")
        assert code != confirmation_code("checkout-2", "valuesport-outlet")
        assert code.startswith("VA-")
        assert len(code) == len("VA-") + 8

    async def test_group_by_retailer_first_seen_order(self, container):
        _, cart = await cart_in_session(container, ("mgp-001", "vso-001", "mgp-002"))
        orders = group_by_retailer(cart.items, 5.0)
        assert [o.retailer_id for o in orders] == ["mountain-gear-pro", "valuesport-outlet"]
        assert orders[0].subtotal == pytest.approx(339.98)
        assert orders[0].total == pytest.approx(344.98)
        assert len(orders[0].items) == 2

    async def test_zero_duration_completes_immediately(self, container):
        session, cart = await cart_in_session(container)
        simulation = await container.checkout.start_checkout(session.id, cart.id, ADDRESS, PAYMENT)
        checkout = await container.store.get_checkout(simulation.id)

        snapshot, completion = advance(checkout, NOW, 0)
        assert snapshot.status == CheckoutState.COMPLETE
        assert completion is not None
        assert all(o.confirmation_number for o in completion.retailer_orders)
