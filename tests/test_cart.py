"""Tests for cart editing, optimization and selection."""

import asyncio
from datetime import timedelta

import pytest

from conftest import NOW
from multicart.errors import (
    CartNotFoundError,
    InvalidInputError,
    InvalidTransitionError,
    ItemNotFoundError,
    ProductNotFoundError,
)
from multicart.models import Cart, OptimizeGoal, SessionStatus


async def new_cart(container, session_id=None, name="Custom"):
    if session_id is None:
        session_id = (await container.store.create_session()).id
    return await container.store.create_cart(
        Cart(id=f"cart-{name.lower()}", session_id=session_id, name=name), []
    )


def assert_total_invariant(cart):
    assert cart.total_cost == pytest.approx(round(sum(i.total_price for i in cart.items), 2))
    for item in cart.items:
        assert item.total_price == pytest.approx(round(item.unit_price * item.quantity, 2))


class TestItemMutations:
    async def test_add_item(self, container):
        cart = await new_cart(container)
        updated = await container.carts.add_item(cart.id, "mgp-001", "mgp-001-m", quantity=2)

        assert len(updated.items) == 1
        item = updated.items[0]
        assert item.unit_price == 189.99
        assert item.total_price == 379.98
        assert item.product.name == "Alpine Pro Ski Jacket"
        assert item.variant.size == "M"
        assert updated.total_cost == 379.98
        assert updated.delivery_date == NOW + timedelta(days=3)

    async def test_add_unknown_product(self, container):
        cart = await new_cart(container)
        with pytest.raises(ProductNotFoundError):
            await container.carts.add_item(cart.id, "nope")

    async def test_add_to_unknown_cart(self, container):
        with pytest.raises(CartNotFoundError):
            await container.carts.add_item("missing", "mgp-001")

    async def test_variant_must_belong_to_product(self, container):
        cart = await new_cart(container)
        with pytest.raises(InvalidInputError):
            await container.carts.add_item(cart.id, "mgp-001", "vso-001-m")

    async def test_quantity_must_be_positive(self, container):
        cart = await new_cart(container)
        with pytest.raises(InvalidInputError):
            await container.carts.add_item(cart.id, "mgp-001", quantity=0)

    async def test_update_quantity(self, container):
        cart = await new_cart(container)
        cart = await container.carts.add_item(cart.id, "vso-003")
        item_id = cart.items[0].id

        updated = await container.carts.update_item(cart.id, item_id, quantity=3)
        assert updated.items[0].quantity == 3
        assert updated.total_cost == pytest.approx(104.97)
        assert_total_invariant(updated)

    async def test_update_variant_reprices(self, container):
        cart = await new_cart(container)
        cart = await container.carts.add_item(cart.id, "ese-001", "ese-001-s")
        item_id = cart.items[0].id

        updated = await container.carts.update_item(cart.id, item_id, variant_id="ese-001-m-red")
        assert updated.items[0].variant_id == "ese-001-m-red"
        assert updated.items[0].variant.color == "Red"
        assert updated.items[0].unit_price == 349.99

    async def test_update_missing_item(self, container):
        cart = await new_cart(container)
        with pytest.raises(ItemNotFoundError):
            await container.carts.update_item(cart.id, "missing", quantity=2)

    async def test_remove_item(self, container):
        cart = await new_cart(container)
        cart = await container.carts.add_item(cart.id, "vso-003")
        cart = await container.carts.add_item(cart.id, "vso-004")

        updated = await container.carts.remove_item(cart.id, cart.items[0].id)
        assert len(updated.items) == 1
        assert_total_invariant(updated)

    async def test_remove_last_item_clears_delivery_date(self, container):
        cart = await new_cart(container)
        cart = await container.carts.add_item(cart.id, "vso-003")
        updated = await container.carts.remove_item(cart.id, cart.items[0].id)
        assert updated.items == []
        assert updated.total_cost == 0
        assert updated.delivery_date is None

    async def test_remove_is_scoped_to_owning_cart(self, container):
        session = await container.store.create_session()
        cart_a = await new_cart(container, session.id, "A")
        cart_b = await new_cart(container, session.id, "B")
        cart_a = await container.carts.add_item(cart_a.id, "vso-003")

        await container.carts.remove_item(cart_b.id, cart_a.items[0].id)
        assert len((await container.carts.get_cart(cart_a.id)).items) == 1

    async def test_total_invariant_after_mixed_edits(self, container):
        cart = await new_cart(container)
        cart = await container.carts.add_item(cart.id, "mgp-001", "mgp-001-l", quantity=2)
        cart = await container.carts.add_item(cart.id, "vso-004", quantity=3)
        cart = await container.carts.add_item(cart.id, "ese-003")
        cart = await container.carts.update_item(cart.id, cart.items[1].id, quantity=1)
        cart = await container.carts.remove_item(cart.id, cart.items[2].id)

        assert_total_invariant(cart)
        stored = await container.store.get_cart(cart.id)
        assert stored.total_cost == cart.total_cost


class TestOptimize:
    async def test_cheaper_keeps_size_and_quantity(self, container):
        cart = await new_cart(container)
        cart = await container.carts.add_item(cart.id, "mgp-001", "mgp-001-l", quantity=2)

        optimized = await container.carts.optimize_cart(cart.id, "cheaper")
        item = optimized.items[0]
        assert item.product_id == "vso-001"
        assert item.variant_id == "vso-001-l"
        assert item.quantity == 2
        assert optimized.total_cost == pytest.approx(239.98)

    async def test_faster(self, container):
        cart = await new_cart(container)
        cart = await container.carts.add_item(cart.id, "vso-002")

        optimized = await container.carts.optimize_cart(cart.id, OptimizeGoal.FASTER)
        assert optimized.items[0].product_id == "ese-002"
        assert optimized.items[0].variant_id is None
        assert optimized.delivery_date == NOW + timedelta(days=1)

    async def test_better_match_picks_premium(self, container):
        cart = await new_cart(container)
        cart = await container.carts.add_item(cart.id, "vso-004", "vso-004-m")

        optimized = await container.carts.optimize_cart(cart.id, "better_match")
        assert optimized.items[0].product_id == "ese-004"
        assert optimized.items[0].variant_id == "ese-004-m"

    async def test_already_optimal_is_unchanged(self, container):
        cart = await new_cart(container)
        cart = await container.carts.add_item(cart.id, "vso-003")
        item_id = cart.items[0].id

        optimized = await container.carts.optimize_cart(cart.id, "cheaper")
        assert optimized.items[0].id == item_id

    async def test_invalid_goal(self, container):
        cart = await new_cart(container)
        with pytest.raises(InvalidInputError):
            await container.carts.optimize_cart(cart.id, "prettier")


class TestSelection:
    async def cart_session(self, container):
        session = await container.store.create_session()
        await container.store.update_session(session.id, status=SessionStatus.CART)
        carts = [await new_cart(container, session.id, name) for name in ("A", "B", "C")]
        return session, carts

    async def test_single_selection(self, container):
        session, carts = await self.cart_session(container)

        await container.carts.select_cart(session.id, carts[0].id)
        await container.carts.select_cart(session.id, carts[1].id)

        selected = [c.id for c in await container.carts.get_session_carts(session.id) if c.is_selected]
        assert selected == [carts[1].id]

    async def test_concurrent_selection_leaves_one_selected(self, container):
        session, carts = await self.cart_session(container)

        await asyncio.gather(*(container.carts.select_cart(session.id, c.id) for c in carts))

        selected = [c for c in await container.store.list_carts(session.id) if c.is_selected]
        assert len(selected) == 1

    async def test_selection_keeps_session_in_cart(self, container):
        session, carts = await self.cart_session(container)
        await container.carts.select_cart(session.id, carts[0].id)
        assert (await container.sessions.get_session(session.id)).status == SessionStatus.CART
        assert "cart_selected" in container.events.event_types(session.id)

    async def test_cart_must_belong_to_session(self, container):
        session, _ = await self.cart_session(container)
        foreign = await new_cart(container, name="Foreign")
        with pytest.raises(CartNotFoundError):
            await container.carts.select_cart(session.id, foreign.id)

    async def test_selection_requires_cart_phase(self, container):
        session = await container.store.create_session()
        cart = await new_cart(container, session.id)
        with pytest.raises(InvalidTransitionError):
            await container.carts.select_cart(session.id, cart.id)
        assert not (await container.store.get_cart(cart.id)).is_selected
