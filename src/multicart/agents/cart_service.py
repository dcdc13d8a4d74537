"""Cart editing, optimization and selection.

Every mutation recomputes the item's ``total_price`` and the cart's
``total_cost`` from the stored item rows, never from cached totals.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

import structlog

from multicart.agents.discovery_agent import DiscoveryEngine
from multicart.config import Settings
from multicart.errors import (
    CartNotFoundError,
    InvalidInputError,
    ItemNotFoundError,
    ProductNotFoundError,
)
from multicart.models import (
    Cart,
    CartItem,
    OptimizeGoal,
    Product,
    ProductVariant,
    SessionStatus,
    utcnow,
)
from multicart.orchestrator.state import SessionTransitions
from multicart.store import MemoryStore, new_id
from multicart.streaming import EVENT_CART_SELECTED, SessionEventStream

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Helpers shared with ranking and checkout
# ---------------------------------------------------------------------------


def default_variant(product: Product) -> ProductVariant | None:
    """The medium-size variant when there is one, else the first variant."""
    for variant in product.variants:
        if (variant.size or "").upper() == "M":
            return variant
    return product.variants[0] if product.variants else None


def unit_price_for(product: Product, variant: ProductVariant | None) -> float:
    if variant is not None and variant.price is not None:
        return variant.price
    return product.price


async def hydrate_items(store: MemoryStore, items: list[CartItem]) -> list[CartItem]:
    """Attach product and variant records to cart items."""
    hydrated: list[CartItem] = []
    for item in items:
        product = await store.get_product(item.product_id)
        variant = await store.get_variant(item.variant_id) if item.variant_id else None
        hydrated.append(item.model_copy(update={"product": product, "variant": variant}))
    return hydrated


async def hydrate_cart(store: MemoryStore, cart: Cart) -> Cart:
    return cart.model_copy(update={"items": await hydrate_items(store, cart.items)})


def parse_goal(goal: str | OptimizeGoal) -> OptimizeGoal:
    try:
        return OptimizeGoal(goal)
    except ValueError as exc:
        valid = ", ".join(g.value for g in OptimizeGoal)
        raise InvalidInputError(f"Invalid optimize goal {goal!r}; expected one of {valid}") from exc


def _pick_alternative(current: Product, candidates: list[Product], goal: OptimizeGoal) -> Product:
    """Best candidate for ``goal``; ``current`` wins ties."""
    best = current
    for candidate in candidates:
        if goal is OptimizeGoal.CHEAPER and candidate.price < best.price:
            best = candidate
        elif goal is OptimizeGoal.FASTER and candidate.delivery_days < best.delivery_days:
            best = candidate
        elif goal is OptimizeGoal.BETTER_MATCH and candidate.price > best.price:
            best = candidate
    return best


class CartService:
    """Reads and mutates session carts."""

    def __init__(
        self,
        store: MemoryStore,
        discovery: DiscoveryEngine,
        transitions: SessionTransitions,
        events: SessionEventStream,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._discovery = discovery
        self._transitions = transitions
        self._events = events
        self._alternatives_limit = settings.optimize_alternatives_limit
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_cart(self, cart_id: str) -> Cart:
        cart = await self._store.get_cart(cart_id)
        if cart is None:
            raise CartNotFoundError(cart_id)
        return await hydrate_cart(self._store, cart)

    async def get_session_carts(self, session_id: str) -> list[Cart]:
        """All carts of the session, hydrated, highest score first."""
        await self._transitions.load(session_id)
        carts = await self._store.list_carts(session_id)
        return [await hydrate_cart(self._store, cart) for cart in carts]

    # ------------------------------------------------------------------
    # Item mutations
    # ------------------------------------------------------------------

    async def add_item(
        self,
        cart_id: str,
        product_id: str,
        variant_id: str | None = None,
        quantity: int = 1,
    ) -> Cart:
        """Add a product to a cart at its current (variant) price."""
        if quantity < 1:
            raise InvalidInputError("Quantity must be a positive integer")

        async with self._store.transaction():
            await self._require_cart(cart_id)
            product = await self._store.get_product(product_id)
            if product is None:
                raise ProductNotFoundError(product_id)
            variant = self._resolve_variant(product, variant_id)
            unit_price = unit_price_for(product, variant)
            await self._store.create_item(
                CartItem(
                    id=new_id(),
                    cart_id=cart_id,
                    product_id=product.id,
                    variant_id=variant.id if variant else None,
                    quantity=quantity,
                    unit_price=unit_price,
                    total_price=round(unit_price * quantity, 2),
                )
            )
            await self._recompute(cart_id)

        logger.info("cart_item_added", cart_id=cart_id, product_id=product_id, quantity=quantity)
        return await self.get_cart(cart_id)

    async def update_item(
        self,
        cart_id: str,
        item_id: str,
        quantity: int | None = None,
        variant_id: str | None = None,
    ) -> Cart:
        """Change an item's quantity and/or variant.

        The unit price is re-resolved only when the variant changes.
        """
        if quantity is not None and quantity < 1:
            raise InvalidInputError("Quantity must be a positive integer")

        async with self._store.transaction():
            await self._require_cart(cart_id)
            item = await self._store.get_item(cart_id, item_id)
            if item is None:
                raise ItemNotFoundError(item_id)

            unit_price = item.unit_price
            new_variant_id = item.variant_id
            if variant_id is not None and variant_id != item.variant_id:
                product = await self._store.get_product(item.product_id)
                if product is None:
                    raise ProductNotFoundError(item.product_id)
                variant = self._resolve_variant(product, variant_id)
                unit_price = unit_price_for(product, variant)
                new_variant_id = variant_id

            new_quantity = quantity if quantity is not None else item.quantity
            await self._store.update_item(
                cart_id,
                item_id,
                quantity=new_quantity,
                variant_id=new_variant_id,
                unit_price=unit_price,
                total_price=round(unit_price * new_quantity, 2),
            )
            await self._recompute(cart_id)

        logger.info("cart_item_updated", cart_id=cart_id, item_id=item_id)
        return await self.get_cart(cart_id)

    async def remove_item(self, cart_id: str, item_id: str) -> Cart:
        """Delete an item from its own cart. Removing a missing item is a no-op."""
        async with self._store.transaction():
            await self._require_cart(cart_id)
            removed = await self._store.delete_item(cart_id, item_id)
            await self._recompute(cart_id)

        logger.info("cart_item_removed", cart_id=cart_id, item_id=item_id, removed=removed)
        return await self.get_cart(cart_id)

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    async def optimize_cart(self, cart_id: str, goal: str | OptimizeGoal) -> Cart:
        """Swap items for better alternatives in their category.

        For every category in the cart, the first item of that category is
        compared against a fresh discovery search and replaced when a
        different product better fits ``goal``.  The quantity is kept.
        """
        target = parse_goal(goal)
        cart = await self.get_cart(cart_id)

        seen: set[str] = set()
        replaced = 0
        for item in cart.items:
            if item.product is None:
                continue
            category = item.product.category
            if category in seen:
                continue
            seen.add(category)

            alternatives = await self._discovery.search_products(
                query=category,
                category=category or None,
                limit=self._alternatives_limit,
            )
            best = _pick_alternative(item.product, alternatives.products, target)
            if best.id == item.product.id:
                continue

            await self._replace_item(cart_id, item, best)
            replaced += 1

        logger.info("cart_optimized", cart_id=cart_id, goal=target.value, replaced=replaced)
        return await self.get_cart(cart_id)

    async def _replace_item(self, cart_id: str, item: CartItem, product: Product) -> None:
        size = item.variant.size if item.variant else None
        variant = next((v for v in product.variants if size and v.size == size), None)
        if variant is None and item.variant_id:
            variant = default_variant(product)
        unit_price = unit_price_for(product, variant)

        async with self._store.transaction():
            await self._store.delete_item(cart_id, item.id)
            await self._store.create_item(
                CartItem(
                    id=new_id(),
                    cart_id=cart_id,
                    product_id=product.id,
                    variant_id=variant.id if variant else None,
                    quantity=item.quantity,
                    unit_price=unit_price,
                    total_price=round(unit_price * item.quantity, 2),
                )
            )
            await self._recompute(cart_id)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def select_cart(self, session_id: str, cart_id: str) -> Cart:
        """Mark ``cart_id`` as the session's only selected cart and move to CART."""
        async with self._store.transaction():
            session = await self._transitions.load(session_id)
            cart = await self._store.get_cart(cart_id)
            if cart is None or cart.session_id != session_id:
                raise CartNotFoundError(cart_id)
            self._transitions.ensure_allowed(session, SessionStatus.CART)

            await self._store.clear_selection(session_id)
            await self._store.update_cart(cart_id, is_selected=True)
            await self._transitions.transition(session_id, SessionStatus.CART)

        logger.info("cart_selected", session_id=session_id, cart_id=cart_id)
        await self._events.emit(
            session_id,
            EVENT_CART_SELECTED,
            data={"cart_id": cart_id},
            message=f"Selected cart {cart.name}",
        )
        return await self.get_cart(cart_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _require_cart(self, cart_id: str) -> Cart:
        cart = await self._store.get_cart(cart_id)
        if cart is None:
            raise CartNotFoundError(cart_id)
        return cart

    @staticmethod
    def _resolve_variant(product: Product, variant_id: str | None) -> ProductVariant | None:
        if variant_id is None:
            return None
        for variant in product.variants:
            if variant.id == variant_id:
                return variant
        raise InvalidInputError(f"Variant {variant_id} does not belong to product {product.id}")

    async def _recompute(self, cart_id: str) -> None:
        """Rebuild the cart total and delivery date from the stored items."""
        items = await self._store.list_items(cart_id)
        total = round(sum(item.total_price for item in items), 2)

        delivery_days = 0
        for item in items:
            product = await self._store.get_product(item.product_id)
            if product is not None:
                delivery_days = max(delivery_days, product.delivery_days)
        delivery_date = self._clock() + timedelta(days=delivery_days) if items else None

        await self._store.update_cart(cart_id, total_cost=total, delivery_date=delivery_date)
