"""In-memory record store.

Key-addressed CRUD over sessions, retailers, products, carts, cart items
and checkouts.  Records are copied on the way in and out so callers never
hold live references into the store.

Single CRUD calls never suspend and are therefore atomic.  Compound
read-modify-write sequences run inside :meth:`MemoryStore.transaction`,
which serialises them behind one ``asyncio.Lock``.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, TypeVar

import structlog
from pydantic import BaseModel

from multicart.errors import PersistenceError
from multicart.models import (
    Cart,
    CartItem,
    Checkout,
    CheckoutState,
    Product,
    ProductVariant,
    Retailer,
    Session,
    SessionStatus,
    utcnow,
)

logger = structlog.get_logger(__name__)

_M = TypeVar("_M", bound=BaseModel)


def new_id() -> str:
    """Generate a record identifier."""
    return str(uuid.uuid4())


def _copy(record: _M) -> _M:
    return record.model_copy(deep=True)


class MemoryStore:
    """Process-local record store used by every service."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._retailers: dict[str, Retailer] = {}
        self._products: dict[str, Product] = {}
        self._variants: dict[str, tuple[str, ProductVariant]] = {}
        self._carts: dict[str, Cart] = {}
        self._items: dict[str, CartItem] = {}
        self._checkouts: dict[str, Checkout] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryStore]:
        """Serialise a compound mutation against all other transactions."""
        self._check_open()
        async with self._lock:
            yield self

    async def close(self) -> None:
        """Make the store unavailable; later calls raise ``PersistenceError``."""
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise PersistenceError("Record store is closed")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self) -> Session:
        self._check_open()
        session = Session(id=new_id())
        self._sessions[session.id] = session
        return _copy(session)

    async def get_session(self, session_id: str) -> Session | None:
        self._check_open()
        session = self._sessions.get(session_id)
        return _copy(session) if session else None

    async def update_session(self, session_id: str, **fields: Any) -> Session | None:
        """Update session fields; returns ``None`` when the session is missing."""
        self._check_open()
        session = self._sessions.get(session_id)
        if session is None:
            return None
        updated = session.model_copy(update={**fields, "updated_at": utcnow()})
        self._sessions[session_id] = updated
        return _copy(updated)

    async def set_session_status_if(
        self,
        session_id: str,
        expected: set[SessionStatus],
        status: SessionStatus,
    ) -> bool:
        """Set ``status`` only when the current status is in ``expected``."""
        self._check_open()
        session = self._sessions.get(session_id)
        if session is None or session.status not in expected:
            return False
        self._sessions[session_id] = session.model_copy(
            update={"status": status, "updated_at": utcnow()}
        )
        return True

    # ------------------------------------------------------------------
    # Retailers and products
    # ------------------------------------------------------------------

    async def upsert_retailer(self, retailer: Retailer) -> Retailer:
        self._check_open()
        self._retailers[retailer.id] = _copy(retailer)
        return _copy(retailer)

    async def get_retailer(self, retailer_id: str) -> Retailer | None:
        self._check_open()
        retailer = self._retailers.get(retailer_id)
        return _copy(retailer) if retailer else None

    async def upsert_product(self, product: Product) -> Product:
        """Insert or replace a product keyed by ``product.id``."""
        self._check_open()
        previous = self._products.get(product.id)
        if previous is not None:
            for variant in previous.variants:
                self._variants.pop(variant.id, None)
        stored = _copy(product)
        self._products[stored.id] = stored
        for variant in stored.variants:
            self._variants[variant.id] = (stored.id, variant)
        return _copy(stored)

    async def get_product(self, product_id: str) -> Product | None:
        self._check_open()
        product = self._products.get(product_id)
        return _copy(product) if product else None

    async def get_variant(self, variant_id: str) -> ProductVariant | None:
        self._check_open()
        entry = self._variants.get(variant_id)
        return _copy(entry[1]) if entry else None

    async def find_products(
        self,
        *,
        category: str | None = None,
        text: str | None = None,
        retailer_id: str | None = None,
        in_stock: bool | None = None,
        min_price: float | None = None,
        max_price: float | None = None,
        limit: int | None = None,
    ) -> list[Product]:
        """Filter products and return them ordered by ascending price.

        ``category`` and ``text`` are case-insensitive substring matches;
        ``text`` is checked against name, description and category.
        """
        self._check_open()
        category_lower = category.lower() if category else None
        text_lower = text.lower() if text else None

        matches: list[Product] = []
        for product in self._products.values():
            if category_lower and category_lower not in product.category.lower():
                continue
            if text_lower:
                haystack = f"{product.name} {product.description} {product.category}".lower()
                if text_lower not in haystack:
                    continue
            if retailer_id and product.retailer_id != retailer_id:
                continue
            if in_stock is not None and product.in_stock != in_stock:
                continue
            if min_price is not None and product.price < min_price:
                continue
            if max_price is not None and product.price > max_price:
                continue
            matches.append(product)

        matches.sort(key=lambda p: p.price)
        if limit is not None:
            matches = matches[:limit]
        return [_copy(p) for p in matches]

    # ------------------------------------------------------------------
    # Carts
    # ------------------------------------------------------------------

    async def create_cart(self, cart: Cart, items: list[CartItem]) -> Cart:
        """Persist a cart and its items in one write."""
        self._check_open()
        stored = cart.model_copy(update={"items": []}, deep=True)
        self._carts[stored.id] = stored
        for item in items:
            self._items[item.id] = item.model_copy(
                update={"cart_id": stored.id, "product": None, "variant": None},
                deep=True,
            )
        return await self.get_cart(stored.id)  # type: ignore[return-value]

    async def get_cart(self, cart_id: str) -> Cart | None:
        """Return the cart with its (unhydrated) items."""
        self._check_open()
        cart = self._carts.get(cart_id)
        if cart is None:
            return None
        return cart.model_copy(update={"items": self._cart_items(cart_id)}, deep=True)

    async def list_carts(self, session_id: str) -> list[Cart]:
        """All carts of a session ordered by score descending."""
        self._check_open()
        carts = [c for c in self._carts.values() if c.session_id == session_id]
        carts.sort(key=lambda c: c.score, reverse=True)
        return [
            c.model_copy(update={"items": self._cart_items(c.id)}, deep=True)
            for c in carts
        ]

    async def update_cart(self, cart_id: str, **fields: Any) -> Cart | None:
        self._check_open()
        cart = self._carts.get(cart_id)
        if cart is None:
            return None
        self._carts[cart_id] = cart.model_copy(update=fields)
        return await self.get_cart(cart_id)

    async def clear_selection(self, session_id: str) -> int:
        """Set ``is_selected = False`` on every cart of the session."""
        self._check_open()
        cleared = 0
        for cart_id, cart in list(self._carts.items()):
            if cart.session_id == session_id and cart.is_selected:
                self._carts[cart_id] = cart.model_copy(update={"is_selected": False})
                cleared += 1
        return cleared

    # ------------------------------------------------------------------
    # Cart items
    # ------------------------------------------------------------------

    def _cart_items(self, cart_id: str) -> list[CartItem]:
        return [_copy(i) for i in self._items.values() if i.cart_id == cart_id]

    async def list_items(self, cart_id: str) -> list[CartItem]:
        self._check_open()
        return self._cart_items(cart_id)

    async def create_item(self, item: CartItem) -> CartItem:
        self._check_open()
        stored = item.model_copy(update={"product": None, "variant": None}, deep=True)
        self._items[stored.id] = stored
        return _copy(stored)

    async def get_item(self, cart_id: str, item_id: str) -> CartItem | None:
        """Look up an item only within its owning cart."""
        self._check_open()
        item = self._items.get(item_id)
        if item is None or item.cart_id != cart_id:
            return None
        return _copy(item)

    async def update_item(self, cart_id: str, item_id: str, **fields: Any) -> CartItem | None:
        self._check_open()
        item = self._items.get(item_id)
        if item is None or item.cart_id != cart_id:
            return None
        updated = item.model_copy(update=fields)
        self._items[item_id] = updated
        return _copy(updated)

    async def delete_item(self, cart_id: str, item_id: str) -> bool:
        """Delete an item scoped to its cart; ``False`` when nothing matched."""
        self._check_open()
        item = self._items.get(item_id)
        if item is None or item.cart_id != cart_id:
            return False
        del self._items[item_id]
        return True

    # ------------------------------------------------------------------
    # Checkouts
    # ------------------------------------------------------------------

    async def create_checkout(self, checkout: Checkout) -> Checkout:
        self._check_open()
        self._checkouts[checkout.id] = _copy(checkout)
        return _copy(checkout)

    async def get_checkout(self, checkout_id: str) -> Checkout | None:
        self._check_open()
        checkout = self._checkouts.get(checkout_id)
        return _copy(checkout) if checkout else None

    async def list_checkouts(self, session_id: str) -> list[Checkout]:
        self._check_open()
        checkouts = [c for c in self._checkouts.values() if c.session_id == session_id]
        checkouts.sort(key=lambda c: c.started_at)
        return [_copy(c) for c in checkouts]

    async def complete_checkout_if_processing(
        self,
        checkout_id: str,
        **fields: Any,
    ) -> bool:
        """Mark a checkout COMPLETE unless it already is.

        Returns ``True`` only for the call that performed the transition.
        """
        self._check_open()
        checkout = self._checkouts.get(checkout_id)
        if checkout is None or checkout.status != CheckoutState.PROCESSING:
            return False
        self._checkouts[checkout_id] = checkout.model_copy(
            update={**fields, "status": CheckoutState.COMPLETE}, deep=True
        )
        logger.debug("checkout_record_completed", checkout_id=checkout_id)
        return True
