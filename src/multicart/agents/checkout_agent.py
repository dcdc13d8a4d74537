"""Simulated multi-retailer checkout.

A checkout splits the selected cart into one order per retailer and then
walks through five fixed steps over a fixed simulated window.  Progress is
never stored: every status read derives it from the elapsed time via
:func:`advance`.  The first read after the window has elapsed persists the
terminal state and completes the owning session.
"""

from __future__ import annotations

import hashlib
import math
from datetime import datetime, timedelta
from typing import Callable

import structlog
from pydantic import BaseModel

from multicart.agents.cart_service import hydrate_cart
from multicart.config import Settings
from multicart.errors import (
    CartNotFoundError,
    CheckoutNotFoundError,
    InvalidInputError,
    InvalidTransitionError,
)
from multicart.models import (
    CartItem,
    Checkout,
    CheckoutSimulation,
    CheckoutState,
    CheckoutStep,
    PaymentMethod,
    RetailerOrder,
    SessionStatus,
    ShippingAddress,
    StoredPaymentMethod,
    utcnow,
)
from multicart.orchestrator.state import SessionTransitions
from multicart.store import MemoryStore, new_id
from multicart.streaming import (
    EVENT_CHECKOUT_COMPLETED,
    EVENT_CHECKOUT_STARTED,
    SessionEventStream,
)

logger = structlog.get_logger(__name__)

CHECKOUT_STEPS: tuple[tuple[str, str], ...] = (
    ("Validating Cart", "Verifying all items are in stock and prices are current"),
    ("Processing Payment", "Securely processing your payment information"),
    ("Splitting Orders", "Organizing items by retailer for efficient fulfillment"),
    ("Submitting to Retailers", "Sending orders to each retailer for processing"),
    ("Confirming Orders", "Receiving confirmation from all retailers"),
)


class CheckoutCompletion(BaseModel):
    """Terminal write produced when a simulation reaches 100%."""

    completed_at: datetime
    retailer_orders: list[RetailerOrder]


# ---------------------------------------------------------------------------
# Pure simulation
# ---------------------------------------------------------------------------


def confirmation_code(checkout_id: str, retailer_id: str) -> str:
    """Stable confirmation code for one retailer order of a checkout."""
    digest = hashlib.sha256(f"{checkout_id}:{retailer_id}".encode()).hexdigest()
    return f"{retailer_id[:2].upper()}-{digest[:8].upper()}"


def group_by_retailer(items: list[CartItem], shipping_fee: float) -> list[RetailerOrder]:
    """One pending order per retailer, in first-seen item order."""
    orders: dict[str, RetailerOrder] = {}
    for item in items:
        retailer_id = item.product.retailer_id if item.product else "unknown"
        retailer_name = (
            item.product.retailer_name if item.product and item.product.retailer_name
            else "Unknown Retailer"
        )
        order = orders.get(retailer_id)
        if order is None:
            order = RetailerOrder(
                retailer_id=retailer_id,
                retailer_name=retailer_name,
                shipping=shipping_fee,
            )
            orders[retailer_id] = order
        order.items.append(item)
        order.subtotal = round(order.subtotal + item.total_price, 2)
        order.total = round(order.subtotal + order.shipping, 2)
    return list(orders.values())


def _steps(current_step: int, started_at: datetime, step_seconds: float) -> list[CheckoutStep]:
    steps: list[CheckoutStep] = []
    for index, (name, description) in enumerate(CHECKOUT_STEPS):
        if index < current_step:
            steps.append(
                CheckoutStep(
                    name=name,
                    description=description,
                    status="complete",
                    timestamp=started_at + timedelta(seconds=step_seconds * (index + 1)),
                )
            )
        elif index == current_step:
            steps.append(CheckoutStep(name=name, description=description, status="in_progress"))
        else:
            steps.append(CheckoutStep(name=name, description=description, status="pending"))
    return steps


def advance(
    checkout: Checkout,
    now: datetime,
    duration_seconds: float,
) -> tuple[CheckoutSimulation, CheckoutCompletion | None]:
    """Derive the progress snapshot of ``checkout`` at time ``now``.

    Returns the snapshot plus, when the window has elapsed and the stored
    checkout is still PROCESSING, the terminal write to persist.
    """
    step_count = len(CHECKOUT_STEPS)
    step_seconds = duration_seconds / step_count

    if checkout.status == CheckoutState.COMPLETE:
        snapshot = CheckoutSimulation(
            id=checkout.id,
            status=CheckoutState.COMPLETE,
            steps=_steps(step_count, checkout.started_at, step_seconds),
            current_step=step_count - 1,
            progress=1.0,
            retailer_orders=checkout.retailer_orders,
        )
        return snapshot, None

    elapsed = (now - checkout.started_at).total_seconds()
    if duration_seconds <= 0:
        progress = 1.0
    else:
        progress = min(1.0, max(0.0, elapsed / duration_seconds))
    current_step = math.floor(progress * step_count)
    done = progress >= 1.0

    order_count = len(checkout.retailer_orders)
    orders: list[RetailerOrder] = []
    for index, order in enumerate(checkout.retailer_orders):
        if order.status == "confirmed" and order.confirmation_number:
            orders.append(order)
        elif done or progress > (index + 1) / order_count:
            orders.append(
                order.model_copy(
                    update={
                        "status": "confirmed",
                        "confirmation_number": confirmation_code(checkout.id, order.retailer_id),
                    }
                )
            )
        else:
            orders.append(order.model_copy(update={"status": "processing"}))

    snapshot = CheckoutSimulation(
        id=checkout.id,
        status=CheckoutState.COMPLETE if done else CheckoutState.PROCESSING,
        steps=_steps(current_step, checkout.started_at, step_seconds),
        current_step=min(current_step, step_count - 1),
        progress=round(progress, 4),
        retailer_orders=orders,
    )
    completion = CheckoutCompletion(completed_at=now, retailer_orders=orders) if done else None
    return snapshot, completion


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class CheckoutSimulator:
    """Starts checkouts and reports their simulated progress."""

    def __init__(
        self,
        store: MemoryStore,
        transitions: SessionTransitions,
        events: SessionEventStream,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._transitions = transitions
        self._events = events
        self._duration = settings.checkout_duration_seconds
        self._shipping_fee = settings.retailer_shipping_fee
        self._clock = clock

    async def start_checkout(
        self,
        session_id: str,
        cart_id: str,
        shipping_address: ShippingAddress,
        payment_method: PaymentMethod,
    ) -> CheckoutSimulation:
        """Split the cart per retailer, persist the checkout and move the session to CHECKOUT."""
        async with self._store.transaction():
            session = await self._transitions.load(session_id)
            cart = await self._store.get_cart(cart_id)
            if cart is None or cart.session_id != session_id:
                raise CartNotFoundError(cart_id)
            if not cart.items:
                raise InvalidInputError(f"Cart {cart_id} has no items")
            if not cart.is_selected:
                raise InvalidInputError(f"Cart {cart_id} is not selected")
            self._transitions.ensure_allowed(session, SessionStatus.CHECKOUT)

            hydrated = await hydrate_cart(self._store, cart)
            orders = group_by_retailer(hydrated.items, self._shipping_fee)
            checkout = await self._store.create_checkout(
                Checkout(
                    id=new_id(),
                    session_id=session_id,
                    cart_id=cart_id,
                    status=CheckoutState.PROCESSING,
                    shipping_address=shipping_address,
                    payment_method=StoredPaymentMethod(
                        type=payment_method.type,
                        last_four=payment_method.last_four,
                    ),
                    total_amount=cart.total_cost,
                    retailer_orders=orders,
                    started_at=self._clock(),
                )
            )
            await self._transitions.transition(session_id, SessionStatus.CHECKOUT)

        logger.info(
            "checkout_started",
            session_id=session_id,
            checkout_id=checkout.id,
            retailers=len(orders),
            total_amount=checkout.total_amount,
        )
        await self._events.emit(
            session_id,
            EVENT_CHECKOUT_STARTED,
            data={"checkout_id": checkout.id, "retailers": len(orders)},
            message=f"Checkout started across {len(orders)} retailers",
        )
        return CheckoutSimulation(
            id=checkout.id,
            status=CheckoutState.PROCESSING,
            steps=_steps(0, checkout.started_at, self._duration / len(CHECKOUT_STEPS)),
            current_step=0,
            progress=0.0,
            retailer_orders=checkout.retailer_orders,
        )

    async def get_checkout_status(self, checkout_id: str) -> CheckoutSimulation:
        """Progress snapshot at the current time.

        The first read at or after 100% progress persists the completion
        and moves the session to COMPLETE; later reads are side-effect free.
        """
        checkout = await self._require(checkout_id)
        snapshot, completion = advance(checkout, self._clock(), self._duration)
        if completion is None:
            return snapshot

        async with self._store.transaction():
            finalized = await self._store.complete_checkout_if_processing(
                checkout_id,
                completed_at=completion.completed_at,
                retailer_orders=completion.retailer_orders,
            )
            if finalized:
                try:
                    await self._transitions.transition(checkout.session_id, SessionStatus.COMPLETE)
                except InvalidTransitionError as exc:
                    logger.warning(
                        "session_completion_skipped",
                        session_id=checkout.session_id,
                        error=str(exc),
                    )

        if finalized:
            logger.info("checkout_completed", checkout_id=checkout_id, session_id=checkout.session_id)
            await self._events.emit(
                checkout.session_id,
                EVENT_CHECKOUT_COMPLETED,
                data={
                    "checkout_id": checkout_id,
                    "confirmations": [o.confirmation_number for o in completion.retailer_orders],
                },
                message="All retailer orders confirmed",
            )
            return snapshot

        # Another reader finalized first; report what it stored.
        stored = await self._require(checkout_id)
        return advance(stored, self._clock(), self._duration)[0]

    async def get_checkout_summary(self, checkout_id: str) -> Checkout:
        return await self._require(checkout_id)

    async def _require(self, checkout_id: str) -> Checkout:
        checkout = await self._store.get_checkout(checkout_id)
        if checkout is None:
            raise CheckoutNotFoundError(checkout_id)
        return checkout
