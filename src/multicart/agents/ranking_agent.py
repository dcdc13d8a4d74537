"""Cart ranking engine.

Builds one candidate cart per selection strategy from a discovered product
pool, scores each against the shopping spec, persists the survivors and
returns them best-first.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

import structlog

from multicart.agents.cart_service import default_variant, hydrate_items, unit_price_for
from multicart.agents.explanation import ExplanationGenerator, days_early
from multicart.config import Settings
from multicart.errors import CartNotFoundError, SessionNotFoundError
from multicart.models import (
    Cart,
    CartComparison,
    CartItem,
    CartSummary,
    Product,
    RankedCart,
    RankingExplanation,
    RankingFactor,
    RetailerSummary,
    ScoreBreakdown,
    ShoppingSpec,
    utcnow,
)
from multicart.store import MemoryStore, new_id

logger = structlog.get_logger(__name__)

# Scoring weights (sum to 1.0)
WEIGHT_PRICE = 0.35
WEIGHT_DELIVERY = 0.25
WEIGHT_PREFERENCE = 0.25
WEIGHT_COHERENCE = 0.15

# Preference overlap is not computed yet; every cart gets the same value
PREFERENCE_MATCH_SCORE = 0.7

STRATEGY_BEST_VALUE = "Best Value"
STRATEGY_FASTEST = "Fastest Delivery"
STRATEGY_PREMIUM = "Premium Choice"
STRATEGIES = (STRATEGY_BEST_VALUE, STRATEGY_FASTEST, STRATEGY_PREMIUM)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def partition_by_category(products: list[Product]) -> dict[str, list[Product]]:
    """Group products by case-folded category, keeping pool order."""
    groups: dict[str, list[Product]] = {}
    for product in products:
        groups.setdefault(product.category.casefold(), []).append(product)
    return groups


def select_for_strategy(groups: dict[str, list[Product]], strategy: str) -> list[Product]:
    """One product per category; the first product wins ties."""
    selected: list[Product] = []
    for candidates in groups.values():
        if not candidates:
            continue
        if strategy == STRATEGY_BEST_VALUE:
            selected.append(min(candidates, key=lambda p: p.price))
        elif strategy == STRATEGY_FASTEST:
            selected.append(min(candidates, key=lambda p: p.delivery_days))
        else:
            selected.append(max(candidates, key=lambda p: p.price))
    return selected


def calculate_score(
    total_cost: float,
    delivery_days: int,
    spec: ShoppingSpec,
    items: list[Product],
    now: datetime,
    penalize_missed_deadline: bool = True,
) -> ScoreBreakdown:
    """Weighted composite of price, delivery, preference and coherence.

    Parameters
    ----------
    total_cost:
        Sum of the cart's item prices.
    delivery_days:
        Slowest item's delivery estimate.
    spec:
        Shopping spec supplying the budget and deadline.
    items:
        Products in the cart (for the retailer count).
    now:
        Reference time for the projected delivery date.
    penalize_missed_deadline:
        When a deadline is missed, score delivery as 0 instead of falling
        back to the no-deadline formula.

    Returns
    -------
    ScoreBreakdown
        Every sub-score is in ``[0, 1]``; ``total`` is rounded to two
        decimals.
    """
    constraints = spec.constraints

    if constraints.budget:
        price = max(0.0, 1 - total_cost / constraints.budget)
    else:
        price = 0.5

    no_deadline_delivery = max(0.0, 1 - delivery_days / 10)
    if constraints.deadline is not None:
        delivery_date = now + timedelta(days=delivery_days)
        if delivery_date <= constraints.deadline:
            delivery = min(1.0, days_early(constraints.deadline, delivery_date) / 7)
        elif penalize_missed_deadline:
            delivery = 0.0
        else:
            delivery = no_deadline_delivery
    else:
        delivery = no_deadline_delivery

    unique_retailers = len({p.retailer_id for p in items})
    coherence = max(0.0, 1 - (unique_retailers - 1) / 3) if unique_retailers else 1.0

    total = (
        price * WEIGHT_PRICE
        + delivery * WEIGHT_DELIVERY
        + PREFERENCE_MATCH_SCORE * WEIGHT_PREFERENCE
        + coherence * WEIGHT_COHERENCE
    )
    return ScoreBreakdown(
        price=round(price, 4),
        delivery=round(delivery, 4),
        preference_match=PREFERENCE_MATCH_SCORE,
        set_coherence=round(coherence, 4),
        total=round(min(1.0, max(0.0, total)), 2),
    )


def candidate_items(cart_id: str, selected: list[Product]) -> list[tuple[Product, CartItem]]:
    """One quantity-1 line per product, priced from its default variant."""
    lines: list[tuple[Product, CartItem]] = []
    for product in selected:
        variant = default_variant(product)
        unit_price = unit_price_for(product, variant)
        lines.append(
            (
                product,
                CartItem(
                    id=new_id(),
                    cart_id=cart_id,
                    product_id=product.id,
                    variant_id=variant.id if variant else None,
                    quantity=1,
                    unit_price=unit_price,
                    total_price=unit_price,
                ),
            )
        )
    return lines


def retailer_breakdown(
    lines: list[tuple[Product, CartItem]],
    now: datetime,
) -> list[RetailerSummary]:
    """Per-retailer item count, subtotal and latest delivery date."""
    summaries: dict[str, RetailerSummary] = {}
    for product, item in lines:
        delivery_date = now + timedelta(days=product.delivery_days)
        existing = summaries.get(product.retailer_id)
        if existing is None:
            summaries[product.retailer_id] = RetailerSummary(
                retailer_id=product.retailer_id,
                retailer_name=product.retailer_name or "Unknown",
                item_count=1,
                subtotal=item.total_price,
                delivery_date=delivery_date,
            )
            continue
        existing.item_count += 1
        existing.subtotal = round(existing.subtotal + item.total_price, 2)
        if delivery_date > existing.delivery_date:
            existing.delivery_date = delivery_date
    return list(summaries.values())


def summarize(cart: Cart) -> CartSummary:
    return CartSummary(
        id=cart.id,
        name=cart.name,
        total_cost=cart.total_cost,
        score=cart.score,
        explanation=cart.explanation,
        delivery_date=cart.delivery_date,
        is_selected=cart.is_selected,
        item_count=len(cart.items),
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class RankingEngine:
    """Generates, scores, explains and compares session carts."""

    def __init__(
        self,
        store: MemoryStore,
        explanations: ExplanationGenerator,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._explanations = explanations
        self._penalize_missed_deadline = settings.penalize_missed_deadline
        self._clock = clock

    def score(
        self,
        total_cost: float,
        delivery_days: int,
        spec: ShoppingSpec,
        items: list[Product],
        now: datetime | None = None,
    ) -> ScoreBreakdown:
        return calculate_score(
            total_cost,
            delivery_days,
            spec,
            items,
            now or self._clock(),
            self._penalize_missed_deadline,
        )

    async def generate_ranked_carts(
        self,
        session_id: str,
        products: list[Product],
        spec: ShoppingSpec,
    ) -> list[RankedCart]:
        """Build, score and persist one cart per strategy, best score first.

        Carts over budget are dropped, except Best Value, which is always
        kept so callers can see the cheapest possible option.
        """
        if not products:
            logger.info("ranking_skipped_empty_pool", session_id=session_id)
            return []

        groups = partition_by_category(products)
        budget = spec.constraints.budget
        now = self._clock()

        ranked: list[RankedCart] = []
        for strategy in STRATEGIES:
            selected = select_for_strategy(groups, strategy)
            cart_id = new_id()
            lines = candidate_items(cart_id, selected)
            total_cost = round(sum(item.total_price for _, item in lines), 2)
            if budget and total_cost > budget and strategy != STRATEGY_BEST_VALUE:
                logger.info(
                    "cart_rejected_over_budget",
                    session_id=session_id,
                    strategy=strategy,
                    total_cost=total_cost,
                    budget=budget,
                )
                continue

            ranked.append(
                await self._build_cart(session_id, cart_id, strategy, lines, total_cost, spec, now)
            )

        ranked.sort(key=lambda c: c.score, reverse=True)
        logger.info(
            "carts_ranked",
            session_id=session_id,
            pool=len(products),
            categories=len(groups),
            carts=[(c.name, c.score) for c in ranked],
        )
        return ranked

    async def _build_cart(
        self,
        session_id: str,
        cart_id: str,
        strategy: str,
        lines: list[tuple[Product, CartItem]],
        total_cost: float,
        spec: ShoppingSpec,
        now: datetime,
    ) -> RankedCart:
        selected = [product for product, _ in lines]
        max_days = max((p.delivery_days for p in selected), default=0)
        breakdown = self.score(total_cost, max_days, spec, selected, now)
        explanation = self._explanations.quick_explanation(
            breakdown.total,
            total_cost,
            spec.constraints.budget,
            max_days,
            spec.constraints.deadline,
            now,
        )

        cart = await self._store.create_cart(
            Cart(
                id=cart_id,
                session_id=session_id,
                name=strategy,
                total_cost=total_cost,
                score=breakdown.total,
                explanation=explanation,
                delivery_date=now + timedelta(days=max_days),
                created_at=now,
            ),
            [item for _, item in lines],
        )
        return RankedCart(
            id=cart.id,
            name=cart.name,
            total_cost=cart.total_cost,
            score=cart.score,
            explanation=cart.explanation,
            delivery_date=cart.delivery_date or now,
            items=await hydrate_items(self._store, cart.items),
            retailer_breakdown=retailer_breakdown(lines, now),
            score_breakdown=breakdown,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_session_carts(self, session_id: str) -> list[CartSummary]:
        if await self._store.get_session(session_id) is None:
            raise SessionNotFoundError(session_id)
        return [summarize(c) for c in await self._store.list_carts(session_id)]

    async def explain_cart(self, cart_id: str) -> RankingExplanation:
        """Factor-by-factor explanation of a cart's score."""
        cart = await self._store.get_cart(cart_id)
        if cart is None:
            raise CartNotFoundError(cart_id)
        session = await self._store.get_session(cart.session_id)
        spec = (session.shopping_spec if session else None) or ShoppingSpec(
            scenario="general shopping"
        )

        items = await hydrate_items(self._store, cart.items)
        products = [i.product for i in items if i.product is not None]
        max_days = max((p.delivery_days for p in products), default=0)
        breakdown = self.score(cart.total_cost, max_days, spec, products, cart.created_at)

        factors = [
            RankingFactor(name="Price", weight=WEIGHT_PRICE, score=breakdown.price),
            RankingFactor(name="Delivery", weight=WEIGHT_DELIVERY, score=breakdown.delivery),
            RankingFactor(
                name="Preference Match",
                weight=WEIGHT_PREFERENCE,
                score=breakdown.preference_match,
            ),
            RankingFactor(
                name="Set Coherence",
                weight=WEIGHT_COHERENCE,
                score=breakdown.set_coherence,
            ),
        ]
        others = [c for c in await self._store.list_carts(cart.session_id) if c.id != cart.id]
        alternatives = [
            f"{c.name}: ${c.total_cost:.2f}, {round(c.score * 100)}% match score" for c in others
        ]
        cart_details = {
            "name": cart.name,
            "items": [
                {
                    "name": i.product.name,
                    "price": i.unit_price,
                    "retailer": i.product.retailer_name,
                }
                for i in items
                if i.product is not None
            ],
            "totalCost": cart.total_cost,
            "deliveryDate": cart.delivery_date,
            "score": cart.score,
        }
        user_constraints = {
            "budget": spec.constraints.budget,
            "deadline": spec.constraints.deadline,
            "preferences": spec.nice_to_haves,
        }
        return await self._explanations.generate(
            cart.id, cart_details, user_constraints, factors, alternatives
        )

    async def compare_carts(self, cart_id_a: str, cart_id_b: str) -> CartComparison:
        """Side-by-side comparison; lower price and higher score win."""
        cart_a = await self._store.get_cart(cart_id_a)
        if cart_a is None:
            raise CartNotFoundError(cart_id_a)
        cart_b = await self._store.get_cart(cart_id_b)
        if cart_b is None:
            raise CartNotFoundError(cart_id_b)

        price_difference = round(cart_a.total_cost - cart_b.total_cost, 2)
        score_difference = round(cart_a.score - cart_b.score, 2)
        return CartComparison(
            cart1=summarize(cart_a),
            cart2=summarize(cart_b),
            price_difference=price_difference,
            price_winner=cart_a.id if price_difference < 0 else cart_b.id,
            score_difference=score_difference,
            score_winner=cart_a.id if score_difference > 0 else cart_b.id,
        )

