"""Pydantic models for the multi-retailer shopping agent.

Covers shopping specifications, sessions, retailer catalog entries, carts,
ranking output, checkout simulation snapshots, parsed intents and session
events.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Shopping specification
# ---------------------------------------------------------------------------


class ShoppingConstraints(BaseModel):
    """Hard constraints attached to a shopping specification."""

    model_config = ConfigDict(frozen=True)

    budget: float | None = Field(default=None, gt=0)
    currency: str = "USD"
    deadline: datetime | None = None
    sizes: dict[str, str] | None = None
    colors: list[str] | None = None
    brands_include: list[str] | None = None
    brands_exclude: list[str] | None = None

    @field_validator("deadline")
    @classmethod
    def _deadline_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class ShoppingSpec(BaseModel):
    """Structured shopping request. Replaced wholesale, never edited in place."""

    model_config = ConfigDict(frozen=True)

    scenario: str = Field(min_length=1)
    must_haves: list[str] = Field(default_factory=list)
    nice_to_haves: list[str] = Field(default_factory=list)
    constraints: ShoppingConstraints = Field(default_factory=ShoppingConstraints)


class SpecUpdate(BaseModel):
    """Partial shopping specification produced by a clarification turn."""

    scenario: str | None = None
    must_haves: list[str] | None = None
    nice_to_haves: list[str] | None = None
    constraints: ShoppingConstraints | None = None


# ---------------------------------------------------------------------------
# Session state machine
# ---------------------------------------------------------------------------


class SessionStatus(str, enum.Enum):
    """Lifecycle phases of a shopping session."""

    BRIEFING = "BRIEFING"
    DISCOVERING = "DISCOVERING"
    RANKING = "RANKING"
    CART = "CART"
    CHECKOUT = "CHECKOUT"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class Session(BaseModel):
    """A shopping session record."""

    id: str
    status: SessionStatus = SessionStatus.BRIEFING
    shopping_spec: ShoppingSpec | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Retailers and products
# ---------------------------------------------------------------------------


class Retailer(BaseModel):
    """A retailer whose catalog can be searched."""

    id: str
    name: str
    slug: str = ""
    logo_url: str = ""
    base_url: str = ""
    is_active: bool = True


class ProductVariant(BaseModel):
    """A purchasable variant of a product (size / color / material)."""

    id: str
    sku: str | None = None
    size: str | None = None
    color: str | None = None
    material: str | None = None
    price: float | None = Field(default=None, ge=0)
    in_stock: bool = True


class Product(BaseModel):
    """A catalog entry sourced from a retailer."""

    id: str
    external_id: str = ""
    retailer_id: str
    retailer_name: str = ""
    name: str
    description: str = ""
    category: str = ""
    price: float = Field(ge=0)
    currency: str = "USD"
    image_url: str = ""
    product_url: str = ""
    in_stock: bool = True
    delivery_days: int = Field(default=5, ge=0)
    variants: list[ProductVariant] = Field(default_factory=list)


class SearchFilters(BaseModel):
    """Filters understood by every retailer adapter."""

    category: str | None = None
    min_price: float | None = None
    max_price: float | None = None
    in_stock: bool | None = None
    limit: int | None = None


class DiscoveryResult(BaseModel):
    """Merged result of a multi-retailer product search."""

    products: list[Product] = Field(default_factory=list)
    total_found: int = 0
    retailers: list[str] = Field(default_factory=list)
    search_time_ms: float = 0.0


# ---------------------------------------------------------------------------
# Carts
# ---------------------------------------------------------------------------


class CartItem(BaseModel):
    """A line in a cart. ``product``/``variant`` are only set when hydrated."""

    id: str
    cart_id: str
    product_id: str
    variant_id: str | None = None
    quantity: int = Field(default=1, gt=0)
    unit_price: float = Field(ge=0)
    total_price: float = Field(ge=0)
    product: Product | None = None
    variant: ProductVariant | None = None


class Cart(BaseModel):
    """A candidate cart belonging to a session."""

    id: str
    session_id: str
    name: str
    total_cost: float = 0.0
    score: float = 0.0
    explanation: str = ""
    delivery_date: datetime | None = None
    is_selected: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    items: list[CartItem] = Field(default_factory=list)


class OptimizeGoal(str, enum.Enum):
    """Re-selection goals for cart optimization."""

    CHEAPER = "cheaper"
    FASTER = "faster"
    BETTER_MATCH = "better_match"


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


class ScoreBreakdown(BaseModel):
    """Sub-scores feeding a cart's composite score."""

    price: float
    delivery: float
    preference_match: float
    set_coherence: float
    total: float


class RetailerSummary(BaseModel):
    """Per-retailer slice of a ranked cart."""

    retailer_id: str
    retailer_name: str
    item_count: int
    subtotal: float
    delivery_date: datetime


class RankedCart(BaseModel):
    """A scored, persisted cart candidate."""

    id: str
    name: str
    total_cost: float
    score: float
    explanation: str
    delivery_date: datetime
    items: list[CartItem] = Field(default_factory=list)
    retailer_breakdown: list[RetailerSummary] = Field(default_factory=list)
    score_breakdown: ScoreBreakdown | None = None


class CartSummary(BaseModel):
    """Compact view of a cart for listings and comparisons."""

    id: str
    name: str
    total_cost: float
    score: float
    explanation: str = ""
    delivery_date: datetime | None = None
    is_selected: bool = False
    item_count: int = 0


class CartComparison(BaseModel):
    """Side-by-side comparison of two carts."""

    cart1: CartSummary
    cart2: CartSummary
    price_difference: float
    price_winner: str
    score_difference: float
    score_winner: str


class RankingFactor(BaseModel):
    """One weighted factor in a ranking explanation."""

    name: str
    weight: float
    score: float
    description: str = ""


class RankingExplanation(BaseModel):
    """Detailed explanation of why a cart ranked where it did."""

    cart_id: str
    overall_reason: str
    factors: list[RankingFactor] = Field(default_factory=list)
    alternatives: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


class CheckoutState(str, enum.Enum):
    """Checkout lifecycle. Monotonic: PROCESSING -> COMPLETE."""

    PROCESSING = "PROCESSING"
    COMPLETE = "COMPLETE"


class ShippingAddress(BaseModel):
    """Delivery address for a simulated checkout."""

    name: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "US"


class PaymentMethod(BaseModel):
    """Payment method as submitted. Only type and last four are persisted."""

    type: Literal["credit_card", "debit_card", "paypal"]
    last_four: str = Field(min_length=4, max_length=4)
    expiry_month: int = Field(ge=1, le=12)
    expiry_year: int = Field(ge=2024)


class StoredPaymentMethod(BaseModel):
    """Non-sensitive payment fields kept on a checkout."""

    type: str
    last_four: str


class RetailerOrder(BaseModel):
    """Per-retailer partition of a checkout."""

    retailer_id: str
    retailer_name: str
    items: list[CartItem] = Field(default_factory=list)
    subtotal: float = 0.0
    shipping: float = 0.0
    total: float = 0.0
    status: Literal["pending", "processing", "confirmed"] = "pending"
    confirmation_number: str | None = None


class Checkout(BaseModel):
    """A simulated multi-retailer checkout."""

    id: str
    session_id: str
    cart_id: str
    status: CheckoutState = CheckoutState.PROCESSING
    shipping_address: ShippingAddress
    payment_method: StoredPaymentMethod
    total_amount: float
    retailer_orders: list[RetailerOrder] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None


class CheckoutStep(BaseModel):
    """One named stage of the checkout progress simulation."""

    name: str
    status: Literal["pending", "in_progress", "complete", "failed"] = "pending"
    description: str = ""
    timestamp: datetime | None = None


class CheckoutSimulation(BaseModel):
    """Progress snapshot returned by checkout status reads."""

    id: str
    status: CheckoutState
    steps: list[CheckoutStep] = Field(default_factory=list)
    current_step: int = 0
    progress: float = 0.0
    retailer_orders: list[RetailerOrder] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Intent parsing
# ---------------------------------------------------------------------------


class ExtractedConstraints(BaseModel):
    """Constraints pulled out of a free-text request."""

    budget: float | None = None
    deadline: datetime | None = None
    sizes: dict[str, str] | None = None
    colors: list[str] | None = None
    brands: list[str] | None = None

    @field_validator("deadline")
    @classmethod
    def _deadline_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class ParsedIntent(BaseModel):
    """Structured reading of a natural-language shopping request."""

    scenario: str
    extracted_constraints: ExtractedConstraints = Field(default_factory=ExtractedConstraints)
    clarifying_questions: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    raw_items: list[str] = Field(default_factory=list)


class ClarificationResponse(BaseModel):
    """Outcome of one clarification turn."""

    session_id: str
    updated_spec: SpecUpdate = Field(default_factory=SpecUpdate)
    is_complete: bool = False
    next_question: str | None = None


# ---------------------------------------------------------------------------
# Session views and events
# ---------------------------------------------------------------------------


class SessionDetails(BaseModel):
    """A session with its carts (score descending) and checkouts."""

    session: Session
    carts: list[Cart] = Field(default_factory=list)
    checkouts: list[Checkout] = Field(default_factory=list)


class DiscoveryOutcome(BaseModel):
    """Result of running discovery and ranking for a session."""

    session_id: str
    products_found: int
    carts_generated: int
    carts: list[RankedCart] = Field(default_factory=list)


class SessionEvent(BaseModel):
    """Server-Sent Event pushed while a session moves through its phases."""

    event_type: str
    session_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
