"""FastAPI application for the multi-retailer shopping agent.

Exposes REST endpoints for:
- Shopping sessions (create, read, replace spec, run discovery)
- SSE streaming of session events
- Intent parsing and clarification
- Product discovery across retailers
- Cart editing, optimization and selection
- Cart ranking explanations and comparisons
- Simulated checkout
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from common import ErrorResponse, HealthResponse

from multicart.config import Settings
from multicart.container import ServiceContainer, build_container
from multicart.errors import (
    InvalidInputError,
    NotFoundError,
    PersistenceError,
    UpstreamProviderError,
)
from multicart.models import (
    Cart,
    CartComparison,
    CartSummary,
    Checkout,
    CheckoutSimulation,
    ClarificationResponse,
    DiscoveryOutcome,
    DiscoveryResult,
    OptimizeGoal,
    ParsedIntent,
    PaymentMethod,
    Product,
    RankingExplanation,
    Session,
    SessionDetails,
    ShippingAddress,
    ShoppingSpec,
)

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class CreateSessionRequest(BaseModel):
    """New session, optionally with the opening shopping request."""

    initial_message: str | None = None


class CreateSessionResponse(BaseModel):
    session: Session
    parsed_intent: ParsedIntent | None = None
    stream_url: str


class UpdateSessionRequest(BaseModel):
    """Wholesale replacement of the session's shopping spec."""

    shopping_spec: ShoppingSpec


class ParseIntentRequest(BaseModel):
    message: str = Field(min_length=1)
    session_id: str | None = None


class ClarifyRequest(BaseModel):
    session_id: str
    response: str


class QuestionsResponse(BaseModel):
    session_id: str
    questions: list[str]
    is_complete: bool


class SearchRequest(BaseModel):
    """Multi-retailer product search."""

    query: str = Field(min_length=1)
    category: str | None = None
    min_price: float | None = None
    max_price: float | None = None
    retailers: list[str] | None = None
    in_stock: bool | None = None
    limit: int = Field(default=20, ge=1, le=100)


class AddItemRequest(BaseModel):
    product_id: str
    variant_id: str | None = None
    quantity: int = Field(default=1, gt=0)


class UpdateItemRequest(BaseModel):
    quantity: int | None = Field(default=None, gt=0)
    variant_id: str | None = None


class OptimizeRequest(BaseModel):
    goal: OptimizeGoal


class SelectCartRequest(BaseModel):
    session_id: str


class StartCheckoutRequest(BaseModel):
    session_id: str
    cart_id: str
    shipping_address: ShippingAddress
    payment_method: PaymentMethod


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def _error(status_code: int, error: str, detail: str | None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail, status_code=status_code).model_dump(),
    )


def create_app(
    settings: Settings | None = None,
    container: ServiceContainer | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or Settings()
    services = container or build_container(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await services.startup()
        yield
        await services.shutdown()

    app = FastAPI(
        title="Multi-Retailer Shopping Agent",
        description=(
            "Shopping assistant that turns a natural-language request into "
            "ranked multi-retailer carts and simulates checkout."
        ),
        version=settings.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.container = services
    app.state.settings = settings

    # -------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            service=settings.service_name,
            version=settings.service_version,
        )

    # -------------------------------------------------------------------
    # Session endpoints
    # -------------------------------------------------------------------

    @app.post("/api/v1/sessions", status_code=201, tags=["sessions"])
    async def create_session(req: CreateSessionRequest) -> CreateSessionResponse:
        """Create a session; the opening message, if any, is parsed right away."""
        session, intent = await services.sessions.create_session(req.initial_message)
        return CreateSessionResponse(
            session=session,
            parsed_intent=intent,
            stream_url=f"/api/v1/sessions/{session.id}/stream",
        )

    @app.get("/api/v1/sessions/{session_id}", tags=["sessions"])
    async def get_session(session_id: str) -> SessionDetails:
        return await services.sessions.get_session_details(session_id)

    @app.patch("/api/v1/sessions/{session_id}", tags=["sessions"])
    async def update_session(session_id: str, req: UpdateSessionRequest) -> Session:
        return await services.sessions.update_spec(session_id, req.shopping_spec)

    @app.post("/api/v1/sessions/{session_id}/discover", tags=["sessions"])
    async def discover(session_id: str) -> DiscoveryOutcome:
        """Run discovery and ranking for the session's spec."""
        return await services.sessions.start_discovery(session_id)

    @app.get("/api/v1/sessions/{session_id}/stream", tags=["sessions"])
    async def stream_session(session_id: str) -> EventSourceResponse:
        """SSE stream of session events."""
        await services.sessions.get_session(session_id)

        async def event_generator():  # type: ignore[no-untyped-def]
            async for event in services.events.subscribe(session_id):
                yield {
                    "event": event.event_type,
                    "data": json.dumps(event.model_dump(), default=str),
                }

        return EventSourceResponse(event_generator())

    # -------------------------------------------------------------------
    # Intent endpoints
    # -------------------------------------------------------------------

    @app.post("/api/v1/ai/parse-intent", tags=["ai"])
    async def parse_intent(req: ParseIntentRequest) -> ParsedIntent:
        """Parse a shopping request; with a session id the result is stored on it."""
        if req.session_id:
            _, intent = await services.sessions.apply_intent(req.session_id, req.message)
            return intent
        return await services.intent_parser.parse_intent(req.message)

    @app.post("/api/v1/ai/clarify", tags=["ai"])
    async def clarify(req: ClarifyRequest) -> ClarificationResponse:
        return await services.sessions.clarify(req.session_id, req.response)

    @app.get("/api/v1/ai/questions/{session_id}", tags=["ai"])
    async def questions(session_id: str) -> QuestionsResponse:
        pending = await services.sessions.pending_questions(session_id)
        return QuestionsResponse(
            session_id=session_id,
            questions=pending,
            is_complete=not pending,
        )

    # -------------------------------------------------------------------
    # Discovery endpoints
    # -------------------------------------------------------------------

    @app.post("/api/v1/discovery/search", tags=["discovery"])
    async def search_products(req: SearchRequest) -> DiscoveryResult:
        return await services.discovery.search_products(
            req.query,
            category=req.category,
            min_price=req.min_price,
            max_price=req.max_price,
            retailers=req.retailers,
            in_stock=req.in_stock,
            limit=req.limit,
        )

    @app.get("/api/v1/discovery/products/{product_id}", tags=["discovery"])
    async def get_product(product_id: str) -> Product:
        return await services.discovery.get_product(product_id)

    @app.get("/api/v1/discovery/categories/{category}", tags=["discovery"])
    async def products_by_category(category: str, limit: int = 20) -> dict[str, Any]:
        products = await services.discovery.get_products_by_category(category, limit)
        return {
            "category": category,
            "products": [p.model_dump() for p in products],
            "total": len(products),
        }

    @app.get("/api/v1/discovery/retailers", tags=["discovery"])
    async def list_retailers() -> dict[str, Any]:
        """Retailer adapters enabled for discovery."""
        adapters = services.registry.select()
        return {
            "retailers": [
                {"id": a.retailer_id, "name": a.retailer_name} for a in adapters
            ],
            "total": len(adapters),
        }

    # -------------------------------------------------------------------
    # Cart endpoints
    # -------------------------------------------------------------------

    @app.get("/api/v1/carts/session/{session_id}", tags=["carts"])
    async def session_carts(session_id: str) -> list[Cart]:
        return await services.carts.get_session_carts(session_id)

    @app.get("/api/v1/carts/{cart_id}", tags=["carts"])
    async def get_cart(cart_id: str) -> Cart:
        return await services.carts.get_cart(cart_id)

    @app.post("/api/v1/carts/{cart_id}/items", status_code=201, tags=["carts"])
    async def add_item(cart_id: str, req: AddItemRequest) -> Cart:
        return await services.carts.add_item(
            cart_id, req.product_id, variant_id=req.variant_id, quantity=req.quantity
        )

    @app.patch("/api/v1/carts/{cart_id}/items/{item_id}", tags=["carts"])
    async def update_item(cart_id: str, item_id: str, req: UpdateItemRequest) -> Cart:
        return await services.carts.update_item(
            cart_id, item_id, quantity=req.quantity, variant_id=req.variant_id
        )

    @app.delete("/api/v1/carts/{cart_id}/items/{item_id}", tags=["carts"])
    async def remove_item(cart_id: str, item_id: str) -> Cart:
        return await services.carts.remove_item(cart_id, item_id)

    @app.post("/api/v1/carts/{cart_id}/optimize", tags=["carts"])
    async def optimize_cart(cart_id: str, req: OptimizeRequest) -> Cart:
        return await services.carts.optimize_cart(cart_id, req.goal)

    @app.post("/api/v1/carts/{cart_id}/select", tags=["carts"])
    async def select_cart(cart_id: str, req: SelectCartRequest) -> Cart:
        return await services.carts.select_cart(req.session_id, cart_id)

    # -------------------------------------------------------------------
    # Ranking endpoints
    # -------------------------------------------------------------------

    @app.get("/api/v1/ranking/session/{session_id}", tags=["ranking"])
    async def ranked_carts(session_id: str) -> list[CartSummary]:
        return await services.ranking.list_session_carts(session_id)

    @app.get("/api/v1/ranking/explain/{cart_id}", tags=["ranking"])
    async def explain_cart(cart_id: str) -> RankingExplanation:
        return await services.ranking.explain_cart(cart_id)

    @app.get("/api/v1/ranking/compare", tags=["ranking"])
    async def compare_carts(cart1: str, cart2: str) -> CartComparison:
        return await services.ranking.compare_carts(cart1, cart2)

    # -------------------------------------------------------------------
    # Checkout endpoints
    # -------------------------------------------------------------------

    @app.post("/api/v1/checkout/start", status_code=201, tags=["checkout"])
    async def start_checkout(req: StartCheckoutRequest) -> CheckoutSimulation:
        return await services.checkout.start_checkout(
            req.session_id,
            req.cart_id,
            req.shipping_address,
            req.payment_method,
        )

    @app.get("/api/v1/checkout/{checkout_id}/status", tags=["checkout"])
    async def checkout_status(checkout_id: str) -> CheckoutSimulation:
        return await services.checkout.get_checkout_status(checkout_id)

    @app.get("/api/v1/checkout/{checkout_id}/summary", tags=["checkout"])
    async def checkout_summary(checkout_id: str) -> Checkout:
        return await services.checkout.get_checkout_summary(checkout_id)

    # -------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(404, "Not found", str(exc))

    @app.exception_handler(InvalidInputError)
    async def invalid_input_handler(request: Request, exc: InvalidInputError) -> JSONResponse:
        logger.info("invalid_input", error=str(exc), path=request.url.path)
        return _error(400, "Invalid input", str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, "Invalid input", json.dumps(exc.errors(), default=str))

    @app.exception_handler(UpstreamProviderError)
    async def upstream_handler(request: Request, exc: UpstreamProviderError) -> JSONResponse:
        logger.warning("upstream_provider_error", error=str(exc), path=request.url.path)
        return _error(502, "Upstream provider error", str(exc))

    @app.exception_handler(PersistenceError)
    async def persistence_handler(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("persistence_error", error=str(exc), path=request.url.path)
        return _error(500, "Persistence error", str(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "unhandled_exception", error=str(exc), path=request.url.path
        )
        return _error(500, "Internal server error", str(exc))

    return app
