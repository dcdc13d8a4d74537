"""Shared test fixtures for the multi-retailer shopping agent."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from multicart.adapters.mock_retailer import apply_filters
from multicart.api import create_app
from multicart.config import Settings
from multicart.container import build_container
from multicart.models import Product, SearchFilters
from multicart.store import MemoryStore

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable replacement for ``utcnow``."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeCompletion:
    """Completion provider returning canned JSON payloads.

    ``responses`` are handed out in order; an exception instance is raised
    instead of returned.
    """

    def __init__(self, responses: list[Any] | None = None, configured: bool = True) -> None:
        self._responses = list(responses or [])
        self._configured = configured
        self.calls: list[tuple[str, str]] = []

    @property
    def configured(self) -> bool:
        return self._configured

    async def complete_json(
        self,
        system: str,
        user: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 1024,
    ) -> dict[str, Any] | None:
        self.calls.append((system, user))
        if not self._responses:
            return None
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class StaticAdapter:
    """Adapter over a fixed product list."""

    def __init__(self, retailer_id: str, retailer_name: str, products: list[Product]) -> None:
        self.retailer_id = retailer_id
        self.retailer_name = retailer_name
        self._products = products
        self.queries: list[str] = []

    async def search(self, query: str, filters: SearchFilters) -> list[Product]:
        self.queries.append(query)
        return [p.model_copy(deep=True) for p in apply_filters(self._products, filters)]


class FailingAdapter:
    retailer_id = "broken-retailer"
    retailer_name = "Broken Retailer"

    async def search(self, query: str, filters: SearchFilters) -> list[Product]:
        raise RuntimeError("catalog service unavailable")


class SlowAdapter:
    retailer_id = "slow-retailer"
    retailer_name = "Slow Retailer"

    async def search(self, query: str, filters: SearchFilters) -> list[Product]:
        await asyncio.sleep(5)
        return []


def make_product(
    product_id: str,
    *,
    retailer_id: str = "test-retailer",
    retailer_name: str = "Test Retailer",
    category: str = "ski jacket",
    price: float = 100.0,
    delivery_days: int = 3,
    name: str | None = None,
) -> Product:
    return Product(
        id=product_id,
        retailer_id=retailer_id,
        retailer_name=retailer_name,
        name=name or f"Product {product_id}",
        category=category,
        price=price,
        delivery_days=delivery_days,
    )


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        environment="testing",
        openai_api_key="",
        anthropic_api_key="",
        google_search_api_key="",
        google_search_cx="",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def completion():
    """An unconfigured provider, so every parse goes through the heuristic."""
    return FakeCompletion(configured=False)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
async def container(settings, store, completion, clock):
    services = build_container(settings, store=store, completion=completion, clock=clock)
    await services.startup()
    return services


@pytest.fixture
def app(settings, container):
    return create_app(settings, container)


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
