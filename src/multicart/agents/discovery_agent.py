"""Multi-retailer product discovery.

Fans a query out to every active retailer adapter concurrently, waits for
all of them, and merges whatever the surviving adapters returned into a
single price-ordered result.  A failing or slow adapter only removes its
own products from the result.
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import Iterable

import structlog

from multicart.adapters.base import AdapterRegistry, RetailerAdapter
from multicart.config import Settings
from multicart.errors import ProductNotFoundError, RetailerSearchError
from multicart.models import DiscoveryResult, Product, Retailer, SearchFilters
from multicart.store import MemoryStore

logger = structlog.get_logger(__name__)


class DiscoveryEngine:
    """Searches all registered retailers and ingests the results."""

    def __init__(
        self,
        registry: AdapterRegistry,
        store: MemoryStore,
        settings: Settings,
    ) -> None:
        self._registry = registry
        self._store = store
        self._timeout = settings.adapter_timeout_seconds

    async def search_products(
        self,
        query: str,
        category: str | None = None,
        min_price: float | None = None,
        max_price: float | None = None,
        retailers: Iterable[str] | None = None,
        in_stock: bool | None = None,
        limit: int = 20,
    ) -> DiscoveryResult:
        """Search every active adapter and merge the results.

        Parameters
        ----------
        query:
            Free-text product query.
        category, min_price, max_price, in_stock:
            Filters passed through to every adapter.
        retailers:
            Restrict the search to these adapter ids.
        limit:
            Maximum number of products returned after merging.

        Returns
        -------
        DiscoveryResult
            Products sorted by ascending price and truncated to ``limit``.
            ``total_found`` is the merged count before truncation and
            ``retailers`` names the adapters that answered.
        """
        started = time.perf_counter()
        adapters = self._registry.select(retailers)
        if not adapters:
            logger.warning("no_active_adapters", retailers=list(retailers or []))
            return DiscoveryResult()

        per_adapter = math.ceil(limit / len(adapters))
        filters = SearchFilters(
            category=category,
            min_price=min_price,
            max_price=max_price,
            in_stock=in_stock,
            limit=per_adapter,
        )

        results = await asyncio.gather(
            *(self._search_one(adapter, query, filters) for adapter in adapters),
            return_exceptions=True,
        )

        merged: list[Product] = []
        answered: list[str] = []
        for adapter, result in zip(adapters, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "retailer_search_failed",
                    retailer_id=adapter.retailer_id,
                    query=query,
                    error=str(result),
                )
                continue
            answered.append(adapter.retailer_name)
            merged.extend(result)

        merged.sort(key=lambda p: p.price)
        total_found = len(merged)
        products = merged[:limit]

        await self._ingest(products)

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "discovery_complete",
            query=query,
            adapters=len(adapters),
            answered=len(answered),
            total_found=total_found,
            returned=len(products),
            elapsed_ms=elapsed_ms,
        )
        return DiscoveryResult(
            products=products,
            total_found=total_found,
            retailers=answered,
            search_time_ms=elapsed_ms,
        )

    async def _search_one(
        self,
        adapter: RetailerAdapter,
        query: str,
        filters: SearchFilters,
    ) -> list[Product]:
        try:
            return await asyncio.wait_for(adapter.search(query, filters), self._timeout)
        except asyncio.TimeoutError as exc:
            raise RetailerSearchError(
                f"{adapter.retailer_id} timed out after {self._timeout}s"
            ) from exc

    async def _ingest(self, products: list[Product]) -> None:
        for product in products:
            if await self._store.get_retailer(product.retailer_id) is None:
                await self._store.upsert_retailer(_retailer_for(product))
            await self._store.upsert_product(product)

    # ------------------------------------------------------------------
    # Catalog lookups
    # ------------------------------------------------------------------

    async def get_product(self, product_id: str) -> Product:
        product = await self._store.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    async def get_products_by_category(self, category: str, limit: int = 20) -> list[Product]:
        """In-stock catalog products whose category contains ``category``."""
        return await self._store.find_products(category=category, in_stock=True, limit=limit)


def _retailer_for(product: Product) -> Retailer:
    return Retailer(id=product.retailer_id, name=product.retailer_name or product.retailer_id)
