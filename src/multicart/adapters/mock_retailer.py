"""Adapter serving one retailer's bundled demo catalog."""

from __future__ import annotations

import re

import structlog

from multicart.catalog.catalog_factory import CatalogFactory, RetailerCatalog
from multicart.models import Product, SearchFilters

logger = structlog.get_logger(__name__)

_WORD_RE = re.compile(r"[a-z0-9]+")


def query_keywords(query: str) -> list[str]:
    """Lower-cased alphanumeric words of ``query`` longer than two characters."""
    return [w for w in _WORD_RE.findall(query.lower()) if len(w) > 2]


def matches_query(product: Product, keywords: list[str]) -> bool:
    """True when any keyword hits the product's name, description or category.

    A keyword also matches when a product word of at least three letters is
    a prefix of it, so "skiing" finds "ski jacket".
    """
    if not keywords:
        return True
    text = f"{product.name} {product.description} {product.category}".lower()
    words = [w for w in _WORD_RE.findall(text) if len(w) >= 3]
    for keyword in keywords:
        if keyword in text:
            return True
        if any(keyword.startswith(word) for word in words):
            return True
    return False


def apply_filters(products: list[Product], filters: SearchFilters) -> list[Product]:
    results = products
    if filters.category:
        category = filters.category.lower()
        results = [p for p in results if category in p.category.lower()]
    if filters.min_price is not None:
        results = [p for p in results if p.price >= filters.min_price]
    if filters.max_price is not None:
        results = [p for p in results if p.price <= filters.max_price]
    if filters.in_stock is not None:
        results = [p for p in results if p.in_stock == filters.in_stock]
    if filters.limit:
        results = results[: filters.limit]
    return results


class MockRetailerAdapter:
    """Keyword search over an in-memory retailer catalog."""

    def __init__(self, catalog: RetailerCatalog) -> None:
        self._catalog = catalog
        self.retailer_id = catalog.retailer.id
        self.retailer_name = catalog.retailer.name

    @classmethod
    def builtin(cls, retailer_id: str) -> MockRetailerAdapter:
        """Adapter for one of the bundled demo retailers."""
        return cls(CatalogFactory.load_builtin(retailer_id))

    @property
    def products(self) -> list[Product]:
        return [p.model_copy(deep=True) for p in self._catalog.products]

    async def search(self, query: str, filters: SearchFilters) -> list[Product]:
        keywords = query_keywords(query)
        matched = [p for p in self._catalog.products if matches_query(p, keywords)]
        results = apply_filters(matched, filters)
        logger.debug(
            "mock_retailer_search",
            retailer_id=self.retailer_id,
            query=query,
            results=len(results),
        )
        return [p.model_copy(deep=True) for p in results]
