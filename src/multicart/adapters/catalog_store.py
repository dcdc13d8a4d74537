"""Adapter searching products already held in the record store."""

from __future__ import annotations

import structlog

from multicart.adapters.mock_retailer import apply_filters, matches_query, query_keywords
from multicart.models import Product, SearchFilters
from multicart.store import MemoryStore

logger = structlog.get_logger(__name__)


class CatalogStoreAdapter:
    """Searches every stored product, regardless of the retailer it came from."""

    retailer_id = "catalog-store"
    retailer_name = "Product Catalog"

    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    async def search(self, query: str, filters: SearchFilters) -> list[Product]:
        candidates = await self._store.find_products(
            category=filters.category,
            in_stock=filters.in_stock,
            min_price=filters.min_price,
            max_price=filters.max_price,
        )
        keywords = query_keywords(query)
        matched = [p for p in candidates if matches_query(p, keywords)]
        results = apply_filters(matched, SearchFilters(limit=filters.limit))
        logger.debug("catalog_store_search", query=query, results=len(results))
        return results
