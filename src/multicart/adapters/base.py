"""Retailer adapter contract and registry.

Every retailer source (bundled demo catalogs, the record store, live web
search) implements :class:`RetailerAdapter`.  The discovery engine only
talks to adapters through an :class:`AdapterRegistry`.
"""

from __future__ import annotations

from typing import Iterable, Protocol, runtime_checkable

import structlog

from multicart.models import Product, SearchFilters

logger = structlog.get_logger(__name__)


@runtime_checkable
class RetailerAdapter(Protocol):
    """A source of products from one retailer.

    ``search`` returns an empty list when nothing matches; it never raises
    for "no results".
    """

    retailer_id: str
    retailer_name: str

    async def search(self, query: str, filters: SearchFilters) -> list[Product]:
        ...


class AdapterRegistry:
    """Ordered mapping of retailer id -> adapter."""

    def __init__(self, adapters: Iterable[RetailerAdapter] = ()) -> None:
        self._adapters: dict[str, RetailerAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: RetailerAdapter) -> None:
        if adapter.retailer_id in self._adapters:
            logger.warning("adapter_replaced", retailer_id=adapter.retailer_id)
        self._adapters[adapter.retailer_id] = adapter

    def get(self, retailer_id: str) -> RetailerAdapter | None:
        return self._adapters.get(retailer_id)

    def ids(self) -> list[str]:
        return list(self._adapters)

    def select(self, retailer_ids: Iterable[str] | None = None) -> list[RetailerAdapter]:
        """Adapters restricted to ``retailer_ids`` (all of them when ``None``).

        Unknown ids are ignored.
        """
        if retailer_ids is None:
            return list(self._adapters.values())
        wanted = set(retailer_ids)
        return [a for rid, a in self._adapters.items() if rid in wanted]

    def __len__(self) -> int:
        return len(self._adapters)

    def __contains__(self, retailer_id: object) -> bool:
        return retailer_id in self._adapters
