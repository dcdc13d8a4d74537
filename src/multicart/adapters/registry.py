"""Builds the adapter registry from settings."""

from __future__ import annotations

import structlog

from multicart.adapters.base import AdapterRegistry
from multicart.adapters.catalog_store import CatalogStoreAdapter
from multicart.adapters.google_shopping import GoogleShoppingAdapter
from multicart.adapters.mock_retailer import MockRetailerAdapter
from multicart.catalog.catalog_factory import BUILTIN_CATALOGS
from multicart.config import Settings
from multicart.store import MemoryStore

logger = structlog.get_logger(__name__)


def build_registry(settings: Settings, store: MemoryStore) -> AdapterRegistry:
    """Instantiate the adapters named in ``settings.retailer_adapters``, in order."""
    registry = AdapterRegistry()
    for adapter_id in settings.retailer_adapters:
        if adapter_id in BUILTIN_CATALOGS:
            registry.register(MockRetailerAdapter.builtin(adapter_id))
        elif adapter_id == CatalogStoreAdapter.retailer_id:
            registry.register(CatalogStoreAdapter(store))
        elif adapter_id == GoogleShoppingAdapter.retailer_id:
            registry.register(
                GoogleShoppingAdapter(
                    api_key=settings.google_search_api_key,
                    cx=settings.google_search_cx,
                    timeout=settings.adapter_timeout_seconds,
                )
            )
        else:
            logger.warning("unknown_retailer_adapter", adapter_id=adapter_id)
    logger.info("adapters_registered", adapters=registry.ids())
    return registry
