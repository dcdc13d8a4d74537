"""Bundled retailer catalogs.

Loads the demo retailer catalogs from the JSON files shipped in the
``catalogs/`` directory and turns them into :class:`Retailer` and
:class:`Product` records.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog

from multicart.models import Product, ProductVariant, Retailer
from multicart.store import MemoryStore

logger = structlog.get_logger(__name__)

_CATALOG_DIR = Path(__file__).parent / "catalogs"

# Retailer id -> catalog file name
BUILTIN_CATALOGS: dict[str, str] = {
    "mountain-gear-pro": "mountain_gear_pro.json",
    "valuesport-outlet": "valuesport_outlet.json",
    "elite-sports-express": "elite_sports_express.json",
}


class RetailerCatalog:
    """One retailer together with its product list."""

    def __init__(self, retailer: Retailer, products: list[Product]) -> None:
        self.retailer = retailer
        self.products = products

    def __repr__(self) -> str:
        return f"RetailerCatalog({self.retailer.id!r}, products={len(self.products)})"


def _build_variants(product_id: str, templates: list[dict[str, Any]]) -> list[ProductVariant]:
    return [
        ProductVariant(
            id=f"{product_id}-{template['suffix']}",
            sku=f"{product_id}-{template['suffix']}".upper(),
            size=template.get("size"),
            color=template.get("color"),
            in_stock=template.get("in_stock", True),
        )
        for template in templates
    ]


class CatalogFactory:
    """Factory for the built-in demo retailer catalogs."""

    @staticmethod
    def load_catalog(catalog_file: str) -> RetailerCatalog:
        """Load a single retailer catalog from a JSON file.

        Parameters
        ----------
        catalog_file:
            Filename of the JSON catalog inside the ``catalogs/`` directory.

        Returns
        -------
        RetailerCatalog
            The retailer record and its products, each expanded with the
            catalog's variant template.
        """
        catalog_path = _CATALOG_DIR / catalog_file
        if not catalog_path.exists():
            raise FileNotFoundError(f"Catalog file not found: {catalog_path}")

        with open(catalog_path) as f:
            raw = json.load(f)

        retailer = Retailer(**raw["retailer"])
        templates = raw.get("variants", [])
        products = [
            Product(
                **entry,
                retailer_id=retailer.id,
                retailer_name=retailer.name,
                variants=_build_variants(entry["id"], templates),
            )
            for entry in raw["products"]
        ]
        return RetailerCatalog(retailer, products)

    @classmethod
    def load_builtin(cls, retailer_id: str) -> RetailerCatalog:
        """Load one of the built-in catalogs by retailer id."""
        catalog_file = BUILTIN_CATALOGS.get(retailer_id)
        if catalog_file is None:
            raise KeyError(f"No built-in catalog for retailer {retailer_id}")
        return cls.load_catalog(catalog_file)

    @classmethod
    def load_all(cls) -> dict[str, RetailerCatalog]:
        """Load every built-in catalog keyed by retailer id."""
        catalogs = {rid: cls.load_builtin(rid) for rid in BUILTIN_CATALOGS}
        logger.debug(
            "catalogs_loaded",
            retailers=list(catalogs),
            products=sum(len(c.products) for c in catalogs.values()),
        )
        return catalogs


async def seed_store(
    store: MemoryStore,
    catalogs: dict[str, RetailerCatalog] | None = None,
) -> int:
    """Upsert every retailer and product of the built-in catalogs into ``store``.

    Returns the number of products written.
    """
    catalogs = catalogs if catalogs is not None else CatalogFactory.load_all()
    written = 0
    for catalog in catalogs.values():
        await store.upsert_retailer(catalog.retailer)
        for product in catalog.products:
            await store.upsert_product(product)
            written += 1
    logger.info("catalog_seeded", retailers=len(catalogs), products=written)
    return written
