"""Live web product search through the Google Custom Search JSON API.

Turns organic search results into :class:`Product` records.  Price, image
and availability are scraped from the result's structured ``pagemap``
data when present.  The adapter is best-effort: when it is not configured
or the provider reports an error it returns no products.
"""

from __future__ import annotations

import hashlib
import re
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from multicart.models import Product, SearchFilters

logger = structlog.get_logger(__name__)

SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
_DEFAULT_TIMEOUT = 10.0
_MAX_RESULTS = 10

_KNOWN_RETAILERS: dict[str, str] = {
    "amazon.com": "Amazon",
    "ebay.com": "eBay",
    "walmart.com": "Walmart",
    "target.com": "Target",
    "bestbuy.com": "Best Buy",
    "newegg.com": "Newegg",
    "costco.com": "Costco",
    "homedepot.com": "Home Depot",
    "lowes.com": "Lowe's",
    "macys.com": "Macy's",
    "nordstrom.com": "Nordstrom",
    "zappos.com": "Zappos",
    "rei.com": "REI",
    "nike.com": "Nike",
    "adidas.com": "Adidas",
}

_PRICE_CHARS_RE = re.compile(r"[^0-9.]")
_SNIPPET_PRICE_RE = re.compile(r"\$([0-9,]+\.?\d*)")
_TITLE_SUFFIX_RE = re.compile(r"\s*[-|]\s*.*$")
_SPACES_RE = re.compile(r"\s{2,}")


# ---------------------------------------------------------------------------
# Result field extraction
# ---------------------------------------------------------------------------


def _first(pagemap: dict[str, Any], key: str) -> dict[str, Any]:
    entries = pagemap.get(key) or []
    return entries[0] if entries else {}


def _parse_price(raw: str | None) -> float | None:
    if not raw:
        return None
    try:
        return float(_PRICE_CHARS_RE.sub("", raw))
    except ValueError:
        return None


def extract_price(item: dict[str, Any]) -> float:
    """Price from offer, product or meta tags, then the snippet; else 0."""
    pagemap = item.get("pagemap") or {}

    for candidate in (
        _first(pagemap, "offer").get("price"),
        _first(pagemap, "product").get("price"),
    ):
        price = _parse_price(candidate)
        if price is not None:
            return price

    meta = _first(pagemap, "metatags")
    if meta:
        raw = meta.get("og:price:amount") or meta.get("product:price:amount") or meta.get("price")
        price = _parse_price(raw)
        if price is not None:
            return price

    snippet = item.get("snippet") or ""
    match = _SNIPPET_PRICE_RE.search(snippet)
    if match:
        price = _parse_price(match.group(1).replace(",", ""))
        if price is not None:
            return price

    return 0.0


def extract_image(item: dict[str, Any]) -> str:
    pagemap = item.get("pagemap") or {}
    image = (
        _first(pagemap, "cse_image").get("src")
        or _first(pagemap, "product").get("image")
        or _first(pagemap, "metatags").get("og:image")
    )
    if image:
        return image
    title = (item.get("title") or "")[:20]
    return f"https://placehold.co/400x400/6366f1/ffffff?text={quote(title, safe='')}"


def check_availability(item: dict[str, Any]) -> bool:
    pagemap = item.get("pagemap") or {}
    availability = (_first(pagemap, "offer").get("availability") or "").lower()
    if availability:
        return "instock" in availability or "in stock" in availability
    return True


def estimate_delivery_days(display_link: str) -> int:
    domain = display_link.removeprefix("www.").lower()
    if "amazon" in domain or "walmart" in domain:
        return 2
    if "target" in domain or "bestbuy" in domain:
        return 3
    return 5


def format_retailer_name(display_link: str) -> str:
    domain = display_link.removeprefix("www.").lower()
    if domain in _KNOWN_RETAILERS:
        return _KNOWN_RETAILERS[domain]
    return " ".join(word.capitalize() for word in domain.split(".")[0].split("-"))


def clean_title(title: str) -> str:
    """Drop trailing "- Site Name" / "| Site Name" parts."""
    return _SPACES_RE.sub(" ", _TITLE_SUFFIX_RE.sub("", title)).strip()


def build_query(query: str, filters: SearchFilters) -> str:
    lowered = query.lower()
    search_query = query if ("buy" in lowered or "shop" in lowered) else f"buy {query}"
    if filters.min_price and filters.max_price:
        search_query += f" price ${filters.min_price:g}-${filters.max_price:g}"
    elif filters.max_price:
        search_query += f" under ${filters.max_price:g}"
    return search_query


def map_result(item: dict[str, Any]) -> Product:
    """Convert one search result into a product record."""
    display_link = item.get("displayLink") or ""
    slug = display_link.removeprefix("www.").replace(".", "-")
    link = item.get("link") or ""
    product_data = _first(item.get("pagemap") or {}, "product")
    title = item.get("title") or ""
    name = product_data.get("name") or title
    digest = hashlib.sha1(link.encode()).hexdigest()[:16]

    return Product(
        id=f"gcs-{digest}",
        external_id=item.get("cacheId") or digest,
        retailer_id=f"web-{slug}",
        retailer_name=format_retailer_name(display_link),
        name=clean_title(name),
        description=product_data.get("description") or item.get("snippet") or title,
        category="",
        price=extract_price(item),
        image_url=extract_image(item),
        product_url=link,
        in_stock=check_availability(item),
        delivery_days=estimate_delivery_days(display_link),
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class GoogleShoppingAdapter:
    """Retailer adapter backed by a Programmable Search Engine."""

    retailer_id = "google-shopping"
    retailer_name = "Google Shopping"

    def __init__(
        self,
        api_key: str = "",
        cx: str = "",
        timeout: float = _DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._cx = cx
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._cx)

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazy-initialise the shared ``httpx.AsyncClient``."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Shut down the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def search(self, query: str, filters: SearchFilters) -> list[Product]:
        if not self.configured:
            logger.warning(
                "google_search_not_configured",
                hint="set GOOGLE_SEARCH_API_KEY and GOOGLE_SEARCH_CX",
            )
            return []

        search_query = build_query(query, filters)
        params = {
            "key": self._api_key,
            "cx": self._cx,
            "q": search_query,
            "num": str(min(filters.limit or _MAX_RESULTS, _MAX_RESULTS)),
        }

        try:
            client = await self._get_client()
            response = await client.get(SEARCH_URL, params=params)
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("google_search_failed", query=search_query, error=str(exc))
            return []

        if data.get("error"):
            logger.error(
                "google_search_error",
                query=search_query,
                error=data["error"].get("message", ""),
            )
            return []

        items = data.get("items") or []
        if not items:
            logger.info("google_search_no_results", query=query)
            return []

        products = [map_result(item) for item in items]

        if filters.min_price:
            products = [p for p in products if p.price == 0 or p.price >= filters.min_price]
        if filters.max_price:
            products = [p for p in products if p.price == 0 or p.price <= filters.max_price]
        if filters.category:
            category = filters.category.lower()
            products = [
                p
                for p in products
                if category in p.name.lower() or category in p.description.lower()
            ]

        logger.info("google_search_complete", query=search_query, results=len(products))
        return products
