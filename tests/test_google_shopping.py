"""Tests for the Google Custom Search adapter."""

import httpx

from multicart.adapters.google_shopping import (
    GoogleShoppingAdapter,
    build_query,
    clean_title,
    estimate_delivery_days,
    extract_price,
    format_retailer_name,
)
from multicart.models import SearchFilters

JACKET_RESULT = {
    "title": "Alpine Shell Ski Jacket - REI Co-op",
    "link": "https://www.rei.com/product/123/alpine-shell",
    "displayLink": "www.rei.com",
    "snippet": "Waterproof shell for resort days.",
    "pagemap": {
        "offer": [{"price": "$129.99", "availability": "https://schema.org/InStock"}],
        "cse_image": [{"src": "https://img.rei.com/123.jpg"}],
    },
}


def adapter_with(handler, api_key="key", cx="engine"):
    return GoogleShoppingAdapter(api_key=api_key, cx=cx, transport=httpx.MockTransport(handler))


class TestSearch:
    async def test_not_configured(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        adapter = adapter_with(handler, api_key="")
        assert await adapter.search("ski jacket", SearchFilters()) == []
        assert calls == []

    async def test_maps_results(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"items": [JACKET_RESULT]})

        adapter = adapter_with(handler)
        products = await adapter.search("ski jacket", SearchFilters(max_price=200))
        await adapter.close()

        params = requests[0].url.params
        assert params["q"] == "buy ski jacket under $200"
        assert params["num"] == "10"
        assert params["cx"] == "engine"

        (product,) = products
        assert product.id.startswith("gcs-")
        assert len(product.id) == len("gcs-") + 16
        assert product.retailer_id == "web-rei-com"
        assert product.retailer_name == "REI"
        assert product.name == "Alpine Shell Ski Jacket"
        assert product.price == 129.99
        assert product.in_stock is True
        assert product.image_url == "https://img.rei.com/123.jpg"
        assert product.product_url == JACKET_RESULT["link"]

    async def test_same_link_same_id(self):
        adapter = adapter_with(lambda request: httpx.Response(200, json={"items": [JACKET_RESULT]}))
        first = await adapter.search("ski jacket", SearchFilters())
        second = await adapter.search("ski jacket", SearchFilters())
        assert first[0].id == second[0].id

    async def test_error_payload(self):
        adapter = adapter_with(
            lambda request: httpx.Response(403, json={"error": {"message": "quota exceeded"}})
        )
        assert await adapter.search("ski jacket", SearchFilters()) == []

    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = adapter_with(handler)
        assert await adapter.search("ski jacket", SearchFilters()) == []

    async def test_price_filter_keeps_unpriced_results(self):
        unpriced = {"title": "Mystery Jacket", "link": "https://example.com/a", "displayLink": "example.com"}
        expensive = {
            "title": "Luxury Jacket",
            "link": "https://example.com/b",
            "displayLink": "example.com",
            "snippet": "Now only $500.00",
        }
        adapter = adapter_with(
            lambda request: httpx.Response(200, json={"items": [unpriced, expensive]})
        )
        products = await adapter.search("jacket", SearchFilters(max_price=300))
        assert [p.name for p in products] == ["Mystery Jacket"]
        assert products[0].price == 0


class TestExtraction:
    def test_price_from_meta_tags(self):
        item = {"pagemap": {"metatags": [{"og:price:amount": "1,299.00"}]}}
        assert extract_price(item) == 1299.0

    def test_no_price(self):
        assert extract_price({"snippet": "great jacket"}) == 0.0

    def test_retailer_names(self):
        assert format_retailer_name("www.amazon.com") == "Amazon"
        assert format_retailer_name("mountain-shop.co.uk") == "Mountain Shop"

    def test_delivery_estimates(self):
        assert estimate_delivery_days("www.amazon.com") == 2
        assert estimate_delivery_days("bestbuy.com") == 3
        assert estimate_delivery_days("smallshop.net") == 5

    def test_clean_title(self):
        assert clean_title("Trail Boots  | Outdoor Store") == "Trail Boots"

    def test_build_query(self):
        assert build_query("shop boots", SearchFilters(min_price=10, max_price=20)) == (
            "shop boots price $10-$20"
        )
        assert build_query("boots", SearchFilters()) == "buy boots"
