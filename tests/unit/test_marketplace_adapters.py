"""
Marketplace adapter 단위 테스트

실제 HTTP 대신 httpx.MockTransport 로 응답을 주입한다.
"""
import asyncio
import json

import httpx
import pytest

from autolister.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ExternalServiceError,
    RateLimitError,
    ServiceTimeoutError,
)
from autolister.marketplaces.amazon import AmazonAdapter
from autolister.marketplaces.base import ListingRequest, MarketplaceConfig
from autolister.marketplaces.etsy import EtsyAdapter, extract_top_keywords
from autolister.marketplaces.factory import (
    build_marketplace_adapters,
    get_marketplace_adapter,
    get_supported_marketplaces,
)
from autolister.marketplaces.shopify import SHOPIFY_FALLBACK_CATEGORIES, ShopifyAdapter


ETSY_CONFIG = MarketplaceConfig(
    api_key="etsy-key", secret="etsy-token", base_url="https://etsy.test/v3", shop_id="12345", timeout=5
)
SHOPIFY_CONFIG = MarketplaceConfig(
    api_key="shpat_test", base_url="https://test-shop.myshopify.com/admin/api/2023-10", shop_id="test-shop.myshopify.com"
)
AMAZON_CONFIG = MarketplaceConfig(api_key="amz-key", secret="amz-secret", base_url="https://sp.test", region="eu")


def _request() -> ListingRequest:
    return ListingRequest(
        title="Wedding Planner Printable",
        description="A complete printable wedding planner with checklists and budget sheets.",
        price=12.5,
        tags=["wedding", "planner"],
    )


def _etsy(handler) -> EtsyAdapter:
    return EtsyAdapter(ETSY_CONFIG, transport=httpx.MockTransport(handler))


@pytest.mark.unit
class TestEtsyAdapter:
    def test_scan_trends_maps_listings(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["limit"] = request.url.params.get("limit")
            seen["api_key"] = request.headers.get("x-api-key")
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"results": [
                {
                    "listing_id": 987,
                    "title": "wedding planner",
                    "price": {"amount": 1850, "divisor": 100, "currency_code": "USD"},
                    "views": 120,
                    "num_favorers": 40,
                    "tags": ["wedding", "planner"],
                    "taxonomy_path": ["Paper & Party Supplies"],
                    "url": "https://etsy.test/listing/987",
                },
                {"title": "no id, dropped"},
            ]})

        scanned = asyncio.run(_etsy(handler).scan_trends(category="wedding", limit=500))

        assert seen["path"] == "/v3/application/listings/active"
        assert seen["limit"] == "100"
        assert seen["api_key"] == "etsy-key"
        assert seen["auth"] == "Bearer etsy-token"
        assert len(scanned) == 1
        item = scanned[0]
        assert item.product_id == "987"
        assert item.keyword == "wedding"
        assert item.title == "wedding planner"
        assert item.price == 18.5
        assert item.search_volume == 120
        assert item.competition == "low"
        assert item.category == "Paper & Party Supplies"

    def test_scan_groups_listings_by_shared_tag(self):
        def handler(request):
            return httpx.Response(200, json={"results": [
                {"listing_id": 1, "title": "Boho Wedding Planner Printable", "price": 12.0, "views": 80, "tags": ["Planner", "boho"]},
                {"listing_id": 2, "title": "Minimalist Budget Planner", "price": 18.0, "views": 40, "tags": ["planner", "budget"]},
                {"listing_id": 3, "title": "Sunflower SVG Bundle", "price": 4.0, "views": 10},
            ]})

        scanned = asyncio.run(_etsy(handler).scan_trends())

        assert [s.keyword for s in scanned] == ["planner", "planner", "sunflower svg bundle"]
        assert [s.product_id for s in scanned] == ["1", "2", "3"]

    def test_extract_top_keywords(self):
        tags = [["Planner", "boho"], ["planner", "budget"], ["budget", "planner"]]
        assert extract_top_keywords(tags) == ["planner", "budget", "boho"]
        assert extract_top_keywords(tags, limit=1) == ["planner"]
        assert extract_top_keywords([]) == []

    def test_list_product_success(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"listing_id": 123, "title": "Wedding Planner Printable", "state": "draft"})

        result = asyncio.run(_etsy(handler).list_product(_request()))

        assert result.success is True
        assert result.listing_id == "123"
        assert result.listing.marketplace == "etsy"
        assert captured["path"] == "/v3/application/shops/12345/listings"
        assert captured["body"]["type"] == "download"
        assert captured["body"]["tags"] == ["wedding", "planner"]

    def test_remote_rejection_is_a_response_not_an_exception(self):
        def handler(request):
            return httpx.Response(400, json={"error": "Invalid taxonomy_id"})

        result = asyncio.run(_etsy(handler).list_product(_request()))

        assert result.success is False
        assert result.error == "Invalid taxonomy_id"

    def test_created_without_listing_id_is_a_rejection(self):
        result = asyncio.run(_etsy(lambda request: httpx.Response(201, json={})).list_product(_request()))

        assert result.success is False
        assert result.listing_id is None
        assert "listing id" in result.error

    @pytest.mark.parametrize(
        "status,expected",
        [(401, AuthenticationError), (403, AuthenticationError), (429, RateLimitError), (503, ExternalServiceError)],
    )
    def test_transport_failures_raise_typed_errors(self, status, expected):
        def handler(request):
            return httpx.Response(status, headers={"Retry-After": "7"}, json={"error": "nope"})

        with pytest.raises(expected) as excinfo:
            asyncio.run(_etsy(handler).list_product(_request()))
        assert excinfo.value.status_code == status
        if expected is RateLimitError:
            assert excinfo.value.retry_after == 7.0

    def test_timeout_maps_to_service_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(ServiceTimeoutError) as excinfo:
            asyncio.run(_etsy(handler).scan_trends())
        assert excinfo.value.timeout_seconds == 5

    def test_scan_client_error_raises(self):
        def handler(request):
            return httpx.Response(404, text="not found")

        with pytest.raises(ExternalServiceError):
            asyncio.run(_etsy(handler).scan_trends())

    def test_missing_credentials(self):
        adapter = EtsyAdapter(MarketplaceConfig(api_key="etsy-key", base_url="https://etsy.test/v3"))

        assert adapter.is_available is False
        with pytest.raises(ExternalServiceError) as excinfo:
            asyncio.run(adapter.scan_trends())
        assert excinfo.value.recoverable is False
        assert excinfo.value.context["missing"] == ["secret", "shop_id"]

    def test_validate_listing(self):
        adapter = EtsyAdapter(ETSY_CONFIG)
        assert adapter.validate_listing(_request()).valid

        result = adapter.validate_listing(
            ListingRequest(title="Short", description="too short", price=0.1, tags=[f"t{i}" for i in range(14)])
        )
        assert not result.valid
        assert result.errors == [
            "Title must be at least 10 characters long",
            "Description must be at least 20 characters long",
            "Price must be at least $0.20",
            "Maximum 13 tags allowed",
        ]

    def test_update_and_delete(self):
        calls = []

        def handler(request):
            calls.append((request.method, request.url.path))
            if request.method == "PATCH":
                body = json.loads(request.content)
                return httpx.Response(200, json={"listing_id": 123, "price": body["price"]})
            if request.url.path.endswith("/404"):
                return httpx.Response(404, json={"error": "missing"})
            return httpx.Response(204)

        adapter = _etsy(handler)
        updated = asyncio.run(adapter.update_product("123", {"price": 15.0, "category": "ignored"}))
        assert updated.success and updated.listing.price == 15.0
        assert asyncio.run(adapter.delete_product("123")) is True
        assert asyncio.run(adapter.delete_product("404")) is False
        assert calls[0] == ("PATCH", "/v3/application/shops/12345/listings/123")


@pytest.mark.unit
class TestShopifyAdapter:
    def test_scan_aggregates_orders_by_product(self):
        def handler(request):
            assert request.headers["X-Shopify-Access-Token"] == "shpat_test"
            return httpx.Response(200, json={"orders": [
                {"line_items": [{"product_id": 1, "title": "Budget Planner", "quantity": 2, "price": "10.00"}]},
                {"line_items": [
                    {"product_id": 1, "title": "Budget Planner", "quantity": 3, "price": "12.00"},
                    {"product_id": 2, "title": "Meal Planner", "quantity": 1, "price": "5.00"},
                ]},
            ]})

        adapter = ShopifyAdapter(SHOPIFY_CONFIG, transport=httpx.MockTransport(handler))
        scanned = {s.product_id: s for s in asyncio.run(adapter.scan_trends())}

        assert scanned["1"].search_volume == 5
        assert scanned["1"].price == 11.0
        assert scanned["2"].keyword == "Meal Planner"

    def test_list_product_posts_variant_price(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"product": {"id": 555, "title": "x", "variants": [{"price": "12.50"}]}})

        adapter = ShopifyAdapter(SHOPIFY_CONFIG, transport=httpx.MockTransport(handler))
        result = asyncio.run(adapter.list_product(_request()))

        assert result.success and result.listing_id == "555"
        assert captured["body"]["product"]["variants"][0]["price"] == "12.50"
        assert captured["body"]["product"]["tags"] == "wedding, planner"

    def test_created_without_product_id_is_a_rejection(self):
        adapter = ShopifyAdapter(SHOPIFY_CONFIG, transport=httpx.MockTransport(lambda request: httpx.Response(201, json={"product": {}})))

        result = asyncio.run(adapter.list_product(_request()))

        assert result.success is False
        assert "product id" in result.error

    def test_categories_fall_back_on_error(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        adapter = ShopifyAdapter(SHOPIFY_CONFIG, transport=httpx.MockTransport(handler))
        assert asyncio.run(adapter.get_categories()) == SHOPIFY_FALLBACK_CATEGORIES
        assert asyncio.run(ShopifyAdapter(MarketplaceConfig()).get_categories()) == SHOPIFY_FALLBACK_CATEGORIES


@pytest.mark.unit
class TestAmazonAdapter:
    def test_marketplace_id_from_region(self):
        assert AmazonAdapter(AMAZON_CONFIG).marketplace_id == "A1F83G8C2ARO7P"
        assert AmazonAdapter(MarketplaceConfig(region="xx")).marketplace_id == "ATVPDKIKX0DER"

    def test_scan_uses_sales_rank(self):
        def handler(request):
            return httpx.Response(200, json={"items": [
                {
                    "asin": "B0TEST",
                    "summaries": [{"itemName": "Kids Activity Book", "browseClassification": None}],
                    "salesRanks": [{"displayGroupRanks": [{"rank": 20}]}],
                    "reviews": {"total_reviews": 800, "rating": 4.6},
                }
            ]})

        adapter = AmazonAdapter(AMAZON_CONFIG, transport=httpx.MockTransport(handler))
        [item] = asyncio.run(adapter.scan_trends(category="Printables"))

        assert item.search_volume == 800
        assert item.competition == "high"
        assert item.category == "Printables"
        assert item.rating == 4.6

    def test_validate_listing_keyword_limits(self):
        adapter = AmazonAdapter(AMAZON_CONFIG)
        request = _request()
        request.tags = ["a", "b", "c", "d", "e", "f"]

        result = adapter.validate_listing(request)
        assert result.errors == ["Maximum 5 keywords allowed"]


@pytest.mark.unit
class TestMarketplaceFactory:
    def test_lookup_is_case_insensitive(self, test_settings):
        assert isinstance(get_marketplace_adapter("ETSY", test_settings), EtsyAdapter)
        assert get_supported_marketplaces() == ["etsy", "shopify", "amazon"]

    def test_unknown_marketplace(self, test_settings):
        with pytest.raises(ConfigurationError):
            get_marketplace_adapter("ebay", test_settings)

    def test_shopify_base_url_and_availability(self, test_settings):
        adapters = build_marketplace_adapters(["etsy", "shopify", "amazon"], test_settings)

        assert adapters["shopify"].config.base_url == "https://test-shop.myshopify.com/admin/api/2023-10"
        assert adapters["etsy"].is_available
        assert adapters["shopify"].is_available
        # amazon 자격 증명 없음: 생성은 되지만 사용 불가
        assert adapters["amazon"].is_available is False
