import logging
from typing import Any, Dict, List, Optional

from autolister.exceptions import ExternalServiceError
from autolister.marketplaces.base import (
    ListingRequest,
    ListingResponse,
    MarketplaceAdapter,
    ProductListing,
    ScannedListing,
    ValidationResult,
    competition_from_magnitude,
    parse_price,
)

logger = logging.getLogger(__name__)

SHOPIFY_FALLBACK_CATEGORIES = [
    "Digital Downloads",
    "E-books",
    "Templates",
    "Graphics",
    "Fonts",
    "Printables",
    "Courses",
    "Software",
]


class ShopifyAdapter(MarketplaceAdapter):
    """
    Shopify Admin REST API 어댑터 (base_url = https://<shop>/admin/api/<version>)
    """

    name = "shopify"
    required_credentials = ("api_key", "shop_id")

    def _headers(self) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": self.config.api_key,
            "Content-Type": "application/json",
        }

    async def scan_trends(self, category: Optional[str] = None, limit: int = 50) -> List[ScannedListing]:
        """
        Shopify는 검색량 데이터를 제공하지 않으므로 최근 주문의 상품별 판매 수량을 수요 신호로 사용
        """
        self._ensure_available()
        response = await self._request(
            "GET", "/orders.json", params={"status": "any", "limit": self._cap_limit(limit)}
        )
        orders = response.json().get("orders", [])

        aggregated: Dict[str, Dict[str, Any]] = {}
        for order in orders:
            for item in order.get("line_items") or []:
                product_id = str(item.get("product_id") or item.get("id") or "")
                title = item.get("title")
                if not product_id or not title:
                    continue
                entry = aggregated.setdefault(
                    product_id, {"title": title, "quantity": 0, "orders": 0, "prices": [], "raw": item}
                )
                entry["quantity"] += int(item.get("quantity") or 0)
                entry["orders"] += 1
                price = parse_price(item.get("price"))
                if price is not None:
                    entry["prices"].append(price)

        scanned = []
        for product_id, entry in aggregated.items():
            prices = entry["prices"]
            scanned.append(
                ScannedListing(
                    marketplace=self.name,
                    product_id=product_id,
                    keyword=entry["title"],
                    title=entry["title"],
                    price=round(sum(prices) / len(prices), 2) if prices else None,
                    category=category,
                    sales=entry["quantity"],
                    search_volume=entry["quantity"],
                    competition=competition_from_magnitude(entry["orders"]),
                    raw=entry["raw"],
                )
            )

        logger.info(f"Shopify scan aggregated {len(scanned)} products from {len(orders)} orders")
        return scanned

    def validate_listing(self, request: ListingRequest) -> ValidationResult:
        errors = []
        if not request.title:
            errors.append("Title is required")
        if not request.description:
            errors.append("Description is required")
        if request.price is None or request.price < 0:
            errors.append("Price must be zero or greater")
        return ValidationResult(valid=not errors, errors=errors)

    async def list_product(self, request: ListingRequest) -> ListingResponse:
        self._ensure_available()
        body = {
            "product": {
                "title": request.title,
                "body_html": request.description,
                "vendor": "autolister",
                "product_type": request.category,
                "tags": ", ".join(request.tags),
                "variants": [
                    {
                        "price": f"{request.price:.2f}",
                        "inventory_policy": "deny",
                        "fulfillment_service": "manual",
                        "requires_shipping": False,
                        "taxable": True,
                    }
                ],
                "images": [{"src": url} for url in request.images],
                "status": "draft",
            }
        }
        response = await self._request("POST", "/products.json", allow_client_error=True, json=body)
        if response.is_error:
            error = self._error_message(response, "Failed to create Shopify product")
            logger.warning(f"Shopify rejected product '{request.title}': {error}")
            return ListingResponse(success=False, error=error)

        product = response.json().get("product") or {}
        product_id = str(product.get("id") or "")
        if not product_id:
            return ListingResponse(success=False, error="Shopify response did not include a product id")
        return ListingResponse(
            success=True,
            listing_id=product_id,
            external_id=product_id,
            listing=self._to_product_listing(product),
        )

    async def update_product(self, listing_id: str, partial: Dict[str, Any]) -> ListingResponse:
        self._ensure_available()
        product: Dict[str, Any] = {"id": listing_id}
        if partial.get("title"):
            product["title"] = partial["title"]
        if partial.get("description"):
            product["body_html"] = partial["description"]
        if partial.get("category"):
            product["product_type"] = partial["category"]
        if partial.get("tags"):
            product["tags"] = ", ".join(partial["tags"])
        if partial.get("images"):
            product["images"] = [{"src": url} for url in partial["images"]]
        if partial.get("price") is not None:
            product["variants"] = [{"price": f"{float(partial['price']):.2f}"}]

        response = await self._request(
            "PUT", f"/products/{listing_id}.json", allow_client_error=True, json={"product": product}
        )
        if response.is_error:
            return ListingResponse(
                success=False,
                listing_id=listing_id,
                error=self._error_message(response, "Failed to update Shopify product"),
            )
        return ListingResponse(
            success=True,
            listing_id=listing_id,
            external_id=listing_id,
            listing=self._to_product_listing(response.json().get("product") or {}),
        )

    async def delete_product(self, listing_id: str) -> bool:
        self._ensure_available()
        response = await self._request("DELETE", f"/products/{listing_id}.json", allow_client_error=True)
        return not response.is_error

    async def get_product(self, listing_id: str) -> Optional[ProductListing]:
        self._ensure_available()
        response = await self._request("GET", f"/products/{listing_id}.json", allow_client_error=True)
        if response.is_error:
            return None
        return self._to_product_listing(response.json().get("product") or {})

    async def get_categories(self) -> List[str]:
        if not self.is_available:
            return list(SHOPIFY_FALLBACK_CATEGORIES)
        try:
            response = await self._request("GET", "/product_types.json")
            return response.json().get("product_types") or list(SHOPIFY_FALLBACK_CATEGORIES)
        except ExternalServiceError as e:
            logger.warning(f"Shopify categories unavailable, using defaults: {e}")
            return list(SHOPIFY_FALLBACK_CATEGORIES)

    def _to_product_listing(self, product: Dict[str, Any]) -> ProductListing:
        variants = product.get("variants") or [{}]
        tags = product.get("tags") or ""
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(",") if t.strip()]
        status = product.get("status")
        return ProductListing(
            id=str(product.get("id") or ""),
            title=product.get("title") or "",
            description=product.get("body_html") or "",
            price=parse_price(variants[0].get("price")) or 0.0,
            category=product.get("product_type") or "Digital Downloads",
            tags=tags,
            images=[img.get("src") for img in product.get("images") or [] if img.get("src")],
            status=status if status in ("active", "draft") else "draft",
            marketplace=self.name,
            external_id=str(product["id"]) if product.get("id") else None,
        )
