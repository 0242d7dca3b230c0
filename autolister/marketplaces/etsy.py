import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from autolister.marketplaces.base import (
    ListingRequest,
    ListingResponse,
    MarketplaceAdapter,
    ProductListing,
    ScannedListing,
    ValidationResult,
    competition_from_magnitude,
    parse_price,
    parse_traffic,
)

logger = logging.getLogger(__name__)

ETSY_DIGITAL_TAXONOMY_ID = 69150467
ETSY_TOP_KEYWORDS = 10

ETSY_CATEGORIES = [
    "Digital Downloads",
    "Printables",
    "Templates",
    "E-books",
    "Courses",
    "Graphics",
    "Fonts",
    "SVG Files",
    "PNG Files",
    "PDF Files",
]


def extract_top_keywords(tag_lists: List[List[str]], limit: int = ETSY_TOP_KEYWORDS) -> List[str]:
    """태그 빈도 상위 키워드 (소문자, 동률은 먼저 나온 순)"""
    frequency = Counter(
        tag.strip().lower() for tags in tag_lists for tag in tags if isinstance(tag, str) and tag.strip()
    )
    return [tag for tag, _ in frequency.most_common(limit)]


def _from_epoch(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OSError):
        return None


class EtsyAdapter(MarketplaceAdapter):
    """
    Etsy Open API v3 어댑터.
    api_key(x-api-key) + access token(OAuth Bearer) + shop_id 가 모두 있어야 사용 가능.
    """

    name = "etsy"
    required_credentials = ("api_key", "secret", "shop_id")

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.config.api_key,
            "Authorization": f"Bearer {self.config.secret}",
            "Content-Type": "application/json",
        }

    async def scan_trends(self, category: Optional[str] = None, limit: int = 50) -> List[ScannedListing]:
        self._ensure_available()
        params: Dict[str, Any] = {
            "limit": self._cap_limit(limit),
            "sort_on": "score",
            "sort_order": "desc",
        }
        if category:
            params["keywords"] = category

        response = await self._request("GET", "/application/listings/active", params=params)
        payload = response.json()
        results = payload.get("results", []) if isinstance(payload, dict) else payload
        listings = [item for item in results or [] if isinstance(item, dict) and item.get("listing_id")]

        # 리스팅 제목이 아니라 태그 빈도로 키워드 단위 수요 신호를 만든다
        top_keywords = extract_top_keywords([item.get("tags") or [] for item in listings])
        rank = {keyword: i for i, keyword in enumerate(top_keywords)}

        scanned = []
        for item in listings:
            listing_id = str(item["listing_id"])
            tags = [t.strip().lower() for t in item.get("tags") or [] if isinstance(t, str) and t.strip()]
            ranked = sorted((t for t in tags if t in rank), key=rank.get)
            keyword = ranked[0] if ranked else str(item.get("title") or listing_id).strip().lower()
            favorers = parse_traffic(item.get("num_favorers", item.get("favorite_count")))
            views = parse_traffic(item.get("views", item.get("total_view_count")))
            taxonomy = item.get("taxonomy_path") or []
            raw_price = item.get("price")
            scanned.append(
                ScannedListing(
                    marketplace=self.name,
                    product_id=listing_id,
                    keyword=keyword,
                    title=item.get("title"),
                    price=parse_price(raw_price),
                    currency=raw_price.get("currency_code", "USD") if isinstance(raw_price, dict) else "USD",
                    tags=[t for t in item.get("tags") or [] if isinstance(t, str)],
                    category=taxonomy[0] if taxonomy else category,
                    sales=item.get("quantity_sold"),
                    rating=(item.get("review_info") or {}).get("average_rating"),
                    url=item.get("url"),
                    search_volume=views,
                    competition=competition_from_magnitude(favorers),
                    raw=item,
                )
            )

        logger.info(f"Etsy scan returned {len(scanned)} listings")
        return scanned

    def validate_listing(self, request: ListingRequest) -> ValidationResult:
        errors = []
        if not request.title or len(request.title) < 10:
            errors.append("Title must be at least 10 characters long")
        if not request.description or len(request.description) < 20:
            errors.append("Description must be at least 20 characters long")
        if request.price is None or request.price < 0.20:
            errors.append("Price must be at least $0.20")
        if len(request.tags) < 1:
            errors.append("At least one tag is required")
        if len(request.tags) > 13:
            errors.append("Maximum 13 tags allowed")
        return ValidationResult(valid=not errors, errors=errors)

    async def list_product(self, request: ListingRequest) -> ListingResponse:
        self._ensure_available()
        body = {
            "title": request.title,
            "description": request.description,
            "price": request.price,
            "quantity": 999,
            "who_made": "i_did",
            "when_made": "made_to_order",
            "taxonomy_id": ETSY_DIGITAL_TAXONOMY_ID,
            "type": "download",
            "tags": request.tags[:13],
            "materials": request.specifications.get("materials", []),
            "state": "draft",
        }
        response = await self._request(
            "POST", f"/application/shops/{self.config.shop_id}/listings", allow_client_error=True, json=body
        )
        if response.is_error:
            error = self._error_message(response, "Failed to create Etsy listing")
            logger.warning(f"Etsy rejected listing '{request.title}': {error}")
            return ListingResponse(success=False, error=error)

        data = response.json()
        if isinstance(data, dict) and data.get("results"):
            data = data["results"][0]
        listing_id = str(data.get("listing_id") or "") if isinstance(data, dict) else ""
        if not listing_id:
            return ListingResponse(success=False, error="Etsy response did not include a listing id")
        return ListingResponse(
            success=True,
            listing_id=listing_id,
            external_id=listing_id,
            listing=self._to_product_listing(data),
        )

    async def update_product(self, listing_id: str, partial: Dict[str, Any]) -> ListingResponse:
        self._ensure_available()
        body = {key: partial[key] for key in ("title", "description", "price", "tags") if partial.get(key) is not None}
        response = await self._request(
            "PATCH",
            f"/application/shops/{self.config.shop_id}/listings/{listing_id}",
            allow_client_error=True,
            json=body,
        )
        if response.is_error:
            return ListingResponse(
                success=False, listing_id=listing_id, error=self._error_message(response, "Failed to update Etsy listing")
            )
        return ListingResponse(
            success=True, listing_id=listing_id, external_id=listing_id, listing=self._to_product_listing(response.json())
        )

    async def delete_product(self, listing_id: str) -> bool:
        self._ensure_available()
        response = await self._request("DELETE", f"/application/listings/{listing_id}", allow_client_error=True)
        if response.is_error:
            logger.warning(f"Etsy delete failed for {listing_id}: {response.status_code}")
            return False
        return True

    async def get_product(self, listing_id: str) -> Optional[ProductListing]:
        self._ensure_available()
        response = await self._request("GET", f"/application/listings/{listing_id}", allow_client_error=True)
        if response.is_error:
            return None
        return self._to_product_listing(response.json())

    async def get_categories(self) -> List[str]:
        return list(ETSY_CATEGORIES)

    def _to_product_listing(self, data: Dict[str, Any]) -> ProductListing:
        listing_id = str(data.get("listing_id") or "")
        taxonomy = data.get("taxonomy_path") or []
        return ProductListing(
            id=listing_id,
            title=data.get("title") or "",
            description=data.get("description") or "",
            price=parse_price(data.get("price")) or 0.0,
            category=taxonomy[0] if taxonomy else "Digital Downloads",
            tags=list(data.get("tags") or []),
            images=[img.get("url_fullxfull") for img in data.get("images") or [] if img.get("url_fullxfull")],
            status="active" if data.get("state") == "active" else "draft",
            marketplace=self.name,
            external_id=listing_id or None,
            created_at=_from_epoch(data.get("creation_timestamp", data.get("creation_tsz"))),
            updated_at=_from_epoch(data.get("last_modified_timestamp", data.get("last_modified_tsz"))),
        )
