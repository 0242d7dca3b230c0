import logging
import uuid
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

# region -> marketplaceId
AMAZON_MARKETPLACE_IDS = {
    "na": "ATVPDKIKX0DER",
    "eu": "A1F83G8C2ARO7P",
    "fe": "A1VC38T7YXB528",
}

AMAZON_CATEGORIES = [
    "Kindle eBooks",
    "Digital Software",
    "Digital Music",
    "Printables",
    "Templates",
    "Courses",
]


class AmazonAdapter(MarketplaceAdapter):
    """
    Amazon SP-API 형태의 어댑터. access key + secret 필요.
    """

    name = "amazon"
    required_credentials = ("api_key", "secret")

    @property
    def marketplace_id(self) -> str:
        return AMAZON_MARKETPLACE_IDS.get((self.config.region or "na").lower(), AMAZON_MARKETPLACE_IDS["na"])

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "x-amz-access-token": self.config.secret,
            "Content-Type": "application/json",
        }

    async def scan_trends(self, category: Optional[str] = None, limit: int = 50) -> List[ScannedListing]:
        self._ensure_available()
        params = {
            "keywords": category or "digital downloads",
            "marketplaceIds": self.marketplace_id,
            "includedData": "summaries,salesRanks",
            "pageSize": self._cap_limit(limit),
        }
        response = await self._request("GET", "/catalog/2022-04-01/items", params=params)
        items = response.json().get("items", [])

        scanned = []
        for item in items:
            asin = str(item.get("asin") or "")
            if not asin:
                continue
            summary = (item.get("summaries") or [{}])[0]
            title = summary.get("itemName") or item.get("title") or asin
            rank = self._best_rank(item)
            reviews = parse_traffic((item.get("reviews") or {}).get("total_reviews", item.get("reviews_total")))
            scanned.append(
                ScannedListing(
                    marketplace=self.name,
                    product_id=asin,
                    keyword=str(title),
                    title=str(title),
                    price=parse_price(item.get("price")),
                    category=(summary.get("browseClassification") or {}).get("displayName") or category,
                    rating=(item.get("reviews") or {}).get("rating"),
                    url=f"https://www.amazon.com/dp/{asin}",
                    search_volume=max(0, 1000 - rank * 10),
                    competition=competition_from_magnitude(reviews),
                    raw=item,
                )
            )

        logger.info(f"Amazon scan returned {len(scanned)} items")
        return scanned

    @staticmethod
    def _best_rank(item: Dict[str, Any]) -> int:
        for group in item.get("salesRanks") or []:
            for rank in (group.get("displayGroupRanks") or []) + (group.get("classificationRanks") or []):
                if rank.get("rank") is not None:
                    return parse_traffic(rank["rank"])
        return parse_traffic(item.get("rank", item.get("best_sellers_rank")))

    def validate_listing(self, request: ListingRequest) -> ValidationResult:
        errors = []
        if not request.title or len(request.title) < 10:
            errors.append("Title must be at least 10 characters long")
        if not request.description or len(request.description) < 50:
            errors.append("Description must be at least 50 characters long")
        if request.price is None or request.price < 0.99:
            errors.append("Price must be at least $0.99")
        if len(request.tags) < 1:
            errors.append("At least one keyword is required")
        if len(request.tags) > 5:
            errors.append("Maximum 5 keywords allowed")
        return ValidationResult(valid=not errors, errors=errors)

    def _attributes(self, request: Dict[str, Any]) -> Dict[str, Any]:
        attributes: Dict[str, Any] = {}
        if request.get("title"):
            attributes["item_name"] = request["title"]
        if request.get("description"):
            attributes["bullet_point"] = request["description"].split(". ")[:5]
        if request.get("tags"):
            attributes["item_keywords"] = ",".join(request["tags"])
        if request.get("price") is not None:
            attributes["list_price"] = {"value": request["price"], "currency": "USD"}
        return attributes

    async def list_product(self, request: ListingRequest) -> ListingResponse:
        self._ensure_available()
        attributes = self._attributes(request.to_partial("title", "description", "tags", "price"))
        attributes["product_type"] = "DIGITAL_DOWNLOAD"
        attributes["external_product_id"] = {"value": f"AL-{uuid.uuid4().hex[:12]}", "type": "SKU"}
        body = {"marketplaceIds": [self.marketplace_id], "items": [{"attributes": attributes}]}

        response = await self._request("POST", "/catalog/2022-04-01/items", allow_client_error=True, json=body)
        if response.is_error:
            error = self._error_message(response, "Failed to create Amazon listing")
            logger.warning(f"Amazon rejected listing '{request.title}': {error}")
            return ListingResponse(success=False, error=error)

        items = response.json().get("items") or [{}]
        asin = str(items[0].get("asin") or "")
        if not asin:
            return ListingResponse(success=False, error="Amazon response did not include an ASIN")
        return ListingResponse(
            success=True,
            listing_id=asin,
            external_id=asin,
            listing=self._to_product_listing(items[0], request),
        )

    async def update_product(self, listing_id: str, partial: Dict[str, Any]) -> ListingResponse:
        self._ensure_available()
        body = {"marketplaceIds": [self.marketplace_id], "attributes": self._attributes(partial)}
        response = await self._request(
            "PATCH", f"/catalog/2022-04-01/items/{listing_id}", allow_client_error=True, json=body
        )
        if response.is_error:
            return ListingResponse(
                success=False,
                listing_id=listing_id,
                error=self._error_message(response, "Failed to update Amazon listing"),
            )
        return ListingResponse(success=True, listing_id=listing_id, external_id=listing_id)

    async def delete_product(self, listing_id: str) -> bool:
        self._ensure_available()
        response = await self._request(
            "DELETE",
            f"/catalog/2022-04-01/items/{listing_id}",
            allow_client_error=True,
            params={"marketplaceIds": self.marketplace_id},
        )
        return not response.is_error

    async def get_product(self, listing_id: str) -> Optional[ProductListing]:
        self._ensure_available()
        response = await self._request(
            "GET",
            f"/catalog/2022-04-01/items/{listing_id}",
            allow_client_error=True,
            params={"marketplaceIds": self.marketplace_id, "includedData": "summaries,attributes"},
        )
        if response.is_error:
            return None
        return self._to_product_listing(response.json())

    async def get_categories(self) -> List[str]:
        return list(AMAZON_CATEGORIES)

    def _to_product_listing(self, item: Dict[str, Any], request: Optional[ListingRequest] = None) -> ProductListing:
        asin = str(item.get("asin") or "")
        summary = (item.get("summaries") or [{}])[0]
        return ProductListing(
            id=asin,
            title=summary.get("itemName") or (request.title if request else ""),
            description=request.description if request else "",
            price=request.price if request else (parse_price(item.get("price")) or 0.0),
            category=request.category if request else "Digital Downloads",
            tags=list(request.tags) if request else [],
            images=list(request.images) if request else [],
            status="active" if summary.get("status") == "BUYABLE" else "draft",
            marketplace=self.name,
            external_id=asin or None,
        )
