"""
Listing endpoints (대시보드용)

응답 형식:
- 성공: {success: true, data: {...}}
- 실패: {error, details?}  - 내부 예외 분류는 노출하지 않는다
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from autolister.api.deps import AdapterProvider, get_adapter_provider
from autolister.db import get_session
from autolister.exceptions import AuthenticationError, ConfigurationError, PipelineError
from autolister.marketplaces.base import ListingRequest, MarketplaceAdapter
from autolister.models import Listing
from autolister.schemas.product import CreateListingIn, DeleteListingIn, ListingOut, UpdateListingIn

router = APIRouter()
logger = logging.getLogger(__name__)


def _error(status_code: int, error: str, details: Optional[Any] = None) -> JSONResponse:
    content: Dict[str, Any] = {"error": error}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def _missing_fields(e: SchemaValidationError) -> List[str]:
    return [".".join(str(part) for part in err["loc"]) + f": {err['msg']}" for err in e.errors()]


def _resolve_adapter(provider: AdapterProvider, marketplace: str) -> MarketplaceAdapter | JSONResponse:
    try:
        adapter = provider(marketplace)
    except ConfigurationError:
        return _error(400, "Invalid marketplace")
    if not adapter.is_available:
        return _error(500, f"{marketplace} marketplace not available")
    return adapter


def _upstream_error(action: str, e: PipelineError) -> JSONResponse:
    logger.error(f"Marketplace call failed while trying to {action}: {e}")
    status_code = 401 if isinstance(e, AuthenticationError) else 500
    return _error(status_code, f"Failed to {action}", details=e.message)


@router.post("")
async def create_listing(
    payload: Optional[Dict[str, Any]] = Body(default=None),
    adapters: AdapterProvider = Depends(get_adapter_provider),
):
    try:
        body = CreateListingIn.model_validate(payload or {})
    except SchemaValidationError as e:
        return _error(400, "Marketplace and product are required", details=_missing_fields(e))

    adapter = _resolve_adapter(adapters, body.marketplace)
    if isinstance(adapter, JSONResponse):
        return adapter

    request = ListingRequest(**body.product.model_dump())
    validation = adapter.validate_listing(request)
    if not validation.valid:
        return _error(400, "Listing validation failed", details=validation.errors)

    try:
        result = await adapter.list_product(request)
    except PipelineError as e:
        return _upstream_error("create listing", e)

    if not result.success:
        return _error(500, "Failed to create listing", details=result.error)

    return {
        "success": True,
        "data": {
            "listing": result.listing.to_dict() if result.listing else None,
            "listingId": result.listing_id,
            "externalId": result.external_id,
            "marketplace": adapter.name,
            "status": result.listing.status if result.listing else "created",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }


@router.put("")
async def update_listing(
    payload: Optional[Dict[str, Any]] = Body(default=None),
    adapters: AdapterProvider = Depends(get_adapter_provider),
):
    try:
        body = UpdateListingIn.model_validate(payload or {})
    except SchemaValidationError as e:
        return _error(400, "Marketplace, listingId, and product are required", details=_missing_fields(e))

    adapter = _resolve_adapter(adapters, body.marketplace)
    if isinstance(adapter, JSONResponse):
        return adapter

    partial = body.product.model_dump(exclude_none=True)
    if all(key in partial for key in ("title", "description", "price", "tags")):
        full = ListingRequest(**{"category": "Digital Downloads", **partial})
        validation = adapter.validate_listing(full)
        if not validation.valid:
            return _error(400, "Listing validation failed", details=validation.errors)

    try:
        result = await adapter.update_product(body.listing_id, partial)
    except PipelineError as e:
        return _upstream_error("update listing", e)

    if not result.success:
        return _error(500, "Failed to update listing", details=result.error)

    return {
        "success": True,
        "data": {
            "listing": result.listing.to_dict() if result.listing else None,
            "listingId": result.listing_id,
            "externalId": result.external_id,
            "marketplace": adapter.name,
            "status": result.listing.status if result.listing else "updated",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }


@router.delete("")
async def delete_listing(
    payload: Optional[Dict[str, Any]] = Body(default=None),
    adapters: AdapterProvider = Depends(get_adapter_provider),
):
    try:
        body = DeleteListingIn.model_validate(payload or {})
    except SchemaValidationError as e:
        return _error(400, "Marketplace and listingId are required", details=_missing_fields(e))

    adapter = _resolve_adapter(adapters, body.marketplace)
    if isinstance(adapter, JSONResponse):
        return adapter

    try:
        deleted = await adapter.delete_product(body.listing_id)
    except PipelineError as e:
        return _upstream_error("delete listing", e)

    if not deleted:
        return _error(500, "Failed to delete listing")

    return {
        "success": True,
        "data": {
            "listingId": body.listing_id,
            "marketplace": adapter.name,
            "deleted": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }


@router.get("")
def list_recent_listings(
    session: Session = Depends(get_session),
    marketplace: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
):
    """
    최근 게시 시도(Listing) 목록
    """
    stmt = select(Listing)
    if marketplace:
        stmt = stmt.where(Listing.marketplace == marketplace.lower())
    stmt = stmt.order_by(Listing.created_at.desc()).limit(limit)
    listings = session.execute(stmt).scalars().all()
    return {
        "success": True,
        "data": [ListingOut.model_validate(l).model_dump(mode="json", by_alias=True) for l in listings],
    }
