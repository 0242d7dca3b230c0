"""
List stage

Product 1건을 마켓 1곳에 게시. 호출마다 정확히 1개의 Job 을 남긴다.

재호출 정책 (같은 Product/마켓에 success Listing 이 이미 있을 때):
- 가격이 같으면 아무것도 하지 않고 SUCCESS Job({skipped: true}) 만 남긴다
- 가격이 바뀌었으면 기존 원격 리스팅을 update_product 로 재가격 설정 (새 Listing 없음)
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from autolister.exceptions import (
    ConfigurationError,
    DatabaseError,
    ExternalServiceError,
    ValidationError,
    wrap_exception,
)
from autolister.marketplaces.base import ListingRequest, MarketplaceAdapter
from autolister.models import JobStage, Listing, ListingStatus, Product, ProductStatus
from autolister.services.error_recovery import RecoveryEngine
from autolister.services.job_ledger import JobLedger, build_job_key
from autolister.settings import Settings

logger = logging.getLogger(__name__)


class ListStatus:
    PUBLISHED = "published"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ListOutcome:
    status: str
    marketplace: str
    job_id: uuid.UUID
    listing_id: Optional[uuid.UUID] = None
    remote_id: Optional[str] = None
    error: Optional[str] = None
    details: List[str] = field(default_factory=list)


def _usable_remote_id(value) -> Optional[str]:
    # str(None) 로 만들어진 "None" 도 원격 id 가 없는 것으로 본다
    text = str(value).strip() if value is not None else ""
    if not text or text.lower() in ("none", "null"):
        return None
    return text


def build_listing_request(product: Product) -> ListingRequest:
    return ListingRequest(
        title=product.title,
        description=product.description or "",
        price=product.price,
        category=product.category,
        tags=list(product.tags or []),
        images=list((product.meta or {}).get("images", [])),
        specifications=dict(product.specifications or {}),
    )


class ListStage:
    def __init__(
        self,
        db: Session,
        ledger: JobLedger,
        recovery: RecoveryEngine,
        adapters: Dict[str, MarketplaceAdapter],
        settings: Settings,
    ):
        self.db = db
        self.ledger = ledger
        self.recovery = recovery
        self.adapters = adapters
        self.settings = settings

    def _existing_success(self, product: Product, marketplace: str) -> Optional[Listing]:
        stmt = (
            select(Listing)
            .where(
                Listing.product_id == product.id,
                Listing.marketplace == marketplace,
                Listing.status == ListingStatus.SUCCESS,
            )
            .order_by(Listing.created_at.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def _record_listing_meta(self, product: Product, marketplace: str, entry: Dict) -> None:
        meta = dict(product.meta or {})
        listings = dict(meta.get("listings") or {})
        listings[marketplace] = {**listings.get(marketplace, {}), **entry}
        meta["listings"] = listings
        product.meta = meta

    def _fail(self, job_id: uuid.UUID, marketplace: str, error: BaseException, listing_id=None) -> ListOutcome:
        self.ledger.fail(job_id, error)
        details = list(error.details) if isinstance(error, ValidationError) else []
        return ListOutcome(
            status=ListStatus.FAILED,
            marketplace=marketplace,
            job_id=job_id,
            listing_id=listing_id,
            error=str(error),
            details=details,
        )

    def _commit(self, job_id: uuid.UUID, table: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            error = wrap_exception(e, DatabaseError, table_name=table, operation="write")
            self.ledger.fail(job_id, error)
            raise error from e

    async def run(
        self,
        product: Product,
        marketplace: str,
        run_id: str,
        parent_job_id: Optional[uuid.UUID] = None,
    ) -> ListOutcome:
        name = marketplace.strip().lower()
        job = self.ledger.begin(
            build_job_key(JobStage.LIST, f"{product.id}-{name}", run_id),
            JobStage.LIST,
            metadata={"productId": str(product.id), "marketplace": name},
            parent_job_id=parent_job_id,
        )

        adapter = self.adapters.get(name)
        if adapter is None or not adapter.is_available:
            return self._fail(job.id, name, ConfigurationError(f"Marketplace '{name}' is not configured", setting=name))

        existing = self._existing_success(product, name)
        if existing is not None:
            return await self._republish(product, existing, adapter, job.id)

        request = build_listing_request(product)
        validation = adapter.validate_listing(request)
        if not validation.valid:
            logger.info(f"Listing validation failed for {name}: {validation.errors}")
            return self._fail(
                job.id, name, ValidationError(f"Listing validation failed for {name}", details=validation.errors)
            )

        run = await self.recovery.run(lambda: adapter.list_product(request), context=f"list:{name}")
        self.ledger.record_attempt(job.id, run.attempts)
        if not run.succeeded:
            # 원격 호출이 끝내 완료되지 않았으므로 Listing 행을 남기지 않는다
            return self._fail(job.id, name, run.error)

        response = run.value
        remote_id = _usable_remote_id(response.listing_id) or _usable_remote_id(response.external_id)
        if not response.success or not remote_id:
            listing = Listing(
                product_id=product.id,
                marketplace=name,
                status=ListingStatus.FAILED,
                price=product.price,
                currency=self.settings.listing_currency,
                error=response.error or "Marketplace did not return a listing id",
                job_id=job.id,
                meta={"runId": run_id},
            )
            self.db.add(listing)
            self._commit(job.id, "listings")
            error = ExternalServiceError(name, f"{name} rejected listing: {listing.error}", recoverable=False)
            return self._fail(job.id, name, error, listing_id=listing.id)

        now = datetime.now(timezone.utc).isoformat()
        listing = Listing(
            product_id=product.id,
            marketplace=name,
            remote_id=str(remote_id),
            status=ListingStatus.SUCCESS,
            price=product.price,
            currency=self.settings.listing_currency,
            job_id=job.id,
            meta={
                "runId": run_id,
                "externalId": response.external_id,
                "listing": response.listing.to_dict() if response.listing else None,
            },
        )
        self.db.add(listing)
        self.db.flush()
        self._record_listing_meta(product, name, {
            "listingId": str(listing.id),
            "remoteId": listing.remote_id,
            "status": ListingStatus.SUCCESS,
            "price": product.price,
            "publishedAt": now,
        })
        product.status = ProductStatus.PUBLISHED
        self._commit(job.id, "listings")

        self.ledger.complete(job.id, {"listingId": str(listing.id), "remoteId": listing.remote_id})
        logger.info(f"Published '{product.title}' to {name} as {listing.remote_id}")
        return ListOutcome(
            status=ListStatus.PUBLISHED,
            marketplace=name,
            job_id=job.id,
            listing_id=listing.id,
            remote_id=listing.remote_id,
        )

    async def _republish(
        self, product: Product, existing: Listing, adapter: MarketplaceAdapter, job_id: uuid.UUID
    ) -> ListOutcome:
        name = existing.marketplace
        if existing.price is not None and round(existing.price, 2) == round(product.price, 2):
            self.ledger.complete(job_id, {"skipped": True, "listingId": str(existing.id), "remoteId": existing.remote_id})
            logger.info(f"Product {product.id} already listed on {name} ({existing.remote_id}), skipping")
            return ListOutcome(
                status=ListStatus.SKIPPED,
                marketplace=name,
                job_id=job_id,
                listing_id=existing.id,
                remote_id=existing.remote_id,
            )

        run = await self.recovery.run(
            lambda: adapter.update_product(existing.remote_id, {"price": product.price}),
            context=f"list:{name}",
        )
        self.ledger.record_attempt(job_id, run.attempts)
        if not run.succeeded:
            return self._fail(job_id, name, run.error, listing_id=existing.id)
        if not run.value.success:
            error = ExternalServiceError(name, f"{name} rejected price update: {run.value.error}", recoverable=False)
            return self._fail(job_id, name, error, listing_id=existing.id)

        previous_price = existing.price
        existing.price = product.price
        existing.meta = {**(existing.meta or {}), "repricedAt": datetime.now(timezone.utc).isoformat(), "previousPrice": previous_price}
        self._record_listing_meta(product, name, {"price": product.price})
        self._commit(job_id, "listings")

        self.ledger.complete(
            job_id,
            {"updated": True, "listingId": str(existing.id), "remoteId": existing.remote_id, "previousPrice": previous_price},
        )
        logger.info(f"Re-priced {name} listing {existing.remote_id}: {previous_price} -> {product.price}")
        return ListOutcome(
            status=ListStatus.UPDATED,
            marketplace=name,
            job_id=job_id,
            listing_id=existing.id,
            remote_id=existing.remote_id,
        )
