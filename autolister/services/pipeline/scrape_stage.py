"""
Scrape stage

마켓별 scan_trends 결과를 TrendData(키워드 upsert)와 ScrapeResult(원시 스냅샷)로 저장.
소스 하나의 실패가 다른 소스를 중단시키지 않으며, 각 소스는 자식 Job으로 기록된다.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from autolister.exceptions import ConfigurationError, DatabaseError, ExternalServiceError, wrap_exception
from autolister.marketplaces.base import MarketplaceAdapter, ScannedListing
from autolister.models import JobStage, ScrapeResult, TrendData
from autolister.services.error_recovery import RecoveryEngine
from autolister.services.job_ledger import JobLedger, build_job_key
from autolister.services.pipeline.scoring import compute_trend_score
from autolister.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class ScrapeSummary:
    job_id: uuid.UUID
    trends: List[str] = field(default_factory=list)
    results_stored: int = 0
    sources: List[str] = field(default_factory=list)
    failed_sources: Dict[str, str] = field(default_factory=dict)
    cached_sources: List[str] = field(default_factory=list)


class ScrapeStage:
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

    async def run(
        self,
        run_id: str,
        marketplaces: Optional[List[str]] = None,
        category: Optional[str] = None,
    ) -> ScrapeSummary:
        names = [m.strip().lower() for m in (marketplaces or self.settings.scrape_marketplaces)]
        stage_job = self.ledger.begin(
            build_job_key(JobStage.SCRAPE, "all", run_id),
            JobStage.SCRAPE,
            metadata={"marketplaces": names, "category": category, "runId": run_id},
        )
        summary = ScrapeSummary(job_id=stage_job.id)
        collected_at = datetime.now(timezone.utc)

        for name in names:
            child = self.ledger.begin(
                build_job_key(JobStage.SCRAPE, name, run_id),
                JobStage.SCRAPE,
                metadata={"marketplace": name, "category": category},
                parent_job_id=stage_job.id,
            )

            adapter = self.adapters.get(name)
            if adapter is None or not adapter.is_available:
                error = ConfigurationError(f"Marketplace '{name}' is not configured", setting=name)
                logger.warning(f"Skipping scrape source {name}: {error.message}")
                self.ledger.fail(child.id, error)
                summary.failed_sources[name] = error.message
                continue

            run = await self.recovery.run(
                lambda a=adapter: a.scan_trends(category=category, limit=self.settings.scan_limit),
                context=f"scrape:{name}",
            )
            self.ledger.record_attempt(child.id, run.attempts)
            if not run.succeeded:
                self.ledger.fail(child.id, run.error)
                summary.failed_sources[name] = str(run.error)
                self._serve_cached(name, summary)
                continue
            # 이후 실행에서 이 소스가 실패하면 마지막 성공 결과의 키워드로 대체한다
            self.recovery.cache_result(f"scrape:{name}", run.value or [])

            try:
                keywords, stored = self._persist(run.value or [], child.id, collected_at)
            except SQLAlchemyError as e:
                self.db.rollback()
                error = wrap_exception(e, DatabaseError, table_name="trends", operation="upsert")
                logger.error(f"Failed to persist scrape results for {name}: {error}")
                self.ledger.fail(child.id, error)
                summary.failed_sources[name] = error.message
                continue

            self.ledger.complete(
                child.id, {"listings": len(run.value or []), "trends": len(keywords), "resultsStored": stored}
            )
            summary.sources.append(name)
            summary.results_stored += stored
            for keyword in keywords:
                if keyword not in summary.trends:
                    summary.trends.append(keyword)
            logger.info(f"Scraped {name}: {len(keywords)} trends, {stored} new results")

        if not summary.sources and not summary.cached_sources:
            error = ExternalServiceError(
                "scrape",
                f"All scrape sources failed: {', '.join(f'{k}: {v}' for k, v in summary.failed_sources.items()) or 'no sources configured'}",
                recoverable=False,
            )
            self.ledger.fail(stage_job.id, error)
            raise error

        self.ledger.complete(
            stage_job.id,
            {
                "sources": summary.sources,
                "failedSources": summary.failed_sources,
                "cachedSources": summary.cached_sources,
                "trends": len(summary.trends),
                "resultsStored": summary.results_stored,
            },
        )
        return summary

    def _serve_cached(self, name: str, summary: ScrapeSummary) -> None:
        cached = self.recovery.cached_result(f"scrape:{name}")
        if not cached:
            return
        keywords = [k for k in dict.fromkeys((item.keyword or "").strip() for item in cached) if k]
        logger.warning(f"Using {len(keywords)} cached trends for {name} from its last successful scan")
        summary.cached_sources.append(name)
        for keyword in keywords:
            if keyword not in summary.trends:
                summary.trends.append(keyword)

    def _upsert_trend(self, keyword: str, members: List[ScannedListing], collected_at: datetime) -> TrendData:
        """같은 키워드의 리스팅들을 하나의 수요 신호로 합산 (검색량 합계, 가격 평균)"""
        trend = self.db.execute(select(TrendData).where(TrendData.keyword == keyword)).scalar_one_or_none()
        if trend is None:
            trend = TrendData(keyword=keyword)
            self.db.add(trend)

        leader = max(members, key=lambda m: m.search_volume)
        prices = [m.price for m in members if m.price is not None]
        trend.search_volume = sum(m.search_volume for m in members)
        trend.competition = leader.competition
        if prices:
            trend.avg_price = round(sum(prices) / len(prices), 2)
        elif trend.avg_price is None:
            trend.avg_price = 0.0
        trend.score = compute_trend_score(trend.search_volume, trend.competition)
        trend.source = leader.marketplace
        trend.last_scanned_at = collected_at
        return trend

    def _persist(
        self, listings: List[ScannedListing], job_id: uuid.UUID, collected_at: datetime
    ) -> tuple[List[str], int]:
        # 키워드별로 묶되 같은 상품이 배치에 두 번 오면 마지막 값만 센다
        groups: Dict[str, Dict[tuple, ScannedListing]] = {}
        for item in listings:
            keyword = (item.keyword or "").strip()
            if keyword:
                groups.setdefault(keyword, {})[(item.marketplace, item.product_id)] = item

        for keyword, members in groups.items():
            self._upsert_trend(keyword, list(members.values()), collected_at)

        seen_results = set()
        stored = 0
        for item in listings:
            keyword = (item.keyword or "").strip()
            if not keyword:
                continue
            result_key = (item.marketplace, item.product_id)
            if result_key in seen_results or self._result_exists(item, collected_at):
                continue
            seen_results.add(result_key)
            self.db.add(
                ScrapeResult(
                    marketplace=item.marketplace,
                    product_id=item.product_id,
                    collected_at=collected_at,
                    keyword=keyword,
                    title=item.title or keyword,
                    price=item.price,
                    currency=item.currency,
                    tags=list(item.tags),
                    category=item.category,
                    sales=item.sales,
                    rating=item.rating,
                    url=item.url,
                    raw=item.raw,
                    job_id=job_id,
                )
            )
            stored += 1

        self.db.commit()
        return list(groups.keys()), stored

    def _result_exists(self, item: ScannedListing, collected_at: datetime) -> bool:
        stmt = select(ScrapeResult.id).where(
            ScrapeResult.marketplace == item.marketplace,
            ScrapeResult.product_id == item.product_id,
            ScrapeResult.collected_at == collected_at,
        )
        return self.db.execute(stmt).first() is not None
