"""
Pipeline orchestrator

Scrape -> (Analyze) -> Generate -> List 를 한 번의 run_id 로 묶어 실행한다.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from autolister.db import check_database_connection
from autolister.exceptions import InsufficientDataError, PipelineError
from autolister.marketplaces.factory import build_marketplace_adapters
from autolister.models import JobStage, Product, TrendData
from autolister.services.ai.service import get_content_adapter
from autolister.services.error_recovery import RecoveryEngine
from autolister.services.job_ledger import JobLedger, new_run_id
from autolister.services.pipeline.analyze_stage import AnalyzeStage
from autolister.services.pipeline.generate_stage import GenerateStage
from autolister.services.pipeline.list_stage import ListStage, ListStatus
from autolister.services.pipeline.scrape_stage import ScrapeStage
from autolister.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class PipelineSummary:
    success: bool
    run_id: str
    products_created: int = 0
    listings_published: int = 0
    failed_trends: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "runId": self.run_id,
            "productsCreated": self.products_created,
            "listingsPublished": self.listings_published,
            "failedTrends": list(self.failed_trends),
            "error": self.error,
        }


class PipelineOrchestrator:
    """
    Scrape -> (Analyze) -> 상위 N개 트렌드별 Generate -> 마켓별 List 를 순차 실행.
    한 트렌드의 실패는 로그만 남기고 다음 트렌드를 계속 처리한다.
    """

    def __init__(
        self,
        db: Session,
        scrape_stage: ScrapeStage,
        generate_stage: GenerateStage,
        list_stage: ListStage,
        settings: Settings,
        analyze_stage: Optional[AnalyzeStage] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.db = db
        self.scrape_stage = scrape_stage
        self.generate_stage = generate_stage
        self.list_stage = list_stage
        self.analyze_stage = analyze_stage
        self.settings = settings
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        db: Session,
        settings: Settings,
        recovery: Optional[RecoveryEngine] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> "PipelineOrchestrator":
        """
        기본 구성(어댑터/AI/원장/복구 엔진)을 한 번 만들어 각 스테이지에 주입
        """
        names = list(dict.fromkeys(settings.scrape_marketplaces + settings.pipeline_target_marketplaces))
        adapters = build_marketplace_adapters(names, settings)
        ai = get_content_adapter(settings)
        ledger = JobLedger(db)
        recovery = recovery or RecoveryEngine(settings, sleep=sleep, health_check=check_database_connection)
        return cls(
            db=db,
            scrape_stage=ScrapeStage(db, ledger, recovery, adapters, settings),
            generate_stage=GenerateStage(db, ledger, recovery, ai, settings),
            list_stage=ListStage(db, ledger, recovery, adapters, settings),
            analyze_stage=AnalyzeStage(db, ledger, recovery, ai, settings),
            settings=settings,
            sleep=sleep,
        )

    def _select_trends(self, keywords: List[str]) -> List[TrendData]:
        if not keywords:
            return []
        stmt = (
            select(TrendData)
            .where(TrendData.keyword.in_(keywords))
            .order_by(TrendData.score.desc(), TrendData.search_volume.desc())
            .limit(self.settings.pipeline_top_trends)
        )
        return list(self.db.execute(stmt).scalars().all())

    async def run_full_pipeline(self, run_id: Optional[str] = None, analyze: bool = False) -> PipelineSummary:
        run_id = run_id or new_run_id()
        logger.info(f"Starting full pipeline run {run_id} (analyze={analyze})")

        try:
            scrape = await self.scrape_stage.run(run_id)
        except PipelineError as e:
            logger.error(f"Pipeline {run_id} aborted at scrape stage: {e}")
            return PipelineSummary(success=False, run_id=run_id, error=str(e))

        if analyze and self.analyze_stage is not None:
            try:
                await self.analyze_stage.run(run_id)
            except InsufficientDataError as e:
                logger.info(f"Skipping analysis: {e}")
            except PipelineError as e:
                logger.warning(f"Analysis failed, continuing with scrape scores: {e}")

        trends = self._select_trends(scrape.trends)
        summary = PipelineSummary(success=True, run_id=run_id)
        targets = self.settings.pipeline_target_marketplaces

        for index, trend in enumerate(trends):
            if index > 0:
                # 마켓 rate limit 보호용 상품 간 대기
                await self._sleep(self.settings.pipeline_product_delay_seconds)

            keyword = trend.keyword
            try:
                product = await self.generate_stage.run(trend, run_id)
            except Exception as e:
                logger.error(f"Generate failed for trend '{keyword}': {e}", exc_info=not isinstance(e, PipelineError))
                self.db.rollback()
                summary.failed_trends.append(keyword)
                continue
            summary.products_created += 1

            for marketplace in targets:
                try:
                    outcome = await self.list_stage.run(product, marketplace, run_id)
                except Exception as e:
                    logger.error(f"List failed for '{product.title}' on {marketplace}: {e}", exc_info=not isinstance(e, PipelineError))
                    self.db.rollback()
                    continue
                if outcome.status == ListStatus.PUBLISHED:
                    summary.listings_published += 1
                elif outcome.status == ListStatus.FAILED:
                    logger.warning(f"Listing '{product.title}' on {marketplace} failed: {outcome.error}")

        logger.info(
            f"Pipeline {run_id} finished: {summary.products_created} products, "
            f"{summary.listings_published} listings, {len(summary.failed_trends)} failed trends"
        )
        return summary

    async def run_stage(self, stage: str, run_id: Optional[str] = None, **kwargs) -> Any:
        """
        단일 스테이지 실행 (CLI/디버깅용)
        - scrape: marketplaces, category
        - analyze
        - generate: keyword, custom_prompt
        - list: product_id, marketplace
        """
        run_id = run_id or new_run_id()
        stage = stage.upper()
        if stage == JobStage.SCRAPE:
            return await self.scrape_stage.run(run_id, marketplaces=kwargs.get("marketplaces"), category=kwargs.get("category"))
        if stage == JobStage.ANALYZE:
            if self.analyze_stage is None:
                raise ValueError("Analyze stage is not configured")
            return await self.analyze_stage.run(run_id)
        if stage == JobStage.GENERATE:
            keyword = kwargs["keyword"]
            trend = self.db.execute(select(TrendData).where(TrendData.keyword == keyword)).scalar_one_or_none()
            if trend is None:
                raise LookupError(f"Trend not found: {keyword}")
            return await self.generate_stage.run(trend, run_id, custom_prompt=kwargs.get("custom_prompt"))
        if stage == JobStage.LIST:
            product_id = kwargs["product_id"]
            product = self.db.get(Product, uuid.UUID(str(product_id)))
            if product is None:
                raise LookupError(f"Product not found: {product_id}")
            return await self.list_stage.run(product, kwargs["marketplace"], run_id)
        raise ValueError(f"Unknown stage: {stage}")
