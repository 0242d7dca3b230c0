"""
Analyze stage

최근 analyze_window_days 일의 ScrapeResult 를 키워드별로 집계해 AI 로 순위를 매긴다.
데이터가 analyze_min_data_points(기본 10)건 미만이면 InsufficientDataError (순위를 추정하지 않음).
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from autolister.exceptions import InsufficientDataError
from autolister.models import JobStage, ScrapeResult, TrendData
from autolister.services.ai.service import AIContentAdapter
from autolister.services.error_recovery import RecoveryEngine
from autolister.services.job_ledger import JobLedger, build_job_key
from autolister.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class AnalyzeSummary:
    job_id: uuid.UUID
    data_points: int
    ranked: List[str] = field(default_factory=list)


class AnalyzeStage:
    """
    최근 ScrapeResult 를 키워드별로 집계해 AI 에 순위 매김을 요청하고 TrendData 에 반영.
    데이터가 최소치 미만이면 저신뢰 결과를 만들지 않고 InsufficientDataError.
    """

    def __init__(
        self,
        db: Session,
        ledger: JobLedger,
        recovery: RecoveryEngine,
        ai: AIContentAdapter,
        settings: Settings,
    ):
        self.db = db
        self.ledger = ledger
        self.recovery = recovery
        self.ai = ai
        self.settings = settings

    def _aggregate(self, rows: List[ScrapeResult]) -> List[Dict[str, Any]]:
        groups: Dict[str, List[ScrapeResult]] = {}
        for row in rows:
            groups.setdefault(row.keyword, []).append(row)

        trends = {
            t.keyword: t
            for t in self.db.execute(select(TrendData).where(TrendData.keyword.in_(list(groups)))).scalars()
        }

        aggregates = []
        for keyword, items in groups.items():
            prices = [r.price for r in items if r.price is not None]
            ratings = [r.rating for r in items if r.rating is not None]
            trend = trends.get(keyword)
            aggregates.append({
                "keyword": keyword,
                "dataPoints": len(items),
                "averagePrice": round(sum(prices) / len(prices), 2) if prices else None,
                "totalSales": sum(r.sales or 0 for r in items),
                "averageRating": round(sum(ratings) / len(ratings), 2) if ratings else None,
                "searchVolume": trend.search_volume if trend else 0,
                "competition": trend.competition if trend else None,
                "marketplaces": sorted({r.marketplace for r in items}),
            })
        return aggregates

    async def run(self, run_id: str) -> AnalyzeSummary:
        job = self.ledger.begin(
            build_job_key(JobStage.ANALYZE, "trends", run_id),
            JobStage.ANALYZE,
            metadata={"windowDays": self.settings.analyze_window_days, "provider": self.ai.name},
        )

        since = datetime.now(timezone.utc) - timedelta(days=self.settings.analyze_window_days)
        rows = list(
            self.db.execute(select(ScrapeResult).where(ScrapeResult.collected_at >= since)).scalars().all()
        )
        required = self.settings.analyze_min_data_points
        if len(rows) < required:
            error = InsufficientDataError(
                f"Analysis needs at least {required} data points, found {len(rows)}",
                available=len(rows),
                required=required,
            )
            self.ledger.fail(job.id, error)
            raise error

        aggregates = self._aggregate(rows)
        counts = {a["keyword"]: a["dataPoints"] for a in aggregates}

        run = await self.recovery.run(lambda: self.ai.analyze_trends(aggregates), context=f"analyze:{self.ai.name}")
        self.ledger.record_attempt(job.id, run.attempts)
        if not run.succeeded:
            self.ledger.fail(job.id, run.error)
            raise run.error

        analyzed_at = datetime.now(timezone.utc).isoformat()
        ranked_keywords = []
        for position, ranked in enumerate(run.value, start=1):
            trend = self.db.execute(select(TrendData).where(TrendData.keyword == ranked.keyword)).scalar_one_or_none()
            if trend is None:
                logger.debug(f"AI ranked unknown keyword '{ranked.keyword}', ignoring")
                continue
            trend.rank = ranked.rank or position
            if ranked.score is not None:
                trend.score = ranked.score
            trend.analysis = {
                "summary": ranked.summary,
                "recommendedAssets": ranked.recommended_assets,
                "competition": ranked.competition,
                "dataPoints": counts.get(ranked.keyword, 0),
                "analyzedAt": analyzed_at,
                "runId": run_id,
            }
            ranked_keywords.append(ranked.keyword)
        self.db.commit()

        self.ledger.complete(job.id, {"dataPoints": len(rows), "keywords": len(aggregates), "ranked": len(ranked_keywords)})
        logger.info(f"Analyzed {len(rows)} data points, ranked {len(ranked_keywords)} trends")
        return AnalyzeSummary(job_id=job.id, data_points=len(rows), ranked=ranked_keywords)
