import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from autolister.exceptions import InsufficientDataError
from autolister.models import JobStatus, ScrapeResult, TrendData
from autolister.services.pipeline.analyze_stage import AnalyzeStage


def _seed(session, keyword, count, collected_at=None, price=10.0):
    collected_at = collected_at or datetime.now(timezone.utc)
    session.add(TrendData(keyword=keyword, search_volume=100, competition="medium", avg_price=price, score=0.5))
    for i in range(count):
        session.add(ScrapeResult(
            marketplace="etsy",
            product_id=f"{keyword}-{i}",
            collected_at=collected_at,
            keyword=keyword,
            price=price + i,
            sales=2,
            rating=4.0,
        ))
    session.commit()


@pytest.mark.integration
class TestAnalyzeStage:
    def test_fewer_than_minimum_data_points(self, db_session, ledger, recovery, test_settings, make_ai):
        _seed(db_session, "wedding planner", 9)
        ai = make_ai()
        stage = AnalyzeStage(db_session, ledger, recovery, ai, test_settings)

        with pytest.raises(InsufficientDataError) as excinfo:
            asyncio.run(stage.run("run-1"))

        assert excinfo.value.available == 9
        assert excinfo.value.required == 10
        assert ledger.get_by_key("analyze:trends:run-1").status == JobStatus.FAILED
        # AI 는 호출되지 않는다
        assert ai.provider.prompts == []

    def test_old_results_are_outside_window(self, db_session, ledger, recovery, test_settings, make_ai):
        _seed(db_session, "old trend", 12, collected_at=datetime.now(timezone.utc) - timedelta(days=30))
        stage = AnalyzeStage(db_session, ledger, recovery, make_ai(), test_settings)

        with pytest.raises(InsufficientDataError):
            asyncio.run(stage.run("run-1"))

    def test_ranks_trends(self, db_session, ledger, recovery, test_settings, make_ai):
        _seed(db_session, "wedding planner", 6)
        _seed(db_session, "aura candle", 5, price=20.0)
        ai = make_ai([{"trends": [
            {"keyword": "aura candle", "rank": 1, "score": 0.95, "summary": "rising", "recommendedAssets": ["label template"]},
            {"keyword": "wedding planner", "rank": 2, "score": 0.6},
            {"keyword": "not scraped", "rank": 3, "score": 0.1},
        ]}])
        stage = AnalyzeStage(db_session, ledger, recovery, ai, test_settings)

        summary = asyncio.run(stage.run("run-1"))

        assert summary.data_points == 11
        assert summary.ranked == ["aura candle", "wedding planner"]
        candle = db_session.execute(select(TrendData).where(TrendData.keyword == "aura candle")).scalar_one()
        assert candle.rank == 1
        assert candle.score == 0.95
        assert candle.analysis["recommendedAssets"] == ["label template"]
        assert candle.analysis["dataPoints"] == 5
        assert candle.analysis["runId"] == "run-1"

        job = ledger.get_by_key("analyze:trends:run-1")
        assert job.status == JobStatus.SUCCESS
        assert job.result["ranked"] == 2
        assert '"averagePrice": 22.0' in ai.provider.prompts[0]
