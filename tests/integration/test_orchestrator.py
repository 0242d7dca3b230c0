import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from autolister.exceptions import ExternalServiceError
from autolister.marketplaces.base import ScannedListing
from autolister.models import Listing, Product, ProductStatus
from autolister.services.orchestrator_service import PipelineOrchestrator
from autolister.services.pipeline.analyze_stage import AnalyzeStage
from autolister.services.pipeline.generate_stage import GenerateStage
from autolister.services.pipeline.list_stage import ListStage, ListStatus
from autolister.services.pipeline.scrape_stage import ScrapeStage


SCANNED = [
    ScannedListing(marketplace="etsy", keyword="aura candle", search_volume=100, competition="low", price=21.0),
    ScannedListing(marketplace="etsy", keyword="wedding planner", search_volume=50, competition="low", price=18.5),
]


def _build(db_session, ledger, recovery, settings, adapters, ai, sleeps):
    async def record_sleep(seconds):
        sleeps.append(seconds)

    return PipelineOrchestrator(
        db=db_session,
        scrape_stage=ScrapeStage(db_session, ledger, recovery, adapters, settings),
        generate_stage=GenerateStage(db_session, ledger, recovery, ai, settings),
        list_stage=ListStage(db_session, ledger, recovery, adapters, settings),
        analyze_stage=AnalyzeStage(db_session, ledger, recovery, ai, settings),
        settings=settings,
        sleep=record_sleep,
    )


@pytest.mark.integration
class TestPipelineOrchestrator:
    def test_one_trend_failing_does_not_stop_the_next(self, db_session, ledger, recovery, test_settings, fake_adapter_cls, make_ai):
        adapter = fake_adapter_cls("etsy", scan_results=SCANNED)
        ai = make_ai([
            ExternalServiceError("gemini", "model refused the request", recoverable=False),
            {"title": "Wedding Planner Printable", "price": 12.0, "tags": ["wedding", "planner"]},
        ])
        sleeps = []
        orchestrator = _build(db_session, ledger, recovery, test_settings, {"etsy": adapter}, ai, sleeps)

        summary = asyncio.run(orchestrator.run_full_pipeline(run_id="run-e"))

        assert summary.success is True
        assert summary.failed_trends == ["aura candle"]
        products = db_session.execute(select(Product)).scalars().all()
        assert summary.products_created == len(products) == 1
        assert summary.listings_published == 1
        assert products[0].origin_keyword == "wedding planner"
        assert products[0].status == ProductStatus.PUBLISHED
        # 상품 간 대기는 두 번째 트렌드부터
        assert sleeps == [test_settings.pipeline_product_delay_seconds]

        data = summary.to_dict()
        assert data["productsCreated"] == 1
        assert data["failedTrends"] == ["aura candle"]

    def test_top_trends_limit(self, db_session, ledger, recovery, test_settings, fake_adapter_cls, make_ai):
        test_settings.pipeline_top_trends = 1
        adapter = fake_adapter_cls("etsy", scan_results=SCANNED)
        ai = make_ai([{"title": "Aura Candle Label Kit", "tags": ["candle"]}])
        orchestrator = _build(db_session, ledger, recovery, test_settings, {"etsy": adapter}, ai, [])

        summary = asyncio.run(orchestrator.run_full_pipeline(run_id="run-top"))

        assert summary.products_created == 1
        assert db_session.execute(select(Product)).scalar_one().origin_keyword == "aura candle"

    def test_scrape_failure_returns_unsuccessful_summary(self, db_session, ledger, recovery, test_settings, fake_adapter_cls, make_ai):
        adapter = fake_adapter_cls("etsy", available=False)
        orchestrator = _build(db_session, ledger, recovery, test_settings, {"etsy": adapter}, make_ai(), [])

        summary = asyncio.run(orchestrator.run_full_pipeline(run_id="run-x"))

        assert summary.success is False
        assert summary.products_created == 0
        assert "All scrape sources failed" in summary.error

    def test_insufficient_data_skips_analysis(self, db_session, ledger, recovery, test_settings, fake_adapter_cls, make_ai):
        adapter = fake_adapter_cls("etsy", scan_results=SCANNED)
        ai = make_ai([
            {"title": "Aura Candle Label Kit", "tags": ["candle"]},
            {"title": "Wedding Planner Printable", "tags": ["wedding"]},
        ])
        orchestrator = _build(db_session, ledger, recovery, test_settings, {"etsy": adapter}, ai, [])

        summary = asyncio.run(orchestrator.run_full_pipeline(run_id="run-a", analyze=True))

        # 데이터 2건 < 최소 10건: 분석은 건너뛰고 스크랩 점수로 진행
        assert summary.success is True
        assert summary.products_created == 2
        assert len(ai.provider.prompts) == 2

    def test_run_single_stages(self, db_session, ledger, recovery, test_settings, fake_adapter_cls, make_ai):
        adapter = fake_adapter_cls("etsy", scan_results=SCANNED)
        ai = make_ai([{"title": "Wedding Planner Printable", "tags": ["wedding"]}])
        orchestrator = _build(db_session, ledger, recovery, test_settings, {"etsy": adapter}, ai, [])

        scrape = asyncio.run(orchestrator.run_stage("scrape", run_id="r1"))
        assert scrape.trends == ["aura candle", "wedding planner"]

        product = asyncio.run(orchestrator.run_stage("generate", run_id="r1", keyword="wedding planner"))
        assert product.origin_keyword == "wedding planner"

        outcome = asyncio.run(orchestrator.run_stage("list", run_id="r1", product_id=str(product.id), marketplace="etsy"))
        assert outcome.status == ListStatus.PUBLISHED
        assert db_session.execute(select(Listing)).scalar_one().product_id == product.id

        with pytest.raises(LookupError):
            asyncio.run(orchestrator.run_stage("generate", run_id="r2", keyword="unknown"))
        with pytest.raises(ValueError):
            asyncio.run(orchestrator.run_stage("publish"))

    def test_unexpected_list_error_is_contained(self, db_session, ledger, recovery, test_settings, fake_adapter_cls, make_ai):
        adapter = fake_adapter_cls("etsy", scan_results=SCANNED[:1])
        ai = make_ai([{"title": "Aura Candle Label Kit", "tags": ["candle"]}])
        orchestrator = _build(db_session, ledger, recovery, test_settings, {"etsy": adapter}, ai, [])

        with patch.object(orchestrator.list_stage, "run", AsyncMock(side_effect=RuntimeError("boom"))) as mock_list:
            summary = asyncio.run(orchestrator.run_full_pipeline(run_id="run-l"))

        mock_list.assert_awaited_once()
        assert summary.success is True
        assert summary.products_created == 1
        assert summary.listings_published == 0
        assert summary.failed_trends == []
