import asyncio

import pytest
from sqlalchemy import select

from autolister.exceptions import ExternalServiceError, GenerationError
from autolister.models import JobStatus, Product, ProductStatus, TrendData
from autolister.services.pipeline.generate_stage import DEFAULT_PRICE, GenerateStage


@pytest.fixture
def trend(db_session):
    row = TrendData(keyword="Aura Candle", search_volume=80, competition="low", avg_price=21.0, score=0.72)
    db_session.add(row)
    db_session.commit()
    return row


@pytest.mark.integration
class TestGenerateStage:
    def test_creates_draft_product_with_provenance(self, db_session, ledger, recovery, test_settings, make_ai, trend):
        ai = make_ai([{"title": "Handmade Aura Candle", "price": 24.5, "tags": ["candle", "handmade"]}])
        stage = GenerateStage(db_session, ledger, recovery, ai, test_settings)

        product = asyncio.run(stage.run(trend, "run-1"))

        stored = db_session.get(Product, product.id)
        assert stored.status == ProductStatus.DRAFT
        assert stored.price == 24.5
        assert stored.tags == ["candle", "handmade"]
        assert stored.origin_keyword == "Aura Candle"
        assert stored.trend_id == trend.id
        assert stored.meta["generation"]["promptTrend"] == "Aura Candle"
        assert stored.meta["generation"]["provider"] == "gemini"
        assert stored.meta["pricing"] == {"suggested": 24.5, "source": "ai"}
        assert stored.meta["listings"] == {}

        job = ledger.get_by_key("generate:aura-candle:run-1")
        assert job.status == JobStatus.SUCCESS
        assert job.result["productId"] == str(product.id)

    def test_price_falls_back_to_trend_then_default(self, db_session, ledger, recovery, test_settings, make_ai, trend):
        stage = GenerateStage(db_session, ledger, recovery, make_ai([{"title": "Aura Candle Labels"}]), test_settings)
        product = asyncio.run(stage.run(trend, "run-1"))
        assert product.price == 21.0
        assert product.meta["pricing"]["source"] == "trend"

        trend.avg_price = 0
        db_session.commit()
        stage = GenerateStage(db_session, ledger, recovery, make_ai([{"title": "Aura Candle Labels"}]), test_settings)
        product = asyncio.run(stage.run(trend, "run-2"))
        assert product.price == DEFAULT_PRICE

    def test_zero_ai_price_is_not_used(self, db_session, ledger, recovery, test_settings, make_ai, trend):
        stage = GenerateStage(db_session, ledger, recovery, make_ai([{"title": "Handmade Aura Candle", "price": 0}]), test_settings)

        product = asyncio.run(stage.run(trend, "run-1"))

        assert product.price == 21.0
        assert product.meta["pricing"] == {"suggested": 21.0, "source": "trend"}

    def test_custom_prompt_is_recorded(self, db_session, ledger, recovery, test_settings, make_ai, trend):
        ai = make_ai([{"title": "Aura Candle Bundle"}])
        stage = GenerateStage(db_session, ledger, recovery, ai, test_settings)

        product = asyncio.run(stage.run(trend, "run-1", custom_prompt="eco friendly"))

        assert product.meta["generation"]["customPrompt"] == "eco friendly"
        assert "Custom Requirements: eco friendly" in ai.provider.prompts[0]

    def test_malformed_output_is_retried_then_fails(self, db_session, ledger, recovery, test_settings, make_ai, trend):
        # title 누락 -> GenerationError (복구 가능) -> 최대 시도 후 실패
        ai = make_ai([{"description": "no title"}] * 3)
        stage = GenerateStage(db_session, ledger, recovery, ai, test_settings)

        with pytest.raises(GenerationError):
            asyncio.run(stage.run(trend, "run-1"))

        job = ledger.get_by_key("generate:aura-candle:run-1")
        assert job.status == JobStatus.FAILED
        assert job.attempts == 3
        assert job.error["code"] == "GENERATION_ERROR"
        assert db_session.execute(select(Product)).first() is None

    def test_json_text_output_is_accepted(self, db_session, ledger, recovery, test_settings, make_ai, trend):
        ai = make_ai(['{"title": "Aura Candle Label Kit", "price": 14}'])
        stage = GenerateStage(db_session, ledger, recovery, ai, test_settings)

        product = asyncio.run(stage.run(trend, "run-1"))

        assert product.title == "Aura Candle Label Kit"
        assert product.price == 14.0

    def test_plain_text_output_is_retried_then_fails(self, db_session, ledger, recovery, test_settings, make_ai, trend):
        ai = make_ai(["Here are some ideas for aura candles."] * 3)
        stage = GenerateStage(db_session, ledger, recovery, ai, test_settings)

        with pytest.raises(GenerationError) as excinfo:
            asyncio.run(stage.run(trend, "run-1"))

        assert "text where JSON was expected" in str(excinfo.value)
        job = ledger.get_by_key("generate:aura-candle:run-1")
        assert job.status == JobStatus.FAILED
        assert job.attempts == 3
        assert db_session.execute(select(Product)).first() is None

    def test_unrecoverable_provider_error(self, db_session, ledger, recovery, test_settings, make_ai, trend):
        ai = make_ai([ExternalServiceError("gemini", "Gemini API key is not configured", recoverable=False)])
        stage = GenerateStage(db_session, ledger, recovery, ai, test_settings)

        with pytest.raises(ExternalServiceError):
            asyncio.run(stage.run(trend, "run-1"))

        job = ledger.get_by_key("generate:aura-candle:run-1")
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
