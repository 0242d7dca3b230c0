"""
Generate stage

트렌드 1건을 AI 로 draft Product 1건으로 만든다.
제공자 출력은 normalize_ai_output 으로 정규화한 뒤 GeneratedProduct 스키마로 검증하며,
텍스트 응답이나 스키마 불일치는 GenerationError 로 재시도 대상이 된다.
가격: AI 제안가(양수) -> 트렌드 평균가 -> DEFAULT_PRICE
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from autolister.exceptions import DatabaseError, GenerationError, wrap_exception
from autolister.models import JobStage, Product, ProductStatus, TrendData
from autolister.schemas.product import GeneratedProduct
from autolister.services.ai.service import AIContentAdapter, generate_ai_content
from autolister.services.error_recovery import RecoveryEngine
from autolister.services.job_ledger import JobLedger, build_job_key
from autolister.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_PRICE = 9.99


class GenerateStage:
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

    @staticmethod
    def _resolve_price(generated: GeneratedProduct, trend: TrendData) -> tuple[float, str]:
        if generated.price is not None and generated.price > 0:
            return round(generated.price, 2), "ai"
        if trend.avg_price and trend.avg_price > 0:
            return round(trend.avg_price, 2), "trend"
        return DEFAULT_PRICE, "default"

    async def _generate(self, trend: TrendData, custom_prompt: Optional[str], marketplace: str) -> GeneratedProduct:
        content = await generate_ai_content(self.ai, trend, prompt=custom_prompt, marketplace=marketplace)
        data = content.json
        if isinstance(data, list):
            data = data[0] if data else None
        if content.format != "json" or not isinstance(data, dict):
            raise GenerationError(
                "AI provider returned text where JSON was expected", provider=self.ai.name, raw_output=content.text
            )
        try:
            return GeneratedProduct.model_validate(data)
        except SchemaValidationError as e:
            raise GenerationError(
                f"Generated product failed schema validation: {e.error_count()} error(s)",
                provider=self.ai.name,
                raw_output=content.text,
            ) from e

    async def run(
        self,
        trend: TrendData,
        run_id: str,
        custom_prompt: Optional[str] = None,
        parent_job_id: Optional[uuid.UUID] = None,
    ) -> Product:
        """
        트렌드 1건으로 draft Product 생성. 실패 시 Job 을 FAILED 로 남기고 예외를 다시 던진다.
        """
        job = self.ledger.begin(
            build_job_key(JobStage.GENERATE, trend.keyword, run_id),
            JobStage.GENERATE,
            metadata={"keyword": trend.keyword, "provider": self.ai.name},
            parent_job_id=parent_job_id,
        )
        target = (self.settings.pipeline_target_marketplaces or ["etsy"])[0]

        run = await self.recovery.run(
            lambda: self._generate(trend, custom_prompt, target),
            context=f"generate:{self.ai.name}",
        )
        self.ledger.record_attempt(job.id, run.attempts)
        if not run.succeeded:
            self.ledger.fail(job.id, run.error)
            raise run.error

        generated = run.value
        price, price_source = self._resolve_price(generated, trend)
        generation = {
            "provider": self.ai.name,
            "promptTrend": trend.keyword,
            "runId": run_id,
            "generatedAt": datetime.now(timezone.utc).isoformat(),
        }
        if custom_prompt:
            generation["customPrompt"] = custom_prompt

        product = Product(
            title=generated.title,
            description=generated.description,
            tags=list(generated.tags),
            price=price,
            category=generated.category,
            status=ProductStatus.DRAFT,
            origin_keyword=trend.keyword,
            trend_id=trend.id,
            seo_keywords=list(generated.seo_keywords),
            image_prompt=generated.image_prompt,
            content=generated.content,
            specifications=dict(generated.specifications),
            meta={
                "generation": generation,
                "pricing": {"suggested": price, "source": price_source},
                "trend": {
                    "keyword": trend.keyword,
                    "searchVolume": trend.search_volume,
                    "competition": trend.competition,
                },
                "listings": {},
            },
        )
        try:
            self.db.add(product)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            error = wrap_exception(e, DatabaseError, table_name="products", operation="insert")
            self.ledger.fail(job.id, error)
            raise error from e

        self.ledger.complete(job.id, {"productId": str(product.id), "title": product.title, "price": price})
        logger.info(f"Generated product '{product.title}' from trend '{trend.keyword}'")
        return product
