"""
AI Content Adapter

제공자(gemini/openai)의 원시 모델 인터페이스(AIProvider) 위에서 상품 생성/트렌드 분석 계약을 구현한다.
- 프롬프트 구성은 여기서만 한다 (스테이지는 프롬프트별 파싱을 하지 않음)
- 모든 결과는 pydantic 스키마로 검증하며, 형식이 맞지 않으면 GenerationError
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import quote

from pydantic import ValidationError as SchemaValidationError

from autolister.exceptions import ConfigurationError, GenerationError, PipelineError
from autolister.schemas.product import GeneratedProduct, RankedTrend
from autolister.services.ai.base import AIProvider
from autolister.services.ai.providers.gemini import GeminiProvider
from autolister.services.ai.providers.openai import OpenAIProvider
from autolister.settings import SUPPORTED_AI_PROVIDERS, Settings

logger = logging.getLogger(__name__)

ProductType = Literal["digital_download", "printable", "template", "ebook", "course"]

DEFAULT_PRICE_RANGE = (5.0, 50.0)


def _field(trend: Any, name: str, default: Any = None) -> Any:
    if isinstance(trend, dict):
        return trend.get(name, default)
    return getattr(trend, name, default)


def normalize_competition(value: Optional[str]) -> str:
    if not value:
        return "medium"
    normalized = value.strip().lower()
    if "low" in normalized:
        return "low"
    if "high" in normalized:
        return "high"
    return "medium"


def resolve_price_range(avg_price: Optional[float]) -> tuple[float, float]:
    """평균가 기준 ±20% (최소 폭 1). 평균가가 없으면 기본 범위"""
    if not isinstance(avg_price, (int, float)) or avg_price <= 0:
        return DEFAULT_PRICE_RANGE
    safe_price = max(1.0, float(avg_price))
    spread = max(1, round(safe_price * 0.2))
    return (
        round(max(1.0, safe_price - spread), 2),
        round(max(safe_price + spread, safe_price + 1), 2),
    )


def placeholder_image_url(prompt: str) -> str:
    return f"https://via.placeholder.com/800x600/4F46E5/FFFFFF?text={quote(prompt[:80])}"


@dataclass
class NormalizedAIContent:
    format: Literal["json", "text"]
    text: str
    json: Optional[Any] = None


def normalize_ai_output(raw: Any) -> NormalizedAIContent:
    """제공자 출력 형태와 무관하게 {format, json?, text} 로 정규화"""
    if isinstance(raw, GeneratedProduct):
        data = raw.model_dump()
        return NormalizedAIContent(format="json", json=data, text=json.dumps(data, ensure_ascii=False))
    if isinstance(raw, (dict, list)):
        return NormalizedAIContent(format="json", json=raw, text=json.dumps(raw, ensure_ascii=False))
    text = "" if raw is None else str(raw)
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return NormalizedAIContent(format="text", text=text)
    if isinstance(parsed, (dict, list)):
        return NormalizedAIContent(format="json", json=parsed, text=text)
    return NormalizedAIContent(format="text", text=text)


class AIContentAdapter:
    def __init__(self, provider: AIProvider):
        self.provider = provider

    @property
    def name(self) -> str:
        return self.provider.name

    @property
    def is_available(self) -> bool:
        return self.provider.is_available

    def build_product_prompt(
        self,
        trend: Any,
        custom_prompt: Optional[str] = None,
        product_type: ProductType = "digital_download",
        marketplace: str = "etsy",
    ) -> str:
        low, high = resolve_price_range(_field(trend, "avg_price"))
        trend_data = {
            "keywords": [_field(trend, "keyword")],
            "salesVelocity": max(0, int(_field(trend, "search_volume", 0) or 0)),
            "priceRange": {"min": low, "max": high},
            "competitionLevel": normalize_competition(_field(trend, "competition")),
        }
        prompt = f"""Generate a new digital product for {marketplace} marketplace.

Product Type: {product_type}
Trend Data: {json.dumps(trend_data, ensure_ascii=False)}
"""
        if custom_prompt:
            prompt += f"Custom Requirements: {custom_prompt}\n"
        prompt += """
Create a product with:
- Compelling title (SEO optimized)
- Detailed description highlighting benefits
- Relevant tags for discovery
- Competitive pricing within the price range
- Target category
- SEO keywords
- Product specifications

Return only JSON with keys: title, description, tags, price, category, seoKeywords, imagePrompt, content, specifications"""
        return prompt

    async def request_product(
        self,
        trend: Any,
        custom_prompt: Optional[str] = None,
        product_type: ProductType = "digital_download",
        marketplace: str = "etsy",
    ) -> Any:
        """제공자 원시 출력 (dict / list / 텍스트). 검증은 호출 측 책임"""
        prompt = self.build_product_prompt(trend, custom_prompt, product_type, marketplace)
        return await self.provider.generate_json(prompt)

    async def generate_product(
        self,
        trend: Any,
        custom_prompt: Optional[str] = None,
        product_type: ProductType = "digital_download",
        marketplace: str = "etsy",
    ) -> GeneratedProduct:
        raw = await self.request_product(trend, custom_prompt, product_type, marketplace)
        if isinstance(raw, str):
            content = normalize_ai_output(raw)
            if content.format != "json":
                raise GenerationError(
                    f"{self.name} returned text where JSON was expected", provider=self.name, raw_output=content.text
                )
            raw = content.json
        if isinstance(raw, list):
            raw = raw[0] if raw else {}
        try:
            return GeneratedProduct.model_validate(raw)
        except SchemaValidationError as e:
            raise GenerationError(
                f"{self.name} product output failed schema validation: {e.error_count()} error(s)",
                provider=self.name,
                raw_output=json.dumps(raw, ensure_ascii=False, default=str),
            ) from e

    async def analyze_trends(self, raw_trends: List[Dict[str, Any]]) -> List[RankedTrend]:
        prompt = f"""Analyze the following marketplace data and rank the trending keywords for digital products.
For each keyword return: keyword, rank (1 = best), score (0-1), competition (low/medium/high),
summary (one sentence), recommendedAssets (list of digital product ideas).

Data: {json.dumps(raw_trends[:100], ensure_ascii=False, default=str)}

Return only JSON: {{"trends": [...]}}"""
        raw = await self.provider.generate_json(prompt)
        items = raw.get("trends") if isinstance(raw, dict) else raw
        if not isinstance(items, list):
            raise GenerationError(
                "Trend analysis output did not contain a trends list",
                provider=self.name,
                raw_output=json.dumps(raw, ensure_ascii=False, default=str),
            )
        try:
            ranked = [RankedTrend.model_validate(item) for item in items]
        except SchemaValidationError as e:
            raise GenerationError(
                f"Trend analysis output failed schema validation: {e.error_count()} error(s)",
                provider=self.name,
            ) from e
        return sorted(ranked, key=lambda t: (t.rank is None, t.rank or 0, -(t.score or 0)))

    async def generate_image(self, prompt: str) -> str:
        """이미지 모델이 없거나 호출이 실패하면 placeholder URL"""
        try:
            url = await self.provider.generate_image(prompt)
        except PipelineError as e:
            logger.warning(f"{self.name} image generation failed, using placeholder: {e}")
            url = None
        return url or placeholder_image_url(prompt)

    async def generate_listing_content(self, product: GeneratedProduct, marketplace: str) -> str:
        prompt = f"""Generate optimized listing content for {marketplace} marketplace:

Product: {product.model_dump_json()}

Include:
- SEO-optimized title
- Compelling description with benefits
- Relevant tags
- Call-to-action
- Marketplace-specific formatting

Return only the content, no explanations."""
        text = await self.provider.generate_text(prompt)
        return text.strip() or product.description


def get_ai_provider(name: str, settings: Settings) -> AIProvider:
    """알 수 없는 제공자 이름은 기본값으로 대체하지 않고 즉시 실패"""
    key = (name or "").strip().lower()
    if key == "gemini":
        return GeminiProvider(settings.ai_api_keys("gemini"), model_name=settings.gemini_model)
    if key == "openai":
        return OpenAIProvider(settings.ai_api_keys("openai"), model_name=settings.openai_model)
    raise ConfigurationError(
        f"Unsupported AI provider: {name}. Supported: {', '.join(SUPPORTED_AI_PROVIDERS)}",
        setting="default_ai_provider",
    )


def get_content_adapter(settings: Settings, name: Optional[str] = None) -> AIContentAdapter:
    return AIContentAdapter(get_ai_provider(name or settings.default_ai_provider, settings))


async def generate_ai_content(
    adapter: AIContentAdapter,
    trend: Any,
    prompt: Optional[str] = None,
    product_type: ProductType = "digital_download",
    marketplace: str = "etsy",
) -> NormalizedAIContent:
    if not adapter.is_available:
        raise ConfigurationError(f"AI provider {adapter.name} is not available", setting="default_ai_provider")
    raw = await adapter.request_product(
        trend, custom_prompt=prompt, product_type=product_type, marketplace=marketplace
    )
    return normalize_ai_output(raw)
