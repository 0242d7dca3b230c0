import logging
from typing import Dict, Iterable, List, Optional

import httpx

from autolister.exceptions import ConfigurationError
from autolister.marketplaces.amazon import AmazonAdapter
from autolister.marketplaces.base import MarketplaceAdapter, MarketplaceConfig
from autolister.marketplaces.etsy import EtsyAdapter
from autolister.marketplaces.shopify import ShopifyAdapter
from autolister.settings import Settings

logger = logging.getLogger(__name__)

_ADAPTERS: Dict[str, type[MarketplaceAdapter]] = {
    "etsy": EtsyAdapter,
    "shopify": ShopifyAdapter,
    "amazon": AmazonAdapter,
}


def get_supported_marketplaces() -> List[str]:
    return list(_ADAPTERS.keys())


def _config_for(name: str, settings: Settings) -> MarketplaceConfig:
    timeout = settings.marketplace_timeout_seconds
    if name == "etsy":
        return MarketplaceConfig(
            api_key=settings.etsy_api_key,
            secret=settings.etsy_access_token,
            base_url=settings.etsy_api_base_url,
            shop_id=settings.etsy_shop_id or None,
            timeout=timeout,
        )
    if name == "shopify":
        domain = settings.shopify_shop_domain.strip().rstrip("/")
        domain = domain.removeprefix("https://").removeprefix("http://")
        return MarketplaceConfig(
            api_key=settings.shopify_access_token,
            base_url=f"https://{domain}/admin/api/{settings.shopify_api_version}" if domain else "",
            shop_id=domain or None,
            timeout=timeout,
        )
    return MarketplaceConfig(
        api_key=settings.amazon_access_key,
        secret=settings.amazon_secret_key,
        base_url=settings.amazon_api_base_url,
        region=settings.amazon_region,
        timeout=timeout,
    )


def get_marketplace_adapter(
    name: str,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> MarketplaceAdapter:
    """
    이름(대소문자 무시)으로 어댑터 생성. 알 수 없는 이름은 ConfigurationError.
    자격 증명 누락은 여기서 실패하지 않는다 - is_available 로 확인할 것.
    """
    key = (name or "").strip().lower()
    adapter_cls = _ADAPTERS.get(key)
    if adapter_cls is None:
        raise ConfigurationError(
            f"Unsupported marketplace: {name}. Supported: {', '.join(_ADAPTERS)}",
            setting="marketplace",
        )
    return adapter_cls(_config_for(key, settings), transport=transport)


def build_marketplace_adapters(names: Iterable[str], settings: Settings) -> Dict[str, MarketplaceAdapter]:
    adapters = {}
    for name in names:
        adapter = get_marketplace_adapter(name, settings)
        if not adapter.is_available:
            logger.warning(f"Marketplace '{adapter.name}' has no credentials configured")
        adapters[adapter.name] = adapter
    return adapters
