"""
Marketplace Adapter contract

모든 마켓 어댑터가 구현하는 공통 계약과 값 타입.
- 원격 거절(4xx 응답)은 ListingResponse(success=False)로 반환 (예외 아님)
- 전송 계층 실패(타임아웃/연결 실패/429/인증 실패)는 타입이 있는 예외로 던져서
  복구 엔진이 분류할 수 있게 한다
"""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from autolister.exceptions import (
    AuthenticationError,
    ExternalServiceError,
    RateLimitError,
    ServiceTimeoutError,
)

logger = logging.getLogger(__name__)

MAX_SCAN_LIMIT = 100


@dataclass
class MarketplaceConfig:
    api_key: str = ""
    secret: str = ""
    base_url: str = ""
    region: Optional[str] = None
    shop_id: Optional[str] = None
    timeout: float = 15.0


@dataclass
class ListingRequest:
    title: str
    description: str
    price: float
    category: str = "Digital Downloads"
    tags: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    specifications: Dict[str, Any] = field(default_factory=dict)

    def to_partial(self, *fields: str) -> Dict[str, Any]:
        """
        update_product에 넘길 부분 요청. fields 지정 시 해당 필드만, 아니면 비어있지 않은 필드 전체.
        """
        data = asdict(self)
        if fields:
            return {name: data[name] for name in fields if name in data}
        return {name: value for name, value in data.items() if value not in (None, "", [], {})}


@dataclass
class ProductListing:
    id: str
    title: str
    description: str
    price: float
    category: str
    tags: List[str]
    images: List[str]
    status: str  # draft, active, inactive, sold_out
    marketplace: str
    external_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "price": self.price,
            "category": self.category,
            "tags": list(self.tags),
            "images": list(self.images),
            "status": self.status,
            "marketplace": self.marketplace,
            "externalId": self.external_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class ListingResponse:
    success: bool
    listing_id: Optional[str] = None
    external_id: Optional[str] = None
    error: Optional[str] = None
    listing: Optional[ProductListing] = None


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class ScannedListing:
    marketplace: str
    keyword: str
    product_id: str = ""
    title: Optional[str] = None
    price: Optional[float] = None
    currency: str = "USD"
    tags: List[str] = field(default_factory=list)
    category: Optional[str] = None
    sales: Optional[int] = None
    rating: Optional[float] = None
    url: Optional[str] = None
    search_volume: int = 0
    competition: str = "medium"
    raw: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.product_id:
            self.product_id = re.sub(r"[^a-z0-9]+", "-", self.keyword.lower()).strip("-") or "unknown"
        self.search_volume = max(0, int(self.search_volume or 0))


def parse_traffic(value: Any) -> int:
    """'1,200+' 같은 트래픽 표기를 숫자로 변환. 해석 불가 시 0"""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.replace(",", "").replace("+", "").strip()))
        except ValueError:
            return 0
    return 0


def parse_price(value: Any) -> Optional[float]:
    """숫자/문자열/{amount, divisor} 형태의 가격을 float으로 변환"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    if isinstance(value, dict):
        amount = value.get("amount", value.get("value"))
        divisor = value.get("divisor", 100 if "amount" in value else 1)
        try:
            return float(amount) / float(divisor or 1)
        except (TypeError, ValueError):
            return None
    return None


def competition_from_magnitude(value: int) -> str:
    if value >= 750:
        return "high"
    if value >= 300:
        return "medium"
    return "low"


class MarketplaceAdapter(ABC):
    """
    Base class for marketplace integrations.

    is_available 은 필수 자격 증명 존재 여부로만 계산한다. 호출자는 다른 메서드를 부르기 전에
    is_available 을 확인하고 False 를 설정 오류로 취급해야 한다.
    """

    name: str = "marketplace"
    required_credentials: tuple[str, ...] = ("api_key",)

    def __init__(self, config: MarketplaceConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport

    @property
    def is_available(self) -> bool:
        return all(getattr(self.config, attr, None) for attr in self.required_credentials)

    def _ensure_available(self) -> None:
        if not self.is_available:
            missing = [attr for attr in self.required_credentials if not getattr(self.config, attr, None)]
            raise ExternalServiceError(
                self.name,
                f"{self.name} credentials are not configured",
                recoverable=False,
                missing=missing,
            )

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, max=2),
        retry=retry_if_exception_type(httpx.ConnectError),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport) as client:
            return await client.request(method, url, headers=self._headers(), **kwargs)

    async def _request(self, method: str, path: str, allow_client_error: bool = False, **kwargs) -> httpx.Response:
        """
        HTTP 호출 + 상태 코드 매핑.
        allow_client_error=True 이면 401/403/429 를 제외한 4xx 응답을 그대로 돌려준다(원격 거절 처리용).
        """
        url = self._url(path)
        try:
            response = await self._send(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ServiceTimeoutError(
                self.name, f"{self.name} request timed out: {method} {path}", timeout_seconds=self.config.timeout
            ) from e
        except httpx.TransportError as e:
            raise ExternalServiceError(self.name, f"{self.name} connection failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(self.name, f"{self.name} unauthorized ({status})", status_code=status)
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                self.name,
                f"{self.name} rate limit exceeded",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                status_code=status,
            )
        if status >= 500 or (status >= 400 and not allow_client_error):
            raise ExternalServiceError(
                self.name, f"{self.name} API error ({status}): {response.text[:200]}", status_code=status
            )
        return response

    @staticmethod
    def _error_message(response: httpx.Response, default: str) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:200] or default
        if isinstance(payload, dict):
            error = payload.get("error") or payload.get("errors") or payload.get("message")
            if isinstance(error, list) and error:
                first = error[0]
                error = first.get("message") if isinstance(first, dict) else first
            if error:
                return str(error)
        return default

    @abstractmethod
    async def scan_trends(self, category: Optional[str] = None, limit: int = 50) -> List[ScannedListing]:
        pass

    @abstractmethod
    def validate_listing(self, request: ListingRequest) -> ValidationResult:
        pass

    @abstractmethod
    async def list_product(self, request: ListingRequest) -> ListingResponse:
        pass

    @abstractmethod
    async def update_product(self, listing_id: str, partial: Dict[str, Any]) -> ListingResponse:
        pass

    @abstractmethod
    async def delete_product(self, listing_id: str) -> bool:
        pass

    @abstractmethod
    async def get_product(self, listing_id: str) -> Optional[ProductListing]:
        pass

    @abstractmethod
    async def get_categories(self) -> List[str]:
        pass

    @staticmethod
    def _cap_limit(limit: int) -> int:
        return max(1, min(int(limit or 1), MAX_SCAN_LIMIT))
