"""Pytest configuration and fixtures."""

from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from autolister.marketplaces.base import (
    ListingRequest,
    ListingResponse,
    MarketplaceAdapter,
    MarketplaceConfig,
    ProductListing,
    ScannedListing,
    ValidationResult,
)
from autolister.models import Base
from autolister.services.ai.base import AIProvider
from autolister.services.ai.service import AIContentAdapter
from autolister.services.error_recovery import RecoveryEngine
from autolister.services.job_ledger import JobLedger
from autolister.settings import Settings


# 테스트용 메모리 SQLite 엔진 (StaticPool: 모든 세션이 같은 커넥션을 공유)
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,  # 테스트 로그 줄이기
)

TestSessionLocal = sessionmaker(
    bind=test_engine,
    autoflush=False,
    expire_on_commit=False,
)


@pytest.fixture(scope="function")
def test_session() -> Session:
    """
    테스트용 데이터베이스 세션 fixture.
    각 테스트마다 새로운 메모리 DB 생성.
    """
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def db_session(test_session: Session):
    """test_session alias"""
    yield test_session


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        etsy_api_key="etsy-key",
        etsy_access_token="etsy-token",
        etsy_shop_id="12345",
        shopify_access_token="shpat_test",
        shopify_shop_domain="test-shop.myshopify.com",
        amazon_access_key="",
        amazon_secret_key="",
        gemini_api_keys=["test-gemini-key"],
        openai_api_keys=[],
        default_ai_provider="gemini",
        scrape_marketplaces=["etsy"],
        pipeline_target_marketplaces=["etsy"],
        pipeline_top_trends=5,
        pipeline_product_delay_seconds=0,
        analyze_min_data_points=10,
        recovery_max_attempts=3,
        recovery_escalation_threshold=3,
        recovery_backoff_ladder=[0, 0],
        recovery_database_delay=0,
        recovery_api_delay=0,
        recovery_rate_limit_delay=0,
        recovery_timeout_delay=0,
    )


@pytest.fixture
def recovery(test_settings: Settings) -> RecoveryEngine:
    return RecoveryEngine(test_settings, sleep=no_sleep, health_check=lambda: True)


@pytest.fixture
def ledger(test_session: Session) -> JobLedger:
    return JobLedger(test_session)


class FakeMarketplaceAdapter(MarketplaceAdapter):
    """
    스크립트된 응답을 돌려주는 어댑터.
    *_errors 리스트의 예외를 순서대로 먼저 던진 뒤 정상 응답을 돌려준다.
    """

    required_credentials = ("api_key",)

    def __init__(
        self,
        name: str = "etsy",
        available: bool = True,
        scan_results: Optional[List[ScannedListing]] = None,
        scan_errors: Optional[List[BaseException]] = None,
        list_response: Optional[ListingResponse] = None,
        list_errors: Optional[List[BaseException]] = None,
        update_response: Optional[ListingResponse] = None,
    ):
        super().__init__(MarketplaceConfig(api_key="fake-key" if available else ""))
        self.name = name
        self.scan_results = scan_results or []
        self.scan_errors = list(scan_errors or [])
        self.list_response = list_response or ListingResponse(success=True, listing_id=f"{name}_123", external_id=f"{name}_123")
        self.list_errors = list(list_errors or [])
        self.update_response = update_response or ListingResponse(success=True, listing_id=f"{name}_123")
        self.scan_calls = 0
        self.list_calls = 0
        self.update_calls: List[Dict[str, Any]] = []

    async def scan_trends(self, category: Optional[str] = None, limit: int = 50) -> List[ScannedListing]:
        self.scan_calls += 1
        if self.scan_errors:
            raise self.scan_errors.pop(0)
        return list(self.scan_results)

    def validate_listing(self, request: ListingRequest) -> ValidationResult:
        errors = []
        if not request.title or len(request.title) < 10:
            errors.append("Title must be at least 10 characters long")
        if len(request.tags) < 1:
            errors.append("At least one tag is required")
        return ValidationResult(valid=not errors, errors=errors)

    async def list_product(self, request: ListingRequest) -> ListingResponse:
        self.list_calls += 1
        if self.list_errors:
            raise self.list_errors.pop(0)
        return self.list_response

    async def update_product(self, listing_id: str, partial: Dict[str, Any]) -> ListingResponse:
        self.update_calls.append({"listing_id": listing_id, **partial})
        return self.update_response

    async def delete_product(self, listing_id: str) -> bool:
        return True

    async def get_product(self, listing_id: str) -> Optional[ProductListing]:
        return None

    async def get_categories(self) -> List[str]:
        return ["Digital Downloads"]


class FakeAIProvider(AIProvider):
    """generate_json 응답을 순서대로 돌려준다. 예외 인스턴스면 던진다."""

    def __init__(self, responses: Optional[List[Any]] = None, name: str = "gemini", available: bool = True):
        self.name = name
        self._available = available
        self.responses = list(responses or [])
        self.prompts: List[str] = []

    @property
    def is_available(self) -> bool:
        return self._available

    async def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        self.prompts.append(prompt)
        response = self.responses.pop(0) if self.responses else ""
        if isinstance(response, BaseException):
            raise response
        return str(response)

    async def generate_json(self, prompt: str, model: Optional[str] = None):
        self.prompts.append(prompt)
        response = self.responses.pop(0) if self.responses else {}
        if isinstance(response, BaseException):
            raise response
        return response


@pytest.fixture
def fake_adapter_cls():
    return FakeMarketplaceAdapter


@pytest.fixture
def make_ai():
    def _make(responses=None, name="gemini", available=True) -> AIContentAdapter:
        return AIContentAdapter(FakeAIProvider(responses, name=name, available=available))
    return _make


# 테스트 마커 정의
def pytest_configure(config):
    """Pytest 마커 등록."""
    config.addinivalue_line("markers", "unit: 단위 테스트 (DB 불필요)")
    config.addinivalue_line("markers", "integration: 통합 테스트 (in-memory SQLite)")
    config.addinivalue_line("markers", "slow: 느린 테스트 (> 1분)")
