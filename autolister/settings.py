from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


SUPPORTED_AI_PROVIDERS = ("gemini", "openai")


class Settings(BaseSettings):
    database_url: str = "sqlite:///./autolister.db"

    # Marketplace credentials (isAvailable는 이 값들의 존재 여부로만 계산)
    etsy_api_key: str = ""
    etsy_access_token: str = ""
    etsy_shop_id: str = ""
    etsy_api_base_url: str = "https://openapi.etsy.com/v3"

    shopify_access_token: str = ""
    shopify_shop_domain: str = ""
    shopify_api_version: str = "2023-10"

    amazon_access_key: str = ""
    amazon_secret_key: str = ""
    amazon_region: str = "na"
    amazon_api_base_url: str = "https://sellingpartnerapi-na.amazon.com"

    marketplace_timeout_seconds: float = 15.0  # 어댑터별 요청 타임아웃

    # AI Settings
    default_ai_provider: str = "gemini"  # gemini or openai

    # Gemini
    gemini_api_key: str = ""  # Backwards compatibility
    gemini_api_keys: list[str] = []  # List of keys for rotation
    gemini_model: str = "gemini-1.5-pro"

    # OpenAI
    openai_api_keys: list[str] = []  # List of keys for rotation
    openai_model: str = "gpt-4o-mini"

    # Pipeline
    scrape_marketplaces: list[str] = ["etsy"]
    pipeline_target_marketplaces: list[str] = ["etsy", "shopify"]
    pipeline_top_trends: int = 5
    pipeline_product_delay_seconds: float = 2.0  # 상품 간 대기 시간 (마켓 rate limit 보호)
    scan_limit: int = 20
    analyze_min_data_points: int = 10
    analyze_window_days: int = 7
    listing_currency: str = "USD"

    # Error recovery
    recovery_max_attempts: int = 3
    recovery_escalation_threshold: int = 3
    recovery_backoff_ladder: list[float] = [1.0, 2.0, 4.0, 8.0]
    recovery_database_delay: float = 2.0
    recovery_api_delay: float = 1.0
    recovery_rate_limit_delay: float = 5.0
    recovery_timeout_delay: float = 3.0

    def ai_api_keys(self, provider: str) -> list[str]:
        """프로바이더별 API 키 목록 (rotation 순서 유지, 중복 제거)"""
        if provider == "gemini":
            keys = list(self.gemini_api_keys)
            if self.gemini_api_key and self.gemini_api_key not in keys:
                keys.insert(0, self.gemini_api_key)
            return [k for k in keys if k]
        if provider == "openai":
            return [k for k in self.openai_api_keys if k]
        return []

    def reload(self) -> "Settings":
        """환경변수/.env를 다시 읽어 새 인스턴스를 반환"""
        return self.__class__()

    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if v and not v.startswith(("postgresql", "sqlite")):
            raise ValueError("DB URL must start with 'postgresql' or 'sqlite'.")
        return v

    @field_validator("etsy_api_base_url", "amazon_api_base_url")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with 'http://' or 'https://'.")
        return v

    @field_validator(
        "marketplace_timeout_seconds",
        "pipeline_product_delay_seconds",
        "recovery_database_delay",
        "recovery_api_delay",
        "recovery_rate_limit_delay",
        "recovery_timeout_delay",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Delay values must be zero or greater.")
        return v

    @field_validator("recovery_backoff_ladder")
    @classmethod
    def validate_backoff_ladder(cls, v: list[float]) -> list[float]:
        if any(delay < 0 for delay in v):
            raise ValueError("Delay values must be zero or greater.")
        return v

    @field_validator("pipeline_top_trends")
    @classmethod
    def validate_top_trends(cls, v: int) -> int:
        if not 1 <= v <= 50:
            raise ValueError("pipeline_top_trends must be between 1 and 50.")
        return v

    @field_validator("scan_limit")
    @classmethod
    def validate_scan_limit(cls, v: int) -> int:
        if not 1 <= v <= 100:
            raise ValueError("scan_limit must be between 1 and 100.")
        return v

    @field_validator("recovery_max_attempts", "recovery_escalation_threshold", "analyze_min_data_points")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Value must be at least 1.")
        return v

    @field_validator("default_ai_provider")
    @classmethod
    def validate_ai_provider(cls, v: str) -> str:
        name = v.strip().lower()
        if name not in SUPPORTED_AI_PROVIDERS:
            raise ValueError(f"Unsupported AI provider: {v}")
        return name

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)


settings = Settings()
