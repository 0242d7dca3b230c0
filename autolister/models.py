from typing import Any
from datetime import datetime
import uuid

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


# PostgreSQL에서는 JSONB, 그 외(SQLite 테스트 등)에서는 JSON
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class JobStage:
    SCRAPE = "SCRAPE"
    ANALYZE = "ANALYZE"
    GENERATE = "GENERATE"
    LIST = "LIST"

    ALL = (SCRAPE, ANALYZE, GENERATE, LIST)


class JobStatus:
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    TERMINAL = (SUCCESS, FAILED)


class ProductStatus:
    DRAFT = "draft"
    PUBLISHED = "published"


class ListingStatus:
    SUCCESS = "success"
    FAILED = "failed"


class TrendData(Base):
    """
    키워드 단위 수요 신호. keyword 기준 upsert (재스캔 시 갱신, 중복 생성 없음)
    """
    __tablename__ = "trends"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    keyword: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    search_volume: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    competition: Mapped[str] = mapped_column(Text, nullable=False, default="medium")  # low, medium, high
    avg_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source: Mapped[str | None] = mapped_column(Text, nullable=True)
    analysis: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    last_scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ScrapeResult(Base):
    """
    외부 리스팅의 특정 시점 스냅샷. 생성 후 수정하지 않는다.
    """
    __tablename__ = "scrape_results"
    __table_args__ = (
        UniqueConstraint("marketplace", "product_id", "collected_at", name="uq_scrape_results_marketplace_product_collected"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    marketplace: Mapped[str] = mapped_column(Text, nullable=False)
    product_id: Mapped[str] = mapped_column(Text, nullable=False)
    collected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    keyword: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="USD")
    tags: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    sales: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("jobs.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Product(Base):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tags: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False, default="Digital Downloads")
    status: Mapped[str] = mapped_column(Text, nullable=False, default=ProductStatus.DRAFT)

    # 원본 트렌드 연결 (provenance)
    origin_keyword: Mapped[str] = mapped_column(Text, nullable=False)
    trend_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("trends.id"), nullable=True)

    seo_keywords: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    image_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    specifications: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    meta: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    listings: Mapped[list["Listing"]] = relationship(back_populates="product")


class Listing(Base):
    """
    (Product, marketplace) 게시 시도 1건. 파이프라인은 삭제하지 않는다.
    """
    __tablename__ = "listings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id"), nullable=False)
    marketplace: Mapped[str] = mapped_column(Text, nullable=False)
    remote_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="USD")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("jobs.id"), nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    product: Mapped[Product] = relationship(back_populates="listings")


class Job(Base):
    """
    스테이지 실행 1건의 멱등성/감사 레코드. job_key 유니크 제약이 유일한 동시성 제어 수단.
    RUNNING -> SUCCESS | FAILED 로만 전이하며 종료 상태는 변경 불가.
    """
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    stage: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=JobStatus.RUNNING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    parent_job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("jobs.id"), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "jobKey": self.job_key,
            "stage": self.stage,
            "status": self.status,
            "attempts": self.attempts,
            "result": self.result,
            "error": self.error,
            "metadata": self.meta,
            "parentJobId": str(self.parent_job_id) if self.parent_job_id else None,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "durationMs": self.duration_ms,
        }
