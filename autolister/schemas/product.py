import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class GeneratedProduct(BaseModel):
    """
    AI 제공자가 돌려주는 구조화된 상품 데이터. camelCase(seoKeywords 등) 키도 허용.
    """
    title: str = Field(min_length=1)
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    price: Optional[float] = None
    category: str = "Digital Downloads"
    seo_keywords: List[str] = Field(default_factory=list, validation_alias=AliasChoices("seo_keywords", "seoKeywords"))
    image_prompt: Optional[str] = Field(default=None, validation_alias=AliasChoices("image_prompt", "imagePrompt"))
    content: Optional[str] = None
    specifications: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("tags", "seo_keywords", mode="before")
    @classmethod
    def split_keywords(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @field_validator("price")
    @classmethod
    def validate_price(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("price must be zero or greater")
        return v

    @field_validator("content", mode="before")
    @classmethod
    def stringify_content(cls, v: Any) -> Any:
        if v is not None and not isinstance(v, str):
            return str(v)
        return v


class RankedTrend(BaseModel):
    keyword: str
    rank: Optional[int] = None
    score: Optional[float] = Field(default=None, ge=0, le=1)
    summary: Optional[str] = None
    recommended_assets: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("recommended_assets", "recommendedAssets")
    )
    competition: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ListingProductIn(BaseModel):
    title: str
    description: str = ""
    price: float
    category: str = "Digital Downloads"
    tags: List[str] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list)
    specifications: Dict[str, Any] = Field(default_factory=dict)


class ListingProductPatch(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    images: Optional[List[str]] = None


class CreateListingIn(BaseModel):
    marketplace: str = Field(min_length=1)
    product: ListingProductIn


class UpdateListingIn(BaseModel):
    marketplace: str = Field(min_length=1)
    listing_id: str = Field(min_length=1, validation_alias=AliasChoices("listingId", "listing_id"))
    product: ListingProductPatch


class DeleteListingIn(BaseModel):
    marketplace: str = Field(min_length=1)
    listing_id: str = Field(min_length=1, validation_alias=AliasChoices("listingId", "listing_id"))


class ListingOut(BaseModel):
    id: uuid.UUID
    product_id: uuid.UUID = Field(serialization_alias="productId")
    marketplace: str
    remote_id: Optional[str] = Field(default=None, serialization_alias="remoteId")
    status: str
    price: Optional[float] = None
    currency: str
    error: Optional[str] = None
    created_at: Optional[datetime] = Field(default=None, serialization_alias="createdAt")

    model_config = ConfigDict(from_attributes=True)


class PipelineRunIn(BaseModel):
    analyze: bool = False
    run_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("runId", "run_id"))
