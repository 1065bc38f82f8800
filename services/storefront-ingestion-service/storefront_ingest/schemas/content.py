from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PriceRange(BaseModel):
    min: float
    max: float
    currency: str = "USD"


class ProductCard(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | str
    title: str
    url: str = ""
    sku: str | None = None
    summary: str = ""
    attributes: dict[str, list[str]] = Field(default_factory=dict)
    categories: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    brand: str | None = None
    price_range: PriceRange | None = None
    stock_status: str | None = None
    variation_attributes: list[str] = Field(default_factory=list)
    updated_at: str | None = None

    @field_validator("attributes", mode="before")
    @classmethod
    def normalize_attributes(cls, value):
        if value is None or value == []:
            return {}
        return value


class PageContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | str
    title: str
    content: str = ""
    url: str = ""
    type: str | None = None
    updated_at: str | None = None
