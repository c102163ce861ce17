from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from registry.models.models import GiftTypeEnum


class GiftBase(BaseModel):
    name: str = Field(min_length=2, max_length=255)
    description: str | None = Field(default=None, max_length=5000)
    price: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    category: str | None = Field(default=None, max_length=120)
    category_id: int | None = None
    available: int = Field(default=1, ge=0)
    total: int = Field(default=1, ge=1)
    gift_type: GiftTypeEnum | None = None
    image_url: str | None = None
    is_active: bool = True

    @field_validator("name")
    @classmethod
    def _name_strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("description", "category", "image_url")
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class GiftCreate(GiftBase):
    pass


class GiftUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=255)
    description: str | None = Field(default=None, max_length=5000)
    price: Decimal | None = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    category: str | None = Field(default=None, max_length=120)
    category_id: int | None = None
    available: int | None = Field(default=None, ge=0)
    total: int | None = Field(default=None, ge=1)
    gift_type: GiftTypeEnum | None = None
    image_url: str | None = None
    is_active: bool | None = None


class ContributionCreate(BaseModel):
    # Validated by the accounting service so every rejection carries the same error shape.
    amount: Any = None
    receipt: str | None = Field(default=None, max_length=500)
    note: str | None = Field(default=None, max_length=2000)


class ContributionPublic(BaseModel):
    id: int
    user_id: int
    username: str | None = None
    amount: float
    receipt_file: str | None = None
    note: str | None = None
    created_at: datetime


class GiftPublic(BaseModel):
    id: int
    name: str
    description: str | None
    price: float
    currency: str
    category: str | None
    category_id: int | None
    available: int
    total: int
    gift_type: GiftTypeEnum | None
    image_url: str | None
    is_active: bool
    is_contributed: bool
    total_contributed: float
    remaining: float
    is_fully_funded: bool
    created_at: datetime
    contributions: list[ContributionPublic] = []


class FundingStatePublic(BaseModel):
    gift_id: int
    price: float
    total_contributed: float
    remaining: float
    is_fully_funded: bool
    is_contributed: bool


class PaymentConfirmRequest(BaseModel):
    gift_ids: list[int] = Field(min_length=1)
    amounts: list[Any] | None = None
    receipt: str | None = Field(default=None, max_length=500)
    note: str | None = Field(default=None, max_length=2000)
    payment_method: str | None = None
    payment_reference: str | None = None

    @model_validator(mode="after")
    def _amounts_match_gifts(self) -> "PaymentConfirmRequest":
        if self.amounts is not None and len(self.amounts) > len(self.gift_ids):
            raise ValueError("amounts has more entries than gift_ids")
        return self


class PaymentOutcome(BaseModel):
    gift_id: int
    contribution_id: int
    amount: float
    total_contributed: float
    remaining: float
    is_fully_funded: bool


class PaymentFailure(BaseModel):
    gift_id: int
    error: str
    detail: str
    max_amount: float | None = None


class PaymentConfirmResponse(BaseModel):
    message: str
    contributor_id: int
    confirmed: list[PaymentOutcome]
    failed: list[PaymentFailure]
    payment_method: str | None = None
    payment_reference: str | None = None
