"""Coupon schemas."""

from datetime import UTC, datetime
from typing import Self
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from coupon_ledger.models.coupon import DiscountType

CODE_PATTERN = r"^[A-Z0-9_-]+$"


def normalize_code(code: str) -> str:
    """Coupon codes are case-insensitive and stored upper-cased."""
    return code.strip().upper()


def _to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class CouponCreate(BaseModel):
    code: str = Field(min_length=3, max_length=50, pattern=CODE_PATTERN)
    description: str | None = None
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_value: int = Field(ge=0)
    min_purchase: int = Field(default=0, ge=0)
    max_discount: int | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=0)
    is_active: bool = True
    valid_from: datetime | None = None
    valid_until: datetime | None = None

    @field_validator("code", mode="before")
    @classmethod
    def _normalize_code(cls, value: object) -> object:
        return normalize_code(value) if isinstance(value, str) else value

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _window_in_utc(cls, value: datetime | None) -> datetime | None:
        return _to_utc(value)

    @model_validator(mode="after")
    def _check_window(self) -> Self:
        if self.valid_from and self.valid_until and self.valid_from > self.valid_until:
            raise ValueError("valid_from must not be after valid_until")
        return self


class CouponUpdate(BaseModel):
    code: str | None = Field(default=None, min_length=3, max_length=50, pattern=CODE_PATTERN)
    description: str | None = None
    discount_type: DiscountType | None = None
    discount_value: int | None = Field(default=None, ge=0)
    min_purchase: int | None = Field(default=None, ge=0)
    max_discount: int | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=0)
    is_active: bool | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None

    @field_validator("code", mode="before")
    @classmethod
    def _normalize_code(cls, value: object) -> object:
        return normalize_code(value) if isinstance(value, str) else value

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _window_in_utc(cls, value: datetime | None) -> datetime | None:
        return _to_utc(value)


class CouponResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    description: str | None = None
    discount_type: str
    discount_value: int
    min_purchase: int
    max_discount: int | None = None
    usage_limit: int | None = None
    used_count: int
    is_active: bool
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ValidateCouponRequest(BaseModel):
    """Dry-run check of a code against a purchase subtotal."""

    code: str = Field(min_length=1, max_length=50)
    amount: int = Field(ge=0)
    user_id: str | None = Field(default=None, max_length=255)


class ApplyCouponRequest(BaseModel):
    """Redeem a code; without ``purchase_id`` this is a preview."""

    code: str = Field(min_length=1, max_length=50)
    amount: int = Field(ge=0)
    user_id: str = Field(min_length=1, max_length=255)
    purchase_id: str | None = Field(default=None, min_length=1, max_length=255)


class CouponEvaluationResponse(BaseModel):
    valid: bool = True
    coupon_id: UUID
    code: str
    description: str | None = None
    original_amount: int
    discount_amount: int
    final_amount: int
    usage_recorded: bool


class UsageDiscrepancyResponse(BaseModel):
    """A coupon whose counter disagrees with its usage ledger."""

    coupon_id: UUID
    code: str
    used_count: int
    recorded_count: int
