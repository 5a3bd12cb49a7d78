"""Pydantic schemas for cart edits."""

from pydantic import BaseModel, Field, field_validator

from apps.orders.schemas import normalize_sku


class CartLineIn(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    quantity: int = Field(gt=0)

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        return normalize_sku(v)
