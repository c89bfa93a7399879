from decimal import Decimal

from pydantic import Field

from shared.events import CamelModel


class ProductCreate(CamelModel):
    sku: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    price: Decimal = Field(ge=0)
    quantity: int = Field(ge=0)


class ProductUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    price: Decimal | None = Field(default=None, ge=0)


class QuantityAdjustment(CamelModel):
    delta: int
