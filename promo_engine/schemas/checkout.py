from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class OrderTotals(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: int = Field(ge=0)
    shipping: int = Field(ge=0)
    discount: int = Field(ge=0)
    total: int = Field(ge=0)


class GiftLineItem(BaseModel):
    """Zero-priced order line for a promotional gift."""

    model_config = ConfigDict(frozen=True)

    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    option_id: Optional[str] = None
    name: str
    image_url: Optional[str] = None
    quantity: int = Field(ge=1)
    unit_price: int = 0
    line_total: int = 0
    # retail value of the gift, for reporting only
    value: int = 0
    is_gift: bool = True
    source_promotion_id: str
