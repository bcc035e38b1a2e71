from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from promo_engine.domain.enums import ConflictType, PromotionType
from promo_engine.schemas.promotion import GiftOption, Promotion, PromotionRule


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class CartItem(_Frozen):
    product_id: str = Field(min_length=1)
    variant_id: Optional[str] = None
    quantity: int
    unit_price: int
    subtotal: int
    category_ids: frozenset[str] = frozenset()


class FreeGift(_Frozen):
    promotion_id: str
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    option_id: Optional[str] = None
    name: str
    image_url: Optional[str] = None
    quantity: int = Field(default=1, ge=1)
    value: int = Field(default=0, ge=0)

    @property
    def total_value(self) -> int:
        return self.value * self.quantity


class PendingGiftSelection(_Frozen):
    """Placeholder for a gift the customer still has to choose."""

    promotion_id: str
    promotion_name: str
    rule_id: str
    slot: int
    options: tuple[GiftOption, ...]
    max_selections: int
    requires_selection: bool = True
    product_id: Optional[str] = None


class AppliedPromotion(_Frozen):
    promotion_id: str
    promotion_name: str
    promotion_type: PromotionType
    priority: int
    discount_amount: int = Field(ge=0)
    free_gifts: tuple[FreeGift, ...] = ()
    pending_gift_selections: tuple[PendingGiftSelection, ...] = ()
    subtotal_before: int
    subtotal_after: int
    applied_at: datetime


class EvaluationContext(_Frozen):
    """Cart snapshot to evaluate.

    Numeric bounds are enforced by ``IntegrityValidator.validate_context`` so
    that out-of-range input always surfaces as ``ContextValidationError``.
    """

    items: tuple[CartItem, ...] = ()
    cart_subtotal: int
    customer_id: Optional[str] = None
    current_promotions: tuple[AppliedPromotion, ...] = ()
    selected_option_ids: tuple[str, ...] = ()

    def product_ids(self) -> set[str]:
        return {item.product_id for item in self.items}


class EligiblePromotion(_Frozen):
    promotion: Promotion
    rules: tuple[PromotionRule, ...]
    potential_discount: int = 0
    potential_gifts: tuple[FreeGift, ...] = ()
    pending_gift_selections: tuple[PendingGiftSelection, ...] = ()
    priority: int

    @property
    def total_benefit(self) -> int:
        return self.potential_discount + sum(gift.total_value for gift in self.potential_gifts)


class ConflictResolution(_Frozen):
    conflict_type: ConflictType
    selected_promotion_ids: tuple[str, ...]
    rejected_promotion_ids: tuple[str, ...] = ()
    reason: str


class EvaluationResult(_Frozen):
    eligible_promotions: tuple[EligiblePromotion, ...] = ()
    applied_promotions: tuple[AppliedPromotion, ...] = ()
    total_discount: int = 0
    free_gifts: tuple[FreeGift, ...] = ()
    pending_gift_selections: tuple[PendingGiftSelection, ...] = ()
    conflict_resolution: Optional[ConflictResolution] = None
    # promotions from context.current_promotions that no longer apply
    removed_promotion_ids: tuple[str, ...] = ()

    @classmethod
    def empty(cls) -> "EvaluationResult":
        return cls()

    @property
    def requires_gift_selection(self) -> bool:
        return bool(self.pending_gift_selections)
