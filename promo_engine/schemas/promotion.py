from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    field_validator,
    model_validator,
)

from promo_engine.domain.enums import (
    BenefitType,
    ConditionType,
    GiftSelectionType,
    Operator,
    PromotionStatus,
    PromotionType,
    RuleType,
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)


class Promotion(_Frozen):
    id: str
    name: str
    description: Optional[str] = None
    type: PromotionType
    status: PromotionStatus = PromotionStatus.draft
    priority: int = 0
    starts_at: datetime
    ends_at: datetime
    usage_limit: Optional[int] = Field(default=None, ge=0)
    usage_limit_per_customer: Optional[int] = Field(default=None, ge=0)
    current_usage_count: int = Field(default=0, ge=0)
    exclusive_with: frozenset[str] = frozenset()
    created_at: datetime
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @field_validator("starts_at", "ends_at", "created_at", "updated_at", "deleted_at")
    @classmethod
    def ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @model_validator(mode="after")
    def check_window(self) -> "Promotion":
        if self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be later than starts_at")
        return self

    def is_within_window(self, now: datetime) -> bool:
        return self.starts_at <= now < self.ends_at

    def is_live(self, now: datetime) -> bool:
        return (
            self.status == PromotionStatus.active
            and self.deleted_at is None
            and self.is_within_window(now)
        )


# ---------- gift descriptors ----------

class StandaloneGift(_Frozen):
    """Gift created by an admin with no backing product (no stock check)."""

    name: str = Field(min_length=1)
    value: int = Field(default=0, ge=0)
    image_url: Optional[str] = None
    quantity: int = Field(default=1, ge=1)


class GiftProduct(_Frozen):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(default=1, ge=1)


class GiftOption(_Frozen):
    id: str
    name: str
    value: int = Field(default=0, ge=0)
    image_url: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    quantity: int = Field(default=1, ge=1)


class GiftStock(_Frozen):
    id: str
    in_stock: bool
    available_quantity: int = 0
    name: str = ""
    image_url: Optional[str] = None
    unit_price: int = 0


# ---------- rules ----------

class _RuleBase(_Frozen):
    id: str
    promotion_id: str
    created_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class _ConditionBase(_RuleBase):
    operator: Operator

    @property
    def rule_type(self) -> RuleType:
        return RuleType.condition


class CartValueCondition(_ConditionBase):
    condition_type: Literal["cart_value"] = "cart_value"
    threshold: int = 0


class ProductQuantityCondition(_ConditionBase):
    condition_type: Literal["product_quantity"] = "product_quantity"
    threshold: int = 0
    # empty means "every item in the cart"
    product_ids: frozenset[str] = frozenset()


class SpecificProductsCondition(_ConditionBase):
    condition_type: Literal["specific_products"] = "specific_products"
    product_ids: frozenset[str] = frozenset()


class CategoryProductsCondition(_ConditionBase):
    condition_type: Literal["category_products"] = "category_products"
    category_ids: frozenset[str] = frozenset()


class _DiscountBase(_RuleBase):
    max_discount_amount: Optional[int] = Field(default=None, ge=0)
    applicable_product_ids: frozenset[str] = frozenset()

    @property
    def rule_type(self) -> RuleType:
        return RuleType.benefit


class PercentageDiscountBenefit(_DiscountBase):
    benefit_type: Literal["percentage_discount"] = "percentage_discount"
    percentage: float


class FixedDiscountBenefit(_DiscountBase):
    benefit_type: Literal["fixed_discount"] = "fixed_discount"
    amount: int


class FreeGiftBenefit(_RuleBase):
    """A gift tier: granted when the cart reaches ``threshold``."""

    benefit_type: Literal["free_gift"] = "free_gift"
    threshold: int = Field(default=0, ge=0)
    required_product_ids: frozenset[str] = frozenset()
    gift_selection_type: GiftSelectionType = GiftSelectionType.single
    standalone_gift: Optional[StandaloneGift] = None
    gift_products: tuple[GiftProduct, ...] = ()
    gift_options: tuple[GiftOption, ...] = ()
    max_gift_selections: int = Field(default=1, ge=1)

    @property
    def rule_type(self) -> RuleType:
        return RuleType.benefit

    @model_validator(mode="after")
    def check_gift_shape(self) -> "FreeGiftBenefit":
        if self.gift_selection_type == GiftSelectionType.options:
            if not self.gift_options:
                raise ValueError("gift_options are required when gift_selection_type is 'options'")
            return self
        if (self.standalone_gift is None) == (not self.gift_products):
            raise ValueError("a single gift tier needs exactly one of standalone_gift or gift_products")
        return self


def _rule_tag(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        tag = value.get("condition_type") or value.get("benefit_type")
    else:
        tag = getattr(value, "condition_type", None) or getattr(value, "benefit_type", None)
    return getattr(tag, "value", tag)


ConditionRule = Union[
    CartValueCondition,
    ProductQuantityCondition,
    SpecificProductsCondition,
    CategoryProductsCondition,
]

DiscountRule = Union[PercentageDiscountBenefit, FixedDiscountBenefit]

PromotionRule = Annotated[
    Union[
        Annotated[CartValueCondition, Tag(ConditionType.cart_value.value)],
        Annotated[ProductQuantityCondition, Tag(ConditionType.product_quantity.value)],
        Annotated[SpecificProductsCondition, Tag(ConditionType.specific_products.value)],
        Annotated[CategoryProductsCondition, Tag(ConditionType.category_products.value)],
        Annotated[PercentageDiscountBenefit, Tag(BenefitType.percentage_discount.value)],
        Annotated[FixedDiscountBenefit, Tag(BenefitType.fixed_discount.value)],
        Annotated[FreeGiftBenefit, Tag(BenefitType.free_gift.value)],
    ],
    Discriminator(_rule_tag),
]

_rule_adapter: TypeAdapter[Any] = TypeAdapter(PromotionRule)


def parse_rule(payload: Any) -> Any:
    """Validate a raw mapping into the matching rule variant."""
    return _rule_adapter.validate_python(payload)
