# promo_engine/domain/enums.py
import enum


class PromotionType(str, enum.Enum):
    percentage_discount = "percentage_discount"
    fixed_discount = "fixed_discount"
    free_gift = "free_gift"


class PromotionStatus(str, enum.Enum):
    draft = "draft"
    scheduled = "scheduled"
    active = "active"
    paused = "paused"
    expired = "expired"


class RuleType(str, enum.Enum):
    condition = "condition"
    benefit = "benefit"


class ConditionType(str, enum.Enum):
    cart_value = "cart_value"
    product_quantity = "product_quantity"
    specific_products = "specific_products"
    category_products = "category_products"


class Operator(str, enum.Enum):
    gte = "gte"
    lte = "lte"
    eq = "eq"
    in_ = "in"
    not_in = "not_in"


class BenefitType(str, enum.Enum):
    percentage_discount = "percentage_discount"
    fixed_discount = "fixed_discount"
    free_gift = "free_gift"


class GiftSelectionType(str, enum.Enum):
    single = "single"
    options = "options"


class ConflictType(str, enum.Enum):
    exclusivity = "exclusivity"
    priority = "priority"
