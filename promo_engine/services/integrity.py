"""Server-side validation that keeps computed benefits within sane bounds.

Everything here recomputes from the raw inputs instead of trusting values
produced elsewhere in the engine. A failed check raises
``IntegrityValidationError`` and is reported through the security log.
"""

from __future__ import annotations

import math
from fractions import Fraction
from typing import Any, Iterable, Mapping, Optional

from pydantic import ValidationError

from promo_engine.core.config import PromotionLimits
from promo_engine.core.logging import audit_event, security_alert
from promo_engine.core.metrics import record_integrity_failure
from promo_engine.schemas.evaluation import EvaluationContext, EvaluationResult, FreeGift
from promo_engine.schemas.promotion import (
    DiscountRule,
    FixedDiscountBenefit,
    FreeGiftBenefit,
    PercentageDiscountBenefit,
    Promotion,
    PromotionRule,
)
from promo_engine.services.exceptions import ContextValidationError, IntegrityValidationError


def build_context(payload: Mapping[str, Any]) -> EvaluationContext:
    """Build an ``EvaluationContext`` from raw input, mapping schema errors to the domain."""
    try:
        return EvaluationContext.model_validate(payload)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ContextValidationError(f"Invalid evaluation context: {problems}") from exc


def _tier_grants(tier: FreeGiftBenefit, gift: FreeGift) -> bool:
    if gift.option_id is not None:
        return any(
            option.id == gift.option_id
            and option.product_id == gift.product_id
            and gift.quantity <= option.quantity
            for option in tier.gift_options
        )
    if gift.product_id is not None:
        return any(
            product.product_id == gift.product_id and gift.quantity <= product.quantity
            for product in tier.gift_products
        )
    standalone = tier.standalone_gift
    return standalone is not None and standalone.name == gift.name and gift.quantity <= standalone.quantity


class IntegrityValidator:
    def __init__(self, limits: Optional[PromotionLimits] = None) -> None:
        self.limits = limits or PromotionLimits.from_settings()

    # ---------- context ----------

    def validate_context(self, context: EvaluationContext) -> None:
        tolerance = self.limits.calculation_tolerance
        if context.cart_subtotal < 0:
            raise ContextValidationError("Cart subtotal cannot be negative")

        for item in context.items:
            if item.quantity < 1:
                raise ContextValidationError(
                    f"Invalid quantity for product {item.product_id}: {item.quantity}"
                )
            if item.unit_price < 0 or item.subtotal < 0:
                raise ContextValidationError(f"Negative price for product {item.product_id}")
            if item.quantity > self.limits.max_item_quantity:
                raise ContextValidationError(
                    f"Excessive quantity for product {item.product_id}: {item.quantity}"
                )
            if item.unit_price > self.limits.max_unit_price:
                raise ContextValidationError(
                    f"Excessive unit price for product {item.product_id}: {item.unit_price}"
                )
            expected = item.unit_price * item.quantity
            if abs(expected - item.subtotal) > tolerance:
                raise ContextValidationError(
                    f"Item subtotal mismatch for product {item.product_id}. "
                    f"Expected: {expected}, Got: {item.subtotal}"
                )

        recalculated = sum(item.subtotal for item in context.items)
        if abs(recalculated - context.cart_subtotal) > tolerance:
            raise ContextValidationError(
                f"Cart subtotal mismatch. Expected: {recalculated}, Got: {context.cart_subtotal}"
            )

    # ---------- discounts ----------

    def expected_rule_discount(self, rule: DiscountRule, applicable_subtotal: int) -> int:
        bounds = [applicable_subtotal, self.limits.max_discount_amount]
        if isinstance(rule, PercentageDiscountBenefit):
            raw = Fraction(applicable_subtotal) * Fraction(str(rule.percentage)) / 100
            bounds.append(math.floor(raw + Fraction(1, 2)))
        elif isinstance(rule, FixedDiscountBenefit):
            bounds.append(rule.amount)
        else:
            raise TypeError(f"Unsupported discount rule: {type(rule).__name__}")
        if rule.max_discount_amount is not None:
            bounds.append(rule.max_discount_amount)
        return max(0, min(bounds))

    def verify_rule_discount(
        self,
        promotion_id: str,
        rule: DiscountRule,
        discount: int,
        applicable_subtotal: int,
    ) -> None:
        if discount < 0:
            self._fail(f"Discount amount cannot be negative: {discount}", promotion_id, "bounds")
        if discount > applicable_subtotal:
            self._fail(
                f"Discount amount ({discount}) exceeds applicable subtotal ({applicable_subtotal})",
                promotion_id,
                "bounds",
            )
        if discount > self.limits.max_discount_amount:
            self._fail(f"Discount amount exceeds reasonable bounds: {discount}", promotion_id, "ceiling")

        expected = self.expected_rule_discount(rule, applicable_subtotal)
        tolerance = max(self.limits.calculation_tolerance, round(expected * 0.01))
        if abs(discount - expected) > tolerance:
            self._fail(
                f"Discount calculation mismatch for rule {rule.id}. Expected: {expected}, Got: {discount}",
                promotion_id,
                "recompute",
            )

    def verify_high_value(self, promotion: Promotion, discount: int, pre_discount_subtotal: int) -> None:
        if discount <= self.limits.high_value_threshold:
            return

        if discount > pre_discount_subtotal * self.limits.high_value_max_share:
            self._fail(
                f"High-value discount ({discount}) exceeds "
                f"{int(self.limits.high_value_max_share * 100)}% of cart value ({pre_discount_subtotal})",
                promotion.id,
                "high_value_share",
            )
        if promotion.usage_limit is None or promotion.usage_limit > self.limits.high_value_max_usage_limit:
            self._fail(
                f"High-value promotion must have a bounded usage limit (current: {promotion.usage_limit})",
                promotion.id,
                "high_value_usage_limit",
            )
        audit_event(
            "high_value_promotion",
            promotion_id=promotion.id,
            discount_amount=discount,
            cart_subtotal=pre_discount_subtotal,
        )

    # ---------- gifts & totals ----------

    def verify_gift_quantity(self, promotion_id: str, gifts: Iterable[FreeGift]) -> None:
        gifts = list(gifts)
        total = sum(gift.quantity for gift in gifts)
        if total > self.limits.max_gift_quantity:
            self._fail(
                f"Excessive gift quantity: {total}. Maximum allowed: {self.limits.max_gift_quantity}",
                promotion_id,
                "gift_quantity",
            )
        for gift in gifts:
            if gift.quantity > self.limits.max_gift_quantity_per_item:
                self._fail(
                    f"Excessive quantity for single gift {gift.name!r}: {gift.quantity}",
                    promotion_id,
                    "gift_item_quantity",
                )

    def verify_gifts_match_rules(
        self,
        promotion_id: str,
        rules: Iterable[PromotionRule],
        gifts: Iterable[FreeGift],
        context: EvaluationContext,
    ) -> None:
        """Every granted gift must come from a gift tier the cart qualifies for."""
        gifts = list(gifts)
        if not gifts:
            return
        tiers = [rule for rule in rules if isinstance(rule, FreeGiftBenefit)]
        if not tiers:
            self._fail("No gift rules found for promotion with free gifts", promotion_id, "gift_rules")

        cart_products = context.product_ids()
        qualified = [
            tier
            for tier in tiers
            if context.cart_subtotal >= tier.threshold
            and (not tier.required_product_ids or tier.required_product_ids & cart_products)
        ]
        for gift in gifts:
            if gift.promotion_id != promotion_id or not any(_tier_grants(tier, gift) for tier in qualified):
                self._fail(
                    f"Gift {gift.name!r} is not allowed by promotion rules",
                    promotion_id,
                    "gift_rules",
                )

    def verify_totals(self, result: EvaluationResult, cart_subtotal: int) -> None:
        total_discount = result.total_discount
        if total_discount != sum(entry.discount_amount for entry in result.applied_promotions):
            self._fail("Total discount does not match applied promotions", None, "totals")
        if not 0 <= total_discount <= cart_subtotal:
            self._fail(
                f"Total discount ({total_discount}) outside [0, {cart_subtotal}]",
                None,
                "totals",
            )

    def _fail(self, detail: str, promotion_id: Optional[str], check: str) -> None:
        record_integrity_failure(check)
        security_alert(detail, promotion_id=promotion_id, check=check)
        raise IntegrityValidationError(detail, promotion_id=promotion_id, check=check)
