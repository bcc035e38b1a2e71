from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from promo_engine.core.config import PromotionLimits
from promo_engine.schemas.evaluation import EvaluationContext
from promo_engine.schemas.promotion import (
    DiscountRule,
    FixedDiscountBenefit,
    PercentageDiscountBenefit,
    Promotion,
    PromotionRule,
)
from promo_engine.services.exceptions import PromotionConfigurationError
from promo_engine.services.integrity import IntegrityValidator

_HUNDRED = Decimal(100)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def discount_rules(rules: Iterable[PromotionRule]) -> list[DiscountRule]:
    return [rule for rule in rules if isinstance(rule, (PercentageDiscountBenefit, FixedDiscountBenefit))]


class BenefitCalculator:
    """Turns discount rules into capped amounts against a given base subtotal."""

    def __init__(
        self,
        limits: Optional[PromotionLimits] = None,
        integrity: Optional[IntegrityValidator] = None,
    ) -> None:
        self.limits = limits or PromotionLimits.from_settings()
        self.integrity = integrity or IntegrityValidator(self.limits)

    def applicable_subtotal(self, rule: DiscountRule, context: EvaluationContext, base_subtotal: int) -> int:
        if rule.applicable_product_ids:
            scoped = sum(
                item.subtotal for item in context.items if item.product_id in rule.applicable_product_ids
            )
        else:
            scoped = base_subtotal
        return max(0, min(scoped, base_subtotal))

    def rule_discount(
        self,
        promotion: Promotion,
        rule: DiscountRule,
        context: EvaluationContext,
        base_subtotal: int,
    ) -> int:
        applicable = self.applicable_subtotal(rule, context, base_subtotal)

        if isinstance(rule, PercentageDiscountBenefit):
            if not 0 <= rule.percentage <= 100:
                raise PromotionConfigurationError(
                    f"Percentage must be between 0 and 100, got {rule.percentage}", promotion.id
                )
            raw = round_half_up(Decimal(applicable) * Decimal(str(rule.percentage)) / _HUNDRED)
        else:
            if rule.amount < 0:
                raise PromotionConfigurationError(
                    f"Fixed discount amount cannot be negative, got {rule.amount}", promotion.id
                )
            raw = min(rule.amount, applicable)

        discount = self._cap(rule, raw, applicable)
        self.integrity.verify_rule_discount(promotion.id, rule, discount, applicable)
        return discount

    def promotion_discount(
        self,
        promotion: Promotion,
        rules: Iterable[PromotionRule],
        context: EvaluationContext,
        base_subtotal: int,
    ) -> int:
        """Sum of the promotion's discount rules, each against the full base, clamped to the base."""
        total = sum(
            self.rule_discount(promotion, rule, context, base_subtotal)
            for rule in discount_rules(rules)
        )
        return min(total, base_subtotal)

    def _cap(self, rule: DiscountRule, discount: int, applicable: int) -> int:
        if rule.max_discount_amount is not None:
            discount = min(discount, rule.max_discount_amount)
        discount = min(discount, applicable)
        discount = min(discount, self.limits.max_discount_amount)
        return max(0, discount)
