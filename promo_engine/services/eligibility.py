from __future__ import annotations

from typing import Optional

from promo_engine.core.logging import get_logger
from promo_engine.domain.enums import Operator, RuleType
from promo_engine.schemas.evaluation import EligiblePromotion, EvaluationContext
from promo_engine.schemas.promotion import (
    CartValueCondition,
    CategoryProductsCondition,
    ConditionRule,
    ProductQuantityCondition,
    Promotion,
    SpecificProductsCondition,
)
from promo_engine.services.benefits import BenefitCalculator
from promo_engine.services.exceptions import PromotionConfigurationError, PromotionError
from promo_engine.services.gifts import GiftSelector
from promo_engine.services.interfaces import Clock, PromotionRepository, utc_now
from promo_engine.services.usage import UsageLimitValidator

logger = get_logger(__name__)


def _compare(operator: Operator, actual: int, threshold: int) -> bool:
    if operator == Operator.gte:
        return actual >= threshold
    if operator == Operator.lte:
        return actual <= threshold
    if operator == Operator.eq:
        return actual == threshold
    return False


def condition_holds(condition: ConditionRule, context: EvaluationContext) -> bool:
    """Evaluate one condition rule; operators a condition does not define fail it."""
    if isinstance(condition, CartValueCondition):
        return _compare(condition.operator, context.cart_subtotal, condition.threshold)

    if isinstance(condition, ProductQuantityCondition):
        quantity = sum(
            item.quantity
            for item in context.items
            if not condition.product_ids or item.product_id in condition.product_ids
        )
        return _compare(condition.operator, quantity, condition.threshold)

    if isinstance(condition, SpecificProductsCondition):
        present = bool(condition.product_ids & context.product_ids())
        if condition.operator == Operator.in_:
            return present
        if condition.operator == Operator.not_in:
            return not present
        return False

    if isinstance(condition, CategoryProductsCondition):
        if condition.operator not in (Operator.in_, Operator.not_in):
            return False
        for item in context.items:
            if item.category_ids & condition.category_ids:
                return condition.operator == Operator.in_
        # no item carries a listed category
        return condition.operator == Operator.not_in

    return False


class EligibilityEvaluator:
    def __init__(
        self,
        repository: PromotionRepository,
        calculator: BenefitCalculator,
        gift_selector: GiftSelector,
        usage_validator: UsageLimitValidator,
        clock: Clock = utc_now,
    ) -> None:
        self.repository = repository
        self.calculator = calculator
        self.gift_selector = gift_selector
        self.usage_validator = usage_validator
        self.clock = clock

    async def evaluate(self, promotion: Promotion, context: EvaluationContext) -> Optional[EligiblePromotion]:
        """Return the promotion's potential benefit, or None when it does not apply.

        Per-promotion problems (inactive, limit reached, misconfigured rule)
        exclude the promotion and never abort the evaluation. Integrity
        failures are not caught here.
        """
        if not promotion.is_live(self.clock()):
            logger.debug("Promotion not live", extra={"promotion_id": promotion.id})
            return None

        try:
            await self.usage_validator.check(promotion, context.customer_id)
        except PromotionError as exc:
            logger.info(
                "Promotion excluded: %s",
                exc.detail,
                extra={"promotion_id": promotion.id, "customer_id": context.customer_id},
            )
            return None

        rules = await self.repository.get_promotion_rules(promotion.id)
        conditions = [rule for rule in rules if rule.rule_type == RuleType.condition]
        if not all(condition_holds(condition, context) for condition in conditions):
            return None

        try:
            discount = self.calculator.promotion_discount(promotion, rules, context, context.cart_subtotal)
            gifts, pending = await self.gift_selector.select(promotion, rules, context)
        except PromotionConfigurationError as exc:
            logger.warning(
                "Promotion misconfigured: %s",
                exc.detail,
                extra={"promotion_id": promotion.id},
            )
            return None

        if discount == 0 and not gifts and not pending:
            logger.debug("Promotion yields no benefit", extra={"promotion_id": promotion.id})
            return None

        return EligiblePromotion(
            promotion=promotion,
            rules=tuple(rules),
            potential_discount=discount,
            potential_gifts=gifts,
            pending_gift_selections=pending,
            priority=promotion.priority,
        )
