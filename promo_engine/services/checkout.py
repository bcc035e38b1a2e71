"""Where promotion results meet order creation.

Quoting is read-only and may run any number of times. ``commit_promotions``
runs once, inside the transaction that creates the order, so usage rows and
counters are rolled back together with the order on failure.
"""

from __future__ import annotations

from typing import Optional

from promo_engine.core.config import PromotionLimits
from promo_engine.core.logging import audit_event, get_logger, security_alert
from promo_engine.core.metrics import record_usage_commit
from promo_engine.schemas.checkout import GiftLineItem, OrderTotals
from promo_engine.schemas.evaluation import AppliedPromotion, EvaluationContext, EvaluationResult
from promo_engine.services.engine import PromotionEngine
from promo_engine.services.exceptions import (
    DomainValidationError,
    IntegrityValidationError,
    PromotionUsageLimitError,
)
from promo_engine.services.integrity import IntegrityValidator
from promo_engine.services.interfaces import Clock, PromotionRepository, utc_now
from promo_engine.services.usage import UsageLimitValidator

logger = get_logger(__name__)


async def quote_promotions(engine: PromotionEngine, context: EvaluationContext) -> EvaluationResult:
    """Evaluate for display; an integrity failure drops promotions instead of blocking the cart."""
    try:
        return await engine.evaluate(context)
    except IntegrityValidationError as exc:
        logger.warning(
            "Promotions dropped from quote: %s",
            exc.detail,
            extra={"promotion_id": exc.promotion_id, "check": exc.check},
        )
        return EvaluationResult.empty()


def compute_order_totals(subtotal: int, shipping: int, result: EvaluationResult) -> OrderTotals:
    discount = min(result.total_discount, subtotal)
    total = max(0, subtotal + shipping - discount)
    return OrderTotals(subtotal=subtotal, shipping=shipping, discount=discount, total=total)


def gift_line_items(result: EvaluationResult) -> list[GiftLineItem]:
    return [
        GiftLineItem(
            product_id=gift.product_id,
            variant_id=gift.variant_id,
            option_id=gift.option_id,
            name=gift.name,
            image_url=gift.image_url,
            quantity=gift.quantity,
            value=gift.value,
            source_promotion_id=gift.promotion_id,
        )
        for gift in result.free_gifts
    ]


async def _verify_gifts(
    repository: PromotionRepository,
    integrity: IntegrityValidator,
    context: EvaluationContext,
    result: EvaluationResult,
) -> None:
    for applied in result.applied_promotions:
        if not applied.free_gifts:
            continue
        rules = await repository.get_promotion_rules(applied.promotion_id)
        try:
            integrity.verify_gift_quantity(applied.promotion_id, applied.free_gifts)
            integrity.verify_gifts_match_rules(applied.promotion_id, rules, applied.free_gifts, context)
        except IntegrityValidationError:
            record_usage_commit("rejected")
            raise


async def commit_promotions(
    repository: PromotionRepository,
    order_id: str,
    context: EvaluationContext,
    result: EvaluationResult,
    clock: Clock = utc_now,
    limits: Optional[PromotionLimits] = None,
) -> list[AppliedPromotion]:
    """Re-validate and record usage for every applied promotion of an order.

    Must run inside the order-creation transaction; any raised error is
    expected to roll that transaction back. Both the global counter and the
    per-customer usage row are written by statements that re-check their
    limit, so concurrent orders cannot overshoot either one.
    """
    if result.pending_gift_selections:
        raise DomainValidationError("Gift selection is required before checkout")

    integrity = IntegrityValidator(limits)
    validator = UsageLimitValidator(repository, clock, limits, integrity)
    promotions = await validator.validate_for_commit(
        result.applied_promotions, context.customer_id, context.cart_subtotal
    )
    await _verify_gifts(repository, integrity, context, result)

    for applied, promotion in zip(result.applied_promotions, promotions):
        try:
            await repository.increment_usage_count(applied.promotion_id)
            await repository.record_usage(
                applied.promotion_id,
                order_id,
                context.customer_id,
                applied.discount_amount,
                applied.free_gifts,
                context.cart_subtotal,
                usage_limit_per_customer=promotion.usage_limit_per_customer,
            )
        except PromotionUsageLimitError as exc:
            record_usage_commit("rejected")
            security_alert(
                "Usage limit reached while committing order",
                promotion_id=applied.promotion_id,
                order_id=order_id,
                customer_id=context.customer_id,
                reason=exc.detail,
            )
            raise
        record_usage_commit("committed")
        audit_event(
            "promotion_usage_recorded",
            promotion_id=applied.promotion_id,
            order_id=order_id,
            customer_id=context.customer_id,
            discount_amount=applied.discount_amount,
        )

    return list(result.applied_promotions)
