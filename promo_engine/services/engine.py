"""Promotion evaluation entry point.

``PromotionEngine.evaluate`` is a pure read: it never records usage. Usage
is committed separately through ``checkout.commit_promotions`` inside the
order-creation transaction.
"""

from __future__ import annotations

import time
from typing import Optional

from promo_engine.core.config import PromotionLimits, Settings, settings
from promo_engine.core.logging import audit_event, get_logger
from promo_engine.core.metrics import record_applied, record_evaluation
from promo_engine.schemas.evaluation import EligiblePromotion, EvaluationContext, EvaluationResult
from promo_engine.services.benefits import BenefitCalculator
from promo_engine.services.eligibility import EligibilityEvaluator
from promo_engine.services.exceptions import ContextValidationError, IntegrityValidationError
from promo_engine.services.gifts import GiftSelector
from promo_engine.services.integrity import IntegrityValidator
from promo_engine.services.interfaces import Clock, GiftInventory, PromotionRepository, utc_now
from promo_engine.services.promotion_cache import CachedPromotionRepository, PromotionCache
from promo_engine.services.stacking import StackingResolver
from promo_engine.services.usage import UsageLimitValidator

logger = get_logger(__name__)


class PromotionEngine:
    def __init__(
        self,
        repository: PromotionRepository,
        inventory: GiftInventory,
        clock: Clock = utc_now,
        limits: Optional[PromotionLimits] = None,
        cache: Optional[PromotionCache] = None,
    ) -> None:
        self.limits = limits or PromotionLimits.from_settings()
        self.repository: PromotionRepository = (
            CachedPromotionRepository(repository, cache) if cache is not None else repository
        )
        self.clock = clock
        self.integrity = IntegrityValidator(self.limits)
        self.calculator = BenefitCalculator(self.limits, self.integrity)
        self.usage_validator = UsageLimitValidator(self.repository, clock, self.limits, self.integrity)
        self.eligibility = EligibilityEvaluator(
            self.repository,
            self.calculator,
            GiftSelector(inventory, self.limits, self.integrity),
            self.usage_validator,
            clock,
        )
        self.stacking = StackingResolver(self.repository, self.calculator, self.integrity, clock)

    async def evaluate(self, context: EvaluationContext) -> EvaluationResult:
        started = time.perf_counter()
        try:
            self.integrity.validate_context(context)
        except ContextValidationError as exc:
            record_evaluation("invalid_context", time.perf_counter() - started)
            logger.info("Evaluation rejected: %s", exc.detail)
            raise

        if not context.items:
            record_evaluation("empty_cart", time.perf_counter() - started)
            return EvaluationResult.empty()

        try:
            result = await self._evaluate(context)
        except IntegrityValidationError:
            record_evaluation("integrity_failure", time.perf_counter() - started)
            raise

        for applied in result.applied_promotions:
            record_applied(applied.promotion_type.value)
        record_evaluation("ok", time.perf_counter() - started)
        audit_event(
            "evaluation_completed",
            customer_id=context.customer_id,
            cart_subtotal=context.cart_subtotal,
            total_discount=result.total_discount,
            applied_promotion_ids=[entry.promotion_id for entry in result.applied_promotions],
        )
        return result

    async def _evaluate(self, context: EvaluationContext) -> EvaluationResult:
        promotions = await self.repository.get_active_promotions()

        eligible: list[EligiblePromotion] = []
        for promotion in promotions:
            candidate = await self.eligibility.evaluate(promotion, context)
            if candidate is not None:
                eligible.append(candidate)

        applied, conflict = await self.stacking.resolve(eligible, context)

        applied_ids = {entry.promotion_id for entry in applied}
        removed = []
        for previous in context.current_promotions:
            if previous.promotion_id not in applied_ids and previous.promotion_id not in removed:
                removed.append(previous.promotion_id)

        result = EvaluationResult(
            eligible_promotions=tuple(eligible),
            applied_promotions=tuple(applied),
            total_discount=sum(entry.discount_amount for entry in applied),
            free_gifts=tuple(gift for entry in applied for gift in entry.free_gifts),
            pending_gift_selections=tuple(
                pending for entry in applied for pending in entry.pending_gift_selections
            ),
            conflict_resolution=conflict,
            removed_promotion_ids=tuple(removed),
        )
        self.integrity.verify_totals(result, context.cart_subtotal)
        return result


def build_promotion_engine(
    repository: PromotionRepository,
    inventory: GiftInventory,
    clock: Clock = utc_now,
    cache: Optional[PromotionCache] = None,
    source: Optional[Settings] = None,
) -> PromotionEngine:
    """Engine wired from settings. Pass a long-lived ``cache`` to share it across requests."""
    source = source or settings
    if not source.PROMOTION_CACHE_ENABLED:
        cache = None
    elif cache is None:
        cache = PromotionCache.from_settings(source)
    return PromotionEngine(
        repository,
        inventory,
        clock=clock,
        limits=PromotionLimits.from_settings(source),
        cache=cache,
    )
