from __future__ import annotations

from typing import Optional, Sequence

from promo_engine.core.config import PromotionLimits
from promo_engine.core.logging import audit_event, get_logger
from promo_engine.domain.enums import ConflictType
from promo_engine.schemas.evaluation import (
    AppliedPromotion,
    ConflictResolution,
    EligiblePromotion,
    EvaluationContext,
)
from promo_engine.services.benefits import BenefitCalculator
from promo_engine.services.integrity import IntegrityValidator
from promo_engine.services.interfaces import Clock, PromotionRepository, utc_now

logger = get_logger(__name__)


def _selection_key(candidate: EligiblePromotion) -> tuple:
    promotion = candidate.promotion
    return (-candidate.priority, -candidate.total_benefit, promotion.created_at, promotion.id)


def _application_key(candidate: EligiblePromotion) -> tuple:
    promotion = candidate.promotion
    return (-candidate.priority, promotion.created_at, promotion.id)


class StackingResolver:
    """Drops exclusive conflicts, then applies the survivors to a running subtotal."""

    def __init__(
        self,
        repository: PromotionRepository,
        calculator: BenefitCalculator,
        integrity: Optional[IntegrityValidator] = None,
        clock: Clock = utc_now,
        limits: Optional[PromotionLimits] = None,
    ) -> None:
        self.repository = repository
        self.calculator = calculator
        self.integrity = integrity or IntegrityValidator(limits)
        self.clock = clock

    async def resolve_exclusivity(
        self, eligible: Sequence[EligiblePromotion]
    ) -> tuple[list[EligiblePromotion], list[str]]:
        if len(eligible) < 2:
            return list(eligible), []

        ids = [candidate.promotion.id for candidate in eligible]
        edges: dict[str, set[str]] = {promotion_id: set() for promotion_id in ids}
        for candidate in eligible:
            promotion_id = candidate.promotion.id
            others = [other for other in ids if other != promotion_id]
            conflicts = set(await self.repository.check_exclusivity_conflicts(promotion_id, others))
            conflicts |= candidate.promotion.exclusive_with
            for other in conflicts:
                if other in edges and other != promotion_id:
                    edges[promotion_id].add(other)
                    edges[other].add(promotion_id)

        kept: list[EligiblePromotion] = []
        kept_ids: set[str] = set()
        rejected: list[str] = []
        for candidate in sorted(eligible, key=_selection_key):
            promotion_id = candidate.promotion.id
            if edges[promotion_id] & kept_ids:
                rejected.append(promotion_id)
                continue
            kept.append(candidate)
            kept_ids.add(promotion_id)

        if rejected:
            audit_event(
                "exclusivity_resolved",
                selected_promotion_ids=sorted(kept_ids),
                rejected_promotion_ids=rejected,
            )
        return kept, rejected

    def apply(
        self, candidates: Sequence[EligiblePromotion], context: EvaluationContext
    ) -> list[AppliedPromotion]:
        """Apply in priority order, each discount computed on what is left of the cart."""
        applied: list[AppliedPromotion] = []
        running = context.cart_subtotal
        now = self.clock()

        for candidate in sorted(candidates, key=_application_key):
            promotion = candidate.promotion
            discount = self.calculator.promotion_discount(promotion, candidate.rules, context, running)
            if discount == 0 and not candidate.potential_gifts and not candidate.pending_gift_selections:
                logger.debug("Nothing left to discount", extra={"promotion_id": promotion.id})
                continue

            self.integrity.verify_high_value(promotion, discount, context.cart_subtotal)
            applied.append(
                AppliedPromotion(
                    promotion_id=promotion.id,
                    promotion_name=promotion.name,
                    promotion_type=promotion.type,
                    priority=promotion.priority,
                    discount_amount=discount,
                    free_gifts=candidate.potential_gifts,
                    pending_gift_selections=candidate.pending_gift_selections,
                    subtotal_before=running,
                    subtotal_after=running - discount,
                    applied_at=now,
                )
            )
            running -= discount

        return applied

    async def resolve(
        self, eligible: Sequence[EligiblePromotion], context: EvaluationContext
    ) -> tuple[list[AppliedPromotion], Optional[ConflictResolution]]:
        kept, rejected = await self.resolve_exclusivity(eligible)
        applied = self.apply(kept, context)
        return applied, self._describe(eligible, applied, rejected)

    @staticmethod
    def _describe(
        eligible: Sequence[EligiblePromotion],
        applied: Sequence[AppliedPromotion],
        rejected: Sequence[str],
    ) -> Optional[ConflictResolution]:
        if len(eligible) < 2:
            return None

        selected = tuple(entry.promotion_id for entry in applied)
        if rejected:
            return ConflictResolution(
                conflict_type=ConflictType.exclusivity,
                selected_promotion_ids=selected,
                rejected_promotion_ids=tuple(rejected),
                reason=f"{len(rejected)} promotion(s) excluded by exclusivity rules",
            )
        return ConflictResolution(
            conflict_type=ConflictType.priority,
            selected_promotion_ids=selected,
            reason="Promotions stacked in priority order",
        )
