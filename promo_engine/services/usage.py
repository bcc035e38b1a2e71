from __future__ import annotations

from typing import Optional, Sequence

from promo_engine.core.config import PromotionLimits
from promo_engine.core.logging import get_logger, security_alert
from promo_engine.core.metrics import record_usage_commit
from promo_engine.schemas.evaluation import AppliedPromotion
from promo_engine.schemas.promotion import Promotion
from promo_engine.services.exceptions import (
    NotFoundError,
    PromotionExpiredError,
    PromotionUsageLimitError,
    ServiceError,
)
from promo_engine.services.integrity import IntegrityValidator
from promo_engine.services.interfaces import Clock, PromotionRepository, utc_now

logger = get_logger(__name__)


class UsageLimitValidator:
    """Global and per-customer usage checks, at evaluation and at commit."""

    def __init__(
        self,
        repository: PromotionRepository,
        clock: Clock = utc_now,
        limits: Optional[PromotionLimits] = None,
        integrity: Optional[IntegrityValidator] = None,
    ) -> None:
        self.repository = repository
        self.clock = clock
        self.integrity = integrity or IntegrityValidator(limits)

    async def check(self, promotion: Promotion, customer_id: Optional[str]) -> None:
        if promotion.usage_limit is not None and promotion.current_usage_count >= promotion.usage_limit:
            raise PromotionUsageLimitError("Promotion usage limit reached", promotion.id)

        if customer_id and promotion.usage_limit_per_customer is not None:
            used = await self.repository.get_customer_usage_count(promotion.id, customer_id)
            if used >= promotion.usage_limit_per_customer:
                raise PromotionUsageLimitError(
                    "Customer usage limit reached for this promotion", promotion.id
                )

    async def validate_for_commit(
        self,
        applied: Sequence[AppliedPromotion],
        customer_id: Optional[str],
        cart_subtotal: int,
    ) -> list[Promotion]:
        """Re-check every applied promotion against fresh repository state.

        Values cached at quote time are never trusted here: each promotion is
        fetched again so that a concurrent order or a status change made
        after the quote is caught before usage is recorded.
        """
        now = self.clock()
        promotions: list[Promotion] = []
        for entry in applied:
            try:
                promotion = await self.repository.get_promotion(entry.promotion_id)
                if promotion is None:
                    raise NotFoundError(f"Promotion {entry.promotion_id} not found")
                if not promotion.is_live(now):
                    raise PromotionExpiredError("Promotion is not currently active", promotion.id)
                await self.check(promotion, customer_id)
                self.integrity.verify_high_value(promotion, entry.discount_amount, cart_subtotal)
            except ServiceError as exc:
                record_usage_commit("rejected")
                security_alert(
                    "Promotion rejected at commit",
                    promotion_id=entry.promotion_id,
                    customer_id=customer_id,
                    reason=exc.detail,
                )
                raise
            promotions.append(promotion)
        return promotions
