"""Collaborator contracts the engine depends on.

Persistence, inventory lookup and the clock are supplied by the caller; the
engine never constructs them itself.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Sequence

from promo_engine.domain.enums import PromotionStatus
from promo_engine.schemas.evaluation import FreeGift
from promo_engine.schemas.promotion import GiftStock, Promotion, PromotionRule

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PromotionRepository(Protocol):
    async def get_active_promotions(self) -> list[Promotion]: ...

    async def get_promotion_rules(self, promotion_id: str) -> list[PromotionRule]: ...

    async def get_promotion(self, promotion_id: str) -> Optional[Promotion]: ...

    async def get_customer_usage_count(self, promotion_id: str, customer_id: str) -> int: ...

    async def check_exclusivity_conflicts(
        self, promotion_id: str, other_ids: Sequence[str]
    ) -> list[str]: ...

    async def record_usage(
        self,
        promotion_id: str,
        order_id: str,
        customer_id: Optional[str],
        discount_amount: int,
        gifts: Sequence[FreeGift],
        cart_subtotal: int,
        usage_limit_per_customer: Optional[int] = None,
    ) -> None:
        """Insert a usage row; with a customer limit, count and insert atomically
        and raise PromotionUsageLimitError when the customer is at the limit."""
        ...

    async def increment_usage_count(self, promotion_id: str) -> None:
        """Atomically bump the global counter; raise PromotionUsageLimitError at the cap."""
        ...


class PromotionStore(Protocol):
    async def get_promotion(self, promotion_id: str) -> Optional[Promotion]: ...

    async def update_promotion_status(
        self, promotion_id: str, status: PromotionStatus
    ) -> Promotion: ...

    async def soft_delete_promotion(self, promotion_id: str, deleted_at: datetime) -> Promotion: ...


class GiftInventory(Protocol):
    async def validate_gift_stock(self, product_ids: Sequence[str]) -> list[GiftStock]: ...
