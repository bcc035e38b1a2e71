from __future__ import annotations

from datetime import datetime

from promo_engine.core.logging import audit_event
from promo_engine.domain.enums import PromotionStatus
from promo_engine.schemas.promotion import Promotion
from promo_engine.services.exceptions import ConflictError, NotFoundError
from promo_engine.services.interfaces import Clock, PromotionStore, utc_now
from promo_engine.services.promotion_cache import PromotionCache


def status_for_window(starts_at: datetime, ends_at: datetime, now: datetime) -> PromotionStatus:
    if now < starts_at:
        return PromotionStatus.scheduled
    if now >= ends_at:
        return PromotionStatus.expired
    return PromotionStatus.active


async def get_promotion(store: PromotionStore, promotion_id: str) -> Promotion:
    promotion = await store.get_promotion(promotion_id)
    if promotion is None or promotion.deleted_at is not None:
        raise NotFoundError("Promotion not found")
    return promotion


async def _transition(
    store: PromotionStore,
    promotion: Promotion,
    status: PromotionStatus,
    cache: PromotionCache | None,
) -> Promotion:
    updated = await store.update_promotion_status(promotion.id, status)
    if cache is not None:
        cache.invalidate_promotion(promotion.id)
    audit_event(
        "promotion_status_changed",
        promotion_id=promotion.id,
        from_status=promotion.status.value,
        to_status=status.value,
    )
    return updated


async def publish_promotion(
    store: PromotionStore,
    promotion_id: str,
    clock: Clock = utc_now,
    cache: PromotionCache | None = None,
) -> Promotion:
    promotion = await get_promotion(store, promotion_id)
    if promotion.status != PromotionStatus.draft:
        raise ConflictError(f"Only draft promotions can be published (current: {promotion.status.value})")
    status = status_for_window(promotion.starts_at, promotion.ends_at, clock())
    return await _transition(store, promotion, status, cache)


async def pause_promotion(
    store: PromotionStore,
    promotion_id: str,
    cache: PromotionCache | None = None,
) -> Promotion:
    promotion = await get_promotion(store, promotion_id)
    if promotion.status != PromotionStatus.active:
        raise ConflictError(f"Only active promotions can be paused (current: {promotion.status.value})")
    return await _transition(store, promotion, PromotionStatus.paused, cache)


async def resume_promotion(
    store: PromotionStore,
    promotion_id: str,
    clock: Clock = utc_now,
    cache: PromotionCache | None = None,
) -> Promotion:
    promotion = await get_promotion(store, promotion_id)
    if promotion.status != PromotionStatus.paused:
        raise ConflictError(f"Only paused promotions can be resumed (current: {promotion.status.value})")
    status = status_for_window(promotion.starts_at, promotion.ends_at, clock())
    return await _transition(store, promotion, status, cache)


async def delete_promotion(
    store: PromotionStore,
    promotion_id: str,
    clock: Clock = utc_now,
    cache: PromotionCache | None = None,
) -> Promotion:
    """Soft delete: the row stays so that usage history keeps its reference."""
    promotion = await get_promotion(store, promotion_id)
    deleted = await store.soft_delete_promotion(promotion.id, clock())
    if cache is not None:
        cache.invalidate_promotion(promotion.id)
    audit_event("promotion_deleted", promotion_id=promotion.id)
    return deleted
