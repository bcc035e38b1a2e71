from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any, Callable, Optional, Sequence

from promo_engine.core.config import Settings, settings
from promo_engine.core.logging import get_logger
from promo_engine.core.metrics import record_cache_request
from promo_engine.schemas.evaluation import FreeGift
from promo_engine.schemas.promotion import Promotion, PromotionRule
from promo_engine.services.interfaces import PromotionRepository

logger = get_logger(__name__)

_ACTIVE_KEY = "active"


class _Section:
    """One LRU map whose entries expire ``ttl`` seconds after being stored."""

    def __init__(self, name: str, ttl: float, max_entries: int, clock: Callable[[], float]) -> None:
        self.name = name
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._store: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is not None and (self._clock() - entry[0]) > self.ttl:
            self._store.pop(key, None)
            entry = None
        if entry is None:
            self.misses += 1
            record_cache_request(self.name, hit=False)
            return None
        self._store.move_to_end(key)
        self.hits += 1
        record_cache_request(self.name, hit=True)
        return entry[1]

    def set(self, key: str, payload: Any) -> None:
        self._store[key] = (self._clock(), payload)
        self._store.move_to_end(key)
        while len(self._store) > self.max_entries:
            self._store.popitem(last=False)
            self.evictions += 1

    def pop(self, key: str) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (stored_ts, _) in self._store.items() if (now - stored_ts) > self.ttl]
        for key in expired:
            self._store.pop(key, None)
        return len(expired)

    def __len__(self) -> int:
        return len(self._store)


class PromotionCache:
    def __init__(
        self,
        active_ttl: float = 120,
        rules_ttl: float = 600,
        promotion_ttl: float = 300,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._active = _Section("active_promotions", active_ttl, max_entries, clock)
        self._rules = _Section("promotion_rules", rules_ttl, max_entries, clock)
        self._promotions = _Section("promotion", promotion_ttl, max_entries, clock)
        self._maintenance_runs = 0

    @classmethod
    def from_settings(cls, source: Optional[Settings] = None) -> "PromotionCache":
        source = source or settings
        return cls(
            active_ttl=source.PROMOTION_CACHE_ACTIVE_TTL,
            rules_ttl=source.PROMOTION_CACHE_RULES_TTL,
            promotion_ttl=source.PROMOTION_CACHE_PROMOTION_TTL,
            max_entries=source.PROMOTION_CACHE_MAX_ENTRIES,
        )

    def _sections(self) -> tuple[_Section, ...]:
        return (self._active, self._rules, self._promotions)

    def get_active_promotions(self) -> Optional[list[Promotion]]:
        return self._active.get(_ACTIVE_KEY)

    def set_active_promotions(self, promotions: Sequence[Promotion]) -> None:
        self._active.set(_ACTIVE_KEY, list(promotions))

    def get_promotion_rules(self, promotion_id: str) -> Optional[list[PromotionRule]]:
        return self._rules.get(promotion_id)

    def set_promotion_rules(self, promotion_id: str, rules: Sequence[PromotionRule]) -> None:
        self._rules.set(promotion_id, list(rules))

    def get_promotion(self, promotion_id: str) -> Optional[Promotion]:
        return self._promotions.get(promotion_id)

    def set_promotion(self, promotion: Promotion) -> None:
        self._promotions.set(promotion.id, promotion)

    def invalidate_promotion(self, promotion_id: str) -> None:
        self._promotions.pop(promotion_id)
        self._rules.pop(promotion_id)
        self._active.clear()

    def invalidate_active_promotions(self) -> None:
        self._active.clear()

    def clear(self) -> None:
        for section in self._sections():
            section.clear()

    def perform_maintenance(self) -> int:
        """Drop expired entries. Meant to be called by an external scheduler."""
        removed = sum(section.purge_expired() for section in self._sections())
        self._maintenance_runs += 1
        if removed:
            logger.debug("Promotion cache maintenance", extra={"expired_entries": removed})
        return removed

    def stats(self) -> dict[str, Any]:
        hits = sum(section.hits for section in self._sections())
        misses = sum(section.misses for section in self._sections())
        lookups = hits + misses
        return {
            "hits": hits,
            "misses": misses,
            "evictions": sum(section.evictions for section in self._sections()),
            "entries": {section.name: len(section) for section in self._sections()},
            "hit_rate": hits / lookups if lookups else 0.0,
            "maintenance_runs": self._maintenance_runs,
        }


class CachedPromotionRepository:
    """Read-through wrapper for the hot evaluation reads.

    Only the active list and the rules are served from cache. Single
    promotion lookups, usage counts and writes always reach the wrapped
    repository since commit-time checks depend on them.
    """

    def __init__(self, repository: PromotionRepository, cache: PromotionCache) -> None:
        self.repository = repository
        self.cache = cache

    async def get_active_promotions(self) -> list[Promotion]:
        cached = self.cache.get_active_promotions()
        if cached is not None:
            return list(cached)
        promotions = await self.repository.get_active_promotions()
        self.cache.set_active_promotions(promotions)
        return list(promotions)

    async def get_promotion_rules(self, promotion_id: str) -> list[PromotionRule]:
        cached = self.cache.get_promotion_rules(promotion_id)
        if cached is not None:
            return list(cached)
        rules = await self.repository.get_promotion_rules(promotion_id)
        self.cache.set_promotion_rules(promotion_id, rules)
        return list(rules)

    async def get_promotion(self, promotion_id: str) -> Optional[Promotion]:
        promotion = await self.repository.get_promotion(promotion_id)
        if promotion is not None:
            self.cache.set_promotion(promotion)
        return promotion

    async def get_customer_usage_count(self, promotion_id: str, customer_id: str) -> int:
        return await self.repository.get_customer_usage_count(promotion_id, customer_id)

    async def check_exclusivity_conflicts(self, promotion_id: str, other_ids: Sequence[str]) -> list[str]:
        return await self.repository.check_exclusivity_conflicts(promotion_id, other_ids)

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
        await self.repository.record_usage(
            promotion_id,
            order_id,
            customer_id,
            discount_amount,
            gifts,
            cart_subtotal,
            usage_limit_per_customer=usage_limit_per_customer,
        )

    async def increment_usage_count(self, promotion_id: str) -> None:
        try:
            await self.repository.increment_usage_count(promotion_id)
        finally:
            self.cache.invalidate_promotion(promotion_id)
