"""Promotion evaluation engine for e-commerce carts."""

from .services.checkout import commit_promotions, compute_order_totals, gift_line_items, quote_promotions
from .services.engine import PromotionEngine, build_promotion_engine
from .services.integrity import build_context
from .services.promotion_cache import CachedPromotionRepository, PromotionCache
