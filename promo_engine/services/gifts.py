"""Gift tier selection.

Only the highest satisfied tier of a promotion is granted. Product-backed
gifts must be in stock; a tier whose gifts are all unavailable counts as not
satisfied and the next tier down is tried instead.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from promo_engine.core.config import PromotionLimits
from promo_engine.core.logging import get_logger
from promo_engine.domain.enums import GiftSelectionType
from promo_engine.schemas.evaluation import EvaluationContext, FreeGift, PendingGiftSelection
from promo_engine.schemas.promotion import (
    FreeGiftBenefit,
    GiftOption,
    GiftProduct,
    GiftStock,
    Promotion,
    PromotionRule,
)
from promo_engine.services.integrity import IntegrityValidator
from promo_engine.services.interfaces import GiftInventory

logger = get_logger(__name__)

_NO_TIMESTAMP = datetime.max.replace(tzinfo=timezone.utc)

GiftSelection = tuple[tuple[FreeGift, ...], tuple[PendingGiftSelection, ...]]


def _is_available(stock: Optional[GiftStock], quantity: int) -> bool:
    return stock is not None and stock.in_stock and stock.available_quantity >= quantity


class GiftSelector:
    def __init__(
        self,
        inventory: GiftInventory,
        limits: Optional[PromotionLimits] = None,
        integrity: Optional[IntegrityValidator] = None,
    ) -> None:
        self.inventory = inventory
        self.integrity = integrity or IntegrityValidator(limits)

    def candidate_tiers(self, rules: Iterable[PromotionRule], context: EvaluationContext) -> list[FreeGiftBenefit]:
        """Satisfied tiers, best first: highest threshold, then oldest, then rule order."""
        cart_products = context.product_ids()
        indexed: list[tuple[int, FreeGiftBenefit]] = []
        for position, rule in enumerate(rules):
            if not isinstance(rule, FreeGiftBenefit):
                continue
            if context.cart_subtotal < rule.threshold:
                continue
            if rule.required_product_ids and not (rule.required_product_ids & cart_products):
                continue
            indexed.append((position, rule))

        indexed.sort(key=lambda pair: (-pair[1].threshold, pair[1].created_at or _NO_TIMESTAMP, pair[0]))
        return [rule for _, rule in indexed]

    async def select(
        self,
        promotion: Promotion,
        rules: Sequence[PromotionRule],
        context: EvaluationContext,
    ) -> GiftSelection:
        for tier in self.candidate_tiers(rules, context):
            if tier.gift_selection_type == GiftSelectionType.options:
                gifts, pending = await self._resolve_options(promotion, tier, context)
            elif tier.standalone_gift is not None:
                gifts, pending = (self._standalone(promotion, tier),), ()
            else:
                gifts, pending = await self._stocked_products(promotion, tier.gift_products), ()

            if gifts or pending:
                self.integrity.verify_gift_quantity(promotion.id, gifts)
                self.integrity.verify_gifts_match_rules(promotion.id, rules, gifts, context)
                return tuple(gifts), tuple(pending)

            logger.info(
                "Gift tier skipped, no gift in stock",
                extra={"promotion_id": promotion.id, "rule_id": tier.id, "threshold": tier.threshold},
            )
        return (), ()

    def _standalone(self, promotion: Promotion, tier: FreeGiftBenefit) -> FreeGift:
        gift = tier.standalone_gift
        return FreeGift(
            promotion_id=promotion.id,
            name=gift.name,
            image_url=gift.image_url,
            quantity=gift.quantity,
            value=gift.value,
        )

    async def _stock_for(self, product_ids: Sequence[str]) -> dict[str, GiftStock]:
        if not product_ids:
            return {}
        stock = await self.inventory.validate_gift_stock(list(dict.fromkeys(product_ids)))
        return {entry.id: entry for entry in stock}

    async def _stocked_products(self, promotion: Promotion, products: Sequence[GiftProduct]) -> list[FreeGift]:
        stock = await self._stock_for([product.product_id for product in products])
        gifts: list[FreeGift] = []
        for product in products:
            entry = stock.get(product.product_id)
            if not _is_available(entry, product.quantity):
                continue
            gifts.append(
                FreeGift(
                    promotion_id=promotion.id,
                    product_id=product.product_id,
                    variant_id=product.variant_id,
                    name=entry.name or product.product_id,
                    image_url=entry.image_url,
                    quantity=product.quantity,
                    value=entry.unit_price,
                )
            )
        return gifts

    async def _resolve_options(
        self,
        promotion: Promotion,
        tier: FreeGiftBenefit,
        context: EvaluationContext,
    ) -> tuple[list[FreeGift], list[PendingGiftSelection]]:
        by_id = {option.id: option for option in tier.gift_options}
        chosen: list[GiftOption] = []
        for option_id in context.selected_option_ids:
            option = by_id.get(option_id)
            if option is None or option in chosen:
                continue
            chosen.append(option)
            if len(chosen) == tier.max_gift_selections:
                break

        if not chosen:
            pending = [
                PendingGiftSelection(
                    promotion_id=promotion.id,
                    promotion_name=promotion.name,
                    rule_id=tier.id,
                    slot=slot,
                    options=tier.gift_options,
                    max_selections=tier.max_gift_selections,
                )
                for slot in range(tier.max_gift_selections)
            ]
            return [], pending

        stock = await self._stock_for([option.product_id for option in chosen if option.product_id])
        gifts: list[FreeGift] = []
        for option in chosen:
            if option.product_id:
                entry = stock.get(option.product_id)
                if not _is_available(entry, option.quantity):
                    continue
            gifts.append(
                FreeGift(
                    promotion_id=promotion.id,
                    product_id=option.product_id,
                    variant_id=option.variant_id,
                    option_id=option.id,
                    name=option.name,
                    image_url=option.image_url,
                    quantity=option.quantity,
                    value=option.value,
                )
            )
        return gifts, []
