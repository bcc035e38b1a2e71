from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import JSON, DateTime, Integer, String, func, insert, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from promo_engine.core.logging import get_logger
from promo_engine.db.operations import flush_async, refresh_async
from promo_engine.domain.enums import PromotionStatus, RuleType
from promo_engine.models import promotion as models
from promo_engine.schemas.evaluation import FreeGift
from promo_engine.schemas.promotion import Promotion, PromotionRule, parse_rule
from promo_engine.services.exceptions import NotFoundError, PromotionUsageLimitError
from promo_engine.services.interfaces import Clock, utc_now

logger = get_logger(__name__)

_RULE_ENVELOPE = {"id", "promotion_id", "created_at", "operator", "condition_type", "benefit_type"}


def _to_schema(row: models.Promotion) -> Promotion:
    return Promotion.model_validate(row)


def _rule_to_row(rule: PromotionRule, position: int) -> models.PromotionRule:
    kind = getattr(rule, "condition_type", None) or getattr(rule, "benefit_type")
    operator = getattr(rule, "operator", None)
    return models.PromotionRule(
        id=rule.id,
        promotion_id=rule.promotion_id,
        rule_type=rule.rule_type,
        kind=kind,
        operator=operator.value if operator is not None else None,
        payload=rule.model_dump(mode="json", exclude=_RULE_ENVELOPE),
        position=position,
        **({"created_at": rule.created_at} if rule.created_at else {}),
    )


def _row_to_rule(row: models.PromotionRule) -> PromotionRule:
    payload: dict[str, Any] = dict(row.payload or {})
    payload.update(id=row.id, promotion_id=row.promotion_id, created_at=row.created_at)
    if row.rule_type == RuleType.condition:
        payload.update(condition_type=row.kind, operator=row.operator)
    else:
        payload["benefit_type"] = row.kind
    return parse_rule(payload)


class SqlAlchemyPromotionRepository:
    """Promotion persistence on a caller-owned AsyncSession.

    Nothing here commits. The caller decides the transaction boundary so that
    usage recording can share the order-creation transaction.
    """

    def __init__(self, session: AsyncSession, clock: Clock = utc_now) -> None:
        self.session = session
        self.clock = clock

    async def add_promotion(self, promotion: Promotion, rules: Sequence[PromotionRule] = ()) -> Promotion:
        row = models.Promotion(
            **promotion.model_dump(exclude={"exclusive_with", "updated_at"}),
            exclusive_with=sorted(promotion.exclusive_with),
        )
        self.session.add(row)
        await flush_async(self.session, row)
        rule_rows = [_rule_to_row(rule, position) for position, rule in enumerate(rules)]
        if rule_rows:
            self.session.add_all(rule_rows)
            await flush_async(self.session, *rule_rows)
        await refresh_async(self.session, row)
        return _to_schema(row)

    async def get_active_promotions(self) -> list[Promotion]:
        stmt = (
            select(models.Promotion)
            .where(
                models.Promotion.status == PromotionStatus.active,
                models.Promotion.deleted_at.is_(None),
            )
            .order_by(models.Promotion.priority.desc(), models.Promotion.created_at)
        )
        result = await self.session.execute(stmt)
        now = self.clock()
        # window compared in Python: SQLite drops tz info on stored datetimes
        promotions = [_to_schema(row) for row in result.scalars().all()]
        return [promotion for promotion in promotions if promotion.is_within_window(now)]

    async def get_promotion_rules(self, promotion_id: str) -> list[PromotionRule]:
        stmt = (
            select(models.PromotionRule)
            .where(models.PromotionRule.promotion_id == promotion_id)
            .order_by(models.PromotionRule.position, models.PromotionRule.created_at)
        )
        result = await self.session.execute(stmt)
        return [_row_to_rule(row) for row in result.scalars().all()]

    async def get_promotion(self, promotion_id: str) -> Optional[Promotion]:
        row = await self.session.get(models.Promotion, promotion_id, populate_existing=True)
        return _to_schema(row) if row is not None else None

    async def get_customer_usage_count(self, promotion_id: str, customer_id: str) -> int:
        stmt = select(func.count(models.PromotionUsage.id)).where(
            models.PromotionUsage.promotion_id == promotion_id,
            models.PromotionUsage.customer_id == customer_id,
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def check_exclusivity_conflicts(self, promotion_id: str, other_ids: Sequence[str]) -> list[str]:
        if not other_ids:
            return []
        stmt = select(models.Promotion).where(
            models.Promotion.id.in_([promotion_id, *other_ids])
        )
        result = await self.session.execute(stmt)
        rows = {row.id: row for row in result.scalars().all()}
        current = rows.get(promotion_id)
        if current is None:
            return []
        declared = set(current.exclusive_with or [])
        return [
            other_id
            for other_id in other_ids
            if other_id in rows
            and (other_id in declared or promotion_id in (rows[other_id].exclusive_with or []))
        ]

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
        gifts_payload = [gift.model_dump(mode="json") for gift in gifts]
        if customer_id is None or usage_limit_per_customer is None:
            usage = models.PromotionUsage(
                promotion_id=promotion_id,
                order_id=order_id,
                customer_id=customer_id,
                discount_amount=discount_amount,
                gifts=gifts_payload,
                cart_subtotal=cart_subtotal,
                used_at=self.clock(),
            )
            self.session.add(usage)
            await flush_async(self.session, usage)
            return

        # count and insert in one statement; on postgres the row lock taken by
        # increment_usage_count queues concurrent orders for the same promotion
        usage_table = models.PromotionUsage.__table__
        used = (
            select(func.count(usage_table.c.id))
            .where(
                usage_table.c.promotion_id == promotion_id,
                usage_table.c.customer_id == customer_id,
            )
            .correlate(None)
            .scalar_subquery()
        )
        row = select(
            literal(str(uuid.uuid4()), String(36)),
            literal(promotion_id, String(36)),
            literal(order_id, String(64)),
            literal(customer_id, String(64)),
            literal(discount_amount, Integer),
            literal(gifts_payload, JSON),
            literal(cart_subtotal, Integer),
            literal(self.clock(), DateTime(timezone=True)),
        ).where(used < usage_limit_per_customer)
        stmt = insert(usage_table).from_select(
            [
                usage_table.c.id,
                usage_table.c.promotion_id,
                usage_table.c.order_id,
                usage_table.c.customer_id,
                usage_table.c.discount_amount,
                usage_table.c.gifts,
                usage_table.c.cart_subtotal,
                usage_table.c.used_at,
            ],
            row,
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            raise PromotionUsageLimitError("Customer usage limit reached for this promotion", promotion_id)

    async def increment_usage_count(self, promotion_id: str) -> None:
        stmt = (
            update(models.Promotion)
            .where(
                models.Promotion.id == promotion_id,
                or_(
                    models.Promotion.usage_limit.is_(None),
                    models.Promotion.current_usage_count < models.Promotion.usage_limit,
                ),
            )
            .values(current_usage_count=models.Promotion.current_usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            if await self.get_promotion(promotion_id) is None:
                raise NotFoundError(f"Promotion {promotion_id} not found")
            raise PromotionUsageLimitError("Promotion usage limit reached", promotion_id)

    async def update_promotion_status(self, promotion_id: str, status: PromotionStatus) -> Promotion:
        row = await self._get_row(promotion_id)
        row.status = status
        await flush_async(self.session, row)
        await refresh_async(self.session, row)
        return _to_schema(row)

    async def soft_delete_promotion(self, promotion_id: str, deleted_at: datetime) -> Promotion:
        row = await self._get_row(promotion_id)
        row.deleted_at = deleted_at
        await flush_async(self.session, row)
        await refresh_async(self.session, row)
        logger.info("Promotion soft-deleted", extra={"promotion_id": promotion_id})
        return _to_schema(row)

    async def _get_row(self, promotion_id: str) -> models.Promotion:
        row = await self.session.get(models.Promotion, promotion_id)
        if row is None:
            raise NotFoundError("Promotion not found")
        return row
