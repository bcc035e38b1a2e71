import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from promo_engine.db.session import Base
from promo_engine.domain.enums import PromotionStatus, PromotionType, RuleType


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Promotion(Base):
    __tablename__ = "promotions"
    __table_args__ = (
        Index("ix_promotions_status", "status"),
        Index("ix_promotions_start_end", "starts_at", "ends_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(180), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[PromotionType] = mapped_column(SqlEnum(PromotionType), nullable=False)
    status: Mapped[PromotionStatus] = mapped_column(SqlEnum(PromotionStatus), default=PromotionStatus.draft, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_limit_per_customer: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    exclusive_with: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    rules: Mapped[list["PromotionRule"]] = relationship(
        "PromotionRule",
        cascade="all, delete-orphan",
        back_populates="promotion",
        order_by="PromotionRule.position",
    )


class PromotionRule(Base):
    __tablename__ = "promotion_rules"
    __table_args__ = (Index("ix_promotion_rules_promotion", "promotion_id", "position"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    promotion_id: Mapped[str] = mapped_column(String(36), ForeignKey("promotions.id", ondelete="CASCADE"), nullable=False)
    rule_type: Mapped[RuleType] = mapped_column(SqlEnum(RuleType), nullable=False)
    # discriminator for the payload: one of ConditionType / BenefitType values
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    operator: Mapped[str | None] = mapped_column(String(16), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    promotion: Mapped[Promotion] = relationship("Promotion", back_populates="rules")


class PromotionUsage(Base):
    __tablename__ = "promotion_usage"
    __table_args__ = (
        Index("ix_promotion_usage_customer", "promotion_id", "customer_id"),
        Index("ix_promotion_usage_order", "order_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    promotion_id: Mapped[str] = mapped_column(String(36), ForeignKey("promotions.id"), nullable=False)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gifts: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    cart_subtotal: Mapped[int] = mapped_column(Integer, nullable=False)
    used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
