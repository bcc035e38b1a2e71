# tests/test_checkout.py
import pytest

from promo_engine.domain.enums import PromotionStatus, PromotionType
from promo_engine.schemas.evaluation import EvaluationContext, EvaluationResult, FreeGift
from promo_engine.schemas.promotion import GiftOption
from promo_engine.services.checkout import (
    commit_promotions,
    compute_order_totals,
    gift_line_items,
    quote_promotions,
)
from promo_engine.services.engine import PromotionEngine
from promo_engine.services.exceptions import (
    ContextValidationError,
    DomainValidationError,
    IntegrityValidationError,
    NotFoundError,
    PromotionExpiredError,
    PromotionUsageLimitError,
)

from tests.fakes import (
    FakePromotionRepository,
    fixed_rule,
    item,
    make_context,
    make_promotion,
    options_tier,
    percentage_rule,
    standalone_tier,
)


def test_order_totals_subtract_discount():
    result = EvaluationResult(total_discount=150)

    totals = compute_order_totals(1000, 90, result)

    assert totals.discount == 150
    assert totals.total == 940


def test_order_total_never_negative():
    result = EvaluationResult(total_discount=1000)

    totals = compute_order_totals(1000, 0, result)

    assert totals.total == 0


@pytest.mark.asyncio
async def test_gift_line_items_are_zero_priced(engine, repository):
    repository.add(
        make_promotion("gift", type=PromotionType.free_gift),
        standalone_tier("gift", 100, "Tote bag", value=2500),
    )
    result = await engine.evaluate(make_context(item("p1", 500)))

    lines = gift_line_items(result)

    assert len(lines) == 1
    assert lines[0].unit_price == 0
    assert lines[0].line_total == 0
    assert lines[0].value == 2500
    assert lines[0].is_gift
    assert lines[0].source_promotion_id == "gift"


@pytest.mark.asyncio
async def test_quote_degrades_to_no_promotions_on_integrity_failure(engine, repository):
    repository.add(make_promotion("huge"), fixed_rule("huge", 600_000))

    result = await quote_promotions(engine, make_context(item("p1", 2_000_000)))

    assert result == EvaluationResult.empty()


@pytest.mark.asyncio
async def test_quote_propagates_invalid_context(engine):
    with pytest.raises(ContextValidationError):
        await quote_promotions(engine, EvaluationContext(items=(item("p1", 100),), cart_subtotal=5))


@pytest.mark.asyncio
async def test_commit_records_usage_once_per_promotion(engine, repository, clock):
    repository.add(make_promotion("a", priority=2, usage_limit=10), fixed_rule("a", 100))
    repository.add(make_promotion("b", priority=1), percentage_rule("b", 10))
    context = make_context(item("p1", 1000), customer_id="cust-1")
    result = await engine.evaluate(context)

    committed = await commit_promotions(repository, "order-1", context, result, clock=clock)

    assert [entry.promotion_id for entry in committed] == ["a", "b"]
    assert repository.promotions["a"].current_usage_count == 1
    assert repository.promotions["b"].current_usage_count == 1
    assert [(entry["promotion_id"], entry["discount_amount"]) for entry in repository.usage] == [("a", 100), ("b", 90)]
    assert all(entry["order_id"] == "order-1" for entry in repository.usage)


@pytest.mark.asyncio
async def test_commit_refuses_pending_gift_selection(engine, repository, clock):
    options = [GiftOption(id="opt-a", name="Socks"), GiftOption(id="opt-b", name="Cap")]
    repository.add(make_promotion("pick", type=PromotionType.free_gift), options_tier("pick", 0, options))
    context = make_context(item("p1", 300))
    result = await engine.evaluate(context)

    with pytest.raises(DomainValidationError) as exc:
        await commit_promotions(repository, "order-1", context, result, clock=clock)
    assert "Gift selection" in exc.value.detail
    assert repository.usage == []


@pytest.mark.asyncio
async def test_commit_rejects_limit_reached_after_quote(engine, repository, clock):
    repository.add(make_promotion("last", usage_limit=1), fixed_rule("last", 50))
    context = make_context(item("p1", 500))
    result = await engine.evaluate(context)
    # another order consumed the last use in the meantime
    repository.promotions["last"] = repository.promotions["last"].model_copy(update={"current_usage_count": 1})

    with pytest.raises(PromotionUsageLimitError):
        await commit_promotions(repository, "order-2", context, result, clock=clock)
    assert repository.usage == []


@pytest.mark.asyncio
async def test_commit_rejects_promotion_paused_after_quote(engine, repository, clock):
    repository.add(make_promotion("a"), fixed_rule("a", 50))
    context = make_context(item("p1", 500))
    result = await engine.evaluate(context)
    await repository.update_promotion_status("a", PromotionStatus.paused)

    with pytest.raises(PromotionExpiredError):
        await commit_promotions(repository, "order-3", context, result, clock=clock)


@pytest.mark.asyncio
async def test_commit_rejects_unknown_promotion(engine, repository, clock):
    repository.add(make_promotion("a"), fixed_rule("a", 50))
    context = make_context(item("p1", 500))
    result = await engine.evaluate(context)
    del repository.promotions["a"]

    with pytest.raises(NotFoundError):
        await commit_promotions(repository, "order-4", context, result, clock=clock)


@pytest.mark.asyncio
async def test_commit_rechecks_per_customer_limit(engine, repository, clock):
    repository.add(make_promotion("once", usage_limit_per_customer=1), fixed_rule("once", 50))
    context = make_context(item("p1", 500), customer_id="cust-1")
    result = await engine.evaluate(context)
    await commit_promotions(repository, "order-5", context, result, clock=clock)

    with pytest.raises(PromotionUsageLimitError):
        await commit_promotions(repository, "order-6", context, result, clock=clock)
    assert len(repository.usage) == 1


class _StaleCountRepository(FakePromotionRepository):
    """Reports no prior usage, as a concurrent checkout would have read it."""

    async def get_customer_usage_count(self, promotion_id: str, customer_id: str) -> int:
        return 0


@pytest.mark.asyncio
async def test_commit_guards_customer_limit_when_write_races(inventory, clock, limits):
    repository = _StaleCountRepository()
    engine = PromotionEngine(repository, inventory, clock=clock, limits=limits)
    repository.add(make_promotion("once", usage_limit_per_customer=1), fixed_rule("once", 50))
    context = make_context(item("p1", 500), customer_id="cust-1")
    result = await engine.evaluate(context)
    await commit_promotions(repository, "order-7", context, result, clock=clock)

    with pytest.raises(PromotionUsageLimitError):
        await commit_promotions(repository, "order-8", context, result, clock=clock)
    assert [entry["order_id"] for entry in repository.usage] == ["order-7"]


@pytest.mark.asyncio
async def test_commit_rejects_gift_not_granted_by_rules(engine, repository, clock):
    repository.add(
        make_promotion("gift", type=PromotionType.free_gift),
        standalone_tier("gift", 100, "Tote bag", value=2500),
    )
    context = make_context(item("p1", 500))
    result = await engine.evaluate(context)
    forged = result.applied_promotions[0].model_copy(
        update={"free_gifts": (FreeGift(promotion_id="gift", name="Gold watch", value=90_000),)}
    )
    tampered = result.model_copy(update={"applied_promotions": (forged,), "free_gifts": forged.free_gifts})

    with pytest.raises(IntegrityValidationError) as exc:
        await commit_promotions(repository, "order-9", context, tampered, clock=clock)
    assert exc.value.check == "gift_rules"
    assert repository.usage == []
    assert repository.promotions["gift"].current_usage_count == 0


@pytest.mark.asyncio
async def test_commit_rejects_gift_when_cart_no_longer_reaches_tier(engine, repository, clock):
    repository.add(
        make_promotion("gift", type=PromotionType.free_gift),
        standalone_tier("gift", 400, "Tote bag"),
    )
    result = await engine.evaluate(make_context(item("p1", 500)))

    with pytest.raises(IntegrityValidationError):
        await commit_promotions(repository, "order-10", make_context(item("p1", 300)), result, clock=clock)
    assert repository.usage == []
