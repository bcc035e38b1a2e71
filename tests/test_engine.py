# tests/test_engine.py
from datetime import timedelta

import pytest

from promo_engine.domain.enums import ConflictType, Operator, PromotionType
from promo_engine.schemas.evaluation import AppliedPromotion, EvaluationContext, EvaluationResult
from promo_engine.schemas.promotion import GiftOption
from promo_engine.services.engine import PromotionEngine
from promo_engine.services.exceptions import ContextValidationError, IntegrityValidationError
from promo_engine.services.promotion_cache import PromotionCache

from tests.fakes import (
    NOW,
    cart_value,
    fixed_rule,
    item,
    make_context,
    make_promotion,
    options_tier,
    percentage_rule,
    standalone_tier,
)


@pytest.mark.asyncio
async def test_priority_order_applies_on_running_subtotal(engine, repository):
    repository.add(make_promotion("hundred-off", priority=2, type=PromotionType.fixed_discount), fixed_rule("hundred-off", 100))
    repository.add(make_promotion("five-percent", priority=1), percentage_rule("five-percent", 5))

    result = await engine.evaluate(make_context(item("p1", 1000)))

    assert result.total_discount == 145
    assert [entry.promotion_id for entry in result.applied_promotions] == ["hundred-off", "five-percent"]
    assert result.conflict_resolution.conflict_type == ConflictType.priority


@pytest.mark.asyncio
async def test_rules_of_one_promotion_are_summed(engine, repository):
    repository.add(
        make_promotion("combo"),
        fixed_rule("combo", 100),
        percentage_rule("combo", 10),
    )

    result = await engine.evaluate(make_context(item("p1", 1000)))

    assert result.total_discount == 200
    assert result.applied_promotions[0].subtotal_after == 800


@pytest.mark.asyncio
async def test_rule_cap_limits_discount(engine, repository):
    repository.add(make_promotion("half"), percentage_rule("half", 50, max_discount_amount=30))

    result = await engine.evaluate(make_context(item("p1", 200)))

    assert result.total_discount == 30
    assert result.conflict_resolution is None


@pytest.mark.asyncio
async def test_gift_tiers_grant_only_highest_tier(engine, repository):
    repository.add(
        make_promotion("tiers", type=PromotionType.free_gift),
        standalone_tier("tiers", 500, "Keychain"),
        standalone_tier("tiers", 1000, "Backpack"),
    )

    result = await engine.evaluate(make_context(item("p1", 1200)))

    assert [gift.name for gift in result.free_gifts] == ["Backpack"]
    assert result.total_discount == 0
    assert [entry.promotion_id for entry in result.applied_promotions] == ["tiers"]


@pytest.mark.asyncio
async def test_evaluation_is_idempotent(engine, repository):
    repository.add(make_promotion("a", priority=2), fixed_rule("a", 120))
    repository.add(make_promotion("b", priority=1), percentage_rule("b", 15))
    context = make_context(item("p1", 730), item("p2", 415, quantity=2))

    first = await engine.evaluate(context)
    second = await engine.evaluate(context)

    assert first.applied_promotions == second.applied_promotions
    assert first.total_discount == second.total_discount


@pytest.mark.asyncio
async def test_customer_who_used_promotion_is_excluded(engine, repository):
    repository.add(make_promotion("once", usage_limit_per_customer=1), percentage_rule("once", 10))
    repository.add_usage("once", "cust-1")

    used = await engine.evaluate(make_context(item("p1", 1000), customer_id="cust-1"))
    fresh = await engine.evaluate(make_context(item("p1", 1000), customer_id="cust-2"))

    assert used.eligible_promotions == ()
    assert used.total_discount == 0
    assert [entry.promotion.id for entry in fresh.eligible_promotions] == ["once"]


@pytest.mark.asyncio
async def test_multi_option_gift_without_selection_is_pending(engine, repository):
    options = [GiftOption(id="opt-a", name="Socks"), GiftOption(id="opt-b", name="Cap")]
    repository.add(make_promotion("pick", type=PromotionType.free_gift), options_tier("pick", 0, options, max_selections=2))

    result = await engine.evaluate(make_context(item("p1", 300)))

    assert result.requires_gift_selection
    assert len(result.pending_gift_selections) == 2
    assert all(entry.requires_selection for entry in result.pending_gift_selections)
    assert all(entry.product_id is None for entry in result.pending_gift_selections)
    assert result.free_gifts == ()


@pytest.mark.asyncio
async def test_total_discount_never_exceeds_cart_subtotal(engine, repository):
    for index in range(3):
        repository.add(make_promotion(f"big-{index}", priority=index), fixed_rule(f"big-{index}", 800))

    result = await engine.evaluate(make_context(item("p1", 1000)))

    assert result.total_discount == 1000
    assert 0 <= result.total_discount <= 1000
    assert [entry.discount_amount for entry in result.applied_promotions] == [800, 200]


@pytest.mark.asyncio
async def test_exclusive_promotions_never_applied_together(engine, repository):
    repository.add(make_promotion("vip", priority=5, exclusive_with=frozenset({"flash"})), percentage_rule("vip", 20))
    repository.add(make_promotion("flash", priority=1), percentage_rule("flash", 30))
    repository.add(make_promotion("ship", priority=0), fixed_rule("ship", 15))

    result = await engine.evaluate(make_context(item("p1", 1000)))

    applied_ids = [entry.promotion_id for entry in result.applied_promotions]
    assert applied_ids == ["vip", "ship"]
    assert result.conflict_resolution.conflict_type == ConflictType.exclusivity
    assert result.conflict_resolution.rejected_promotion_ids == ("flash",)
    assert len(result.eligible_promotions) == 3


@pytest.mark.asyncio
async def test_empty_cart_short_circuits(engine, repository):
    result = await engine.evaluate(EvaluationContext(items=(), cart_subtotal=0))

    assert result == EvaluationResult.empty()
    assert repository.calls["get_active_promotions"] == 0


@pytest.mark.asyncio
async def test_inconsistent_cart_aborts(engine, repository):
    repository.add(make_promotion("a"), percentage_rule("a", 10))

    with pytest.raises(ContextValidationError):
        await engine.evaluate(EvaluationContext(items=(item("p1", 100),), cart_subtotal=90))


@pytest.mark.asyncio
async def test_directly_built_out_of_range_context_is_a_domain_error(engine, repository):
    repository.add(make_promotion("a"), percentage_rule("a", 10))
    context = EvaluationContext(items=(item("p1", 100, quantity=0),), cart_subtotal=0)

    with pytest.raises(ContextValidationError):
        await engine.evaluate(context)
    assert repository.calls["get_active_promotions"] == 0


@pytest.mark.asyncio
async def test_expired_and_misconfigured_promotions_do_not_block_others(engine, repository):
    repository.add(
        make_promotion("old", starts_at=NOW - timedelta(days=10), ends_at=NOW - timedelta(days=1)),
        percentage_rule("old", 50),
    )
    repository.add(make_promotion("broken"), percentage_rule("broken", 250))
    repository.add(make_promotion("good"), cart_value("good", Operator.gte, 100), fixed_rule("good", 25))

    result = await engine.evaluate(make_context(item("p1", 500)))

    assert [entry.promotion_id for entry in result.applied_promotions] == ["good"]
    assert result.total_discount == 25


@pytest.mark.asyncio
async def test_high_value_promotion_without_usage_limit_aborts(engine, repository):
    repository.add(make_promotion("huge", type=PromotionType.fixed_discount), fixed_rule("huge", 600_000))

    with pytest.raises(IntegrityValidationError):
        await engine.evaluate(make_context(item("p1", 2_000_000)))


@pytest.mark.asyncio
async def test_promotions_no_longer_applied_are_reported_removed(engine, repository):
    repository.add(make_promotion("still"), percentage_rule("still", 10))
    previous = AppliedPromotion(
        promotion_id="gone",
        promotion_name="Gone",
        promotion_type=PromotionType.fixed_discount,
        priority=0,
        discount_amount=50,
        subtotal_before=1000,
        subtotal_after=950,
        applied_at=NOW - timedelta(hours=1),
    )

    result = await engine.evaluate(make_context(item("p1", 1000), current_promotions=(previous,)))

    assert result.removed_promotion_ids == ("gone",)
    assert [entry.promotion_id for entry in result.applied_promotions] == ["still"]


@pytest.mark.asyncio
async def test_cache_serves_repeated_evaluations(repository, inventory, clock, limits):
    cache = PromotionCache()
    engine = PromotionEngine(repository, inventory, clock=clock, limits=limits, cache=cache)
    repository.add(make_promotion("a"), percentage_rule("a", 10))
    context = make_context(item("p1", 1000))

    await engine.evaluate(context)
    result = await engine.evaluate(context)

    assert result.total_discount == 100
    assert repository.calls["get_active_promotions"] == 1
    assert repository.calls["get_promotion_rules"] == 1
    assert cache.stats()["hits"] == 2
