from __future__ import annotations

import pytest

from ocfcore.domain.models import SubscriptionPlan
from ocfcore.services.billing.pricing import calculate_pricing_preview, parse_tiers, total_cost


def _tiered_plan() -> SubscriptionPlan:
    # Stored out of order on purpose; rungs are sorted by min_qty.
    return SubscriptionPlan(
        id="plan-tiered",
        name="Classroom",
        currency="eur",
        price_amount=1000,
        pricing_tiers=[
            {"min_qty": 16, "max_qty": None, "unit_amount": 600},
            {"min_qty": 1, "max_qty": 5, "unit_amount": 1000},
            {"min_qty": 6, "max_qty": 15, "unit_amount": 800},
        ],
    )


def test_parse_tiers_sorts_and_treats_zero_max_as_unbounded() -> None:
    tiers = parse_tiers([{"min_qty": 3, "max_qty": 0, "unit_amount": 5}, {"min_qty": 1, "max_qty": 2, "unit_amount": 9}])
    assert [tier.min_qty for tier in tiers] == [1, 3]
    assert tiers[1].max_qty is None


def test_graduated_preview_spans_every_rung() -> None:
    preview = calculate_pricing_preview(_tiered_plan(), 20)

    assert [(line.range, line.quantity, line.subtotal) for line in preview.tiers] == [
        ("1-5", 5, 5000),
        ("6-15", 10, 8000),
        ("16+", 5, 3000),
    ]
    assert preview.total_cost == 16000
    assert preview.savings == 4000
    assert preview.average_per_unit == pytest.approx(8.0)


def test_partial_first_rung_has_no_savings() -> None:
    preview = calculate_pricing_preview(_tiered_plan(), 3)
    assert [line.range for line in preview.tiers] == ["1-3"]
    assert preview.total_cost == 3000
    assert preview.savings == 0


def test_flat_plan_prices_per_seat() -> None:
    plan = SubscriptionPlan(id="plan-flat", name="Solo", currency="eur", price_amount=1250, pricing_tiers=None)
    preview = calculate_pricing_preview(plan, 4)
    assert preview.total_cost == 5000
    assert preview.average_per_unit == pytest.approx(12.5)
    assert preview.tiers[0].range == "1-4"
    assert total_cost(plan, 4) == 5000


def test_total_cost_matches_preview() -> None:
    plan = _tiered_plan()
    assert total_cost(plan, 20) == calculate_pricing_preview(plan, 20).total_cost


def test_quantity_below_one_is_rejected() -> None:
    with pytest.raises(ValueError):
        calculate_pricing_preview(_tiered_plan(), 0)
