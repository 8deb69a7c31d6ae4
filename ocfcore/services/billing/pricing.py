from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ocfcore.domain.models import SubscriptionPlan


@dataclass(frozen=True)
class PricingTier:
    # max_qty None marks the unbounded tail rung.
    min_qty: int
    max_qty: int | None
    unit_amount: int


@dataclass(frozen=True)
class TierCost:
    range: str
    quantity: int
    unit_price: int
    subtotal: int


@dataclass(frozen=True)
class PricingBreakdown:
    plan_id: str
    plan_name: str
    currency: str
    total_quantity: int
    total_cost: int
    average_per_unit: float
    savings: int
    tiers: list[TierCost]


def parse_tiers(raw: list[dict[str, Any]] | None) -> list[PricingTier]:
    # Accept stored rungs in any order; a missing or zero max_qty means unbounded.
    tiers: list[PricingTier] = []
    for item in raw or []:
        max_qty = item.get("max_qty")
        tiers.append(
            PricingTier(
                min_qty=int(item.get("min_qty", 1)),
                max_qty=int(max_qty) if max_qty else None,
                unit_amount=int(item.get("unit_amount", 0)),
            )
        )
    return sorted(tiers, key=lambda tier: tier.min_qty)


def _graduated(tiers: list[PricingTier], quantity: int) -> list[TierCost]:
    # Fill each rung up to its capacity before moving to the next one.
    remaining = quantity
    lines: list[TierCost] = []
    for tier in tiers:
        if remaining <= 0:
            break
        if tier.max_qty is None:
            tier_qty = remaining
            label = f"{tier.min_qty}+"
        else:
            capacity = tier.max_qty - tier.min_qty + 1
            tier_qty = min(remaining, capacity)
            label = f"{tier.min_qty}-{tier.min_qty + tier_qty - 1}"
        if tier_qty <= 0:
            continue
        lines.append(
            TierCost(
                range=label,
                quantity=tier_qty,
                unit_price=tier.unit_amount,
                subtotal=tier_qty * tier.unit_amount,
            )
        )
        remaining -= tier_qty
    return lines


def total_cost(plan: SubscriptionPlan, quantity: int) -> int:
    tiers = parse_tiers(plan.pricing_tiers)
    if not tiers:
        return int(plan.price_amount) * quantity
    return sum(line.subtotal for line in _graduated(tiers, quantity))


def calculate_pricing_preview(plan: SubscriptionPlan, quantity: int) -> PricingBreakdown:
    """Price ``quantity`` seats of a plan.

    Plans without tiers are priced flat at ``price_amount`` per seat. Tiered
    plans are graduated, and savings compare against the flat per-seat price.
    Amounts are minor units; ``average_per_unit`` is in major units.
    """
    if quantity < 1:
        raise ValueError("quantity must be at least 1")
    tiers = parse_tiers(plan.pricing_tiers)
    flat_cost = int(plan.price_amount) * quantity
    if not tiers:
        lines = [
            TierCost(
                range=f"1-{quantity}",
                quantity=quantity,
                unit_price=int(plan.price_amount),
                subtotal=flat_cost,
            )
        ]
        return PricingBreakdown(
            plan_id=plan.id,
            plan_name=plan.name,
            currency=plan.currency,
            total_quantity=quantity,
            total_cost=flat_cost,
            average_per_unit=int(plan.price_amount) / 100.0,
            savings=0,
            tiers=lines,
        )
    lines = _graduated(tiers, quantity)
    total = sum(line.subtotal for line in lines)
    return PricingBreakdown(
        plan_id=plan.id,
        plan_name=plan.name,
        currency=plan.currency,
        total_quantity=quantity,
        total_cost=total,
        average_per_unit=total / quantity / 100.0,
        savings=flat_cost - total,
        tiers=lines,
    )
