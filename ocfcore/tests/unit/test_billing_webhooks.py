from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
from uuid import uuid4

import pytest
from sqlalchemy import select

from ocfcore.core.config import get_settings
from ocfcore.core.errors import WebhookSignatureError
from ocfcore.domain.models import Invoice, SubscriptionBatch, Terminal, UsageMetric, UserSubscription
from ocfcore.persistence.db import SessionLocal
from ocfcore.services import terminals as terminals_service
from ocfcore.services.billing import licenses
from ocfcore.services.billing.webhooks import WebhookProcessingError, handle_event, local_status
from ocfcore.tests.utils.billing import create_test_plan, create_test_subscription
from ocfcore.tests.utils.fakes import FakeGateway, sign_webhook_payload


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _event(event_type: str, payload: dict, event_id: str | None = None) -> dict:
    return {"id": event_id or f"evt_{uuid4().hex}", "type": event_type, "data": {"object": payload}}


def _subscription_payload(stripe_id: str, *, price_id: str, status: str, metadata: dict, quantity: int = 1) -> dict:
    now = _utc_now()
    return {
        "id": stripe_id,
        "status": status,
        "customer": "cus_hook",
        "metadata": metadata,
        "items": {
            "data": [
                {
                    "id": f"si_{stripe_id}",
                    "quantity": quantity,
                    "price": {"id": price_id},
                    "current_period_start": int(now.timestamp()),
                    "current_period_end": int((now + timedelta(days=30)).timestamp()),
                }
            ]
        },
    }


def test_local_status_folds_processor_spellings() -> None:
    assert local_status("canceled") == "cancelled"
    assert local_status("unpaid") == "past_due"
    assert local_status("trialing") == "trialing"
    assert local_status(None) == "incomplete"


def test_construct_event_verifies_signature() -> None:
    gateway = FakeGateway()
    secret = get_settings().stripe_webhook_secret
    payload = json.dumps(_event("checkout.session.completed", {"id": "cs_1"}, "evt_sig")).encode("utf-8")

    event = gateway.construct_event(payload, sign_webhook_payload(payload, secret))
    assert event["id"] == "evt_sig"

    with pytest.raises(WebhookSignatureError):
        gateway.construct_event(payload, sign_webhook_payload(payload, "whsec_wrong"))
    with pytest.raises(WebhookSignatureError):
        gateway.construct_event(payload, None)


@pytest.mark.asyncio
async def test_subscription_created_is_applied_once() -> None:
    user_id = uuid4().hex
    plan = await create_test_plan(stripe_price_id="price_hook")
    event = _event(
        "customer.subscription.created",
        _subscription_payload(
            "sub_hook", price_id="price_hook", status="active", metadata={"user_id": user_id}
        ),
    )

    async with SessionLocal() as session:
        first = await handle_event(session, event)
    async with SessionLocal() as session:
        replay = await handle_event(session, event)

    assert first.outcome == "processed"
    assert replay.outcome == "duplicate"
    async with SessionLocal() as session:
        rows = (
            await session.execute(select(UserSubscription).where(UserSubscription.user_id == user_id))
        ).scalars().all()
        metrics = (
            await session.execute(select(UsageMetric).where(UsageMetric.user_id == user_id))
        ).scalars().all()
    assert len(rows) == 1
    assert rows[0].status == "active"
    assert rows[0].subscription_plan_id == plan.id
    assert len(metrics) == 3


@pytest.mark.asyncio
async def test_invoice_paid_activates_bulk_batch_and_records_invoice() -> None:
    gateway = FakeGateway()
    purchaser_id = uuid4().hex
    plan = await create_test_plan()
    async with SessionLocal() as session:
        batch = await licenses.purchase_bulk(
            session=session,
            gateway=gateway,
            purchaser_id=purchaser_id,
            email="buyer@example.test",
            name=None,
            plan_id=plan.id,
            quantity=2,
        )

    invoice = {
        "id": "in_bulk",
        "subscription": batch.stripe_subscription_id,
        "amount_paid": 2400,
        "currency": "eur",
        "status": "paid",
        "number": "INV-1",
        "created": int(_utc_now().timestamp()),
    }
    async with SessionLocal() as session:
        outcome = await handle_event(session, _event("invoice.payment_succeeded", invoice))
    assert outcome.outcome == "processed"

    async with SessionLocal() as session:
        stored_batch = await session.get(SubscriptionBatch, batch.id)
        stored_invoice = (
            await session.execute(select(Invoice).where(Invoice.stripe_invoice_id == "in_bulk"))
        ).scalar_one()
    assert stored_batch.status == "active"
    assert stored_invoice.user_id == purchaser_id
    assert stored_invoice.amount == 2400
    assert stored_invoice.paid_at is not None


@pytest.mark.asyncio
async def test_subscription_deleted_stops_live_terminals() -> None:
    user_id = uuid4().hex
    plan = await create_test_plan(max_concurrent_terminals=3)
    await create_test_subscription(user_id=user_id, plan=plan, stripe_subscription_id="sub_gone")
    async with SessionLocal() as session:
        await terminals_service.start_terminal(session=session, user_id=user_id)

    async with SessionLocal() as session:
        outcome = await handle_event(session, _event("customer.subscription.deleted", {"id": "sub_gone"}))
    assert outcome.outcome == "processed"

    async with SessionLocal() as session:
        subscription = (
            await session.execute(select(UserSubscription).where(UserSubscription.user_id == user_id))
        ).scalar_one()
        statuses = (
            await session.execute(select(Terminal.status).where(Terminal.user_id == user_id))
        ).scalars().all()
    assert subscription.status == "cancelled"
    assert statuses == ["stopped"]


@pytest.mark.asyncio
async def test_unknown_event_type_is_ignored() -> None:
    async with SessionLocal() as session:
        outcome = await handle_event(session, _event("customer.created", {"id": "cus_1"}))
    assert outcome.outcome == "ignored"


@pytest.mark.asyncio
async def test_update_for_unknown_subscription_requests_redelivery() -> None:
    event = _event(
        "customer.subscription.updated",
        _subscription_payload("sub_missing", price_id="price_none", status="active", metadata={}),
        "evt_missing",
    )
    async with SessionLocal() as session:
        with pytest.raises(WebhookProcessingError):
            await handle_event(session, event)

    # Nothing was marked processed, so a later delivery is handled normally.
    user_id = uuid4().hex
    plan = await create_test_plan(stripe_price_id="price_none")
    await create_test_subscription(user_id=user_id, plan=plan, stripe_subscription_id="sub_missing")
    async with SessionLocal() as session:
        outcome = await handle_event(session, event)
    assert outcome.outcome == "processed"


@pytest.mark.asyncio
async def test_replayed_invoice_paid_leaves_invoice_untouched() -> None:
    gateway = FakeGateway()
    purchaser_id = uuid4().hex
    plan = await create_test_plan()
    async with SessionLocal() as session:
        batch = await licenses.purchase_bulk(
            session=session,
            gateway=gateway,
            purchaser_id=purchaser_id,
            email="buyer@example.test",
            name=None,
            plan_id=plan.id,
            quantity=3,
        )
    invoice_id = f"in_{uuid4().hex[:10]}"
    invoice = {
        "id": invoice_id,
        "subscription": batch.stripe_subscription_id,
        "amount_paid": 3600,
        "currency": "eur",
        "status": "paid",
        "number": "INV-7",
        "created": int(_utc_now().timestamp()),
    }
    event_id = f"evt_{uuid4().hex}"

    async with SessionLocal() as session:
        first = await handle_event(session, _event("invoice.payment_succeeded", invoice, event_id))
    # A redelivery carrying a different body must not be re-applied.
    async with SessionLocal() as session:
        replay = await handle_event(
            session, _event("invoice.payment_succeeded", {**invoice, "amount_paid": 1}, event_id)
        )

    assert first.outcome == "processed"
    assert replay.outcome == "duplicate"
    async with SessionLocal() as session:
        rows = (
            await session.execute(select(Invoice).where(Invoice.stripe_invoice_id == invoice_id))
        ).scalars().all()
        stored_batch = await session.get(SubscriptionBatch, batch.id)
    assert [row.amount for row in rows] == [3600]
    assert stored_batch.status == "active"
    assert stored_batch.total_quantity == 3


@pytest.mark.asyncio
async def test_replayed_subscription_update_is_not_reapplied() -> None:
    user_id = uuid4().hex
    basic = await create_test_plan(stripe_price_id=f"price_{uuid4().hex[:8]}", max_concurrent_terminals=1)
    premium = await create_test_plan(
        name="Premium", stripe_price_id=f"price_{uuid4().hex[:8]}", max_concurrent_terminals=4
    )
    stripe_id = f"sub_{uuid4().hex[:10]}"
    subscription = await create_test_subscription(user_id=user_id, plan=basic, stripe_subscription_id=stripe_id)
    event = _event(
        "customer.subscription.updated",
        _subscription_payload(
            stripe_id, price_id=premium.stripe_price_id, status="past_due", metadata={"user_id": user_id}
        ),
    )

    async with SessionLocal() as session:
        first = await handle_event(session, event)
    assert first.outcome == "processed"

    # The account recovers locally before the processor redelivers the old event.
    async with SessionLocal() as session:
        row = await session.get(UserSubscription, subscription.id)
        assert row.status == "past_due"
        assert row.subscription_plan_id == premium.id
        row.status = "active"
        await session.commit()

    async with SessionLocal() as session:
        replay = await handle_event(session, event)
    assert replay.outcome == "duplicate"

    async with SessionLocal() as session:
        row = await session.get(UserSubscription, subscription.id)
        limits = (
            await session.execute(
                select(UsageMetric.limit_value).where(
                    UsageMetric.subscription_id == subscription.id,
                    UsageMetric.metric_type == "concurrent_terminals",
                )
            )
        ).scalars().all()
    assert row.status == "active"
    assert row.subscription_plan_id == premium.id
    assert limits == [4]
