from __future__ import annotations

from uuid import uuid4

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from ocfcore.domain.models import SubscriptionBatch, Terminal, UserSubscription
from ocfcore.persistence.db import SessionLocal
from ocfcore.services import terminals as terminals_service
from ocfcore.services.billing import licenses
from ocfcore.services.usage import METRIC_CONCURRENT_TERMINALS, check_usage
from ocfcore.tests.utils.billing import create_test_plan
from ocfcore.tests.utils.fakes import FakeGateway, RecordingMailer


async def _purchase(gateway: FakeGateway, purchaser_id: str, quantity: int) -> str:
    plan = await create_test_plan()
    async with SessionLocal() as session:
        batch = await licenses.purchase_bulk(
            session=session,
            gateway=gateway,
            purchaser_id=purchaser_id,
            email="buyer@example.test",
            name="Buyer",
            plan_id=plan.id,
            quantity=quantity,
        )
    return batch.id


async def _activate(batch_id: str) -> None:
    async with SessionLocal() as session:
        batch = await session.get(SubscriptionBatch, batch_id)
        await licenses.activate_batch(session, batch=batch)
        await session.commit()


async def _seat_statuses(batch_id: str) -> list[str]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(UserSubscription.status).where(UserSubscription.subscription_batch_id == batch_id)
        )
        return sorted(result.scalars().all())


async def _assign(batch_id: str, actor_id: str, target_id: str, mailer: RecordingMailer | None = None):
    async with SessionLocal() as session:
        return await licenses.assign_license(
            session=session,
            batch_id=batch_id,
            actor_id=actor_id,
            target_user_id=target_id,
            mailer=mailer,
            recipient_email=f"{target_id[:6]}@example.test" if mailer else None,
        )


@pytest.mark.asyncio
async def test_purchase_creates_pending_seats_then_activation_frees_them() -> None:
    gateway = FakeGateway()
    purchaser_id = uuid4().hex
    batch_id = await _purchase(gateway, purchaser_id, 3)

    assert await _seat_statuses(batch_id) == ["pending_payment"] * 3
    assert gateway.called("create_subscription")[0]["quantity"] == 3

    with pytest.raises(HTTPException) as exc_info:
        await _assign(batch_id, purchaser_id, uuid4().hex)
    assert exc_info.value.detail["code"] == "BATCH_NOT_ACTIVE"

    await _activate(batch_id)
    # Replaying activation changes nothing.
    await _activate(batch_id)
    assert await _seat_statuses(batch_id) == ["unassigned"] * 3


@pytest.mark.asyncio
async def test_processor_failure_cancels_the_pending_batch() -> None:
    gateway = FakeGateway()
    gateway.fail_operations.add("create_subscription")
    purchaser_id = uuid4().hex
    plan = await create_test_plan()

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc_info:
            await licenses.purchase_bulk(
                session=session,
                gateway=gateway,
                purchaser_id=purchaser_id,
                email="buyer@example.test",
                name=None,
                plan_id=plan.id,
                quantity=2,
            )
    assert exc_info.value.status_code == 502

    async with SessionLocal() as session:
        batches = await licenses.list_purchased_batches(session, purchaser_id)
    assert [batch.status for batch in batches] == ["cancelled"]


@pytest.mark.asyncio
async def test_assignment_is_bounded_by_batch_size() -> None:
    gateway = FakeGateway()
    mailer = RecordingMailer()
    purchaser_id = uuid4().hex
    batch_id = await _purchase(gateway, purchaser_id, 2)
    await _activate(batch_id)
    first, second = uuid4().hex, uuid4().hex

    seat = await _assign(batch_id, purchaser_id, first, mailer)
    assert seat.status == "active"
    assert len(mailer.sent) == 1
    assert "Standard" in mailer.sent[0].html_body

    with pytest.raises(HTTPException) as duplicate:
        await _assign(batch_id, purchaser_id, first)
    assert duplicate.value.detail["code"] == "LICENSE_ALREADY_ASSIGNED"

    await _assign(batch_id, purchaser_id, second)
    with pytest.raises(HTTPException) as exhausted:
        await _assign(batch_id, purchaser_id, uuid4().hex)
    assert exhausted.value.detail["code"] == "NO_LICENSES_AVAILABLE"

    async with SessionLocal() as session:
        batch = await session.get(SubscriptionBatch, batch_id)
    assert batch.assigned_quantity == 2


@pytest.mark.asyncio
async def test_only_the_purchaser_manages_a_batch() -> None:
    gateway = FakeGateway()
    batch_id = await _purchase(gateway, uuid4().hex, 1)
    await _activate(batch_id)
    with pytest.raises(HTTPException) as exc_info:
        await _assign(batch_id, uuid4().hex, uuid4().hex)
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_revoke_returns_seat_to_the_pool() -> None:
    gateway = FakeGateway()
    purchaser_id = uuid4().hex
    batch_id = await _purchase(gateway, purchaser_id, 1)
    await _activate(batch_id)
    seat = await _assign(batch_id, purchaser_id, uuid4().hex)

    async with SessionLocal() as session:
        revoked = await licenses.revoke_license(session=session, license_id=seat.id, actor_id=purchaser_id)
    assert revoked.status == "unassigned"
    assert revoked.user_id is None

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc_info:
            await licenses.revoke_license(session=session, license_id=seat.id, actor_id=purchaser_id)
    assert exc_info.value.detail["code"] == "LICENSE_NOT_ASSIGNED"

    # The freed seat can go to someone else.
    await _assign(batch_id, purchaser_id, uuid4().hex)


@pytest.mark.asyncio
async def test_quantity_changes_respect_assigned_seats() -> None:
    gateway = FakeGateway()
    purchaser_id = uuid4().hex
    batch_id = await _purchase(gateway, purchaser_id, 3)
    await _activate(batch_id)
    await _assign(batch_id, purchaser_id, uuid4().hex)
    await _assign(batch_id, purchaser_id, uuid4().hex)

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as below:
            await licenses.update_quantity(
                session=session, gateway=gateway, batch_id=batch_id, actor_id=purchaser_id, new_quantity=1
            )
    assert below.value.status_code == 400
    assert below.value.detail["code"] == "QUANTITY_BELOW_ASSIGNED"

    async with SessionLocal() as session:
        grown = await licenses.update_quantity(
            session=session, gateway=gateway, batch_id=batch_id, actor_id=purchaser_id, new_quantity=5
        )
    assert grown.total_quantity == 5
    assert (await _seat_statuses(batch_id)).count("unassigned") == 3
    assert gateway.called("update_subscription_quantity")[-1]["quantity"] == 5

    async with SessionLocal() as session:
        shrunk = await licenses.update_quantity(
            session=session, gateway=gateway, batch_id=batch_id, actor_id=purchaser_id, new_quantity=2
        )
    assert shrunk.total_quantity == 2
    assert await _seat_statuses(batch_id) == ["active", "active"]


@pytest.mark.asyncio
async def test_external_cancellation_cancels_batch_locally() -> None:
    gateway = FakeGateway()
    purchaser_id = uuid4().hex
    batch_id = await _purchase(gateway, purchaser_id, 2)
    await _activate(batch_id)
    student_id = uuid4().hex
    license_row = await _assign(batch_id, purchaser_id, student_id)
    async with SessionLocal() as session:
        terminal = await terminals_service.start_terminal(session=session, user_id=student_id)
    async with SessionLocal() as session:
        batch = await session.get(SubscriptionBatch, batch_id)
    gateway.externally_cancelled.add(batch.stripe_subscription_id)

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc_info:
            await licenses.update_quantity(
                session=session, gateway=gateway, batch_id=batch_id, actor_id=purchaser_id, new_quantity=4
            )
    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["code"] == "SUBSCRIPTION_CANCELLED"

    async with SessionLocal() as session:
        batch = await session.get(SubscriptionBatch, batch_id)
    assert batch.status == "cancelled"
    assert await _seat_statuses(batch_id) == ["cancelled", "cancelled"]

    # The assignee loses the seat and every live session it backed.
    async with SessionLocal() as session:
        seat = await session.get(UserSubscription, license_row.id)
        stopped = await session.get(Terminal, terminal.id)
        check = await check_usage(session, user_id=student_id, metric_type=METRIC_CONCURRENT_TERMINALS)
    assert seat.status == "cancelled"
    assert stopped.status == "stopped"
    assert check.current_usage == 0
    assert not check.allowed


@pytest.mark.asyncio
async def test_delete_batch_cancels_processor_and_removes_seats() -> None:
    gateway = FakeGateway()
    purchaser_id = uuid4().hex
    batch_id = await _purchase(gateway, purchaser_id, 2)
    await _activate(batch_id)
    await _assign(batch_id, purchaser_id, uuid4().hex)

    async with SessionLocal() as session:
        await licenses.delete_batch(session=session, gateway=gateway, batch_id=batch_id, actor_id=purchaser_id)

    assert gateway.called("cancel_subscription")[0]["at_period_end"] is False
    assert await _seat_statuses(batch_id) == []
    async with SessionLocal() as session:
        assert await session.get(SubscriptionBatch, batch_id) is None
