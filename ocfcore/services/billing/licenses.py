from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from fastapi import HTTPException, status
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.core.errors import PaymentProcessorError, SubscriptionAlreadyCancelledError
from ocfcore.domain.models import SubscriptionBatch, SubscriptionPlan, UsageMetric, UserSubscription
from ocfcore.persistence.db import for_update
from ocfcore.persistence.repos.subscriptions import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_PENDING_PAYMENT,
    STATUS_UNASSIGNED,
    SUBSCRIPTION_TYPE_ASSIGNED,
)
from ocfcore.services.billing.stripe_gateway import StripeGateway
from ocfcore.services.notifications.mailer import TEMPLATE_LICENSE_ASSIGNED, MailSender, send_template
from ocfcore.services.plans import get_plan
from ocfcore.services.subscriptions import resolve_customer_id
from ocfcore.services.terminals import terminate_user_terminals
from ocfcore.services.usage import initialize_usage_metrics


logger = logging.getLogger(__name__)

BATCH_PENDING_PAYMENT = "pending_payment"
BATCH_ACTIVE = "active"
BATCH_CANCELLED = "cancelled"


@dataclass(frozen=True)
class BatchDetail:
    batch: SubscriptionBatch
    plan: SubscriptionPlan
    licenses: list[UserSubscription]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _batch_not_found_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "BATCH_NOT_FOUND", "message": "Licence batch not found"},
    )


def _license_not_found_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "LICENSE_NOT_FOUND", "message": "Licence not found"},
    )


def _not_purchaser_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": "Only the batch purchaser can manage its licences"},
    )


def _conflict_error(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail={"code": code, "message": message})


def _upstream_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"code": "UPSTREAM_ERROR", "message": message},
    )


async def get_batch(session: AsyncSession, batch_id: str) -> SubscriptionBatch:
    batch = await session.get(SubscriptionBatch, batch_id)
    if batch is None:
        raise _batch_not_found_error()
    return batch


async def get_batch_by_stripe_id(session: AsyncSession, stripe_subscription_id: str) -> SubscriptionBatch | None:
    result = await session.execute(
        select(SubscriptionBatch).where(SubscriptionBatch.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


async def _purchaser_batch(session: AsyncSession, batch_id: str, actor_id: str) -> SubscriptionBatch:
    batch = await get_batch(session, batch_id)
    if batch.purchaser_user_id != actor_id:
        raise _not_purchaser_error()
    return batch


async def list_batch_licenses(session: AsyncSession, batch_id: str) -> list[UserSubscription]:
    result = await session.execute(
        select(UserSubscription)
        .where(UserSubscription.subscription_batch_id == batch_id)
        .order_by(UserSubscription.created_at, UserSubscription.id)
    )
    return list(result.scalars().all())


async def list_purchased_batches(session: AsyncSession, purchaser_id: str) -> list[SubscriptionBatch]:
    result = await session.execute(
        select(SubscriptionBatch)
        .where(SubscriptionBatch.purchaser_user_id == purchaser_id)
        .order_by(SubscriptionBatch.created_at.desc(), SubscriptionBatch.id)
    )
    return list(result.scalars().all())


async def get_batch_detail(session: AsyncSession, batch_id: str, actor_id: str) -> BatchDetail:
    batch = await _purchaser_batch(session, batch_id, actor_id)
    plan = await get_plan(session, batch.subscription_plan_id)
    return BatchDetail(batch=batch, plan=plan, licenses=await list_batch_licenses(session, batch.id))


async def list_user_licenses(session: AsyncSession, user_id: str) -> list[UserSubscription]:
    result = await session.execute(
        select(UserSubscription)
        .where(
            UserSubscription.user_id == user_id,
            UserSubscription.subscription_batch_id.is_not(None),
            UserSubscription.status == STATUS_ACTIVE,
        )
        .order_by(UserSubscription.assigned_at.desc())
    )
    return list(result.scalars().all())


def _seat(batch: SubscriptionBatch, status_value: str) -> UserSubscription:
    # Seats clone the batch's plan, period and processor ids.
    return UserSubscription(
        user_id=None,
        subscription_plan_id=batch.subscription_plan_id,
        status=status_value,
        subscription_type=SUBSCRIPTION_TYPE_ASSIGNED,
        current_period_start=batch.current_period_start,
        current_period_end=batch.current_period_end,
        stripe_subscription_id=batch.stripe_subscription_id,
        subscription_batch_id=batch.id,
        purchaser_user_id=batch.purchaser_user_id,
    )


def _new_seat_status(batch: SubscriptionBatch) -> str:
    return STATUS_UNASSIGNED if batch.status == BATCH_ACTIVE else STATUS_PENDING_PAYMENT


async def _terminate_sessions_best_effort(
    session: AsyncSession,
    *,
    user_id: str,
    reason: str,
    now: datetime,
) -> None:
    # Cascade failures never block the licence change; the live-count reconciliation converges later.
    try:
        async with session.begin_nested():
            await terminate_user_terminals(session, user_id=user_id, reason=reason, now=now)
    except SQLAlchemyError as exc:
        logger.warning("license_session_termination_failed user_id=%s reason=%s", user_id, reason, exc_info=exc)


async def create_batch_with_seats(
    session: AsyncSession,
    *,
    purchaser_id: str,
    plan: SubscriptionPlan,
    quantity: int,
    group_id: str | None,
    stripe_subscription_id: str | None = None,
    stripe_subscription_item_id: str | None = None,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> SubscriptionBatch:
    batch = SubscriptionBatch(
        purchaser_user_id=purchaser_id,
        subscription_plan_id=plan.id,
        group_id=group_id,
        stripe_subscription_id=stripe_subscription_id,
        stripe_subscription_item_id=stripe_subscription_item_id,
        total_quantity=quantity,
        assigned_quantity=0,
        status=BATCH_PENDING_PAYMENT,
        current_period_start=period_start,
        current_period_end=period_end,
    )
    session.add(batch)
    await session.flush()
    for _ in range(quantity):
        session.add(_seat(batch, STATUS_PENDING_PAYMENT))
    await session.flush()
    return batch


async def purchase_bulk(
    *,
    session: AsyncSession,
    gateway: StripeGateway,
    purchaser_id: str,
    email: str,
    name: str | None,
    plan_id: str,
    quantity: int,
    group_id: str | None = None,
    now: datetime | None = None,
) -> SubscriptionBatch:
    """Buy ``quantity`` seats of a plan.

    The batch and its seats are committed as ``pending_payment`` before the
    processor is asked to create the subscription; the payment webhook
    promotes them. A processor failure cancels the batch and surfaces a 502.
    """
    if quantity < 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "quantity must be at least 1"},
        )
    plan = await get_plan(session, plan_id, active_only=True)
    if not plan.stripe_price_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "PLAN_NOT_PURCHASABLE", "message": "Plan has no processor price"},
        )
    customer_id = await resolve_customer_id(
        session=session, gateway=gateway, user_id=purchaser_id, email=email, name=name
    )
    batch = await create_batch_with_seats(
        session, purchaser_id=purchaser_id, plan=plan, quantity=quantity, group_id=group_id
    )
    batch_id = batch.id
    await session.commit()

    metadata = {
        "user_id": purchaser_id,
        "subscription_plan_id": plan.id,
        "bulk_purchase": "true",
        "quantity": str(quantity),
        "batch_id": batch_id,
    }
    if group_id:
        metadata["group_id"] = group_id
    try:
        created = await gateway.create_subscription(
            customer_id=customer_id,
            price_id=plan.stripe_price_id,
            quantity=quantity,
            metadata=metadata,
        )
    except PaymentProcessorError as exc:
        await cancel_batch_locally(session, batch=batch, now=now or _utc_now(), reason="processor_failure")
        await session.commit()
        raise _upstream_error("Could not create the bulk subscription") from exc

    batch.stripe_subscription_id = created.subscription_id
    batch.stripe_subscription_item_id = created.item_id
    batch.current_period_start = created.current_period_start
    batch.current_period_end = created.current_period_end
    await session.execute(
        update(UserSubscription)
        .where(UserSubscription.subscription_batch_id == batch_id)
        .values(
            stripe_subscription_id=created.subscription_id,
            stripe_customer_id=customer_id,
            current_period_start=created.current_period_start,
            current_period_end=created.current_period_end,
        )
        .execution_options(synchronize_session="fetch")
    )
    await session.commit()
    logger.info("license_batch_purchased batch_id=%s quantity=%s plan_id=%s", batch_id, quantity, plan.id)
    return batch


async def activate_batch(session: AsyncSession, *, batch: SubscriptionBatch) -> int:
    # pending_payment batch -> active; its pending seats -> unassigned. Replays are no-ops.
    if batch.status != BATCH_PENDING_PAYMENT:
        return 0
    batch.status = BATCH_ACTIVE
    result = await session.execute(
        update(UserSubscription)
        .where(
            UserSubscription.subscription_batch_id == batch.id,
            UserSubscription.status == STATUS_PENDING_PAYMENT,
        )
        .values(status=STATUS_UNASSIGNED)
        .execution_options(synchronize_session="fetch")
    )
    promoted = int(result.rowcount or 0)
    logger.info("license_batch_activated batch_id=%s seats=%s", batch.id, promoted)
    return promoted


async def cancel_batch_locally(
    session: AsyncSession,
    *,
    batch: SubscriptionBatch,
    now: datetime,
    reason: str,
) -> list[str]:
    """Cancel a batch and every seat, stopping the live sessions of assigned users.

    Returns the affected user ids. The caller owns the commit.
    """
    result = await session.execute(
        select(UserSubscription.user_id).where(
            UserSubscription.subscription_batch_id == batch.id,
            UserSubscription.status == STATUS_ACTIVE,
            UserSubscription.user_id.is_not(None),
        )
    )
    user_ids = [user_id for user_id in result.scalars().all() if user_id]
    batch.status = BATCH_CANCELLED
    batch.cancelled_at = now
    await session.execute(
        update(UserSubscription)
        .where(UserSubscription.subscription_batch_id == batch.id)
        .values(status=STATUS_CANCELLED, cancelled_at=now)
        .execution_options(synchronize_session="fetch")
    )
    await session.flush()
    for user_id in user_ids:
        await _terminate_sessions_best_effort(session, user_id=user_id, reason=reason, now=now)
    logger.info("license_batch_cancelled batch_id=%s users=%s reason=%s", batch.id, len(user_ids), reason)
    return user_ids


async def _pick_unassigned_seat(session: AsyncSession, batch_id: str) -> UserSubscription | None:
    stmt = (
        select(UserSubscription)
        .where(
            UserSubscription.subscription_batch_id == batch_id,
            UserSubscription.status == STATUS_UNASSIGNED,
        )
        .order_by(UserSubscription.created_at, UserSubscription.id)
        .limit(1)
    )
    # Concurrent assigners each lock a different seat instead of queueing on one.
    stmt = for_update(stmt, skip_locked=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def assign_license(
    *,
    session: AsyncSession,
    batch_id: str,
    actor_id: str,
    target_user_id: str,
    mailer: MailSender | None = None,
    recipient_email: str | None = None,
    recipient_name: str | None = None,
    now: datetime | None = None,
) -> UserSubscription:
    """Give one unassigned seat of a batch to ``target_user_id``.

    The seat is locked with SKIP LOCKED and ``assigned_quantity`` is bumped
    with a bounded UPDATE in the same transaction, so the batch never
    reports more assigned seats than it owns.
    """
    resolved_now = now or _utc_now()
    batch = await _purchaser_batch(session, batch_id, actor_id)
    if batch.status != BATCH_ACTIVE:
        raise _conflict_error("BATCH_NOT_ACTIVE", f"Licence batch is {batch.status}")
    already = await session.execute(
        select(UserSubscription.id).where(
            UserSubscription.subscription_batch_id == batch.id,
            UserSubscription.user_id == target_user_id,
            UserSubscription.status == STATUS_ACTIVE,
        )
    )
    if already.first() is not None:
        raise _conflict_error("LICENSE_ALREADY_ASSIGNED", "User already holds a licence from this batch")

    seat = await _pick_unassigned_seat(session, batch.id)
    if seat is None:
        raise _conflict_error("NO_LICENSES_AVAILABLE", "No unassigned licences left in this batch")
    bumped = await session.execute(
        update(SubscriptionBatch)
        .where(
            SubscriptionBatch.id == batch.id,
            SubscriptionBatch.assigned_quantity < SubscriptionBatch.total_quantity,
        )
        .values(assigned_quantity=SubscriptionBatch.assigned_quantity + 1)
        .execution_options(synchronize_session="fetch")
    )
    if int(bumped.rowcount or 0) != 1:
        await session.rollback()
        raise _conflict_error("NO_LICENSES_AVAILABLE", "No unassigned licences left in this batch")

    seat.user_id = target_user_id
    seat.status = STATUS_ACTIVE
    seat.subscription_type = SUBSCRIPTION_TYPE_ASSIGNED
    seat.assigned_at = resolved_now
    await session.flush()
    plan = await get_plan(session, seat.subscription_plan_id)
    await initialize_usage_metrics(session, user_id=target_user_id, subscription=seat, plan=plan, now=resolved_now)
    await session.commit()
    logger.info("license_assigned batch_id=%s license_id=%s user_id=%s", batch.id, seat.id, target_user_id)

    if mailer is not None and recipient_email:
        await send_template(
            mailer,
            template=TEMPLATE_LICENSE_ASSIGNED,
            to=recipient_email,
            variables={"name": recipient_name or recipient_email, "plan_name": plan.name},
        )
    return seat


async def revoke_license(
    *,
    session: AsyncSession,
    license_id: str,
    actor_id: str,
    now: datetime | None = None,
) -> UserSubscription:
    """Take an assigned seat back from its user.

    The revokee's live sessions are stopped first; a failure there is logged
    and does not block the revocation. The seat returns to ``unassigned``
    with its metric rows cleared for the next holder.
    """
    resolved_now = now or _utc_now()
    seat = await session.get(UserSubscription, license_id)
    if seat is None or seat.subscription_batch_id is None:
        raise _license_not_found_error()
    batch = await _purchaser_batch(session, seat.subscription_batch_id, actor_id)
    if seat.status != STATUS_ACTIVE or seat.user_id is None:
        raise _conflict_error("LICENSE_NOT_ASSIGNED", "Licence is not assigned")

    revokee = seat.user_id
    await _terminate_sessions_best_effort(session, user_id=revokee, reason="license_revoked", now=resolved_now)

    await session.execute(
        delete(UsageMetric)
        .where(UsageMetric.subscription_id == seat.id)
        .execution_options(synchronize_session="fetch")
    )
    seat.user_id = None
    seat.status = STATUS_UNASSIGNED
    seat.assigned_at = None
    await session.execute(
        update(SubscriptionBatch)
        .where(SubscriptionBatch.id == batch.id, SubscriptionBatch.assigned_quantity > 0)
        .values(assigned_quantity=SubscriptionBatch.assigned_quantity - 1)
        .execution_options(synchronize_session="fetch")
    )
    await session.commit()
    logger.info("license_revoked batch_id=%s license_id=%s user_id=%s", batch.id, seat.id, revokee)
    return seat


async def _count_unassigned(session: AsyncSession, batch_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(UserSubscription)
        .where(
            UserSubscription.subscription_batch_id == batch_id,
            UserSubscription.status.in_((STATUS_UNASSIGNED, STATUS_PENDING_PAYMENT)),
        )
    )
    return int(result.scalar_one())


async def apply_quantity_change(session: AsyncSession, *, batch: SubscriptionBatch, new_quantity: int) -> None:
    """Grow or shrink the seat pool of a batch to ``new_quantity``.

    Growth clones seats from the batch; shrinking deletes free seats only.
    Used by the quantity endpoint and by processor-side quantity changes.
    """
    diff = new_quantity - batch.total_quantity
    if diff > 0:
        for _ in range(diff):
            session.add(_seat(batch, _new_seat_status(batch)))
    elif diff < 0:
        result = await session.execute(
            select(UserSubscription.id)
            .where(
                UserSubscription.subscription_batch_id == batch.id,
                UserSubscription.status.in_((STATUS_UNASSIGNED, STATUS_PENDING_PAYMENT)),
            )
            .order_by(UserSubscription.created_at.desc(), UserSubscription.id)
            .limit(-diff)
        )
        seat_ids = list(result.scalars().all())
        if len(seat_ids) < -diff:
            raise _conflict_error("INSUFFICIENT_UNASSIGNED", "Not enough unassigned licences to remove")
        await session.execute(delete(UsageMetric).where(UsageMetric.subscription_id.in_(seat_ids)))
        await session.execute(
            delete(UserSubscription)
            .where(UserSubscription.id.in_(seat_ids))
            .execution_options(synchronize_session="fetch")
        )
    batch.total_quantity = new_quantity
    await session.flush()


async def update_quantity(
    *,
    session: AsyncSession,
    gateway: StripeGateway,
    batch_id: str,
    actor_id: str,
    new_quantity: int,
    now: datetime | None = None,
) -> SubscriptionBatch:
    """Scale a batch to ``new_quantity`` seats.

    The processor is updated first; if it reports the subscription was
    cancelled outside this service, the batch is cancelled locally and the
    caller receives a 409. Local seats only change after the processor
    accepted the new quantity.
    """
    resolved_now = now or _utc_now()
    batch = await _purchaser_batch(session, batch_id, actor_id)
    if batch.status == BATCH_CANCELLED:
        raise _conflict_error("BATCH_CANCELLED", "Licence batch is cancelled")
    if new_quantity < 1 or new_quantity < batch.assigned_quantity:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "QUANTITY_BELOW_ASSIGNED",
                "message": f"Quantity cannot be lower than the {batch.assigned_quantity} assigned licences",
            },
        )
    if new_quantity == batch.total_quantity:
        return batch
    shrink = batch.total_quantity - new_quantity
    if shrink > 0 and await _count_unassigned(session, batch.id) < shrink:
        raise _conflict_error("INSUFFICIENT_UNASSIGNED", "Not enough unassigned licences to remove")

    if batch.stripe_subscription_id:
        try:
            await gateway.update_subscription_quantity(
                subscription_id=batch.stripe_subscription_id,
                item_id=batch.stripe_subscription_item_id,
                quantity=new_quantity,
            )
        except SubscriptionAlreadyCancelledError as exc:
            await cancel_batch_locally(session, batch=batch, now=resolved_now, reason="external_cancellation")
            await session.commit()
            logger.warning("license_batch_auto_cancelled batch_id=%s", batch.id)
            raise _conflict_error(
                "SUBSCRIPTION_CANCELLED",
                "The subscription was cancelled at the payment processor; the batch has been cancelled",
            ) from exc
        except PaymentProcessorError as exc:
            raise _upstream_error("Could not update the subscription quantity") from exc

    await apply_quantity_change(session, batch=batch, new_quantity=new_quantity)
    await session.commit()
    logger.info("license_batch_quantity_updated batch_id=%s quantity=%s", batch.id, new_quantity)
    return batch


async def delete_batch(
    *,
    session: AsyncSession,
    gateway: StripeGateway,
    batch_id: str,
    actor_id: str,
    now: datetime | None = None,
) -> None:
    """Remove a batch entirely.

    Live sessions of every assigned user are stopped, the processor
    subscription is cancelled on a best-effort basis, then seats and batch
    are hard-deleted.
    """
    resolved_now = now or _utc_now()
    batch = await _purchaser_batch(session, batch_id, actor_id)
    result = await session.execute(
        select(UserSubscription.user_id).where(
            UserSubscription.subscription_batch_id == batch.id,
            UserSubscription.status == STATUS_ACTIVE,
            UserSubscription.user_id.is_not(None),
        )
    )
    for user_id in [user_id for user_id in result.scalars().all() if user_id]:
        await _terminate_sessions_best_effort(session, user_id=user_id, reason="license_batch_deleted", now=resolved_now)

    if batch.stripe_subscription_id and batch.status != BATCH_CANCELLED:
        try:
            await gateway.cancel_subscription(subscription_id=batch.stripe_subscription_id, at_period_end=False)
        except PaymentProcessorError as exc:
            logger.warning("license_batch_processor_cancel_failed batch_id=%s", batch.id, exc_info=exc)

    seat_ids = select(UserSubscription.id).where(UserSubscription.subscription_batch_id == batch.id)
    await session.execute(delete(UsageMetric).where(UsageMetric.subscription_id.in_(seat_ids)))
    await session.execute(
        delete(UserSubscription)
        .where(UserSubscription.subscription_batch_id == batch.id)
        .execution_options(synchronize_session="fetch")
    )
    await session.delete(batch)
    await session.commit()
    logger.info("license_batch_deleted batch_id=%s actor_id=%s", batch_id, actor_id)
