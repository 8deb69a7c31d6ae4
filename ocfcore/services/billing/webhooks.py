from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.core.errors import OcfError
from ocfcore.domain.models import (
    Invoice,
    Organization,
    OrganizationSubscription,
    ProcessedWebhookEvent,
    SubscriptionBatch,
    SubscriptionPlan,
    UsageMetric,
    UserSubscription,
)
from ocfcore.persistence.repos.subscriptions import (
    ENTITLED_STATUSES,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_INCOMPLETE,
    STATUS_PAST_DUE,
    STATUS_PAUSED,
    SUBSCRIPTION_TYPE_PERSONAL,
    get_user_subscription_by_stripe_id,
)
from ocfcore.services.billing.licenses import (
    BATCH_CANCELLED,
    activate_batch,
    apply_quantity_change,
    cancel_batch_locally,
    create_batch_with_seats,
    get_batch_by_stripe_id,
)
from ocfcore.services.billing.payment_profile import deactivate_payment_method, record_payment_method
from ocfcore.services.billing.stripe_gateway import from_timestamp, subscription_period
from ocfcore.services.plans import get_plan_by_stripe_price
from ocfcore.services.subscriptions import change_subscription_plan
from ocfcore.services.terminals import terminate_user_terminals
from ocfcore.services.usage import initialize_usage_metrics


logger = logging.getLogger(__name__)

EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_SUBSCRIPTION_PAUSED = "customer.subscription.paused"
EVENT_SUBSCRIPTION_RESUMED = "customer.subscription.resumed"
EVENT_INVOICE_PAID = "invoice.payment_succeeded"
EVENT_INVOICE_FAILED = "invoice.payment_failed"
EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_PAYMENT_METHOD_ATTACHED = "payment_method.attached"
EVENT_PAYMENT_METHOD_DETACHED = "payment_method.detached"

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"

# Processor spellings and states folded onto the local status vocabulary.
_STATUS_MAP = {
    "canceled": STATUS_CANCELLED,
    "cancelled": STATUS_CANCELLED,
    "unpaid": STATUS_PAST_DUE,
}


class WebhookProcessingError(OcfError):
    """Event could not be applied yet; the processor should redeliver it."""


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    outcome: str


@dataclass(frozen=True)
class _SubscriptionTarget:
    batch: SubscriptionBatch | None = None
    organization_subscription: OrganizationSubscription | None = None
    user_subscription: UserSubscription | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_status(processor_status: str | None) -> str:
    if not processor_status:
        return STATUS_INCOMPLETE
    return _STATUS_MAP.get(processor_status, processor_status)


def _metadata(payload: dict[str, Any]) -> dict[str, str]:
    return payload.get("metadata") or {}


def _first_item(payload: dict[str, Any]) -> dict[str, Any]:
    items = (payload.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _price_id(payload: dict[str, Any]) -> str | None:
    price = _first_item(payload).get("price") or {}
    return price.get("id") if isinstance(price, dict) else price


def _quantity(payload: dict[str, Any]) -> int | None:
    item = _first_item(payload)
    if item.get("quantity") is not None:
        return int(item["quantity"])
    if payload.get("quantity") is not None:
        return int(payload["quantity"])
    return None


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    # Newer API versions nest the subscription under the invoice parent.
    if invoice.get("subscription"):
        return invoice["subscription"]
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


async def _resolve_plan(session: AsyncSession, payload: dict[str, Any]) -> SubscriptionPlan | None:
    plan_id = _metadata(payload).get("subscription_plan_id")
    if plan_id:
        plan = await session.get(SubscriptionPlan, plan_id)
        if plan is not None:
            return plan
    price_id = _price_id(payload)
    if price_id:
        return await get_plan_by_stripe_price(session, price_id)
    return None


async def _get_org_subscription_by_stripe_id(
    session: AsyncSession,
    stripe_subscription_id: str,
) -> OrganizationSubscription | None:
    result = await session.execute(
        select(OrganizationSubscription).where(
            OrganizationSubscription.stripe_subscription_id == stripe_subscription_id
        )
    )
    return result.scalar_one_or_none()


async def _find_target(session: AsyncSession, stripe_subscription_id: str) -> _SubscriptionTarget:
    batch = await get_batch_by_stripe_id(session, stripe_subscription_id)
    if batch is not None:
        return _SubscriptionTarget(batch=batch)
    org_subscription = await _get_org_subscription_by_stripe_id(session, stripe_subscription_id)
    if org_subscription is not None:
        return _SubscriptionTarget(organization_subscription=org_subscription)
    user_subscription = await get_user_subscription_by_stripe_id(session, stripe_subscription_id)
    return _SubscriptionTarget(user_subscription=user_subscription)


async def _stop_sessions(session: AsyncSession, user_id: str | None, reason: str, now: datetime) -> None:
    if user_id:
        await terminate_user_terminals(session, user_id=user_id, reason=reason, now=now)


async def _handle_subscription_created(session: AsyncSession, payload: dict[str, Any], now: datetime) -> str:
    stripe_id = payload["id"]
    metadata = _metadata(payload)
    period_start, period_end = subscription_period(payload)
    status_value = local_status(payload.get("status"))
    plan = await _resolve_plan(session, payload)
    if plan is None:
        raise WebhookProcessingError(f"No plan matches subscription {stripe_id}")

    if metadata.get("bulk_purchase") == "true":
        batch = await get_batch_by_stripe_id(session, stripe_id)
        if batch is None and metadata.get("batch_id"):
            batch = await session.get(SubscriptionBatch, metadata["batch_id"])
        if batch is None:
            batch = await create_batch_with_seats(
                session,
                purchaser_id=metadata["user_id"],
                plan=plan,
                quantity=_quantity(payload) or int(metadata.get("quantity") or 1),
                group_id=metadata.get("group_id") or None,
                stripe_subscription_id=stripe_id,
                stripe_subscription_item_id=_first_item(payload).get("id"),
                period_start=period_start,
                period_end=period_end,
            )
        batch.stripe_subscription_id = stripe_id
        batch.stripe_subscription_item_id = _first_item(payload).get("id") or batch.stripe_subscription_item_id
        batch.current_period_start = period_start
        batch.current_period_end = period_end
        return OUTCOME_PROCESSED

    if metadata.get("organization_id"):
        org_subscription = await _get_org_subscription_by_stripe_id(session, stripe_id)
        if org_subscription is None:
            org_subscription = OrganizationSubscription(
                organization_id=metadata["organization_id"],
                stripe_subscription_id=stripe_id,
            )
            session.add(org_subscription)
        org_subscription.subscription_plan_id = plan.id
        org_subscription.status = status_value
        org_subscription.quantity = max(_quantity(payload) or 1, 1)
        org_subscription.current_period_start = period_start
        org_subscription.current_period_end = period_end
        org_subscription.stripe_customer_id = payload.get("customer")
        organization = await session.get(Organization, metadata["organization_id"])
        if organization is not None and status_value in ENTITLED_STATUSES:
            organization.subscription_plan_id = plan.id
        return OUTCOME_PROCESSED

    user_id = metadata.get("user_id")
    if not user_id:
        raise WebhookProcessingError(f"Subscription {stripe_id} carries no user metadata")
    subscription = await get_user_subscription_by_stripe_id(session, stripe_id)
    if subscription is None:
        subscription = UserSubscription(
            user_id=user_id,
            subscription_type=SUBSCRIPTION_TYPE_PERSONAL,
            stripe_subscription_id=stripe_id,
            created_at=from_timestamp(payload.get("created")) or now,
        )
        session.add(subscription)
    subscription.subscription_plan_id = plan.id
    subscription.status = status_value
    subscription.current_period_start = period_start
    subscription.current_period_end = period_end
    subscription.trial_end = from_timestamp(payload.get("trial_end"))
    subscription.cancel_at_period_end = bool(payload.get("cancel_at_period_end"))
    subscription.stripe_customer_id = payload.get("customer")
    await session.flush()
    if status_value in ENTITLED_STATUSES:
        await initialize_usage_metrics(session, user_id=user_id, subscription=subscription, plan=plan, now=now)

    replaced_id = metadata.get("replace_subscription_id")
    if replaced_id and replaced_id != subscription.id:
        # The free subscription the checkout upgraded from is superseded.
        await session.execute(delete(UsageMetric).where(UsageMetric.subscription_id == replaced_id))
        await session.execute(
            delete(UserSubscription)
            .where(UserSubscription.id == replaced_id, UserSubscription.user_id == user_id)
            .execution_options(synchronize_session="fetch")
        )
        logger.info("superseded_subscription_removed subscription_id=%s user_id=%s", replaced_id, user_id)
    return OUTCOME_PROCESSED


async def _handle_subscription_updated(session: AsyncSession, payload: dict[str, Any], now: datetime) -> str:
    stripe_id = payload["id"]
    target = await _find_target(session, stripe_id)
    status_value = local_status(payload.get("status"))
    period_start, period_end = subscription_period(payload)
    cancelled_at = from_timestamp(payload.get("canceled_at"))

    if target.batch is not None:
        batch = target.batch
        if batch.status == BATCH_CANCELLED:
            return OUTCOME_PROCESSED
        if status_value == STATUS_CANCELLED:
            await cancel_batch_locally(session, batch=batch, now=now, reason="subscription_cancelled")
            return OUTCOME_PROCESSED
        batch.current_period_start = period_start
        batch.current_period_end = period_end
        quantity = _quantity(payload)
        if quantity is not None and quantity != batch.total_quantity:
            if quantity < batch.assigned_quantity:
                logger.warning(
                    "license_batch_quantity_below_assigned batch_id=%s quantity=%s assigned=%s",
                    batch.id,
                    quantity,
                    batch.assigned_quantity,
                )
            else:
                await apply_quantity_change(session, batch=batch, new_quantity=quantity)
        seats = await session.execute(
            select(UserSubscription).where(UserSubscription.subscription_batch_id == batch.id)
        )
        for seat in seats.scalars().all():
            seat.current_period_start = period_start
            seat.current_period_end = period_end
        return OUTCOME_PROCESSED

    if target.organization_subscription is not None:
        org_subscription = target.organization_subscription
        org_subscription.status = status_value
        org_subscription.current_period_start = period_start
        org_subscription.current_period_end = period_end
        org_subscription.cancel_at_period_end = bool(payload.get("cancel_at_period_end"))
        if cancelled_at is not None:
            org_subscription.cancelled_at = cancelled_at
        quantity = _quantity(payload)
        if quantity:
            org_subscription.quantity = quantity
        return OUTCOME_PROCESSED

    subscription = target.user_subscription
    if subscription is None:
        raise WebhookProcessingError(f"Unknown subscription {stripe_id}")
    newly_cancelled = cancelled_at is not None and subscription.cancelled_at is None
    subscription.status = status_value
    subscription.current_period_start = period_start
    subscription.current_period_end = period_end
    subscription.trial_end = from_timestamp(payload.get("trial_end"))
    subscription.cancel_at_period_end = bool(payload.get("cancel_at_period_end"))
    if cancelled_at is not None:
        subscription.cancelled_at = cancelled_at

    plan = await _resolve_plan(session, {"items": payload.get("items"), "metadata": {}})
    if plan is not None and plan.id != subscription.subscription_plan_id:
        await change_subscription_plan(session, subscription=subscription, plan=plan, now=now)
        logger.info("subscription_plan_synced subscription_id=%s plan_id=%s", subscription.id, plan.id)
    elif status_value in ENTITLED_STATUSES and subscription.user_id:
        current_plan = await session.get(SubscriptionPlan, subscription.subscription_plan_id)
        if current_plan is not None:
            await initialize_usage_metrics(
                session, user_id=subscription.user_id, subscription=subscription, plan=current_plan, now=now
            )
    if newly_cancelled:
        await _stop_sessions(session, subscription.user_id, "subscription_cancelled", now)
    return OUTCOME_PROCESSED


async def _handle_subscription_deleted(session: AsyncSession, payload: dict[str, Any], now: datetime) -> str:
    target = await _find_target(session, payload["id"])
    if target.batch is not None:
        if target.batch.status != BATCH_CANCELLED:
            await cancel_batch_locally(session, batch=target.batch, now=now, reason="subscription_deleted")
        return OUTCOME_PROCESSED
    if target.organization_subscription is not None:
        org_subscription = target.organization_subscription
        if org_subscription.status != STATUS_CANCELLED:
            org_subscription.status = STATUS_CANCELLED
            org_subscription.cancelled_at = now
        organization = await session.get(Organization, org_subscription.organization_id)
        if organization is not None and organization.subscription_plan_id == org_subscription.subscription_plan_id:
            organization.subscription_plan_id = None
        return OUTCOME_PROCESSED
    subscription = target.user_subscription
    if subscription is None:
        logger.info("webhook_subscription_deleted_unknown stripe_subscription_id=%s", payload["id"])
        return OUTCOME_IGNORED
    if subscription.status != STATUS_CANCELLED:
        subscription.status = STATUS_CANCELLED
        subscription.cancelled_at = now
    await _stop_sessions(session, subscription.user_id, "subscription_deleted", now)
    return OUTCOME_PROCESSED


def _status_setter(status_value: str) -> Callable[[AsyncSession, dict[str, Any], datetime], Awaitable[str]]:
    async def _handle(session: AsyncSession, payload: dict[str, Any], now: datetime) -> str:
        target = await _find_target(session, payload["id"])
        row = target.organization_subscription or target.user_subscription
        if row is None:
            return OUTCOME_IGNORED
        row.status = status_value
        return OUTCOME_PROCESSED

    return _handle


async def _upsert_invoice(
    session: AsyncSession,
    invoice: dict[str, Any],
    *,
    paid: bool,
    now: datetime,
) -> tuple[Invoice | None, _SubscriptionTarget | None]:
    stripe_subscription_id = _invoice_subscription_id(invoice)
    if not stripe_subscription_id:
        return None, None
    target = await _find_target(session, stripe_subscription_id)
    if target.batch is not None:
        user_id = target.batch.purchaser_user_id
    elif target.user_subscription is not None:
        user_id = target.user_subscription.user_id
    elif target.organization_subscription is not None:
        organization = await session.get(Organization, target.organization_subscription.organization_id)
        user_id = organization.owner_user_id if organization is not None else None
    else:
        user_id = None
    if not user_id:
        # The subscription event has not landed yet; make the processor retry.
        raise WebhookProcessingError(f"Invoice {invoice.get('id')} references unknown subscription")

    result = await session.execute(select(Invoice).where(Invoice.stripe_invoice_id == invoice["id"]))
    row = result.scalar_one_or_none()
    if row is None:
        row = Invoice(stripe_invoice_id=invoice["id"], user_id=user_id)
        session.add(row)
    row.amount = int((invoice.get("amount_paid") if paid else invoice.get("amount_due")) or 0)
    row.currency = invoice.get("currency") or row.currency or "eur"
    row.status = invoice.get("status") or ("paid" if paid else "open")
    row.invoice_number = invoice.get("number")
    row.invoice_date = from_timestamp(invoice.get("created"))
    row.due_date = from_timestamp(invoice.get("due_date"))
    row.stripe_hosted_url = invoice.get("hosted_invoice_url")
    row.download_url = invoice.get("invoice_pdf")
    if target.batch is not None:
        row.subscription_batch_id = target.batch.id
    elif target.user_subscription is not None:
        row.user_subscription_id = target.user_subscription.id
    if paid:
        transitions = invoice.get("status_transitions") or {}
        row.paid_at = from_timestamp(transitions.get("paid_at")) or row.paid_at or now
    return row, target


async def _handle_invoice_paid(session: AsyncSession, payload: dict[str, Any], now: datetime) -> str:
    invoice, target = await _upsert_invoice(session, payload, paid=True, now=now)
    if invoice is None or target is None:
        return OUTCOME_IGNORED
    if target.batch is not None:
        await activate_batch(session, batch=target.batch)
    return OUTCOME_PROCESSED


async def _handle_invoice_failed(session: AsyncSession, payload: dict[str, Any], now: datetime) -> str:
    invoice, target = await _upsert_invoice(session, payload, paid=False, now=now)
    if invoice is None or target is None:
        return OUTCOME_IGNORED
    row = target.organization_subscription or target.user_subscription
    if row is not None:
        row.status = STATUS_PAST_DUE
    else:
        logger.warning("license_batch_payment_failed batch_id=%s", target.batch.id if target.batch else None)
    return OUTCOME_PROCESSED


async def _handle_checkout_completed(session: AsyncSession, payload: dict[str, Any], now: datetime) -> str:
    # The subscription.created event carries the state change.
    logger.info(
        "checkout_session_completed session_id=%s subscription=%s",
        payload.get("id"),
        payload.get("subscription"),
    )
    return OUTCOME_PROCESSED


async def _handle_payment_method_attached(session: AsyncSession, payload: dict[str, Any], now: datetime) -> str:
    method = await record_payment_method(session, payload)
    return OUTCOME_PROCESSED if method is not None else OUTCOME_IGNORED


async def _handle_payment_method_detached(session: AsyncSession, payload: dict[str, Any], now: datetime) -> str:
    await deactivate_payment_method(session, payload["id"])
    return OUTCOME_PROCESSED


_HANDLERS: dict[str, Callable[[AsyncSession, dict[str, Any], datetime], Awaitable[str]]] = {
    EVENT_SUBSCRIPTION_CREATED: _handle_subscription_created,
    EVENT_SUBSCRIPTION_UPDATED: _handle_subscription_updated,
    EVENT_SUBSCRIPTION_DELETED: _handle_subscription_deleted,
    EVENT_SUBSCRIPTION_PAUSED: _status_setter(STATUS_PAUSED),
    EVENT_SUBSCRIPTION_RESUMED: _status_setter(STATUS_ACTIVE),
    EVENT_INVOICE_PAID: _handle_invoice_paid,
    EVENT_INVOICE_FAILED: _handle_invoice_failed,
    EVENT_CHECKOUT_COMPLETED: _handle_checkout_completed,
    EVENT_PAYMENT_METHOD_ATTACHED: _handle_payment_method_attached,
    EVENT_PAYMENT_METHOD_DETACHED: _handle_payment_method_detached,
}


async def handle_event(
    session: AsyncSession,
    event: dict[str, Any],
    *,
    now: datetime | None = None,
) -> WebhookOutcome:
    """Apply one verified processor event.

    A ``processed_webhook_events`` row is committed together with the
    event's writes, so redelivery short-circuits and leaves state untouched.
    When two deliveries race, the loser's insert conflicts, it rolls back,
    and the winner's state stands. Unknown event types are acknowledged.
    """
    resolved_now = now or _utc_now()
    event_id = event.get("id") or ""
    event_type = event.get("type") or ""
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.info("webhook_event_ignored event_id=%s type=%s", event_id, event_type)
        return WebhookOutcome(event_id=event_id, event_type=event_type, outcome=OUTCOME_IGNORED)
    if await session.get(ProcessedWebhookEvent, event_id) is not None:
        logger.info("webhook_event_duplicate event_id=%s type=%s", event_id, event_type)
        return WebhookOutcome(event_id=event_id, event_type=event_type, outcome=OUTCOME_DUPLICATE)

    payload = (event.get("data") or {}).get("object") or {}
    outcome = await handler(session, payload, resolved_now)
    session.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type, processed_at=resolved_now))
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.info("webhook_event_raced event_id=%s type=%s", event_id, event_type)
        return WebhookOutcome(event_id=event_id, event_type=event_type, outcome=OUTCOME_DUPLICATE)
    logger.info("webhook_event_processed event_id=%s type=%s outcome=%s", event_id, event_type, outcome)
    return WebhookOutcome(event_id=event_id, event_type=event_type, outcome=outcome)
