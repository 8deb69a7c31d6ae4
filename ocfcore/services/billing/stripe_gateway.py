from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Any, Callable, TypeVar

import stripe

from ocfcore.core.config import Settings, get_settings
from ocfcore.core.errors import (
    PaymentProcessorError,
    SubscriptionAlreadyCancelledError,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

PRORATION_BEHAVIORS = ("always_invoice", "create_prorations", "none")


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str | None


@dataclass(frozen=True)
class ProcessorSubscription:
    subscription_id: str
    item_id: str | None
    status: str
    customer_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None


def from_timestamp(value: Any) -> datetime | None:
    if value in (None, 0, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def subscription_period(payload: Any) -> tuple[datetime | None, datetime | None]:
    # Recent API versions report the period on the subscription item instead of the subscription.
    start = payload.get("current_period_start") if hasattr(payload, "get") else None
    end = payload.get("current_period_end") if hasattr(payload, "get") else None
    if start is None or end is None:
        items = (payload.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return from_timestamp(start), from_timestamp(end)


def _already_cancelled(exc: stripe.StripeError) -> bool:
    message = (getattr(exc, "user_message", None) or str(exc) or "").lower()
    return "canceled" in message or "cancelled" in message


class StripeGateway:
    """Thin async facade over the Stripe SDK.

    The SDK is synchronous, so each call runs in a worker thread bounded by
    the configured external-call deadline. SDK failures surface as
    ``PaymentProcessorError``.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._api_key = self._settings.stripe_secret_key
        self._webhook_secret = self._settings.stripe_webhook_secret
        self._timeout_s = self._settings.ext_call_timeout_ms / 1000.0

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        kwargs.setdefault("api_key", self._api_key)
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self._timeout_s)
        except asyncio.TimeoutError as exc:
            logger.warning("stripe_call_timeout operation=%s", operation)
            raise PaymentProcessorError(f"Payment processor timed out during {operation}") from exc
        except stripe.StripeError as exc:
            logger.warning("stripe_call_failed operation=%s error=%s", operation, type(exc).__name__)
            raise PaymentProcessorError(f"Payment processor rejected {operation}: {exc}") from exc

    async def create_customer(self, *, email: str, name: str | None, metadata: dict[str, str]) -> str:
        customer = await self._call("create_customer", stripe.Customer.create, email=email, name=name, metadata=metadata)
        return customer["id"]

    async def find_customer(self, *, email: str) -> str | None:
        customers = await self._call("list_customers", stripe.Customer.list, email=email, limit=1)
        data = customers["data"]
        return data[0]["id"] if data else None

    async def create_product_and_price(
        self,
        *,
        name: str,
        description: str | None,
        amount: int,
        currency: str,
        interval: str,
    ) -> tuple[str, str]:
        product = await self._call(
            "create_product",
            stripe.Product.create,
            name=name,
            description=description or None,
        )
        price = await self._call(
            "create_price",
            stripe.Price.create,
            product=product["id"],
            unit_amount=amount,
            currency=currency,
            recurring={"interval": interval},
        )
        return product["id"], price["id"]

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        quantity: int,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        trial_days: int | None = None,
    ) -> CheckoutSession:
        subscription_data: dict[str, Any] = {"metadata": metadata}
        if trial_days:
            subscription_data["trial_period_days"] = trial_days
        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": quantity}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data=subscription_data,
        )
        return CheckoutSession(session_id=session["id"], url=session.get("url"))

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        portal = await self._call(
            "create_portal_session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return portal["url"]

    async def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        quantity: int,
        metadata: dict[str, str],
    ) -> ProcessorSubscription:
        # Left incomplete until the first invoice is paid; the webhook promotes local rows.
        subscription = await self._call(
            "create_subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id, "quantity": quantity}],
            metadata=metadata,
            payment_behavior="default_incomplete",
        )
        return self._to_subscription(subscription)

    async def update_subscription_quantity(self, *, subscription_id: str, item_id: str | None, quantity: int) -> None:
        try:
            if item_id is None:
                item_id = await self._first_item_id(subscription_id)
            await self._call(
                "update_subscription_quantity",
                stripe.Subscription.modify,
                subscription_id,
                items=[{"id": item_id, "quantity": quantity}],
                proration_behavior="create_prorations",
            )
        except PaymentProcessorError as exc:
            cause = exc.__cause__
            if isinstance(cause, stripe.InvalidRequestError) and _already_cancelled(cause):
                raise SubscriptionAlreadyCancelledError(subscription_id) from cause
            raise

    async def update_subscription_price(
        self,
        *,
        subscription_id: str,
        price_id: str,
        proration_behavior: str = "always_invoice",
    ) -> ProcessorSubscription:
        if proration_behavior not in PRORATION_BEHAVIORS:
            raise ValueError(f"Unsupported proration behavior: {proration_behavior}")
        item_id = await self._first_item_id(subscription_id)
        subscription = await self._call(
            "update_subscription_price",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": item_id, "price": price_id}],
            proration_behavior=proration_behavior,
        )
        return self._to_subscription(subscription)

    async def cancel_subscription(self, *, subscription_id: str, at_period_end: bool = True) -> None:
        if at_period_end:
            await self._call(
                "cancel_subscription",
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=True,
            )
        else:
            await self._call("cancel_subscription", stripe.Subscription.cancel, subscription_id)

    async def detach_payment_method(self, *, payment_method_id: str) -> None:
        await self._call("detach_payment_method", stripe.PaymentMethod.detach, payment_method_id)

    async def set_default_payment_method(self, *, customer_id: str, payment_method_id: str) -> None:
        await self._call(
            "set_default_payment_method",
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )

    def construct_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify a webhook signature and return the event as a plain dict.

        Verification is delegated to the SDK; the payload is then decoded
        from the raw bytes so handlers work on ordinary dictionaries.
        """
        if not signature:
            raise WebhookSignatureError("Missing webhook signature")
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError("Invalid webhook signature") from exc
        except ValueError as exc:
            raise WebhookSignatureError("Invalid webhook payload") from exc
        return json.loads(payload)

    async def _first_item_id(self, subscription_id: str) -> str:
        subscription = await self._call("retrieve_subscription", stripe.Subscription.retrieve, subscription_id)
        return subscription["items"]["data"][0]["id"]

    def _to_subscription(self, subscription: Any) -> ProcessorSubscription:
        items = subscription["items"]["data"] if subscription.get("items") else []
        start, end = subscription_period(subscription)
        return ProcessorSubscription(
            subscription_id=subscription["id"],
            item_id=items[0]["id"] if items else None,
            status=subscription.get("status") or "incomplete",
            customer_id=subscription.get("customer"),
            current_period_start=start,
            current_period_end=end,
        )


_gateway: StripeGateway | None = None


def get_gateway() -> StripeGateway:
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway


def reset_gateway() -> None:
    global _gateway
    _gateway = None
