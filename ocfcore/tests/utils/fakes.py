from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import json
import time
from typing import Any
from uuid import uuid4

import httpx

from ocfcore.core.errors import PaymentProcessorError, SubscriptionAlreadyCancelledError
from ocfcore.services.auth.identity import IdentityClient
from ocfcore.services.billing.stripe_gateway import CheckoutSession, ProcessorSubscription, StripeGateway
from ocfcore.services.notifications.mailer import OutboundEmail
from ocfcore.tests.utils.auth import make_access_token


@dataclass
class FakeIdentityUser:
    id: str
    name: str
    email: str
    password: str
    display_name: str = ""
    roles: list[str] = field(default_factory=list)
    properties: dict[str, str] = field(default_factory=dict)

    def document(self, owner: str) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "owner": owner,
            "displayName": self.display_name or self.name,
            "email": self.email,
            "properties": dict(self.properties),
            "roles": [{"name": role} for role in self.roles],
        }


class FakeIdentityProvider:
    """In-memory identity provider served through ``httpx.MockTransport``.

    Speaks just enough of the provider's HTTP API for the client: user
    lookup and update, password changes, and the password and refresh
    grants. Issued access tokens are signed with the test secret.
    """

    def __init__(self, *, owner: str = "ocf") -> None:
        self.owner = owner
        self.users: dict[str, FakeIdentityUser] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.requests: list[httpx.Request] = []
        self.unavailable = False

    def add_user(
        self,
        *,
        email: str,
        password: str = "correct-horse",
        name: str | None = None,
        roles: list[str] | None = None,
        verified: bool = False,
    ) -> FakeIdentityUser:
        user = FakeIdentityUser(
            id=uuid4().hex,
            name=name or email.split("@")[0],
            email=email,
            password=password,
            roles=list(roles or ["student"]),
            properties={"email_verified": "true"} if verified else {},
        )
        self.users[user.id] = user
        return user

    def client(self) -> IdentityClient:
        return IdentityClient(transport=httpx.MockTransport(self.handler))

    def _find(self, *, email: str | None = None, user_id: str | None = None, name: str | None = None):
        for user in self.users.values():
            if email is not None and user.email == email:
                return user
            if user_id is not None and user.id == user_id:
                return user
            if name is not None and user.name == name:
                return user
        return None

    def _issue(self, user: FakeIdentityUser) -> httpx.Response:
        refresh = uuid4().hex
        self.refresh_tokens[refresh] = user.id
        access = make_access_token(user.id, name=user.name, email=user.email)
        return httpx.Response(200, json={"access_token": access, "refresh_token": refresh, "expires_in": 3600})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unavailable:
            return httpx.Response(503, json={"status": "error", "msg": "down"})
        params = request.url.params
        path = request.url.path
        if path == "/api/get-user":
            user = self._find(email=params.get("email"), user_id=params.get("userId"))
            return httpx.Response(200, json={"status": "ok", "data": user.document(self.owner) if user else None})
        if path == "/api/update-user":
            _owner, _, name = params.get("id", "").partition("/")
            user = self._find(name=name)
            if user is None:
                return httpx.Response(200, json={"status": "error", "msg": "user not found"})
            document = json.loads(request.content)
            user.properties = dict(document.get("properties") or {})
            return httpx.Response(200, json={"status": "ok", "data": "Affected"})
        if path == "/api/set-password":
            form = dict(httpx.QueryParams(request.content.decode("utf-8")))
            user = self._find(name=form.get("userName"))
            if user is None:
                return httpx.Response(200, json={"status": "error", "msg": "user not found"})
            user.password = form["newPassword"]
            return httpx.Response(200, json={"status": "ok"})
        if path == "/api/login/oauth/access_token":
            user = self._find(name=params.get("username"))
            if user is None or user.password != params.get("password"):
                return httpx.Response(200, json={"error": "invalid_grant"})
            return self._issue(user)
        if path == "/api/login/oauth/refresh_token":
            user_id = self.refresh_tokens.pop(params.get("refresh_token", ""), None)
            if user_id is None:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return self._issue(self.users[user_id])
        return httpx.Response(404, json={"status": "error", "msg": f"unknown path {path}"})


class FakeGateway(StripeGateway):
    """Records processor calls instead of reaching the Stripe API.

    Webhook signature checks still run through the real SDK so tests sign
    payloads with :func:`sign_webhook_payload`.
    """

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_operations: set[str] = set()
        # Subscriptions the processor reports as cancelled on modification.
        self.externally_cancelled: set[str] = set()
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _record(self, operation: str, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))
        if operation in self.fail_operations:
            raise PaymentProcessorError(f"Payment processor rejected {operation}")

    def called(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    async def create_customer(self, *, email: str, name: str | None, metadata: dict[str, str]) -> str:
        self._record("create_customer", email=email, name=name, metadata=metadata)
        return self._next("cus")

    async def find_customer(self, *, email: str) -> str | None:
        self._record("find_customer", email=email)
        return None

    async def create_product_and_price(
        self,
        *,
        name: str,
        description: str | None,
        amount: int,
        currency: str,
        interval: str,
    ) -> tuple[str, str]:
        self._record("create_product_and_price", name=name, amount=amount, currency=currency, interval=interval)
        return self._next("prod"), self._next("price")

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
        self._record(
            "create_checkout_session",
            customer_id=customer_id,
            price_id=price_id,
            quantity=quantity,
            metadata=metadata,
            trial_days=trial_days,
        )
        session_id = self._next("cs")
        return CheckoutSession(session_id=session_id, url=f"https://checkout.test/{session_id}")

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        self._record("create_portal_session", customer_id=customer_id, return_url=return_url)
        return f"https://billing.test/{customer_id}"

    async def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        quantity: int,
        metadata: dict[str, str],
    ) -> ProcessorSubscription:
        self._record("create_subscription", customer_id=customer_id, price_id=price_id, quantity=quantity)
        now = datetime.now(timezone.utc)
        return ProcessorSubscription(
            subscription_id=self._next("sub"),
            item_id=self._next("si"),
            status="incomplete",
            customer_id=customer_id,
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
        )

    async def update_subscription_quantity(self, *, subscription_id: str, item_id: str | None, quantity: int) -> None:
        self._record("update_subscription_quantity", subscription_id=subscription_id, quantity=quantity)
        if subscription_id in self.externally_cancelled:
            raise SubscriptionAlreadyCancelledError(subscription_id)

    async def update_subscription_price(
        self,
        *,
        subscription_id: str,
        price_id: str,
        proration_behavior: str = "always_invoice",
    ) -> ProcessorSubscription:
        self._record(
            "update_subscription_price",
            subscription_id=subscription_id,
            price_id=price_id,
            proration_behavior=proration_behavior,
        )
        now = datetime.now(timezone.utc)
        return ProcessorSubscription(
            subscription_id=subscription_id,
            item_id="si_existing",
            status="active",
            customer_id=None,
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
        )

    async def cancel_subscription(self, *, subscription_id: str, at_period_end: bool = True) -> None:
        self._record("cancel_subscription", subscription_id=subscription_id, at_period_end=at_period_end)

    async def detach_payment_method(self, *, payment_method_id: str) -> None:
        self._record("detach_payment_method", payment_method_id=payment_method_id)

    async def set_default_payment_method(self, *, customer_id: str, payment_method_id: str) -> None:
        self._record("set_default_payment_method", customer_id=customer_id, payment_method_id=payment_method_id)


class RecordingMailer:
    def __init__(self) -> None:
        self.sent: list[OutboundEmail] = []

    async def send(self, message: OutboundEmail) -> None:
        self.sent.append(message)


def sign_webhook_payload(payload: bytes, secret: str, *, timestamp: int | None = None) -> str:
    # Build a Stripe-Signature header value accepted by the SDK's verifier.
    ts = timestamp if timestamp is not None else int(time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"
