from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.core.errors import PaymentProcessorError
from ocfcore.domain.models import BillingAddress, Invoice, PaymentMethod, UserSubscription
from ocfcore.services.billing.stripe_gateway import StripeGateway


logger = logging.getLogger(__name__)

ADDRESS_FIELDS = ("line1", "line2", "city", "state", "postal_code", "country")


def _not_found_error(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"code": code, "message": message})


def _upstream_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"code": "UPSTREAM_ERROR", "message": message},
    )


async def list_invoices(session: AsyncSession, user_id: str) -> list[Invoice]:
    result = await session.execute(
        select(Invoice).where(Invoice.user_id == user_id).order_by(Invoice.invoice_date.desc(), Invoice.created_at.desc())
    )
    return list(result.scalars().all())


async def get_invoice(session: AsyncSession, user_id: str, invoice_id: str) -> Invoice:
    invoice = await session.get(Invoice, invoice_id)
    if invoice is None or invoice.user_id != user_id:
        raise _not_found_error("INVOICE_NOT_FOUND", "Invoice not found")
    return invoice


async def list_payment_methods(session: AsyncSession, user_id: str) -> list[PaymentMethod]:
    result = await session.execute(
        select(PaymentMethod)
        .where(PaymentMethod.user_id == user_id, PaymentMethod.is_active.is_(True))
        .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
    )
    return list(result.scalars().all())


async def _get_payment_method(session: AsyncSession, user_id: str, payment_method_id: str) -> PaymentMethod:
    method = await session.get(PaymentMethod, payment_method_id)
    if method is None or method.user_id != user_id or not method.is_active:
        raise _not_found_error("PAYMENT_METHOD_NOT_FOUND", "Payment method not found")
    return method


async def _customer_id_for_user(session: AsyncSession, user_id: str) -> str | None:
    result = await session.execute(
        select(UserSubscription.stripe_customer_id)
        .where(UserSubscription.user_id == user_id, UserSubscription.stripe_customer_id.is_not(None))
        .order_by(UserSubscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _user_id_for_customer(session: AsyncSession, customer_id: str) -> str | None:
    result = await session.execute(
        select(UserSubscription.user_id)
        .where(UserSubscription.stripe_customer_id == customer_id, UserSubscription.user_id.is_not(None))
        .order_by(UserSubscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def record_payment_method(session: AsyncSession, payload: dict[str, Any]) -> PaymentMethod | None:
    """Upsert a processor payment method attached to a known customer.

    Called from the webhook reconciler; the caller commits.
    """
    customer_id = payload.get("customer")
    user_id = await _user_id_for_customer(session, customer_id) if customer_id else None
    if user_id is None:
        logger.info("payment_method_customer_unknown payment_method_id=%s", payload.get("id"))
        return None
    result = await session.execute(
        select(PaymentMethod).where(PaymentMethod.stripe_payment_method_id == payload["id"])
    )
    method = result.scalar_one_or_none()
    if method is None:
        method = PaymentMethod(stripe_payment_method_id=payload["id"], user_id=user_id)
        session.add(method)
    card = payload.get("card") or {}
    method.type = payload.get("type") or "card"
    method.card_brand = card.get("brand")
    method.card_last4 = card.get("last4")
    method.card_exp_month = card.get("exp_month")
    method.card_exp_year = card.get("exp_year")
    method.is_active = True
    return method


async def deactivate_payment_method(session: AsyncSession, stripe_payment_method_id: str) -> None:
    await session.execute(
        update(PaymentMethod)
        .where(PaymentMethod.stripe_payment_method_id == stripe_payment_method_id)
        .values(is_active=False, is_default=False)
        .execution_options(synchronize_session="fetch")
    )


async def set_default_payment_method(
    *,
    session: AsyncSession,
    gateway: StripeGateway,
    user_id: str,
    payment_method_id: str,
) -> PaymentMethod:
    # Clear the previous default and set the new one in one transaction.
    method = await _get_payment_method(session, user_id, payment_method_id)
    await session.execute(
        update(PaymentMethod)
        .where(PaymentMethod.user_id == user_id, PaymentMethod.is_default.is_(True))
        .values(is_default=False)
        .execution_options(synchronize_session="fetch")
    )
    method.is_default = True
    customer_id = await _customer_id_for_user(session, user_id)
    if customer_id:
        try:
            await gateway.set_default_payment_method(
                customer_id=customer_id, payment_method_id=method.stripe_payment_method_id
            )
        except PaymentProcessorError as exc:
            await session.rollback()
            raise _upstream_error("Payment processor unavailable") from exc
    await session.commit()
    logger.info("payment_method_default_set user_id=%s payment_method_id=%s", user_id, method.id)
    return method


async def delete_payment_method(
    *,
    session: AsyncSession,
    gateway: StripeGateway,
    user_id: str,
    payment_method_id: str,
) -> None:
    method = await _get_payment_method(session, user_id, payment_method_id)
    try:
        await gateway.detach_payment_method(payment_method_id=method.stripe_payment_method_id)
    except PaymentProcessorError as exc:
        raise _upstream_error("Payment processor unavailable") from exc
    method.is_active = False
    method.is_default = False
    await session.commit()
    logger.info("payment_method_deleted user_id=%s payment_method_id=%s", user_id, method.id)


async def list_billing_addresses(session: AsyncSession, user_id: str) -> list[BillingAddress]:
    result = await session.execute(
        select(BillingAddress)
        .where(BillingAddress.user_id == user_id)
        .order_by(BillingAddress.is_default.desc(), BillingAddress.created_at.desc())
    )
    return list(result.scalars().all())


async def _get_billing_address(session: AsyncSession, user_id: str, address_id: str) -> BillingAddress:
    address = await session.get(BillingAddress, address_id)
    if address is None or address.user_id != user_id:
        raise _not_found_error("BILLING_ADDRESS_NOT_FOUND", "Billing address not found")
    return address


async def _clear_default_address(session: AsyncSession, user_id: str) -> None:
    await session.execute(
        update(BillingAddress)
        .where(BillingAddress.user_id == user_id, BillingAddress.is_default.is_(True))
        .values(is_default=False)
        .execution_options(synchronize_session="fetch")
    )


async def create_billing_address(
    *,
    session: AsyncSession,
    user_id: str,
    values: dict[str, Any],
    make_default: bool = False,
) -> BillingAddress:
    fields = {key: value for key, value in values.items() if key in ADDRESS_FIELDS}
    fields["country"] = str(fields.get("country") or "").upper()
    existing = await list_billing_addresses(session, user_id)
    # The first address becomes the default.
    is_default = make_default or not existing
    if is_default:
        await _clear_default_address(session, user_id)
    address = BillingAddress(user_id=user_id, is_default=is_default, **fields)
    session.add(address)
    await session.commit()
    return address


async def set_default_billing_address(*, session: AsyncSession, user_id: str, address_id: str) -> BillingAddress:
    address = await _get_billing_address(session, user_id, address_id)
    await _clear_default_address(session, user_id)
    address.is_default = True
    await session.commit()
    return address


async def delete_billing_address(*, session: AsyncSession, user_id: str, address_id: str) -> None:
    address = await _get_billing_address(session, user_id, address_id)
    await session.delete(address)
    await session.commit()
