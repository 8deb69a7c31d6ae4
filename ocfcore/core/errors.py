from __future__ import annotations


class OcfError(Exception):
    """Base error for ocfcore."""


class IdentityProviderError(OcfError):
    """Identity provider unreachable or returned an unexpected response."""


class InvalidTokenError(OcfError):
    """Bearer token failed signature, expiry or claim validation."""


class PaymentProcessorError(OcfError):
    """Payment processor request failure."""


class SubscriptionAlreadyCancelledError(PaymentProcessorError):
    """Processor reports the subscription was cancelled outside this service."""


class WebhookSignatureError(PaymentProcessorError):
    """Webhook payload failed signature verification."""


class MailDeliveryError(OcfError):
    """SMTP delivery failure."""
