"""
Provider status mapping

Each payment provider reports progress in its own words ("COMPLETED",
"finished", "expired", ...). Settlement only needs to know which of four
outcomes a status means; the vocabularies are enumerated per provider in
config.PROVIDER_STATUSES.
"""

from enum import Enum

from .config import PROVIDER_STATUSES
from .models import PaymentProvider, PaymentStatus, ProviderStatus


class PaymentOutcome(str, Enum):
    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _normalize(provider: PaymentProvider, status: str) -> str:
    status = (status or "").strip()
    # PayPal statuses are upper case, NOWPayments lower case
    return status.upper() if provider == PaymentProvider.PAYPAL else status.lower()


def classify(provider_status: ProviderStatus) -> PaymentOutcome:
    """Map a provider status onto a payment outcome. Unknown statuses are pending."""
    provider = PaymentProvider(provider_status.provider)
    vocabulary = PROVIDER_STATUSES[provider.value]
    status = _normalize(provider, provider_status.status)

    if status in vocabulary["paid"]:
        return PaymentOutcome.PAID
    if status in vocabulary["failed"]:
        return PaymentOutcome.FAILED
    if status in vocabulary["cancelled"]:
        return PaymentOutcome.CANCELLED
    return PaymentOutcome.PENDING


def is_paid(provider_status: ProviderStatus) -> bool:
    return classify(provider_status) == PaymentOutcome.PAID


def terminal_status_for(outcome: PaymentOutcome):
    """Payment record status a non-paid terminal outcome moves to, or None."""
    return {
        PaymentOutcome.FAILED: PaymentStatus.FAILED,
        PaymentOutcome.CANCELLED: PaymentStatus.CANCELLED
    }.get(outcome)
