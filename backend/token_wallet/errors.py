"""
Token Wallet Errors

Every failure the wallet reports to its callers. Routes map these onto HTTP
status codes; anything else (store connectivity, driver errors) propagates
untouched and is reported as a generic failure.
"""

from typing import Optional

from .config import ERROR_CODES


class WalletError(Exception):
    """Base class for wallet failures."""
    error_code = "GENERIC"

    def __init__(self, message: Optional[str] = None, **details):
        self.details = details
        super().__init__(message or ERROR_CODES.get(self.error_code, ERROR_CODES["GENERIC"]))

    def to_dict(self):
        """Convert to API response format."""
        return {
            "error_code": self.error_code,
            "message": str(self),
            **self.details
        }


class InsufficientFunds(WalletError):
    error_code = "INSUFFICIENT_FUNDS"

    def __init__(self, user_id: str, required: int, balance: int):
        self.user_id = user_id
        self.required = required
        self.balance = balance
        super().__init__(required=required, balance=balance)


class InvalidAmount(WalletError):
    """Raised for negative or non-integer amounts. Always a programming error."""
    error_code = "INVALID_AMOUNT"

    def __init__(self, amount):
        self.amount = amount
        super().__init__(f"Invalid token amount: {amount!r}")


class PaymentNotFound(WalletError):
    error_code = "PAYMENT_NOT_FOUND"

    def __init__(self, reference: str, provider: Optional[str] = None):
        self.reference = reference
        self.provider = provider
        super().__init__(reference=reference)


class NotPaid(WalletError):
    error_code = "NOT_PAID"

    def __init__(self, reference: str, provider_status: str, payment_status: str = "pending"):
        self.reference = reference
        self.provider_status = provider_status
        self.payment_status = payment_status
        super().__init__(provider_status=provider_status, status=payment_status)


class ProducerError(WalletError):
    error_code = "PRODUCER_ERROR"

    def __init__(self, message: Optional[str] = None, refunded: bool = True, **details):
        self.refunded = refunded
        super().__init__(message, refunded=refunded, **details)


class ProducerTimeout(ProducerError):
    error_code = "PRODUCER_ERROR"


class UnknownPackage(WalletError):
    error_code = "UNKNOWN_PACKAGE"

    def __init__(self, package_id: str):
        self.package_id = package_id
        super().__init__(f"Unknown token package: {package_id}", package_id=package_id)


class ContentNotFound(WalletError):
    error_code = "CONTENT_NOT_FOUND"

    def __init__(self, content_type: str, content_id: str):
        self.content_type = content_type
        self.content_id = content_id
        super().__init__(content_type=content_type, content_id=content_id)


class ProviderError(WalletError):
    """A payment provider call failed or returned an unusable response."""
    error_code = "PROVIDER_ERROR"

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}", provider=provider)
