"""
Token Wallet Configuration and Constants

Token packages, action costs, provider vocabularies and error messages are
defined here. Prices are in USD, balances in whole tokens.

Runtime settings (credentials, endpoints, timeouts) are read from the
environment once at startup through get_settings().
"""

import os
from dataclasses import dataclass
from functools import lru_cache

# ==================== TOKEN PACKAGES (USD) ====================
TOKEN_PACKAGES = {
    "20-tokens": {
        "name": "20 Tokens",
        "tokens": 20,
        "price_usd": 9.99,
        "description": "20 tokens for unlocks and generations"
    },
    "50-tokens": {
        "name": "50 Tokens",
        "tokens": 50,
        "price_usd": 24.99,
        "description": "50 tokens for unlocks and generations"
    },
    "100-tokens": {
        "name": "100 Tokens",
        "tokens": 100,
        "price_usd": 49.99,
        "description": "100 tokens for unlocks and generations"
    }
}

PACKAGE_CURRENCY = "USD"

# ==================== ACTION COSTS (TOKENS) ====================
GENERATION_COSTS = {
    "image": 1,
    "video": 1
}

# Used when a content document carries no unlock_price
DEFAULT_UNLOCK_PRICE = 1

# Collections holding unlockable content, keyed by content type
CONTENT_COLLECTIONS = {
    "image": "images",
    "video": "videos"
}

# Number of recent operation references remembered per balance document.
# Credits and refunds carrying a reference are applied at most once within
# this window.
APPLIED_REFS_WINDOW = 500

# ==================== PROVIDER STATUS VOCABULARY ====================
# Every status not listed under paid/failed/cancelled is treated as pending.
PROVIDER_STATUSES = {
    "paypal": {
        "paid": {"COMPLETED"},
        "failed": {"DECLINED", "FAILED", "DENIED"},
        "cancelled": {"VOIDED"}
    },
    "nowpayments": {
        "paid": {"finished", "confirmed", "completed", "paid"},
        "failed": {"failed", "refunded"},
        "cancelled": {"expired"}
    }
}

# ==================== ERROR MESSAGES ====================
ERROR_CODES = {
    "INSUFFICIENT_FUNDS": "Not enough tokens. Please purchase more tokens.",
    "PAYMENT_NOT_FOUND": "Payment not found.",
    "NOT_PAID": "Payment has not been confirmed yet. Please check again shortly.",
    "PRODUCER_ERROR": "Generation failed, tokens refunded.",
    "UNKNOWN_PACKAGE": "Unknown token package.",
    "CONTENT_NOT_FOUND": "Content not found.",
    "PROVIDER_ERROR": "Payment provider is unavailable. Please try again.",
    "GENERIC": "Something went wrong. Please try again."
}

# ==================== PAYPAL CONFIGURATION ====================
PAYPAL_CONFIG = {
    "sandbox": {
        "api_base": "https://api-m.sandbox.paypal.com",
        "web_base": "https://www.sandbox.paypal.com"
    },
    "live": {
        "api_base": "https://api-m.paypal.com",
        "web_base": "https://www.paypal.com"
    }
}

PAYPAL_CAPTURE_EVENTS = {
    "PAYMENT.CAPTURE.COMPLETED",
    "PAYMENT.CAPTURE.DENIED",
    "PAYMENT.CAPTURE.DECLINED",
    "PAYMENT.CAPTURE.PENDING"
}

# ==================== NOWPAYMENTS CONFIGURATION ====================
NOWPAYMENTS_API_BASE = "https://api.nowpayments.io/v1"


@dataclass(frozen=True)
class WalletSettings:
    """Process-wide provider settings, loaded once."""
    paypal_env: str = "sandbox"
    paypal_client_id: str = ""
    paypal_secret: str = ""
    paypal_webhook_id: str = ""
    nowpayments_api_key: str = ""
    nowpayments_ipn_secret: str = ""
    nowpayments_api_base: str = NOWPAYMENTS_API_BASE
    public_app_url: str = "http://localhost:3000"
    image_producer_url: str = "https://api.venice.ai/api/v1/images/generations"
    video_producer_url: str = ""
    producer_api_key: str = ""
    producer_model: str = ""
    generation_timeout_seconds: float = 120.0
    reservation_grace_seconds: float = 60.0
    uncredited_grace_seconds: float = 300.0

    @property
    def reservation_ttl_seconds(self) -> float:
        """A reservation older than this can no longer be committed by its request."""
        return self.generation_timeout_seconds + self.reservation_grace_seconds

    @classmethod
    def from_env(cls) -> "WalletSettings":
        return cls(
            paypal_env=os.environ.get("PAYPAL_ENV", "sandbox"),
            paypal_client_id=os.environ.get("PAYPAL_CLIENT_ID", ""),
            paypal_secret=os.environ.get("PAYPAL_SECRET", ""),
            paypal_webhook_id=os.environ.get("PAYPAL_WEBHOOK_ID", ""),
            nowpayments_api_key=os.environ.get("NOWPAYMENTS_API_KEY", ""),
            nowpayments_ipn_secret=os.environ.get("NOWPAYMENTS_IPN_SECRET", ""),
            nowpayments_api_base=os.environ.get("NOWPAYMENTS_API_BASE", NOWPAYMENTS_API_BASE),
            public_app_url=os.environ.get("PUBLIC_APP_URL", "http://localhost:3000"),
            image_producer_url=os.environ.get(
                "IMAGE_PRODUCER_URL", "https://api.venice.ai/api/v1/images/generations"
            ),
            video_producer_url=os.environ.get("VIDEO_PRODUCER_URL", ""),
            producer_api_key=os.environ.get("PRODUCER_API_KEY", ""),
            producer_model=os.environ.get("PRODUCER_MODEL", ""),
            generation_timeout_seconds=float(os.environ.get("GENERATION_TIMEOUT_SECONDS", "120")),
            reservation_grace_seconds=float(os.environ.get("RESERVATION_GRACE_SECONDS", "60")),
            uncredited_grace_seconds=float(os.environ.get("UNCREDITED_GRACE_SECONDS", "300"))
        )


@lru_cache(maxsize=1)
def get_settings() -> WalletSettings:
    """Load settings from the environment on first use and keep them for the process."""
    return WalletSettings.from_env()
