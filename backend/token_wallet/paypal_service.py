"""
PayPal Service for Token Package Purchases

Implements PayPal REST API v2 for one-time token package purchases.

Features:
- Order creation with custom_id tracking
- Order capture after buyer approval (client poll path)
- Webhook signature verification
- Translation of orders/captures/webhooks into ProviderStatus

Required Environment Variables:
- PAYPAL_CLIENT_ID
- PAYPAL_SECRET
- PAYPAL_WEBHOOK_ID
- PAYPAL_ENV (sandbox|live)
"""

import base64
import json
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, Tuple

import httpx

from .config import PAYPAL_CONFIG, PAYPAL_CAPTURE_EVENTS, WalletSettings, get_settings
from .errors import ProviderError
from .models import PaymentProvider, ProviderStatus

logger = logging.getLogger(__name__)

PROVIDER = PaymentProvider.PAYPAL.value


class PayPalTokenService:
    """PayPal client for token package purchases."""

    def __init__(self, settings: Optional[WalletSettings] = None, timeout: float = 30.0):
        self.settings = settings or get_settings()
        self.timeout = timeout
        self._access_token = None
        self._token_expires = None

    @property
    def api_base(self) -> str:
        """Get API base URL for current environment."""
        return PAYPAL_CONFIG.get(self.settings.paypal_env, PAYPAL_CONFIG["sandbox"])["api_base"]

    @property
    def configured(self) -> bool:
        return bool(self.settings.paypal_client_id and self.settings.paypal_secret)

    async def get_access_token(self) -> str:
        """Get or refresh OAuth access token."""
        now = datetime.now(timezone.utc)

        if self._access_token and self._token_expires and now < self._token_expires:
            return self._access_token

        if not self.configured:
            raise ProviderError(PROVIDER, "PAYPAL_CLIENT_ID / PAYPAL_SECRET not configured")

        auth = base64.b64encode(
            f"{self.settings.paypal_client_id}:{self.settings.paypal_secret}".encode()
        ).decode()

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.api_base}/v1/oauth2/token",
                headers={
                    "Authorization": f"Basic {auth}",
                    "Content-Type": "application/x-www-form-urlencoded"
                },
                data={"grant_type": "client_credentials"}
            )

        if response.status_code != 200:
            logger.error(f"PayPal auth failed: {response.text}")
            raise ProviderError(PROVIDER, "Failed to authenticate with PayPal")

        data = response.json()
        self._access_token = data["access_token"]
        # Tokens live ~9 hours; refresh at 8
        self._token_expires = now + timedelta(hours=8)
        return self._access_token

    async def create_order(
        self,
        payment: Dict[str, Any],
        package: Dict[str, Any],
        return_url: str,
        cancel_url: str
    ) -> Dict[str, Any]:
        """
        Create a PayPal order for a pending payment record.

        Returns:
            Dict with order_id, status and approval_url
        """
        access_token = await self.get_access_token()
        payment_id = payment["payment_id"]

        order_data = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": payment_id,
                "custom_id": payment_id,
                "description": f"Token Package - {package['name']} ({package['tokens']} tokens)",
                "amount": {
                    "currency_code": payment["currency"],
                    "value": f"{payment['amount']:.2f}"
                }
            }],
            "payment_source": {
                "paypal": {
                    "experience_context": {
                        "payment_method_preference": "IMMEDIATE_PAYMENT_REQUIRED",
                        "landing_page": "LOGIN",
                        "user_action": "PAY_NOW",
                        "return_url": return_url,
                        "cancel_url": cancel_url
                    }
                }
            }
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.api_base}/v2/checkout/orders",
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                    "PayPal-Request-Id": payment_id  # Idempotency key
                },
                json=order_data
            )

        if response.status_code not in (200, 201):
            logger.error(f"PayPal order creation failed: {response.text}")
            raise ProviderError(PROVIDER, "Failed to create PayPal order")

        result = response.json()

        approval_url = None
        for link in result.get("links", []):
            if link.get("rel") in ("payer-action", "approve"):
                approval_url = link.get("href")
                break

        return {
            "order_id": result["id"],
            "status": result.get("status"),
            "approval_url": approval_url
        }

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        """Capture a PayPal order after buyer approval."""
        access_token = await self.get_access_token()

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.api_base}/v2/checkout/orders/{order_id}/capture",
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                    "PayPal-Request-Id": f"capture-{order_id}"
                }
            )

        # 422 ORDER_ALREADY_CAPTURED: fall back to reading the order
        if response.status_code == 422 and "ORDER_ALREADY_CAPTURED" in response.text:
            return await self.get_order(order_id)

        if response.status_code not in (200, 201):
            logger.error(f"PayPal capture failed for {order_id}: {response.text}")
            raise ProviderError(PROVIDER, "Failed to capture PayPal order")

        return response.json()

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        """Get a PayPal order."""
        access_token = await self.get_access_token()

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                f"{self.api_base}/v2/checkout/orders/{order_id}",
                headers={"Authorization": f"Bearer {access_token}"}
            )

        if response.status_code != 200:
            logger.error(f"PayPal order lookup failed for {order_id}: {response.text}")
            raise ProviderError(PROVIDER, "Failed to get PayPal order")

        return response.json()

    async def check_status(self, order_id: str) -> ProviderStatus:
        """
        Poll path: read the order and capture it if the buyer approved it.

        Capturing here is what completes a PayPal payment when the buyer
        returns to the site before any webhook arrives.
        """
        order = await self.get_order(order_id)
        if order.get("status") == "APPROVED":
            order = await self.capture_order(order_id)
        return self.status_from_order(order)

    @staticmethod
    def status_from_order(order: Dict[str, Any]) -> ProviderStatus:
        """Prefer the capture's status; an order can be COMPLETED with a pending capture."""
        status = order.get("status", "")
        amount = None
        currency = None

        for unit in order.get("purchase_units", []):
            captures = unit.get("payments", {}).get("captures", [])
            if captures:
                capture = captures[0]
                status = capture.get("status", status)
                amount = capture.get("amount", {}).get("value")
                currency = capture.get("amount", {}).get("currency_code")
                break

        return ProviderStatus(
            provider=PaymentProvider.PAYPAL,
            status=status,
            pay_amount=float(amount) if amount is not None else None,
            pay_currency=currency
        )

    @staticmethod
    def parse_webhook(event: Dict[str, Any]) -> Optional[Tuple[str, ProviderStatus]]:
        """
        Extract (order_id, status) from a capture webhook event.

        Returns None for event types that do not concern settlement.
        """
        event_type = event.get("event_type")
        if event_type not in PAYPAL_CAPTURE_EVENTS:
            return None

        resource = event.get("resource", {})
        order_id = (
            resource.get("supplementary_data", {})
            .get("related_ids", {})
            .get("order_id")
        )
        if not order_id:
            logger.warning(f"PayPal event {event.get('id')} has no related order id")
            return None

        amount = resource.get("amount", {})
        return order_id, ProviderStatus(
            provider=PaymentProvider.PAYPAL,
            status=resource.get("status", ""),
            pay_amount=float(amount["value"]) if amount.get("value") is not None else None,
            pay_currency=amount.get("currency_code")
        )

    async def verify_webhook_signature(
        self,
        headers: Dict[str, str],
        body: bytes
    ) -> bool:
        """
        Verify PayPal webhook signature.

        Args:
            headers: Request headers containing PayPal signature info
            body: Raw request body

        Returns:
            True if signature is valid
        """
        if not self.settings.paypal_webhook_id:
            logger.warning("PAYPAL_WEBHOOK_ID not configured, rejecting webhook")
            return False

        transmission_id = headers.get("paypal-transmission-id", "")
        transmission_time = headers.get("paypal-transmission-time", "")
        transmission_sig = headers.get("paypal-transmission-sig", "")

        if not all([transmission_id, transmission_time, transmission_sig]):
            logger.warning("Missing PayPal webhook signature headers")
            return False

        access_token = await self.get_access_token()

        verification_data = {
            "auth_algo": headers.get("paypal-auth-algo", ""),
            "cert_url": headers.get("paypal-cert-url", ""),
            "transmission_id": transmission_id,
            "transmission_sig": transmission_sig,
            "transmission_time": transmission_time,
            "webhook_id": self.settings.paypal_webhook_id,
            "webhook_event": json.loads(body.decode())
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.api_base}/v1/notifications/verify-webhook-signature",
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json"
                },
                json=verification_data
            )

        if response.status_code != 200:
            logger.error(f"Webhook verification failed: {response.text}")
            return False

        return response.json().get("verification_status") == "SUCCESS"
