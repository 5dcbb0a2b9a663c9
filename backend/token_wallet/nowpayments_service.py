"""
NOWPayments Service for crypto token purchases

Features:
- Hosted invoice creation (order_id carries our payment id)
- Invoice status lookup for the client poll path
- IPN (webhook) signature verification: HMAC-SHA512 over the key-sorted
  JSON body, sent in the x-nowpayments-sig header

Required Environment Variables:
- NOWPAYMENTS_API_KEY
- NOWPAYMENTS_IPN_SECRET
"""

import hashlib
import hmac
import json
import logging
from typing import Optional, Dict, Any, Tuple

import httpx

from .config import WalletSettings, get_settings
from .errors import ProviderError
from .models import PaymentProvider, ProviderStatus

logger = logging.getLogger(__name__)

PROVIDER = PaymentProvider.NOWPAYMENTS.value

# Invoice lookups and IPNs name the status field differently
STATUS_FIELDS = ("payment_status", "invoice_status", "status")


def sign_ipn_payload(payload: Dict[str, Any], secret: str) -> str:
    message = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hmac.new(secret.encode(), message.encode(), hashlib.sha512).hexdigest()


class NowPaymentsService:
    """NOWPayments client for crypto token purchases."""

    def __init__(self, settings: Optional[WalletSettings] = None, timeout: float = 30.0):
        self.settings = settings or get_settings()
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.settings.nowpayments_api_key)

    def _headers(self) -> Dict[str, str]:
        if not self.configured:
            raise ProviderError(PROVIDER, "NOWPAYMENTS_API_KEY not configured")
        return {
            "x-api-key": self.settings.nowpayments_api_key,
            "Content-Type": "application/json"
        }

    async def create_invoice(
        self,
        payment: Dict[str, Any],
        package: Dict[str, Any],
        success_url: str,
        cancel_url: str,
        ipn_callback_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a hosted crypto invoice for a pending payment record.

        Returns:
            Dict with invoice_id and invoice_url
        """
        body = {
            "price_amount": payment["amount"],
            "price_currency": payment["currency"].lower(),
            "order_id": payment["payment_id"],
            "order_description": f"Token Package - {package['name']}",
            "success_url": success_url,
            "cancel_url": cancel_url
        }
        if ipn_callback_url:
            body["ipn_callback_url"] = ipn_callback_url

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.settings.nowpayments_api_base}/invoice",
                headers=self._headers(),
                json=body
            )

        if response.status_code not in (200, 201):
            logger.error(f"NOWPayments invoice creation failed: {response.text}")
            raise ProviderError(PROVIDER, "Failed to create crypto invoice")

        data = response.json()
        invoice_id = data.get("id")
        if not invoice_id:
            logger.error(f"NOWPayments invoice response without id: {data}")
            raise ProviderError(PROVIDER, "Invoice response missing id")

        return {
            "invoice_id": str(invoice_id),
            "invoice_url": data.get("invoice_url")
        }

    async def get_invoice(self, invoice_id: str) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                f"{self.settings.nowpayments_api_base}/invoice/{invoice_id}",
                headers=self._headers()
            )

        if response.status_code != 200:
            logger.error(f"NOWPayments invoice lookup failed for {invoice_id}: {response.text}")
            raise ProviderError(PROVIDER, "Failed to get invoice status")

        return response.json()

    async def check_status(self, invoice_id: str) -> ProviderStatus:
        """Poll path: current status of an invoice."""
        return self.status_from_payload(await self.get_invoice(invoice_id))

    @staticmethod
    def status_from_payload(data: Dict[str, Any]) -> ProviderStatus:
        status = ""
        for field in STATUS_FIELDS:
            if data.get(field):
                status = str(data[field])
                break

        amount = data.get("price_amount")
        return ProviderStatus(
            provider=PaymentProvider.NOWPAYMENTS,
            status=status,
            pay_amount=float(amount) if amount is not None else None,
            pay_currency=str(data["price_currency"]).upper() if data.get("price_currency") else None
        )

    @classmethod
    def parse_ipn(cls, payload: Dict[str, Any]) -> Optional[Tuple[str, ProviderStatus]]:
        """Extract (invoice_id, status) from an IPN body; None when it has no invoice id."""
        invoice_id = payload.get("invoice_id")
        if not invoice_id:
            logger.warning(f"NOWPayments IPN without invoice_id (payment_id={payload.get('payment_id')})")
            return None
        return str(invoice_id), cls.status_from_payload(payload)

    def verify_ipn_signature(self, payload: Dict[str, Any], signature: Optional[str]) -> bool:
        secret = self.settings.nowpayments_ipn_secret
        if not secret:
            logger.warning("NOWPAYMENTS_IPN_SECRET not configured, rejecting IPN")
            return False
        if not signature:
            logger.warning("Missing x-nowpayments-sig header")
            return False

        expected = sign_ipn_payload(payload, secret)
        return hmac.compare_digest(expected, signature.strip().lower())
