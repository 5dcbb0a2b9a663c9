"""
Settlement Service

Turns a payment provider's confirmation into tokens, exactly once.

Flow:
1. create_purchase() writes a pending payment record with the package's
   token count frozen into tokens_to_credit
2. The caller obtains an order/invoice from the provider and attaches its
   id as external_reference
3. Webhooks and client polls both call confirm_payment(); the pending ->
   completed transition is a conditional update, so only one of any number
   of concurrent or repeated confirmations credits the user

If the credit fails after the transition, the record stays completed with
no credited_at and retry_uncredited() finishes the job. Credits are keyed
by payment id in the ledger, so retrying never credits twice.
"""

import logging
import uuid
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any

from pymongo import ReturnDocument

from .config import TOKEN_PACKAGES, PACKAGE_CURRENCY
from .errors import PaymentNotFound, NotPaid, UnknownPackage
from .ledger_service import TokenLedgerService
from .models import (
    PaymentProvider,
    PaymentRecord,
    PaymentStatus,
    ProviderStatus,
    SettlementResult
)
from .provider_status import PaymentOutcome, classify, terminal_status_for

logger = logging.getLogger(__name__)


def payment_credit_reference(payment_id: str) -> str:
    return f"payment:{payment_id}"


class SettlementService:
    """Service for token package purchases and their confirmation."""

    def __init__(self, db, ledger: Optional[TokenLedgerService] = None):
        self.db = db
        self.ledger = ledger or TokenLedgerService(db)

    # ==================== PURCHASE RECORDS ====================

    async def create_purchase(
        self,
        user_id: str,
        package_id: str,
        provider: PaymentProvider
    ) -> Dict[str, Any]:
        """Create a pending payment record for a package."""
        package = TOKEN_PACKAGES.get(package_id)
        if not package:
            raise UnknownPackage(package_id)

        now = datetime.now(timezone.utc).isoformat()
        record = PaymentRecord(
            payment_id=str(uuid.uuid4()),
            user_id=user_id,
            package_id=package_id,
            amount=package["price_usd"],
            currency=PACKAGE_CURRENCY,
            provider=provider,
            status=PaymentStatus.PENDING,
            tokens_to_credit=package["tokens"],
            created_at=now,
            updated_at=now
        ).model_dump(mode="json")

        await self.db.token_payments.insert_one(dict(record))
        logger.info(
            f"Created pending payment {record['payment_id']} for user {user_id} "
            f"({package_id} via {record['provider']})"
        )
        return record

    async def attach_external_reference(
        self,
        payment_id: str,
        external_reference: str,
        payment_url: Optional[str] = None
    ) -> bool:
        """Store the provider's order/invoice id on a pending record."""
        result = await self.db.token_payments.update_one(
            {"payment_id": payment_id, "status": PaymentStatus.PENDING.value},
            {
                "$set": {
                    "external_reference": external_reference,
                    "payment_url": payment_url,
                    "updated_at": datetime.now(timezone.utc).isoformat()
                }
            }
        )
        return result.modified_count > 0

    async def mark_failed(self, payment_id: str, error_message: str) -> bool:
        """Fail a pending record, e.g. when the provider refused to create an order."""
        result = await self.db.token_payments.update_one(
            {"payment_id": payment_id, "status": PaymentStatus.PENDING.value},
            {
                "$set": {
                    "status": PaymentStatus.FAILED.value,
                    "error_message": error_message,
                    "updated_at": datetime.now(timezone.utc).isoformat()
                }
            }
        )
        return result.modified_count > 0

    async def get_purchase(self, payment_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        query = {"payment_id": payment_id}
        if user_id is not None:
            query["user_id"] = user_id

        record = await self.db.token_payments.find_one(query, {"_id": 0})
        if not record:
            raise PaymentNotFound(payment_id)
        return record

    async def find_by_reference(
        self,
        provider: PaymentProvider,
        external_reference: str
    ) -> Optional[Dict[str, Any]]:
        return await self.db.token_payments.find_one(
            {
                "provider": PaymentProvider(provider).value,
                "external_reference": external_reference
            },
            {"_id": 0}
        )

    # ==================== CONFIRMATION ====================

    async def confirm_payment(
        self,
        external_reference: str,
        provider_status: ProviderStatus
    ) -> SettlementResult:
        """
        Reconcile a provider confirmation with the payment record.

        Returns:
            SettlementResult; tokens_credited is 0 when the payment had
            already been settled.

        Raises:
            PaymentNotFound: no record for this provider reference
            NotPaid: the provider does not report the payment as paid
        """
        provider = PaymentProvider(provider_status.provider)
        record = await self.find_by_reference(provider, external_reference)

        if not record:
            logger.warning(f"Confirmation for unknown {provider.value} reference {external_reference}")
            raise PaymentNotFound(external_reference, provider.value)

        payment_id = record["payment_id"]
        outcome = classify(provider_status)
        current_status = PaymentStatus(record["status"])

        if current_status == PaymentStatus.COMPLETED:
            logger.info(f"Payment {payment_id} already completed, ignoring duplicate confirmation")
            return SettlementResult(payment_id=payment_id, tokens_credited=0, status=current_status)

        if current_status != PaymentStatus.PENDING:
            if outcome == PaymentOutcome.PAID:
                logger.error(
                    f"PAID_AFTER_TERMINAL | payment={payment_id} | user={record['user_id']} "
                    f"| status={current_status.value} | provider_status={provider_status.status} "
                    f"| tokens={record['tokens_to_credit']} - manual reconciliation required"
                )
                return SettlementResult(payment_id=payment_id, tokens_credited=0, status=current_status)
            raise NotPaid(external_reference, provider_status.status, current_status.value)

        if outcome != PaymentOutcome.PAID:
            new_status = await self._record_unpaid(record, provider_status, outcome)
            raise NotPaid(external_reference, provider_status.status, new_status.value)

        self._check_amount(record, provider_status)

        now = datetime.now(timezone.utc).isoformat()
        completed = await self.db.token_payments.find_one_and_update(
            {"payment_id": payment_id, "status": PaymentStatus.PENDING.value},
            {
                "$set": {
                    "status": PaymentStatus.COMPLETED.value,
                    "provider_status": provider_status.status,
                    "completed_at": now,
                    "updated_at": now
                }
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER
        )

        if completed is None:
            # Lost the race to a concurrent confirmation
            latest = await self.db.token_payments.find_one({"payment_id": payment_id}, {"_id": 0})
            status = PaymentStatus(latest["status"]) if latest else current_status
            logger.info(f"Payment {payment_id} settled concurrently (status={status.value})")
            return SettlementResult(payment_id=payment_id, tokens_credited=0, status=status)

        tokens_credited, balance = await self._credit_completed(completed)
        return SettlementResult(
            payment_id=payment_id,
            tokens_credited=tokens_credited,
            status=PaymentStatus.COMPLETED,
            balance=balance
        )

    async def retry_uncredited(self, grace_seconds: float = 300.0) -> int:
        """
        Credit completed payments whose credit step never finished.

        Only records completed more than grace_seconds ago are touched, so
        confirmations still in flight are left alone.

        Returns:
            Number of payments credited by this run.
        """
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=grace_seconds)).isoformat()
        cursor = self.db.token_payments.find(
            {
                "status": PaymentStatus.COMPLETED.value,
                "credited_at": None,
                "completed_at": {"$lt": cutoff}
            },
            {"_id": 0}
        )
        stuck = await cursor.to_list(length=500)

        credited = 0
        for record in stuck:
            try:
                tokens, _ = await self._credit_completed(record)
            except Exception as e:
                logger.error(f"Retry credit failed for payment {record['payment_id']}: {e}")
                continue
            if tokens:
                credited += 1

        if stuck:
            logger.info(f"Uncredited payment sweep: {len(stuck)} found, {credited} credited")
        return credited

    async def _credit_completed(self, record: Dict[str, Any]):
        payment_id = record["payment_id"]
        user_id = record["user_id"]
        tokens = int(record["tokens_to_credit"])

        try:
            applied, balance = await self.ledger.credit_once(
                user_id,
                tokens,
                reason="purchase",
                reference=payment_credit_reference(payment_id),
                details={
                    "payment_id": payment_id,
                    "package_id": record.get("package_id"),
                    "provider": record.get("provider"),
                    "external_reference": record.get("external_reference"),
                    "amount": record.get("amount"),
                    "currency": record.get("currency")
                }
            )
        except Exception:
            logger.critical(
                f"SETTLEMENT_CREDIT_FAILED | payment={payment_id} | user={user_id} | tokens={tokens} "
                f"- payment completed but not credited, pending retry"
            )
            raise

        await self.db.token_payments.update_one(
            {"payment_id": payment_id},
            {"$set": {"credited_at": datetime.now(timezone.utc).isoformat()}}
        )
        if applied:
            logger.info(f"Payment {payment_id}: credited {tokens} tokens to user {user_id}")
        return (tokens if applied else 0), balance

    async def _record_unpaid(
        self,
        record: Dict[str, Any],
        provider_status: ProviderStatus,
        outcome: PaymentOutcome
    ) -> PaymentStatus:
        """Note the provider status; move to failed/cancelled when the provider says so."""
        now = datetime.now(timezone.utc).isoformat()
        terminal = terminal_status_for(outcome)
        update = {"provider_status": provider_status.status, "updated_at": now}
        if terminal:
            update["status"] = terminal.value

        result = await self.db.token_payments.update_one(
            {"payment_id": record["payment_id"], "status": PaymentStatus.PENDING.value},
            {"$set": update}
        )

        if terminal and result.modified_count:
            logger.info(
                f"Payment {record['payment_id']} marked {terminal.value} "
                f"(provider status {provider_status.status})"
            )
            return terminal
        return PaymentStatus.PENDING

    def _check_amount(self, record: Dict[str, Any], provider_status: ProviderStatus):
        """Amounts are informational; a mismatch is logged, not rejected."""
        if provider_status.pay_amount is None or provider_status.pay_currency is None:
            return
        if provider_status.pay_currency.upper() != str(record.get("currency", "")).upper():
            return
        if abs(float(provider_status.pay_amount) - float(record["amount"])) > 0.01:
            logger.warning(
                f"Amount mismatch on payment {record['payment_id']}: paid "
                f"{provider_status.pay_amount} {provider_status.pay_currency}, expected {record['amount']}"
            )
