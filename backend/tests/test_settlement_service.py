"""
Unit Tests for the Settlement Service

Tests:
1. Paid confirmation credits the package once
2. Duplicate and concurrent confirmations credit nothing more
3. Unpaid statuses raise NotPaid; terminal failures close the record
4. Unknown references raise PaymentNotFound
5. Completed-but-uncredited payments are finished by retry_uncredited
"""

import asyncio
from datetime import datetime, timezone, timedelta

import pytest

from token_wallet.errors import NotPaid, PaymentNotFound, UnknownPackage
from token_wallet.ledger_service import TokenLedgerService
from token_wallet.models import PaymentProvider, PaymentStatus, ProviderStatus
from token_wallet.settlement_service import SettlementService


def nowpayments_status(status, amount=None, currency=None):
    return ProviderStatus(
        provider=PaymentProvider.NOWPAYMENTS,
        status=status,
        pay_amount=amount,
        pay_currency=currency
    )


def paypal_status(status):
    return ProviderStatus(provider=PaymentProvider.PAYPAL, status=status)


async def pending_purchase(service, user_id="u1", package_id="20-tokens",
                           provider=PaymentProvider.NOWPAYMENTS, reference="inv-1"):
    record = await service.create_purchase(user_id, package_id, provider)
    await service.attach_external_reference(record["payment_id"], reference, "https://pay.example/inv")
    return record


class TestCreatePurchase:
    """Pending payment records."""

    @pytest.mark.asyncio
    async def test_record_freezes_package_values(self, fake_db):
        service = SettlementService(fake_db)

        record = await service.create_purchase("u1", "50-tokens", PaymentProvider.PAYPAL)

        assert record["status"] == "pending"
        assert record["tokens_to_credit"] == 50
        assert record["amount"] == 24.99
        assert record["currency"] == "USD"
        assert record["provider"] == "paypal"
        assert "_id" not in record

        stored = await service.get_purchase(record["payment_id"], "u1")
        assert stored["tokens_to_credit"] == 50

    @pytest.mark.asyncio
    async def test_unknown_package_is_rejected(self, fake_db):
        with pytest.raises(UnknownPackage):
            await SettlementService(fake_db).create_purchase("u1", "7-tokens", PaymentProvider.PAYPAL)

    @pytest.mark.asyncio
    async def test_purchase_is_private_to_its_owner(self, fake_db):
        service = SettlementService(fake_db)
        record = await service.create_purchase("u1", "20-tokens", PaymentProvider.PAYPAL)

        with pytest.raises(PaymentNotFound):
            await service.get_purchase(record["payment_id"], "someone-else")

    @pytest.mark.asyncio
    async def test_mark_failed_only_touches_pending(self, fake_db):
        service = SettlementService(fake_db)
        record = await service.create_purchase("u1", "20-tokens", PaymentProvider.PAYPAL)

        assert await service.mark_failed(record["payment_id"], "order creation failed") is True
        assert await service.mark_failed(record["payment_id"], "again") is False

        stored = await service.get_purchase(record["payment_id"])
        assert stored["status"] == "failed"
        assert stored["error_message"] == "order creation failed"


class TestConfirmPayment:
    """Settlement of provider confirmations."""

    @pytest.mark.asyncio
    async def test_paid_confirmation_credits_once(self, fake_db):
        """20-token purchase confirmed as finished, then a duplicate webhook."""
        service = SettlementService(fake_db)
        record = await pending_purchase(service)

        first = await service.confirm_payment("inv-1", nowpayments_status("finished"))
        assert first.tokens_credited == 20
        assert first.status == PaymentStatus.COMPLETED
        assert first.balance == 20

        duplicate = await service.confirm_payment("inv-1", nowpayments_status("finished"))
        assert duplicate.tokens_credited == 0

        assert await TokenLedgerService(fake_db).get_balance("u1") == 20
        stored = await service.get_purchase(record["payment_id"])
        assert stored["status"] == "completed"
        assert stored["credited_at"] is not None

    @pytest.mark.asyncio
    async def test_many_duplicate_confirmations(self, fake_db):
        service = SettlementService(fake_db)
        await pending_purchase(service)

        results = [
            await service.confirm_payment("inv-1", nowpayments_status("confirmed"))
            for _ in range(5)
        ]

        assert [r.tokens_credited for r in results] == [20, 0, 0, 0, 0]
        assert await TokenLedgerService(fake_db).get_balance("u1") == 20

    @pytest.mark.asyncio
    async def test_concurrent_confirmations_credit_once(self, fake_db):
        """Webhook and client poll racing each other."""
        service = SettlementService(fake_db)
        await pending_purchase(service, package_id="100-tokens")

        results = await asyncio.gather(
            *[service.confirm_payment("inv-1", nowpayments_status("finished")) for _ in range(6)]
        )

        assert sorted(r.tokens_credited for r in results) == [0, 0, 0, 0, 0, 100]
        assert await TokenLedgerService(fake_db).get_balance("u1") == 100

    @pytest.mark.asyncio
    async def test_paypal_capture_completed(self, fake_db):
        service = SettlementService(fake_db)
        await pending_purchase(service, provider=PaymentProvider.PAYPAL, reference="ORDER-1")

        result = await service.confirm_payment("ORDER-1", paypal_status("COMPLETED"))

        assert result.tokens_credited == 20

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["completed", "paid"])
    async def test_nowpayments_invoice_settled_statuses(self, fake_db, status):
        service = SettlementService(fake_db)
        await pending_purchase(service)

        result = await service.confirm_payment("inv-1", nowpayments_status(status))

        assert result.tokens_credited == 20
        assert await TokenLedgerService(fake_db).get_balance("u1") == 20

    @pytest.mark.asyncio
    async def test_reference_is_scoped_to_provider(self, fake_db):
        service = SettlementService(fake_db)
        await pending_purchase(service, provider=PaymentProvider.PAYPAL, reference="shared-1")

        with pytest.raises(PaymentNotFound):
            await service.confirm_payment("shared-1", nowpayments_status("finished"))

    @pytest.mark.asyncio
    async def test_unknown_reference_raises_and_credits_nothing(self, fake_db):
        service = SettlementService(fake_db)

        with pytest.raises(PaymentNotFound):
            await service.confirm_payment("nope", nowpayments_status("finished"))

        assert await fake_db.token_balances.count_documents({}) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["waiting", "confirming", "sending", "partially_paid", "mystery"])
    async def test_in_progress_status_is_not_paid(self, fake_db, status):
        service = SettlementService(fake_db)
        record = await pending_purchase(service)

        with pytest.raises(NotPaid) as exc_info:
            await service.confirm_payment("inv-1", nowpayments_status(status))

        assert exc_info.value.payment_status == "pending"
        stored = await service.get_purchase(record["payment_id"])
        assert stored["status"] == "pending"
        assert stored["provider_status"] == status
        assert await TokenLedgerService(fake_db).get_balance("u1") == 0

    @pytest.mark.asyncio
    async def test_expired_invoice_cancels_payment(self, fake_db):
        service = SettlementService(fake_db)
        record = await pending_purchase(service)

        with pytest.raises(NotPaid) as exc_info:
            await service.confirm_payment("inv-1", nowpayments_status("expired"))

        assert exc_info.value.payment_status == "cancelled"
        stored = await service.get_purchase(record["payment_id"])
        assert stored["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_paid_after_failure_is_not_credited(self, fake_db):
        service = SettlementService(fake_db)
        record = await pending_purchase(service, provider=PaymentProvider.PAYPAL, reference="ORDER-1")

        with pytest.raises(NotPaid):
            await service.confirm_payment("ORDER-1", paypal_status("DECLINED"))

        result = await service.confirm_payment("ORDER-1", paypal_status("COMPLETED"))

        assert result.tokens_credited == 0
        assert result.status == PaymentStatus.FAILED
        stored = await service.get_purchase(record["payment_id"])
        assert stored["status"] == "failed"
        assert await TokenLedgerService(fake_db).get_balance("u1") == 0

    @pytest.mark.asyncio
    async def test_amount_mismatch_still_settles(self, fake_db):
        service = SettlementService(fake_db)
        await pending_purchase(service)

        result = await service.confirm_payment("inv-1", nowpayments_status("finished", 5.0, "usd"))

        assert result.tokens_credited == 20


class TestRetryUncredited:
    """Recovery of completed payments whose credit never landed."""

    @pytest.mark.asyncio
    async def test_stuck_payment_is_credited_once(self, fake_db):
        service = SettlementService(fake_db)
        record = await pending_purchase(service)
        old = (datetime.now(timezone.utc) - timedelta(minutes=30)).isoformat()
        await fake_db.token_payments.update_one(
            {"payment_id": record["payment_id"]},
            {"$set": {"status": "completed", "completed_at": old}}
        )

        assert await service.retry_uncredited(grace_seconds=300) == 1
        assert await service.retry_uncredited(grace_seconds=300) == 0
        assert await TokenLedgerService(fake_db).get_balance("u1") == 20

    @pytest.mark.asyncio
    async def test_recent_completion_is_left_alone(self, fake_db):
        service = SettlementService(fake_db)
        record = await pending_purchase(service)
        await fake_db.token_payments.update_one(
            {"payment_id": record["payment_id"]},
            {"$set": {"status": "completed", "completed_at": datetime.now(timezone.utc).isoformat()}}
        )

        assert await service.retry_uncredited(grace_seconds=300) == 0
        assert await TokenLedgerService(fake_db).get_balance("u1") == 0

    @pytest.mark.asyncio
    async def test_credit_already_applied_only_sets_marker(self, fake_db):
        """Crash between the ledger credit and the credited_at write."""
        service = SettlementService(fake_db)
        record = await pending_purchase(service)
        await service.confirm_payment("inv-1", nowpayments_status("finished"))
        old = (datetime.now(timezone.utc) - timedelta(minutes=30)).isoformat()
        await fake_db.token_payments.update_one(
            {"payment_id": record["payment_id"]},
            {"$set": {"credited_at": None, "completed_at": old}}
        )

        assert await service.retry_uncredited(grace_seconds=300) == 0
        assert await TokenLedgerService(fake_db).get_balance("u1") == 20
        stored = await service.get_purchase(record["payment_id"])
        assert stored["credited_at"] is not None
