"""
Unit Tests for the Generation Gate

Tests:
1. Successful generation keeps the debit
2. Producer failure, timeout and empty output refund the debit
3. Insufficient funds never calls the producer
4. Expired reservations are refunded by the sweep, once
"""

import asyncio
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock

import pytest

from token_wallet.errors import InsufficientFunds, ProducerError, ProducerTimeout
from token_wallet.generation_gate import GenerationGate
from token_wallet.ledger_service import TokenLedgerService


@pytest.fixture
def gate(fake_db, wallet_settings):
    return GenerationGate(fake_db, settings=wallet_settings)


class TestRunGated:
    """Reserve -> commit / release."""

    @pytest.mark.asyncio
    async def test_success_commits_reservation(self, fake_db, gate, seed_balance):
        await seed_balance("u1", 10)
        producer = AsyncMock(return_value="https://cdn.example/img.png")

        outcome = await gate.run_gated("u1", 1, producer, action="image")

        assert outcome.result == "https://cdn.example/img.png"
        assert outcome.balance == 9
        producer.assert_awaited_once()
        reservation = await fake_db.token_reservations.find_one({"reservation_id": outcome.reservation_id})
        assert reservation["status"] == "committed"
        assert reservation["result_url"] == "https://cdn.example/img.png"
        assert await TokenLedgerService(fake_db).get_balance("u1") == 9

    @pytest.mark.asyncio
    async def test_producer_failure_refunds(self, fake_db, gate, seed_balance):
        """User with 10 tokens; producer throws after the debit of 1."""
        await seed_balance("u1", 10)
        producer = AsyncMock(side_effect=RuntimeError("GPU on fire"))

        with pytest.raises(ProducerError) as exc_info:
            await gate.run_gated("u1", 1, producer)

        assert exc_info.value.refunded is True
        assert await TokenLedgerService(fake_db).get_balance("u1") == 10
        reservation = await fake_db.token_reservations.find_one({})
        assert reservation["status"] == "released"

    @pytest.mark.asyncio
    async def test_producer_error_message_is_kept(self, fake_db, gate, seed_balance):
        await seed_balance("u1", 10)
        producer = AsyncMock(side_effect=ProducerError("image generation failed with status 500"))

        with pytest.raises(ProducerError, match="status 500"):
            await gate.run_gated("u1", 2, producer)

        assert await TokenLedgerService(fake_db).get_balance("u1") == 10

    @pytest.mark.asyncio
    async def test_timeout_refunds(self, fake_db, gate, seed_balance):
        await seed_balance("u1", 10)

        async def slow_producer():
            await asyncio.sleep(5)
            return "https://cdn.example/late.png"

        with pytest.raises(ProducerTimeout) as exc_info:
            await gate.run_gated("u1", 2, slow_producer, timeout=0.05)

        assert exc_info.value.refunded is True
        assert await TokenLedgerService(fake_db).get_balance("u1") == 10

    @pytest.mark.asyncio
    async def test_empty_result_refunds(self, fake_db, gate, seed_balance):
        await seed_balance("u1", 3)
        producer = AsyncMock(return_value="")

        with pytest.raises(ProducerError):
            await gate.run_gated("u1", 1, producer)

        assert await TokenLedgerService(fake_db).get_balance("u1") == 3

    @pytest.mark.asyncio
    async def test_insufficient_funds_never_calls_producer(self, fake_db, gate, seed_balance):
        await seed_balance("u1", 1)
        producer = AsyncMock(return_value="https://cdn.example/vid.mp4")

        with pytest.raises(InsufficientFunds):
            await gate.run_gated("u1", 2, producer, action="video")

        producer.assert_not_awaited()
        assert await TokenLedgerService(fake_db).get_balance("u1") == 1
        reservation = await fake_db.token_reservations.find_one({})
        assert reservation["status"] == "rejected"

    @pytest.mark.asyncio
    async def test_concurrent_generations_respect_balance(self, fake_db, gate, seed_balance):
        await seed_balance("u1", 3)
        producer = AsyncMock(return_value="https://cdn.example/img.png")

        results = await asyncio.gather(
            *[gate.run_gated("u1", 1, producer) for _ in range(5)],
            return_exceptions=True
        )

        assert sum(1 for r in results if isinstance(r, InsufficientFunds)) == 2
        assert producer.await_count == 3
        assert await TokenLedgerService(fake_db).get_balance("u1") == 0

    @pytest.mark.asyncio
    async def test_list_generations_returns_committed_only(self, gate, seed_balance):
        await seed_balance("u1", 5)
        await gate.run_gated("u1", 1, AsyncMock(return_value="https://cdn.example/a.png"))
        with pytest.raises(ProducerError):
            await gate.run_gated("u1", 1, AsyncMock(side_effect=RuntimeError("boom")))

        generations = await gate.list_generations("u1")

        assert [g["result_url"] for g in generations] == ["https://cdn.example/a.png"]


class TestSweepExpired:
    """Reservations abandoned between debit and commit/release."""

    @pytest.mark.asyncio
    async def test_expired_reservation_is_refunded_once(self, fake_db, gate, seed_balance):
        await seed_balance("u1", 5)
        reservation, balance = await gate.reserve("u1", 2, "image")
        assert balance == 3

        later = datetime.now(timezone.utc) + timedelta(minutes=10)
        assert await gate.sweep_expired(now=later) == 1
        assert await gate.sweep_expired(now=later) == 0

        assert await TokenLedgerService(fake_db).get_balance("u1") == 5
        stored = await fake_db.token_reservations.find_one({"reservation_id": reservation["reservation_id"]})
        assert stored["status"] == "expired"

    @pytest.mark.asyncio
    async def test_live_reservation_is_not_swept(self, fake_db, gate, seed_balance):
        await seed_balance("u1", 5)
        await gate.reserve("u1", 2, "image")

        assert await gate.sweep_expired() == 0
        assert await TokenLedgerService(fake_db).get_balance("u1") == 3

    @pytest.mark.asyncio
    async def test_commit_after_sweep_does_not_charge(self, fake_db, gate, seed_balance):
        await seed_balance("u1", 5)
        reservation, _ = await gate.reserve("u1", 2, "image")
        await gate.sweep_expired(now=datetime.now(timezone.utc) + timedelta(minutes=10))

        assert await gate.commit(reservation, "https://cdn.example/late.png") is False
        assert await TokenLedgerService(fake_db).get_balance("u1") == 5

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, fake_db, gate, seed_balance):
        await seed_balance("u1", 5)
        reservation, _ = await gate.reserve("u1", 2, "image")

        assert await gate.release(reservation, "cancelled by user") is True
        assert await gate.release(reservation, "cancelled by user") is False
        assert await TokenLedgerService(fake_db).get_balance("u1") == 5

    @pytest.mark.asyncio
    async def test_sweep_refunds_reservation_evicted_from_window(self, fake_db, gate, seed_balance, monkeypatch):
        monkeypatch.setattr("token_wallet.ledger_service.APPLIED_REFS_WINDOW", 3)
        await seed_balance("u1", 5)
        ledger = TokenLedgerService(fake_db)
        reservation, _ = await gate.reserve("u1", 2, "video")
        for i in range(3):
            await ledger.credit_once("u1", 1, "purchase", f"payment:p{i}")

        later = datetime.now(timezone.utc) + timedelta(minutes=10)
        assert await gate.sweep_expired(now=later) == 1
        assert await ledger.get_balance("u1") == 8
        stored = await fake_db.token_reservations.find_one({"reservation_id": reservation["reservation_id"]})
        assert stored["status"] == "expired"
