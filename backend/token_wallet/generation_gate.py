"""
Generation Gate - paid AI generation with automatic refunds

A generation is a long external call that cannot take part in the ledger's
atomic update, so tokens are held with an explicit protocol:

    reserve  -> reservation document written, then cost debited
    commit   -> producer returned content, the debit stands
    release  -> producer failed or timed out, the debit is refunded

Reservations live in token_reservations. A request that dies between
reserve and commit/release (worker crash, cancelled task) leaves a
"reserved" document behind; sweep_expired() refunds those once they are
older than the producer timeout plus a grace period.

Usage:
    gate = GenerationGate(db)
    outcome = await gate.run_gated(user_id, 1, lambda: producer.generate(params), action="image")
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Awaitable, Callable, Optional, Tuple, Dict, Any, List

from .config import WalletSettings, get_settings
from .errors import InsufficientFunds, ProducerError, ProducerTimeout
from .ledger_service import TokenLedgerService, validate_amount
from .models import Reservation

logger = logging.getLogger(__name__)

Producer = Callable[[], Awaitable[str]]


def reservation_reference(reservation_id: str) -> str:
    return f"reservation:{reservation_id}"


@dataclass
class GatedResult:
    reservation_id: str
    result: str
    cost: int
    balance: int


class GenerationGate:
    """Debit-first wrapper around content producers."""

    def __init__(
        self,
        db,
        ledger: Optional[TokenLedgerService] = None,
        settings: Optional[WalletSettings] = None
    ):
        self.db = db
        self.ledger = ledger or TokenLedgerService(db)
        self.settings = settings or get_settings()

    async def run_gated(
        self,
        user_id: str,
        cost: int,
        producer: Producer,
        action: str = "generation",
        timeout: Optional[float] = None
    ) -> GatedResult:
        """
        Charge cost tokens, run producer, refund if it does not deliver.

        Raises:
            InsufficientFunds: producer is never called
            ProducerError: producer failed, timed out or returned nothing;
                tokens have been refunded unless error.refunded is False
        """
        timeout = timeout if timeout is not None else self.settings.generation_timeout_seconds
        reservation, balance = await self.reserve(user_id, cost, action)

        try:
            result = await asyncio.wait_for(producer(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Producer timed out after {timeout}s for reservation {reservation['reservation_id']}")
            refunded = await self._release_after_failure(reservation, "timeout")
            raise ProducerTimeout(
                f"Generation timed out after {timeout:g} seconds",
                refunded=refunded,
                reservation_id=reservation["reservation_id"]
            )
        except ProducerError as e:
            refunded = await self._release_after_failure(reservation, str(e))
            raise ProducerError(str(e), refunded=refunded, reservation_id=reservation["reservation_id"]) from e
        except Exception as e:
            logger.error(f"Producer failed for reservation {reservation['reservation_id']}: {e}")
            refunded = await self._release_after_failure(reservation, str(e))
            raise ProducerError(
                "Generation failed",
                refunded=refunded,
                reservation_id=reservation["reservation_id"]
            ) from e

        if not result:
            refunded = await self._release_after_failure(reservation, "empty result")
            raise ProducerError(
                "Generation returned no content",
                refunded=refunded,
                reservation_id=reservation["reservation_id"]
            )

        await self.commit(reservation, result)
        return GatedResult(
            reservation_id=reservation["reservation_id"],
            result=result,
            cost=cost,
            balance=balance
        )

    async def reserve(self, user_id: str, cost: int, action: str) -> Tuple[Dict[str, Any], int]:
        """Persist a reservation and debit its cost. Returns (reservation, balance)."""
        validate_amount(cost)
        now = datetime.now(timezone.utc)
        reservation = Reservation(
            reservation_id=str(uuid.uuid4()),
            user_id=user_id,
            cost=cost,
            action=action,
            status="reserved",
            created_at=now.isoformat(),
            expires_at=(now + timedelta(seconds=self.settings.reservation_ttl_seconds)).isoformat()
        ).model_dump()
        await self.db.token_reservations.insert_one(dict(reservation))

        try:
            balance = await self.ledger.debit(
                user_id,
                cost,
                reason=f"generation:{action}",
                reference=reservation_reference(reservation["reservation_id"]),
                details={"reservation_id": reservation["reservation_id"], "action": action}
            )
        except InsufficientFunds:
            await self._finish(reservation["reservation_id"], "rejected")
            raise

        return reservation, balance

    async def commit(self, reservation: Dict[str, Any], result_url: str) -> bool:
        """Keep the debit. False if the reservation was already expired by the sweep."""
        committed = await self._finish(reservation["reservation_id"], "committed", result_url=result_url)
        if not committed:
            logger.warning(
                f"Reservation {reservation['reservation_id']} for user {reservation['user_id']} "
                f"was no longer reserved at commit; content delivered without charge"
            )
        return committed

    async def release(self, reservation: Dict[str, Any], reason: str, final_status: str = "released") -> bool:
        """Refund the reservation's debit and close it. Safe to call more than once."""
        refunded = await self.ledger.refund(
            reservation["user_id"],
            reservation["cost"],
            reservation_reference(reservation["reservation_id"]),
            reason=f"generation_{final_status}",
            details={"reservation_id": reservation["reservation_id"], "reason": reason}
        )
        await self._finish(reservation["reservation_id"], final_status, error_message=reason)
        return refunded

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Release reservations whose request never came back.

        Returns:
            Number of reservations refunded by this run.
        """
        now = now or datetime.now(timezone.utc)
        cursor = self.db.token_reservations.find(
            {"status": "reserved", "expires_at": {"$lt": now.isoformat()}},
            {"_id": 0}
        )
        expired = await cursor.to_list(length=500)

        released = 0
        for reservation in expired:
            try:
                if await self.release(reservation, "expired", final_status="expired"):
                    released += 1
            except Exception as e:
                logger.error(f"Failed to release expired reservation {reservation['reservation_id']}: {e}")

        if expired:
            logger.info(f"Reservation sweep: {len(expired)} expired, {released} refunded")
        return released

    async def list_generations(self, user_id: str, limit: int = 50) -> List[dict]:
        cursor = self.db.token_reservations.find(
            {"user_id": user_id, "status": "committed"},
            {"_id": 0}
        ).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def _release_after_failure(self, reservation: Dict[str, Any], reason: str) -> bool:
        try:
            await self.release(reservation, reason)
        except Exception:
            logger.critical(
                f"GENERATION_REFUND_FAILED | user={reservation['user_id']} | amount={reservation['cost']} "
                f"| reservation={reservation['reservation_id']} - left reserved for the expiry sweep"
            )
            return False
        return True

    async def _finish(self, reservation_id: str, status: str, **fields) -> bool:
        result = await self.db.token_reservations.update_one(
            {"reservation_id": reservation_id, "status": "reserved"},
            {
                "$set": {
                    "status": status,
                    "finished_at": datetime.now(timezone.utc).isoformat(),
                    **fields
                }
            }
        )
        return result.modified_count > 0
