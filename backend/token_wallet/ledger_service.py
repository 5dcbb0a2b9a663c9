"""
Token Ledger Service

The only code allowed to change a user's token balance.

CRITICAL: Every balance change is a single conditional update on the
user's balance document. Debits filter on tokens >= amount, so two
concurrent debits can never both pass a stale balance check and a
negative balance is impossible.

Operations that carry a reference (payment id, reservation id, unlock
attempt id) record it in the document's applied_refs window in the same
update, which makes them safe to retry: a reference is applied at most once.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .config import APPLIED_REFS_WINDOW
from .errors import InsufficientFunds, InvalidAmount
from .models import LedgerEntry

logger = logging.getLogger(__name__)


def validate_amount(amount) -> int:
    """Accept non-negative integers only (bools are rejected)."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        logger.error(f"Rejected invalid token amount {amount!r}")
        raise InvalidAmount(amount)
    return amount


def refund_reference(debit_reference: str) -> str:
    return f"refund:{debit_reference}"


class TokenLedgerService:
    """Debit/credit operations against the token_balances collection."""

    def __init__(self, db):
        self.db = db

    async def ensure_balance(self, user_id: str) -> None:
        """Create the balance document lazily with zero tokens."""
        now = datetime.now(timezone.utc).isoformat()
        await self.db.token_balances.update_one(
            {"user_id": user_id},
            {
                "$setOnInsert": {
                    "user_id": user_id,
                    "tokens": 0,
                    "applied_refs": [],
                    "created_at": now,
                    "updated_at": now
                }
            },
            upsert=True
        )

    async def get_balance(self, user_id: str) -> int:
        """Return the current token count. Users without a document have 0."""
        doc = await self.db.token_balances.find_one(
            {"user_id": user_id},
            {"_id": 0, "tokens": 1}
        )
        return int(doc.get("tokens", 0)) if doc else 0

    async def debit(
        self,
        user_id: str,
        amount: int,
        reason: str = "usage",
        reference: Optional[str] = None,
        details: Optional[Dict] = None
    ) -> int:
        """
        Atomically deduct tokens.

        Returns:
            The balance after the debit.

        Raises:
            InsufficientFunds: balance is lower than amount (nothing changed)
            InvalidAmount: amount is not a non-negative integer
        """
        validate_amount(amount)
        if amount == 0:
            return await self.get_balance(user_id)

        now = datetime.now(timezone.utc).isoformat()
        query: Dict[str, Any] = {"user_id": user_id, "tokens": {"$gte": amount}}
        update: Dict[str, Any] = {
            "$inc": {"tokens": -amount},
            "$set": {"updated_at": now}
        }
        if reference:
            query["applied_refs"] = {"$ne": reference}
            update["$push"] = {"applied_refs": {"$each": [reference], "$slice": -APPLIED_REFS_WINDOW}}

        doc = await self.db.token_balances.find_one_and_update(
            query,
            update,
            projection={"_id": 0, "tokens": 1},
            return_document=ReturnDocument.AFTER
        )

        if doc is None:
            current = await self.db.token_balances.find_one(
                {"user_id": user_id},
                {"_id": 0, "tokens": 1, "applied_refs": 1}
            )
            balance = int(current.get("tokens", 0)) if current else 0
            if reference and current and reference in current.get("applied_refs", []):
                logger.info(f"Debit {reference} for user {user_id} already applied")
                return balance
            raise InsufficientFunds(user_id, amount, balance)

        balance_after = int(doc["tokens"])
        await self._write_ledger_entry(
            user_id=user_id,
            kind="debit",
            amount=-amount,
            balance_after=balance_after,
            reason=reason,
            reference=reference,
            details=details
        )
        return balance_after

    async def credit(
        self,
        user_id: str,
        amount: int,
        reason: str = "credit",
        reference: Optional[str] = None,
        details: Optional[Dict] = None
    ) -> int:
        """
        Atomically add tokens.

        A credit with a reference that was already applied changes nothing.

        Returns:
            The balance after the credit.
        """
        _, balance = await self._apply_credit(user_id, amount, reason, reference, details)
        return balance

    async def credit_once(
        self,
        user_id: str,
        amount: int,
        reason: str,
        reference: str,
        details: Optional[Dict] = None
    ) -> Tuple[bool, int]:
        """Credit keyed by reference. Returns (applied, balance)."""
        return await self._apply_credit(user_id, amount, reason, reference, details)

    async def refund(
        self,
        user_id: str,
        amount: int,
        debit_reference: str,
        reason: str = "refund",
        details: Optional[Dict] = None
    ) -> bool:
        """
        Give back a debit that was made with debit_reference.

        The refund only happens if that debit was actually applied and has
        not been refunded yet, so callers may retry it freely. Debits whose
        reference has already left the applied_refs window are looked up in
        the audit ledger instead.

        Returns:
            True if tokens were returned by this call.
        """
        validate_amount(amount)
        refund_ref = refund_reference(debit_reference)
        now = datetime.now(timezone.utc).isoformat()
        update = {
            "$inc": {"tokens": amount},
            "$set": {"updated_at": now},
            "$push": {"applied_refs": {"$each": [refund_ref], "$slice": -APPLIED_REFS_WINDOW}}
        }

        doc = await self.db.token_balances.find_one_and_update(
            {
                "user_id": user_id,
                "$and": [
                    {"applied_refs": debit_reference},
                    {"applied_refs": {"$ne": refund_ref}}
                ]
            },
            update,
            projection={"_id": 0, "tokens": 1},
            return_document=ReturnDocument.AFTER
        )

        if doc is None:
            if not await self._debit_awaiting_refund(user_id, debit_reference, refund_ref):
                logger.info(
                    f"No refund for user {user_id}: debit {debit_reference} not applied or already refunded"
                )
                return False

            logger.error(
                f"REFUND_FROM_LEDGER | user={user_id} | amount={amount} | debit_reference={debit_reference} "
                f"- reference left the applied_refs window, refunding from the audit ledger"
            )
            doc = await self.db.token_balances.find_one_and_update(
                {"user_id": user_id, "applied_refs": {"$ne": refund_ref}},
                update,
                projection={"_id": 0, "tokens": 1},
                return_document=ReturnDocument.AFTER
            )
            if doc is None:
                logger.info(f"Refund {refund_ref} for user {user_id} already applied")
                return False

        await self._write_ledger_entry(
            user_id=user_id,
            kind="refund",
            amount=amount,
            balance_after=int(doc["tokens"]),
            reason=reason,
            reference=refund_ref,
            details={"debit_reference": debit_reference, **(details or {})}
        )
        logger.info(f"Refunded {amount} tokens to user {user_id} (debit={debit_reference}, reason={reason})")
        return True

    async def _debit_awaiting_refund(self, user_id: str, debit_reference: str, refund_ref: str) -> bool:
        """True if the ledger shows the debit and no refund for it."""
        debit_entry = await self.db.token_ledger.find_one(
            {"user_id": user_id, "kind": "debit", "reference": debit_reference},
            {"_id": 1}
        )
        if not debit_entry:
            return False
        refund_entry = await self.db.token_ledger.find_one(
            {"user_id": user_id, "kind": "refund", "reference": refund_ref},
            {"_id": 1}
        )
        return refund_entry is None

    async def _apply_credit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        reference: Optional[str],
        details: Optional[Dict]
    ) -> Tuple[bool, int]:
        validate_amount(amount)
        now = datetime.now(timezone.utc).isoformat()

        if reference is None:
            doc = await self.db.token_balances.find_one_and_update(
                {"user_id": user_id},
                {
                    "$inc": {"tokens": amount},
                    "$set": {"updated_at": now},
                    "$setOnInsert": {"user_id": user_id, "applied_refs": [], "created_at": now}
                },
                projection={"_id": 0, "tokens": 1},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
        else:
            # The filter on applied_refs rules out an upsert, so the document
            # has to exist first.
            await self.ensure_balance(user_id)
            doc = await self.db.token_balances.find_one_and_update(
                {"user_id": user_id, "applied_refs": {"$ne": reference}},
                {
                    "$inc": {"tokens": amount},
                    "$set": {"updated_at": now},
                    "$push": {"applied_refs": {"$each": [reference], "$slice": -APPLIED_REFS_WINDOW}}
                },
                projection={"_id": 0, "tokens": 1},
                return_document=ReturnDocument.AFTER
            )
            if doc is None:
                logger.info(f"Credit {reference} for user {user_id} already applied")
                return False, await self.get_balance(user_id)

        balance_after = int(doc["tokens"])
        await self._write_ledger_entry(
            user_id=user_id,
            kind="credit",
            amount=amount,
            balance_after=balance_after,
            reason=reason,
            reference=reference,
            details=details
        )
        logger.info(f"Credited {amount} tokens to user {user_id} (reason={reason})")
        return True, balance_after

    async def _write_ledger_entry(
        self,
        user_id: str,
        kind: str,
        amount: int,
        balance_after: int,
        reason: str,
        reference: Optional[str] = None,
        details: Optional[Dict] = None
    ):
        """Append an audit entry. The balance document stays the source of truth."""
        entry = LedgerEntry(
            user_id=user_id,
            kind=kind,
            amount=amount,
            balance_after=balance_after,
            reason=reason,
            reference=reference,
            timestamp=datetime.now(timezone.utc).isoformat(),
            details=details or {}
        ).model_dump()
        try:
            await self.db.token_ledger.insert_one(entry)
        except PyMongoError:
            # Balance change is already committed at this point
            logger.exception(
                f"LEDGER_AUDIT_WRITE_FAILED | user={user_id} | kind={kind} | amount={amount} "
                f"| balance_after={balance_after} | reference={reference}"
            )

    async def get_ledger(self, user_id: str, limit: int = 50) -> list:
        """Get recent ledger entries for user."""
        cursor = self.db.token_ledger.find(
            {"user_id": user_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)
