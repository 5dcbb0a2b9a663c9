"""
Unlock Service

Reveals blurred content to a user permanently in exchange for tokens.

The content_unlocks record is the only source of truth for "this user can
see this content". Its unique (user_id, content_id) index is what stops a
double unlock: when two requests race past the existence check, both may
debit, but only one insert wins and the loser refunds its own debit.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, List

from pymongo.errors import DuplicateKeyError

from .config import CONTENT_COLLECTIONS, DEFAULT_UNLOCK_PRICE
from .errors import ContentNotFound
from .ledger_service import TokenLedgerService, validate_amount
from .models import UnlockRecord, UnlockResult

logger = logging.getLogger(__name__)


class UnlockService:
    """Service for unlocking content with tokens."""

    def __init__(self, db, ledger: Optional[TokenLedgerService] = None):
        self.db = db
        self.ledger = ledger or TokenLedgerService(db)

    async def is_unlocked(self, user_id: str, content_id: str) -> bool:
        record = await self.db.content_unlocks.find_one(
            {"user_id": user_id, "content_id": content_id},
            {"_id": 0, "content_id": 1}
        )
        return record is not None

    async def unlock(
        self,
        user_id: str,
        content_id: str,
        price: int,
        content_type: Optional[str] = None
    ) -> UnlockResult:
        """
        Unlock content for user, charging price tokens at most once.

        Safe to retry: an existing unlock returns success without a debit.

        Raises:
            InsufficientFunds: nothing is debited and no record is written
        """
        validate_amount(price)

        if await self.is_unlocked(user_id, content_id):
            return UnlockResult(
                content_id=content_id,
                already_unlocked=True,
                tokens_remaining=await self.ledger.get_balance(user_id)
            )

        attempt_id = f"unlock:{content_id}:{uuid.uuid4()}"
        balance = await self.ledger.debit(
            user_id,
            price,
            reason="unlock",
            reference=attempt_id,
            details={"content_id": content_id, "content_type": content_type}
        )

        record = UnlockRecord(
            user_id=user_id,
            content_id=content_id,
            content_type=content_type,
            unlock_price=price,
            unlocked_at=datetime.now(timezone.utc).isoformat(),
            debit_reference=attempt_id
        ).model_dump()

        try:
            await self.db.content_unlocks.insert_one(record)
        except DuplicateKeyError:
            # Another request unlocked the same content between our check and insert
            logger.info(f"Concurrent unlock of {content_id} for user {user_id}, refunding {attempt_id}")
            await self._refund_attempt(user_id, price, attempt_id, content_id)
            return UnlockResult(
                content_id=content_id,
                already_unlocked=True,
                tokens_remaining=await self.ledger.get_balance(user_id)
            )
        except Exception:
            # Record not written: the debit must not stand
            logger.error(f"Unlock record insert failed for user {user_id}, content {content_id}")
            await self._refund_attempt(user_id, price, attempt_id, content_id)
            raise

        logger.info(f"User {user_id} unlocked {content_id} for {price} tokens")
        return UnlockResult(
            content_id=content_id,
            tokens_charged=price,
            tokens_remaining=balance
        )

    async def unlock_content(self, user_id: str, content_type: str, content_id: str) -> UnlockResult:
        """
        Unlock an image or video from the catalog.

        The price is read from the content document; content that is not
        blurred is free and needs no unlock record.
        """
        collection_name = CONTENT_COLLECTIONS.get(content_type)
        if not collection_name:
            raise ContentNotFound(content_type, content_id)

        content = await self.db[collection_name].find_one(
            {"id": content_id},
            {"_id": 0, "id": 1, "unlock_price": 1, "is_blurred": 1}
        )
        if not content:
            raise ContentNotFound(content_type, content_id)

        if not content.get("is_blurred", True):
            return UnlockResult(
                content_id=content_id,
                tokens_remaining=await self.ledger.get_balance(user_id)
            )

        price = int(content.get("unlock_price", DEFAULT_UNLOCK_PRICE))
        result = await self.unlock(user_id, content_id, price, content_type=content_type)

        if not result.already_unlocked:
            await self.db[collection_name].update_one(
                {"id": content_id},
                {"$inc": {"unlock_count": 1}}
            )
        return result

    async def list_unlocked(self, user_id: str, limit: int = 200) -> List[dict]:
        cursor = self.db.content_unlocks.find(
            {"user_id": user_id},
            {"_id": 0, "debit_reference": 0}
        ).sort("unlocked_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def _refund_attempt(self, user_id: str, price: int, attempt_id: str, content_id: str):
        try:
            await self.ledger.refund(
                user_id,
                price,
                attempt_id,
                reason="unlock_conflict",
                details={"content_id": content_id}
            )
        except Exception:
            logger.critical(
                f"UNLOCK_REFUND_FAILED | user={user_id} | amount={price} | "
                f"debit_reference={attempt_id} | content={content_id} - manual reconciliation required"
            )
            raise
