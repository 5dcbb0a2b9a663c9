"""
Background reconciliation for the token wallet.

Two things can be left half-done by a request that dies mid-way:
- a generation reservation that was debited but never committed/released
- a payment marked completed whose credit never landed

reconcile() finishes both. It runs on an APScheduler interval job and on
demand from the admin endpoint.

STARTUP USAGE:
    from token_wallet.jobs import setup_scheduler
    scheduler = AsyncIOScheduler()
    setup_scheduler(scheduler, db)
    scheduler.start()
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .config import WalletSettings, get_settings
from .generation_gate import GenerationGate
from .ledger_service import TokenLedgerService
from .models import ReconcileReport
from .settlement_service import SettlementService

logger = logging.getLogger(__name__)

RECONCILE_INTERVAL_MINUTES = 5


async def reconcile(db, settings: Optional[WalletSettings] = None) -> ReconcileReport:
    settings = settings or get_settings()
    ledger = TokenLedgerService(db)

    released = await GenerationGate(db, ledger, settings).sweep_expired()
    credited = await SettlementService(db, ledger).retry_uncredited(settings.uncredited_grace_seconds)

    return ReconcileReport(
        reservations_released=released,
        payments_credited=credited,
        checked_at=datetime.now(timezone.utc).isoformat()
    )


def setup_scheduler(scheduler, db) -> None:
    """Register the wallet reconciliation job. Call before scheduler.start()."""

    async def _job():
        try:
            report = await reconcile(db)
        except Exception as e:
            logger.error(f"[TOKEN-RECONCILE-ERROR] Reconciliation failed: {e}")
            return
        if report.reservations_released or report.payments_credited:
            logger.info(
                f"[TOKEN-RECONCILE] released={report.reservations_released} "
                f"credited={report.payments_credited}"
            )

    scheduler.add_job(
        _job,
        "interval",
        minutes=RECONCILE_INTERVAL_MINUTES,
        id="token_wallet_reconcile",
        replace_existing=True
    )
