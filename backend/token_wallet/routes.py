"""
Token Wallet API Routes

Endpoints:
- GET  /api/tokens, /api/tokens/balance - Current token balance
- GET  /api/tokens/ledger - Balance change history
- GET  /api/tokens/packages - Token packages for sale
- POST /api/tokens/unlock/{content_type}/{content_id} - Unlock blurred content
- GET  /api/tokens/unlocks - Unlocked content
- POST /api/tokens/generate/{kind} - Paid image/video generation
- GET  /api/tokens/generations - Generated content
- POST /api/tokens/purchase - Start a package purchase
- GET  /api/tokens/purchase/{payment_id} - Purchase status
- POST /api/tokens/purchase/{payment_id}/confirm - Poll the provider and settle
- POST /api/tokens/webhooks/paypal - PayPal webhook
- POST /api/tokens/webhooks/nowpayments - NOWPayments IPN
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Query
from fastapi.responses import JSONResponse

from database import db
from utils.auth import get_current_user, get_admin_user
from token_wallet.config import (
    TOKEN_PACKAGES,
    PACKAGE_CURRENCY,
    GENERATION_COSTS,
    ERROR_CODES,
    get_settings
)
from token_wallet.errors import (
    WalletError,
    InsufficientFunds,
    InvalidAmount,
    PaymentNotFound,
    NotPaid,
    ProducerError,
    UnknownPackage,
    ContentNotFound,
    ProviderError
)
from token_wallet.generation_gate import GenerationGate
from token_wallet.jobs import reconcile
from token_wallet.ledger_service import TokenLedgerService
from token_wallet.models import (
    AdminCreditRequest,
    BalanceResponse,
    GenerationRequest,
    GenerationResponse,
    PackageInfo,
    PackageList,
    PaymentProvider,
    PaymentStatus,
    PurchaseCreateRequest,
    PurchaseCreateResponse,
    ReconcileReport,
    SettlementResult,
    UnlockResult
)
from token_wallet.nowpayments_service import NowPaymentsService
from token_wallet.paypal_service import PayPalTokenService
from token_wallet.producers import get_producer
from token_wallet.settlement_service import SettlementService
from token_wallet.unlock_service import UnlockService

logger = logging.getLogger(__name__)

token_wallet_router = APIRouter(prefix="/tokens", tags=["Token Wallet"])

paypal_service = PayPalTokenService()
nowpayments_service = NowPaymentsService()

ERROR_STATUS = {
    InsufficientFunds: 402,
    PaymentNotFound: 404,
    ContentNotFound: 404,
    UnknownPackage: 400,
    NotPaid: 202,
    ProducerError: 502,
    ProviderError: 502
}


def _http_error(error: WalletError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.to_dict())
    if isinstance(error, InvalidAmount):
        logger.error(f"Invalid amount reached the API layer: {error}")
    return HTTPException(status_code=500, detail={"error_code": "GENERIC", "message": ERROR_CODES["GENERIC"]})


def _ledger() -> TokenLedgerService:
    return TokenLedgerService(db)


def _settlement() -> SettlementService:
    return SettlementService(db)


# ==================== BALANCE ENDPOINTS ====================

@token_wallet_router.get("", response_model=BalanceResponse)
@token_wallet_router.get("/balance", response_model=BalanceResponse)
async def get_balance(user: dict = Depends(get_current_user)):
    """Get current user's token balance."""
    tokens = await _ledger().get_balance(user["id"])
    return BalanceResponse(user_id=user["id"], tokens=tokens)


@token_wallet_router.get("/ledger")
async def get_ledger(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user)
):
    """
    Get token history (ledger entries).

    Shows debits, credits and refunds with the balance after each.
    """
    entries = await _ledger().get_ledger(user["id"], limit)
    return {
        "entries": entries,
        "count": len(entries)
    }


@token_wallet_router.get("/packages", response_model=PackageList)
async def get_token_packages():
    """Get available token packages for purchase."""
    return PackageList(
        packages=[
            PackageInfo(id=package_id, **package)
            for package_id, package in TOKEN_PACKAGES.items()
        ],
        currency=PACKAGE_CURRENCY
    )


# ==================== UNLOCK ENDPOINTS ====================

@token_wallet_router.post("/unlock/{content_type}/{content_id}", response_model=UnlockResult)
async def unlock_content(
    content_type: str,
    content_id: str,
    user: dict = Depends(get_current_user)
):
    """
    Unlock a blurred image or video.

    Repeating the call for unlocked content succeeds without charging again.
    """
    try:
        return await UnlockService(db).unlock_content(user["id"], content_type, content_id)
    except WalletError as e:
        raise _http_error(e)


@token_wallet_router.get("/unlocks")
async def list_unlocks(
    limit: int = Query(200, ge=1, le=1000),
    user: dict = Depends(get_current_user)
):
    unlocks = await UnlockService(db).list_unlocked(user["id"], limit)
    return {
        "unlocks": unlocks,
        "count": len(unlocks)
    }


@token_wallet_router.get("/unlocks/{content_id}")
async def get_unlock_status(content_id: str, user: dict = Depends(get_current_user)):
    unlocked = await UnlockService(db).is_unlocked(user["id"], content_id)
    return {"content_id": content_id, "unlocked": unlocked}


# ==================== GENERATION ENDPOINTS ====================

@token_wallet_router.post("/generate/{kind}", response_model=GenerationResponse)
async def generate_content(
    kind: str,
    body: GenerationRequest,
    user: dict = Depends(get_current_user)
):
    """
    Generate an image or video.

    Tokens are taken before the generation starts and given back if it
    fails or times out.
    """
    if kind not in GENERATION_COSTS:
        raise HTTPException(status_code=404, detail=f"Unknown generation type: {kind}")

    cost = GENERATION_COSTS[kind]
    producer = get_producer(kind)

    try:
        outcome = await GenerationGate(db).run_gated(
            user["id"],
            cost,
            lambda: producer.generate(body),
            action=kind
        )
    except ProducerError as e:
        message = ERROR_CODES["PRODUCER_ERROR"] if e.refunded else ERROR_CODES["GENERIC"]
        raise HTTPException(status_code=502, detail={**e.to_dict(), "message": message})
    except WalletError as e:
        raise _http_error(e)

    return GenerationResponse(
        reservation_id=outcome.reservation_id,
        kind=kind,
        url=outcome.result,
        tokens_charged=outcome.cost,
        tokens_remaining=outcome.balance
    )


@token_wallet_router.get("/generations")
async def list_generations(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user)
):
    generations = await GenerationGate(db).list_generations(user["id"], limit)
    return {
        "generations": generations,
        "count": len(generations)
    }


# ==================== PURCHASE ENDPOINTS ====================

@token_wallet_router.post("/purchase", response_model=PurchaseCreateResponse)
async def create_purchase(
    body: PurchaseCreateRequest,
    request: Request,
    user: dict = Depends(get_current_user)
):
    """
    Create a token package purchase and get the provider's payment URL.

    Flow:
    1. Create pending payment record
    2. Create PayPal order / NOWPayments invoice
    3. Return URL for redirect

    Tokens are credited when the webhook arrives or the client confirms.
    """
    settlement = _settlement()

    try:
        record = await settlement.create_purchase(user["id"], body.package_id, body.provider)
    except WalletError as e:
        raise _http_error(e)

    payment_id = record["payment_id"]
    package = TOKEN_PACKAGES[body.package_id]
    base_url = get_settings().public_app_url.rstrip("/")
    return_url = body.return_url or f"{base_url}/tokens?purchase=success&id={payment_id}"
    cancel_url = body.cancel_url or f"{base_url}/tokens?purchase=cancelled&id={payment_id}"

    try:
        if body.provider == PaymentProvider.PAYPAL:
            order = await paypal_service.create_order(record, package, return_url, cancel_url)
            external_reference, payment_url = order["order_id"], order["approval_url"]
        else:
            invoice = await nowpayments_service.create_invoice(
                record,
                package,
                return_url,
                cancel_url,
                ipn_callback_url=str(request.url_for("nowpayments_webhook"))
            )
            external_reference, payment_url = invoice["invoice_id"], invoice["invoice_url"]
    except ProviderError as e:
        await settlement.mark_failed(payment_id, str(e))
        logger.error(f"Provider order creation failed for payment {payment_id}: {e}")
        raise _http_error(e)

    await settlement.attach_external_reference(payment_id, external_reference, payment_url)

    return PurchaseCreateResponse(
        payment_id=payment_id,
        package_id=body.package_id,
        provider=body.provider,
        amount=record["amount"],
        currency=record["currency"],
        tokens=record["tokens_to_credit"],
        external_reference=external_reference,
        payment_url=payment_url
    )


@token_wallet_router.get("/purchase/{payment_id}")
async def get_purchase_status(payment_id: str, user: dict = Depends(get_current_user)):
    """Get status of a token purchase."""
    try:
        return await _settlement().get_purchase(payment_id, user["id"])
    except WalletError as e:
        raise _http_error(e)


@token_wallet_router.post("/purchase/{payment_id}/confirm", response_model=SettlementResult)
async def confirm_purchase(payment_id: str, user: dict = Depends(get_current_user)):
    """
    Ask the provider about a purchase and settle it if paid.

    Returns 202 while the provider still reports the payment as unpaid;
    the client should poll again later.
    A failed or cancelled purchase is final and returns 409.
    """
    settlement = _settlement()

    try:
        record = await settlement.get_purchase(payment_id, user["id"])
    except WalletError as e:
        raise _http_error(e)

    if record["status"] == PaymentStatus.COMPLETED.value:
        return SettlementResult(payment_id=payment_id, tokens_credited=0, status=PaymentStatus.COMPLETED)

    if record["status"] in (PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value):
        raise HTTPException(
            status_code=409,
            detail={
                "payment_id": payment_id,
                "status": record["status"],
                "provider_status": record.get("provider_status"),
                "message": f"Payment is {record['status']}"
            }
        )

    external_reference = record.get("external_reference")
    if not external_reference:
        raise HTTPException(status_code=409, detail="Payment has no provider reference yet")

    try:
        if record["provider"] == PaymentProvider.PAYPAL.value:
            provider_status = await paypal_service.check_status(external_reference)
        else:
            provider_status = await nowpayments_service.check_status(external_reference)
        return await settlement.confirm_payment(external_reference, provider_status)
    except NotPaid as e:
        return JSONResponse(status_code=202, content=e.to_dict())
    except WalletError as e:
        raise _http_error(e)


# ==================== PROVIDER WEBHOOKS ====================

@token_wallet_router.post("/webhooks/paypal")
async def paypal_webhook(request: Request):
    """
    Handle PayPal webhook notifications.

    Capture events are settled; other events are acknowledged and ignored.
    """
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    if not await paypal_service.verify_webhook_signature(headers, body):
        logger.warning("Invalid PayPal webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    event = json.loads(body.decode())
    logger.info(f"Received PayPal webhook: {event.get('event_type')} (event_id={event.get('id')})")

    parsed = PayPalTokenService.parse_webhook(event)
    if parsed is None:
        return {"status": "ignored"}

    order_id, provider_status = parsed
    return await _settle_from_webhook(order_id, provider_status)


@token_wallet_router.post("/webhooks/nowpayments", name="nowpayments_webhook")
async def nowpayments_webhook(request: Request):
    """Handle NOWPayments IPN callbacks."""
    payload = await request.json()

    if not nowpayments_service.verify_ipn_signature(payload, request.headers.get("x-nowpayments-sig")):
        logger.warning("Invalid NOWPayments IPN signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    logger.info(
        f"Received NOWPayments IPN: {payload.get('payment_status')} "
        f"(invoice_id={payload.get('invoice_id')})"
    )

    parsed = NowPaymentsService.parse_ipn(payload)
    if parsed is None:
        return {"status": "ignored"}

    invoice_id, provider_status = parsed
    return await _settle_from_webhook(invoice_id, provider_status)


async def _settle_from_webhook(external_reference: str, provider_status):
    try:
        result = await _settlement().confirm_payment(external_reference, provider_status)
    except NotPaid as e:
        # Acknowledge; a later delivery carries the final status
        return {"status": "received", "payment_status": e.payment_status}
    except PaymentNotFound as e:
        logger.warning(f"Webhook for unknown payment reference {external_reference}")
        raise _http_error(e)

    return {
        "status": "received",
        "payment_status": result.status.value,
        "tokens_credited": result.tokens_credited
    }


# ==================== ADMIN ENDPOINTS ====================

@token_wallet_router.get("/admin/stats")
async def get_wallet_stats(admin: dict = Depends(get_admin_user)):
    """Get aggregate wallet statistics (admin only)."""
    purchases_by_status = {
        status.value: await db.token_payments.count_documents({"status": status.value})
        for status in PaymentStatus
    }

    return {
        "total_wallets": await db.token_balances.count_documents({}),
        "total_unlocks": await db.content_unlocks.count_documents({}),
        "open_reservations": await db.token_reservations.count_documents({"status": "reserved"}),
        "purchases_by_status": purchases_by_status
    }


@token_wallet_router.post("/admin/credit")
async def admin_credit_tokens(body: AdminCreditRequest, admin: dict = Depends(get_admin_user)):
    """Manually credit tokens to a user (admin only)."""
    balance = await _ledger().credit(
        body.user_id,
        body.tokens,
        reason="admin_grant",
        details={"reason": body.reason, "admin": admin.get("email")}
    )

    return {
        "success": True,
        "message": f"Credited {body.tokens} tokens to user {body.user_id}",
        "tokens": balance
    }


@token_wallet_router.post("/admin/reconcile", response_model=ReconcileReport)
async def admin_reconcile(admin: dict = Depends(get_admin_user)):
    """Release expired reservations and credit stuck payments now."""
    report = await reconcile(db)
    logger.info(f"Manual reconciliation by {admin.get('email')}: {report.model_dump()}")
    return report
