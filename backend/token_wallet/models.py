"""
Token Wallet Data Models

Pydantic models for wallet operations.
These define the structure of documents stored in MongoDB collections
and the request/response bodies of the wallet API.
"""

from enum import Enum
from typing import Optional, List, Literal

from pydantic import BaseModel, Field


class PaymentProvider(str, Enum):
    PAYPAL = "paypal"
    NOWPAYMENTS = "nowpayments"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProviderStatus(BaseModel):
    """A status reported by one payment provider, in that provider's vocabulary."""
    provider: PaymentProvider
    status: str
    pay_amount: Optional[float] = None
    pay_currency: Optional[str] = None


# ==================== BALANCE MODELS ====================

class BalanceResponse(BaseModel):
    user_id: str
    tokens: int


class LedgerEntry(BaseModel):
    """Audit trail entry for a balance change"""
    user_id: str
    kind: Literal["debit", "credit", "refund"]
    amount: int
    balance_after: int
    reason: str
    reference: Optional[str] = None
    timestamp: str
    details: Optional[dict] = None


# ==================== PAYMENT MODELS ====================

class PaymentRecord(BaseModel):
    """Token package purchase record"""
    payment_id: str
    user_id: str
    package_id: str
    amount: float
    currency: str
    provider: PaymentProvider
    external_reference: Optional[str] = None
    payment_url: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    tokens_to_credit: int
    created_at: str
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    credited_at: Optional[str] = None
    provider_status: Optional[str] = None
    error_message: Optional[str] = None


class PurchaseCreateRequest(BaseModel):
    package_id: str = Field(..., description="Token package ID: 20-tokens, 50-tokens or 100-tokens")
    provider: PaymentProvider = Field(..., description="paypal or nowpayments")
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PurchaseCreateResponse(BaseModel):
    payment_id: str
    package_id: str
    provider: PaymentProvider
    amount: float
    currency: str
    tokens: int
    external_reference: str
    payment_url: Optional[str] = None


class SettlementResult(BaseModel):
    payment_id: str
    tokens_credited: int
    status: PaymentStatus
    balance: Optional[int] = None


# ==================== UNLOCK MODELS ====================

class UnlockRecord(BaseModel):
    """A (user, content) pair that has been unlocked"""
    user_id: str
    content_id: str
    content_type: Optional[str] = None
    unlock_price: int
    unlocked_at: str
    debit_reference: Optional[str] = None


class UnlockResult(BaseModel):
    unlocked: bool = True
    content_id: str
    already_unlocked: bool = False
    tokens_charged: int = 0
    tokens_remaining: Optional[int] = None


# ==================== GENERATION MODELS ====================

class Reservation(BaseModel):
    """Tokens held for one generation request"""
    reservation_id: str
    user_id: str
    cost: int
    action: str
    status: Literal["reserved", "committed", "released", "expired", "rejected"]
    created_at: str
    expires_at: str
    finished_at: Optional[str] = None
    result_url: Optional[str] = None
    error_message: Optional[str] = None


class GenerationRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=2000)
    negative_prompt: Optional[str] = None
    width: Optional[int] = Field(None, ge=64, le=2048)
    height: Optional[int] = Field(None, ge=64, le=2048)
    duration: Optional[int] = Field(None, ge=1, le=30)
    style: Optional[str] = None


class GenerationResponse(BaseModel):
    reservation_id: str
    kind: str
    url: str
    tokens_charged: int
    tokens_remaining: Optional[int] = None


# ==================== ADMIN MODELS ====================

class AdminCreditRequest(BaseModel):
    user_id: str
    tokens: int = Field(..., ge=1)
    reason: str = "admin_grant"


class ReconcileReport(BaseModel):
    reservations_released: int
    payments_credited: int
    checked_at: str


class PackageInfo(BaseModel):
    id: str
    name: str
    tokens: int
    price_usd: float
    description: str


class PackageList(BaseModel):
    packages: List[PackageInfo]
    currency: str
