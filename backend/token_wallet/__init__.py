"""
Token Wallet Module
Token-gated unlocks, purchases and AI generation for the content platform

This module provides:
- Token balance management (atomic, concurrency-safe debit/credit)
- Content unlocks recorded at most once per (user, content)
- PayPal and NOWPayments settlement that credits each purchase exactly once
- A reserve/commit/release gate around paid AI generations

Collections used:
- token_balances: User token balances
- token_ledger: Append-only audit trail of balance changes
- token_payments: Token package purchase records
- content_unlocks: Unlocked (user, content) pairs
- token_reservations: In-flight and finished generation reservations
"""

__version__ = "1.0.0"
