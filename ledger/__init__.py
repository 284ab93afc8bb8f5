"""
Wallet Ledger and Referral Network

This module provides:
- A snapshot-backed store persisted as one JSON document
- Deposits and withdrawals with an append-only transaction log
- Referral code issuance and one-time parent/child links
- Three-tier referral statistics
- A facade used by the HTTP and bot handlers
"""

from .models import (
    TransactionType,
    TransactionStatus,
    RejectionReason,
    BindOutcome,
    User,
    Wallet,
    Transaction,
    ReferralCode,
    ReferralLink,
    TierStats,
)
from .storage import SnapshotStore, StoreIOError, NotDurable
from .service import LedgerService, InvalidAmount, InsufficientBalance
from .referrals import ReferralGraph
from .facade import LedgerFacade, build_facade

__all__ = [
    "TransactionType",
    "TransactionStatus",
    "RejectionReason",
    "BindOutcome",
    "User",
    "Wallet",
    "Transaction",
    "ReferralCode",
    "ReferralLink",
    "TierStats",
    "SnapshotStore",
    "StoreIOError",
    "NotDurable",
    "LedgerService",
    "InvalidAmount",
    "InsufficientBalance",
    "ReferralGraph",
    "LedgerFacade",
    "build_facade",
]
