"""
Entry points for HTTP and bot handlers.

Validation rejections come back as result values; ``StoreIOError`` (and its
``NotDurable`` subclass) propagates so callers can report a storage failure
separately from a bad request.
"""

import logging
from typing import Any, Optional

from .models import (
    BindResult,
    BindOutcome,
    RejectionReason,
    ReferralCode,
    TierStats,
    Transaction,
    TransactionResult,
    User,
    WalletBalance,
)
from .referrals import ReferralGraph
from .service import InsufficientBalance, InvalidAmount, LedgerService
from .settings import Settings, get_settings
from .storage import SnapshotStore


logger = logging.getLogger(__name__)


class LedgerFacade:
    def __init__(self, store: SnapshotStore, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = store
        self.ledger = LedgerService(store)
        self.referrals = ReferralGraph(
            store,
            code_length=self.settings.referral_code_length,
            derive_from_user_id=self.settings.derive_referral_codes,
        )

    def ensure_user(self, user_id: str) -> User:
        return self.ledger.get_or_create_user(user_id)

    def wallet_balance(self, user_id: str) -> WalletBalance:
        wallet = self.ledger.get_wallet(user_id)
        return WalletBalance(balance=wallet.balance, pending=wallet.pending)

    def record_deposit(self, user_id: str, amount: Any) -> TransactionResult:
        try:
            return TransactionResult.accepted(self.ledger.deposit(user_id, amount))
        except InvalidAmount as e:
            return TransactionResult.rejected(RejectionReason.INVALID_AMOUNT, str(e))

    def record_withdrawal(self, user_id: str, amount: Any) -> TransactionResult:
        try:
            return TransactionResult.accepted(self.ledger.withdraw(user_id, amount))
        except InvalidAmount as e:
            return TransactionResult.rejected(RejectionReason.INVALID_AMOUNT, str(e))
        except InsufficientBalance as e:
            return TransactionResult.rejected(RejectionReason.INSUFFICIENT_BALANCE, str(e))

    def recent_transactions(self, user_id: str, limit: Optional[int] = None) -> list[Transaction]:
        if limit is None:
            limit = self.settings.transactions_limit
        return self.ledger.list_transactions(user_id, limit)

    def my_referral_code(self, user_id: str) -> ReferralCode:
        return self.referrals.get_or_create_code(user_id)

    def referral_stats(self, code: str) -> TierStats:
        return self.referrals.tier_stats(code)

    def bind_referral(self, child_user_id: str, code: str) -> BindResult:
        outcome = self.referrals.bind_child(child_user_id, code)
        return BindResult(ok=True, linked=outcome == BindOutcome.LINKED, outcome=outcome)


def build_facade(settings: Optional[Settings] = None) -> LedgerFacade:
    settings = settings or get_settings()
    store = SnapshotStore(
        settings.data_file,
        persist_timeout=settings.persist_timeout,
        persist_retries=settings.persist_retries,
    )
    store.load_or_init()
    logger.info("Ledger store ready at %s", settings.data_file)
    return LedgerFacade(store, settings)
