import logging
import math
import secrets
from decimal import Decimal, Inexact, InvalidOperation, localcontext
from typing import Any, Optional
from uuid import uuid4

from .models import (
    TransactionType,
    TransactionStatus,
    User,
    Wallet,
    Transaction,
)
from .storage import SnapshotStore


logger = logging.getLogger(__name__)

TXID_PREFIX = "TX-"
TXID_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
TXID_LENGTH = 10

MAX_AMOUNT_PLACES = 8
MAX_AMOUNT = Decimal("1e15")
BALANCE_PRECISION = 34


class LedgerServiceError(Exception):
    pass


class InvalidAmount(LedgerServiceError):
    pass


class InsufficientBalance(LedgerServiceError):
    pass


class IdentifierCollision(LedgerServiceError):
    """Generated transaction identifiers clashed; a bug, never a user error."""


def parse_amount(amount: Any) -> Decimal:
    if amount is None or isinstance(amount, bool):
        raise InvalidAmount(f"Invalid amount: {amount!r}")
    if isinstance(amount, float):
        if not math.isfinite(amount):
            raise InvalidAmount(f"Invalid amount: {amount!r}")
        amount = repr(amount)
    try:
        value = Decimal(str(amount).strip()) if not isinstance(amount, Decimal) else amount
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Invalid amount: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise InvalidAmount(f"Amount must be a finite positive number, got {amount!r}")
    if value.normalize().as_tuple().exponent < -MAX_AMOUNT_PLACES:
        raise InvalidAmount(f"Amount has more than {MAX_AMOUNT_PLACES} decimal places: {amount!r}")
    if value > MAX_AMOUNT:
        raise InvalidAmount(f"Amount exceeds {MAX_AMOUNT:f}: {amount!r}")
    return value


def exact_sum(balance: Decimal, delta: Decimal) -> Decimal:
    """balance + delta, or InvalidAmount if the result cannot be held exactly."""
    with localcontext() as ctx:
        ctx.prec = BALANCE_PRECISION
        ctx.traps[Inexact] = True
        try:
            return balance + delta
        except Inexact:
            raise InvalidAmount(f"Balance {balance} cannot absorb {delta} exactly")


class LedgerService:
    def __init__(self, store: Optional[SnapshotStore] = None):
        self.store = store or SnapshotStore()

    def get_or_create_user(self, user_id: str) -> User:
        with self.store.locked():
            user = self.store.users.get(user_id)
            if user:
                if user_id not in self.store.wallets:
                    self.store.add_wallet(Wallet(user_id=user_id))
                    self.store.persist(user)
                return user

            user = self.store.add_user(User(id=user_id, created_at=self.store.now()))
            self.store.add_wallet(Wallet(user_id=user_id))
            logger.info("Created user %s", user_id)
            self.store.persist(user)
            return user

    def get_wallet(self, user_id: str) -> Wallet:
        with self.store.locked():
            wallet = self.store.wallets.get(user_id)
            if wallet is None:
                wallet = self.store.add_wallet(Wallet(user_id=user_id))
                self.store.persist(wallet)
            return wallet.model_copy()

    def deposit(self, user_id: str, amount: Any) -> Transaction:
        value = parse_amount(amount)
        with self.store.locked():
            wallet = self._wallet_for_update(user_id)
            new_balance = exact_sum(wallet.balance, value)
            tx = self._record(user_id, TransactionType.DEPOSIT, value)
            wallet.balance = new_balance
            logger.info("Deposit %s for %s (%s), balance %s", value, user_id, tx.txid, wallet.balance)
            self.store.persist(tx)
            return tx

    def withdraw(self, user_id: str, amount: Any) -> Transaction:
        value = parse_amount(amount)
        with self.store.locked():
            wallet = self._wallet_for_update(user_id)
            if value > wallet.balance:
                raise InsufficientBalance(
                    f"Cannot withdraw {value}: balance is {wallet.balance}"
                )
            new_balance = exact_sum(wallet.balance, -value)
            tx = self._record(user_id, TransactionType.WITHDRAW, value)
            wallet.balance = new_balance
            logger.info("Withdrawal %s for %s (%s), balance %s", value, user_id, tx.txid, wallet.balance)
            self.store.persist(tx)
            return tx

    def list_transactions(self, user_id: str, limit: int = 50) -> list[Transaction]:
        if limit <= 0:
            return []
        with self.store.locked():
            indexed = [
                (tx.created_at, position, tx)
                for position, tx in enumerate(self.store.transactions)
                if tx.user_id == user_id
            ]
        indexed.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [tx for _, _, tx in indexed[:limit]]

    def _wallet_for_update(self, user_id: str) -> Wallet:
        wallet = self.store.wallets.get(user_id)
        if wallet is None:
            wallet = self.store.add_wallet(Wallet(user_id=user_id))
        return wallet

    def _record(
        self,
        user_id: str,
        entry_type: TransactionType,
        amount: Decimal,
        status: TransactionStatus = TransactionStatus.CONFIRMED,
    ) -> Transaction:
        tx_id = uuid4().hex
        txid = TXID_PREFIX + "".join(secrets.choice(TXID_ALPHABET) for _ in range(TXID_LENGTH))
        if tx_id in self.store.transaction_ids or txid in self.store.txids:
            raise IdentifierCollision(f"Generated identifier already in use: {tx_id} / {txid}")

        tx = Transaction(
            id=tx_id,
            user_id=user_id,
            type=entry_type,
            amount=amount,
            status=status,
            txid=txid,
            created_at=self.store.now(),
        )
        return self.store.add_transaction(tx)
