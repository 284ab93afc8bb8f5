"""
Snapshot-backed store for users, wallets, transactions and referrals.

All collections live in memory and are written to a single JSON file as a
whole after every mutation. Callers group their read-modify-persist steps
under ``SnapshotStore.locked()``.
"""

import json
import logging
import os
import tempfile
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as WriteTimeout
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from pydantic import ValidationError

from .models import (
    EXACT_DECIMALS,
    User,
    Wallet,
    Transaction,
    ReferralCode,
    ReferralLink,
    Snapshot,
)


logger = logging.getLogger(__name__)

RETRY_BACKOFF_SECONDS = 0.05


class StoreIOError(Exception):
    pass


class NotDurable(StoreIOError):
    """The in-memory mutation succeeded but the snapshot could not be written."""

    def __init__(self, message: str, record: Any = None):
        super().__init__(message)
        self.record = record


class SnapshotStore:
    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        persist_timeout: float = 5.0,
        persist_retries: int = 2,
    ):
        self.path = Path(path) if path is not None else None
        self.persist_timeout = persist_timeout
        self.persist_retries = persist_retries
        self.lock = threading.RLock()
        # One writer thread keeps snapshot writes in submission order.
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="snapshot-writer")
        self._last_timestamp: Optional[datetime] = None
        self.dirty = False
        self._reset()

    def _reset(self) -> None:
        self.users: dict[str, User] = {}
        self.wallets: dict[str, Wallet] = {}
        self.transactions: list[Transaction] = []
        self.transaction_ids: set[str] = set()
        self.txids: set[str] = set()
        self.referral_codes: dict[str, ReferralCode] = {}
        self.code_owners: dict[str, str] = {}
        self.ref_links: dict[str, ReferralLink] = {}
        self.children_by_code: dict[str, list[str]] = defaultdict(list)

    @contextmanager
    def locked(self) -> Iterator["SnapshotStore"]:
        if not self.lock.acquire(timeout=self.persist_timeout):
            raise StoreIOError(f"Store busy for more than {self.persist_timeout}s")
        try:
            yield self
        finally:
            self.lock.release()

    def now(self) -> datetime:
        """UTC timestamp that never goes backwards within this store."""
        current = datetime.now(timezone.utc)
        if self._last_timestamp is not None and current < self._last_timestamp:
            current = self._last_timestamp
        self._last_timestamp = current
        return current

    # -- lifecycle -----------------------------------------------------------

    def load_or_init(self) -> None:
        with self.locked():
            self._reset()
            self.dirty = False
            if self.path is None:
                return

            try:
                raw = self.path.read_text(encoding="utf-8")
            except FileNotFoundError:
                logger.info("No snapshot at %s; starting empty", self.path)
                return
            except (OSError, UnicodeDecodeError) as e:
                raise StoreIOError(f"Cannot read snapshot {self.path}: {e}") from e

            if not raw.strip():
                logger.info("Snapshot %s is empty; starting empty", self.path)
                return

            try:
                snapshot = Snapshot.model_validate(json.loads(raw))
            except (ValueError, ValidationError) as e:
                logger.warning("Snapshot %s is malformed (%s); starting empty", self.path, e)
                self._set_aside_malformed()
                return

            self._apply(snapshot)
            logger.info(
                "Loaded snapshot %s: %d users, %d transactions, %d referral links",
                self.path, len(self.users), len(self.transactions), len(self.ref_links),
            )

    def _set_aside_malformed(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        target = self.path.with_name(f"{self.path.name}.malformed-{stamp}")
        try:
            os.replace(self.path, target)
            logger.warning("Moved malformed snapshot to %s", target)
        except OSError as e:
            logger.warning("Could not move malformed snapshot aside: %s", e)

    def _apply(self, snapshot: Snapshot) -> None:
        for user in snapshot.users:
            self.users[user.id] = user
        for wallet in snapshot.wallets:
            self.wallets[wallet.user_id] = wallet
        for tx in snapshot.tx:
            self.add_transaction(tx)
        for referral in snapshot.referrals:
            self.add_referral_code(referral)
        for link in snapshot.ref_links:
            self.add_ref_link(link)

    def snapshot(self) -> Snapshot:
        return Snapshot(
            users=list(self.users.values()),
            wallets=[w.model_copy() for w in self.wallets.values()],
            tx=list(self.transactions),
            referrals=list(self.referral_codes.values()),
            ref_links=list(self.ref_links.values()),
        )

    def persist(self, record: Any = None) -> None:
        """Write the full snapshot, retrying on I/O failure.

        All attempts together are bounded by ``persist_timeout``. Raises
        NotDurable (carrying ``record``) once retries or time run out; the
        in-memory state is kept and written by the next successful call.
        """
        self.dirty = True
        if self.path is None:
            self.dirty = False
            return

        with self.locked():
            deadline = time.monotonic() + self.persist_timeout
            payload = self.snapshot().model_dump_json(
                by_alias=True, indent=2, context={EXACT_DECIMALS: True}
            )
            last_error: Optional[Exception] = None
            for attempt in range(self.persist_retries + 1):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    self._writer.submit(self._write_atomic, payload).result(timeout=remaining)
                    self.dirty = False
                    return
                except WriteTimeout:
                    last_error = TimeoutError(f"write exceeded {self.persist_timeout}s")
                    logger.error("Persist to %s timed out after %ss", self.path, self.persist_timeout)
                    break
                except OSError as e:
                    last_error = e
                    logger.warning(
                        "Persist attempt %d/%d to %s failed: %s",
                        attempt + 1, self.persist_retries + 1, self.path, e,
                    )
                    if attempt < self.persist_retries:
                        time.sleep(min(RETRY_BACKOFF_SECONDS * (attempt + 1), max(deadline - time.monotonic(), 0)))
            logger.error("Snapshot %s not written; changes kept in memory only", self.path)
            raise NotDurable(f"Cannot write snapshot {self.path}: {last_error}", record) from last_error

    def close(self) -> None:
        self._writer.shutdown(wait=True)

    def _write_atomic(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    # -- primitives ------------------------------------------------------------

    def add_user(self, user: User) -> User:
        self.users[user.id] = user
        return user

    def add_wallet(self, wallet: Wallet) -> Wallet:
        self.wallets[wallet.user_id] = wallet
        return wallet

    def add_transaction(self, tx: Transaction) -> Transaction:
        self.transactions.append(tx)
        self.transaction_ids.add(tx.id)
        self.txids.add(tx.txid)
        return tx

    def add_referral_code(self, referral: ReferralCode) -> ReferralCode:
        self.referral_codes[referral.user_id] = referral
        self.code_owners[referral.code] = referral.user_id
        return referral

    def add_ref_link(self, link: ReferralLink) -> ReferralLink:
        self.ref_links[link.child_user_id] = link
        self.children_by_code[link.code].append(link.child_user_id)
        return link

    def children_of(self, code: str) -> list[str]:
        return list(self.children_by_code.get(code, ()))
