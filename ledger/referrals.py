import logging
import secrets
import string
from typing import Optional

from .models import BindOutcome, ReferralCode, ReferralLink, TierCounts, TierStats
from .storage import SnapshotStore


logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_TIERS = 3


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class ReferralGraph:
    def __init__(
        self,
        store: Optional[SnapshotStore] = None,
        code_length: int = 6,
        derive_from_user_id: bool = False,
    ):
        self.store = store or SnapshotStore()
        self.code_length = code_length
        self.derive_from_user_id = derive_from_user_id

    def get_or_create_code(self, user_id: str) -> ReferralCode:
        with self.store.locked():
            existing = self.store.referral_codes.get(user_id)
            if existing:
                return existing

            referral = ReferralCode(
                user_id=user_id,
                code=self._new_code(user_id),
                created_at=self.store.now(),
            )
            self.store.add_referral_code(referral)
            logger.info("Issued referral code %s to %s", referral.code, user_id)
            self.store.persist(referral)
            return referral

    def _new_code(self, user_id: str) -> str:
        if self.derive_from_user_id:
            candidate = normalize_code(user_id)[: self.code_length]
            if (
                len(candidate) == self.code_length
                and all(ch in CODE_ALPHABET for ch in candidate)
                and candidate not in self.store.code_owners
            ):
                return candidate
            logger.debug("Derived code for %s unusable; generating a random one", user_id)

        while True:
            candidate = "".join(secrets.choice(CODE_ALPHABET) for _ in range(self.code_length))
            if candidate not in self.store.code_owners:
                return candidate

    def owner_of(self, code: str) -> Optional[str]:
        return self.store.code_owners.get(normalize_code(code))

    def bind_child(self, child_user_id: str, code: str) -> BindOutcome:
        """Link ``child_user_id`` under ``code``; the first successful bind is permanent.

        Unknown codes, self-referral and binds that would close a cycle are
        ignored and reported through the returned outcome.
        """
        code = normalize_code(code)
        with self.store.locked():
            if child_user_id in self.store.ref_links:
                return self._ignored(child_user_id, code, BindOutcome.ALREADY_LINKED)

            owner = self.store.code_owners.get(code)
            if owner is None:
                return self._ignored(child_user_id, code, BindOutcome.UNKNOWN_CODE)
            if owner == child_user_id:
                return self._ignored(child_user_id, code, BindOutcome.SELF_REFERRAL)
            if self._is_ancestor(child_user_id, owner):
                return self._ignored(child_user_id, code, BindOutcome.CYCLE)

            link = ReferralLink(child_user_id=child_user_id, code=code, created_at=self.store.now())
            self.store.add_ref_link(link)
            logger.info("Linked %s under %s (owner %s)", child_user_id, code, owner)
            self.store.persist(link)
            return BindOutcome.LINKED

    def _ignored(self, child_user_id: str, code: str, outcome: BindOutcome) -> BindOutcome:
        logger.debug("Bind of %s to %r ignored: %s", child_user_id, code, outcome.value)
        return outcome

    def _is_ancestor(self, candidate: str, user_id: str) -> bool:
        # Walk parent links upwards from user_id; links form a forest, so this ends.
        seen = set()
        current = user_id
        while current not in seen:
            seen.add(current)
            link = self.store.ref_links.get(current)
            if link is None:
                return False
            parent = self.store.code_owners.get(link.code)
            if parent is None:
                return False
            if parent == candidate:
                return True
            current = parent
        return False

    def tier_stats(self, code: str) -> TierStats:
        code = normalize_code(code)
        with self.store.locked():
            tiers: list[list[str]] = []
            frontier_codes = [code]
            for _ in range(MAX_TIERS):
                members = [
                    child
                    for parent_code in frontier_codes
                    for child in self.store.children_of(parent_code)
                ]
                tiers.append(members)
                frontier_codes = [
                    self.store.referral_codes[member].code
                    for member in members
                    if member in self.store.referral_codes
                ]

        tier1, tier2, tier3 = tiers
        return TierStats(
            code=code,
            tier1=tier1,
            tier2=tier2,
            tier3=tier3,
            counts=TierCounts(t1=len(tier1), t2=len(tier2), t3=len(tier3)),
        )
