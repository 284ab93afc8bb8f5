from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Optional
from pydantic import AliasChoices, BaseModel, Field, ConfigDict, PlainSerializer, SerializationInfo
from pydantic.alias_generators import to_camel


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"


class TransactionStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


class RejectionReason(str, Enum):
    INVALID_AMOUNT = "invalid_amount"
    INSUFFICIENT_BALANCE = "insufficient_balance"


EXACT_DECIMALS = "exact_decimals"


def _money_to_json(value: Decimal, info: SerializationInfo):
    # Snapshots keep the exact digits; API responses send plain numbers.
    if info.context and info.context.get(EXACT_DECIMALS):
        return str(value)
    return float(value)


Money = Annotated[Decimal, PlainSerializer(_money_to_json, when_used="json")]


class BindOutcome(str, Enum):
    LINKED = "linked"
    ALREADY_LINKED = "already_linked"
    UNKNOWN_CODE = "unknown_code"
    SELF_REFERRAL = "self_referral"
    CYCLE = "cycle"


class Record(BaseModel):
    """Base for stored records: snake_case in Python, camelCase on disk and on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        frozen=True,
    )


class User(Record):
    id: str
    created_at: datetime


class Wallet(Record):
    model_config = ConfigDict(frozen=False)

    user_id: str
    balance: Money = Decimal("0")
    pending: Money = Decimal("0")


class Transaction(Record):
    id: str
    user_id: str
    type: TransactionType
    amount: Money
    status: TransactionStatus = TransactionStatus.CONFIRMED
    txid: str
    created_at: datetime


class ReferralCode(Record):
    user_id: str
    code: str
    created_at: datetime


class ReferralLink(Record):
    child_user_id: str = Field(
        alias="childUserId",
        validation_alias=AliasChoices("childUserId", "child_user_id", "child"),
    )
    code: str
    created_at: datetime


class Snapshot(Record):
    model_config = ConfigDict(frozen=False)

    users: list[User] = Field(default_factory=list)
    wallets: list[Wallet] = Field(default_factory=list)
    tx: list[Transaction] = Field(default_factory=list)
    referrals: list[ReferralCode] = Field(default_factory=list)
    ref_links: list[ReferralLink] = Field(default_factory=list)


class WalletBalance(Record):
    balance: Money
    pending: Money


class TierCounts(Record):
    t1: int = 0
    t2: int = 0
    t3: int = 0


class TierStats(Record):
    code: str
    tier1: list[str] = Field(default_factory=list)
    tier2: list[str] = Field(default_factory=list)
    tier3: list[str] = Field(default_factory=list)
    counts: TierCounts = Field(default_factory=TierCounts)


class TransactionResult(Record):
    ok: bool
    transaction: Optional[Transaction] = None
    error: Optional[RejectionReason] = None
    message: Optional[str] = None

    @classmethod
    def accepted(cls, transaction: Transaction) -> "TransactionResult":
        return cls(ok=True, transaction=transaction)

    @classmethod
    def rejected(cls, reason: RejectionReason, message: str) -> "TransactionResult":
        return cls(ok=False, error=reason, message=message)


class BindResult(Record):
    ok: bool = True
    linked: bool
    outcome: BindOutcome


class AmountRequest(BaseModel):
    amount: Any = Field(default=None, description="Positive amount; validated by the ledger")

    model_config = ConfigDict(json_schema_extra={"example": {"amount": 100}})


class BindRequest(BaseModel):
    code: Optional[str] = None


class WalletResponse(WalletBalance):
    address: str


class ReferralCodeResponse(Record):
    code: str
    link: str
