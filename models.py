from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from errors import InvalidDecimalError
from money import to_decimal


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------
# enums
# ---------

class CommissionStatus(str, Enum):
    UNCLAIMED = "UNCLAIMED"
    CLAIMED = "CLAIMED"
    PROCESSING = "PROCESSING"
    FAILED = "FAILED"


class TradeStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class CommissionStructureType(str, Enum):
    STANDARD = "STANDARD"
    KOL_50 = "KOL_50"
    KOL_CUSTOM = "KOL_CUSTOM"


# tier labels that are not catalog tier names
TIER_WAIVED = "WAIVED"
TIER_CUSTOM = "CUSTOM"
TIER_BASE = "BASE"

# referral levels that can earn a commission
COMMISSION_LEVELS = (1, 2, 3)


class _Snapshot(BaseModel):
    """
    immutable value object. subclasses run their decimal fields through
    to_decimal so floats/strings become exact decimals and NaN/inf/garbage
    fail with the field name attached.
    """

    model_config = ConfigDict(frozen=True)


def _coerce(cls, value, info):
    if value is None:
        return None
    return to_decimal(value, info.field_name, non_negative=True)


# ---------
# inputs
# ---------

class CustomCommissionStructure(_Snapshot):
    level1_rate: Optional[Decimal] = None
    level2_rate: Optional[Decimal] = None
    level3_rate: Optional[Decimal] = None
    type: CommissionStructureType = CommissionStructureType.STANDARD
    description: Optional[str] = None

    coerce_decimals = field_validator("level1_rate", "level2_rate", "level3_rate", mode="before")(_coerce)

    def rate_override(self, level: int) -> Optional[Decimal]:
        """the override for `level`, or None when the standard rate applies."""
        return {1: self.level1_rate, 2: self.level2_rate, 3: self.level3_rate}.get(level)


class Account(_Snapshot):
    """fee-related subset of a user account."""

    id: str
    email: Optional[str] = None
    username: Optional[str] = None
    referral_code: Optional[str] = None
    referrer_id: Optional[str] = None
    fee_tier: str = TIER_BASE
    custom_fee_rate: Optional[Decimal] = None
    fee_discount_rate: Decimal = Decimal("0")
    custom_commission_structure: Optional[CustomCommissionStructure] = None
    is_team_member: bool = False
    is_waived_fees: bool = False
    total_trade_volume: Decimal = Decimal("0")
    total_fees_paid: Decimal = Decimal("0")

    coerce_decimals = field_validator(
        "custom_fee_rate",
        "fee_discount_rate",
        "total_trade_volume",
        "total_fees_paid",
        mode="before",
    )(_coerce)

    @field_validator("fee_discount_rate")
    @classmethod
    def discount_is_fraction(cls, value):
        if value > 1:
            raise InvalidDecimalError("fee_discount_rate", value, "must be between 0 and 1")
        return value


class FeeTier(_Snapshot):
    id: Optional[str] = None
    name: str
    minimum_volume: Decimal
    fee_rate: Decimal
    priority: int = 0
    is_active: bool = True
    description: Optional[str] = None

    coerce_decimals = field_validator("minimum_volume", "fee_rate", mode="before")(_coerce)


class Trade(_Snapshot):
    id: Optional[str] = None
    user_id: str
    trade_type: str = "SPOT"
    base_asset: str
    quote_asset: str
    side: str
    volume: Decimal
    price: Decimal
    fee_rate: Decimal = Decimal("0")
    fee_amount: Decimal = Decimal("0")
    net_fee_amount: Decimal = Decimal("0")
    rebate_amount: Decimal = Decimal("0")
    chain: str
    network: str
    transaction_hash: Optional[str] = None
    status: TradeStatus = TradeStatus.PENDING
    settled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)

    coerce_decimals = field_validator(
        "volume",
        "price",
        "fee_rate",
        "fee_amount",
        "net_fee_amount",
        "rebate_amount",
        mode="before",
    )(_coerce)

    @property
    def value(self) -> Decimal:
        """trade value in the quote currency."""
        return self.volume * self.price


class Commission(_Snapshot):
    id: Optional[str] = None
    amount: Decimal
    token_type: str = "USDC"
    commission_level: int = Field(..., ge=1, le=len(COMMISSION_LEVELS))
    rate: Decimal
    earner_id: str
    source_user_id: str
    trade_id: Optional[str] = None
    original_fee_amount: Decimal = Decimal("0")
    status: CommissionStatus = CommissionStatus.UNCLAIMED
    claimed_at: Optional[datetime] = None
    claim_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    coerce_decimals = field_validator("amount", "rate", "original_fee_amount", mode="before")(_coerce)


# ---------
# results
# ---------

class FeeCalculationResult(_Snapshot):
    original_fee_rate: Decimal
    applied_fee_rate: Decimal
    fee_amount: Decimal
    net_fee_amount: Decimal
    rebate_amount: Decimal
    discount_applied: bool
    tier_used: str

    coerce_decimals = field_validator(
        "original_fee_rate",
        "applied_fee_rate",
        "fee_amount",
        "net_fee_amount",
        "rebate_amount",
        mode="before",
    )(_coerce)


class CommissionDistribution(BaseModel):
    """
    one level's share of a trade fee.
    commission_id stays None until the caller has stored the Commission
    row and writes the generated id back.
    """

    model_config = ConfigDict(validate_assignment=True)

    level: int
    earner_id: str
    earner_email: Optional[str] = None
    amount: Decimal
    rate: Decimal
    commission_id: Optional[str] = None


class DailyEarnings(_Snapshot):
    date: str  # YYYY-MM-DD, UTC
    amount: Decimal


class EarningsBreakdown(_Snapshot):
    total_earnings: Decimal
    claimed_earnings: Decimal
    unclaimed_earnings: Decimal
    earnings_by_level: Dict[int, Decimal]
    earnings_by_token: Dict[str, Decimal]
    earnings_by_period: List[DailyEarnings]


class NetworkValue(_Snapshot):
    total_volume: Decimal
    total_commissions: Decimal
    average_commission_rate: Decimal
    network_size: int


class ReferralNetworkNode(_Snapshot):
    """
    one member of a downline tree. the root user sits at level 0,
    their direct referrals at level 1 and so on.
    """

    user_id: str
    email: Optional[str] = None
    username: Optional[str] = None
    level: int = Field(..., ge=0)
    total_trade_volume: Decimal = Decimal("0")
    total_commissions: Decimal = Decimal("0")
    children: List["ReferralNetworkNode"] = Field(default_factory=list)

    coerce_decimals = field_validator("total_trade_volume", "total_commissions", mode="before")(_coerce)

    @property
    def network_size(self) -> int:
        """members below this node."""
        return sum(1 + child.network_size for child in self.children)
