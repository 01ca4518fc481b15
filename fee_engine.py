from decimal import Decimal
from typing import Iterable, List, Optional

from loguru import logger

from errors import FeeTierConfigurationError
from models import (
    TIER_BASE,
    TIER_CUSTOM,
    TIER_WAIVED,
    Account,
    FeeCalculationResult,
    FeeTier,
)
from money import ZERO, amount_guard, to_decimal
from settings import ReferralSettings, get_settings


DEFAULT_FEE_TIERS = (
    FeeTier(name="BASE", minimum_volume="0", fee_rate="0.01", priority=0,
            description="Base tier for all new users"),
    FeeTier(name="TIER1", minimum_volume="10000", fee_rate="0.008", priority=1,
            description="Bronze tier for active traders"),
    FeeTier(name="TIER2", minimum_volume="50000", fee_rate="0.006", priority=2,
            description="Silver tier for high-volume traders"),
    FeeTier(name="TIER3", minimum_volume="200000", fee_rate="0.005", priority=3,
            description="Gold tier for premium traders"),
    FeeTier(name="VIP", minimum_volume="1000000", fee_rate="0.003", priority=4,
            description="VIP tier for institutional traders"),
)


def _active_by_priority(tiers: Iterable[FeeTier]) -> List[FeeTier]:
    # sorted() is stable, so equal priorities keep catalog order
    return sorted((t for t in tiers if t.is_active), key=lambda t: t.priority, reverse=True)


def find_best_tier(volume: Decimal, tiers: Iterable[FeeTier]) -> Optional[FeeTier]:
    """
    highest-priority active tier whose minimum_volume <= volume.
    this is the first qualifying tier by priority, not the cheapest one.
    """
    for tier in _active_by_priority(tiers):
        if volume >= tier.minimum_volume:
            return tier
    return None


def select_optimal_tier(
    volume,
    tiers: Iterable[FeeTier],
    settings: Optional[ReferralSettings] = None,
) -> FeeTier:
    """
    tier a user with lifetime `volume` belongs in (used for tier upgrades).

    falls back to the tier named settings.fallback_tier_name, then to the
    highest-priority active tier. an empty active catalog is a
    misconfiguration and raises FeeTierConfigurationError.
    """
    settings = settings or get_settings()
    volume = to_decimal(volume, "volume", non_negative=True)

    active = _active_by_priority(tiers)
    if not active:
        raise FeeTierConfigurationError("No active fee tiers configured")

    best = find_best_tier(volume, active)
    if best is not None:
        return best

    for tier in active:
        if tier.name == settings.fallback_tier_name:
            return tier
    return active[0]


def resolve_fee_rate(
    account: Account,
    trade_value,
    active_tiers: Iterable[FeeTier],
    settings: Optional[ReferralSettings] = None,
) -> FeeCalculationResult:
    """
    effective fee for `account` on a trade worth `trade_value` (quote currency).

    priority order:
      1) team members / waived accounts pay nothing
      2) a custom fee rate is used as-is (no discount, no tier)
      3) the cheaper of best tier vs base rate with the signup discount

    fee_amount is always charged at the undiscounted base rate; the
    difference to net_fee_amount is reported as rebate_amount.
    """
    settings = settings or get_settings()
    trade_value = to_decimal(trade_value, "trade_value", non_negative=True)

    # 1) waived
    if account.is_team_member or account.is_waived_fees:
        logger.debug("Fees waived for account {}", account.id)
        return FeeCalculationResult(
            original_fee_rate=ZERO,
            applied_fee_rate=ZERO,
            fee_amount=ZERO,
            net_fee_amount=ZERO,
            rebate_amount=ZERO,
            discount_applied=False,
            tier_used=TIER_WAIVED,
        )

    # 2) custom rate
    if account.custom_fee_rate is not None:
        with amount_guard("trade_value", trade_value):
            fee_amount = trade_value * account.custom_fee_rate
        return FeeCalculationResult(
            original_fee_rate=account.custom_fee_rate,
            applied_fee_rate=account.custom_fee_rate,
            fee_amount=fee_amount,
            net_fee_amount=fee_amount,
            rebate_amount=ZERO,
            discount_applied=False,
            tier_used=TIER_CUSTOM,
        )

    # 3) tier vs discounted base
    base_fee_rate = settings.base_fee_rate
    discounted_base_rate = base_fee_rate * (Decimal("1") - account.fee_discount_rate)
    best_tier = find_best_tier(account.total_trade_volume, active_tiers)

    if best_tier is not None and best_tier.fee_rate < discounted_base_rate:
        applied_fee_rate = best_tier.fee_rate
        tier_used = best_tier.name
        discount_applied = False
    else:
        applied_fee_rate = discounted_base_rate
        tier_used = TIER_BASE
        discount_applied = account.fee_discount_rate > 0

    with amount_guard("trade_value", trade_value):
        fee_amount = trade_value * base_fee_rate
        net_fee_amount = trade_value * applied_fee_rate

    logger.debug(
        "Account {} fee rate {} via {} (base {}, discounted base {})",
        account.id, applied_fee_rate, tier_used, base_fee_rate, discounted_base_rate,
    )

    return FeeCalculationResult(
        original_fee_rate=base_fee_rate,
        applied_fee_rate=applied_fee_rate,
        fee_amount=fee_amount,
        net_fee_amount=net_fee_amount,
        rebate_amount=fee_amount - net_fee_amount,
        discount_applied=discount_applied,
        tier_used=tier_used,
    )
