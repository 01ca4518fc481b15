from decimal import Decimal
from typing import List, Optional, Sequence

from loguru import logger

from models import (
    COMMISSION_LEVELS,
    Account,
    CommissionDistribution,
    CommissionStructureType,
    CustomCommissionStructure,
    FeeCalculationResult,
    Trade,
)
from settings import ReferralSettings, get_settings


# preset structures for KOL (key opinion leader) accounts
CUSTOM_COMMISSION_STRUCTURES = {
    "KOL_50": CustomCommissionStructure(
        level1_rate="0.50",
        level2_rate="0.03",
        level3_rate="0.02",
        type=CommissionStructureType.KOL_50,
        description="Key Opinion Leader with 50% direct commission",
    ),
    "KOL_CUSTOM_HIGH": CustomCommissionStructure(
        level1_rate="0.40",
        level2_rate="0.05",
        level3_rate="0.03",
        type=CommissionStructureType.KOL_CUSTOM,
        description="High-tier KOL with enhanced multi-level commissions",
    ),
    "KOL_CUSTOM_BALANCED": CustomCommissionStructure(
        level1_rate="0.35",
        level2_rate="0.04",
        level3_rate="0.025",
        type=CommissionStructureType.KOL_CUSTOM,
        description="Balanced KOL structure with good multi-level incentives",
    ),
}


def commission_rate(referrer: Account, level: int, settings: ReferralSettings) -> Decimal:
    """
    rate `referrer` earns at `level`: their custom override for that level
    if they have one, else the standard configured rate (0 beyond level 3).
    """
    structure = referrer.custom_commission_structure
    if structure is not None:
        override = structure.rate_override(level)
        if override is not None:
            return override
    return settings.standard_rate(level)


def distribute_commissions(
    trade: Optional[Trade],
    trader: Account,
    referral_chain: Sequence[Account],
    fee_result: FeeCalculationResult,
    settings: Optional[ReferralSettings] = None,
) -> List[CommissionDistribution]:
    """
    split a trade's net fee across the trader's upline.

    referral_chain is nearest-first: [direct referrer, their referrer, ...]
    and must already be validated (no cycles, depth within limits).

    rules:
      - nothing is shared when the net fee is zero
      - team members in the chain earn nothing; their position is skipped
        and the levels after them keep their own position number
      - only levels 1..3 earn, however deep the chain or max_referral_depth;
        a level whose rate is zero produces nothing
      - amounts below minimum_commission_amount are dropped

    commission_id is left unset on every distribution; the caller fills it
    in once the Commission rows are stored.
    """
    settings = settings or get_settings()
    distributions: List[CommissionDistribution] = []
    net_fee_amount = fee_result.net_fee_amount

    if net_fee_amount <= 0:
        return distributions

    depth = min(len(referral_chain), settings.max_referral_depth, len(COMMISSION_LEVELS))
    for level in range(1, depth + 1):
        referrer = referral_chain[level - 1]

        if referrer.is_team_member:
            logger.debug("Skipping team member {} at level {}", referrer.id, level)
            continue

        rate = commission_rate(referrer, level, settings)
        if rate <= 0:
            continue

        amount = net_fee_amount * rate

        if amount < settings.minimum_commission_amount:
            logger.debug(
                "Dropping level {} commission {} for {} (below minimum {})",
                level, amount, referrer.id, settings.minimum_commission_amount,
            )
            continue

        distributions.append(
            CommissionDistribution(
                level=level,
                earner_id=referrer.id,
                earner_email=referrer.email,
                amount=amount,
                rate=rate,
            )
        )

    logger.debug(
        "Trade {} by {}: {} commission(s) from net fee {}",
        trade.id if trade is not None else None, trader.id, len(distributions), net_fee_amount,
    )
    return distributions
