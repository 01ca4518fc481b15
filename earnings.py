from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from models import (
    Account,
    Commission,
    COMMISSION_LEVELS,
    CommissionStatus,
    DailyEarnings,
    EarningsBreakdown,
    NetworkValue,
)
from money import ZERO


def as_utc(moment: datetime) -> datetime:
    # naive timestamps are taken to be UTC already
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def filter_by_date(
    commissions: Iterable[Commission],
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> List[Commission]:
    """commissions created within [start_date, end_date]; either bound may be open."""
    start = as_utc(start_date) if start_date is not None else None
    end = as_utc(end_date) if end_date is not None else None

    selected = []
    for commission in commissions:
        created = as_utc(commission.created_at)
        if start is not None and created < start:
            continue
        if end is not None and created > end:
            continue
        selected.append(commission)
    return selected


def earnings_breakdown(
    commissions: Iterable[Commission],
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> EarningsBreakdown:
    """
    aggregate a set of commissions for an earnings report.

    - date filter is inclusive on both ends and applied first
    - claimed = status CLAIMED; unclaimed = everything else
      (PROCESSING and FAILED count as unclaimed)
    - per-level totals always carry levels 1..3, even when zero
    - per-day totals are bucketed on the UTC calendar day, oldest first
    """
    selected = filter_by_date(commissions, start_date, end_date)

    total = ZERO
    claimed = ZERO
    by_level: Dict[int, Decimal] = {level: ZERO for level in COMMISSION_LEVELS}
    by_token: Dict[str, Decimal] = {}
    by_day: Dict[str, Decimal] = {}

    for commission in selected:
        amount = commission.amount
        total += amount

        if commission.status == CommissionStatus.CLAIMED:
            claimed += amount

        if commission.commission_level in by_level:
            by_level[commission.commission_level] += amount

        by_token[commission.token_type] = by_token.get(commission.token_type, ZERO) + amount

        day = as_utc(commission.created_at).date().isoformat()
        by_day[day] = by_day.get(day, ZERO) + amount

    return EarningsBreakdown(
        total_earnings=total,
        claimed_earnings=claimed,
        unclaimed_earnings=total - claimed,
        earnings_by_level=by_level,
        earnings_by_token=by_token,
        earnings_by_period=[
            DailyEarnings(date=day, amount=by_day[day]) for day in sorted(by_day)
        ],
    )


def network_value(network_accounts: Iterable[Account], commissions: Iterable[Commission]) -> NetworkValue:
    """
    size and value of a referral network: total traded volume of its members,
    total commissions they generated, and commissions per unit of volume.
    """
    accounts = list(network_accounts)
    total_volume = sum((a.total_trade_volume for a in accounts), ZERO)
    total_commissions = sum((c.amount for c in commissions), ZERO)

    average_rate = total_commissions / total_volume if total_volume > 0 else ZERO

    return NetworkValue(
        total_volume=total_volume,
        total_commissions=total_commissions,
        average_commission_rate=average_rate,
        network_size=len(accounts),
    )
