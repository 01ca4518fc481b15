import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from loguru import logger

from commission_engine import distribute_commissions
from errors import TradeRejectedError
from fee_engine import resolve_fee_rate, select_optimal_tier
from models import Account, Commission, CommissionStatus, FeeTier, Trade, TradeStatus
from money import amount_guard, to_decimal
from referral_engine import get_referral_chain
from settings import ReferralSettings, get_settings


def handle_trade(
    event: Dict[str, Any],
    accounts: Dict[str, Account],
    ref: Dict[str, Optional[str]],
    fee_tiers: Iterable[FeeTier],
    processed_trades: Set[Tuple[str, str]],
    trades: List[Trade],
    commissions: List[Commission],
    settings: Optional[ReferralSettings] = None,
) -> Dict[str, Any]:
    """
    process a single trade event:
      - bring in idempotency
      - price the fee for the trader
      - resolve the referral chain
      - distribute commissions up the chain
      - record trade + commissions, update the trader's counters

    parameters
    ----------
    event : dict  we get this via request
        {
            "trade_id": str,
            "trader_id": str,
            "chain": str,           # e.g. "EVM"
            "network": str,         # e.g. "Arbitrum"
            "base_asset": str,
            "quote_asset": str,
            "side": str,
            "volume": Decimal | str,
            "price": Decimal | str,
            "token": str,           # optional, defaults to settings.default_token
            "trade_type": str,      # optional, defaults to "SPOT"
            "transaction_hash": str,  # optional
            "executed_at": datetime,  # optional
        }

    accounts : dict
        user_id -> Account snapshot. the trader's entry is replaced with
        updated volume / fees-paid counters.

    ref : dict
        mapping child_id -> parent_id (referral graph in memory)

    processed_trades : set
        set of (trade_id, chain) tuples for idempotency.

    trades, commissions : list
        append-only stores for the produced records.

    nothing is written until every calculation has succeeded, so a
    rejected trade leaves all the stores untouched.

    returns
    -------
    dict
        {
            "status": "applied" | "duplicate",
            "trade_id": str,
            "fee": FeeCalculationResult or None for duplicates,
            "commissions_distributed": [CommissionDistribution] or None for duplicates,
        }
    """
    settings = settings or get_settings()
    key = (event["trade_id"], event["chain"])

    # 1) idempotency check
    if key in processed_trades:
        logger.info("Duplicate trade {} on {}", *key)
        return {
            "status": "duplicate",
            "trade_id": event["trade_id"],
            "fee": None,
            "commissions_distributed": None,
        }

    trader_id = event["trader_id"]
    trader = accounts.get(trader_id)
    if trader is None:
        raise TradeRejectedError(f"User {trader_id} not found")

    # 2) validate amounts
    volume = to_decimal(event["volume"], "volume", non_negative=True)
    price = to_decimal(event["price"], "price", non_negative=True)
    if volume < settings.minimum_trade_volume:
        raise TradeRejectedError(
            f"Trade volume {volume} below minimum {settings.minimum_trade_volume}"
        )

    token = event.get("token") or settings.default_token
    executed_at = event.get("executed_at") or datetime.now(timezone.utc)

    trade = Trade(
        id=event["trade_id"],
        user_id=trader_id,
        trade_type=event.get("trade_type", "SPOT"),
        base_asset=event["base_asset"],
        quote_asset=event["quote_asset"],
        side=event["side"],
        volume=volume,
        price=price,
        chain=event["chain"],
        network=event["network"],
        transaction_hash=event.get("transaction_hash"),
        created_at=executed_at,
    )
    with amount_guard("trade_value", f"{volume} * {price}"):
        trade_value = trade.value
        new_total_volume = trader.total_trade_volume + trade_value

    # 3) fee for this trader, then settle the trade with it
    fee = resolve_fee_rate(trader, trade_value, fee_tiers, settings)
    trade = trade.model_copy(
        update={
            "fee_rate": fee.applied_fee_rate,
            "fee_amount": fee.fee_amount,
            "net_fee_amount": fee.net_fee_amount,
            "rebate_amount": fee.rebate_amount,
            "status": TradeStatus.COMPLETED,
            "settled_at": executed_at,
        }
    )

    # 4) chain [L1, L2, L3] -> distributions
    chain = get_referral_chain(trader_id, ref, accounts, settings.max_referral_depth)
    distributions = distribute_commissions(trade, trader, chain, fee, settings)

    # 5) commission rows, then write their ids back onto the distributions
    new_commissions = []
    for distribution in distributions:
        commission = Commission(
            id=str(uuid.uuid4()),
            amount=distribution.amount,
            token_type=token,
            commission_level=distribution.level,
            rate=distribution.rate,
            earner_id=distribution.earner_id,
            source_user_id=trader_id,
            trade_id=trade.id,
            original_fee_amount=fee.fee_amount,
            status=CommissionStatus.UNCLAIMED,
            created_at=executed_at,
        )
        new_commissions.append(commission)
        distribution.commission_id = commission.id

    # 6) apply everything together
    processed_trades.add(key)
    trades.append(trade)
    commissions.extend(new_commissions)
    accounts[trader_id] = trader.model_copy(
        update={
            "total_trade_volume": new_total_volume,
            "total_fees_paid": trader.total_fees_paid + fee.net_fee_amount,
        }
    )

    logger.info(
        "Applied trade {} for {}: value {}, net fee {} ({}), {} commission(s)",
        trade.id, trader_id, trade_value, fee.net_fee_amount, fee.tier_used, len(distributions),
    )

    return {
        "status": "applied",
        "trade_id": trade.id,
        "fee": fee,
        "commissions_distributed": distributions,
    }


def reevaluate_fee_tier(
    user_id: str,
    accounts: Dict[str, Account],
    fee_tiers: Iterable[FeeTier],
    settings: Optional[ReferralSettings] = None,
) -> Dict[str, Any]:
    """
    move a user onto the tier their lifetime volume qualifies for.
    returns {"old_tier", "new_tier", "updated"}.
    """
    account = accounts.get(user_id)
    if account is None:
        raise TradeRejectedError(f"User {user_id} not found")

    optimal = select_optimal_tier(account.total_trade_volume, fee_tiers, settings)

    if optimal.name == account.fee_tier:
        return {"old_tier": account.fee_tier, "new_tier": account.fee_tier, "updated": False}

    accounts[user_id] = account.model_copy(update={"fee_tier": optimal.name})
    logger.info("User {} moved from tier {} to {}", user_id, account.fee_tier, optimal.name)
    return {"old_tier": account.fee_tier, "new_tier": optimal.name, "updated": True}
