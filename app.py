from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

from commission_engine import distribute_commissions
from earnings import as_utc, earnings_breakdown, network_value
from errors import InvalidDecimalError
from fee_engine import DEFAULT_FEE_TIERS, resolve_fee_rate, select_optimal_tier
from logging_config import setup_logging
from models import Account, Commission, FeeTier
from referral_engine import get_referral_network, is_chain_valid, is_valid_referral_code
from settings import get_settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(get_settings().log_level)
    yield


app = FastAPI(title="Nika Referral Commission Engine", version="0.2.0", lifespan=lifespan)

# CORS middleware to allow frontend to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------
# pydantic models (requests)
# ---------

class FeeCalculationRequest(BaseModel):
    account: Account
    trade_value: str = Field(..., description="Trade value in quote currency, as a decimal string")
    fee_tiers: Optional[List[FeeTier]] = Field(None, description="Tier catalog; defaults to the built-in tiers")


class OptimalTierRequest(BaseModel):
    volume: str = Field(..., description="Lifetime trade volume, as a decimal string")
    fee_tiers: Optional[List[FeeTier]] = None


class CommissionDistributionRequest(BaseModel):
    trader: Account
    referral_chain: List[Account] = Field(..., description="Upline, nearest referrer first")
    trade_value: str
    fee_tiers: Optional[List[FeeTier]] = None


class ChainValidationRequest(BaseModel):
    candidate_user_id: str
    chain: List[str] = Field(..., description="Upline ids, nearest referrer first")


class EarningsRequest(BaseModel):
    commissions: List[Commission]
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class NetworkValueRequest(BaseModel):
    network: List[Account]
    commissions: List[Commission]


class ReferralCodeRequest(BaseModel):
    code: str


class ReferralNetworkRequest(BaseModel):
    user_id: str
    accounts: List[Account] = Field(..., description="Network members; referrer_id links each to its parent")
    commissions: List[Commission] = Field(default_factory=list)
    max_levels: int = Field(3, ge=1, le=3)


# ---------
# helpers
# ---------

def _tiers(fee_tiers: Optional[List[FeeTier]]):
    return DEFAULT_FEE_TIERS if fee_tiers is None else fee_tiers


def _bad_decimal(e: InvalidDecimalError) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"message": str(e), "field": e.field, "value": str(e.value)},
    )


# ---------
# endpoints
# ---------

@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/api/fees/calculate")
def fees_calculate(payload: FeeCalculationRequest):
    """
    effective fee rate and fee amounts for one trade.
    """
    try:
        result = resolve_fee_rate(payload.account, payload.trade_value, _tiers(payload.fee_tiers), get_settings())
    except InvalidDecimalError as e:
        raise _bad_decimal(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception("Fee calculation failed")
        raise HTTPException(status_code=500, detail="Internal server error")

    return result.model_dump(mode="json")


@app.post("/api/fees/optimal-tier")
def fees_optimal_tier(payload: OptimalTierRequest):
    """
    tier a user qualifies for with the given lifetime volume.
    """
    try:
        tier = select_optimal_tier(payload.volume, _tiers(payload.fee_tiers), get_settings())
    except InvalidDecimalError as e:
        raise _bad_decimal(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception("Tier selection failed")
        raise HTTPException(status_code=500, detail="Internal server error")

    return tier.model_dump(mode="json")


@app.post("/api/commissions/distribute")
def commissions_distribute(payload: CommissionDistributionRequest):
    """
    price the trader's fee and split it across their referral chain.
    the chain is validated first; an invalid chain is a 400.
    """
    settings = get_settings()

    if not is_chain_valid(payload.trader.id, payload.referral_chain, settings):
        raise HTTPException(status_code=400, detail="Invalid referral chain")

    try:
        fee = resolve_fee_rate(payload.trader, payload.trade_value, _tiers(payload.fee_tiers), settings)
        distributions = distribute_commissions(None, payload.trader, payload.referral_chain, fee, settings)
    except InvalidDecimalError as e:
        raise _bad_decimal(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception("Commission distribution failed")
        raise HTTPException(status_code=500, detail="Internal server error")

    return {
        "fee": fee.model_dump(mode="json"),
        "distributions": [d.model_dump(mode="json") for d in distributions],
    }


@app.post("/api/referral/validate-chain")
def referral_validate_chain(payload: ChainValidationRequest):
    valid = is_chain_valid(payload.candidate_user_id, payload.chain, get_settings())
    return {"candidate_user_id": payload.candidate_user_id, "valid": valid}


@app.post("/api/referral/earnings")
def referral_earnings(payload: EarningsRequest):
    """
    earnings breakdown over the supplied commissions.
    `start_date` / `end_date` are both inclusive.
    """
    if payload.start_date and payload.end_date and as_utc(payload.start_date) > as_utc(payload.end_date):
        raise HTTPException(status_code=400, detail="Invalid date range provided")

    breakdown = earnings_breakdown(payload.commissions, payload.start_date, payload.end_date)
    return breakdown.model_dump(mode="json")


@app.post("/api/referral/network-value")
def referral_network_value(payload: NetworkValueRequest):
    return network_value(payload.network, payload.commissions).model_dump(mode="json")


@app.post("/api/referral/validate-code")
def referral_validate_code(payload: ReferralCodeRequest):
    return {"code": payload.code, "valid": is_valid_referral_code(payload.code, get_settings())}


@app.post("/api/referral/network")
def referral_network(payload: ReferralNetworkRequest):
    """
    downline tree for `user_id`, built from the referrer_id links
    on the supplied accounts.
    """
    accounts = {a.id: a for a in payload.accounts}
    ref = {a.id: a.referrer_id for a in payload.accounts if a.referrer_id}

    try:
        tree = get_referral_network(payload.user_id, ref, accounts, payload.commissions, payload.max_levels)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return tree.model_dump(mode="json")
