"""
Referral engine settings.

Loaded from REFERRAL_* environment variables (or a local .env) with
pydantic-settings. The settings object is frozen and is handed to every
engine call explicitly, so tests can run the engines under any config.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from errors import InvalidDecimalError
from money import to_decimal


class ReferralSettings(BaseSettings):
    """Fee and commission configuration."""

    model_config = SettingsConfigDict(
        env_prefix="REFERRAL_",
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    # fees
    base_fee_rate: Decimal = Decimal("0.01")
    default_fee_discount_rate: Decimal = Decimal("0.10")
    fallback_tier_name: str = "BASE"

    # commissions per referral level
    level1_rate: Decimal = Decimal("0.30")
    level2_rate: Decimal = Decimal("0.03")
    level3_rate: Decimal = Decimal("0.02")

    # referral codes: prefix + random A-Z0-9, `referral_code_length` long in total
    referral_code_prefix: str = "NIKA"
    referral_code_length: int = Field(8, ge=1)

    # business rules
    max_referral_depth: int = Field(3, ge=1)
    minimum_commission_amount: Decimal = Decimal("0.01")
    minimum_trade_volume: Decimal = Decimal("10")
    default_token: str = "USDC"

    log_level: str = "INFO"

    @field_validator(
        "base_fee_rate",
        "default_fee_discount_rate",
        "level1_rate",
        "level2_rate",
        "level3_rate",
        "minimum_commission_amount",
        "minimum_trade_volume",
        mode="before",
    )
    @classmethod
    def exact_decimal(cls, value, info):
        return to_decimal(value, info.field_name, non_negative=True)

    @field_validator("default_fee_discount_rate")
    @classmethod
    def discount_is_fraction(cls, value):
        if value > 1:
            raise InvalidDecimalError("default_fee_discount_rate", value, "must be between 0 and 1")
        return value

    @model_validator(mode="after")
    def prefix_fits_code(self):
        if len(self.referral_code_prefix) >= self.referral_code_length:
            raise ValueError("referral_code_prefix must be shorter than referral_code_length")
        return self

    def standard_rate(self, level: int) -> Decimal:
        """standard commission rate for a referral level; 0 outside 1..3."""
        if level == 1:
            return self.level1_rate
        if level == 2:
            return self.level2_rate
        if level == 3:
            return self.level3_rate
        return Decimal("0")


@lru_cache
def get_settings() -> ReferralSettings:
    return ReferralSettings()
