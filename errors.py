from typing import Any


class ReferralError(Exception):
    """base class for everything the referral engine raises on purpose."""


class InvalidDecimalError(ReferralError, ValueError):
    """
    a rate, amount or volume that is not a finite, valid decimal.
    keeps the offending field name and the raw value for the caller.
    """

    def __init__(self, field: str, value: Any, reason: str = "not a finite decimal"):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid decimal value for {field}: {value!r} ({reason})")


class FeeTierConfigurationError(ReferralError, RuntimeError):
    """fee tier catalog has no active tier to fall back on."""


class ReferralRegistrationError(ReferralError, ValueError):
    pass


class TradeRejectedError(ReferralError, ValueError):
    pass


class ReferralCodeGenerationError(ReferralError, RuntimeError):
    """no unused referral code found within the retry budget."""
