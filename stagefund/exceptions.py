"""
StageFund Exceptions

Error taxonomy for the escrow / governance core. Every operation validates
before it mutates, so catching one of these means campaign state is unchanged.
"""


class StageFundError(Exception):
    """Base exception for StageFund."""
    kind = "StageFundError"


class InvalidAmountError(StageFundError):
    """Amount is zero, negative, non-integral or overflows the fixed-point range."""
    kind = "InvalidAmount"


class PhaseViolationError(StageFundError):
    """Operation is not valid in the current campaign or milestone state."""
    kind = "PhaseViolation"


class CapExceededError(StageFundError):
    """Hard cap or a weight pool would be exceeded."""
    kind = "CapExceeded"


class InsufficientWeightError(StageFundError):
    """Vote or delegation exceeds the caller's available weight pool."""
    kind = "InsufficientWeight"


class ScheduleInvariantViolationError(StageFundError):
    """Instalments would not sum to 100%, or the index is not in the future."""
    kind = "ScheduleInvariantViolation"


class UnauthorizedError(StageFundError):
    """Non-owner called an owner-only operation."""
    kind = "Unauthorized"


class TransferFailureError(StageFundError):
    """A payout batch could not be satisfied."""
    kind = "TransferFailure"


class ConfigurationError(StageFundError):
    """Configuration error."""
    kind = "Configuration"
