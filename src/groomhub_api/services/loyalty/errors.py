"""Failure taxonomy for loyalty accounting operations."""

from __future__ import annotations

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError


class LoyaltyAccountingError(RuntimeError):
    """Base exception: the accounting operation failed and nothing was recorded."""

    kind = "accounting"


class LoyaltyConfigurationError(LoyaltyAccountingError):
    """Raised for invalid or missing program settings. Not retryable."""

    kind = "configuration"


class LoyaltyConcurrencyError(LoyaltyAccountingError):
    """Raised on lock timeout, deadlock, or an aborted transaction."""

    kind = "concurrency"


class LoyaltyReferenceError(LoyaltyAccountingError):
    """Raised when a referenced customer or account does not exist."""

    kind = "reference"


class RedemptionNotAllowedError(LoyaltyAccountingError):
    """Raised when a reward cannot be redeemed for the requested service."""

    kind = "redemption"

    def __init__(self, reason: str, *, available_rewards: int = 0) -> None:
        super().__init__(reason)
        self.reason = reason
        self.available_rewards = available_rewards


class ReferralError(LoyaltyAccountingError):
    """Raised when a referral code cannot be issued, applied, or completed."""

    kind = "referral"


# SQLSTATE codes that mean "try again later" rather than "bad input".
_RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03", "57014"}
_FOREIGN_KEY_VIOLATION = "23503"


def translate_database_error(exc: Exception) -> LoyaltyAccountingError:
    """Map a failure inside an accounting transaction onto the taxonomy."""

    if isinstance(exc, LoyaltyAccountingError):
        return exc
    if not isinstance(exc, DBAPIError):
        return LoyaltyAccountingError(f"Loyalty accounting failed: {exc}")

    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if sqlstate in _RETRYABLE_SQLSTATES or exc.connection_invalidated:
        return LoyaltyConcurrencyError(f"Loyalty transaction aborted: {exc.orig}")
    if isinstance(exc, IntegrityError):
        if sqlstate == _FOREIGN_KEY_VIOLATION or "FOREIGN KEY" in str(exc.orig).upper():
            return LoyaltyReferenceError(f"Referenced record does not exist: {exc.orig}")
        return LoyaltyAccountingError(f"Loyalty ledger constraint violated: {exc.orig}")
    if isinstance(exc, OperationalError):
        return LoyaltyConcurrencyError(f"Loyalty transaction aborted: {exc.orig}")
    return LoyaltyAccountingError(f"Loyalty accounting failed: {exc.orig}")


__all__ = [
    "LoyaltyAccountingError",
    "LoyaltyConcurrencyError",
    "LoyaltyConfigurationError",
    "LoyaltyReferenceError",
    "RedemptionNotAllowedError",
    "ReferralError",
    "translate_database_error",
]
