from decimal import Decimal
from typing import Optional


class BalanceEngineError(Exception):
    pass


class ValidationError(BalanceEngineError):
    pass


class BelowMinimum(BalanceEngineError):
    def __init__(self, amount: Decimal, minimum: Decimal, currency: str = "NPR"):
        self.amount = amount
        self.minimum = minimum
        super().__init__(f"Minimum withdrawal amount is {currency} {minimum}")


class InsufficientBalance(BalanceEngineError):
    def __init__(self, requested: Decimal, available: Decimal):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient available balance: requested {requested}, available {available}"
        )


class KycNotApproved(BalanceEngineError):
    def __init__(self, status: Optional[str] = None):
        self.status = status
        if status is None:
            message = "KYC verification is required for withdrawals"
        else:
            message = (
                f"Your KYC verification is {status}. "
                "Approved KYC is required for withdrawals."
            )
        super().__init__(message)


class DuplicateOperation(BalanceEngineError):
    """Raised when an idempotency guard finds the operation already applied."""


class InvalidState(BalanceEngineError):
    pass


class WithdrawalNotFound(BalanceEngineError):
    pass


class ReferrerMissing(BalanceEngineError):
    pass


class PersistenceConflict(BalanceEngineError):
    """A concurrent write was detected. Retrying the whole operation is safe."""


class LedgerInvariantError(BalanceEngineError):
    """A bucket would go negative or the buckets no longer partition total earnings."""
