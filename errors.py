from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base class for errors raised by the ledger core."""

    retryable = False


class ValidationError(LedgerError, ValueError):
    """Malformed or inconsistent input; never retried."""


class NotFound(LedgerError, ValueError):
    """A referenced account, category, budget or transaction does not exist."""


class Conflict(LedgerError):
    """Another unit of work holds the account lock."""

    retryable = True


class Timeout(LedgerError):
    """The store did not answer in time. Safe to resubmit."""

    retryable = True


class Unauthorized(LedgerError):
    pass


class DriftDetected(LedgerError):
    """Cached balance disagrees with the recomputed ledger sum."""

    def __init__(
        self,
        account_id: int,
        cached: Decimal,
        actual: Decimal,
        message: Optional[str] = None,
    ) -> None:
        self.account_id = account_id
        self.cached = cached
        self.actual = actual
        super().__init__(
            message
            or f"Balance drift on account {account_id}: cached={cached} actual={actual}"
        )

    @property
    def difference(self) -> Decimal:
        return self.actual - self.cached
