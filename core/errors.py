"""Exception taxonomy for the ledger core."""

from __future__ import annotations

from typing import Any


class LedgerError(RuntimeError):
    """Base class for every failure the ledger core raises on purpose."""


class LedgerIOError(LedgerError):
    """Raised when ledger backup read/write operations fail."""


class FormatError(LedgerError):
    """The statement file cannot be imported at all. Nothing was written."""


class UnrecognizedFormatError(FormatError):
    """No supported statement signature was found in the file."""


class NoDataRowsError(FormatError):
    """The statement format was recognized but holds no importable rows."""


class InvariantViolation(LedgerError):
    """A requested mutation would break a ledger invariant."""


class CustomerHasJobsError(InvariantViolation):
    """Customers that own jobs cannot be deleted."""


class JobLockedError(InvariantViolation):
    """Invoiced or paid jobs need an explicit override/force flag."""


class InvoiceAlreadyExistsError(InvariantViolation):
    """A job is invoiced exactly once."""


class InvalidAmountError(LedgerError, ValueError):
    """Payment and refund amounts must be positive cents."""


class ImportAbortedError(LedgerError):
    """
    An import stopped part way through.

    Transactions committed before the failure stay committed; `result`
    holds the counters up to that point. Re-running the same file resumes.
    """

    def __init__(self, message: str, result: Any = None) -> None:
        super().__init__(message)
        self.result = result
