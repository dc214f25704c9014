class LedgerError(ValueError):
    """Business-level failure; always aborts the surrounding unit of work."""


class NotFound(LedgerError):
    pass


class InvalidOperation(LedgerError):
    pass


class RateUnavailable(LedgerError):
    pass


class TransactionFailure(RuntimeError):
    """The storage transaction could not commit. Safe for the caller to retry."""
