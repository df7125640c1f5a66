class ValuationError(RuntimeError):
    """Base class for every failure raised by the valuation engine."""

    retryable: bool = False


class InvalidInput(ValuationError, ValueError):
    """
    Caller contract violation: negative counts, malformed schedules,
    unknown regime names. Never clamped, always raised synchronously.
    """


class ScheduleError(InvalidInput):
    """A schedule that validated but cannot be evaluated for this request."""


class LedgerUnavailable(ValuationError):
    """The activity ledger or holdings collaborator could not be read."""

    retryable = True


class LedgerTimeout(LedgerUnavailable):
    """A collaborator read did not finish inside the configured timeout."""
