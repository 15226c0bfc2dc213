"""Errors raised by the listing ledger.

Routers raise ``HTTPException`` for request-level checks. Everything the
ledger rejects, and the verification gate on who may post or claim food,
goes through this hierarchy and is mapped to a response by
the handler registered in ``main``.
"""


class LedgerError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class LedgerValidationError(LedgerError):
    status_code = 400


class LedgerNotFoundError(LedgerError):
    status_code = 404


class LedgerPermissionError(LedgerError):
    status_code = 403


class InvariantViolation(LedgerError):
    """Group totals no longer add up. Never repaired, only reported."""

    status_code = 500
