"""
Ledger Error Taxonomy

Every rejection raised by the ledger carries a human-readable message and a
stable ``code`` so the HTTP layer (or any other caller) can classify it
without parsing text. All errors derive from ValueError so code that treats
bad input as ValueError keeps working.
"""

from decimal import Decimal
from typing import Optional


class LedgerError(ValueError):
    """Base exception for all ledger-related errors."""
    code = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(LedgerError):
    """Malformed or out-of-range input, raised before anything is persisted."""
    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        return result


class InvariantViolation(LedgerError):
    """A business rule rejected an otherwise well-formed request."""
    code = "invariant_violation"


class InsufficientBalanceError(InvariantViolation):
    """Raised when a debit would drive a cycle's unit balance below zero."""
    code = "insufficient_balance"

    def __init__(self, message: str, attempted: Decimal, balance: Decimal):
        super().__init__(message)
        self.attempted = attempted
        self.balance = balance


class SettlementEndpointError(InvariantViolation):
    """Raised when a settlement names the same cycle on both sides."""
    code = "identical_settlement_endpoints"


class NotFoundError(LedgerError, LookupError):
    """Referenced cycle, transaction, institution or icon does not exist."""
    code = "not_found"


class ImmutabilityError(LedgerError):
    """Raised when an edit is attempted on a transaction that cannot change."""
    code = "immutable_transaction"
