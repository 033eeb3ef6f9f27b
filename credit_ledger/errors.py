"""
Ledger Error Types

Exception hierarchy raised by the ledger engine, the loan store and the
service layer, plus the non-fatal overpayment advisory.
"""

from dataclasses import dataclass
from typing import Optional

from .currency import Money


class LedgerError(Exception):
    """Base exception for all credit ledger errors."""


class ValidationError(LedgerError, ValueError):
    """Raised when an input violates a precondition; caller state is unchanged."""


class NotFoundError(LedgerError, LookupError):
    """Raised when a referenced loan id or payment index does not exist."""

    def __init__(self, message: str, loan_id: Optional[str] = None, index: Optional[int] = None):
        super().__init__(message)
        self.loan_id = loan_id
        self.index = index


@dataclass(frozen=True)
class OverpaymentWarning:
    """
    Advisory returned alongside a payment mutation that drives the balance
    below zero. The mutation itself has been applied.
    """
    loan_id: Optional[str]
    remaining: Money

    @property
    def overpaid_by(self) -> Money:
        return abs(self.remaining)

    def __str__(self) -> str:
        return f"Loan {self.loan_id or '<new>'} overpaid by {self.overpaid_by.to_string()}"
