"""
Loan Store Module

Persists Loan values as JSON documents through a StorageInterface and exposes
the list/get/create/update/remove contract used by the service layer.
Derived figures (totalReceived, remaining, isPaid) are written for readers of
the raw documents but always recomputed on load.
"""

from decimal import Decimal, InvalidOperation
from dataclasses import replace
from datetime import date
from typing import Any, Dict, List, Optional, Union
import uuid

from .currency import Money, Currency
from .errors import NotFoundError, ValidationError
from .loans import Loan, LoanKind, Payment, recompute
from .migrations import upgrade_record
from .storage import StorageInterface


LOANS_TABLE = "loans"


def _number(amount: Decimal) -> Union[int, float, str]:
    # JSON number when it reads back as the same Decimal, else the exact string
    if amount == amount.to_integral_value():
        return int(amount)
    as_float = float(amount)
    if Decimal(repr(as_float)) == amount:
        return as_float
    return str(amount)


def _money(value: Any, currency: Currency, field_name: str) -> Money:
    try:
        return Money(Decimal(str(value)), currency)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Corrupt loan record: bad {field_name} {value!r}")


def _date(value: Any, field_name: str) -> Optional[date]:
    if value in (None, ""):
        return None
    try:
        # Legacy records sometimes carry a full ISO timestamp
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Corrupt loan record: bad {field_name} {value!r}")


def loan_to_record(loan: Loan) -> Dict[str, Any]:
    """Serialize a loan to its persisted document shape"""
    total_received, remaining, is_paid = recompute(loan)
    return {
        "id": loan.id,
        "date": loan.date.isoformat(),
        "dueDate": loan.due_date.isoformat() if loan.due_date else None,
        "description": loan.description,
        "debtorName": loan.debtor_name,
        "debtorPhone": loan.debtor_phone,
        "salePrice": _number(loan.sale_price.amount),
        "totalReceived": _number(total_received.amount),
        "remaining": _number(remaining.amount),
        "isPaid": is_paid,
        "linkedProductId": loan.linked_product_id,
        "kind": loan.kind.value,
        "currency": loan.currency.code,
        "payments": [
            {"date": p.date.isoformat(), "amount": _number(p.amount.amount)}
            for p in loan.payments
        ],
    }


def loan_from_record(data: Dict[str, Any], default_currency: Currency = Currency.EUR) -> Loan:
    """
    Rebuild a loan from a stored document, upgrading legacy shapes first

    Raises:
        ValidationError: If the document cannot be read
    """
    record = upgrade_record(data)

    currency = default_currency
    if record.get("currency"):
        try:
            currency = Currency.from_code(record["currency"])
        except ValueError as e:
            raise ValidationError(f"Corrupt loan record: {e}")

    loan_date = _date(record.get("date"), "date")
    if loan_date is None:
        raise ValidationError(f"Corrupt loan record {record.get('id')}: missing date")

    payments = []
    for entry in record.get("payments") or []:
        payments.append(Payment(
            # Payments without a date fall back to the loan date
            date=_date(entry.get("date"), "payment date") or loan_date,
            amount=_money(entry.get("amount"), currency, "payment amount")
        ))

    try:
        kind = LoanKind(record.get("kind") or LoanKind.STANDARD.value)
    except ValueError:
        raise ValidationError(f"Corrupt loan record: unknown kind {record.get('kind')!r}")

    return Loan(
        id=record.get("id"),
        date=loan_date,
        due_date=_date(record.get("dueDate"), "dueDate"),
        description=record.get("description") or "",
        debtor_name=record.get("debtorName") or "",
        debtor_phone=record.get("debtorPhone") or None,
        sale_price=_money(record.get("salePrice", 0), currency, "salePrice"),
        payments=tuple(payments),
        kind=kind,
        linked_product_id=record.get("linkedProductId") or None
    )


class LoanStore:
    """Loan persistence over a storage backend"""

    def __init__(
        self,
        storage: StorageInterface,
        table: str = LOANS_TABLE,
        default_currency: Currency = Currency.EUR
    ):
        self.storage = storage
        self.table = table
        self.default_currency = default_currency

    def _from_record(self, data: Dict[str, Any]) -> Loan:
        return loan_from_record(data, self.default_currency)

    def _check_currency(self, loan: Loan) -> None:
        if loan.currency != self.default_currency:
            raise ValidationError(
                f"Loan is in {loan.currency.code} but this ledger is kept in "
                f"{self.default_currency.code}"
            )

    def list(self) -> List[Loan]:
        """All loans in insertion order"""
        return [self._from_record(data) for data in self.storage.load_all(self.table)]

    def get(self, loan_id: str) -> Loan:
        """
        Raises:
            NotFoundError: If the loan does not exist
        """
        data = self.storage.load(self.table, loan_id)
        if data is None:
            raise NotFoundError(f"Loan {loan_id} not found", loan_id=loan_id)
        return self._from_record(data)

    def exists(self, loan_id: str) -> bool:
        return self.storage.exists(self.table, loan_id)

    def create(self, loan: Loan) -> Loan:
        """
        Persist a new loan and assign its id

        Raises:
            ValidationError: If the loan already carries an id or is in another
                currency than the ledger
        """
        if loan.id is not None:
            raise ValidationError(f"Loan already has id {loan.id}; use update()")
        self._check_currency(loan)

        stored = replace(loan, id=str(uuid.uuid4()))
        self.storage.save(self.table, stored.id, loan_to_record(stored))
        return stored

    def update(self, loan_id: str, loan: Loan) -> Loan:
        """
        Replace a stored loan; the stored id always wins

        Raises:
            NotFoundError: If the loan does not exist
            ValidationError: If the loan is in another currency than the ledger
        """
        self._check_currency(loan)
        if not self.storage.exists(self.table, loan_id):
            raise NotFoundError(f"Loan {loan_id} not found", loan_id=loan_id)

        stored = loan if loan.id == loan_id else replace(loan, id=loan_id)
        self.storage.save(self.table, loan_id, loan_to_record(stored))
        return stored

    def remove(self, loan_id: str) -> None:
        """
        Raises:
            NotFoundError: If the loan does not exist
        """
        if not self.storage.delete(self.table, loan_id):
            raise NotFoundError(f"Loan {loan_id} not found", loan_id=loan_id)
