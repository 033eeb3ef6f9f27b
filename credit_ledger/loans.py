"""
Loan Ledger Engine

Pure functions over immutable Loan values: loan creation, payment entry,
payment edits and removal, debtor transfers and deletion. Balances are never
stored; total received, remaining and paid status are recomputed from the
sale price and the full payment list on every access, so repeated edits
cannot drift.
"""

from datetime import date, datetime
from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Sequence, Tuple
from enum import Enum
import calendar

from .currency import Money, Currency, AmountLike, sum_money
from .errors import ValidationError, NotFoundError, OverpaymentWarning
from .text import collation_key, is_blank


UNNAMED_DEBTOR = "Unnamed"

_UNSET = object()


class LoanKind(Enum):
    """What was handed over on credit"""
    STANDARD = "standard"  # Regular goods sold on credit
    ADVANCE = "advance"    # Deposit/advance taken against a future sale
    LOAN = "loan"          # Item lent out, to be paid for later


class LoanStatus(Enum):
    """Derived loan state, never stored"""
    PENDING = "pending"    # Balance outstanding, not yet due
    OVERDUE = "overdue"    # Balance outstanding, due date passed
    PAID = "paid"          # Nothing left to pay


# Description fragments recognised by the legacy categorisation heuristic
_KIND_KEYWORDS = (
    (LoanKind.ADVANCE, ("avance", "advance")),
    (LoanKind.LOAN, ("pret", "loan")),
)


@dataclass(frozen=True)
class Payment:
    """One recorded partial payment"""
    date: date
    amount: Money


@dataclass(frozen=True)
class Loan:
    """Credit sale owed by a named debtor"""
    date: date
    description: str
    debtor_name: str
    sale_price: Money
    payments: Tuple[Payment, ...] = field(default_factory=tuple)
    id: Optional[str] = None
    due_date: Optional[date] = None
    debtor_phone: Optional[str] = None
    kind: LoanKind = LoanKind.STANDARD
    linked_product_id: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.payments, tuple):
            object.__setattr__(self, 'payments', tuple(self.payments))

        for payment in self.payments:
            if payment.amount.currency != self.sale_price.currency:
                raise ValidationError(
                    f"Payment currency {payment.amount.currency.code} does not match "
                    f"loan currency {self.sale_price.currency.code}"
                )

    @property
    def currency(self) -> Currency:
        return self.sale_price.currency

    @property
    def total_received(self) -> Money:
        """Sum of all recorded payments"""
        return sum_money((p.amount for p in self.payments), self.currency)

    @property
    def remaining(self) -> Money:
        """Outstanding balance; negative when overpaid"""
        return self.sale_price - self.total_received

    @property
    def is_paid(self) -> bool:
        return not self.remaining.is_positive()

    @property
    def is_overpaid(self) -> bool:
        return self.remaining.is_negative()

    @property
    def display_name(self) -> str:
        return self.debtor_name.strip() or UNNAMED_DEBTOR


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of a payment mutation: the new loan and an optional advisory"""
    loan: Loan
    warning: Optional[OverpaymentWarning] = None

    @property
    def has_warning(self) -> bool:
        return self.warning is not None


def _as_date(value, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise ValidationError(f"{field_name} must be a date, got {type(value).__name__}")


def _as_optional_date(value, field_name: str) -> Optional[date]:
    if value is None:
        return None
    return _as_date(value, field_name)


def _to_money(value: AmountLike, currency: Currency, field_name: str) -> Money:
    try:
        return Money.of(value, currency)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid {field_name}: {e}")


def _positive_amount(value: AmountLike, currency: Currency, field_name: str) -> Money:
    amount = _to_money(value, currency, field_name)
    if not amount.is_positive():
        raise ValidationError(f"{field_name} must be greater than zero, got {amount.to_string()}")
    return amount


def _check_index(loan: Loan, index: int) -> None:
    if not isinstance(index, int) or isinstance(index, bool):
        raise NotFoundError(f"Payment index must be an integer, got {index!r}",
                            loan_id=loan.id, index=None)
    if index < 0 or index >= len(loan.payments):
        raise NotFoundError(
            f"Payment #{index} does not exist on loan {loan.id} "
            f"({len(loan.payments)} payment(s) recorded)",
            loan_id=loan.id, index=index
        )


def _payment_result(loan: Loan) -> PaymentResult:
    if loan.is_overpaid:
        return PaymentResult(loan, OverpaymentWarning(loan_id=loan.id, remaining=loan.remaining))
    return PaymentResult(loan)


def classify_kind(description: str) -> LoanKind:
    """
    Guess the loan kind from free text.

    Only meant for migrating records that predate the explicit kind tag, and
    as a fallback when a caller creates a loan without one.
    """
    folded = collation_key(description)
    for kind, keywords in _KIND_KEYWORDS:
        if any(keyword in folded for keyword in keywords):
            return kind
    return LoanKind.STANDARD


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the end of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def default_due_date(loan_date: date, months: int = 1) -> date:
    """Due date offered when a sale is turned into a loan without one"""
    return add_months(_as_date(loan_date, "date"), months)


def create_loan(
    sale_price: AmountLike,
    description: str,
    debtor_name: str,
    date: date,
    debtor_phone: Optional[str] = None,
    due_date: Optional[date] = None,
    initial_payment: Optional[AmountLike] = None,
    linked_product_id: Optional[str] = None,
    kind: Optional[LoanKind] = None,
    currency: Currency = Currency.EUR
) -> Loan:
    """
    Create a new loan

    Args:
        sale_price: Total amount owed, must be positive
        description: Item(s) lent, must not be blank
        debtor_name: Who owes the money (blank is allowed)
        date: Origination date
        debtor_phone: Optional contact
        due_date: Optional expected payment date
        initial_payment: Amount paid at hand-over; seeds one payment dated `date`
        linked_product_id: Optional catalog reference
        kind: Explicit kind; classified from the description when omitted
        currency: Currency of plain Decimal/int/str amounts

    Returns:
        Loan without an id (the store assigns it)

    Raises:
        ValidationError: On non-positive price, blank description or negative initial payment
    """
    if isinstance(sale_price, Money):
        currency = sale_price.currency
    price = _positive_amount(sale_price, currency, "Sale price")

    if is_blank(description):
        raise ValidationError("Description must not be empty")

    loan_date = _as_date(date, "date")

    payments: List[Payment] = []
    if initial_payment is not None:
        seed = _to_money(initial_payment, currency, "initial payment")
        if seed.is_negative():
            raise ValidationError(f"Initial payment must not be negative, got {seed.to_string()}")
        if seed.is_positive():
            payments.append(Payment(date=loan_date, amount=seed))

    return Loan(
        date=loan_date,
        description=description.strip(),
        debtor_name=(debtor_name or "").strip(),
        debtor_phone=(debtor_phone or "").strip() or None,
        sale_price=price,
        payments=tuple(payments),
        due_date=_as_optional_date(due_date, "due_date"),
        kind=kind if kind is not None else classify_kind(description),
        linked_product_id=linked_product_id or None
    )


def add_payment(loan: Loan, amount: AmountLike, date: date) -> PaymentResult:
    """
    Append a payment to a loan

    Overpayment is applied as-is; the result carries an OverpaymentWarning
    and the caller decides whether to keep it.

    Raises:
        ValidationError: If amount is not positive
    """
    money = _positive_amount(amount, loan.currency, "Payment amount")
    payment = Payment(date=_as_date(date, "date"), amount=money)
    return _payment_result(replace(loan, payments=loan.payments + (payment,)))


def edit_payment(
    loan: Loan,
    index: int,
    new_amount: AmountLike,
    new_date: Optional[date] = None
) -> PaymentResult:
    """
    Replace the amount of the payment at `index`

    The payment keeps its date unless `new_date` is given.

    Raises:
        NotFoundError: If index is out of range
        ValidationError: If new_amount is not positive
    """
    _check_index(loan, index)
    money = _positive_amount(new_amount, loan.currency, "Payment amount")

    original = loan.payments[index]
    edited = Payment(
        date=_as_date(new_date, "date") if new_date is not None else original.date,
        amount=money
    )
    payments = loan.payments[:index] + (edited,) + loan.payments[index + 1:]
    return _payment_result(replace(loan, payments=payments))


def delete_payment(loan: Loan, index: int) -> Loan:
    """
    Remove the payment at `index`

    Raises:
        NotFoundError: If index is out of range
    """
    _check_index(loan, index)
    return replace(loan, payments=loan.payments[:index] + loan.payments[index + 1:])


def update_loan_details(
    loan: Loan,
    description=_UNSET,
    date=_UNSET,
    due_date=_UNSET,
    sale_price=_UNSET,
    linked_product_id=_UNSET,
    kind=_UNSET
) -> Loan:
    """
    Edit the non-identity fields of a loan

    Only the arguments passed are changed; pass due_date=None to clear the
    due date. Debtor name and phone are not editable here (use transfer_loans).

    Raises:
        ValidationError: On blank description or non-positive sale price
    """
    changes = {}

    if description is not _UNSET:
        if is_blank(description):
            raise ValidationError("Description must not be empty")
        changes['description'] = description.strip()

    if date is not _UNSET:
        changes['date'] = _as_date(date, "date")

    if due_date is not _UNSET:
        changes['due_date'] = _as_optional_date(due_date, "due_date")

    if sale_price is not _UNSET:
        changes['sale_price'] = _positive_amount(sale_price, loan.currency, "Sale price")

    if linked_product_id is not _UNSET:
        changes['linked_product_id'] = linked_product_id or None

    if kind is not _UNSET:
        if not isinstance(kind, LoanKind):
            raise ValidationError(f"Unknown loan kind: {kind!r}")
        changes['kind'] = kind

    return replace(loan, **changes)


def find_loan(loans: Iterable[Loan], loan_id: str) -> Loan:
    """
    Raises:
        NotFoundError: If no loan has this id
    """
    for loan in loans:
        if loan.id == loan_id:
            return loan
    raise NotFoundError(f"Loan {loan_id} not found", loan_id=loan_id)


def _owned_by(loan: Loan, debtor: str, unnamed_label: str) -> bool:
    name = loan.debtor_name.strip()
    if not name:
        return debtor == unnamed_label
    return name == debtor


def transfer_loans(
    loans: Sequence[Loan],
    source_debtor: str,
    target_debtor: str,
    loan_ids: Iterable[str],
    target_phone: Optional[str] = None,
    unnamed_label: str = UNNAMED_DEBTOR
) -> List[Loan]:
    """
    Reassign selected loans of one debtor to another debtor

    Financial figures are untouched; only debtor identity changes. Each loan
    keeps its own phone number unless target_phone is given.

    Args:
        loans: Current loan snapshot
        source_debtor: Debtor who currently owns the loans (the unnamed label
            selects loans with a blank name)
        target_debtor: New debtor name
        loan_ids: Ids of the loans to move
        target_phone: Optional phone to set on every moved loan
        unnamed_label: Label standing for blank debtor names

    Returns:
        The transferred loans, in snapshot order

    Raises:
        ValidationError: On blank or identical target, empty selection, or a
            selected id not owned by the source debtor
    """
    source = (source_debtor or "").strip()
    target = (target_debtor or "").strip()

    if not target:
        raise ValidationError("Target debtor name must not be blank")
    if target == source:
        raise ValidationError("Target debtor must differ from the source debtor")

    selected = list(dict.fromkeys(loan_ids))
    if not selected:
        raise ValidationError("Select at least one loan to transfer")

    by_id = {loan.id: loan for loan in loans if loan.id is not None}
    not_owned = [
        loan_id for loan_id in selected
        if loan_id not in by_id or not _owned_by(by_id[loan_id], source, unnamed_label)
    ]
    if not_owned:
        raise ValidationError(
            f"Loan(s) {', '.join(map(str, not_owned))} do not belong to {source or unnamed_label}"
        )

    wanted = set(selected)
    phone = (target_phone or "").strip() or None
    transferred = []
    for loan in loans:
        if loan.id in wanted:
            transferred.append(replace(
                loan,
                debtor_name=target,
                debtor_phone=phone if phone is not None else loan.debtor_phone
            ))
    return transferred


def delete_loan(loans: Sequence[Loan], loan_id: str) -> List[Loan]:
    """
    Remove a loan from a snapshot

    Raises:
        NotFoundError: If no loan has this id
    """
    find_loan(loans, loan_id)
    return [loan for loan in loans if loan.id != loan_id]


def loan_status(loan: Loan, today: date) -> LoanStatus:
    """Derive the PENDING / OVERDUE / PAID state of a loan as of `today`"""
    if loan.is_paid:
        return LoanStatus.PAID
    if loan.due_date is not None and loan.due_date < _as_date(today, "today"):
        return LoanStatus.OVERDUE
    return LoanStatus.PENDING


def recompute(loan: Loan) -> Tuple[Money, Money, bool]:
    """(total_received, remaining, is_paid) straight from sale price and payments"""
    total = sum_money((p.amount for p in loan.payments), loan.currency)
    remaining = loan.sale_price - total
    return total, remaining, not remaining.is_positive()
