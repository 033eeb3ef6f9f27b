"""
Debtor Reporting Module

Aggregates a loan snapshot into per-debtor groups with totals, computes the
portfolio summary shown above the groups, and looks up existing debtors by
name for the "pick an existing client" search.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .currency import Money, Currency, sum_money
from .errors import ValidationError
from .loans import Loan, UNNAMED_DEBTOR
from .text import collation_key


@dataclass
class DebtorGroup:
    """All loans of one debtor with their totals"""
    debtor_name: str
    currency: Currency
    debtor_phone: Optional[str] = None
    loans: List[Loan] = field(default_factory=list)

    @property
    def total_sale_price(self) -> Money:
        return sum_money((loan.sale_price for loan in self.loans), self.currency)

    @property
    def total_received(self) -> Money:
        return sum_money((loan.total_received for loan in self.loans), self.currency)

    @property
    def total_remaining(self) -> Money:
        return sum_money((loan.remaining for loan in self.loans), self.currency)

    @property
    def all_paid(self) -> bool:
        return all(loan.is_paid for loan in self.loans)

    @property
    def loan_ids(self) -> List[str]:
        return [loan.id for loan in self.loans]

    @property
    def sort_key(self) -> Tuple[int, str, str]:
        # Fully paid groups first, then alphabetical ignoring case and accents
        return (0 if self.all_paid else 1, collation_key(self.debtor_name), self.debtor_name)


@dataclass(frozen=True)
class LoanSummary:
    """Portfolio totals across every loan"""
    total_sales: Money
    total_received: Money
    total_remaining: Money
    paid_count: int
    total_count: int

    @property
    def unpaid_count(self) -> int:
        return self.total_count - self.paid_count


@dataclass(frozen=True)
class DebtorMatch:
    """Existing debtor found by name search"""
    debtor_name: str
    debtor_phone: Optional[str] = None


def _currency_of(loans: Sequence[Loan], default: Currency) -> Currency:
    currencies = {loan.currency for loan in loans}
    if len(currencies) > 1:
        codes = ", ".join(sorted(c.code for c in currencies))
        raise ValidationError(f"Cannot total loans held in several currencies: {codes}")
    return currencies.pop() if currencies else default


def group_by_debtor(
    loans: Iterable[Loan],
    unnamed_label: str = UNNAMED_DEBTOR
) -> List[DebtorGroup]:
    """
    Group loans by debtor name

    Blank names share the `unnamed_label` group. Groups whose loans are all
    paid come first; each partition is ordered by name, ignoring case and
    accents. Loans keep their snapshot order inside a group.

    Raises:
        ValidationError: If the loans are not all in one currency
    """
    loans = list(loans)
    _currency_of(loans, Currency.EUR)
    groups: Dict[str, DebtorGroup] = {}

    for loan in loans:
        key = loan.debtor_name.strip() or unnamed_label
        group = groups.get(key)
        if group is None:
            group = DebtorGroup(debtor_name=key, currency=loan.currency,
                                debtor_phone=loan.debtor_phone)
            groups[key] = group
        elif group.debtor_phone is None and loan.debtor_phone:
            group.debtor_phone = loan.debtor_phone
        group.loans.append(loan)

    return sorted(groups.values(), key=lambda g: g.sort_key)


def compute_summary(loans: Sequence[Loan], currency: Currency = Currency.EUR) -> LoanSummary:
    """
    Totals over the whole snapshot

    Raises:
        ValidationError: If the loans are not all in one currency
    """
    loans = list(loans)
    currency = _currency_of(loans, currency)

    return LoanSummary(
        total_sales=sum_money((loan.sale_price for loan in loans), currency),
        total_received=sum_money((loan.total_received for loan in loans), currency),
        total_remaining=sum_money((loan.remaining for loan in loans), currency),
        paid_count=sum(1 for loan in loans if loan.is_paid),
        total_count=len(loans)
    )


def search_debtors(
    loans: Iterable[Loan],
    query: str,
    min_length: int = 3
) -> List[DebtorMatch]:
    """
    Find existing debtors whose name contains `query`

    Matching ignores case and accents. Each name is returned once, with the
    phone of its first loan that has one. Queries shorter than `min_length`
    characters match nothing.
    """
    needle = collation_key(query)
    if len(needle) < min_length:
        return []

    matches: Dict[str, DebtorMatch] = {}
    for loan in loans:
        name = loan.debtor_name.strip()
        if not name or needle not in collation_key(name):
            continue
        existing = matches.get(name)
        if existing is None:
            matches[name] = DebtorMatch(debtor_name=name, debtor_phone=loan.debtor_phone)
        elif existing.debtor_phone is None and loan.debtor_phone:
            matches[name] = DebtorMatch(debtor_name=name, debtor_phone=loan.debtor_phone)

    return list(matches.values())
