"""
Test suite for debtor reporting

Tests grouping by debtor, group ordering, portfolio totals and debtor search.
"""

import pytest
from dataclasses import replace
from datetime import date
from decimal import Decimal

from credit_ledger.currency import Money, Currency
from credit_ledger.errors import ValidationError
from credit_ledger.loans import create_loan, add_payment
from credit_ledger.reporting import (
    DebtorMatch, LoanSummary, group_by_debtor, compute_summary, search_debtors
)


def eur(value) -> Money:
    return Money(Decimal(str(value)), Currency.EUR)


def make_loan(loan_id, debtor, price, paid=None, phone=None):
    loan = create_loan(Decimal(price), f"Item {loan_id}", debtor, date(2024, 1, 5),
                       debtor_phone=phone)
    loan = replace(loan, id=loan_id)
    if paid:
        loan = add_payment(loan, Decimal(paid), date(2024, 1, 20)).loan
    return loan


class TestGroupByDebtor:
    """Test per-debtor grouping and ordering"""

    def test_paid_groups_first(self):
        """A fully paid group sorts before an unpaid one regardless of name"""
        paid_zoe = make_loan("z1", "Zoé", "10", paid="10")
        unpaid_adam = make_loan("a1", "Adam", "10")

        groups = group_by_debtor([unpaid_adam, paid_zoe])

        assert [g.debtor_name for g in groups] == ["Zoé", "Adam"]
        assert groups[0].all_paid
        assert not groups[1].all_paid

    def test_alphabetical_ignoring_case_and_accents(self):
        loans = [
            make_loan("1", "martin", "10"),
            make_loan("2", "Émile", "10"),
            make_loan("3", "Bernard", "10"),
            make_loan("4", "eric", "10"),
        ]
        names = [g.debtor_name for g in group_by_debtor(loans)]
        assert names == ["Bernard", "Émile", "eric", "martin"]

    def test_group_totals(self):
        loans = [
            make_loan("1", "Alice", "100", paid="30"),
            make_loan("2", "Alice", "50", paid="60"),
            make_loan("3", "Bob", "20"),
        ]
        alice = group_by_debtor(loans)[0]

        assert alice.debtor_name == "Alice"
        assert alice.loan_ids == ["1", "2"]
        assert alice.total_sale_price == eur(150)
        assert alice.total_received == eur(90)
        assert alice.total_remaining == eur(60)
        assert not alice.all_paid

    def test_overpaid_loan_counts_as_paid(self):
        group = group_by_debtor([make_loan("1", "Alice", "10", paid="15")])[0]
        assert group.all_paid
        assert group.total_remaining == eur(-5)

    def test_blank_names_share_unnamed_group(self):
        loans = [make_loan("1", "", "10"), make_loan("2", "   ", "10")]
        groups = group_by_debtor(loans)
        assert len(groups) == 1
        assert groups[0].debtor_name == "Unnamed"
        assert groups[0].loan_ids == ["1", "2"]

    def test_custom_unnamed_label(self):
        groups = group_by_debtor([make_loan("1", "", "10")], unnamed_label="Sans nom")
        assert groups[0].debtor_name == "Sans nom"

    def test_group_phone_from_first_loan_with_one(self):
        loans = [
            make_loan("1", "Alice", "10"),
            make_loan("2", "Alice", "10", phone="0611"),
            make_loan("3", "Alice", "10", phone="0622"),
        ]
        assert group_by_debtor(loans)[0].debtor_phone == "0611"

    def test_empty(self):
        assert group_by_debtor([]) == []


class TestComputeSummary:
    """Test portfolio totals"""

    def test_summary(self):
        loans = [
            make_loan("1", "Alice", "100", paid="30"),
            make_loan("2", "Bob", "50", paid="50"),
            make_loan("3", "", "20"),
        ]
        summary = compute_summary(loans)

        assert summary == LoanSummary(
            total_sales=eur(170),
            total_received=eur(80),
            total_remaining=eur(90),
            paid_count=1,
            total_count=3
        )
        assert summary.unpaid_count == 2

    def test_empty_portfolio(self):
        summary = compute_summary([], Currency.XOF)
        assert summary.total_sales == Money.zero(Currency.XOF)
        assert summary.total_count == 0

    def test_mixed_currencies_rejected(self):
        dollars = create_loan(Money(Decimal('10'), Currency.USD), "Radio", "Alice", date(2024, 1, 5))
        loans = [make_loan("1", "Alice", "100"), replace(dollars, id="2")]

        with pytest.raises(ValidationError):
            compute_summary(loans)
        with pytest.raises(ValidationError):
            group_by_debtor(loans)


class TestSearchDebtors:
    """Test existing-debtor lookup"""

    @pytest.fixture
    def loans(self):
        return [
            make_loan("1", "Jean Dupont", "10"),
            make_loan("2", "Jean Dupont", "10", phone="0611"),
            make_loan("3", "Jeanne Martin", "10", phone="0622"),
            make_loan("4", "Hélène", "10"),
            make_loan("5", "", "10"),
        ]

    def test_short_query_matches_nothing(self, loans):
        assert search_debtors(loans, "je") == []
        assert search_debtors(loans, "  je ") == []

    def test_unique_names_in_first_seen_order(self, loans):
        assert search_debtors(loans, "jea") == [
            DebtorMatch("Jean Dupont", "0611"),
            DebtorMatch("Jeanne Martin", "0622"),
        ]

    def test_accent_insensitive(self, loans):
        assert search_debtors(loans, "HELE") == [DebtorMatch("Hélène", None)]

    def test_substring_match(self, loans):
        assert [m.debtor_name for m in search_debtors(loans, "martin")] == ["Jeanne Martin"]

    def test_custom_min_length(self, loans):
        assert len(search_debtors(loans, "je", min_length=2)) == 2
