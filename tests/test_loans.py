"""
Test suite for the loan ledger engine

Tests loan creation, payment entry/edit/removal, debtor transfers, deletion
and derived state. Balances must always equal sale price minus the sum of
recorded payments.
"""

import pytest
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal

from credit_ledger.currency import Money, Currency
from credit_ledger.errors import ValidationError, NotFoundError, OverpaymentWarning
from credit_ledger.loans import (
    Loan, Payment, LoanKind, LoanStatus, PaymentResult,
    create_loan, add_payment, edit_payment, delete_payment, update_loan_details,
    transfer_loans, delete_loan, find_loan, loan_status, recompute,
    classify_kind, add_months, default_due_date
)
from credit_ledger.reporting import group_by_debtor


def eur(value) -> Money:
    return Money(Decimal(str(value)), Currency.EUR)


def assert_consistent(loan: Loan):
    """Balance invariants that must hold after every mutation"""
    total = sum((p.amount.amount for p in loan.payments), Decimal('0'))
    assert loan.total_received.amount == total
    assert loan.remaining.amount == loan.sale_price.amount - total
    assert loan.is_paid == (loan.remaining.amount <= 0)


@pytest.fixture
def loan_date():
    return date(2024, 3, 10)


@pytest.fixture
def loan(loan_date):
    """Scenario 1: price 100 with 30 paid at hand-over"""
    created = create_loan(
        sale_price=Decimal('100'),
        description="Washing machine",
        debtor_name="Alice",
        date=loan_date,
        debtor_phone="0600000001",
        initial_payment=Decimal('30')
    )
    return replace(created, id="loan-1")


class TestCreateLoan:
    """Test loan creation and validation"""

    def test_initial_payment_seeds_one_payment(self, loan, loan_date):
        assert loan.remaining == eur(70)
        assert not loan.is_paid
        assert loan.payments == (Payment(date=loan_date, amount=eur(30)),)
        assert_consistent(loan)

    def test_without_initial_payment(self, loan_date):
        created = create_loan(Decimal('45.50'), "Chair", "Bob", loan_date)
        assert created.payments == ()
        assert created.remaining == eur('45.50')
        assert created.id is None

    def test_zero_initial_payment_records_nothing(self, loan_date):
        created = create_loan(Decimal('10'), "Lamp", "Bob", loan_date, initial_payment=0)
        assert created.payments == ()

    def test_fields_are_trimmed(self, loan_date):
        created = create_loan("20", "  Table ", "  Carla ", loan_date, debtor_phone="  ")
        assert created.description == "Table"
        assert created.debtor_name == "Carla"
        assert created.debtor_phone is None

    def test_blank_debtor_allowed(self, loan_date):
        created = create_loan(Decimal('20'), "Table", "", loan_date)
        assert created.debtor_name == ""
        assert created.display_name == "Unnamed"

    @pytest.mark.parametrize("price", [Decimal('0'), Decimal('-5'), "0", Decimal('NaN'), "NaN"])
    def test_non_positive_price_rejected(self, loan_date, price):
        with pytest.raises(ValidationError):
            create_loan(price, "Table", "Bob", loan_date)

    def test_float_price_rejected(self, loan_date):
        with pytest.raises(ValidationError):
            create_loan(10.5, "Table", "Bob", loan_date)

    @pytest.mark.parametrize("description", ["", "   ", None])
    def test_blank_description_rejected(self, loan_date, description):
        with pytest.raises(ValidationError):
            create_loan(Decimal('10'), description, "Bob", loan_date)

    def test_negative_initial_payment_rejected(self, loan_date):
        with pytest.raises(ValidationError):
            create_loan(Decimal('10'), "Table", "Bob", loan_date, initial_payment=Decimal('-1'))

    def test_due_date_before_origination_is_overdue(self, loan_date):
        created = create_loan(Decimal('10'), "Table", "Bob", loan_date,
                              due_date=date(2024, 3, 1))
        assert loan_status(created, loan_date) == LoanStatus.OVERDUE

    def test_datetime_inputs_truncated(self):
        created = create_loan(Decimal('10'), "Table", "Bob", datetime(2024, 3, 10, 15, 30),
                              due_date=datetime(2024, 4, 10, 9, 0))
        assert created.date == date(2024, 3, 10)
        assert created.due_date == date(2024, 4, 10)

    def test_money_price_sets_currency(self, loan_date):
        created = create_loan(Money(Decimal('5000'), Currency.XOF), "Radio", "Awa", loan_date,
                              initial_payment=1000)
        assert created.currency == Currency.XOF
        assert created.remaining == Money(Decimal('4000'), Currency.XOF)

    def test_kind_explicit_or_classified(self, loan_date):
        assert create_loan(Decimal('10'), "Avance sur frigo", "Bob", loan_date).kind == LoanKind.ADVANCE
        assert create_loan(Decimal('10'), "Prêt perceuse", "Bob", loan_date).kind == LoanKind.LOAN
        assert create_loan(Decimal('10'), "Fridge", "Bob", loan_date).kind == LoanKind.STANDARD
        explicit = create_loan(Decimal('10'), "Avance", "Bob", loan_date, kind=LoanKind.STANDARD)
        assert explicit.kind == LoanKind.STANDARD


class TestPayments:
    """Test payment entry, edits and removal"""

    def test_payment_settles_loan(self, loan):
        result = add_payment(loan, Decimal('70'), date(2024, 4, 1))

        assert isinstance(result, PaymentResult)
        assert result.loan.remaining.is_zero()
        assert result.loan.is_paid
        assert not result.has_warning
        assert_consistent(result.loan)

    def test_overpayment_applied_with_warning(self, loan):
        result = add_payment(loan, Decimal('80'), date(2024, 4, 1))

        assert result.loan.remaining == eur(-10)
        assert result.loan.is_paid
        assert result.loan.is_overpaid
        assert isinstance(result.warning, OverpaymentWarning)
        assert result.warning.loan_id == "loan-1"
        assert result.warning.overpaid_by == eur(10)
        assert_consistent(result.loan)

    def test_input_loan_unchanged(self, loan):
        add_payment(loan, Decimal('10'), date(2024, 4, 1))
        assert len(loan.payments) == 1
        assert loan.remaining == eur(70)

    @pytest.mark.parametrize("amount", [Decimal('0'), Decimal('-3'), "abc", "NaN", Decimal('NaN'), "Infinity"])
    def test_invalid_amount_rejected(self, loan, amount):
        with pytest.raises(ValidationError):
            add_payment(loan, amount, date(2024, 4, 1))

    def test_payments_keep_entry_order(self, loan):
        loan = add_payment(loan, Decimal('10'), date(2024, 5, 1)).loan
        loan = add_payment(loan, Decimal('5'), date(2024, 4, 1)).loan
        assert [p.amount for p in loan.payments] == [eur(30), eur(10), eur(5)]

    def test_delete_payment_reopens_loan(self, loan):
        settled = add_payment(delete_payment(loan, 0), Decimal('100'), date(2024, 4, 1)).loan
        assert settled.is_paid

        reopened = delete_payment(settled, 0)
        assert reopened.remaining == eur(100)
        assert not reopened.is_paid
        assert reopened.payments == ()

    def test_edit_payment_keeps_date(self, loan, loan_date):
        result = edit_payment(loan, 0, Decimal('50'))
        assert result.loan.payments[0] == Payment(date=loan_date, amount=eur(50))
        assert result.loan.remaining == eur(50)

    def test_edit_payment_new_date(self, loan):
        result = edit_payment(loan, 0, Decimal('50'), new_date=date(2024, 3, 12))
        assert result.loan.payments[0].date == date(2024, 3, 12)

    def test_edit_payment_overpay_warns(self, loan):
        result = edit_payment(loan, 0, Decimal('120'))
        assert result.has_warning
        assert result.loan.remaining == eur(-20)

    def test_edit_round_trip_restores_state(self, loan):
        edited = edit_payment(loan, 0, Decimal('99')).loan
        restored = edit_payment(edited, 0, Decimal('30')).loan
        assert restored.remaining == loan.remaining
        assert restored.is_paid == loan.is_paid

    @pytest.mark.parametrize("index", [1, 5, -1])
    def test_index_out_of_range(self, loan, index):
        with pytest.raises(NotFoundError) as exc_info:
            edit_payment(loan, index, Decimal('10'))
        assert exc_info.value.loan_id == "loan-1"

        with pytest.raises(NotFoundError):
            delete_payment(loan, index)

    def test_edit_invalid_amount(self, loan):
        with pytest.raises(ValidationError):
            edit_payment(loan, 0, Decimal('0'))
        with pytest.raises(ValidationError):
            edit_payment(loan, 0, "NaN")

    def test_currency_mismatch_rejected(self, loan):
        with pytest.raises(ValidationError):
            add_payment(loan, Money(Decimal('10'), Currency.USD), date(2024, 4, 1))

    def test_recompute_is_idempotent(self, loan):
        assert recompute(loan) == recompute(loan)
        total, remaining, is_paid = recompute(loan)
        assert (total, remaining, is_paid) == (eur(30), eur(70), False)


class TestUpdateLoanDetails:
    """Test editing non-identity fields"""

    def test_update_price_and_due_date(self, loan):
        updated = update_loan_details(loan, sale_price=Decimal('150'), due_date=date(2024, 6, 1))
        assert updated.remaining == eur(120)
        assert updated.due_date == date(2024, 6, 1)
        assert updated.id == loan.id
        assert updated.debtor_name == loan.debtor_name

    def test_clear_due_date(self, loan):
        dated = update_loan_details(loan, due_date=date(2024, 6, 1))
        assert update_loan_details(dated, due_date=None).due_date is None

    def test_untouched_fields_kept(self, loan):
        assert update_loan_details(loan) == loan

    def test_lower_price_can_settle(self, loan):
        assert update_loan_details(loan, sale_price=Decimal('30')).is_paid

    def test_validation(self, loan):
        with pytest.raises(ValidationError):
            update_loan_details(loan, description=" ")
        with pytest.raises(ValidationError):
            update_loan_details(loan, sale_price=Decimal('0'))
        with pytest.raises(ValidationError):
            update_loan_details(loan, sale_price=Decimal('NaN'))
        with pytest.raises(ValidationError):
            update_loan_details(loan, kind="advance")


@pytest.fixture
def portfolio(loan_date):
    """Two loans for Alice, one for Bob, one unnamed"""
    rows = [
        ("a1", "Alice", "0600000001", Decimal('100')),
        ("a2", "Alice", "0600000002", Decimal('50')),
        ("b1", "Bob", None, Decimal('20')),
        ("u1", "", None, Decimal('10')),
    ]
    loans = []
    for loan_id, name, phone, price in rows:
        created = create_loan(price, "Item " + loan_id, name, loan_date, debtor_phone=phone)
        loans.append(replace(created, id=loan_id))
    return loans


class TestTransferLoans:
    """Test reassigning loans to another debtor"""

    def test_transfer_moves_only_selected(self, portfolio):
        moved = transfer_loans(portfolio, "Alice", "Bob", ["a1"])

        assert [loan.id for loan in moved] == ["a1"]
        assert moved[0].debtor_name == "Bob"
        original = find_loan(portfolio, "a1")
        assert moved[0].sale_price == original.sale_price
        assert moved[0].payments == original.payments

    def test_source_group_loses_loan(self, portfolio):
        moved = {loan.id: loan for loan in transfer_loans(portfolio, "Alice", "Bob", ["a1"])}
        snapshot = [moved.get(loan.id, loan) for loan in portfolio]

        groups = {g.debtor_name: g for g in group_by_debtor(snapshot)}
        assert "a1" not in groups["Alice"].loan_ids
        assert "a1" in groups["Bob"].loan_ids

    def test_transfer_preserves_totals(self, portfolio):
        def totals(loans):
            groups = {g.debtor_name: g for g in group_by_debtor(loans)}
            return groups["Alice"].total_sale_price + groups["Bob"].total_sale_price

        before = totals(portfolio)
        moved = {loan.id: loan for loan in transfer_loans(portfolio, "Alice", "Bob", ["a1"])}
        after = totals([moved.get(loan.id, loan) for loan in portfolio])
        assert before == after

    def test_each_loan_keeps_its_phone(self, portfolio):
        moved = transfer_loans(portfolio, "Alice", "Carla", ["a2", "a1"])
        assert [(loan.id, loan.debtor_phone) for loan in moved] == [
            ("a1", "0600000001"), ("a2", "0600000002")
        ]

    def test_target_phone_overrides(self, portfolio):
        moved = transfer_loans(portfolio, "Alice", "Carla", ["a1"], target_phone="0700000000")
        assert moved[0].debtor_phone == "0700000000"

    def test_unnamed_source(self, portfolio):
        moved = transfer_loans(portfolio, "Unnamed", "Dan", ["u1"])
        assert moved[0].debtor_name == "Dan"

    def test_duplicate_ids_collapsed(self, portfolio):
        assert len(transfer_loans(portfolio, "Alice", "Bob", ["a1", "a1"])) == 1

    def test_input_snapshot_unchanged(self, portfolio):
        transfer_loans(portfolio, "Alice", "Bob", ["a1"])
        assert find_loan(portfolio, "a1").debtor_name == "Alice"

    @pytest.mark.parametrize("target", ["", "   ", "Alice", " Alice "])
    def test_invalid_target(self, portfolio, target):
        with pytest.raises(ValidationError):
            transfer_loans(portfolio, "Alice", target, ["a1"])

    def test_empty_selection(self, portfolio):
        with pytest.raises(ValidationError):
            transfer_loans(portfolio, "Alice", "Bob", [])

    @pytest.mark.parametrize("loan_id", ["b1", "missing"])
    def test_loan_not_owned_by_source(self, portfolio, loan_id):
        with pytest.raises(ValidationError):
            transfer_loans(portfolio, "Alice", "Carla", ["a1", loan_id])


class TestDeleteAndLookup:
    """Test loan removal and lookup"""

    def test_delete_loan(self, portfolio):
        remaining = delete_loan(portfolio, "b1")
        assert [loan.id for loan in remaining] == ["a1", "a2", "u1"]
        assert len(portfolio) == 4

    def test_delete_unknown(self, portfolio):
        with pytest.raises(NotFoundError):
            delete_loan(portfolio, "nope")

    def test_find_unknown(self, portfolio):
        with pytest.raises(NotFoundError) as exc_info:
            find_loan(portfolio, "nope")
        assert exc_info.value.loan_id == "nope"
        assert isinstance(exc_info.value, LookupError)


class TestLoanStatus:
    """Test derived PENDING / OVERDUE / PAID state"""

    def test_transitions(self, loan):
        dated = update_loan_details(loan, due_date=date(2024, 4, 10))

        assert loan_status(dated, date(2024, 4, 10)) == LoanStatus.PENDING
        assert loan_status(dated, date(2024, 4, 11)) == LoanStatus.OVERDUE

        paid = add_payment(dated, Decimal('70'), date(2024, 4, 12)).loan
        assert loan_status(paid, date(2024, 4, 12)) == LoanStatus.PAID

    def test_no_due_date_never_overdue(self, loan):
        assert loan_status(loan, date(2099, 1, 1)) == LoanStatus.PENDING

    def test_extending_due_date_returns_to_pending(self, loan):
        overdue = update_loan_details(loan, due_date=date(2024, 4, 1))
        assert loan_status(overdue, date(2024, 5, 1)) == LoanStatus.OVERDUE
        extended = update_loan_details(overdue, due_date=date(2024, 6, 1))
        assert loan_status(extended, date(2024, 5, 1)) == LoanStatus.PENDING


class TestHelpers:
    """Test date helpers and kind classification"""

    def test_add_months_clamps_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 12, 15), 1) == date(2025, 1, 15)
        assert add_months(date(2024, 3, 10), 12) == date(2025, 3, 10)

    def test_default_due_date(self):
        assert default_due_date(date(2024, 3, 10)) == date(2024, 4, 10)
        assert default_due_date(date(2024, 3, 10), months=2) == date(2024, 5, 10)

    @pytest.mark.parametrize("description,kind", [
        ("AVANCE frigo", LoanKind.ADVANCE),
        ("advance payment", LoanKind.ADVANCE),
        ("prêt d'une échelle", LoanKind.LOAN),
        ("Loaned drill", LoanKind.LOAN),
        ("Sofa", LoanKind.STANDARD),
        ("", LoanKind.STANDARD),
    ])
    def test_classify_kind(self, description, kind):
        assert classify_kind(description) == kind
