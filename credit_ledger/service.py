"""
Loan Ledger Service

Application layer over the pure ledger engine: reads the current loan from
the store, applies an engine operation, persists the result, then records
an audit event and a structured log line. Read-modify-write cycles on the
same loan are serialized with a per-loan lock.
"""

import threading
import weakref
from contextlib import ExitStack, contextmanager
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional

from . import loans as engine
from .audit import AuditTrail, AuditEventType
from .config import CreditLedgerConfig, get_config
from .errors import LedgerError, ValidationError
from .logging_config import get_logger, log_action
from .loans import Loan, LoanKind, PaymentResult
from .migrations import MigrationManager
from .notifications import (
    NotificationState, OverdueNotification, build_overdue_notification,
    dismiss, get_active_overdue_notifications, sort_by_urgency
)
from .reporting import DebtorGroup, DebtorMatch, LoanSummary
from .reporting import compute_summary, group_by_debtor, search_debtors
from .store import LoanStore


class LoanLedgerService:
    """
    Loan ledger operations with persistence, auditing and logging

    Args:
        store: Loan store to read from and write to
        audit: Optional audit trail; no events are recorded without one
        config: Ledger configuration (global config when omitted)
        clock: Returns "today"; injectable for tests
    """

    def __init__(
        self,
        store: LoanStore,
        audit: Optional[AuditTrail] = None,
        config: Optional[CreditLedgerConfig] = None,
        clock: Callable[[], date] = date.today
    ):
        self.store = store
        self.audit = audit
        self.config = config or get_config()
        self.clock = clock
        self.logger = get_logger("credit_ledger.service")
        # An entry drops out once no call holds its lock
        self._locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(cls, config: Optional[CreditLedgerConfig] = None) -> 'LoanLedgerService':
        """Build storage, store and audit trail from configuration"""
        config = config or get_config()
        storage = config.create_storage()
        store = LoanStore(storage, config.loans_table, config.ledger_currency)
        audit = AuditTrail(storage) if config.enable_audit_logging else None

        service = cls(store, audit, config)
        if config.auto_migrate:
            service.migrate()
        return service

    # Internal helpers

    def _lock_for(self, loan_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[loan_id] = lock
            return lock

    @contextmanager
    def _locked(self, loan_ids: Iterable[str]):
        # Sorted acquisition order keeps concurrent multi-loan calls deadlock free
        with ExitStack() as stack:
            for loan_id in sorted(set(loan_ids)):
                stack.enter_context(self._lock_for(loan_id))
            yield

    @contextmanager
    def _storage_errors(self, action: str, loan_id: Optional[str] = None):
        try:
            yield
        except LedgerError:
            raise
        except Exception as e:
            log_action(self.logger, "error", f"Storage failure during {action}: {e}",
                       action=action, loan_id=loan_id)
            raise

    def _audit(self, event_type: AuditEventType, entity_id: str,
               metadata: Optional[Dict[str, Any]] = None, entity_type: str = "loan") -> None:
        if self.audit is not None:
            self.audit.log_event(event_type, entity_type, entity_id, metadata or {})

    def _check_overpayment(self, loan: Loan, action: str) -> None:
        if loan.is_overpaid and self.config.reject_overpayment:
            raise ValidationError(
                f"{action} would overpay loan {loan.id or '<new>'} by "
                f"{abs(loan.remaining).to_string()}"
            )

    def _record_overpayment(self, loan: Loan, action: str) -> None:
        if not loan.is_overpaid:
            return
        log_action(
            self.logger, "warning",
            f"Loan {loan.id} overpaid by {abs(loan.remaining).to_string()}",
            action=action, loan_id=loan.id, debtor=loan.display_name,
            extra={"remaining": loan.remaining.to_string()}
        )
        self._audit(AuditEventType.OVERPAYMENT_RECORDED, loan.id, {
            "action": action,
            "remaining": loan.remaining,
        })

    def _save(self, loan_id: str, loan: Loan, action: str) -> Loan:
        with self._storage_errors(action, loan_id):
            return self.store.update(loan_id, loan)

    # Migrations

    def migrate(self) -> Dict[int, int]:
        """Upgrade legacy loan documents in place; returns changed counts per version"""
        manager = MigrationManager(self.store.storage, self.store.table)
        with self._storage_errors("migrate"):
            applied = manager.migrate_up()

        for version, changed in applied.items():
            log_action(self.logger, "info", f"Applied loan migration v{version:03d}",
                       action="migrate", extra={"version": version, "records_changed": changed})
            if not changed:
                continue
            self._audit(AuditEventType.LEGACY_MIGRATED, self.store.table, {
                "version": version,
                "records_changed": changed,
            }, entity_type="loan_table")
        return applied

    # Queries

    def list_loans(self) -> List[Loan]:
        return self.store.list()

    def get_loan(self, loan_id: str) -> Loan:
        return self.store.get(loan_id)

    def groups(self) -> List[DebtorGroup]:
        return group_by_debtor(self.store.list(), self.config.unnamed_debtor_label)

    def summary(self) -> LoanSummary:
        return compute_summary(self.store.list(), self.config.ledger_currency)

    def search_debtors(self, query: str) -> List[DebtorMatch]:
        return search_debtors(self.store.list(), query, self.config.debtor_search_min_length)

    def overdue_notifications(
        self,
        state: NotificationState,
        today: Optional[date] = None,
        by_urgency: bool = False
    ) -> List[OverdueNotification]:
        """Alerts for overdue loans the user has not dismissed"""
        today = today or self.clock()
        active = get_active_overdue_notifications(self.store.list(), state, today)
        if by_urgency:
            active = sort_by_urgency(active)
        return [
            build_overdue_notification(loan, today, self.config.unnamed_debtor_label)
            for loan in active
        ]

    def dismiss_notification(self, state: NotificationState, loan_id: str) -> NotificationState:
        new_state = dismiss(loan_id, state)
        log_action(self.logger, "info", f"Dismissed overdue alert for loan {loan_id}",
                   action="dismiss_notification", loan_id=loan_id)
        self._audit(AuditEventType.NOTIFICATION_DISMISSED, loan_id, entity_type="notification")
        return new_state

    # Mutations

    def create_loan(
        self,
        sale_price,
        description: str,
        debtor_name: str,
        date: Optional[date] = None,
        debtor_phone: Optional[str] = None,
        due_date: Optional[date] = None,
        initial_payment=None,
        linked_product_id: Optional[str] = None,
        kind: Optional[LoanKind] = None
    ) -> Loan:
        """
        Create and persist a new loan

        Raises:
            ValidationError: On invalid input, or an initial payment above
                the sale price while overpayments are rejected
        """
        loan = engine.create_loan(
            sale_price=sale_price,
            description=description,
            debtor_name=debtor_name,
            date=date or self.clock(),
            debtor_phone=debtor_phone,
            due_date=due_date,
            initial_payment=initial_payment,
            linked_product_id=linked_product_id,
            kind=kind,
            currency=self.config.ledger_currency
        )
        self._check_overpayment(loan, "create_loan")

        with self._storage_errors("create_loan"):
            loan = self.store.create(loan)

        log_action(self.logger, "info", f"Created loan {loan.id} for {loan.display_name}",
                   action="create_loan", loan_id=loan.id, debtor=loan.display_name,
                   extra={"sale_price": loan.sale_price.to_string(), "kind": loan.kind.value})
        self._audit(AuditEventType.LOAN_CREATED, loan.id, {
            "debtor_name": loan.debtor_name,
            "description": loan.description,
            "sale_price": loan.sale_price,
            "initial_payment": loan.total_received,
            "due_date": loan.due_date,
            "kind": loan.kind,
        })
        self._record_overpayment(loan, "create_loan")
        return loan

    def create_loan_from_sale(
        self,
        sale_price,
        description: str,
        debtor_name: str,
        sale_date: Optional[date] = None,
        debtor_phone: Optional[str] = None,
        due_date: Optional[date] = None,
        initial_payment=None,
        linked_product_id: Optional[str] = None
    ) -> Loan:
        """Turn a recorded sale into a loan, due one period after the sale by default"""
        sale_date = sale_date or self.clock()
        if due_date is None:
            due_date = engine.default_due_date(sale_date, self.config.default_due_months)
        return self.create_loan(
            sale_price, description, debtor_name, sale_date,
            debtor_phone=debtor_phone,
            due_date=due_date,
            initial_payment=initial_payment,
            linked_product_id=linked_product_id
        )

    def add_payment(self, loan_id: str, amount, payment_date: Optional[date] = None) -> PaymentResult:
        """
        Record a payment against a loan

        Raises:
            NotFoundError: If the loan does not exist
            ValidationError: If the amount is not positive, or it overpays
                while overpayments are rejected
        """
        with self._locked([loan_id]):
            loan = self.store.get(loan_id)
            result = engine.add_payment(loan, amount, payment_date or self.clock())
            self._check_overpayment(result.loan, "add_payment")
            saved = self._save(loan_id, result.loan, "add_payment")

        payment = saved.payments[-1]
        log_action(self.logger, "info",
                   f"Payment of {payment.amount.to_string()} recorded on loan {loan_id}",
                   action="add_payment", loan_id=loan_id, debtor=saved.display_name,
                   extra={"remaining": saved.remaining.to_string()})
        self._audit(AuditEventType.PAYMENT_ADDED, loan_id, {
            "amount": payment.amount,
            "date": payment.date,
            "remaining": saved.remaining,
        })
        self._record_overpayment(saved, "add_payment")
        return PaymentResult(saved, result.warning)

    def edit_payment(
        self,
        loan_id: str,
        index: int,
        new_amount,
        new_date: Optional[date] = None
    ) -> PaymentResult:
        """
        Raises:
            NotFoundError: If the loan or the payment index does not exist
            ValidationError: If the amount is not positive, or it overpays
                while overpayments are rejected
        """
        with self._locked([loan_id]):
            loan = self.store.get(loan_id)
            result = engine.edit_payment(loan, index, new_amount, new_date)
            self._check_overpayment(result.loan, "edit_payment")
            saved = self._save(loan_id, result.loan, "edit_payment")

        log_action(self.logger, "info", f"Payment #{index} edited on loan {loan_id}",
                   action="edit_payment", loan_id=loan_id, debtor=saved.display_name,
                   extra={"remaining": saved.remaining.to_string()})
        self._audit(AuditEventType.PAYMENT_EDITED, loan_id, {
            "index": index,
            "old_amount": loan.payments[index].amount,
            "new_amount": saved.payments[index].amount,
            "remaining": saved.remaining,
        })
        self._record_overpayment(saved, "edit_payment")
        return PaymentResult(saved, result.warning)

    def delete_payment(self, loan_id: str, index: int) -> Loan:
        with self._locked([loan_id]):
            loan = self.store.get(loan_id)
            updated = engine.delete_payment(loan, index)
            saved = self._save(loan_id, updated, "delete_payment")

        removed = loan.payments[index]
        log_action(self.logger, "info", f"Payment #{index} deleted from loan {loan_id}",
                   action="delete_payment", loan_id=loan_id, debtor=saved.display_name,
                   extra={"remaining": saved.remaining.to_string()})
        self._audit(AuditEventType.PAYMENT_DELETED, loan_id, {
            "index": index,
            "amount": removed.amount,
            "date": removed.date,
            "remaining": saved.remaining,
        })
        return saved

    def update_loan(self, loan_id: str, **changes) -> Loan:
        """
        Edit description, dates, price, product link or kind of a loan

        Keyword arguments are those of `loans.update_loan_details`.
        """
        with self._locked([loan_id]):
            loan = self.store.get(loan_id)
            updated = engine.update_loan_details(loan, **changes)
            self._check_overpayment(updated, "update_loan")
            saved = self._save(loan_id, updated, "update_loan")

        log_action(self.logger, "info", f"Updated loan {loan_id}",
                   action="update_loan", loan_id=loan_id, debtor=saved.display_name,
                   extra={"fields": sorted(changes)})
        self._audit(AuditEventType.LOAN_UPDATED, loan_id, {
            "fields": sorted(changes),
            "sale_price": saved.sale_price,
            "due_date": saved.due_date,
        })
        self._record_overpayment(saved, "update_loan")
        return saved

    def transfer_loans(
        self,
        source_debtor: str,
        target_debtor: str,
        loan_ids: Iterable[str],
        target_phone: Optional[str] = None
    ) -> List[Loan]:
        """
        Move selected loans of one debtor to another, all or nothing

        Raises:
            ValidationError: See `loans.transfer_loans`
        """
        loan_ids = list(loan_ids)
        with self._locked(loan_ids):
            transferred = engine.transfer_loans(
                self.store.list(), source_debtor, target_debtor, loan_ids,
                target_phone=target_phone,
                unnamed_label=self.config.unnamed_debtor_label
            )
            with self._storage_errors("transfer_loans"):
                with self.store.storage.atomic():
                    saved = [self.store.update(loan.id, loan) for loan in transferred]

        log_action(self.logger, "info",
                   f"Transferred {len(saved)} loan(s) from {source_debtor} to {target_debtor}",
                   action="transfer_loans", debtor=target_debtor,
                   extra={"source": source_debtor, "loan_ids": [loan.id for loan in saved]})
        for loan in saved:
            self._audit(AuditEventType.LOANS_TRANSFERRED, loan.id, {
                "from": source_debtor,
                "to": loan.debtor_name,
                "debtor_phone": loan.debtor_phone,
            })
        return saved

    def delete_loan(self, loan_id: str) -> None:
        """
        Raises:
            NotFoundError: If the loan does not exist
        """
        with self._locked([loan_id]):
            loan = self.store.get(loan_id)
            with self._storage_errors("delete_loan", loan_id):
                self.store.remove(loan_id)

        log_action(self.logger, "info", f"Deleted loan {loan_id}",
                   action="delete_loan", loan_id=loan_id, debtor=loan.display_name)
        self._audit(AuditEventType.LOAN_DELETED, loan_id, {
            "debtor_name": loan.debtor_name,
            "description": loan.description,
            "sale_price": loan.sale_price,
            "remaining": loan.remaining,
        })
