"""
Overdue Notification Module

Derives which unpaid loans have passed their due date and which of those
still need an alert. The set of dismissed alerts is an explicit
NotificationState value: the monitor takes it as input and returns an
updated copy, and the caller loads/saves it at session boundaries
(NotificationStateStore does that over any StorageInterface).
"""

from datetime import date, datetime
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from .currency import Money
from .loans import Loan, UNNAMED_DEBTOR
from .storage import StorageInterface


@dataclass(frozen=True)
class NotificationState:
    """Ids of loans whose overdue alert the user has dismissed"""
    dismissed_ids: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        if not isinstance(self.dismissed_ids, frozenset):
            object.__setattr__(self, 'dismissed_ids', frozenset(self.dismissed_ids))

    def __contains__(self, loan_id: str) -> bool:
        return loan_id in self.dismissed_ids

    def __len__(self) -> int:
        return len(self.dismissed_ids)

    def cleared(self) -> 'NotificationState':
        return NotificationState()

    def to_dict(self) -> Dict[str, Any]:
        return {"dismissedIds": sorted(self.dismissed_ids)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'NotificationState':
        if not data:
            return cls()
        return cls(frozenset(str(i) for i in data.get("dismissedIds") or []))


@dataclass(frozen=True)
class NotificationTemplate:
    """Alert text with {placeholders}"""
    subject_template: str
    body_template: str
    contact_template: str = ""

    def render(self, data: Dict[str, Any]) -> str:
        lines = [self.subject_template.format(**data), self.body_template.format(**data)]
        if self.contact_template and data.get("phone"):
            lines.append(self.contact_template.format(**data))
        return "\n".join(lines)


OVERDUE_TEMPLATE = NotificationTemplate(
    subject_template="Loan overdue!",
    body_template="{debtor_name} - {description}\nPayment date passed: {due_date}",
    contact_template="Contact: {phone}"
)


@dataclass(frozen=True)
class OverdueNotification:
    """Alert payload for one overdue loan"""
    loan_id: str
    debtor_name: str
    description: str
    due_date: date
    remaining: Money
    days_overdue: int
    phone: Optional[str] = None

    def render_message(self, template: NotificationTemplate = OVERDUE_TEMPLATE) -> str:
        return template.render({
            "loan_id": self.loan_id,
            "debtor_name": self.debtor_name,
            "description": self.description,
            "due_date": self.due_date.isoformat(),
            "remaining": self.remaining.to_string(),
            "days_overdue": self.days_overdue,
            "phone": self.phone or "",
        })


def _day(value) -> date:
    # Compare at day granularity; time of day is ignored
    return value.date() if isinstance(value, datetime) else value


def is_overdue(loan: Loan, today: date) -> bool:
    """Unpaid with a due date strictly before today"""
    if loan.is_paid or loan.due_date is None:
        return False
    return _day(loan.due_date) < _day(today)


def get_active_overdue_notifications(
    loans: Iterable[Loan],
    state: NotificationState,
    today: date
) -> List[Loan]:
    """Overdue loans whose alert has not been dismissed, in input order"""
    return [
        loan for loan in loans
        if is_overdue(loan, today) and loan.id not in state
    ]


def sort_by_urgency(loans: Iterable[Loan]) -> List[Loan]:
    """Oldest due date first; loans without a due date last"""
    return sorted(loans, key=lambda loan: (loan.due_date is None, loan.due_date or date.max))


def dismiss(loan_id: str, state: NotificationState) -> NotificationState:
    """Return a new state with `loan_id` dismissed"""
    return NotificationState(state.dismissed_ids | {loan_id})


def build_overdue_notification(
    loan: Loan,
    today: date,
    unnamed_label: str = UNNAMED_DEBTOR
) -> OverdueNotification:
    """
    Raises:
        ValueError: If the loan is not overdue as of `today`
    """
    if not is_overdue(loan, today):
        raise ValueError(f"Loan {loan.id} is not overdue as of {_day(today).isoformat()}")

    return OverdueNotification(
        loan_id=loan.id,
        debtor_name=loan.debtor_name.strip() or unnamed_label,
        description=loan.description,
        due_date=loan.due_date,
        remaining=loan.remaining,
        days_overdue=(_day(today) - loan.due_date).days,
        phone=loan.debtor_phone
    )


class NotificationStateStore:
    """Persists the dismissed-alert state between sessions"""

    def __init__(self, storage: StorageInterface, table: str = "notification_state",
                 key: str = "dismissed"):
        self.storage = storage
        self.table = table
        self.key = key

    def load(self) -> NotificationState:
        return NotificationState.from_dict(self.storage.load(self.table, self.key))

    def save(self, state: NotificationState) -> None:
        self.storage.save(self.table, self.key, state.to_dict())

    def clear(self) -> NotificationState:
        """Forget every dismissal, e.g. at session start"""
        self.storage.delete(self.table, self.key)
        return NotificationState()
