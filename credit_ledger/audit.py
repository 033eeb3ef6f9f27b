"""
Audit Trail Module

Append-only record of every ledger mutation. Each entry carries the SHA-256
digest of the previous one, so editing or deleting a stored entry breaks the
chain and shows up in verify_integrity().
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .currency import Money
from .storage import StorageInterface


class AuditEventType(Enum):
    """Ledger mutations worth keeping a trace of"""
    LOAN_CREATED = "loan_created"
    LOAN_UPDATED = "loan_updated"
    LOAN_DELETED = "loan_deleted"
    PAYMENT_ADDED = "payment_added"
    PAYMENT_EDITED = "payment_edited"
    PAYMENT_DELETED = "payment_deleted"
    OVERPAYMENT_RECORDED = "overpayment_recorded"
    LOANS_TRANSFERRED = "loans_transferred"
    NOTIFICATION_DISMISSED = "notification_dismissed"
    LEGACY_MIGRATED = "legacy_migrated"


def _plain(value: Any) -> Any:
    # Money keeps its currency in the trail ("EUR 12.50")
    if isinstance(value, Money):
        return value.to_string()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    return value


@dataclass
class AuditEvent:
    """One link of the audit chain"""
    id: str
    created_at: datetime
    event_type: AuditEventType
    entity_type: str  # "loan", "notification" or "loan_table"
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _plain(self.metadata or {})

    def _hashed_fields(self) -> Dict[str, Any]:
        record = self.to_dict()
        del record['current_hash']
        return record

    def calculate_hash(self) -> str:
        canonical = json.dumps(self._hashed_fields(), sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
            'metadata': self.metadata,
            'user_id': self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data.get('previous_hash', ""),
            current_hash=data.get('current_hash', ""),
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id'),
        )


@dataclass(frozen=True)
class IntegrityReport:
    """Result of walking the chain from its first entry"""
    total_events: int
    tampered_ids: List[str] = field(default_factory=list)
    chain_breaks: List[int] = field(default_factory=list)  # positions whose link is wrong

    @property
    def valid(self) -> bool:
        return not self.tampered_ids and not self.chain_breaks


class AuditTrail:
    """
    Hash-chained audit log kept in a storage table

    Entries come back from storage in insertion order, which is chain order.
    Appends are serialized so two writers cannot link to the same parent.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._append_lock = threading.Lock()
        self._tip_cache: Optional[Tuple[int, str]] = None

    def _tip(self) -> str:
        # (event count, last hash); reloaded when another writer changed the table
        if self._tip_cache is None or self._tip_cache[0] != self.storage.count(self.table_name):
            records = self.storage.load_all(self.table_name)
            last_hash = records[-1].get('current_hash', "") if records else ""
            self._tip_cache = (len(records), last_hash)
        return self._tip_cache[1]

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain

        Args:
            event_type: What happened
            entity_type: Kind of thing it happened to
            entity_id: Loan id (or table name for migrations)
            metadata: Amounts, dates and other details; Money/Decimal/date/Enum
                values are stored in plain form
            user_id: Who did it, when known
        """
        with self._append_lock:
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=datetime.now(timezone.utc),
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._tip(),
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self._tip_cache = (self._tip_cache[0] + 1, event.current_hash)
        return event

    def get_all_events(self) -> List[AuditEvent]:
        return [AuditEvent.from_dict(r) for r in self.storage.load_all(self.table_name)]

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Oldest first; `limit` keeps only the most recent entries"""
        records = self.storage.find(self.table_name,
                                    {'entity_type': entity_type, 'entity_id': entity_id})
        if limit:
            records = records[-limit:]
        return [AuditEvent.from_dict(r) for r in records]

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [AuditEvent.from_dict(r)
                for r in self.storage.find(self.table_name, {'event_type': event_type.value})]

    def verify_integrity(self) -> IntegrityReport:
        events = self.get_all_events()
        tampered = [event.id for event in events if not event.verify_hash()]

        breaks = []
        expected_parent = ""
        for position, event in enumerate(events):
            if event.previous_hash != expected_parent:
                breaks.append(position)
            expected_parent = event.current_hash

        return IntegrityReport(total_events=len(events), tampered_ids=tampered, chain_breaks=breaks)

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
