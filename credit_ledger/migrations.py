"""
Loan Record Migrations

Upgrades stored loan documents written by earlier versions of the shop
application: French field names, a single "amount received" scalar instead
of itemized payments, and no explicit loan kind. Each step is a pure,
idempotent transform of one record; MigrationManager applies pending steps to
a storage table once and records which versions ran.
"""

from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
import logging

from .errors import ValidationError
from .loans import classify_kind
from .storage import StorageInterface


logger = logging.getLogger(__name__)


RecordTransform = Callable[[Dict[str, Any]], Dict[str, Any]]


# Legacy key -> current key
_LEGACY_FIELDS = {
    "nom": "debtorName",
    "phone": "debtorPhone",
    "prixVente": "salePrice",
    "datePaiement": "dueDate",
    "productId": "linkedProductId",
    "paiements": "payments",
    "avanceRecue": "amountReceived",
    "reste": "remaining",
    "estPaye": "isPaid",
}


def rename_legacy_fields(record: Dict[str, Any]) -> Dict[str, Any]:
    """Map French field names onto the current record shape"""
    upgraded = dict(record)
    for old_key, new_key in _LEGACY_FIELDS.items():
        if old_key in upgraded:
            value = upgraded.pop(old_key)
            upgraded.setdefault(new_key, value)

    payments = upgraded.get("payments")
    if isinstance(payments, list):
        upgraded["payments"] = [
            {"date": p.get("date"), "amount": p["montant"] if "montant" in p else p.get("amount")}
            for p in payments
        ]
    return upgraded


def _as_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal('0')
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Cannot read legacy amount {value!r}")


def itemize_received_amount(record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Make the payments list the single source of truth

    A record with no payments list but a positive received scalar gets one
    payment of that amount dated at the loan date. The scalar is dropped.
    """
    upgraded = dict(record)
    received = _as_decimal(upgraded.pop("amountReceived", None))

    if upgraded.get("payments") is None:
        payments = []
        if received > 0:
            amount = int(received) if received == received.to_integral_value() else float(received)
            payments.append({"date": upgraded.get("date"), "amount": amount})
        upgraded["payments"] = payments
    return upgraded


def tag_kind(record: Dict[str, Any]) -> Dict[str, Any]:
    """Assign an explicit kind from the description when none is stored"""
    if record.get("kind"):
        return record
    upgraded = dict(record)
    upgraded["kind"] = classify_kind(upgraded.get("description") or "").value
    return upgraded


def upgrade_record(record: Dict[str, Any]) -> Dict[str, Any]:
    """Bring any stored loan document to the current shape"""
    for migration in DEFAULT_MIGRATIONS:
        record = migration.transform(record)
    return record


class Migration:
    """Represents a single record migration"""

    def __init__(self, version: int, name: str, transform: RecordTransform):
        self.version = version
        self.name = name
        self.transform = transform
        self.applied_at: Optional[datetime] = None

    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"Migration(version={self.version}, name='{self.name}')"


DEFAULT_MIGRATIONS = (
    Migration(1, "Rename legacy French fields", rename_legacy_fields),
    Migration(2, "Itemize legacy received amounts", itemize_received_amount),
    Migration(3, "Tag loan kind from description", tag_kind),
)


class MigrationManager:
    """Applies record migrations to a loan table and tracks applied versions"""

    def __init__(
        self,
        storage: StorageInterface,
        table: str = "loans",
        migrations: Optional[List[Migration]] = None
    ):
        self.storage = storage
        self.table = table
        self.migrations: List[Migration] = sorted(
            migrations if migrations is not None else DEFAULT_MIGRATIONS,
            key=lambda m: m.version
        )
        self._migration_table = "schema_migrations"

    def get_current_version(self) -> int:
        """Highest applied migration version (0 when none ran)"""
        versions = [
            m["version"] for m in self.storage.load_all(self._migration_table)
            if m.get("table") == self.table and isinstance(m.get("version"), int)
        ]
        return max(versions, default=0)

    def get_pending_migrations(self) -> List[Migration]:
        current_version = self.get_current_version()
        return [m for m in self.migrations if m.version > current_version]

    def migrate_up(self) -> Dict[int, int]:
        """
        Apply every pending migration

        Returns:
            Mapping of applied version -> number of records it changed

        Raises:
            RuntimeError: If a migration fails; that migration is rolled back
        """
        pending = self.get_pending_migrations()
        if not pending:
            logger.info("No pending migrations to apply")
            return {}

        logger.info(f"Applying {len(pending)} pending migrations to {self.table}")
        changed_counts: Dict[int, int] = {}

        for migration in pending:
            try:
                with self.storage.atomic():
                    changed = 0
                    for record in self.storage.load_all(self.table):
                        upgraded = migration.transform(record)
                        if upgraded != record:
                            self.storage.save(self.table, upgraded["id"], upgraded)
                            changed += 1

                    self.storage.save(self._migration_table, f"{self.table}_v{migration.version:03d}", {
                        "table": self.table,
                        "version": migration.version,
                        "name": migration.name,
                        "records_changed": changed,
                        "applied_at": datetime.now(timezone.utc).isoformat()
                    })
            except Exception as e:
                logger.error(f"Failed to apply {migration}: {e}")
                raise RuntimeError(f"Migration failed: {migration}") from e

            migration.applied_at = datetime.now(timezone.utc)
            changed_counts[migration.version] = changed
            logger.info(f"Applied {migration} ({changed} record(s) changed)")

        return changed_counts

    def get_migration_status(self) -> Dict[str, Any]:
        pending = self.get_pending_migrations()
        return {
            "table": self.table,
            "current_version": self.get_current_version(),
            "latest_version": max((m.version for m in self.migrations), default=0),
            "pending_migrations": [{"version": m.version, "name": m.name} for m in pending],
            "needs_migration": bool(pending)
        }
