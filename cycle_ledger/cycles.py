"""
Cycle Management Module

A cycle is a named bucket of transactions with its own unit balance. Names
are unique after trimming; creating a cycle by name converges on the existing
row when the name is already taken, including under concurrent creators.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional
import uuid

from .errors import NotFoundError, ValidationError
from .ledger import BalanceChecker, fold_balance
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_timestamp, utc_now

if TYPE_CHECKING:
    from .transactions import TransactionRepository

CYCLE_NAME_MAX_LENGTH = 100


def normalize_cycle_name(name: Optional[str]) -> str:
    """Trim a cycle name and enforce presence and length"""
    clean_name = (name or "").strip()
    if not clean_name:
        raise ValidationError("Cycle name is required", field="name")
    if len(clean_name) > CYCLE_NAME_MAX_LENGTH:
        raise ValidationError(
            f"Cycle name must be at most {CYCLE_NAME_MAX_LENGTH} characters",
            field="name"
        )
    return clean_name


@dataclass
class Cycle(StorageRecord):
    """Named grouping of transactions"""
    name: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Cycle':
        return cls(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            name=data['name'],
        )


class CycleManager:
    """Creates, renames and deletes cycles and answers balance queries"""

    def __init__(self, storage: StorageInterface, transactions: 'TransactionRepository'):
        self.storage = storage
        self.transactions = transactions
        self.balance_checker = BalanceChecker(transactions.list_for_cycle)
        self.table_name = "cycles"
        self.logger = get_logger("cycle_ledger.cycles")

    def list_cycles(self) -> List[Cycle]:
        """All cycles, oldest first"""
        cycles = [Cycle.from_dict(data) for data in self.storage.load_all(self.table_name)]
        return sorted(cycles, key=lambda cycle: cycle.created_at)

    def get_cycle(self, cycle_id: str) -> Optional[Cycle]:
        data = self.storage.load(self.table_name, cycle_id)
        return Cycle.from_dict(data) if data else None

    def get_cycle_by_name(self, name: str) -> Optional[Cycle]:
        data = self.storage.load_by_key(self.table_name, (name or "").strip())
        return Cycle.from_dict(data) if data else None

    def require_cycle(self, cycle_id: str) -> Cycle:
        cycle = self.get_cycle(cycle_id)
        if not cycle:
            raise NotFoundError(f"Cycle {cycle_id} not found")
        return cycle

    def create_cycle(self, name: str) -> Cycle:
        """Create a cycle, returning the existing one if the name is taken"""
        return self.get_or_create_cycle(name)

    def get_or_create_cycle(self, name: str) -> Cycle:
        """
        Resolve a cycle by trimmed name, creating it if absent

        Backed by the storage's unique natural key, so two concurrent callers
        with the same name end up with the same cycle.
        """
        clean_name = normalize_cycle_name(name)
        now = utc_now()
        candidate = Cycle(id=str(uuid.uuid4()), created_at=now, updated_at=now, name=clean_name)

        stored = self.storage.get_or_insert(
            self.table_name, clean_name, candidate.id, candidate.to_dict()
        )
        cycle = Cycle.from_dict(stored)

        if cycle.id == candidate.id:
            log_action(
                self.logger, "info", f"Created cycle '{clean_name}'",
                action="create_cycle", resource=cycle.id
            )
        return cycle

    def rename_cycle(self, cycle_id: str, name: str) -> Cycle:
        """Rename a cycle; the new name must not belong to another cycle"""
        clean_name = normalize_cycle_name(name)

        with self.storage.atomic():
            cycle = self.require_cycle(cycle_id)
            holder = self.storage.load_by_key(self.table_name, clean_name)
            if holder and holder['id'] != cycle_id:
                raise ValidationError(f"Cycle name '{clean_name}' already exists", field="name")

            old_name = cycle.name
            cycle.name = clean_name
            cycle.updated_at = utc_now()
            self.storage.save(self.table_name, cycle.id, cycle.to_dict(), natural_key=clean_name)

        log_action(
            self.logger, "info", f"Renamed cycle '{old_name}' to '{clean_name}'",
            action="rename_cycle", resource=cycle_id
        )
        return cycle

    def delete_cycle(self, cycle_id: str) -> Dict[str, Any]:
        """Delete a cycle together with all of its transactions"""
        with self.storage.atomic():
            cycle = self.require_cycle(cycle_id)
            deleted = self.transactions.delete_for_cycle(cycle_id)
            self.storage.delete(self.table_name, cycle_id)

        log_action(
            self.logger, "info", f"Deleted cycle '{cycle.name}'",
            action="delete_cycle", resource=cycle_id,
            extra={"deleted_transactions": deleted}
        )
        return {"success": True, "deleted_transactions": deleted}

    def reset_cycle(self, cycle_id: str) -> Dict[str, Any]:
        """Delete every transaction of a cycle, keeping the cycle itself"""
        with self.storage.atomic():
            cycle = self.require_cycle(cycle_id)
            deleted = self.transactions.delete_for_cycle(cycle_id)

        log_action(
            self.logger, "info", f"Reset cycle '{cycle.name}'",
            action="reset_cycle", resource=cycle_id,
            extra={"deleted_transactions": deleted}
        )
        return {"success": True, "deleted_transactions": deleted}

    def undo_last_transaction(self, cycle_id: str) -> Dict[str, Any]:
        """
        Delete the cycle's most recent transaction

        Most recent means latest occurred_at, ties broken by latest created_at.
        Undoing one leg of a settlement leaves the other leg in place. An undo
        that would leave the cycle negative is rejected.
        """
        with self.storage.atomic():
            self.require_cycle(cycle_id)
            history = self.transactions.list_for_cycle(cycle_id)
            if not history:
                raise NotFoundError("No transactions found in this cycle")
            last = history[-1]
            self.balance_checker.ensure_removable(cycle_id, last.id)
            self.transactions.delete(last.id)

        log_action(
            self.logger, "info", f"Undid {last.transaction_type.value} transaction",
            action="undo_last_transaction", resource=last.id,
            extra={"cycle_id": cycle_id}
        )
        return {"success": True, "deleted_transaction_id": last.id}

    def get_cycle_balance(self, cycle_id: str) -> Decimal:
        """Current unit balance of a cycle"""
        self.require_cycle(cycle_id)
        return fold_balance(self.transactions.list_for_cycle(cycle_id))
