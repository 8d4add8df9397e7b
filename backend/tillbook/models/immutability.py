# Overview: ORM-level append-only enforcement for ledger tables.

from __future__ import annotations

from sqlalchemy import event, inspect

from ..errors import LedgerImmutabilityError
from .cash import CashMovement
from .inventory import InventoryJournalEntry

# The review outcome is the only thing that may change on a cash movement.
_CASH_MOVEMENT_REVIEW_FIELDS = frozenset({"status", "reviewed_by", "reviewed_at"})


def _changed_fields(target) -> set[str]:
    state = inspect(target)
    return {attr.key for attr in state.attrs if attr.history.has_changes()}


@event.listens_for(InventoryJournalEntry, "before_update")
def prevent_journal_update(mapper, connection, target):
    raise LedgerImmutabilityError(
        f"inventory journal entry {target.id} is immutable; append a correction instead"
    )


@event.listens_for(InventoryJournalEntry, "before_delete")
def prevent_journal_delete(mapper, connection, target):
    raise LedgerImmutabilityError(f"inventory journal entry {target.id} cannot be deleted")


@event.listens_for(CashMovement, "before_update")
def prevent_movement_update(mapper, connection, target):
    changed = _changed_fields(target)
    if changed - _CASH_MOVEMENT_REVIEW_FIELDS:
        raise LedgerImmutabilityError(
            f"cash movement {target.id} is immutable (attempted to change {sorted(changed)})"
        )


@event.listens_for(CashMovement, "before_delete")
def prevent_movement_delete(mapper, connection, target):
    raise LedgerImmutabilityError(f"cash movement {target.id} cannot be deleted")
