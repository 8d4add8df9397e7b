# Overview: Append-only ledger store for signed deltas (inventory journal, cash movements).

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..errors import ValidationError
from ..models import CashMovement, InventoryJournalEntry
from ..models.cash import CASH_MOVEMENT_TYPES, MOVEMENT_APPROVED
from ..models.inventory import INVENTORY_REASONS
from ..time_utils import normalize_datetime, utcnow
"""
Ledger Invariants (authoritative)

- append() is the only mutating operation. Rows are never updated or deleted
  (see models.immutability); corrections are new signed rows.
- Every read and write is scoped by (tenant_id, branch_id, subject).
- Balance = SUM(delta) over the rows, computed by the database on every
  call. There is no cached running total to drift from the rows.
- occurred_at is business time (may be backdated); created_at is storage time.
- Ordering for replay: occurred_at ascending, ties by id (insertion order).
- As-of filtering is inclusive: occurred_at <= as_of.
- append() flushes but never commits: the caller's transaction decides.
"""


class LedgerStore:
    """
    Generic signed-delta journal over one mapped table.

    subject_column names the column identifying what the balance is of
    (stock item, cash session); amount_columns are the signed value columns;
    reason_column holds the tagged category, restricted to `reasons`.
    `counted` optionally restricts which rows contribute to balances.
    """

    def __init__(
        self,
        model,
        *,
        subject_column: str,
        amount_columns: tuple[str, ...],
        reason_column: str,
        reasons: tuple[str, ...],
        scale: str,
        counted=None,
    ):
        self.model = model
        self.subject_column = subject_column
        self.amount_columns = amount_columns
        self.reason_column = reason_column
        self.reasons = reasons
        self.quantum = Decimal(scale)
        self._counted = counted

    # -------------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------------

    def append(self, session: Session, **fields):
        """
        Persist one entry in the caller's transaction and return it with
        id/created_at assigned.
        """
        for scope in ("tenant_id", "branch_id", self.subject_column):
            if fields.get(scope) is None:
                raise ValidationError(f"{scope} is required for a ledger entry")

        reason = fields.get(self.reason_column)
        if reason not in self.reasons:
            raise ValidationError(f"{self.reason_column} must be one of {', '.join(self.reasons)}")

        for column in self.amount_columns:
            fields[column] = self._to_decimal(fields.get(column, 0), column)

        fields.pop("id", None)
        try:
            fields["occurred_at"] = normalize_datetime(fields.get("occurred_at"))
        except ValueError:
            raise ValidationError("occurred_at must be an ISO-8601 datetime")
        fields["created_at"] = utcnow()

        entry = self.model(**fields)
        session.add(entry)
        session.flush()  # assigns id without committing
        return entry

    # -------------------------------------------------------------------------
    # Read path
    # -------------------------------------------------------------------------

    def _scoped(self, stmt, tenant_id: int, branch_id: int | None, subject_id=None):
        stmt = stmt.where(self.model.tenant_id == tenant_id)
        if branch_id is not None:
            stmt = stmt.where(self.model.branch_id == branch_id)
        if subject_id is not None:
            stmt = stmt.where(getattr(self.model, self.subject_column) == subject_id)
        return stmt

    def query(
        self,
        session: Session,
        tenant_id: int,
        branch_id: int | None,
        subject_id=None,
        *,
        reason: str | None = None,
        ref_sale_id: str | None = None,
        occurred_from: datetime | None = None,
        occurred_to: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list:
        """Entries for a scope in replay order. Never mutates."""
        stmt = self._scoped(select(self.model), tenant_id, branch_id, subject_id)
        if reason is not None:
            stmt = stmt.where(getattr(self.model, self.reason_column) == reason)
        if ref_sale_id is not None:
            stmt = stmt.where(self.model.ref_sale_id == ref_sale_id)
        if occurred_from is not None:
            stmt = stmt.where(self.model.occurred_at >= occurred_from)
        if occurred_to is not None:
            stmt = stmt.where(self.model.occurred_at <= occurred_to)

        stmt = stmt.order_by(self.model.occurred_at.asc(), self.model.id.asc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.scalars(stmt))

    def get_balance(
        self,
        session: Session,
        tenant_id: int,
        branch_id: int,
        subject_id,
        *,
        column: str | None = None,
        as_of: datetime | None = None,
    ) -> Decimal:
        """SUM of the signed column for one subject, recomputed from the rows."""
        column = column or self.amount_columns[0]
        amount = getattr(self.model, column)

        stmt = self._scoped(
            select(func.coalesce(func.sum(amount), 0)),
            tenant_id, branch_id, subject_id,
        )
        if self._counted is not None:
            stmt = stmt.where(self._counted)
        if as_of is not None:
            stmt = stmt.where(self.model.occurred_at <= as_of)

        return self.quantize(session.execute(stmt).scalar())

    def balances_by_subject(
        self,
        session: Session,
        tenant_id: int,
        branch_id: int,
        *,
        column: str | None = None,
    ) -> dict:
        """Balance of every subject with at least one entry in the scope."""
        column = column or self.amount_columns[0]
        subject = getattr(self.model, self.subject_column)
        amount = getattr(self.model, column)

        stmt = self._scoped(select(subject, func.sum(amount)), tenant_id, branch_id).group_by(subject)
        if self._counted is not None:
            stmt = stmt.where(self._counted)

        return {subject_id: self.quantize(total) for subject_id, total in session.execute(stmt)}

    def totals_by_reason(
        self,
        session: Session,
        tenant_id: int,
        branch_id: int,
        subject_id,
        *,
        column: str | None = None,
    ) -> dict[str, Decimal]:
        """Signed totals per reason/type for one subject."""
        column = column or self.amount_columns[0]
        reason = getattr(self.model, self.reason_column)
        amount = getattr(self.model, column)

        stmt = self._scoped(select(reason, func.sum(amount)), tenant_id, branch_id, subject_id).group_by(reason)
        if self._counted is not None:
            stmt = stmt.where(self._counted)

        return {name: self.quantize(total) for name, total in session.execute(stmt)}

    # -------------------------------------------------------------------------

    def quantize(self, value) -> Decimal:
        if value is None:
            value = 0
        # str() first: SQLite hands back floats for SUM over NUMERIC
        return Decimal(str(value)).quantize(self.quantum)

    def _to_decimal(self, value, column: str) -> Decimal:
        if isinstance(value, bool) or isinstance(value, float):
            raise ValidationError(f"{column} must be a decimal or integer, not {type(value).__name__}")
        try:
            amount = Decimal(str(value))
        except ArithmeticError:
            raise ValidationError(f"{column} must be numeric")
        if not amount.is_finite():
            raise ValidationError(f"{column} must be finite")
        if amount != amount.quantize(self.quantum):
            raise ValidationError(f"{column} has more precision than {self.quantum}")
        return amount.quantize(self.quantum)


inventory_ledger = LedgerStore(
    InventoryJournalEntry,
    subject_column="stock_item_id",
    amount_columns=("delta",),
    reason_column="reason",
    reasons=INVENTORY_REASONS,
    scale="0.001",
)

cash_ledger = LedgerStore(
    CashMovement,
    subject_column="session_id",
    amount_columns=("amount_usd", "amount_khr"),
    reason_column="type",
    reasons=CASH_MOVEMENT_TYPES,
    scale="0.01",
    counted=CashMovement.status == MOVEMENT_APPROVED,
)
