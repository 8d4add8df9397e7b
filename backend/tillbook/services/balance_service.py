# Overview: Read-only projections over the ledgers (stock on hand, session cash).

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from ..errors import NotFoundError
from ..models import BranchStock, CashMovement, CashSession
from ..models.cash import MOVEMENT_APPROVED
from .ledger_service import cash_ledger, inventory_ledger
from .transaction import TransactionManager

MONEY_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class CurrencyTotals:
    total_cash_in: Decimal
    total_cash_out: Decimal
    net_cash_flow: Decimal
    expected_cash: Decimal

    def to_dict(self) -> dict:
        return {
            "total_cash_in": str(self.total_cash_in),
            "total_cash_out": str(self.total_cash_out),
            "net_cash_flow": str(self.net_cash_flow),
            "expected_cash": str(self.expected_cash),
        }


@dataclass(frozen=True)
class SessionTotals:
    session_id: int
    usd: CurrencyTotals
    khr: CurrencyTotals

    def to_dict(self) -> dict:
        return {"session_id": self.session_id, "usd": self.usd.to_dict(), "khr": self.khr.to_dict()}


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(MONEY_QUANTUM)


class BalanceProjector:
    """
    Every method re-aggregates from the ledger rows; nothing is cached.
    Passing `session` reads inside the caller's transaction (e.g. to see its
    own uncommitted appends); otherwise a short read transaction is used.
    """

    def __init__(self, tx: TransactionManager):
        self.tx = tx

    # -------------------------------------------------------------------------
    # Inventory
    # -------------------------------------------------------------------------

    def on_hand(
        self,
        tenant_id: int,
        branch_id: int,
        stock_item_id: int,
        *,
        as_of: datetime | None = None,
        session: Session | None = None,
    ) -> Decimal:
        def _op(s: Session) -> Decimal:
            return inventory_ledger.get_balance(s, tenant_id, branch_id, stock_item_id, as_of=as_of)

        return self.tx.run(_op, session)

    def _stock_levels(self, s: Session, tenant_id: int, branch_id: int) -> list[dict]:
        balances = inventory_ledger.balances_by_subject(s, tenant_id, branch_id)
        assigned = s.scalars(
            select(BranchStock).where(
                BranchStock.tenant_id == tenant_id,
                BranchStock.branch_id == branch_id,
            )
        ).all()

        levels = {}
        for row in assigned:
            levels[row.stock_item_id] = {
                "stock_item_id": row.stock_item_id,
                "on_hand": balances.get(row.stock_item_id, inventory_ledger.quantize(0)),
                "min_threshold": inventory_ledger.quantize(row.min_threshold),
            }
        # Items with journal activity but no branch assignment alert at 0
        for stock_item_id, on_hand in balances.items():
            if stock_item_id not in levels:
                levels[stock_item_id] = {
                    "stock_item_id": stock_item_id,
                    "on_hand": on_hand,
                    "min_threshold": inventory_ledger.quantize(0),
                }
        return sorted(levels.values(), key=lambda level: (level["on_hand"], level["stock_item_id"]))

    def low_stock_alerts(self, tenant_id: int, branch_id: int, *, session: Session | None = None) -> list[dict]:
        """Items at or below their branch threshold, lowest on-hand first."""
        def _op(s: Session) -> list[dict]:
            return [
                level for level in self._stock_levels(s, tenant_id, branch_id)
                if level["on_hand"] <= level["min_threshold"]
            ]

        return self.tx.run(_op, session)

    def inventory_exceptions(self, tenant_id: int, branch_id: int, *, session: Session | None = None) -> list[dict]:
        """Stock items whose derived on-hand has gone negative."""
        def _op(s: Session) -> list[dict]:
            return [
                {"type": "negative_stock", "stock_item_id": level["stock_item_id"], "on_hand": level["on_hand"]}
                for level in self._stock_levels(s, tenant_id, branch_id)
                if level["on_hand"] < 0
            ]

        return self.tx.run(_op, session)

    # -------------------------------------------------------------------------
    # Cash
    # -------------------------------------------------------------------------

    def session_totals(self, tenant_id: int, session_id: int, *, session: Session | None = None) -> SessionTotals:
        """
        Cash in / out / net / expected for one session, per currency.

        expected = opening float + SUM(approved signed movements).
        PENDING and REJECTED movements are ignored.
        """
        def _op(s: Session) -> SessionTotals:
            cash_session = s.scalars(
                select(CashSession).where(
                    CashSession.id == session_id,
                    CashSession.tenant_id == tenant_id,
                )
            ).first()
            if cash_session is None:
                raise NotFoundError("Cash session", session_id)

            columns = []
            for currency in ("usd", "khr"):
                amount = getattr(CashMovement, f"amount_{currency}")
                columns.append(func.coalesce(func.sum(case((amount > 0, amount), else_=0)), 0))
                columns.append(func.coalesce(func.sum(case((amount < 0, -amount), else_=0)), 0))

            in_usd, out_usd, in_khr, out_khr = s.execute(
                select(*columns).where(
                    CashMovement.tenant_id == tenant_id,
                    CashMovement.session_id == session_id,
                    CashMovement.status == MOVEMENT_APPROVED,
                )
            ).one()

            return SessionTotals(
                session_id=session_id,
                usd=self._currency_totals(cash_session.opening_float_usd, in_usd, out_usd),
                khr=self._currency_totals(cash_session.opening_float_khr, in_khr, out_khr),
            )

        return self.tx.run(_op, session)

    @staticmethod
    def _currency_totals(opening_float, cash_in, cash_out) -> CurrencyTotals:
        cash_in = _money(cash_in)
        cash_out = _money(cash_out)
        net = cash_in - cash_out
        return CurrencyTotals(
            total_cash_in=cash_in,
            total_cash_out=cash_out,
            net_cash_flow=net,
            expected_cash=_money(opening_float) + net,
        )

    def expected_cash(self, s: Session, cash_session: CashSession) -> tuple[Decimal, Decimal]:
        """Expected (usd, khr) for a session row already loaded in `s`."""
        movements_usd = cash_ledger.get_balance(
            s, cash_session.tenant_id, cash_session.branch_id, cash_session.id, column="amount_usd"
        )
        movements_khr = cash_ledger.get_balance(
            s, cash_session.tenant_id, cash_session.branch_id, cash_session.id, column="amount_khr"
        )
        return (
            _money(cash_session.opening_float_usd) + movements_usd,
            _money(cash_session.opening_float_khr) + movements_khr,
        )
