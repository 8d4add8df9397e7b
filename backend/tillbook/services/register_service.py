"""
Cash Register Management Service

Registers are the devices cash sessions may be scoped to. They are never
deleted; an INACTIVE register cannot open new sessions and a register with
an OPEN session cannot be deactivated.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import Branch, CashRegister, CashSession
from ..models.cash import SESSION_OPEN
from .transaction import TransactionManager

REGISTER_ACTIVE = "ACTIVE"
REGISTER_INACTIVE = "INACTIVE"


class RegisterService:
    def __init__(self, tx: TransactionManager):
        self.tx = tx

    def create_register(self, tenant_id: int, branch_id: int, name: str) -> CashRegister:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Register name is required")

        def _op(session: Session) -> CashRegister:
            branch = session.scalars(
                select(Branch).where(Branch.id == branch_id, Branch.tenant_id == tenant_id)
            ).first()
            if branch is None:
                raise NotFoundError("Branch", branch_id)

            existing = session.scalars(
                select(CashRegister).where(
                    CashRegister.tenant_id == tenant_id,
                    CashRegister.branch_id == branch_id,
                    CashRegister.name == name,
                )
            ).first()
            if existing:
                raise ConflictError(f"Register '{name}' already exists in this branch")

            register = CashRegister(tenant_id=tenant_id, branch_id=branch_id, name=name, status=REGISTER_ACTIVE)
            session.add(register)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError(f"Register '{name}' already exists in this branch") from exc
            return register

        return self.tx.with_transaction(_op)

    def get_register(self, session: Session, tenant_id: int, register_id: int) -> CashRegister:
        register = session.scalars(
            select(CashRegister).where(CashRegister.id == register_id, CashRegister.tenant_id == tenant_id)
        ).first()
        if register is None:
            raise NotFoundError("Register", register_id)
        return register

    def list_registers(self, tenant_id: int, branch_id: int, *, active_only: bool = True) -> list[CashRegister]:
        def _op(session: Session) -> list[CashRegister]:
            stmt = select(CashRegister).where(
                CashRegister.tenant_id == tenant_id,
                CashRegister.branch_id == branch_id,
            )
            if active_only:
                stmt = stmt.where(CashRegister.status == REGISTER_ACTIVE)
            return list(session.scalars(stmt.order_by(CashRegister.name)))

        return self.tx.with_transaction(_op)

    def deactivate_register(self, tenant_id: int, register_id: int) -> CashRegister:
        def _op(session: Session) -> CashRegister:
            register = self.get_register(session, tenant_id, register_id)

            open_session = session.scalars(
                select(CashSession.id).where(
                    CashSession.tenant_id == tenant_id,
                    CashSession.register_id == register_id,
                    CashSession.status == SESSION_OPEN,
                )
            ).first()
            if open_session is not None:
                raise ConflictError("Cannot deactivate register with an open session. Close it first.")

            register.status = REGISTER_INACTIVE
            return register

        return self.tx.with_transaction(_op)
