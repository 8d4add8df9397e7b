"""
Cash Session Service

Till sessions (shifts) and the cash movements recorded against them.

DESIGN PRINCIPLES:
- At most one OPEN session per register (or per branch for branch-scoped
  sessions). The lookup below plus the partial unique indexes enforce it.
- Expected cash is never stored while OPEN. It is the opening float plus the
  SUM of APPROVED signed movements, frozen into the row at close.
- Every status change and every movement is written in one transaction with
  its outbox event (and audit record where compliance-relevant).
- Movements are immutable; a PENDING movement may be reviewed once.

State machine:
    OPEN --close--> CLOSED | PENDING_REVIEW
    OPEN --force_close--> CLOSED | PENDING_REVIEW
    PENDING_REVIEW --approve--> APPROVED
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import ConflictError, NotFoundError, ValidationError
from ..events import (
    CashMovementRecordedV1,
    CashMovementReviewedV1,
    CashRefundUnrecordedV1,
    CashSessionApprovedV1,
    CashSessionClosedV1,
    CashSessionOpenedV1,
    CashSessionTakenOverV1,
)
from ..models import CashMovement, CashRegister, CashSession
from ..models.cash import (
    CASH_DECREASING,
    CASH_MOVEMENT_TYPES,
    MOVEMENT_APPROVED,
    MOVEMENT_PENDING,
    MOVEMENT_REJECTED,
    SESSION_APPROVED,
    SESSION_CLOSED,
    SESSION_OPEN,
    SESSION_PENDING_REVIEW,
)
from ..time_utils import utcnow
from .audit_service import AuditEntry, AuditWriter
from .balance_service import BalanceProjector
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import cash_ledger
from .outbox_service import OutboxPublisher
from .policy_service import PolicyService
from .register_service import REGISTER_ACTIVE
from .transaction import TransactionManager

logger = logging.getLogger(__name__)

MONEY_QUANTUM = Decimal("0.01")
REASON_MIN_LENGTH = 3
REASON_MAX_LENGTH = 120


# =============================================================================
# SESSION SCOPE
# =============================================================================

@dataclass(frozen=True)
class BranchScope:
    tenant_id: int
    branch_id: int


@dataclass(frozen=True)
class RegisterScope:
    tenant_id: int
    branch_id: int
    register_id: int


SessionScope = BranchScope | RegisterScope


def _scope_filter(stmt, scope: SessionScope):
    stmt = stmt.where(CashSession.tenant_id == scope.tenant_id)
    if isinstance(scope, RegisterScope):
        return stmt.where(CashSession.register_id == scope.register_id)
    return stmt.where(CashSession.branch_id == scope.branch_id, CashSession.register_id.is_(None))


# =============================================================================
# INPUT HELPERS
# =============================================================================

def to_money(value, field_name: str) -> Decimal:
    """Parse an amount to a 2dp Decimal; floats are rejected to avoid binary rounding."""
    if value is None:
        return Decimal("0.00")
    if isinstance(value, (bool, float)):
        raise ValidationError(f"{field_name} must be a decimal string or integer")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"{field_name} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    if amount != amount.quantize(MONEY_QUANTUM):
        raise ValidationError(f"{field_name} cannot have more than 2 decimal places")
    return amount.quantize(MONEY_QUANTUM)


def _require_reason(reason: str | None, *, max_length: int | None = REASON_MAX_LENGTH) -> str:
    text = (reason or "").strip()
    if max_length is None:
        if len(text) < REASON_MIN_LENGTH:
            raise ValidationError(f"Reason must be at least {REASON_MIN_LENGTH} characters")
    elif not REASON_MIN_LENGTH <= len(text) <= max_length:
        raise ValidationError(f"Reason must be between {REASON_MIN_LENGTH} and {max_length} characters")
    return text


class CashSessionService:
    def __init__(
        self,
        tx: TransactionManager,
        policies: PolicyService,
        audit: AuditWriter,
        outbox: OutboxPublisher,
        projector: BalanceProjector,
    ):
        self.tx = tx
        self.policies = policies
        self.audit = audit
        self.outbox = outbox
        self.projector = projector

    def _write(self, fn):
        return run_with_retry(lambda: self.tx.with_transaction(fn))

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def _load_session(
        self, s: Session, tenant_id: int, session_id: int, *, lock: bool = False, shared: bool = False
    ) -> CashSession:
        """
        lock=True serialises state transitions (close, approve, take over).
        shared=True is for appends: they run concurrently with each other but
        wait for an in-flight transition and then see its committed status.
        """
        stmt = select(CashSession).where(CashSession.id == session_id, CashSession.tenant_id == tenant_id)
        if lock:
            stmt = lock_for_update(stmt)
        elif shared:
            stmt = lock_for_update(stmt, read=True)
        cash_session = s.scalars(stmt).first()
        if cash_session is None:
            raise NotFoundError("Cash session", session_id)
        return cash_session

    def _find_open(self, s: Session, scope: SessionScope) -> CashSession | None:
        stmt = _scope_filter(select(CashSession), scope).where(CashSession.status == SESSION_OPEN)
        return s.scalars(stmt).first()

    def get_session(self, tenant_id: int, session_id: int) -> CashSession:
        return self.tx.with_transaction(lambda s: self._load_session(s, tenant_id, session_id))

    def get_active_session(self, scope: SessionScope) -> CashSession | None:
        return self.tx.with_transaction(lambda s: self._find_open(s, scope))

    def find_open_session_for_actor(
        self, s: Session, tenant_id: int, branch_id: int, actor_id: int, *, shared: bool = False
    ) -> CashSession | None:
        """The OPEN session in the branch the actor is currently responsible for."""
        stmt = (
            select(CashSession)
            .where(
                CashSession.tenant_id == tenant_id,
                CashSession.branch_id == branch_id,
                CashSession.responsible_actor_id == actor_id,
                CashSession.status == SESSION_OPEN,
            )
            .order_by(CashSession.opened_at.desc(), CashSession.id.desc())
        )
        if shared:
            stmt = lock_for_update(stmt, read=True)
        return s.scalars(stmt).first()

    # =========================================================================
    # OPEN
    # =========================================================================

    def open_session(
        self,
        scope: SessionScope,
        opened_by: int,
        opening_float_usd=0,
        opening_float_khr=0,
        note: str | None = None,
    ) -> CashSession:
        """
        Open a session for a register or a whole branch.

        Raises:
            ValidationError: negative float, inactive register
            NotFoundError: register not in the tenant/branch
            ConflictError: an OPEN session already exists for the scope
        """
        float_usd = to_money(opening_float_usd, "opening_float_usd")
        float_khr = to_money(opening_float_khr, "opening_float_khr")
        if float_usd < 0 or float_khr < 0:
            raise ValidationError("Opening float cannot be negative")

        register_id = scope.register_id if isinstance(scope, RegisterScope) else None

        def _op(s: Session) -> CashSession:
            if register_id is not None:
                register = s.scalars(
                    select(CashRegister).where(
                        CashRegister.id == register_id,
                        CashRegister.tenant_id == scope.tenant_id,
                        CashRegister.branch_id == scope.branch_id,
                    )
                ).first()
                if register is None:
                    raise NotFoundError("Register", register_id)
                if register.status != REGISTER_ACTIVE:
                    raise ValidationError("Cannot open a session on an inactive register")

            existing = self._find_open(s, scope)
            if existing is not None:
                raise ConflictError(
                    f"An open cash session already exists (session {existing.id})",
                    details={"session_id": existing.id},
                )

            cash_session = CashSession(
                tenant_id=scope.tenant_id,
                branch_id=scope.branch_id,
                register_id=register_id,
                status=SESSION_OPEN,
                opened_by=opened_by,
                responsible_actor_id=opened_by,
                opened_at=utcnow(),
                opening_float_usd=float_usd,
                opening_float_khr=float_khr,
                note=note,
            )
            s.add(cash_session)
            try:
                s.flush()
            except IntegrityError as exc:
                # Lost a race with a concurrent open for the same scope
                raise ConflictError("An open cash session already exists for this scope") from exc

            self.outbox.publish(
                CashSessionOpenedV1(
                    tenant_id=cash_session.tenant_id,
                    branch_id=cash_session.branch_id,
                    session_id=cash_session.id,
                    register_id=register_id,
                    opened_by=opened_by,
                    opening_float_usd=float_usd,
                    opening_float_khr=float_khr,
                ),
                s,
            )
            return cash_session

        cash_session = self._write(_op)
        logger.info("Cash session %s opened by %s", cash_session.id, opened_by)
        return cash_session

    # =========================================================================
    # MOVEMENTS
    # =========================================================================

    def _append_movement(
        self,
        s: Session,
        cash_session: CashSession,
        *,
        actor_id: int | None,
        movement_type: str,
        status: str,
        amount_usd: Decimal,
        amount_khr: Decimal,
        reason: str | None,
        ref_sale_id: str | None = None,
        occurred_at=None,
    ) -> CashMovement:
        movement = cash_ledger.append(
            s,
            tenant_id=cash_session.tenant_id,
            branch_id=cash_session.branch_id,
            register_id=cash_session.register_id,
            session_id=cash_session.id,
            actor_id=actor_id,
            type=movement_type,
            status=status,
            amount_usd=amount_usd,
            amount_khr=amount_khr,
            ref_sale_id=ref_sale_id,
            reason=reason,
            occurred_at=occurred_at,
        )
        self.outbox.publish(
            CashMovementRecordedV1(
                tenant_id=cash_session.tenant_id,
                branch_id=cash_session.branch_id,
                session_id=cash_session.id,
                register_id=cash_session.register_id,
                movement_id=movement.id,
                movement_type=movement_type,
                status=status,
                actor_id=actor_id,
                amount_usd=movement.amount_usd,
                amount_khr=movement.amount_khr,
                ref_sale_id=ref_sale_id,
                reason=reason,
            ),
            s,
        )
        return movement

    def record_movement(
        self,
        tenant_id: int,
        session_id: int,
        actor_id: int,
        movement_type: str,
        amount_usd=0,
        amount_khr=0,
        reason: str | None = None,
        *,
        requires_approval: bool = False,
        ref_sale_id: str | None = None,
        occurred_at=None,
    ) -> CashMovement:
        """
        Record a cash movement on an OPEN session.

        PAID_IN / PAID_OUT / SALE_CASH / REFUND_CASH take non-negative
        magnitudes and are signed here. ADJUSTMENT takes signed amounts.
        """
        if movement_type not in CASH_MOVEMENT_TYPES:
            raise ValidationError(f"Movement type must be one of {', '.join(CASH_MOVEMENT_TYPES)}")
        reason_text = _require_reason(reason)

        usd = to_money(amount_usd, "amount_usd")
        khr = to_money(amount_khr, "amount_khr")
        if usd == 0 and khr == 0:
            raise ValidationError("Amount must be non-zero in at least one currency")
        if movement_type != "ADJUSTMENT" and (usd < 0 or khr < 0):
            raise ValidationError("Amount cannot be negative")

        def _op(s: Session) -> CashMovement:
            policies = self.policies.get_cash_session_policies(s, tenant_id)

            if movement_type == "PAID_OUT":
                if not policies.allow_paid_out:
                    raise ValidationError("Paid-out operations are not allowed by tenant policy")
                if not requires_approval and (
                    usd > policies.paid_out_limit_usd or khr > policies.paid_out_limit_khr
                ):
                    raise ValidationError(
                        f"Paid-out amount exceeds limit (${policies.paid_out_limit_usd} USD / "
                        f"{policies.paid_out_limit_khr} KHR). Manager approval required."
                    )
            if movement_type == "ADJUSTMENT" and not policies.allow_manual_adjustment:
                raise ValidationError("Manual adjustments are not allowed by tenant policy")

            cash_session = self._load_session(s, tenant_id, session_id, shared=True)
            if not cash_session.is_open:
                raise ValidationError("Session is not open. Cannot record movements.")

            status = MOVEMENT_APPROVED
            if movement_type == "REFUND_CASH" and policies.require_refund_approval:
                status = MOVEMENT_PENDING
            if requires_approval:
                status = MOVEMENT_PENDING

            sign = -1 if movement_type in CASH_DECREASING else 1
            return self._append_movement(
                s,
                cash_session,
                actor_id=actor_id,
                movement_type=movement_type,
                status=status,
                amount_usd=usd * sign,
                amount_khr=khr * sign,
                reason=reason_text,
                ref_sale_id=ref_sale_id,
                occurred_at=occurred_at,
            )

        return self._write(_op)

    def review_movement(self, tenant_id: int, movement_id: int, reviewer_id: int, approve: bool) -> CashMovement:
        """Resolve a PENDING movement. Only possible while its session is OPEN."""
        def _op(s: Session) -> CashMovement:
            movement = s.scalars(
                lock_for_update(
                    select(CashMovement).where(
                        CashMovement.id == movement_id,
                        CashMovement.tenant_id == tenant_id,
                    )
                )
            ).first()
            if movement is None:
                raise NotFoundError("Cash movement", movement_id)
            if movement.status != MOVEMENT_PENDING:
                raise ValidationError(f"Movement is {movement.status}, only PENDING movements can be reviewed")

            cash_session = self._load_session(s, tenant_id, movement.session_id, lock=True)
            if not cash_session.is_open:
                raise ValidationError("Session is not open. Cannot review movements.")

            movement.status = MOVEMENT_APPROVED if approve else MOVEMENT_REJECTED
            movement.reviewed_by = reviewer_id
            movement.reviewed_at = utcnow()
            s.flush()

            self.audit.write(
                AuditEntry(
                    tenant_id=tenant_id,
                    branch_id=movement.branch_id,
                    employee_id=reviewer_id,
                    action_type="CASH_MOVEMENT_APPROVED" if approve else "CASH_MOVEMENT_REJECTED",
                    resource_type="cash_movement",
                    resource_id=movement.id,
                    details={
                        "session_id": movement.session_id,
                        "type": movement.type,
                        "amount_usd": str(movement.amount_usd),
                        "amount_khr": str(movement.amount_khr),
                    },
                ),
                s,
            )
            self.outbox.publish(
                CashMovementReviewedV1(
                    tenant_id=tenant_id,
                    branch_id=movement.branch_id,
                    session_id=movement.session_id,
                    movement_id=movement.id,
                    status=movement.status,
                    reviewed_by=reviewer_id,
                ),
                s,
            )
            return movement

        return self._write(_op)

    def list_movements(self, tenant_id: int, session_id: int) -> list[CashMovement]:
        def _op(s: Session) -> list[CashMovement]:
            cash_session = self._load_session(s, tenant_id, session_id)
            return cash_ledger.query(s, tenant_id, cash_session.branch_id, cash_session.id)

        return self.tx.with_transaction(_op)

    # -------------------------------------------------------------------------
    # Sale-driven movements (called by the sales subscribers)
    # -------------------------------------------------------------------------

    def sale_movements(self, s: Session, tenant_id: int, sale_id: str) -> list[CashMovement]:
        stmt = (
            select(CashMovement)
            .where(CashMovement.tenant_id == tenant_id, CashMovement.ref_sale_id == sale_id)
            .order_by(CashMovement.id.asc())
        )
        return list(s.scalars(stmt))

    def record_sale_cash(
        self,
        tenant_id: int,
        branch_id: int,
        actor_id: int,
        sale_id: str,
        amount_usd: Decimal,
        amount_khr: Decimal,
    ) -> CashMovement | None:
        """
        SALE_CASH for a finalized sale on the actor's open session.

        Returns None (nothing written) when the sale already has a SALE_CASH
        movement or the actor has no open session.
        """
        usd = to_money(amount_usd, "amount_usd")
        khr = to_money(amount_khr, "amount_khr")
        if usd < 0 or khr < 0:
            raise ValidationError("Sale cash cannot be negative")
        if usd == 0 and khr == 0:
            return None

        def _op(s: Session) -> CashMovement | None:
            if any(m.type == "SALE_CASH" for m in self.sale_movements(s, tenant_id, sale_id)):
                return None

            cash_session = self.find_open_session_for_actor(s, tenant_id, branch_id, actor_id, shared=True)
            if cash_session is None:
                logger.warning("No open cash session for actor %s; sale %s cash not recorded", actor_id, sale_id)
                return None

            movement = self._append_movement(
                s,
                cash_session,
                actor_id=actor_id,
                movement_type="SALE_CASH",
                status=MOVEMENT_APPROVED,
                amount_usd=usd,
                amount_khr=khr,
                reason=f"Sale {sale_id}",
                ref_sale_id=sale_id,
            )
            self.audit.write(
                AuditEntry(
                    tenant_id=tenant_id,
                    branch_id=branch_id,
                    employee_id=actor_id,
                    action_type="CASH_TENDER_ATTACHED_TO_SALE",
                    resource_type="sale",
                    resource_id=sale_id,
                    details={
                        "session_id": cash_session.id,
                        "movement_id": movement.id,
                        "amount_usd": str(usd),
                        "amount_khr": str(khr),
                    },
                ),
                s,
            )
            return movement

        return self._write(_op)

    def record_sale_refund(self, tenant_id: int, actor_id: int, sale_id: str, reason: str = "") -> CashMovement | None:
        """
        REFUND_CASH reversing a voided sale's SALE_CASH movement.

        The refund lands on the sale's session while it is OPEN, otherwise
        on the actor's current OPEN session in the same branch. With neither
        available nothing is appended; a CASH_REFUND_UNRECORDED audit record
        and a cash.refund_unrecorded event are written instead.

        Returns None when the sale took no cash, was already refunded or
        the refund could not be recorded.
        """
        def _op(s: Session) -> CashMovement | None:
            movements = self.sale_movements(s, tenant_id, sale_id)
            if any(m.type == "REFUND_CASH" for m in movements):
                return None
            sale_cash = next((m for m in movements if m.type == "SALE_CASH"), None)
            if sale_cash is None:
                return None

            cash_session = self._load_session(s, tenant_id, sale_cash.session_id, shared=True)
            if not cash_session.is_open:
                sale_session = cash_session
                cash_session = None
                if actor_id is not None:
                    cash_session = self.find_open_session_for_actor(
                        s, tenant_id, sale_session.branch_id, actor_id, shared=True
                    )
                if cash_session is None:
                    self._record_unrecorded_refund(s, sale_session, sale_cash, actor_id, reason)
                    return None

            movement = self._append_movement(
                s,
                cash_session,
                actor_id=actor_id,
                movement_type="REFUND_CASH",
                status=MOVEMENT_APPROVED,
                amount_usd=-sale_cash.amount_usd,
                amount_khr=-sale_cash.amount_khr,
                reason=f"Void sale {sale_id}: {reason}"[:255],
                ref_sale_id=sale_id,
            )
            self.audit.write(
                AuditEntry(
                    tenant_id=tenant_id,
                    branch_id=cash_session.branch_id,
                    employee_id=actor_id,
                    action_type="CASH_REFUND_APPROVED",
                    resource_type="sale",
                    resource_id=sale_id,
                    details={
                        "session_id": cash_session.id,
                        "sale_session_id": sale_cash.session_id,
                        "movement_id": movement.id,
                        "amount_usd": str(-sale_cash.amount_usd),
                        "amount_khr": str(-sale_cash.amount_khr),
                        "reason": reason,
                    },
                ),
                s,
            )
            return movement

        return self._write(_op)

    def _record_unrecorded_refund(
        self,
        s: Session,
        sale_session: CashSession,
        sale_cash: CashMovement,
        actor_id: int | None,
        reason: str,
    ) -> None:
        sale_id = sale_cash.ref_sale_id
        already_flagged = any(
            row.action_type == "CASH_REFUND_UNRECORDED"
            for row in self.audit.list_for_resource(s, sale_session.tenant_id, "sale", sale_id)
        )
        if already_flagged:
            return

        logger.warning(
            "Session %s is %s and actor %s has no open session; refund for voided sale %s not recorded",
            sale_session.id, sale_session.status, actor_id, sale_id,
        )
        self.audit.write(
            AuditEntry(
                tenant_id=sale_session.tenant_id,
                branch_id=sale_session.branch_id,
                employee_id=actor_id,
                action_type="CASH_REFUND_UNRECORDED",
                resource_type="sale",
                resource_id=sale_id,
                outcome="FAILURE",
                details={
                    "session_id": sale_session.id,
                    "session_status": sale_session.status,
                    "amount_usd": str(-sale_cash.amount_usd),
                    "amount_khr": str(-sale_cash.amount_khr),
                    "reason": reason,
                },
            ),
            s,
        )
        self.outbox.publish(
            CashRefundUnrecordedV1(
                tenant_id=sale_session.tenant_id,
                branch_id=sale_session.branch_id,
                sale_id=sale_id,
                session_id=sale_session.id,
                session_status=sale_session.status,
                amount_usd=-sale_cash.amount_usd,
                amount_khr=-sale_cash.amount_khr,
                actor_id=actor_id,
            ),
            s,
        )

    # =========================================================================
    # TAKE OVER
    # =========================================================================

    def take_over(self, tenant_id: int, session_id: int, new_actor_id: int, reason: str) -> CashSession:
        """Hand responsibility for an OPEN session to another actor without closing it."""
        reason_text = _require_reason(reason, max_length=None)

        def _op(s: Session) -> CashSession:
            cash_session = self._load_session(s, tenant_id, session_id, lock=True)
            if not cash_session.is_open:
                raise ValidationError("Session is not open")
            previous_actor_id = cash_session.responsible_actor_id
            if previous_actor_id == new_actor_id:
                raise ValidationError("Session is already the responsibility of this actor")

            cash_session.responsible_actor_id = new_actor_id
            s.flush()

            self.audit.write(
                AuditEntry(
                    tenant_id=tenant_id,
                    branch_id=cash_session.branch_id,
                    employee_id=new_actor_id,
                    action_type="CASH_SESSION_TAKEN_OVER",
                    resource_type="cash_session",
                    resource_id=cash_session.id,
                    details={"previous_actor_id": previous_actor_id, "reason": reason_text},
                ),
                s,
            )
            self.outbox.publish(
                CashSessionTakenOverV1(
                    tenant_id=tenant_id,
                    branch_id=cash_session.branch_id,
                    session_id=cash_session.id,
                    previous_actor_id=previous_actor_id,
                    new_actor_id=new_actor_id,
                    reason=reason_text,
                ),
                s,
            )
            return cash_session

        return self._write(_op)

    # =========================================================================
    # CLOSE
    # =========================================================================

    def _close(
        self,
        s: Session,
        cash_session: CashSession,
        *,
        closed_by: int,
        counted_usd: Decimal | None,
        counted_khr: Decimal | None,
        note: str | None,
        forced: bool,
    ) -> CashSession:
        expected_usd, expected_khr = self.projector.expected_cash(s, cash_session)
        counted_usd = expected_usd if counted_usd is None else counted_usd
        counted_khr = expected_khr if counted_khr is None else counted_khr
        variance_usd = counted_usd - expected_usd
        variance_khr = counted_khr - expected_khr

        policies = self.policies.get_cash_session_policies(s, cash_session.tenant_id)
        if abs(variance_usd) > policies.variance_review_threshold_usd:
            status = SESSION_PENDING_REVIEW
        else:
            status = SESSION_CLOSED

        cash_session.status = status
        cash_session.closed_by = closed_by
        cash_session.closed_at = utcnow()
        cash_session.expected_cash_usd = expected_usd
        cash_session.expected_cash_khr = expected_khr
        cash_session.counted_cash_usd = counted_usd
        cash_session.counted_cash_khr = counted_khr
        cash_session.variance_usd = variance_usd
        cash_session.variance_khr = variance_khr
        if note is not None:
            cash_session.note = note
        s.flush()

        self.outbox.publish(
            CashSessionClosedV1(
                tenant_id=cash_session.tenant_id,
                branch_id=cash_session.branch_id,
                session_id=cash_session.id,
                closed_by=closed_by,
                status=status,
                expected_cash_usd=expected_usd,
                expected_cash_khr=expected_khr,
                counted_cash_usd=counted_usd,
                counted_cash_khr=counted_khr,
                variance_usd=variance_usd,
                variance_khr=variance_khr,
                forced=forced,
            ),
            s,
        )
        return cash_session

    def close_session(
        self,
        tenant_id: int,
        session_id: int,
        closed_by: int,
        counted_usd,
        counted_khr,
        note: str | None = None,
    ) -> CashSession:
        """
        Count the drawer and close.

        variance = counted - expected; |variance_usd| above the tenant's review
        threshold leaves the session PENDING_REVIEW instead of CLOSED.
        """
        usd = to_money(counted_usd, "counted_usd")
        khr = to_money(counted_khr, "counted_khr")
        if usd < 0 or khr < 0:
            raise ValidationError("Counted cash cannot be negative")

        def _op(s: Session) -> CashSession:
            cash_session = self._load_session(s, tenant_id, session_id, lock=True)
            if not cash_session.is_open:
                raise ValidationError(f"Session is already {cash_session.status}")
            return self._close(
                s, cash_session,
                closed_by=closed_by, counted_usd=usd, counted_khr=khr, note=note, forced=False,
            )

        cash_session = self._write(_op)
        logger.info("Cash session %s closed with status %s", cash_session.id, cash_session.status)
        return cash_session

    def force_close(
        self,
        tenant_id: int,
        session_id: int,
        closed_by: int,
        reason: str,
        counted_usd=None,
        counted_khr=None,
        note: str | None = None,
    ) -> CashSession:
        """Manager close. Missing counts default to expected cash."""
        reason_text = _require_reason(reason, max_length=None)
        usd = to_money(counted_usd, "counted_usd") if counted_usd is not None else None
        khr = to_money(counted_khr, "counted_khr") if counted_khr is not None else None
        if (usd is not None and usd < 0) or (khr is not None and khr < 0):
            raise ValidationError("Counted cash cannot be negative")

        def _op(s: Session) -> CashSession:
            cash_session = self._load_session(s, tenant_id, session_id, lock=True)
            if not cash_session.is_open:
                raise ValidationError(f"Session is already {cash_session.status}")

            cash_session = self._close(
                s, cash_session,
                closed_by=closed_by, counted_usd=usd, counted_khr=khr, note=note, forced=True,
            )
            self.audit.write(
                AuditEntry(
                    tenant_id=tenant_id,
                    branch_id=cash_session.branch_id,
                    employee_id=closed_by,
                    action_type="CASH_SESSION_FORCE_CLOSED",
                    resource_type="cash_session",
                    resource_id=cash_session.id,
                    details={
                        "reason": reason_text,
                        "status": cash_session.status,
                        "expected_cash_usd": str(cash_session.expected_cash_usd),
                        "expected_cash_khr": str(cash_session.expected_cash_khr),
                        "counted_cash_usd": str(cash_session.counted_cash_usd),
                        "counted_cash_khr": str(cash_session.counted_cash_khr),
                        "variance_usd": str(cash_session.variance_usd),
                        "variance_khr": str(cash_session.variance_khr),
                        "counted_provided": usd is not None or khr is not None,
                    },
                ),
                s,
            )
            return cash_session

        cash_session = self._write(_op)
        logger.warning("Cash session %s force-closed by %s", cash_session.id, closed_by)
        return cash_session

    # =========================================================================
    # APPROVE
    # =========================================================================

    def approve_session(self, tenant_id: int, session_id: int, approved_by: int, note: str | None = None) -> CashSession:
        def _op(s: Session) -> CashSession:
            cash_session = self._load_session(s, tenant_id, session_id, lock=True)
            if cash_session.status != SESSION_PENDING_REVIEW:
                raise ValidationError(
                    f"Only sessions pending review can be approved (session is {cash_session.status})"
                )

            cash_session.status = SESSION_APPROVED
            cash_session.approved_by = approved_by
            cash_session.approved_at = utcnow()
            if note is not None:
                cash_session.note = note
            s.flush()

            self.audit.write(
                AuditEntry(
                    tenant_id=tenant_id,
                    branch_id=cash_session.branch_id,
                    employee_id=approved_by,
                    action_type="CASH_SESSION_APPROVED",
                    resource_type="cash_session",
                    resource_id=cash_session.id,
                    details={"variance_usd": str(cash_session.variance_usd), "note": note},
                ),
                s,
            )
            self.outbox.publish(
                CashSessionApprovedV1(
                    tenant_id=tenant_id,
                    branch_id=cash_session.branch_id,
                    session_id=cash_session.id,
                    approved_by=approved_by,
                ),
                s,
            )
            return cash_session

        return self._write(_op)

    # =========================================================================
    # POLICY CHECKS / REPORTING
    # =========================================================================

    def check_sale_allowed(self, scope: SessionScope) -> CashSession | None:
        """
        Gate used by the sales module before taking payment.

        Returns the open session for the scope (None when the policy does not
        require one and none is open).
        """
        def _op(s: Session) -> CashSession | None:
            open_session = self._find_open(s, scope)
            if open_session is None:
                policies = self.policies.get_cash_session_policies(s, scope.tenant_id)
                if policies.require_session_for_sales:
                    raise ValidationError("An open cash session is required before making sales")
            return open_session

        return self.tx.with_transaction(_op)

    def session_report(self, tenant_id: int, session_id: int) -> dict:
        """
        Z-report for a session (X-report while still OPEN).

        Per-type totals are magnitudes over APPROVED movements. For an OPEN
        session expected cash is computed live; counted/variance are None.
        """
        def _op(s: Session) -> dict:
            cash_session = self._load_session(s, tenant_id, session_id)
            movements = cash_ledger.query(s, tenant_id, cash_session.branch_id, cash_session.id)

            summary = {}
            for currency in ("usd", "khr"):
                totals = cash_ledger.totals_by_reason(
                    s, tenant_id, cash_session.branch_id, cash_session.id, column=f"amount_{currency}"
                )
                zero = Decimal("0.00")
                summary[f"opening_float_{currency}"] = str(getattr(cash_session, f"opening_float_{currency}"))
                summary[f"total_sales_cash_{currency}"] = str(abs(totals.get("SALE_CASH", zero)))
                summary[f"total_paid_in_{currency}"] = str(abs(totals.get("PAID_IN", zero)))
                summary[f"total_paid_out_{currency}"] = str(abs(totals.get("PAID_OUT", zero)))
                summary[f"total_refunds_{currency}"] = str(abs(totals.get("REFUND_CASH", zero)))
                summary[f"total_adjustments_{currency}"] = str(totals.get("ADJUSTMENT", zero))

            if cash_session.is_open:
                expected_usd, expected_khr = self.projector.expected_cash(s, cash_session)
            else:
                expected_usd, expected_khr = cash_session.expected_cash_usd, cash_session.expected_cash_khr

            def fmt(value):
                return str(value) if value is not None else None

            summary.update(
                {
                    "expected_cash_usd": fmt(expected_usd),
                    "expected_cash_khr": fmt(expected_khr),
                    "counted_cash_usd": fmt(cash_session.counted_cash_usd),
                    "counted_cash_khr": fmt(cash_session.counted_cash_khr),
                    "variance_usd": fmt(cash_session.variance_usd),
                    "variance_khr": fmt(cash_session.variance_khr),
                    "pending_movements": sum(1 for m in movements if m.status == MOVEMENT_PENDING),
                }
            )
            return {
                "session": cash_session.to_dict(),
                "movements": [m.to_dict() for m in movements],
                "summary": summary,
            }

        return self.tx.with_transaction(_op)
