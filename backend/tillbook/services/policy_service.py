# Overview: Tenant policy lookups (cash sessions, inventory) with safe defaults.

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..errors import ValidationError
from ..models import CashSessionPolicy, InventoryPolicy
from ..time_utils import utcnow


@dataclass(frozen=True)
class CashSessionPolicies:
    """Effective cash policy for a tenant. Defaults apply when no row exists."""
    require_session_for_sales: bool = True
    allow_paid_out: bool = True
    require_refund_approval: bool = True
    allow_manual_adjustment: bool = False
    paid_out_limit_usd: Decimal = Decimal("500")
    paid_out_limit_khr: Decimal = Decimal("2000000")
    variance_review_threshold_usd: Decimal = Decimal("5.00")


CASH_POLICY_FIELDS = tuple(f.name for f in fields(CashSessionPolicies))


class PolicyService:
    """
    Read side of the policy module, as seen by cash and inventory.

    NULL policy columns fall back to the defaults; the variance threshold and
    subtract-on-finalize defaults come from app config.
    """

    def __init__(
        self,
        *,
        default_variance_threshold_usd: Decimal = Decimal("5.00"),
        default_subtract_on_finalize: bool = True,
    ):
        self.cash_defaults = CashSessionPolicies(
            variance_review_threshold_usd=Decimal(str(default_variance_threshold_usd))
        )
        self.default_subtract_on_finalize = default_subtract_on_finalize

    # =========================================================================
    # CASH
    # =========================================================================

    def get_cash_session_policies(self, session: Session, tenant_id: int) -> CashSessionPolicies:
        row = session.get(CashSessionPolicy, tenant_id)
        if row is None:
            return self.cash_defaults

        overrides = {}
        for name in CASH_POLICY_FIELDS:
            value = getattr(row, name)
            if value is None:
                continue
            if isinstance(getattr(self.cash_defaults, name), Decimal):
                overrides[name] = Decimal(str(value))
            else:
                overrides[name] = bool(value)
        return replace(self.cash_defaults, **overrides)

    def set_cash_session_policies(self, session: Session, tenant_id: int, **values) -> CashSessionPolicies:
        """Upsert the tenant's cash policy row. Passing None resets a field to its default."""
        unknown = set(values) - set(CASH_POLICY_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown cash policy fields: {', '.join(sorted(unknown))}")

        for name in ("paid_out_limit_usd", "paid_out_limit_khr", "variance_review_threshold_usd"):
            if values.get(name) is not None and Decimal(str(values[name])) < 0:
                raise ValidationError(f"{name} cannot be negative")

        row = session.get(CashSessionPolicy, tenant_id)
        if row is None:
            row = CashSessionPolicy(tenant_id=tenant_id)
            session.add(row)
        for name, value in values.items():
            setattr(row, name, value)
        row.updated_at = utcnow()
        session.flush()
        return self.get_cash_session_policies(session, tenant_id)

    # =========================================================================
    # INVENTORY
    # =========================================================================

    def _inventory_policy(self, session: Session, tenant_id: int) -> InventoryPolicy | None:
        return session.scalars(select(InventoryPolicy).where(InventoryPolicy.tenant_id == tenant_id)).first()

    def should_subtract_on_sale(self, session: Session, tenant_id: int, branch_id: int) -> bool:
        """Branch override wins over the tenant flag, which wins over config."""
        policy = self._inventory_policy(session, tenant_id)
        if policy is None:
            return self.default_subtract_on_finalize

        override = (policy.branch_overrides or {}).get(str(branch_id)) or {}
        if "subtract_on_finalize" in override:
            return bool(override["subtract_on_finalize"])
        return bool(policy.subtract_on_finalize)

    def is_menu_item_excluded(self, session: Session, tenant_id: int, menu_item_id: str) -> bool:
        policy = self._inventory_policy(session, tenant_id)
        if policy is None:
            return False
        return str(menu_item_id) in {str(item) for item in (policy.excluded_menu_item_ids or [])}

    def set_inventory_policy(
        self,
        session: Session,
        tenant_id: int,
        *,
        subtract_on_finalize: bool | None = None,
        branch_overrides: dict | None = None,
        excluded_menu_item_ids: list[str] | None = None,
    ) -> InventoryPolicy:
        if subtract_on_finalize is None and branch_overrides is None and excluded_menu_item_ids is None:
            raise ValidationError("At least one field must be provided for update")

        policy = self._inventory_policy(session, tenant_id)
        if policy is None:
            policy = InventoryPolicy(
                tenant_id=tenant_id,
                subtract_on_finalize=self.default_subtract_on_finalize,
                branch_overrides={},
                excluded_menu_item_ids=[],
            )
            session.add(policy)

        if subtract_on_finalize is not None:
            policy.subtract_on_finalize = subtract_on_finalize
        if branch_overrides is not None:
            policy.branch_overrides = {str(k): dict(v) for k, v in branch_overrides.items()}
        if excluded_menu_item_ids is not None:
            policy.excluded_menu_item_ids = [str(item) for item in excluded_menu_item_ids]
        policy.updated_at = utcnow()
        session.flush()
        return policy
