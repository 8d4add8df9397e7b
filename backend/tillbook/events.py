"""
Versioned domain event contracts.

Every event crossing the outbox is one of the frozen dataclasses below,
registered under its (type, v) pair. The set is closed: decode_event()
rejects pairs it does not know. Within one version, new optional fields may
be added (decoding ignores unknown keys); breaking changes get a new class
with v bumped.

Wire format (JSON):
- keys are camelCase ("tenantId", "amountUsd")
- "type" and "v" are always present
- Decimal values are strings ("130.00"), datetimes ISO-8601 with 'Z'
"""

from __future__ import annotations

import dataclasses
import types
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Union, get_args, get_origin, get_type_hints

from .errors import ValidationError
from .time_utils import parse_iso_datetime, to_utc_z, utcnow


class EventDecodeError(ValidationError):
    """Payload is not a known (type, v) or is missing required fields."""


EVENT_TYPES: dict[tuple[str, int], type["DomainEvent"]] = {}


def register_event(cls):
    key = (cls.type, cls.v)
    if key in EVENT_TYPES:
        raise RuntimeError(f"duplicate event registration for {key}")
    EVENT_TYPES[key] = cls
    return cls


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    type: ClassVar[str]
    v: ClassVar[int]

    tenant_id: int
    branch_id: int
    timestamp: datetime = field(default_factory=utcnow)


# =============================================================================
# NESTED VALUE TYPES
# =============================================================================

@dataclass(frozen=True, kw_only=True)
class StockLine:
    stock_item_id: int
    qty: Decimal
    entry_id: int | None = None


@dataclass(frozen=True, kw_only=True)
class SaleLine:
    menu_item_id: str
    qty: Decimal


@dataclass(frozen=True, kw_only=True)
class Tender:
    method: str  # CASH, QR
    amount_usd: Decimal = Decimal("0")
    amount_khr: Decimal = Decimal("0")


# =============================================================================
# CASH EVENTS
# =============================================================================

@register_event
@dataclass(frozen=True, kw_only=True)
class CashSessionOpenedV1(DomainEvent):
    type: ClassVar[str] = "cash.session_opened"
    v: ClassVar[int] = 1

    session_id: int
    register_id: int | None = None
    opened_by: int
    opening_float_usd: Decimal
    opening_float_khr: Decimal


@register_event
@dataclass(frozen=True, kw_only=True)
class CashMovementRecordedV1(DomainEvent):
    type: ClassVar[str] = "cash.movement_recorded"
    v: ClassVar[int] = 1

    session_id: int
    register_id: int | None = None
    movement_id: int
    movement_type: str
    status: str
    actor_id: int | None = None
    amount_usd: Decimal
    amount_khr: Decimal
    ref_sale_id: str | None = None
    reason: str | None = None


@register_event
@dataclass(frozen=True, kw_only=True)
class CashMovementReviewedV1(DomainEvent):
    type: ClassVar[str] = "cash.movement_reviewed"
    v: ClassVar[int] = 1

    session_id: int
    movement_id: int
    status: str
    reviewed_by: int


@register_event
@dataclass(frozen=True, kw_only=True)
class CashSessionTakenOverV1(DomainEvent):
    type: ClassVar[str] = "cash.session_taken_over"
    v: ClassVar[int] = 1

    session_id: int
    previous_actor_id: int
    new_actor_id: int
    reason: str


@register_event
@dataclass(frozen=True, kw_only=True)
class CashSessionClosedV1(DomainEvent):
    type: ClassVar[str] = "cash.session_closed"
    v: ClassVar[int] = 1

    session_id: int
    closed_by: int
    status: str
    expected_cash_usd: Decimal
    expected_cash_khr: Decimal
    counted_cash_usd: Decimal
    counted_cash_khr: Decimal
    variance_usd: Decimal
    variance_khr: Decimal
    forced: bool = False


@register_event
@dataclass(frozen=True, kw_only=True)
class CashSessionApprovedV1(DomainEvent):
    type: ClassVar[str] = "cash.session_approved"
    v: ClassVar[int] = 1

    session_id: int
    approved_by: int


@register_event
@dataclass(frozen=True, kw_only=True)
class CashRefundUnrecordedV1(DomainEvent):
    """A voided cash sale whose refund had no OPEN session to land on."""
    type: ClassVar[str] = "cash.refund_unrecorded"
    v: ClassVar[int] = 1

    sale_id: str
    session_id: int
    session_status: str
    amount_usd: Decimal
    amount_khr: Decimal
    actor_id: int | None = None


# =============================================================================
# INVENTORY EVENTS
# =============================================================================

@dataclass(frozen=True, kw_only=True)
class _StockMovementEvent(DomainEvent):
    entry_id: int
    stock_item_id: int
    delta: Decimal
    actor_id: int | None = None
    note: str | None = None
    occurred_at: datetime


@register_event
@dataclass(frozen=True, kw_only=True)
class StockReceivedV1(_StockMovementEvent):
    type: ClassVar[str] = "inventory.stock_received"
    v: ClassVar[int] = 1


@register_event
@dataclass(frozen=True, kw_only=True)
class StockWastedV1(_StockMovementEvent):
    type: ClassVar[str] = "inventory.stock_wasted"
    v: ClassVar[int] = 1


@register_event
@dataclass(frozen=True, kw_only=True)
class StockCorrectedV1(_StockMovementEvent):
    type: ClassVar[str] = "inventory.stock_corrected"
    v: ClassVar[int] = 1


@dataclass(frozen=True, kw_only=True)
class _StockBatchEvent(DomainEvent):
    ref_sale_id: str
    lines: tuple[StockLine, ...]
    actor_id: int | None = None


@register_event
@dataclass(frozen=True, kw_only=True)
class SaleStockDeductedV1(_StockBatchEvent):
    type: ClassVar[str] = "inventory.sale_deducted"
    v: ClassVar[int] = 1


@register_event
@dataclass(frozen=True, kw_only=True)
class SaleStockRestoredV1(_StockBatchEvent):
    type: ClassVar[str] = "inventory.sale_void_restored"
    v: ClassVar[int] = 1


@register_event
@dataclass(frozen=True, kw_only=True)
class SaleStockRedeductedV1(_StockBatchEvent):
    type: ClassVar[str] = "inventory.sale_reopen_deducted"
    v: ClassVar[int] = 1


# =============================================================================
# SALES EVENTS (published by the sales module, consumed here)
# =============================================================================

@register_event
@dataclass(frozen=True, kw_only=True)
class SaleFinalizedV1(DomainEvent):
    type: ClassVar[str] = "sales.sale_finalized"
    v: ClassVar[int] = 1

    sale_id: str
    lines: tuple[SaleLine, ...] = ()
    tenders: tuple[Tender, ...] = ()
    actor_id: int


@register_event
@dataclass(frozen=True, kw_only=True)
class SaleVoidedV1(DomainEvent):
    type: ClassVar[str] = "sales.sale_voided"
    v: ClassVar[int] = 1

    sale_id: str
    lines: tuple[SaleLine, ...] = ()
    actor_id: int
    reason: str = ""


@register_event
@dataclass(frozen=True, kw_only=True)
class SaleReopenedV1(DomainEvent):
    type: ClassVar[str] = "sales.sale_reopened"
    v: ClassVar[int] = 1

    original_sale_id: str
    new_sale_id: str
    actor_id: int
    reason: str = ""


# =============================================================================
# CODEC
# =============================================================================

def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _encode_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return to_utc_z(value)
    if dataclasses.is_dataclass(value):
        return _encode_fields(value)
    if isinstance(value, (tuple, list)):
        return [_encode_value(item) for item in value]
    return value


def _encode_fields(obj) -> dict:
    return {_camel(f.name): _encode_value(getattr(obj, f.name)) for f in dataclasses.fields(obj)}


def _decode_value(tp, raw):
    if raw is None:
        return None

    origin = get_origin(tp)
    if origin in (Union, types.UnionType):
        inner = [arg for arg in get_args(tp) if arg is not type(None)]
        return _decode_value(inner[0], raw)
    if origin is tuple:
        item_tp = get_args(tp)[0]
        return tuple(_decode_value(item_tp, item) for item in raw)

    if tp is Decimal:
        return Decimal(str(raw))
    if tp is datetime:
        return parse_iso_datetime(raw)
    if dataclasses.is_dataclass(tp):
        return _decode_fields(tp, raw)
    if tp in (int, str, bool):
        return tp(raw)
    return raw


def _decode_fields(cls, data: dict):
    hints = get_type_hints(cls)
    kwargs = {}
    for f in dataclasses.fields(cls):
        key = _camel(f.name)
        if key in data:
            kwargs[f.name] = _decode_value(hints[f.name], data[key])
    return cls(**kwargs)


def encode_event(event: DomainEvent) -> dict:
    """Serialize an event to its JSON-ready wire form."""
    if (event.type, event.v) not in EVENT_TYPES:
        raise EventDecodeError(f"unregistered event type {event.type!r} v{event.v}")
    payload = {"type": event.type, "v": event.v}
    payload.update(_encode_fields(event))
    return payload


def decode_event(payload: dict) -> DomainEvent:
    """Rebuild the typed event for a wire payload."""
    try:
        key = (payload["type"], int(payload["v"]))
    except (KeyError, TypeError, ValueError):
        raise EventDecodeError("event payload must carry 'type' and integer 'v'")

    cls = EVENT_TYPES.get(key)
    if cls is None:
        raise EventDecodeError(f"unknown event {key[0]!r} v{key[1]}")

    try:
        return _decode_fields(cls, payload)
    except (TypeError, ValueError, ArithmeticError) as exc:
        raise EventDecodeError(f"malformed {key[0]} v{key[1]} payload: {exc}")
