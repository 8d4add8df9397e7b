# Overview: Transactional outbox (publisher, in-process event bus, dispatcher).

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import DomainError, ValidationError
from ..events import DomainEvent, decode_event, encode_event
from ..models import OutboxRecord
from ..time_utils import utcnow
from .concurrency import lock_for_update
from .transaction import TransactionManager

logger = logging.getLogger(__name__)

"""
Outbox Invariants (authoritative)

- publish() inserts through the caller's session and never commits: the event
  exists exactly when the business change it describes does.
- sent_at IS NULL means "not yet delivered to every subscriber".
- Delivery is at-least-once. A row is marked sent only after every subscriber
  returned; a failing row stays unsent and is retried on later passes forever.
- Concurrent dispatchers claim disjoint rows (FOR UPDATE SKIP LOCKED).
- Rows are never deleted.
"""

Handler = Callable[[DomainEvent], None]


class SubscriberError(DomainError):
    """One or more subscribers failed for an event; the row stays unsent."""

    code = "SUBSCRIBER_FAILED"


# =============================================================================
# PUBLISHER
# =============================================================================

class OutboxPublisher:
    def publish(self, event: DomainEvent, session: Session) -> OutboxRecord:
        """Write `event` into platform_outbox inside the caller's transaction."""
        payload = encode_event(event)
        record = OutboxRecord(
            tenant_id=event.tenant_id,
            type=event.type,
            version=event.v,
            payload=payload,
            created_at=utcnow(),
            attempts=0,
        )
        session.add(record)
        session.flush()
        return record


def publish_via_outbox(event: DomainEvent, session: Session) -> OutboxRecord:
    return OutboxPublisher().publish(event, session)


# =============================================================================
# EVENT BUS
# =============================================================================

class EventBus:
    """
    In-process fan-out keyed by event type.

    Every handler for the type is invoked even when an earlier one fails;
    failures are re-raised together so the dispatcher keeps the row unsent.
    """

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def handlers_for(self, event_type: str) -> list[Handler]:
        return list(self._handlers.get(event_type, ()))

    def publish(self, event: DomainEvent) -> None:
        failures = []
        for handler in self.handlers_for(event.type):
            try:
                handler(event)
            except Exception as exc:
                name = getattr(handler, "__qualname__", repr(handler))
                logger.exception("Subscriber %s failed for %s", name, event.type)
                failures.append(f"{name}: {exc}")

        if failures:
            raise SubscriberError("; ".join(failures), details={"event_type": event.type})


# =============================================================================
# DISPATCHER
# =============================================================================

@dataclass
class DispatchResult:
    claimed: int = 0
    delivered: int = 0
    failed: int = 0
    failed_ids: list[int] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "claimed": self.claimed,
            "delivered": self.delivered,
            "failed": self.failed,
            "failed_ids": list(self.failed_ids),
            "error": self.error,
        }


class OutboxDispatcher:
    def __init__(
        self,
        tx: TransactionManager,
        bus: EventBus,
        *,
        batch_size: int = 100,
        poll_interval: float = 1.0,
    ):
        self.tx = tx
        self.bus = bus
        self.batch_size = batch_size
        self.poll_interval = poll_interval

    def _deliver(self, record: OutboxRecord) -> None:
        self.bus.publish(decode_event(record.payload))

    def dispatch(self, batch_size: int | None = None) -> DispatchResult:
        """
        Deliver one batch of undelivered rows, oldest first.

        Claim, delivery bookkeeping and marking happen in one dispatcher
        transaction. Subscribers run their own transactions.
        """
        limit = self.batch_size if batch_size is None else batch_size
        if limit < 1:
            raise ValidationError("batch_size must be positive")
        result = DispatchResult()

        def _op(session: Session) -> None:
            stmt = (
                select(OutboxRecord)
                .where(OutboxRecord.sent_at.is_(None))
                .order_by(OutboxRecord.created_at.asc(), OutboxRecord.id.asc())
                .limit(limit)
            )
            records = session.scalars(lock_for_update(stmt, skip_locked=True)).all()
            result.claimed = len(records)

            outcomes = []
            for record in records:
                try:
                    self._deliver(record)
                except Exception as exc:
                    logger.exception("Failed to deliver outbox event %s (%s)", record.id, record.type)
                    outcomes.append((record, str(exc) or exc.__class__.__name__))
                else:
                    outcomes.append((record, None))

            # Bookkeeping only after delivery so no write is pending while subscribers run
            now = utcnow()
            for record, error in outcomes:
                record.attempts = (record.attempts or 0) + 1
                if error is None:
                    record.sent_at = now
                    record.last_error = None
                    result.delivered += 1
                else:
                    record.last_error = error[:2000]
                    result.failed += 1
                    result.failed_ids.append(record.id)

        try:
            self.tx.with_transaction(_op)
        except (DomainError, SQLAlchemyError) as exc:
            logger.exception("Error processing outbox batch")
            result.error = str(exc)

        if result.claimed:
            logger.info(
                "Outbox batch processed: claimed=%d delivered=%d failed=%d",
                result.claimed, result.delivered, result.failed,
            )
        return result

    def run(
        self,
        poll_interval: float | None = None,
        stop_event: threading.Event | None = None,
        *,
        max_batches: int | None = None,
    ) -> int:
        """
        Poll until stop_event is set (or max_batches have run).

        A full batch is followed immediately by another; an empty or partial
        batch waits poll_interval. Returns the number of events delivered.
        """
        interval = self.poll_interval if poll_interval is None else poll_interval
        stop_event = stop_event or threading.Event()
        delivered = 0
        batches = 0

        logger.info("Starting outbox dispatcher (poll every %.2fs)", interval)
        while not stop_event.is_set():
            result = self.dispatch()
            delivered += result.delivered
            batches += 1
            if max_batches is not None and batches >= max_batches:
                break
            if result.claimed < self.batch_size or result.failed:
                stop_event.wait(interval)
        logger.info("Outbox dispatcher stopped after %d batches", batches)
        return delivered

    def pending(self, tenant_id: int | None = None) -> dict:
        """Undelivered row count, with the oldest row's age context."""
        def _op(session: Session) -> dict:
            stmt = select(func.count(OutboxRecord.id), func.min(OutboxRecord.created_at)).where(
                OutboxRecord.sent_at.is_(None)
            )
            if tenant_id is not None:
                stmt = stmt.where(OutboxRecord.tenant_id == tenant_id)
            count, oldest = session.execute(stmt).one()
            return {"pending": count or 0, "oldest_created_at": oldest}

        return self.tx.with_transaction(_op)

    def list_unsent(self, limit: int = 100) -> list[OutboxRecord]:
        def _op(session: Session) -> list[OutboxRecord]:
            stmt = (
                select(OutboxRecord)
                .where(OutboxRecord.sent_at.is_(None))
                .order_by(OutboxRecord.created_at.asc(), OutboxRecord.id.asc())
                .limit(limit)
            )
            return list(session.scalars(stmt))

        return self.tx.with_transaction(_op)
