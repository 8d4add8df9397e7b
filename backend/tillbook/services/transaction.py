# Overview: Scoped transactions with an explicit session handle.

from __future__ import annotations

from typing import Callable, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..errors import TransientStorageError
from ..extensions import db

T = TypeVar("T")

"""
Transaction invariants (authoritative)

- with_transaction(fn) gives fn a fresh Session; nothing else shares it.
- Normal return commits; any exception rolls back and propagates.
- Repositories, the outbox and the audit writer only ever use the session
  they are handed. There is no ambient transaction.
- Lock/connection failures surface as TransientStorageError after rollback.
"""


class TransactionManager:
    def __init__(self, engine=None):
        self._engine = engine

    @property
    def engine(self):
        # Resolved lazily so the manager can be built before an app context exists.
        return self._engine if self._engine is not None else db.engine

    def session(self) -> Session:
        return Session(bind=self.engine, expire_on_commit=False)

    def with_transaction(self, fn: Callable[[Session], T]) -> T:
        session = self.session()
        try:
            result = fn(session)
            session.commit()
            return result
        except (OperationalError, StaleDataError) as exc:
            session.rollback()
            raise TransientStorageError(f"storage failure, transaction rolled back: {exc}") from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def run(self, fn: Callable[[Session], T], session: Session | None = None) -> T:
        """Run fn inside the caller's transaction when one is given, else in a new one."""
        if session is not None:
            return fn(session)
        return self.with_transaction(fn)
