# Overview: Row-locking and retry helpers for concurrent writers.

from __future__ import annotations

import logging
import time

from ..errors import TransientStorageError

logger = logging.getLogger(__name__)


def lock_for_update(stmt, *, skip_locked: bool = False, read: bool = False):
    """
    Apply row-level locking for critical operations.

    skip_locked=True lets concurrent workers each claim a disjoint set of
    rows (SELECT ... FOR UPDATE SKIP LOCKED).

    read=True takes a shared lock (SELECT ... FOR SHARE): readers holding it
    run side by side but block a writer taking FOR UPDATE on the same row.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return stmt.with_for_update(read=read, skip_locked=skip_locked)


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a unit of work with retry on transient storage failures.

    func must be safe to call again: every attempt runs in its own
    transaction and a failed attempt has already been rolled back.
    """
    for attempt in range(attempts):
        try:
            return func()
        except TransientStorageError:
            if attempt >= attempts - 1:
                raise
            delay = backoff_base * (2 ** attempt)
            logger.warning("Transient storage failure, retrying in %.2fs (attempt %d/%d)",
                           delay, attempt + 1, attempts)
            time.sleep(delay)
