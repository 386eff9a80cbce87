# Overview: Row locking and retry helpers for ticket and payment read-decide-write paths.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


logger = logging.getLogger(__name__)

# Lock timeouts / deadlocks, and a lost race on Ticket.version_id or Payment.version_id.
RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    Lock the ticket or payment row a payment-gated decision reads.

    Two staff PATCHes, an inbound "ready" and a checkout webhook can all
    land on the same ticket at once. On PostgreSQL the row lock serializes
    them; SQLite ignores FOR UPDATE, so there the version_id check at flush
    is what catches the loser.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1, label: str | None = None):
    """
    Run a ticket or payment transaction, retrying when it lost a race.

    `func` re-reads the rows it decides on (settled balance, current status,
    open links) so each attempt judges fresh state. Provider calls stay
    outside it: a retried Stripe call would mint a second checkout link.
    """
    name = label or getattr(func, "__name__", "operation")
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if attempt == attempts:
                logger.error("%s still conflicting after %d attempts (%s)", name, attempts, type(exc).__name__)
                raise
            logger.warning("%s hit a concurrent update (%s); attempt %d of %d", name, type(exc).__name__,
                           attempt + 1, attempts)
            time.sleep(backoff_base * (2 ** (attempt - 1)))
