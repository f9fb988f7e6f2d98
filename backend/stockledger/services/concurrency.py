# Overview: Transaction boundary, row locking and retry for document operations.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .dispatch_service import discard_deferred, dispatch_deferred


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Document rows also carry version_id, so a lost race on SQLite still
    surfaces as StaleDataError at flush time.
    """
    return query.with_for_update()


def bump_version(instance) -> None:
    """
    Force an UPDATE (and version_id increment) on a document row.

    Child-only edits such as replacing movement lines or saving stock-take
    counts leave the parent row clean; flagging it makes the optimistic
    version check cover them too.
    """
    flag_modified(instance, "status")


def run_in_transaction(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute ``func`` and commit, as one unit of work.

    - Domain errors roll back and propagate unchanged.
    - OperationalError (deadlocks, lock timeouts) and StaleDataError
      (optimistic locking conflicts) roll back and retry the whole unit.
    - Jobs registered with defer_until_commit are dispatched only after a
      successful commit.
    """
    if attempts is None:
        attempts = current_app.config.get("POSTING_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("POSTING_RETRY_BACKOFF", 0.1)

    for attempt in range(attempts):
        discard_deferred()
        try:
            result = func()
            db.session.commit()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            discard_deferred()
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Transaction conflict (%s), retrying attempt %d/%d",
                type(exc).__name__, attempt + 2, attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))
            continue
        except Exception:
            db.session.rollback()
            discard_deferred()
            raise

        dispatch_deferred()
        return result
