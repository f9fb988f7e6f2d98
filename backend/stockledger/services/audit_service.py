# Overview: Append-only audit trail of document state transitions.

"""
Audit sink.

WHY: Every state transition leaves one actor/action/reference record.
Records are written after the transition commits, on the dispatch worker,
so an audit failure is logged and never undoes the transition.

The sink is pluggable: anything with a ``record(actor_id, action, ref_type,
ref_id, payload=None)`` method can be installed at
``app.extensions["stockledger.audit_sink"]``.
"""
from __future__ import annotations

import json
from typing import Any

from flask import current_app

from ..extensions import db
from ..models import AuditLog
from .dispatch_service import defer_until_commit


EXTENSION_KEY = "stockledger.audit_sink"

REF_MOVEMENT = "MOVEMENT"
REF_STOCK_TAKE = "STOCK_TAKE"


class DatabaseAuditSink:
    """Writes AuditLog rows in the dispatch job's own session."""

    def record(
        self,
        actor_id: int | None,
        action: str,
        ref_type: str,
        ref_id: int,
        payload: dict | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            actor_user_id=actor_id,
            action=action,
            ref_type=ref_type,
            ref_id=ref_id,
            payload=json.dumps(payload, default=str) if payload else None,
        )
        db.session.add(entry)
        db.session.commit()
        return entry


def get_audit_sink():
    return current_app.extensions[EXTENSION_KEY]


def _record_job(actor_id, action, ref_type, ref_id, payload) -> None:
    # Resolved at run time so a sink swapped after startup is honored
    get_audit_sink().record(actor_id, action, ref_type, ref_id, payload)


def record_after_commit(
    actor_id: int | None,
    action: str,
    ref_type: str,
    ref_id: int,
    payload: dict[str, Any] | None = None,
) -> None:
    """Queue an audit record for the current transaction."""
    defer_until_commit(_record_job, actor_id, action, ref_type, ref_id, payload)


def list_audit_records(ref_type: str, ref_id: int) -> list[AuditLog]:
    return (
        db.session.query(AuditLog)
        .filter_by(ref_type=ref_type, ref_id=ref_id)
        .order_by(AuditLog.id)
        .all()
    )
