# Overview: Best-effort notification fan-out after document transitions.

from __future__ import annotations

from typing import Any, Iterable

from flask import current_app

from ..extensions import db
from ..models import User
from ..models.catalog import APPROVER_ROLES
from .dispatch_service import defer_until_commit


EXTENSION_KEY = "stockledger.notifier"

TOPIC_MOVEMENT_SUBMITTED = "movement.submitted"
TOPIC_MOVEMENT_POSTED = "movement.posted"
TOPIC_STOCK_TAKE_COMPLETED = "stock_take.completed"


class LogNotifier:
    """
    Default notifier: one log line per fan-out.

    Delivery channels (email, push, in-app) are installed by replacing
    app.extensions["stockledger.notifier"] with an object exposing the same
    notify() method.
    """

    def notify(self, user_ids: list[int], topic: str, payload: dict[str, Any]) -> None:
        current_app.logger.info("Notify %s -> users %s: %s", topic, user_ids, payload)


def get_notifier():
    return current_app.extensions[EXTENSION_KEY]


def approver_user_ids() -> list[int]:
    """Active users allowed to approve documents."""
    rows = (
        db.session.query(User.id)
        .filter(User.role.in_(APPROVER_ROLES), User.is_active.is_(True))
        .order_by(User.id)
        .all()
    )
    return [row.id for row in rows]


def _notify_job(user_ids, topic, payload) -> None:
    get_notifier().notify(user_ids, topic, payload)


def _notify_approvers_job(topic, payload) -> None:
    user_ids = approver_user_ids()
    if user_ids:
        get_notifier().notify(user_ids, topic, payload)


def notify_after_commit(user_ids: Iterable[int], topic: str, payload: dict[str, Any]) -> None:
    user_ids = [uid for uid in user_ids if uid is not None]
    if not user_ids:
        return
    defer_until_commit(_notify_job, user_ids, topic, payload)


def notify_approvers_after_commit(topic: str, payload: dict[str, Any]) -> None:
    """Recipients are resolved on the worker, outside the transaction."""
    defer_until_commit(_notify_approvers_job, topic, payload)
