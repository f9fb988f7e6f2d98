# Overview: After-commit job dispatch for audit records and notifications.

"""
Fire-and-forget side effects (audit records, notification fan-out).

Services never call sinks directly. They register a job with
``defer_until_commit``; ``run_in_transaction`` hands the jobs to the
DispatchWorker only after the transaction commits and drops them if it
rolls back. The worker runs each job in its own application context (and
therefore its own database session), logs failures and moves on.
"""
from __future__ import annotations

import queue
import threading
from typing import Any, Callable

from flask import Flask, current_app

from ..extensions import db


PENDING_JOBS_KEY = "stockledger.after_commit_jobs"
EXTENSION_KEY = "stockledger.dispatch"


def _job_name(job: Callable) -> str:
    return getattr(job, "__qualname__", repr(job))


class DispatchWorker:
    """Single background thread draining a bounded job queue."""

    def __init__(self, app: Flask, *, inline: bool = False, maxsize: int = 1000):
        self.app = app
        self.inline = inline
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def submit(self, job: Callable, *args: Any, **kwargs: Any) -> None:
        if self.inline:
            self._execute(job, args, kwargs)
            return

        self._ensure_started()
        try:
            self._queue.put_nowait((job, args, kwargs))
        except queue.Full:
            self.app.logger.warning("Dispatch queue full, dropping %s", _job_name(job))

    def drain(self) -> None:
        """Block until every queued job has run (used by tests and shutdown)."""
        if self.inline:
            return
        self._queue.join()

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(None)
        thread.join(timeout)

    def _ensure_started(self) -> None:
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._run,
                    name="stockledger-dispatch",
                    daemon=True,
                )
                self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                job, args, kwargs = item
                self._execute(job, args, kwargs)
            finally:
                self._queue.task_done()

    def _execute(self, job: Callable, args: tuple, kwargs: dict) -> None:
        with self.app.app_context():
            try:
                job(*args, **kwargs)
            except Exception:
                db.session.rollback()
                self.app.logger.exception("Deferred job %s failed", _job_name(job))


def init_dispatch(app: Flask) -> DispatchWorker:
    worker = DispatchWorker(
        app,
        inline=app.config.get("DISPATCH_INLINE", False),
        maxsize=app.config.get("DISPATCH_QUEUE_SIZE", 1000),
    )
    app.extensions[EXTENSION_KEY] = worker
    return worker


def get_dispatcher() -> DispatchWorker:
    return current_app.extensions[EXTENSION_KEY]


def defer_until_commit(job: Callable, *args: Any, **kwargs: Any) -> None:
    """Queue ``job`` to run once the current transaction commits."""
    db.session.info.setdefault(PENDING_JOBS_KEY, []).append((job, args, kwargs))


def discard_deferred() -> None:
    db.session.info.pop(PENDING_JOBS_KEY, None)


def dispatch_deferred() -> int:
    """Hand jobs registered in the committed transaction to the worker."""
    jobs = db.session.info.pop(PENDING_JOBS_KEY, [])
    if not jobs:
        return 0
    worker = get_dispatcher()
    for job, args, kwargs in jobs:
        worker.submit(job, *args, **kwargs)
    return len(jobs)
