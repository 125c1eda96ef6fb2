"""
audit/dispatcher.py -- Bounded background handoff for audit writes.

Request handlers must not wait for the audit insert. AuditDispatcher owns a
bounded queue.Queue and one daemon worker thread that drains it:

  submit()  non-blocking put. A full queue drops the event and logs an
            error; the caller is never blocked or failed.
  worker    writes each event through tenacity, retrying up to max_retries
            times with linear backoff (backoff, 2*backoff, ...). After the
            last retry the event is dropped with an error log.
  flush()   waits until every queued event has been handled (written or
            dropped) or the timeout passes.
  close()   flushes, then stops the worker.

Started and stopped by the API lifespan.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from typing import Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from audit.models import AuditEvent

logger = logging.getLogger("authguard.audit")

_STOP = object()


class AuditDispatcher:
    def __init__(
        self,
        write: Callable[[AuditEvent], object],
        *,
        maxsize: int = 1000,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._write = write
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._max_retries = max_retries
        self._backoff = backoff_seconds
        self._sleep = sleep
        self._thread: Optional[threading.Thread] = None
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._thread = threading.Thread(target=self._run, name="audit-dispatcher", daemon=True)
        self._thread.start()
        logger.info("Audit dispatcher started (queue size %d)", self._queue.maxsize)

    def submit(self, event: AuditEvent) -> bool:
        """Queue an event for writing. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.error("Audit queue full, dropping %s event for actor %s", event.action, event.actor_user_id)
            return False
        return True

    def flush(self, timeout: float = 5.0) -> bool:
        """Block until the queue is drained. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("Audit flush timed out with %d event(s) pending", self._queue.unfinished_tasks)
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: float = 5.0) -> None:
        if not self.running:
            return
        self.flush(timeout)
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None
        logger.info("Audit dispatcher stopped")

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, event: AuditEvent) -> None:
        attempts = self._max_retries + 1
        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_incrementing(start=self._backoff, increment=self._backoff),
            retry=retry_if_exception_type(Exception),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            retrying(self._write, event)
        except Exception:
            self.dropped += 1
            logger.exception(
                "Dropping %s audit event for actor %s after %d attempt(s)",
                event.action,
                event.actor_user_id,
                attempts,
            )
