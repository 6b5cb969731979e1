"""
ExecutionQueue -- in-process queue decoupling request latency from
settlement latency.

Contract:
    Request handlers call ``submit(run_id)`` and return immediately; worker
    threads pick run ids off the queue and call the execute callable
    (normally ``ExecutionOrchestrator.execute_run``).

Architecture: payroll_services. Depends only on a callable, so it does not
    know about the ledger or the gateway.

Invariants enforced:
    - A run id already queued or executing is not queued again.
    - A failing execution is logged; the worker keeps running.
    - ``stop()`` lets the run currently executing finish.
"""

from __future__ import annotations

import queue
import threading
from typing import Any, Callable
from uuid import UUID

from payroll_kernel.logging_config import LogContext, get_logger

logger = get_logger("services.execution_queue")


class ExecutionQueue:
    """Background executor for payroll runs.

    Contract:
        - ``submit()`` returns True if the run was queued.
        - ``process_next()`` runs one queued item synchronously (public for
          testing, like a scheduler tick).
        - ``start()`` / ``stop()`` manage the worker threads.
    Non-goals:
        - NOT durable: a restarted process re-submits EXECUTING runs itself.
    """

    def __init__(
        self,
        execute: Callable[[UUID], Any],
        workers: int = 1,
        poll_interval_seconds: float = 0.5,
        on_result: Callable[[UUID, Any], None] | None = None,
    ):
        self._execute = execute
        self._workers = max(1, workers)
        self._poll_interval = poll_interval_seconds
        self._on_result = on_result
        self._queue: queue.Queue[UUID] = queue.Queue()
        self._active: set[UUID] = set()
        self._active_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def submit(self, run_id: UUID) -> bool:
        with self._active_lock:
            if run_id in self._active:
                logger.info("run_already_queued", extra={"run_id": str(run_id)})
                return False
            self._active.add(run_id)
        self._queue.put(run_id)
        logger.info("run_enqueued", extra={
            "run_id": str(run_id),
            "queue_depth": self._queue.qsize(),
        })
        return True

    def process_next(self, timeout: float | None = None) -> bool:
        """Execute one queued run. Returns False if the queue stayed empty."""
        try:
            if timeout is None:
                run_id = self._queue.get_nowait()
            else:
                run_id = self._queue.get(timeout=timeout)
        except queue.Empty:
            return False
        try:
            self._run_one(run_id)
        finally:
            with self._active_lock:
                self._active.discard(run_id)
            self._queue.task_done()
        return True

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._run_loop,
                name=f"payroll-queue-{i}",
                daemon=True,
            )
            for i in range(self._workers)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("execution_queue_started", extra={"workers": self._workers})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for workers; in-progress runs complete."""
        self._stop_event.set()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=timeout)
        self._threads = []
        logger.info("execution_queue_stopped", extra={"remaining": self._queue.qsize()})

    def join(self) -> None:
        """Block until every submitted run has been processed."""
        self._queue.join()

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.process_next(timeout=self._poll_interval)

    def _run_one(self, run_id: UUID) -> None:
        with LogContext.bind(run_id=str(run_id)):
            try:
                result = self._execute(run_id)
            except Exception:
                logger.exception("queued_execution_failed")
                return
            logger.info("queued_execution_finished", extra={
                "status": getattr(getattr(result, "status", None), "value", None),
            })
            if self._on_result is not None:
                self._on_result(run_id, result)
