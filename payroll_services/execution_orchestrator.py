"""
ExecutionOrchestrator -- drives a payroll run from PREVIEW_READY to a
terminal status.

Contract:
    ``execute_run(run_id)`` settles every payout of a run against the payment
    gateway and returns an ExecutionResult. Partial failure is data, not an
    exception. ``cancel(run_id)`` stops new attempts.

Architecture: payroll_services. Uses PayoutLedger, the PaymentGateway port
    and ArtifactEmitter; all time comes from the injected Clock.

Invariants enforced:
    - At-most-once settlement: before any submission the payout is re-read
      by idempotency key and claimed with a compare-and-set write; a SUBMITTED
      payout is reconciled with ``query_status`` before anything is resent,
      and every resend reuses the same key.
    - The EXECUTING transition is persisted before the first attempt.
    - One payout failing never stops the others.
    - A payout whose outcome is unknown stays SUBMITTED; it is never marked
      FAILED while the gateway may still settle it.
    - ``finished_at`` is written once, by the conditional EXECUTING ->
      terminal write.
    - A run-level lock (owner token + TTL) keeps a second orchestrator out;
      an in-process per-key lock serialises workers inside one process.

Failure modes:
    - RunNotFoundError: unknown run.
    - RunLockedError: another orchestrator holds the run.
    - PreviewHashMismatchError: stored payouts differ from the approved
      ones; the run is marked FAILED first.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from uuid import UUID, uuid4

from payroll_config.schema import ExecutionSettings
from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.domain.types import (
    ExecutionResult,
    Payout,
    PayoutErrorCode,
    PayoutStatus,
    PayrollRun,
    RunStatus,
)
from payroll_kernel.exceptions import (
    GatewayError,
    NonRetryableGatewayError,
    PreviewHashMismatchError,
    RetryableGatewayError,
    RunLockedError,
)
from payroll_kernel.logging_config import LogContext, get_logger
from payroll_services.artifact_emitter import ArtifactEmitter
from payroll_services.ports import GatewayReceipt, GatewayStatus, PaymentGateway
from payroll_services.payout_ledger import PayoutLedger

logger = get_logger("services.execution_orchestrator")

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 8
DEFAULT_MEMO_TEMPLATE = "Payroll {run_id}"


def clamp_concurrency(value: int) -> int:
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, int(value)))


def final_run_status(payouts: tuple[Payout, ...] | list[Payout]) -> RunStatus:
    """COMPLETED if all confirmed, PARTIALLY_COMPLETED if some, else FAILED."""
    confirmed = sum(1 for p in payouts if p.status == PayoutStatus.CONFIRMED)
    if payouts and confirmed == len(payouts):
        return RunStatus.COMPLETED
    if confirmed:
        return RunStatus.PARTIALLY_COMPLETED
    return RunStatus.FAILED


class ExecutionOrchestrator:
    """Bounded fan-out payout execution with retry and reconciliation.

    Contract:
        - ``execute_run`` is re-entrant: a second call never re-pays a
          CONFIRMED payout and resolves payouts left SUBMITTED.
        - Terminal runs are returned as recorded.
    Non-goals:
        - Does not compute distributions or create runs.
        - Does not schedule itself; see ExecutionQueue.
    """

    def __init__(
        self,
        ledger: PayoutLedger,
        gateway: PaymentGateway,
        emitter: ArtifactEmitter | None = None,
        settings: ExecutionSettings | None = None,
        clock: Clock | None = None,
        owner_id: str | None = None,
        memo_template: str = DEFAULT_MEMO_TEMPLATE,
    ):
        self._ledger = ledger
        self._gateway = gateway
        self._emitter = emitter
        self._settings = settings or ExecutionSettings()
        self._clock = clock or SystemClock()
        self._owner_id = owner_id or f"orchestrator-{uuid4().hex[:12]}"
        self._memo_template = memo_template
        self._key_locks: dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        self._cancelled: set[UUID] = set()
        self._cancelled_guard = threading.Lock()

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def max_concurrency(self) -> int:
        return clamp_concurrency(self._settings.max_concurrency)

    # -------------------------------------------------------------------------
    # Run level
    # -------------------------------------------------------------------------

    def execute_run(self, run_id: UUID) -> ExecutionResult:
        """Settle all payouts of ``run_id``.

        On a terminal run nothing is settled; settlement records that an
        earlier store outage left out are emitted again.

        Raises:
            RunNotFoundError, RunLockedError, PreviewHashMismatchError.
        """
        with LogContext.bind(run_id=str(run_id)):
            run = self._ledger.get_run(run_id)
            if run.status.is_terminal:
                logger.info("run_already_terminal", extra={"status": run.status.value})
                if self._emitter is not None:
                    self._emitter.emit_missing(run)
                return self._result(run)

            now = self._clock.now()
            if not self._ledger.acquire_run_lock(
                run_id, self._owner_id, now, self._settings.lock_ttl_seconds,
            ):
                owner = self._ledger.get_lock_owner(run_id)
                logger.warning("run_lock_unavailable", extra={"lock_owner": owner})
                raise RunLockedError(str(run_id), owner)

            try:
                return self._execute_locked(run)
            finally:
                self._ledger.release_run_lock(run_id, self._owner_id)

    def _execute_locked(self, run: PayrollRun) -> ExecutionResult:
        run_id = run.run_id
        actual_digest = self._ledger.compute_payout_digest(run_id)
        if actual_digest != run.payout_digest:
            self._ledger.fail_run(
                run_id,
                PreviewHashMismatchError.code.lower(),
                "Stored payouts do not match the approved preview",
                self._clock.now(),
            )
            logger.error("run_payout_digest_mismatch", extra={
                "expected_hash": run.payout_digest,
                "actual_hash": actual_digest,
            })
            raise PreviewHashMismatchError(str(run_id), run.payout_digest, actual_digest)

        if self._ledger.start_run(run_id, self._clock.now()):
            logger.info("run_execution_started", extra={"lock_owner": self._owner_id})
        else:
            logger.info("run_execution_resumed", extra={"lock_owner": self._owner_id})
        run = self._ledger.get_run(run_id)

        payouts = self._ledger.list_payouts(run_id)
        skipped = sum(1 for p in payouts if p.status == PayoutStatus.CONFIRMED)
        open_payouts = [p for p in payouts if not p.status.is_terminal]

        if open_payouts:
            with ThreadPoolExecutor(
                max_workers=min(self.max_concurrency, len(open_payouts)),
                thread_name_prefix=f"payroll-{str(run_id)[:8]}",
            ) as pool:
                futures = [pool.submit(self._process_payout, run, p) for p in open_payouts]
                for future in futures:
                    future.result()

        if self._is_cancelled(run_id):
            cancelled = self._ledger.cancel_unattempted(run_id)
            if cancelled:
                logger.info("run_pending_payouts_cancelled", extra={"count": cancelled})

        return self._finalize_if_settled(run_id, skipped)

    def _finalize_if_settled(self, run_id: UUID, skipped: int = 0) -> ExecutionResult:
        payouts = self._ledger.list_payouts(run_id)
        unresolved = [p for p in payouts if not p.status.is_terminal]
        if unresolved:
            logger.warning("run_awaiting_confirmation", extra={
                "unresolved_count": len(unresolved),
            })
            return self._result(self._ledger.get_run(run_id), skipped)

        status = final_run_status(payouts)
        if self._ledger.finalize_run(run_id, status, self._clock.now()):
            run = self._ledger.get_run(run_id)
            logger.info("run_finalized", extra={
                "status": status.value,
                "confirmed_count": sum(1 for p in payouts if p.status == PayoutStatus.CONFIRMED),
                "failed_count": sum(1 for p in payouts if p.status == PayoutStatus.FAILED),
            })
            if self._emitter is not None:
                self._emitter.emit_for_run(run, payouts)
        return self._result(self._ledger.get_run(run_id), skipped)

    def _result(self, run: PayrollRun, skipped: int = 0) -> ExecutionResult:
        payouts = self._ledger.list_payouts(run.run_id)
        return ExecutionResult(
            run_id=run.run_id,
            status=run.status,
            successful=tuple(p for p in payouts if p.status == PayoutStatus.CONFIRMED),
            failed=tuple(p for p in payouts if p.status == PayoutStatus.FAILED),
            pending=tuple(p for p in payouts if not p.status.is_terminal),
            artifacts=self._ledger.list_artifacts(run.run_id),
            skipped_already_confirmed=skipped,
        )

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel(self, run_id: UUID) -> ExecutionResult:
        """
        Stop issuing new attempts for ``run_id``.

        Attempts already in flight finish normally. If no orchestrator is
        executing the run, never-attempted payouts are failed with
        ``cancelled`` and the run is finalized when nothing is left open.
        """
        with LogContext.bind(run_id=str(run_id)):
            run = self._ledger.get_run(run_id)
            if run.status.is_terminal:
                return self._result(run)

            with self._cancelled_guard:
                self._cancelled.add(run_id)
            self._ledger.request_cancel(run_id)
            logger.info("run_cancel_requested", extra={"status": run.status.value})

            now = self._clock.now()
            if not self._ledger.acquire_run_lock(
                run_id, self._owner_id, now, self._settings.lock_ttl_seconds,
            ):
                # The executing orchestrator sees the flag before its next attempt.
                return self._result(run)
            try:
                self._ledger.start_run(run_id, now)
                self._ledger.cancel_unattempted(run_id)
                return self._finalize_if_settled(run_id)
            finally:
                self._ledger.release_run_lock(run_id, self._owner_id)

    def _is_cancelled(self, run_id: UUID) -> bool:
        with self._cancelled_guard:
            if run_id in self._cancelled:
                return True
        return self._ledger.is_cancel_requested(run_id)

    # -------------------------------------------------------------------------
    # Payout level
    # -------------------------------------------------------------------------

    @contextmanager
    def _key_lock(self, key: str):
        with self._key_locks_guard:
            lock = self._key_locks.setdefault(key, threading.Lock())
        with lock:
            yield

    def _process_payout(self, run: PayrollRun, payout: Payout) -> None:
        key = payout.idempotency_key
        with LogContext.bind(
            run_id=str(run.run_id),
            payout_id=str(payout.payout_id),
            idempotency_key=key,
        ), self._key_lock(key):
            try:
                self._settle(run, key)
            except GatewayError as exc:
                # Gateway errors are always handled in _settle; anything
                # escaping here is a status lookup that failed. Leave the
                # payout as it is for the next execution.
                logger.warning("payout_left_unresolved", extra={
                    "error": str(exc),
                    "error_code": exc.code,
                })

    def _settle(self, run: PayrollRun, key: str) -> None:
        current = self._ledger.get_payout_by_key(key)
        if current is None or current.status.is_terminal:
            logger.debug("payout_already_terminal")
            return

        if current.status == PayoutStatus.SUBMITTED:
            if self._reconcile_submitted(run, current):
                return
            current = self._ledger.get_payout_by_key(key)
            if current is None or current.status.is_terminal:
                return

        if not self._gateway.validate_account(current.settlement_account):
            if self._ledger.mark_failed(
                key,
                PayoutErrorCode.INVALID_DESTINATION,
                f"Invalid settlement account: {current.settlement_account}",
            ):
                logger.warning("payout_failed", extra={
                    "error_code": PayoutErrorCode.INVALID_DESTINATION.value,
                    "settlement_account": current.settlement_account,
                })
            return

        self._attempt_loop(run, current)

    def _reconcile_submitted(self, run: PayrollRun, payout: Payout) -> bool:
        """
        Resolve a payout found SUBMITTED on entry.

        Returns True when nothing more should be done this pass, False when
        the gateway has no record of the key and it must be submitted again.
        """
        key = payout.idempotency_key
        receipt = self._gateway.query_status(key)
        logger.info("payout_reconciled", extra={"gateway_status": receipt.status.value})
        match receipt.status:
            case GatewayStatus.CONFIRMED:
                self._confirm(run, key, receipt.tx_id)
                return True
            case GatewayStatus.SUBMITTED:
                self._poll_confirmation(run, key, receipt.tx_id)
                return True
            case _:
                if self._is_cancelled(run.run_id):
                    self._fail(key, PayoutErrorCode.CANCELLED, "Run cancelled; gateway has no record of the payout")
                    return True
                return False

    def _attempt_loop(self, run: PayrollRun, payout: Payout) -> None:
        policy = run.retry_policy
        key = payout.idempotency_key
        current = payout
        last_message = ""

        while True:
            if self._is_cancelled(run.run_id):
                if current.status == PayoutStatus.PENDING and current.attempt_count == 0:
                    return  # failed as cancelled by the run
                self._resolve_after_attempts(run, key, PayoutErrorCode.CANCELLED, "Run cancelled")
                return

            if current.attempt_count >= policy.max_retries:
                self._resolve_after_attempts(
                    run,
                    key,
                    PayoutErrorCode.RETRIES_EXHAUSTED,
                    f"Gave up after {current.attempt_count} attempts: {last_message}",
                )
                return

            if not self._ledger.acquire_run_lock(
                run.run_id, self._owner_id, self._clock.now(), self._settings.lock_ttl_seconds,
            ):
                logger.error("run_lock_lost", extra={"lock_owner": self._owner_id})
                return

            claimed = self._ledger.claim_attempt(
                key, current.status, current.attempt_count, self._clock.now(),
            )
            if claimed is None:
                logger.info("payout_claim_lost")
                return

            logger.info("payout_attempt", extra={
                "attempt": claimed.attempt_count,
                "max_retries": policy.max_retries,
                "native_amount": claimed.native_amount,
            })
            try:
                receipt = self._gateway.submit(
                    destination_account=claimed.settlement_account,
                    amount=claimed.native_amount,
                    memo=self._memo_template.format(run_id=run.run_id, login=claimed.login),
                    idempotency_key=key,
                    timeout=self._settings.attempt_timeout_seconds,
                )
            except NonRetryableGatewayError as exc:
                self._fail(key, PayoutErrorCode.from_reason(exc.reason_code), exc.gateway_message)
                return
            except RetryableGatewayError as exc:
                last_message = f"{exc.reason_code}: {exc.gateway_message}"
                self._ledger.record_attempt_error(key, PayoutErrorCode.GATEWAY_ERROR, last_message)
                logger.warning("payout_attempt_failed", extra={
                    "attempt": claimed.attempt_count,
                    "reason_code": exc.reason_code,
                    "retryable": True,
                })
            except Exception as exc:
                last_message = f"{type(exc).__name__}: {exc}"
                self._ledger.record_attempt_error(key, PayoutErrorCode.GATEWAY_ERROR, last_message)
                logger.exception("payout_attempt_error", extra={
                    "attempt": claimed.attempt_count,
                })
            else:
                self._handle_receipt(run, key, receipt)
                return

            current = self._ledger.get_payout_by_key(key)
            if current is None or current.status.is_terminal:
                return
            if current.attempt_count < policy.max_retries and not self._is_cancelled(run.run_id):
                self._clock.sleep(policy.delay_for(current.attempt_count))

    def _handle_receipt(self, run: PayrollRun, key: str, receipt: GatewayReceipt) -> None:
        if receipt.status == GatewayStatus.CONFIRMED:
            self._confirm(run, key, receipt.tx_id)
        else:
            self._poll_confirmation(run, key, receipt.tx_id)

    def _poll_confirmation(self, run: PayrollRun, key: str, tx_id: str | None) -> bool:
        """Poll until CONFIRMED or the poll budget runs out (payout stays SUBMITTED)."""
        for _ in range(self._settings.confirmation_poll_attempts):
            self._clock.sleep(self._settings.confirmation_poll_interval_seconds)
            try:
                receipt = self._gateway.query_status(key)
            except GatewayError as exc:
                logger.warning("payout_status_query_failed", extra={"error": str(exc)})
                continue
            if receipt.status == GatewayStatus.CONFIRMED:
                self._confirm(run, key, receipt.tx_id or tx_id)
                return True
        logger.warning("payout_confirmation_pending", extra={
            "poll_attempts": self._settings.confirmation_poll_attempts,
            "settlement_tx_id": tx_id,
        })
        return False

    def _resolve_after_attempts(
        self,
        run: PayrollRun,
        key: str,
        code: PayoutErrorCode,
        message: str,
    ) -> None:
        """Last status check once no further attempt will be made."""
        try:
            receipt = self._gateway.query_status(key)
        except GatewayError as exc:
            logger.warning("payout_left_submitted", extra={
                "reason": "status_query_failed",
                "error": str(exc),
            })
            return
        match receipt.status:
            case GatewayStatus.CONFIRMED:
                self._confirm(run, key, receipt.tx_id)
            case GatewayStatus.SUBMITTED:
                logger.warning("payout_left_submitted", extra={"reason": "gateway_pending"})
            case _:
                self._fail(key, code, message)

    def _confirm(self, run: PayrollRun, key: str, tx_id: str | None) -> None:
        if not self._ledger.mark_confirmed(key, tx_id, self._clock.now()):
            return
        payout = self._ledger.get_payout_by_key(key)
        logger.info("payout_confirmed", extra={
            "settlement_tx_id": tx_id,
            "usd_amount": str(payout.usd_amount) if payout else None,
        })
        if self._emitter is not None and payout is not None:
            self._emitter.emit_for_payout(run, payout)

    def _fail(self, key: str, code: PayoutErrorCode, message: str) -> None:
        if self._ledger.mark_failed(key, code, message):
            logger.warning("payout_failed", extra={
                "error_code": code.value,
                "gateway_message": message,
            })
