"""
PayoutLedger -- durable store of runs, payouts and artifacts.

Contract:
    The single source of truth for "has this idempotency key been
    attempted". Every status change is one conditional UPDATE whose WHERE
    clause carries the expected prior state; the caller learns from the
    row count whether it won.

Architecture: payroll_services. Imports from payroll_kernel (models, db,
    domain, exceptions, hashing).

Invariants enforced:
    - Each public method runs in its own ``session_scope`` so it is safe to
      call from any worker thread.
    - ``idempotency_key`` uniqueness is enforced by the database.
    - Payout order: PENDING -> SUBMITTED -> CONFIRMED | FAILED. CONFIRMED and
      FAILED rows are never updated again.
    - A run's ``finished_at`` is written by exactly one successful
      ``finalize_run`` call.
    - A FAILED payout is superseded by at most one child run, in the same
      transaction that creates that child.
    - Artifacts are write-once per (run, kind, contributor).
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payroll_kernel.db.engine import session_scope
from payroll_kernel.domain.types import (
    Artifact,
    ArtifactKind,
    Payout,
    PayoutErrorCode,
    PayoutStatus,
    PayrollRun,
    RunStatus,
)
from payroll_kernel.exceptions import (
    IdempotencyConflictError,
    InvalidRunTransitionError,
    PayoutAlreadyRetriedError,
    RunNotFoundError,
)
from payroll_kernel.logging_config import get_logger
from payroll_kernel.models.payroll import (
    RUN_SCOPE,
    SYSTEM_ACTOR,
    ArtifactModel,
    PayoutModel,
    PayrollRunModel,
)
from payroll_kernel.utils.hashing import hash_payout_rows

logger = get_logger("services.payout_ledger")


def payout_digest_row(payout: Payout) -> dict:
    """Digest fields of a payout DTO; must match ``PayoutModel.digest_row``."""
    return {
        "contributor_id": payout.contributor_id,
        "idempotency_key": payout.idempotency_key,
        "settlement_account": payout.settlement_account,
        "share_ratio": payout.share_ratio,
        "usd_amount": payout.usd_amount,
        "native_amount": payout.native_amount,
    }


class PayoutLedger:
    """Run, payout and artifact persistence with conditional state writes.

    Contract:
        - Returns DTOs only; ORM instances never leave a session.
        - Every ``mark_*`` / ``claim_*`` / ``*_run`` method returns whether
          its conditional write applied.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _scope(self):
        return session_scope(self._session_factory)

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def create_run(self, run: PayrollRun, payouts: Sequence[Payout]) -> PayrollRun:
        """Persist ``run`` and its PENDING payouts in one transaction.

        Raises:
            IdempotencyConflictError: a payout key already exists.
            PayoutAlreadyRetriedError: a child run already took over one of
                the parent payouts this run retries.
        """
        keys = [p.idempotency_key for p in payouts]
        with self._scope() as session:
            existing = session.execute(
                select(PayoutModel).where(PayoutModel.idempotency_key.in_(keys))
            ).scalars().first()
            if existing is not None:
                requested = next(
                    p.native_amount for p in payouts
                    if p.idempotency_key == existing.idempotency_key
                )
                raise IdempotencyConflictError(
                    existing.idempotency_key, existing.native_amount, requested,
                )

            session.add(PayrollRunModel.from_dto(run))
            session.flush()
            if run.parent_run_id is not None:
                self._supersede_parent_payouts(session, run, payouts)
            actor = run.created_by or SYSTEM_ACTOR
            for payout in payouts:
                session.add(PayoutModel.from_dto(payout, created_at=run.created_at, created_by_id=actor))

        logger.info("run_persisted", extra={
            "run_id": str(run.run_id),
            "payout_count": len(payouts),
            "parent_run_id": str(run.parent_run_id) if run.parent_run_id else None,
        })
        return run

    @staticmethod
    def _supersede_parent_payouts(
        session: Session,
        run: PayrollRun,
        payouts: Sequence[Payout],
    ) -> None:
        """Link each retried parent payout to ``run``; all of them or none."""
        contributor_ids = sorted(p.contributor_id for p in payouts)
        result = session.execute(
            update(PayoutModel)
            .where(
                PayoutModel.run_id == run.parent_run_id,
                PayoutModel.contributor_id.in_(contributor_ids),
                PayoutModel.status == PayoutStatus.FAILED.value,
                PayoutModel.superseded_by_run_id.is_(None),
            )
            .values(superseded_by_run_id=run.run_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(contributor_ids):
            taken = session.execute(
                select(PayoutModel.contributor_id).where(
                    PayoutModel.run_id == run.parent_run_id,
                    PayoutModel.contributor_id.in_(contributor_ids),
                    PayoutModel.superseded_by_run_id.is_not(None),
                    PayoutModel.superseded_by_run_id != run.run_id,
                )
            ).scalars().all()
            raise PayoutAlreadyRetriedError(
                str(run.parent_run_id), sorted(taken) or contributor_ids,
            )

    def get_run(self, run_id: UUID) -> PayrollRun:
        with self._scope() as session:
            model = session.get(PayrollRunModel, run_id)
            if model is None:
                raise RunNotFoundError(str(run_id))
            return model.to_dto()

    def list_runs(self, status: RunStatus | None = None) -> tuple[PayrollRun, ...]:
        with self._scope() as session:
            stmt = select(PayrollRunModel).order_by(PayrollRunModel.created_at)
            if status is not None:
                stmt = stmt.where(PayrollRunModel.status == status.value)
            return tuple(m.to_dto() for m in session.execute(stmt).scalars())

    def compute_payout_digest(self, run_id: UUID) -> str:
        """Recompute the digest over the run's payout rows as stored."""
        with self._scope() as session:
            rows = session.execute(
                select(PayoutModel).where(PayoutModel.run_id == run_id)
            ).scalars()
            return hash_payout_rows([row.digest_row() for row in rows])

    def acquire_run_lock(
        self,
        run_id: UUID,
        owner: str,
        now: datetime,
        ttl_seconds: int,
    ) -> bool:
        """Take or renew the run lock unless another owner holds an unexpired one."""
        with self._scope() as session:
            result = session.execute(
                update(PayrollRunModel)
                .where(
                    PayrollRunModel.id == run_id,
                    or_(
                        PayrollRunModel.lock_owner.is_(None),
                        PayrollRunModel.lock_owner == owner,
                        PayrollRunModel.lock_expires_at < now,
                    ),
                )
                .values(lock_owner=owner, lock_expires_at=now + timedelta(seconds=ttl_seconds))
                .execution_options(synchronize_session=False)
            )
            acquired = result.rowcount == 1
        logger.debug("run_lock_attempt", extra={
            "run_id": str(run_id), "lock_owner": owner, "acquired": acquired,
        })
        return acquired

    def release_run_lock(self, run_id: UUID, owner: str) -> None:
        with self._scope() as session:
            session.execute(
                update(PayrollRunModel)
                .where(PayrollRunModel.id == run_id, PayrollRunModel.lock_owner == owner)
                .values(lock_owner=None, lock_expires_at=None)
                .execution_options(synchronize_session=False)
            )

    def get_lock_owner(self, run_id: UUID) -> str | None:
        with self._scope() as session:
            return session.execute(
                select(PayrollRunModel.lock_owner).where(PayrollRunModel.id == run_id)
            ).scalar_one_or_none()

    def start_run(self, run_id: UUID, now: datetime) -> bool:
        """PREVIEW_READY -> EXECUTING. False if the run was already executing.

        Raises:
            InvalidRunTransitionError: the run is terminal.
        """
        with self._scope() as session:
            result = session.execute(
                update(PayrollRunModel)
                .where(
                    PayrollRunModel.id == run_id,
                    PayrollRunModel.status == RunStatus.PREVIEW_READY.value,
                )
                .values(status=RunStatus.EXECUTING.value, started_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True
            status = session.execute(
                select(PayrollRunModel.status).where(PayrollRunModel.id == run_id)
            ).scalar_one_or_none()
        if status is None:
            raise RunNotFoundError(str(run_id))
        if status != RunStatus.EXECUTING.value:
            raise InvalidRunTransitionError(str(run_id), status, RunStatus.EXECUTING.value)
        return False

    def finalize_run(self, run_id: UUID, status: RunStatus, now: datetime) -> bool:
        """EXECUTING -> terminal ``status``, setting ``finished_at`` once."""
        if not status.is_terminal:
            raise InvalidRunTransitionError(str(run_id), RunStatus.EXECUTING.value, status.value)
        with self._scope() as session:
            result = session.execute(
                update(PayrollRunModel)
                .where(
                    PayrollRunModel.id == run_id,
                    PayrollRunModel.status == RunStatus.EXECUTING.value,
                    PayrollRunModel.finished_at.is_(None),
                )
                .values(status=status.value, finished_at=now, lock_owner=None, lock_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def fail_run(self, run_id: UUID, error_code: str, message: str, now: datetime) -> bool:
        """Any non-terminal status -> FAILED with a run-level error."""
        with self._scope() as session:
            result = session.execute(
                update(PayrollRunModel)
                .where(
                    PayrollRunModel.id == run_id,
                    PayrollRunModel.status.in_(
                        [RunStatus.PREVIEW_READY.value, RunStatus.EXECUTING.value]
                    ),
                )
                .values(
                    status=RunStatus.FAILED.value,
                    finished_at=now,
                    error_code=error_code,
                    error_message=message,
                    lock_owner=None,
                    lock_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def request_cancel(self, run_id: UUID) -> bool:
        with self._scope() as session:
            result = session.execute(
                update(PayrollRunModel)
                .where(
                    PayrollRunModel.id == run_id,
                    PayrollRunModel.status.in_(
                        [RunStatus.PREVIEW_READY.value, RunStatus.EXECUTING.value]
                    ),
                )
                .values(cancel_requested=True)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def is_cancel_requested(self, run_id: UUID) -> bool:
        with self._scope() as session:
            return bool(session.execute(
                select(PayrollRunModel.cancel_requested).where(PayrollRunModel.id == run_id)
            ).scalar_one_or_none())

    # -------------------------------------------------------------------------
    # Payouts
    # -------------------------------------------------------------------------

    def list_payouts(
        self,
        run_id: UUID,
        statuses: Iterable[PayoutStatus] | None = None,
    ) -> tuple[Payout, ...]:
        with self._scope() as session:
            stmt = (
                select(PayoutModel)
                .where(PayoutModel.run_id == run_id)
                .order_by(PayoutModel.login)
            )
            if statuses is not None:
                stmt = stmt.where(PayoutModel.status.in_([s.value for s in statuses]))
            return tuple(m.to_dto() for m in session.execute(stmt).scalars())

    def get_payout_by_key(self, idempotency_key: str) -> Payout | None:
        with self._scope() as session:
            model = session.execute(
                select(PayoutModel).where(PayoutModel.idempotency_key == idempotency_key)
            ).scalar_one_or_none()
            return model.to_dto() if model is not None else None

    def claim_attempt(
        self,
        idempotency_key: str,
        expected_status: PayoutStatus,
        expected_attempts: int,
        now: datetime,
    ) -> Payout | None:
        """
        Compare-and-set claim of the next gateway attempt.

        Moves the payout to SUBMITTED and increments ``attempt_count`` only if
        it still has ``expected_status`` and ``expected_attempts``. Returns
        the claimed payout, or None if another worker got there first or
        the payout is already terminal.
        """
        if expected_status.is_terminal:
            return None
        with self._scope() as session:
            result = session.execute(
                update(PayoutModel)
                .where(
                    PayoutModel.idempotency_key == idempotency_key,
                    PayoutModel.status == expected_status.value,
                    PayoutModel.status.in_(
                        [PayoutStatus.PENDING.value, PayoutStatus.SUBMITTED.value]
                    ),
                    PayoutModel.attempt_count == expected_attempts,
                )
                .values(
                    status=PayoutStatus.SUBMITTED.value,
                    attempt_count=expected_attempts + 1,
                    submitted_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            model = session.execute(
                select(PayoutModel).where(PayoutModel.idempotency_key == idempotency_key)
            ).scalar_one()
            return model.to_dto()

    def mark_confirmed(self, idempotency_key: str, tx_id: str | None, now: datetime) -> bool:
        with self._scope() as session:
            result = session.execute(
                update(PayoutModel)
                .where(
                    PayoutModel.idempotency_key == idempotency_key,
                    PayoutModel.status == PayoutStatus.SUBMITTED.value,
                )
                .values(
                    status=PayoutStatus.CONFIRMED.value,
                    settlement_tx_id=tx_id,
                    confirmed_at=now,
                    error_code=None,
                    error_message=None,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def mark_failed(
        self,
        idempotency_key: str,
        error_code: PayoutErrorCode,
        message: str,
        from_statuses: Iterable[PayoutStatus] = (PayoutStatus.PENDING, PayoutStatus.SUBMITTED),
    ) -> bool:
        with self._scope() as session:
            result = session.execute(
                update(PayoutModel)
                .where(
                    PayoutModel.idempotency_key == idempotency_key,
                    PayoutModel.status.in_([s.value for s in from_statuses]),
                )
                .values(
                    status=PayoutStatus.FAILED.value,
                    error_code=error_code.value,
                    error_message=message,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def record_attempt_error(self, idempotency_key: str, error_code: PayoutErrorCode, message: str) -> None:
        """Keep the latest retryable error on a SUBMITTED payout for visibility."""
        with self._scope() as session:
            session.execute(
                update(PayoutModel)
                .where(
                    PayoutModel.idempotency_key == idempotency_key,
                    PayoutModel.status == PayoutStatus.SUBMITTED.value,
                )
                .values(error_code=error_code.value, error_message=message)
                .execution_options(synchronize_session=False)
            )

    def cancel_unattempted(self, run_id: UUID, message: str = "Run cancelled before submission") -> int:
        """Fail every PENDING payout that never reached the gateway."""
        with self._scope() as session:
            result = session.execute(
                update(PayoutModel)
                .where(
                    and_(
                        PayoutModel.run_id == run_id,
                        PayoutModel.status == PayoutStatus.PENDING.value,
                        PayoutModel.attempt_count == 0,
                    )
                )
                .values(
                    status=PayoutStatus.FAILED.value,
                    error_code=PayoutErrorCode.CANCELLED.value,
                    error_message=message,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    # -------------------------------------------------------------------------
    # Artifacts
    # -------------------------------------------------------------------------

    def get_artifact(
        self,
        run_id: UUID,
        kind: ArtifactKind,
        contributor_id: str | None = None,
    ) -> Artifact | None:
        with self._scope() as session:
            model = session.execute(
                select(ArtifactModel).where(
                    ArtifactModel.run_id == run_id,
                    ArtifactModel.kind == kind.value,
                    ArtifactModel.scope == (contributor_id or RUN_SCOPE),
                )
            ).scalar_one_or_none()
            return model.to_dto() if model is not None else None

    def record_artifact(self, artifact: Artifact) -> Artifact:
        """Insert ``artifact``; if one already exists for its slot, return that."""
        try:
            with self._scope() as session:
                session.add(ArtifactModel.from_dto(artifact))
        except IntegrityError:
            existing = self.get_artifact(artifact.run_id, artifact.kind, artifact.contributor_id)
            if existing is None:
                raise
            logger.info("artifact_already_recorded", extra={
                "run_id": str(artifact.run_id),
                "kind": artifact.kind.value,
                "contributor_id": artifact.contributor_id,
            })
            return existing
        return artifact

    def list_artifacts(self, run_id: UUID) -> tuple[Artifact, ...]:
        with self._scope() as session:
            rows = session.execute(
                select(ArtifactModel)
                .where(ArtifactModel.run_id == run_id)
                .order_by(ArtifactModel.kind, ArtifactModel.scope)
            ).scalars()
            return tuple(m.to_dto() for m in rows)
