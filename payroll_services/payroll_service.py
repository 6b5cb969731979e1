"""
PayrollService -- the produced interface of the payroll engine.

Contract:
    ``preview`` -> ``create_run`` -> ``execute`` (or ``enqueue``) is the
    whole surface the web/CRUD layer needs. ``cancel``, ``retry_failed`` and
    the read methods complete it.

Architecture: payroll_services. Wires the pure DistributionCalculator to
    the external collaborators and the ledger. Every collaborator is
    injected; nothing here is a module-level singleton.

Invariants enforced:
    - The price is captured once, into the preview's PriceSnapshot, and
      never re-queried for the run.
    - A degraded contribution report is carried as a Degradation on the
      preview; counts are never filled in. Creating a run from it requires
      ``acknowledge_degraded=True``.
    - A run and its PENDING payouts are persisted in one transaction, with
      the payout digest that execution later re-checks.
    - Terminal runs are never reopened; ``retry_failed`` creates a child run.
    - Per-login PR details from the contribution source ride on the preview
      onto each payout, for its payslip; they never change an amount.
"""

from __future__ import annotations

import dataclasses
from uuid import UUID, uuid4

from payroll_config.schema import PayrollSettings
from payroll_engines.distribution import DistributionCalculator
from payroll_engines.idempotency import derive_idempotency_key
from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.domain.types import (
    Artifact,
    BackoffKind,
    ExecutionResult,
    Payout,
    PayoutErrorCode,
    PayoutStatus,
    PayrollRun,
    RetryPolicy,
    RunStatus,
)
from payroll_kernel.domain.values import (
    Degradation,
    DistributionPolicy,
    DistributionPreview,
    PriceSnapshot,
)
from payroll_kernel.exceptions import (
    DataSourceDegradedError,
    InvalidRunTransitionError,
    NoEligibleContributorsError,
    PreviewHashMismatchError,
    StalePriceError,
)
from payroll_kernel.logging_config import LogContext, get_logger
from payroll_kernel.utils.hashing import hash_payout_rows
from payroll_services.execution_orchestrator import ExecutionOrchestrator
from payroll_services.execution_queue import ExecutionQueue
from payroll_services.ports import (
    ContributionSource,
    DateRange,
    IdentityResolver,
    PriceFeed,
    RepoSelection,
)
from payroll_services.payout_ledger import PayoutLedger, payout_digest_row

logger = get_logger("services.payroll")

CONTRIBUTION_SOURCE = "contribution_source"


def retry_policy_from_settings(settings: PayrollSettings) -> RetryPolicy:
    execution = settings.execution
    return RetryPolicy(
        max_retries=execution.max_retries,
        retry_delay_seconds=execution.retry_delay_seconds,
        backoff=BackoffKind(execution.backoff),
        max_delay_seconds=execution.max_delay_seconds,
    )


class PayrollService:
    """Preview, create, execute and follow up payroll runs."""

    def __init__(
        self,
        ledger: PayoutLedger,
        orchestrator: ExecutionOrchestrator,
        contribution_source: ContributionSource,
        price_feed: PriceFeed,
        identity_resolver: IdentityResolver,
        settings: PayrollSettings | None = None,
        calculator: DistributionCalculator | None = None,
        queue: ExecutionQueue | None = None,
        clock: Clock | None = None,
    ):
        self._ledger = ledger
        self._orchestrator = orchestrator
        self._source = contribution_source
        self._price_feed = price_feed
        self._identities = identity_resolver
        self._settings = settings or PayrollSettings()
        self._calculator = calculator or DistributionCalculator()
        self._queue = queue
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Preview
    # -------------------------------------------------------------------------

    def preview(
        self,
        policy: DistributionPolicy,
        repo_selection: RepoSelection,
        date_range: DateRange,
        asset_symbol: str | None = None,
        creator_login: str | None = None,
    ) -> DistributionPreview:
        """
        Compute a distribution from live contribution data and a fresh price.

        Raises:
            ContributionSourceError: the source could not be queried at all.
            PriceFeedError: no usable price.
            NoEligibleContributorsError: nothing to distribute over.
        """
        symbol = asset_symbol or self._settings.pricing.default_asset_symbol

        report = self._source.fetch(repo_selection, date_range)
        degradations = tuple(
            Degradation(source=CONTRIBUTION_SOURCE, reason=reason)
            for reason in (report.degraded_reasons or (("degraded",) if report.degraded else ()))
        )
        if degradations:
            logger.warning("contribution_data_degraded", extra={
                "reasons": [d.reason for d in degradations],
                "repositories": list(repo_selection.repositories),
            })

        quote = self._price_feed.latest(symbol)
        snapshot = PriceSnapshot(
            asset_symbol=symbol,
            usd_price=quote.price,
            feed_identifier=quote.feed_identifier,
            captured_at=quote.as_of,
            confidence=quote.confidence,
        )

        preview = self._calculator.compute(
            contributions=report.counts,
            policy=policy,
            price_snapshot=snapshot,
            asset_decimals=self._settings.pricing.asset_decimals,
            identity_resolver=self._identities,
            creator_login=creator_login,
            degradations=degradations,
            calculated_at=self._clock.now(),
        )
        policy_check = self._calculator.validate_policy(policy)
        preview = dataclasses.replace(
            preview,
            warnings=preview.warnings + policy_check.warnings,
            contribution_details={
                login: tuple(details) for login, details in report.details.items()
            },
        )

        logger.info("preview_ready", extra={
            "preview_hash": preview.preview_hash,
            "eligible_count": preview.eligible_count,
            "total_usd": str(preview.total_usd),
            "degraded": preview.is_degraded,
        })
        return preview

    # -------------------------------------------------------------------------
    # Run creation
    # -------------------------------------------------------------------------

    def create_run(
        self,
        preview: DistributionPreview,
        created_by: str,
        acknowledge_degraded: bool = False,
        retry_policy: RetryPolicy | None = None,
    ) -> PayrollRun:
        """
        Persist an accepted preview as a PREVIEW_READY run with PENDING payouts.

        Raises:
            PreviewHashMismatchError: the preview was altered after computing.
            DataSourceDegradedError: degraded preview, not acknowledged.
            StalePriceError: price snapshot older than the staleness limit.
            NoEligibleContributorsError: the preview pays nobody.
        """
        with LogContext.bind(actor_id=created_by):
            if not self._calculator.verify_preview_hash(preview):
                expected = self._calculator.compute_preview_hash(
                    preview.policy, preview.price_snapshot, preview.asset_decimals, preview.shares,
                )
                raise PreviewHashMismatchError("(unsaved)", expected, preview.preview_hash)

            if preview.is_degraded and not acknowledge_degraded:
                raise DataSourceDegradedError([d.reason for d in preview.degradations])

            now = self._clock.now()
            max_age = self._settings.pricing.max_staleness_seconds
            age = preview.price_snapshot.age_seconds(now)
            if age > max_age:
                raise StalePriceError(preview.price_snapshot.asset_symbol, age, max_age)

            if not preview.eligible_shares:
                raise NoEligibleContributorsError("preview has no eligible contributors")

            run_id = uuid4()
            payouts = [
                Payout(
                    payout_id=uuid4(),
                    run_id=run_id,
                    contributor_id=share.contributor_id,
                    login=share.login,
                    idempotency_key=derive_idempotency_key(run_id, share.contributor_id),
                    settlement_account=share.settlement_account,
                    contribution_count=share.contribution_count,
                    share_ratio=share.share_ratio,
                    usd_amount=share.usd_amount,
                    native_amount=share.native_amount,
                    status=PayoutStatus.PENDING,
                    contributions=preview.contribution_details.get(share.login, ()),
                )
                for share in preview.eligible_shares
            ]
            run = PayrollRun(
                run_id=run_id,
                policy=preview.policy,
                price_snapshot=preview.price_snapshot,
                status=RunStatus.PREVIEW_READY,
                preview_hash=preview.preview_hash,
                payout_digest=hash_payout_rows([payout_digest_row(p) for p in payouts]),
                asset_decimals=preview.asset_decimals,
                retry_policy=retry_policy or retry_policy_from_settings(self._settings),
                created_by=created_by,
                created_at=now,
            )
            self._ledger.create_run(run, payouts)

            logger.info("run_created", extra={
                "run_id": str(run_id),
                "preview_hash": preview.preview_hash,
                "payout_count": len(payouts),
                "total_usd": str(preview.total_usd),
                "degraded_acknowledged": preview.is_degraded,
            })
            return self._ledger.get_run(run_id)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def execute(self, run_id: UUID) -> ExecutionResult:
        return self._orchestrator.execute_run(run_id)

    def enqueue(self, run_id: UUID) -> bool:
        """Queue ``run_id`` for background execution and return at once."""
        if self._queue is None:
            raise RuntimeError("PayrollService was built without an ExecutionQueue")
        self._ledger.get_run(run_id)
        return self._queue.submit(run_id)

    def resume_incomplete_runs(self) -> int:
        """Queue every EXECUTING run, e.g. after a process restart."""
        runs = self._ledger.list_runs(RunStatus.EXECUTING)
        queued = sum(1 for run in runs if self.enqueue(run.run_id))
        logger.info("incomplete_runs_resumed", extra={"count": queued})
        return queued

    def cancel(self, run_id: UUID) -> ExecutionResult:
        return self._orchestrator.cancel(run_id)

    def retry_failed(
        self,
        run_id: UUID,
        created_by: str,
        error_codes: set[PayoutErrorCode] | None = None,
    ) -> PayrollRun:
        """
        Create a child run paying only the FAILED payouts of ``run_id``.

        Settlement accounts are re-resolved from the identity resolver so a
        fixed wallet is picked up; amounts are carried over unchanged.
        A failed payout is retried by one child run only; payouts already
        taken over by an earlier child are skipped.

        Raises:
            InvalidRunTransitionError: the parent run is not terminal.
            NoEligibleContributorsError: nothing to retry.
            PayoutAlreadyRetriedError: a concurrent call took over the same
                payouts first.
        """
        parent = self._ledger.get_run(run_id)
        if not parent.status.is_terminal:
            raise InvalidRunTransitionError(str(run_id), parent.status.value, "retry")

        failed = [
            p for p in self._ledger.list_payouts(run_id, statuses=[PayoutStatus.FAILED])
            if p.superseded_by_run_id is None
            and (error_codes is None or p.error_code in error_codes)
        ]
        if not failed:
            raise NoEligibleContributorsError(
                f"run {run_id} has no failed payouts left to retry"
            )

        child_id = uuid4()
        payouts = []
        for p in failed:
            identity = self._identities.get(p.login)
            payouts.append(Payout(
                payout_id=uuid4(),
                run_id=child_id,
                contributor_id=p.contributor_id,
                login=p.login,
                idempotency_key=derive_idempotency_key(child_id, p.contributor_id),
                settlement_account=identity.settlement_account if identity else p.settlement_account,
                contribution_count=p.contribution_count,
                share_ratio=p.share_ratio,
                usd_amount=p.usd_amount,
                native_amount=p.native_amount,
                status=PayoutStatus.PENDING,
                contributions=p.contributions,
            ))

        child = PayrollRun(
            run_id=child_id,
            policy=parent.policy,
            price_snapshot=parent.price_snapshot,
            status=RunStatus.PREVIEW_READY,
            preview_hash=parent.preview_hash,
            payout_digest=hash_payout_rows([payout_digest_row(p) for p in payouts]),
            asset_decimals=parent.asset_decimals,
            retry_policy=parent.retry_policy,
            created_by=created_by,
            created_at=self._clock.now(),
            parent_run_id=parent.run_id,
        )
        self._ledger.create_run(child, payouts)
        logger.info("retry_run_created", extra={
            "run_id": str(child_id),
            "parent_run_id": str(run_id),
            "payout_count": len(payouts),
        })
        return self._ledger.get_run(child_id)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_run(self, run_id: UUID) -> PayrollRun:
        return self._ledger.get_run(run_id)

    def list_payouts(self, run_id: UUID) -> tuple[Payout, ...]:
        return self._ledger.list_payouts(run_id)

    def list_artifacts(self, run_id: UUID) -> tuple[Artifact, ...]:
        return self._ledger.list_artifacts(run_id)
