"""
ArtifactEmitter -- renders and uploads settlement records.

Contract:
    ``emit_for_payout`` writes one payslip record per confirmed payout;
    ``emit_for_run`` writes the run summary (JSON), the CSV payslip and a
    manifest listing both with their content ids and hashes.

Architecture: payroll_services. Uses a ContentStore port and the ledger.

Invariants enforced:
    - Rendering is deterministic: the same run and payouts give the same
      bytes, hence the same content hash.
    - Write-once: an artifact already recorded for (run, kind, contributor)
      is returned without uploading again.
    - Emission never raises to the caller and never touches payout state.
      Failures are logged as ``artifact_emission_failed``.
    - Uploads retry on their own budget, independent of payment retries.
    - Records missed because the store stayed down are filled in later by
      ``emit_missing``, on the same write-once slots.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Sequence
from decimal import Decimal
from uuid import uuid4

from payroll_config.schema import ArtifactSettings
from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.domain.types import Artifact, ArtifactKind, Payout, PayoutStatus, PayrollRun
from payroll_kernel.exceptions import (
    ArtifactError,
    ArtifactUploadError,
    ArtifactVerificationError,
)
from payroll_kernel.logging_config import get_logger
from payroll_kernel.utils.hashing import canonicalize_json, hash_bytes
from payroll_services.ports import ContentStore
from payroll_services.payout_ledger import PayoutLedger

logger = get_logger("services.artifact_emitter")

RECORD_VERSION = 1

CSV_COLUMNS = (
    "login",
    "contributor_id",
    "settlement_account",
    "contribution_count",
    "share_ratio",
    "usd_amount",
    "native_amount",
    "status",
    "settlement_tx_id",
    "error_code",
    "error_message",
)


def _run_header(run: PayrollRun) -> dict:
    return {
        "run_id": str(run.run_id),
        "parent_run_id": str(run.parent_run_id) if run.parent_run_id else None,
        "status": run.status.value,
        "preview_hash": run.preview_hash,
        "policy": run.policy.to_dict(),
        "price_snapshot": run.price_snapshot.to_dict(),
        "asset_decimals": run.asset_decimals,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
    }


def _payout_entry(payout: Payout) -> dict:
    return {
        "login": payout.login,
        "contributor_id": payout.contributor_id,
        "settlement_account": payout.settlement_account,
        "idempotency_key": payout.idempotency_key,
        "contribution_count": payout.contribution_count,
        "share_ratio": str(payout.share_ratio),
        "usd_amount": str(payout.usd_amount),
        "native_amount": payout.native_amount,
        "status": payout.status.value,
        "attempt_count": payout.attempt_count,
        "settlement_tx_id": payout.settlement_tx_id,
        "error": payout.error,
        "confirmed_at": payout.confirmed_at.isoformat() if payout.confirmed_at else None,
    }


def render_payout_record(run: PayrollRun, payout: Payout) -> bytes:
    """Per-contributor payslip as canonical JSON, listing the merged PRs paid for."""
    return canonicalize_json({
        "record_type": ArtifactKind.PAYOUT_RECORD.value,
        "version": RECORD_VERSION,
        "run": {
            "run_id": str(run.run_id),
            "preview_hash": run.preview_hash,
            "price_snapshot": run.price_snapshot.to_dict(),
            "asset_decimals": run.asset_decimals,
        },
        "payout": _payout_entry(payout),
        "contributions": [
            d.to_dict()
            for d in sorted(payout.contributions, key=lambda d: (d.repository, d.number))
        ],
    }).encode("utf-8")


def render_run_summary(run: PayrollRun, payouts: Sequence[Payout]) -> bytes:
    ordered = sorted(payouts, key=lambda p: p.login)
    confirmed = [p for p in ordered if p.status == PayoutStatus.CONFIRMED]
    return canonicalize_json({
        "record_type": ArtifactKind.RUN_SUMMARY.value,
        "version": RECORD_VERSION,
        "run": _run_header(run),
        "totals": {
            "payout_count": len(ordered),
            "confirmed_count": len(confirmed),
            "failed_count": sum(1 for p in ordered if p.status == PayoutStatus.FAILED),
            "confirmed_usd": str(sum((p.usd_amount for p in confirmed), Decimal("0"))),
            "confirmed_native": sum(p.native_amount for p in confirmed),
        },
        "payouts": [_payout_entry(p) for p in ordered],
    }).encode("utf-8")


def render_run_csv(payouts: Sequence[Payout]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for p in sorted(payouts, key=lambda p: p.login):
        writer.writerow([
            p.login,
            p.contributor_id,
            p.settlement_account,
            p.contribution_count,
            str(p.share_ratio),
            str(p.usd_amount),
            p.native_amount,
            p.status.value,
            p.settlement_tx_id or "",
            p.error_code.value if p.error_code else "",
            p.error_message or "",
        ])
    return buffer.getvalue().encode("utf-8")


def render_manifest(run: PayrollRun, artifacts: Sequence[Artifact]) -> bytes:
    return canonicalize_json({
        "record_type": ArtifactKind.RUN_MANIFEST.value,
        "version": RECORD_VERSION,
        "run_id": str(run.run_id),
        "files": [
            {
                "kind": a.kind.value,
                "filename": a.filename,
                "content_id": a.content_id,
                "sha256": a.content_hash,
                "size_bytes": a.size_bytes,
            }
            for a in sorted(artifacts, key=lambda a: a.kind.value)
        ],
    }).encode("utf-8")


class ArtifactEmitter:
    """Upload, verify and record settlement documents.

    Contract:
        Never raises from ``emit_for_payout`` / ``emit_for_run``.
    Non-goals:
        Does not decide when to emit; the orchestrator calls it.
    """

    def __init__(
        self,
        ledger: PayoutLedger,
        store: ContentStore,
        settings: ArtifactSettings | None = None,
        clock: Clock | None = None,
    ):
        self._ledger = ledger
        self._store = store
        self._settings = settings or ArtifactSettings()
        self._clock = clock or SystemClock()

    def emit_for_payout(self, run: PayrollRun, payout: Payout) -> Artifact | None:
        filename = f"payslip-{run.run_id}-{payout.contributor_id}.json"
        return self._emit_safely(
            run,
            ArtifactKind.PAYOUT_RECORD,
            payout.contributor_id,
            filename,
            lambda: render_payout_record(run, payout),
        )

    def emit_for_run(self, run: PayrollRun, payouts: Sequence[Payout]) -> tuple[Artifact, ...]:
        emitted: list[Artifact] = []
        summary = self._emit_safely(
            run,
            ArtifactKind.RUN_SUMMARY,
            None,
            f"payroll-data-{run.run_id}.json",
            lambda: render_run_summary(run, payouts),
        )
        if summary is not None:
            emitted.append(summary)
        sheet = self._emit_safely(
            run,
            ArtifactKind.RUN_CSV,
            None,
            f"payroll-slip-{run.run_id}.csv",
            lambda: render_run_csv(payouts),
        )
        if sheet is not None:
            emitted.append(sheet)
        # the manifest is write-once, so it waits until it can list both files
        if summary is not None and sheet is not None:
            listed = tuple(emitted)
            manifest = self._emit_safely(
                run,
                ArtifactKind.RUN_MANIFEST,
                None,
                f"payroll-manifest-{run.run_id}.json",
                lambda: render_manifest(run, listed),
            )
            if manifest is not None:
                emitted.append(manifest)
        return tuple(emitted)

    def emit_missing(self, run: PayrollRun) -> tuple[Artifact, ...]:
        """
        Emit whatever a terminal run is still missing after an earlier outage.

        Payslips for CONFIRMED payouts and the run documents already recorded
        are kept as they are; only absent slots are rendered and uploaded.
        Runs failed by a consistency check never get settlement records.
        """
        if not run.status.is_terminal or run.error_code is not None:
            return self._ledger.list_artifacts(run.run_id)

        payouts = self._ledger.list_payouts(run.run_id)
        before = len(self._ledger.list_artifacts(run.run_id))
        for payout in payouts:
            if payout.status == PayoutStatus.CONFIRMED:
                self.emit_for_payout(run, payout)
        self.emit_for_run(run, payouts)

        artifacts = self._ledger.list_artifacts(run.run_id)
        if len(artifacts) > before:
            logger.info("artifacts_backfilled", extra={
                "run_id": str(run.run_id),
                "count": len(artifacts) - before,
            })
        return artifacts

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _emit_safely(self, run, kind, contributor_id, filename, render) -> Artifact | None:
        if not self._settings.enabled:
            return None
        try:
            existing = self._ledger.get_artifact(run.run_id, kind, contributor_id)
            if existing is not None:
                return existing
            return self._emit(run, kind, contributor_id, filename, render())
        except Exception:
            logger.exception("artifact_emission_failed", extra={
                "run_id": str(run.run_id),
                "kind": kind.value,
                "contributor_id": contributor_id,
                "artifact_filename": filename,
            })
            return None

    def _emit(self, run, kind, contributor_id, filename, data: bytes) -> Artifact:
        content_hash = hash_bytes(data)
        content_id = self._upload_with_retry(data, filename)
        verified = self._verify(content_id, content_hash) if self._settings.verify else False

        artifact = Artifact(
            artifact_id=uuid4(),
            run_id=run.run_id,
            kind=kind,
            content_id=content_id,
            content_hash=content_hash,
            size_bytes=len(data),
            verified=verified,
            contributor_id=contributor_id,
            filename=filename,
            created_at=self._clock.now(),
        )
        recorded = self._ledger.record_artifact(artifact)
        logger.info("artifact_emitted", extra={
            "run_id": str(run.run_id),
            "kind": kind.value,
            "contributor_id": contributor_id,
            "content_id": content_id,
            "verified": verified,
        })
        return recorded

    def _upload_with_retry(self, data: bytes, filename: str) -> str:
        attempts = max(1, self._settings.max_upload_attempts)
        last_error: ArtifactError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return self._store.upload(data, filename)
            except ArtifactError as exc:
                last_error = exc
                logger.warning("artifact_upload_retry", extra={
                    "artifact_filename": filename,
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "error": str(exc),
                })
                if attempt < attempts:
                    self._clock.sleep(self._settings.retry_delay_seconds * attempt)
        raise ArtifactUploadError(filename, f"gave up after {attempts} attempts: {last_error}")

    def _verify(self, content_id: str, expected_hash: str) -> bool:
        try:
            actual_hash = hash_bytes(self._store.fetch(content_id))
        except ArtifactError:
            logger.warning("artifact_verification_unavailable", extra={
                "content_id": content_id,
            }, exc_info=True)
            return False
        if actual_hash != expected_hash:
            logger.warning("artifact_verification_failed", extra={
                "content_id": content_id,
                "expected_hash": expected_hash,
                "actual_hash": actual_hash,
                "error_code": ArtifactVerificationError.code,
            })
            return False
        return True
