"""
ORM models for payroll run persistence.

Contract:
    PayrollRunModel, PayoutModel and ArtifactModel persist run state,
    per-contributor payouts and emitted settlement records. Each has
    ``to_dto()`` / ``from_dto()`` round-trip methods; services hand out DTOs
    only.

Architecture: payroll_kernel/models. Imports from payroll_kernel.db.base and
payroll_kernel.domain only.

Invariants enforced:
    - ``idempotency_key`` is UNIQUE on PayoutModel.
    - ``superseded_by_run_id`` links a FAILED payout to the one child run
      that retries it; it is written once and never cleared.
    - (run_id, kind, scope) is UNIQUE on ArtifactModel: artifacts are
      write-once. ``scope`` is the contributor id, or ``RUN_SCOPE`` for
      run-level documents, so the constraint also holds on backends where
      NULLs never collide.
    - Policy, price snapshot and retry policy are frozen onto the run row at
      creation and never updated.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from payroll_kernel.domain.types import Artifact, Payout, PayrollRun

RUN_SCOPE = "__run__"
SYSTEM_ACTOR = "system"


class PayrollRunModel(TrackedBase):
    """Persistent payroll run: frozen inputs plus lifecycle and lock state."""

    __tablename__ = "payroll_runs"

    __table_args__ = (
        Index("ix_payroll_runs_status", "status"),
        Index("ix_payroll_runs_parent", "parent_run_id"),
    )

    status: Mapped[str] = mapped_column(String(50), nullable=False)

    # Policy
    mode: Mapped[str] = mapped_column(String(50), nullable=False)
    total_budget_usd: Mapped[Decimal] = mapped_column(nullable=False)
    min_contribution_threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    max_share_cap: Mapped[Decimal | None] = mapped_column(nullable=True)
    excluded_logins: Mapped[list | None] = mapped_column(JSON, nullable=True)

    # Price snapshot
    asset_symbol: Mapped[str] = mapped_column(String(50), nullable=False)
    usd_price: Mapped[Decimal] = mapped_column(nullable=False)
    feed_identifier: Mapped[str] = mapped_column(String(200), nullable=False)
    price_captured_at: Mapped[datetime] = mapped_column(nullable=False)
    price_confidence: Mapped[Decimal | None] = mapped_column(nullable=True)
    asset_decimals: Mapped[int] = mapped_column(Integer, nullable=False)

    # Retry policy
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False)
    retry_delay_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    backoff: Mapped[str] = mapped_column(String(20), nullable=False)
    max_delay_seconds: Mapped[float] = mapped_column(Float, nullable=False)

    preview_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    payout_digest: Mapped[str] = mapped_column(String(64), nullable=False)
    parent_run_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("payroll_runs.id"),
        nullable=True,
    )

    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    lock_owner: Mapped[str | None] = mapped_column(String(200), nullable=True)
    lock_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    payouts: Mapped[list["PayoutModel"]] = relationship(
        "PayoutModel",
        back_populates="run",
        foreign_keys="PayoutModel.run_id",
    )

    def to_dto(self) -> PayrollRun:
        from payroll_kernel.domain.types import (
            BackoffKind,
            PayrollRun,
            RetryPolicy,
            RunStatus,
        )
        from payroll_kernel.domain.values import (
            DistributionMode,
            DistributionPolicy,
            PriceSnapshot,
        )

        return PayrollRun(
            run_id=self.id,
            policy=DistributionPolicy(
                mode=DistributionMode(self.mode),
                total_budget_usd=self.total_budget_usd,
                min_contribution_threshold=self.min_contribution_threshold,
                max_share_cap=self.max_share_cap,
                excluded_logins=frozenset(self.excluded_logins or ()),
            ),
            price_snapshot=PriceSnapshot(
                asset_symbol=self.asset_symbol,
                usd_price=self.usd_price,
                feed_identifier=self.feed_identifier,
                captured_at=self.price_captured_at,
                confidence=self.price_confidence,
            ),
            status=RunStatus(self.status),
            preview_hash=self.preview_hash,
            payout_digest=self.payout_digest,
            asset_decimals=self.asset_decimals,
            retry_policy=RetryPolicy(
                max_retries=self.max_retries,
                retry_delay_seconds=self.retry_delay_seconds,
                backoff=BackoffKind(self.backoff),
                max_delay_seconds=self.max_delay_seconds,
            ),
            created_by=self.created_by_id,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            parent_run_id=self.parent_run_id,
            error_code=self.error_code,
            error_message=self.error_message,
            cancel_requested=self.cancel_requested,
        )

    @classmethod
    def from_dto(cls, dto: PayrollRun) -> PayrollRunModel:
        policy = dto.policy
        snapshot = dto.price_snapshot
        retry = dto.retry_policy
        return cls(
            id=dto.run_id,
            status=dto.status.value,
            mode=policy.mode.value,
            total_budget_usd=policy.total_budget_usd,
            min_contribution_threshold=policy.min_contribution_threshold,
            max_share_cap=policy.max_share_cap,
            excluded_logins=sorted(policy.excluded_logins) or None,
            asset_symbol=snapshot.asset_symbol,
            usd_price=snapshot.usd_price,
            feed_identifier=snapshot.feed_identifier,
            price_captured_at=snapshot.captured_at,
            price_confidence=snapshot.confidence,
            asset_decimals=dto.asset_decimals,
            max_retries=retry.max_retries,
            retry_delay_seconds=retry.retry_delay_seconds,
            backoff=retry.backoff.value,
            max_delay_seconds=retry.max_delay_seconds,
            preview_hash=dto.preview_hash,
            payout_digest=dto.payout_digest,
            parent_run_id=dto.parent_run_id,
            started_at=dto.started_at,
            finished_at=dto.finished_at,
            error_code=dto.error_code,
            error_message=dto.error_message,
            cancel_requested=dto.cancel_requested,
            created_at=dto.created_at,
            created_by_id=dto.created_by or SYSTEM_ACTOR,
        )


class PayoutModel(TrackedBase):
    """One contributor's settlement record within a run."""

    __tablename__ = "payroll_payouts"

    __table_args__ = (
        Index("ix_payroll_payouts_run_status", "run_id", "status"),
        UniqueConstraint("run_id", "contributor_id", name="uq_payout_run_contributor"),
    )

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("payroll_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    contributor_id: Mapped[str] = mapped_column(String(200), nullable=False)
    login: Mapped[str] = mapped_column(String(200), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(
        String(200), nullable=False, unique=True,
    )
    settlement_account: Mapped[str] = mapped_column(String(200), nullable=False)
    contribution_count: Mapped[int] = mapped_column(Integer, nullable=False)
    share_ratio: Mapped[Decimal] = mapped_column(nullable=False)
    usd_amount: Mapped[Decimal] = mapped_column(nullable=False)
    native_amount: Mapped[int] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    settlement_tx_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    superseded_by_run_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("payroll_runs.id"),
        nullable=True,
    )
    contribution_details: Mapped[list | None] = mapped_column(JSON, nullable=True)

    run: Mapped["PayrollRunModel"] = relationship(
        "PayrollRunModel",
        back_populates="payouts",
        foreign_keys=[run_id],
    )

    def digest_row(self) -> dict:
        """The fields covered by the run's payout digest."""
        return {
            "contributor_id": self.contributor_id,
            "idempotency_key": self.idempotency_key,
            "settlement_account": self.settlement_account,
            "share_ratio": self.share_ratio,
            "usd_amount": self.usd_amount,
            "native_amount": self.native_amount,
        }

    def to_dto(self) -> Payout:
        from payroll_kernel.domain.types import Payout, PayoutErrorCode, PayoutStatus
        from payroll_kernel.domain.values import ContributionDetail

        return Payout(
            payout_id=self.id,
            run_id=self.run_id,
            contributor_id=self.contributor_id,
            login=self.login,
            idempotency_key=self.idempotency_key,
            settlement_account=self.settlement_account,
            contribution_count=self.contribution_count,
            share_ratio=self.share_ratio,
            usd_amount=self.usd_amount,
            native_amount=self.native_amount,
            status=PayoutStatus(self.status),
            attempt_count=self.attempt_count,
            settlement_tx_id=self.settlement_tx_id,
            error_code=PayoutErrorCode(self.error_code) if self.error_code else None,
            error_message=self.error_message,
            submitted_at=self.submitted_at,
            confirmed_at=self.confirmed_at,
            superseded_by_run_id=self.superseded_by_run_id,
            contributions=tuple(
                ContributionDetail.from_dict(d) for d in self.contribution_details or ()
            ),
        )

    @classmethod
    def from_dto(cls, dto: Payout, created_at: datetime, created_by_id: str) -> PayoutModel:
        return cls(
            id=dto.payout_id,
            run_id=dto.run_id,
            contributor_id=dto.contributor_id,
            login=dto.login,
            idempotency_key=dto.idempotency_key,
            settlement_account=dto.settlement_account,
            contribution_count=dto.contribution_count,
            share_ratio=dto.share_ratio,
            usd_amount=dto.usd_amount,
            native_amount=dto.native_amount,
            status=dto.status.value,
            attempt_count=dto.attempt_count,
            settlement_tx_id=dto.settlement_tx_id,
            error_code=dto.error_code.value if dto.error_code else None,
            error_message=dto.error_message,
            submitted_at=dto.submitted_at,
            confirmed_at=dto.confirmed_at,
            superseded_by_run_id=dto.superseded_by_run_id,
            contribution_details=[d.to_dict() for d in dto.contributions] or None,
            created_at=created_at,
            created_by_id=created_by_id,
        )


class ArtifactModel(TrackedBase):
    """Write-once record of an uploaded settlement document."""

    __tablename__ = "payroll_artifacts"

    __table_args__ = (
        UniqueConstraint("run_id", "kind", "scope", name="uq_artifact_run_kind_scope"),
        Index("ix_payroll_artifacts_run", "run_id"),
    )

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("payroll_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    scope: Mapped[str] = mapped_column(String(200), nullable=False)
    contributor_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    content_id: Mapped[str] = mapped_column(String(200), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    filename: Mapped[str | None] = mapped_column(String(300), nullable=True)

    def to_dto(self) -> Artifact:
        from payroll_kernel.domain.types import Artifact, ArtifactKind

        return Artifact(
            artifact_id=self.id,
            run_id=self.run_id,
            kind=ArtifactKind(self.kind),
            content_id=self.content_id,
            content_hash=self.content_hash,
            size_bytes=self.size_bytes,
            verified=self.verified,
            contributor_id=self.contributor_id,
            filename=self.filename,
            created_at=self.created_at,
        )

    @classmethod
    def from_dto(cls, dto: Artifact, created_by_id: str = SYSTEM_ACTOR) -> ArtifactModel:
        return cls(
            id=dto.artifact_id,
            run_id=dto.run_id,
            kind=dto.kind.value,
            scope=dto.contributor_id or RUN_SCOPE,
            contributor_id=dto.contributor_id,
            content_id=dto.content_id,
            content_hash=dto.content_hash,
            size_bytes=dto.size_bytes,
            verified=dto.verified,
            filename=dto.filename,
            created_at=dto.created_at,
            created_by_id=created_by_id,
        )
