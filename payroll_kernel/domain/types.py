"""
payroll_kernel.domain.types -- frozen DTOs for runs, payouts and artifacts.

ZERO I/O. ORM models convert to and from these with ``to_dto()`` /
``from_dto()``; services only ever hand DTOs to callers.

Invariants enforced:
    - Run lifecycle: PREVIEW_READY -> EXECUTING -> terminal.
    - Payout lifecycle: PENDING -> SUBMITTED -> CONFIRMED | FAILED.
    - A Payout's ``idempotency_key`` is its concurrency-control anchor.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from payroll_kernel.domain.values import ContributionDetail, DistributionPolicy, PriceSnapshot


# =============================================================================
# Status enums
# =============================================================================


class RunStatus(str, Enum):
    """Run-level lifecycle status."""

    PREVIEW_READY = "preview_ready"  # Created from an accepted preview
    EXECUTING = "executing"  # Payment attempts may be in flight
    COMPLETED = "completed"  # Every payout CONFIRMED
    PARTIALLY_COMPLETED = "partially_completed"  # Some CONFIRMED, some FAILED
    FAILED = "failed"  # Nothing CONFIRMED, or a consistency failure

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.PARTIALLY_COMPLETED, RunStatus.FAILED}
)


class PayoutStatus(str, Enum):
    """Per-payout lifecycle status."""

    PENDING = "pending"  # Never handed to the gateway
    SUBMITTED = "submitted"  # Claimed for an attempt; outcome not yet known
    CONFIRMED = "confirmed"  # Gateway confirmed settlement
    FAILED = "failed"  # Terminal failure, see error_code

    @property
    def is_terminal(self) -> bool:
        return self in (PayoutStatus.CONFIRMED, PayoutStatus.FAILED)


class PayoutErrorCode(str, Enum):
    """Machine-readable failure reasons, used for targeted retry."""

    INVALID_DESTINATION = "invalid_destination"
    BELOW_NETWORK_MINIMUM = "below_network_minimum"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    REJECTED = "rejected"
    RETRIES_EXHAUSTED = "retries_exhausted"
    GATEWAY_ERROR = "gateway_error"
    CANCELLED = "cancelled"

    @classmethod
    def from_reason(cls, reason_code: str) -> PayoutErrorCode:
        """Map a gateway reason code onto the closed set, REJECTED if unknown."""
        try:
            return cls(reason_code.lower())
        except ValueError:
            return cls.REJECTED


class BackoffKind(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class ArtifactKind(str, Enum):
    PAYOUT_RECORD = "payout_record"  # Per-contributor payslip
    RUN_SUMMARY = "run_summary"  # Run-level JSON
    RUN_CSV = "run_csv"  # Run-level CSV payslip
    RUN_MANIFEST = "run_manifest"  # Lists the run-level files and hashes


# =============================================================================
# Retry policy
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Per-run payment retry configuration.

    ``max_retries`` is the total number of gateway attempts per payout.
    """

    max_retries: int = 3
    retry_delay_seconds: float = 2.0
    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    max_delay_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds cannot be negative")
        object.__setattr__(self, "backoff", BackoffKind(self.backoff))

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        if self.backoff == BackoffKind.FIXED:
            delay = self.retry_delay_seconds
        else:
            delay = self.retry_delay_seconds * (2 ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


# =============================================================================
# Run / payout / artifact DTOs
# =============================================================================


@dataclass(frozen=True)
class PayrollRun:
    """Immutable snapshot of a payroll run."""

    run_id: UUID
    policy: DistributionPolicy
    price_snapshot: PriceSnapshot
    status: RunStatus
    preview_hash: str
    payout_digest: str
    asset_decimals: int
    retry_policy: RetryPolicy
    created_by: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    parent_run_id: UUID | None = None
    error_code: str | None = None
    error_message: str | None = None
    cancel_requested: bool = False


@dataclass(frozen=True)
class Payout:
    """Immutable snapshot of one contributor's settlement record."""

    payout_id: UUID
    run_id: UUID
    contributor_id: str
    login: str
    idempotency_key: str
    settlement_account: str
    contribution_count: int
    share_ratio: Decimal
    usd_amount: Decimal
    native_amount: int
    status: PayoutStatus
    attempt_count: int = 0
    settlement_tx_id: str | None = None
    error_code: PayoutErrorCode | None = None
    error_message: str | None = None
    submitted_at: datetime | None = None
    confirmed_at: datetime | None = None
    superseded_by_run_id: UUID | None = None
    contributions: tuple[ContributionDetail, ...] = ()

    @property
    def error(self) -> dict[str, str] | None:
        """Structured error: reason code plus gateway message."""
        if self.error_code is None:
            return None
        return {"code": self.error_code.value, "message": self.error_message or ""}


@dataclass(frozen=True)
class Artifact:
    """Write-once record of an uploaded settlement document."""

    artifact_id: UUID
    run_id: UUID
    kind: ArtifactKind
    content_id: str
    content_hash: str
    size_bytes: int
    verified: bool
    contributor_id: str | None = None
    filename: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class PayoutFailure:
    contributor_id: str
    login: str
    error_code: PayoutErrorCode
    message: str


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of ``execute_run``. Partial failure is data, not an exception."""

    run_id: UUID
    status: RunStatus
    successful: tuple[Payout, ...] = ()
    failed: tuple[Payout, ...] = ()
    pending: tuple[Payout, ...] = ()
    artifacts: tuple[Artifact, ...] = ()
    skipped_already_confirmed: int = 0

    @property
    def failures(self) -> tuple[PayoutFailure, ...]:
        return tuple(
            PayoutFailure(
                contributor_id=p.contributor_id,
                login=p.login,
                error_code=p.error_code or PayoutErrorCode.GATEWAY_ERROR,
                message=p.error_message or "",
            )
            for p in self.failed
        )

    @property
    def total_confirmed_usd(self) -> Decimal:
        return sum((p.usd_amount for p in self.successful), Decimal("0"))
