"""
Typed exception hierarchy for the payroll kernel.

Every exception carries a class-level ``code`` (machine-readable, API-safe)
and its context as attributes, so callers catch by type and report by code
instead of parsing messages.

    PayrollKernelError
    |
    +-- InputError                      fails fast, never persisted
    |   +-- InvalidPolicyError
    |   +-- NoEligibleContributorsError
    |   +-- StalePriceError
    |   +-- DataSourceDegradedError
    |
    +-- ExternalServiceError            preview-time collaborators
    |   +-- PriceFeedError
    |   +-- ContributionSourceError
    |
    +-- GatewayError                    captured per payout
    |   +-- RetryableGatewayError
    |   +-- NonRetryableGatewayError
    |
    +-- ArtifactError                   logged, never affects payouts
    |   +-- ArtifactUploadError
    |   +-- ArtifactFetchError
    |   +-- ArtifactVerificationError
    |
    +-- ConsistencyError                fatal to the run
    |   +-- IdempotencyConflictError
    |   +-- PreviewHashMismatchError
    |
    +-- RunError
        +-- RunNotFoundError
        +-- InvalidRunTransitionError
        +-- RunLockedError
        +-- PayoutAlreadyRetriedError

Category        | Code                          | When Raised
----------------|-------------------------------|------------------------------------------
Input           | INVALID_POLICY                | Budget/threshold/cap out of range
                | NO_ELIGIBLE_CONTRIBUTORS      | Contribution map empty after self-exclusion
                | STALE_PRICE                   | Snapshot older than the staleness limit
                | DATA_SOURCE_DEGRADED          | Run creation from a degraded preview
External        | PRICE_FEED_ERROR              | Price feed unreachable or malformed
                | CONTRIBUTION_SOURCE_ERROR     | Contribution source unreachable
Gateway         | RETRYABLE_GATEWAY_ERROR       | Timeout, transport error, try-again
                | NON_RETRYABLE_GATEWAY_ERROR   | Invalid destination, below minimum, ...
Artifact        | ARTIFACT_UPLOAD_FAILED        | Content store rejected the upload
                | ARTIFACT_FETCH_FAILED         | Content store could not return the bytes
                | ARTIFACT_VERIFICATION_FAILED  | Re-fetched bytes do not match the hash
Consistency     | IDEMPOTENCY_CONFLICT          | Same key, different amount
                | PREVIEW_HASH_MISMATCH         | Executed rows differ from the approved preview
Run             | RUN_NOT_FOUND                 | Unknown run id
                | INVALID_RUN_TRANSITION        | Status change not allowed from current state
                | RUN_LOCKED                    | Another orchestrator holds the run lock
                | PAYOUT_ALREADY_RETRIED        | Failed payout already taken by a child run

Idempotent replays are not errors: executing a finished run returns its
recorded result.
"""

from __future__ import annotations

from decimal import Decimal


class PayrollKernelError(Exception):
    """
    Base exception for all payroll kernel errors.

    All subclasses define a ``code`` class attribute.
    """

    code: str = "PAYROLL_KERNEL_ERROR"


# Input errors


class InputError(PayrollKernelError):
    """Malformed input. Fails fast and is never persisted as a partial run."""

    code: str = "INPUT_ERROR"


class InvalidPolicyError(InputError):
    """Distribution policy failed validation."""

    code: str = "INVALID_POLICY"

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(f"Invalid distribution policy: {'; '.join(self.errors)}")


class NoEligibleContributorsError(InputError):
    """Nothing to distribute over."""

    code: str = "NO_ELIGIBLE_CONTRIBUTORS"

    def __init__(self, reason: str = "no contributors after self-exclusion"):
        self.reason = reason
        super().__init__(f"No eligible contributors: {reason}")


class StalePriceError(InputError):
    """Price snapshot is too old to settle against."""

    code: str = "STALE_PRICE"

    def __init__(self, asset_symbol: str, age_seconds: int, max_staleness_seconds: int):
        self.asset_symbol = asset_symbol
        self.age_seconds = age_seconds
        self.max_staleness_seconds = max_staleness_seconds
        super().__init__(
            f"Price data for {asset_symbol} is stale: {age_seconds}s old "
            f"(max: {max_staleness_seconds}s)"
        )


class DataSourceDegradedError(InputError):
    """Run creation was attempted from a preview built on degraded data."""

    code: str = "DATA_SOURCE_DEGRADED"

    def __init__(self, reasons: list[str]):
        self.reasons = list(reasons)
        super().__init__(
            f"Preview was built from degraded contribution data: {'; '.join(self.reasons)}"
        )


# External collaborator errors (preview time)


class ExternalServiceError(PayrollKernelError):
    """A preview-time collaborator failed."""

    code: str = "EXTERNAL_SERVICE_ERROR"


class PriceFeedError(ExternalServiceError):
    """Price feed could not produce a usable quote."""

    code: str = "PRICE_FEED_ERROR"

    def __init__(self, asset_symbol: str, detail: str):
        self.asset_symbol = asset_symbol
        self.detail = detail
        super().__init__(f"Price feed failed for {asset_symbol}: {detail}")


class ContributionSourceError(ExternalServiceError):
    """Contribution data source could not be queried."""

    code: str = "CONTRIBUTION_SOURCE_ERROR"

    def __init__(self, repository: str, detail: str, retryable: bool = True):
        self.repository = repository
        self.detail = detail
        self.retryable = retryable
        super().__init__(f"Contribution source failed for {repository}: {detail}")


# Gateway errors (captured per payout)


class GatewayError(PayrollKernelError):
    """Base class for payment gateway failures."""

    code: str = "GATEWAY_ERROR"
    retryable: bool = False

    def __init__(self, reason_code: str, message: str):
        self.reason_code = reason_code
        self.gateway_message = message
        super().__init__(f"{reason_code}: {message}")


class RetryableGatewayError(GatewayError):
    """Timeout, transient network failure, or a try-again rejection."""

    code: str = "RETRYABLE_GATEWAY_ERROR"
    retryable = True


class NonRetryableGatewayError(GatewayError):
    """The gateway will never accept this payout as submitted."""

    code: str = "NON_RETRYABLE_GATEWAY_ERROR"
    retryable = False


# Artifact errors


class ArtifactError(PayrollKernelError):
    """Artifact emission failure. Never changes payout state."""

    code: str = "ARTIFACT_ERROR"


class ArtifactUploadError(ArtifactError):
    code: str = "ARTIFACT_UPLOAD_FAILED"

    def __init__(self, filename: str, detail: str):
        self.filename = filename
        self.detail = detail
        super().__init__(f"Upload of {filename} failed: {detail}")


class ArtifactFetchError(ArtifactError):
    code: str = "ARTIFACT_FETCH_FAILED"

    def __init__(self, content_id: str, detail: str):
        self.content_id = content_id
        self.detail = detail
        super().__init__(f"Fetch of {content_id} failed: {detail}")


class ArtifactVerificationError(ArtifactError):
    code: str = "ARTIFACT_VERIFICATION_FAILED"

    def __init__(self, content_id: str, expected_hash: str, actual_hash: str | None):
        self.content_id = content_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Content {content_id} failed verification: "
            f"expected {expected_hash}, got {actual_hash}"
        )


# Consistency errors (fatal to the run)


class ConsistencyError(PayrollKernelError):
    """Stored state disagrees with what was approved. Operator action required."""

    code: str = "CONSISTENCY_ERROR"


class IdempotencyConflictError(ConsistencyError):
    """An idempotency key already exists with a different amount."""

    code: str = "IDEMPOTENCY_CONFLICT"

    def __init__(
        self,
        idempotency_key: str,
        existing_amount: Decimal | int,
        requested_amount: Decimal | int,
    ):
        self.idempotency_key = idempotency_key
        self.existing_amount = existing_amount
        self.requested_amount = requested_amount
        super().__init__(
            f"Idempotency key {idempotency_key} already bound to amount "
            f"{existing_amount}, refusing {requested_amount}"
        )


class PreviewHashMismatchError(ConsistencyError):
    """The run's payouts no longer match the approved preview."""

    code: str = "PREVIEW_HASH_MISMATCH"

    def __init__(self, run_id: str, expected_hash: str, actual_hash: str):
        self.run_id = run_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Run {run_id} does not match its approved preview: "
            f"expected {expected_hash}, got {actual_hash}"
        )


# Run lifecycle errors


class RunError(PayrollKernelError):
    code: str = "RUN_ERROR"


class RunNotFoundError(RunError):
    code: str = "RUN_NOT_FOUND"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Payroll run not found: {run_id}")


class InvalidRunTransitionError(RunError):
    code: str = "INVALID_RUN_TRANSITION"

    def __init__(self, run_id: str, from_status: str, to_status: str):
        self.run_id = run_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Run {run_id} cannot transition from {from_status} to {to_status}"
        )


class RunLockedError(RunError):
    """Another orchestrator instance currently owns the run."""

    code: str = "RUN_LOCKED"

    def __init__(self, run_id: str, lock_owner: str | None):
        self.run_id = run_id
        self.lock_owner = lock_owner
        super().__init__(f"Run {run_id} is locked by {lock_owner}")


class PayoutAlreadyRetriedError(RunError):
    """A failed payout has already been taken over by another child run."""

    code: str = "PAYOUT_ALREADY_RETRIED"

    def __init__(self, run_id: str, contributor_ids: list[str]):
        self.run_id = run_id
        self.contributor_ids = contributor_ids
        super().__init__(
            f"Failed payouts of run {run_id} already retried: {', '.join(contributor_ids)}"
        )
