"""
External collaborator ports.

The payroll engine consumes four services it does not own: a contribution
source, a price feed, a payment gateway and a content-addressed store. They
are typed here as Protocols so services accept any implementation (the
httpx clients in ``payroll_services.clients`` or in-memory fakes).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol, runtime_checkable

from payroll_kernel.domain.values import ContributionDetail, ContributorIdentity

IdentityResolver = Mapping[str, ContributorIdentity]


@dataclass(frozen=True)
class RepoSelection:
    """Repositories (``owner/name``) plus optional label filters."""

    repositories: tuple[str, ...]
    include_labels: tuple[str, ...] = ()
    exclude_labels: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "repositories", tuple(self.repositories))
        if not self.repositories:
            raise ValueError("At least one repository is required")
        for repo in self.repositories:
            if repo.count("/") != 1:
                raise ValueError(f"Repository must be 'owner/name', got {repo!r}")


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError("DateRange end precedes start")


@dataclass(frozen=True)
class ContributionReport:
    """
    What the contribution source returned.

    ``degraded`` means the counts may be incomplete (rate limit, partial
    outage, unexpected payload). Counts are never filled in by guesswork.
    """

    counts: dict[str, int]
    details: dict[str, tuple[ContributionDetail, ...]] = field(default_factory=dict)
    degraded: bool = False
    degraded_reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class PriceQuote:
    asset_symbol: str
    price: Decimal
    feed_identifier: str
    as_of: datetime
    confidence: Decimal | None = None


class GatewayStatus(str, Enum):
    """What the gateway knows about an idempotency key."""

    SUBMITTED = "submitted"  # Accepted, not yet final
    CONFIRMED = "confirmed"  # Settled
    UNKNOWN = "unknown"  # Never seen, or dropped


@dataclass(frozen=True)
class GatewayReceipt:
    """Result of a submission or a status lookup."""

    status: GatewayStatus
    tx_id: str | None = None
    message: str | None = None


@runtime_checkable
class ContributionSource(Protocol):
    def fetch(self, repo_selection: RepoSelection, date_range: DateRange) -> ContributionReport:
        ...


@runtime_checkable
class PriceFeed(Protocol):
    def latest(self, asset_symbol: str) -> PriceQuote:
        ...


@runtime_checkable
class PaymentGateway(Protocol):
    def validate_account(self, account: str) -> bool:
        """Local syntactic check of a settlement account. No network call."""
        ...

    def submit(
        self,
        destination_account: str,
        amount: int,
        memo: str,
        idempotency_key: str,
        timeout: float,
    ) -> GatewayReceipt:
        """
        Submit a transfer of ``amount`` smallest units.

        Raises:
            RetryableGatewayError: timeout, transport failure, try-again.
            NonRetryableGatewayError: the transfer can never succeed as is.
        """
        ...

    def query_status(self, idempotency_key: str) -> GatewayReceipt:
        ...


@runtime_checkable
class ContentStore(Protocol):
    def upload(self, data: bytes, filename: str) -> str:
        """Store ``data`` and return its content id."""
        ...

    def fetch(self, content_id: str) -> bytes:
        ...
