"""
Values -- immutable, self-validating distribution value objects.

Responsibility:
    PriceSnapshot, DistributionPolicy, ContributionDetail, ContributorShare and
    DistributionPreview: the inputs and outputs of the distribution
    calculation. Pure data, zero I/O.

Invariants enforced:
    - Monetary amounts are Decimal, native amounts are int. Floats are
      rejected at construction.
    - A policy that exists is valid: budget > 0, threshold >= 0,
      0 < cap <= 1.
    - PriceSnapshot.usd_price > 0 and captured_at is timezone-aware.

Failure modes:
    - InvalidPolicyError on an invalid policy (all problems reported at once).
    - ValueError on an invalid price snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from payroll_kernel.exceptions import InvalidPolicyError

USD_QUANTUM = Decimal("0.01")
RATIO_PLACES = 18
RATIO_QUANTUM = Decimal(1).scaleb(-RATIO_PLACES)


def to_decimal(value: Decimal | int | str, field_name: str = "value") -> Decimal:
    """Coerce ``value`` to Decimal without ever passing through float."""
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"{field_name} must be Decimal, int or str, not {type(value).__name__}")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"{field_name} is not a valid decimal: {value!r}") from exc


def round_usd(amount: Decimal) -> Decimal:
    """Round to cents, half-up. The single rounding rule for USD amounts."""
    return amount.quantize(USD_QUANTUM, rounding=ROUND_HALF_UP)


def truncate_ratio(ratio: Decimal) -> Decimal:
    """Fixed-point share ratio, truncated so a set of ratios never sums above 1."""
    return ratio.quantize(RATIO_QUANTUM, rounding=ROUND_DOWN)


def usd_to_native(usd_amount: Decimal, usd_price: Decimal, asset_decimals: int) -> int:
    """Convert cents-precision USD into integer smallest-unit native amount."""
    scaled = usd_amount / usd_price * (Decimal(10) ** asset_decimals)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


class DistributionMode(str, Enum):
    """How the budget is split between eligible contributors."""

    EQUAL = "equal"
    PR_COUNT_PROPORTIONAL = "pr_count_proportional"


class IneligibilityReason(str, Enum):
    """Why a reported contributor receives no payout. Data, not an error."""

    BELOW_THRESHOLD = "below_threshold"
    UNREGISTERED = "unregistered"
    SELF_PAYMENT = "self_payment"
    EXCLUDED = "excluded"


@dataclass(frozen=True)
class PriceSnapshot:
    """
    Frozen price-for-asset record.

    Captured once per run and stored verbatim; execution never re-queries
    the feed.
    """

    asset_symbol: str
    usd_price: Decimal
    feed_identifier: str
    captured_at: datetime
    confidence: Decimal | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "usd_price", to_decimal(self.usd_price, "usd_price"))
        if self.confidence is not None:
            object.__setattr__(self, "confidence", to_decimal(self.confidence, "confidence"))
        if self.usd_price <= 0:
            raise ValueError(f"usd_price must be positive, got {self.usd_price}")
        if self.captured_at.tzinfo is None:
            raise ValueError("captured_at must be timezone-aware")
        if not self.asset_symbol:
            raise ValueError("asset_symbol is required")

    def age_seconds(self, now: datetime) -> int:
        return int((now - self.captured_at).total_seconds())

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_symbol": self.asset_symbol,
            "usd_price": str(self.usd_price),
            "feed_identifier": self.feed_identifier,
            "captured_at": self.captured_at.isoformat(),
            "confidence": str(self.confidence) if self.confidence is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PriceSnapshot:
        confidence = data.get("confidence")
        return cls(
            asset_symbol=data["asset_symbol"],
            usd_price=Decimal(data["usd_price"]),
            feed_identifier=data["feed_identifier"],
            captured_at=datetime.fromisoformat(data["captured_at"]),
            confidence=Decimal(confidence) if confidence is not None else None,
        )


@dataclass(frozen=True)
class DistributionPolicy:
    """
    Per-run distribution policy.

    Contract:
        Validated on construction; every problem is reported together in a
        single InvalidPolicyError.
    """

    mode: DistributionMode
    total_budget_usd: Decimal
    min_contribution_threshold: int = 1
    max_share_cap: Decimal | None = None
    excluded_logins: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        errors: list[str] = []
        try:
            object.__setattr__(self, "mode", DistributionMode(self.mode))
        except ValueError:
            errors.append(f"Unknown distribution mode: {self.mode!r}")
        try:
            budget = to_decimal(self.total_budget_usd, "total_budget_usd")
            object.__setattr__(self, "total_budget_usd", budget)
            if budget <= 0:
                errors.append("Total budget must be greater than 0")
            elif budget != round_usd(budget):
                errors.append("Total budget must have at most 2 decimal places")
        except (TypeError, ValueError) as exc:
            errors.append(str(exc))
        if self.min_contribution_threshold < 0:
            errors.append("Minimum contribution threshold cannot be negative")
        if self.max_share_cap is not None:
            try:
                cap = to_decimal(self.max_share_cap, "max_share_cap")
                object.__setattr__(self, "max_share_cap", cap)
                if cap <= 0 or cap > 1:
                    errors.append("Maximum share cap must be between 0 and 1")
            except (TypeError, ValueError) as exc:
                errors.append(str(exc))
        object.__setattr__(self, "excluded_logins", frozenset(self.excluded_logins))
        if errors:
            raise InvalidPolicyError(errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "total_budget_usd": str(self.total_budget_usd),
            "min_contribution_threshold": self.min_contribution_threshold,
            "max_share_cap": str(self.max_share_cap) if self.max_share_cap is not None else None,
            "excluded_logins": sorted(self.excluded_logins),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DistributionPolicy:
        cap = data.get("max_share_cap")
        return cls(
            mode=DistributionMode(data["mode"]),
            total_budget_usd=to_decimal(data["total_budget_usd"], "total_budget_usd"),
            min_contribution_threshold=int(data.get("min_contribution_threshold", 1)),
            max_share_cap=to_decimal(cap, "max_share_cap") if cap is not None else None,
            excluded_logins=frozenset(data.get("excluded_logins") or ()),
        )


@dataclass(frozen=True)
class ContributorIdentity:
    """Settlement identity of a registered contributor."""

    contributor_id: str
    settlement_account: str


@dataclass(frozen=True)
class ContributionDetail:
    """One merged contribution, listed on the contributor's payslip."""

    repository: str
    number: int
    title: str
    merged_at: datetime | None
    additions: int = 0
    deletions: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository": self.repository,
            "number": self.number,
            "title": self.title,
            "merged_at": self.merged_at.isoformat() if self.merged_at else None,
            "additions": self.additions,
            "deletions": self.deletions,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContributionDetail:
        merged_at = data.get("merged_at")
        return cls(
            repository=data["repository"],
            number=int(data["number"]),
            title=data.get("title", ""),
            merged_at=datetime.fromisoformat(merged_at) if merged_at else None,
            additions=int(data.get("additions", 0)),
            deletions=int(data.get("deletions", 0)),
        )


@dataclass(frozen=True)
class ContributorShare:
    """
    One contributor's computed entitlement.

    Ineligible contributors are reported with a zero share and a reason so
    the preview shows everyone the data source returned.
    """

    login: str
    contribution_count: int
    share_ratio: Decimal
    usd_amount: Decimal
    native_amount: int
    eligible: bool
    contributor_id: str | None = None
    settlement_account: str | None = None
    ineligibility_reason: IneligibilityReason | None = None
    capped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "login": self.login,
            "contributor_id": self.contributor_id,
            "settlement_account": self.settlement_account,
            "contribution_count": self.contribution_count,
            "share_ratio": str(self.share_ratio),
            "usd_amount": str(self.usd_amount),
            "native_amount": self.native_amount,
            "eligible": self.eligible,
            "ineligibility_reason": (
                self.ineligibility_reason.value if self.ineligibility_reason else None
            ),
            "capped": self.capped,
        }


@dataclass(frozen=True)
class Degradation:
    """A preview input that was unavailable or incomplete."""

    source: str
    reason: str


@dataclass(frozen=True)
class DistributionPreview:
    """
    Result of a distribution calculation.

    Guarantees:
        - ``shares`` sorted by login.
        - ``total_usd + residual_usd == policy.total_budget_usd`` exactly.
        - ``preview_hash`` covers the amounts and their inputs; it leaves out
          ``calculated_at``, ``warnings``, ``degradations`` and the
          per-login ``contribution_details`` that only feed the payslips.
    """

    policy: DistributionPolicy
    price_snapshot: PriceSnapshot
    asset_decimals: int
    shares: tuple[ContributorShare, ...]
    total_contributions: int
    eligible_count: int
    total_usd: Decimal
    residual_usd: Decimal
    preview_hash: str
    calculated_at: datetime | None = None
    warnings: tuple[str, ...] = ()
    degradations: tuple[Degradation, ...] = ()
    contribution_details: dict[str, tuple[ContributionDetail, ...]] = field(default_factory=dict)

    @property
    def eligible_shares(self) -> tuple[ContributorShare, ...]:
        return tuple(s for s in self.shares if s.eligible)

    @property
    def ineligible_shares(self) -> tuple[ContributorShare, ...]:
        return tuple(s for s in self.shares if not s.eligible)

    @property
    def total_native(self) -> int:
        return sum(s.native_amount for s in self.shares if s.eligible)

    @property
    def is_degraded(self) -> bool:
        return bool(self.degradations)

    def share_for(self, login: str) -> ContributorShare | None:
        for share in self.shares:
            if share.login == login:
                return share
        return None


@dataclass(frozen=True)
class PolicyValidation:
    """Outcome of a pre-flight check. Errors block, warnings inform."""

    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors
