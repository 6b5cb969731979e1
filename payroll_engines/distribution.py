"""
Module: payroll_engines.distribution
Responsibility:
    Turn raw contribution counts, a distribution policy and a frozen price
    snapshot into a DistributionPreview: per-contributor share ratios, USD
    amounts and native-asset amounts, with every excluded contributor
    reported alongside a reason.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import payroll_kernel domain values, hashing and logging.

Invariants enforced:
    - Conservation: the eligible share ratios sum to at most 1 and, unless a
      cap makes part of the budget undistributable, to within
      ``eligible_count`` ratio quanta of 1.
    - Budget: ``total_usd <= total_budget_usd`` and
      ``residual_usd == total_budget_usd - total_usd`` exactly.
    - Cap: no eligible ratio exceeds ``max_share_cap``; the excess of
      clamped contributors is redistributed in proportion to the remaining
      contributors' ratios, repeated until nothing is over the cap.
    - Determinism: identical inputs give an identical preview and
      ``preview_hash``. Penny adjustments break ties by login.
    - Purity: no clock access. ``calculated_at`` is passed in.

Failure modes:
    - NoEligibleContributorsError when the contribution map is empty after
      removing the run creator.
    - InvalidPolicyError from ``recalculate`` with invalid policy updates.

Usage:
    from payroll_engines.distribution import DistributionCalculator

    preview = DistributionCalculator().compute(
        contributions={"alice": 10, "bob": 30},
        policy=DistributionPolicy(mode=DistributionMode.PR_COUNT_PROPORTIONAL,
                                  total_budget_usd=Decimal("800")),
        price_snapshot=snapshot,
        asset_decimals=8,
        identity_resolver=identities,
    )
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping, Sequence
from datetime import datetime
from decimal import Decimal, localcontext
from typing import Any

from payroll_engines.tracer import traced_engine
from payroll_kernel.domain.values import (
    USD_QUANTUM,
    ContributorIdentity,
    ContributorShare,
    Degradation,
    DistributionMode,
    DistributionPolicy,
    DistributionPreview,
    IneligibilityReason,
    PolicyValidation,
    PriceSnapshot,
    round_usd,
    truncate_ratio,
    usd_to_native,
)
from payroll_kernel.exceptions import (
    ConsistencyError,
    InvalidPolicyError,
    NoEligibleContributorsError,
)
from payroll_kernel.logging_config import get_logger
from payroll_kernel.utils.hashing import hash_payload

logger = get_logger("engines.distribution")

ENGINE_NAME = "distribution"
ENGINE_VERSION = "1.0"

MAX_CAP_ITERATIONS = 100
RATIO_PRECISION = 60  # working precision for exact ratio arithmetic

DEFAULT_MAX_STALENESS_SECONDS = 300
LARGE_BUDGET_WARNING_USD = Decimal("1000000")
HIGH_THRESHOLD_WARNING = 100
LOW_CAP_WARNING = Decimal("0.1")
MIN_BUDGET_UTILISATION = Decimal("0.95")

_ZERO = Decimal("0")
_ONE = Decimal("1")


@dataclasses.dataclass
class _Candidate:
    login: str
    count: int
    identity: ContributorIdentity | None
    reason: IneligibilityReason | None = None
    ratio: Decimal = _ZERO
    capped: bool = False


class DistributionCalculator:
    """
    Compute distribution previews.

    Contract:
        Pure functions with deterministic rounding. No I/O, no database
        access, no clock.
    Guarantees:
        - Share ratios are truncated to 18 places (ROUND_DOWN).
        - USD amounts are rounded to cents with ROUND_HALF_UP; if the rounded
          total overshoots the budget, single cents are taken back from the
          shares that were rounded up the most.
        - Native amounts are integers in the asset's smallest unit.
    Non-goals:
        - Does not fetch contributions, identities or prices.
        - Does not persist anything.
    """

    @traced_engine(
        ENGINE_NAME,
        ENGINE_VERSION,
        fingerprint_fields=("contributions", "policy", "price_snapshot", "asset_decimals"),
    )
    def compute(
        self,
        contributions: Mapping[str, int],
        policy: DistributionPolicy,
        price_snapshot: PriceSnapshot,
        asset_decimals: int,
        identity_resolver: Mapping[str, ContributorIdentity],
        creator_login: str | None = None,
        degradations: Sequence[Degradation] = (),
        calculated_at: datetime | None = None,
    ) -> DistributionPreview:
        """
        Compute the distribution of ``policy.total_budget_usd``.

        Args:
            contributions: login -> contribution count (merged PRs).
            policy: Validated distribution policy.
            price_snapshot: Frozen price the native amounts are computed at.
            asset_decimals: Smallest-unit exponent of the settlement asset.
            identity_resolver: login -> settlement identity. Logins missing
                from it are reported as unregistered.
            creator_login: The run creator, never paid by their own run.
            degradations: Data-source problems observed while gathering
                ``contributions``; carried onto the preview.
            calculated_at: Timestamp stamped on the preview (not hashed).

        Raises:
            NoEligibleContributorsError: nothing left after self-exclusion.
        """
        if asset_decimals < 0:
            raise ValueError(f"asset_decimals cannot be negative, got {asset_decimals}")

        logger.info("distribution_started", extra={
            "mode": policy.mode.value,
            "total_budget_usd": str(policy.total_budget_usd),
            "contributor_count": len(contributions),
            "asset_symbol": price_snapshot.asset_symbol,
        })

        remaining = [login for login in contributions if login != creator_login]
        if not remaining:
            logger.warning("distribution_no_contributors", extra={
                "creator_login": creator_login,
            })
            raise NoEligibleContributorsError()

        candidates = self._classify(contributions, policy, identity_resolver, creator_login)
        eligible = [c for c in candidates if c.reason is None]
        warnings: list[str] = []

        if eligible:
            self._assign_ratios(eligible, policy, warnings)
            if policy.max_share_cap is not None:
                self._enforce_cap(eligible, policy.max_share_cap, warnings)
            for candidate in eligible:
                candidate.ratio = truncate_ratio(candidate.ratio)
        else:
            warnings.append(
                "No contributors are eligible for payment; the whole budget is residual"
            )

        usd_amounts = self._usd_amounts(eligible, policy.total_budget_usd)

        shares = tuple(
            self._to_share(c, usd_amounts.get(c.login), price_snapshot, asset_decimals)
            for c in sorted(candidates, key=lambda c: c.login)
        )
        total_usd = sum((s.usd_amount for s in shares if s.eligible), _ZERO)
        residual_usd = policy.total_budget_usd - total_usd
        preview_hash = self.compute_preview_hash(policy, price_snapshot, asset_decimals, shares)

        preview = DistributionPreview(
            policy=policy,
            price_snapshot=price_snapshot,
            asset_decimals=asset_decimals,
            shares=shares,
            total_contributions=sum(c.count for c in eligible),
            eligible_count=len(eligible),
            total_usd=total_usd,
            residual_usd=residual_usd,
            preview_hash=preview_hash,
            calculated_at=calculated_at,
            warnings=tuple(warnings),
            degradations=tuple(degradations),
        )

        logger.info("distribution_completed", extra={
            "eligible_count": preview.eligible_count,
            "ineligible_count": len(preview.ineligible_shares),
            "total_usd": str(total_usd),
            "residual_usd": str(residual_usd),
            "preview_hash": preview_hash,
            "warning_count": len(warnings),
        })
        return preview

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def _classify(
        self,
        contributions: Mapping[str, int],
        policy: DistributionPolicy,
        identity_resolver: Mapping[str, ContributorIdentity],
        creator_login: str | None,
    ) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        for login in sorted(contributions):
            count = int(contributions[login])
            if count < 0:
                raise ValueError(f"Contribution count for {login} cannot be negative")
            candidate = _Candidate(login=login, count=count, identity=identity_resolver.get(login))
            if login == creator_login:
                candidate.reason = IneligibilityReason.SELF_PAYMENT
            elif login in policy.excluded_logins:
                candidate.reason = IneligibilityReason.EXCLUDED
            elif candidate.identity is None:
                candidate.reason = IneligibilityReason.UNREGISTERED
            elif count < policy.min_contribution_threshold:
                candidate.reason = IneligibilityReason.BELOW_THRESHOLD
            candidates.append(candidate)
        return candidates

    # ------------------------------------------------------------------
    # Ratios
    # ------------------------------------------------------------------

    def _assign_ratios(
        self,
        eligible: list[_Candidate],
        policy: DistributionPolicy,
        warnings: list[str],
    ) -> None:
        with localcontext() as ctx:
            ctx.prec = RATIO_PRECISION
            total = sum(c.count for c in eligible)
            match policy.mode:
                case DistributionMode.EQUAL:
                    self._assign_equal(eligible)
                case DistributionMode.PR_COUNT_PROPORTIONAL:
                    if total == 0:
                        warnings.append(
                            "Eligible contributors have no contributions; "
                            "falling back to equal distribution"
                        )
                        logger.warning("distribution_proportional_fallback", extra={
                            "eligible_count": len(eligible),
                        })
                        self._assign_equal(eligible)
                    else:
                        for c in eligible:
                            c.ratio = Decimal(c.count) / Decimal(total)
                case _:
                    raise ValueError(f"Unknown distribution mode: {policy.mode}")

    @staticmethod
    def _assign_equal(eligible: list[_Candidate]) -> None:
        ratio = _ONE / Decimal(len(eligible))
        for c in eligible:
            c.ratio = ratio

    def _enforce_cap(
        self,
        eligible: list[_Candidate],
        cap: Decimal,
        warnings: list[str],
    ) -> None:
        """
        Clamp ratios to ``cap`` and redistribute the excess.

        Redistribution can push another contributor over the cap, so the
        clamp-and-redistribute step repeats. Each pass caps at least one new
        contributor, so it terminates within ``len(eligible)`` passes.
        Whatever cannot be redistributed (everyone capped) is left out of
        the ratios and ends up in the residual.
        """
        undistributed = _ZERO
        with localcontext() as ctx:
            ctx.prec = RATIO_PRECISION
            iterations = 0
            for iterations in range(1, MAX_CAP_ITERATIONS + 1):
                over = [c for c in eligible if not c.capped and c.ratio > cap]
                if not over:
                    break
                excess = sum((c.ratio - cap for c in over), _ZERO)
                for c in over:
                    c.ratio = cap
                    c.capped = True

                uncapped = [c for c in eligible if not c.capped]
                if not uncapped:
                    undistributed += excess
                    break
                base = sum((c.ratio for c in uncapped), _ZERO)
                for c in uncapped:
                    if base == 0:
                        c.ratio += excess / Decimal(len(uncapped))
                    else:
                        c.ratio += excess * c.ratio / base
            else:
                # Iteration bound reached: clamp what is left without redistributing.
                for c in eligible:
                    if c.ratio > cap:
                        undistributed += c.ratio - cap
                        c.ratio = cap
                        c.capped = True
                logger.warning("distribution_cap_iteration_limit", extra={
                    "max_iterations": MAX_CAP_ITERATIONS,
                })

        capped_count = sum(1 for c in eligible if c.capped)
        if capped_count:
            logger.info("distribution_cap_applied", extra={
                "cap": str(cap),
                "capped_count": capped_count,
                "iterations": iterations,
            })
        if undistributed > 0:
            percent = (undistributed * 100).quantize(USD_QUANTUM)
            warnings.append(
                f"Share cap {cap} leaves {percent}% of the budget undistributable; "
                "it is reported as residual"
            )

    # ------------------------------------------------------------------
    # Amounts
    # ------------------------------------------------------------------

    def _usd_amounts(
        self,
        eligible: list[_Candidate],
        budget: Decimal,
    ) -> dict[str, Decimal]:
        exact = {c.login: c.ratio * budget for c in eligible}
        rounded = {login: round_usd(value) for login, value in exact.items()}
        overshoot = sum(rounded.values(), _ZERO) - budget
        if overshoot > 0:
            # Largest upward rounding first, then login.
            rounded_up = sorted(
                (login for login in rounded if rounded[login] > exact[login]),
                key=lambda login: (-(rounded[login] - exact[login]), login),
            )
            for login in rounded_up:
                if overshoot <= 0:
                    break
                rounded[login] -= USD_QUANTUM
                overshoot -= USD_QUANTUM
            logger.info("distribution_rounding_adjusted", extra={
                "budget": str(budget),
                "adjusted_total": str(sum(rounded.values(), _ZERO)),
            })
        return rounded

    @staticmethod
    def _to_share(
        candidate: _Candidate,
        usd_amount: Decimal | None,
        price_snapshot: PriceSnapshot,
        asset_decimals: int,
    ) -> ContributorShare:
        identity = candidate.identity
        if candidate.reason is not None:
            return ContributorShare(
                login=candidate.login,
                contribution_count=candidate.count,
                share_ratio=_ZERO,
                usd_amount=Decimal("0.00"),
                native_amount=0,
                eligible=False,
                contributor_id=identity.contributor_id if identity else None,
                settlement_account=identity.settlement_account if identity else None,
                ineligibility_reason=candidate.reason,
            )
        if identity is None or usd_amount is None:
            raise ConsistencyError(
                f"Eligible contributor {candidate.login} has no identity or amount"
            )
        return ContributorShare(
            login=candidate.login,
            contribution_count=candidate.count,
            share_ratio=candidate.ratio,
            usd_amount=usd_amount,
            native_amount=usd_to_native(usd_amount, price_snapshot.usd_price, asset_decimals),
            eligible=True,
            contributor_id=identity.contributor_id,
            settlement_account=identity.settlement_account,
            capped=candidate.capped,
        )

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    @staticmethod
    def compute_preview_hash(
        policy: DistributionPolicy,
        price_snapshot: PriceSnapshot,
        asset_decimals: int,
        shares: Sequence[ContributorShare],
    ) -> str:
        """SHA-256 over the canonical JSON of everything the run will pay from."""
        return hash_payload({
            "policy": policy.to_dict(),
            "price_snapshot": price_snapshot.to_dict(),
            "asset_decimals": asset_decimals,
            "shares": [s.to_dict() for s in sorted(shares, key=lambda s: s.login)],
        })

    def verify_preview_hash(self, preview: DistributionPreview) -> bool:
        """True if ``preview.preview_hash`` matches its own contents."""
        expected = self.compute_preview_hash(
            preview.policy, preview.price_snapshot, preview.asset_decimals, preview.shares,
        )
        if expected != preview.preview_hash:
            logger.warning("preview_hash_mismatch", extra={
                "expected_hash": expected,
                "actual_hash": preview.preview_hash,
            })
            return False
        return True

    # ------------------------------------------------------------------
    # Recalculation
    # ------------------------------------------------------------------

    def recalculate(
        self,
        preview: DistributionPreview,
        calculated_at: datetime | None = None,
        **policy_updates: Any,
    ) -> DistributionPreview:
        """
        Rebuild ``preview`` under a changed policy.

        Uses the counts and identities already captured on the preview, so
        the contribution source is not queried again. Excluding a login is
        ``recalculate(preview, excluded_logins=...)``.

        Raises:
            InvalidPolicyError: the updated policy is invalid.
        """
        policy = dataclasses.replace(preview.policy, **policy_updates)
        contributions = {s.login: s.contribution_count for s in preview.shares}
        identities = {
            s.login: ContributorIdentity(s.contributor_id, s.settlement_account)
            for s in preview.shares
            if s.contributor_id is not None and s.settlement_account is not None
        }
        creator_login = next(
            (
                s.login for s in preview.shares
                if s.ineligibility_reason == IneligibilityReason.SELF_PAYMENT
            ),
            None,
        )
        rebuilt = self.compute(
            contributions=contributions,
            policy=policy,
            price_snapshot=preview.price_snapshot,
            asset_decimals=preview.asset_decimals,
            identity_resolver=identities,
            creator_login=creator_login,
            degradations=preview.degradations,
            calculated_at=calculated_at,
        )
        return dataclasses.replace(rebuilt, contribution_details=preview.contribution_details)

    # ------------------------------------------------------------------
    # Pre-flight validation
    # ------------------------------------------------------------------

    def validate_policy(
        self,
        policy: DistributionPolicy | Mapping[str, Any],
    ) -> PolicyValidation:
        """
        Check a policy, or raw policy fields, without raising.

        Errors are the policy's own construction errors. Warnings flag
        values that are valid but unusual.
        """
        if isinstance(policy, Mapping):
            try:
                policy = DistributionPolicy.from_dict(policy)
            except InvalidPolicyError as exc:
                return PolicyValidation(errors=tuple(exc.errors))
            except (KeyError, TypeError, ValueError) as exc:
                return PolicyValidation(errors=(f"Malformed policy: {exc}",))

        warnings: list[str] = []
        if policy.total_budget_usd > LARGE_BUDGET_WARNING_USD:
            warnings.append("Total budget is very large (> $1,000,000)")
        if policy.min_contribution_threshold > HIGH_THRESHOLD_WARNING:
            warnings.append("Minimum contribution threshold is very high (> 100)")
        if policy.max_share_cap is not None and policy.max_share_cap < LOW_CAP_WARNING:
            warnings.append("Maximum share cap is very low (< 10%)")
        return PolicyValidation(warnings=tuple(warnings))

    def validate_for_execution(
        self,
        preview: DistributionPreview,
        now: datetime,
        max_staleness_seconds: int = DEFAULT_MAX_STALENESS_SECONDS,
    ) -> PolicyValidation:
        """Check a preview is safe to turn into a run at ``now``."""
        errors: list[str] = []
        warnings: list[str] = []

        if not preview.eligible_shares:
            errors.append("No eligible contributors to pay")

        age = preview.price_snapshot.age_seconds(now)
        if age > max_staleness_seconds:
            errors.append(
                f"Price data is stale ({age} seconds old, max {max_staleness_seconds})"
            )

        if not self.verify_preview_hash(preview):
            errors.append("Preview hash does not match its contents")

        for share in preview.eligible_shares:
            if share.native_amount <= 0:
                warnings.append(f"Contributor {share.login} would receive 0 {preview.price_snapshot.asset_symbol}")

        budget = preview.policy.total_budget_usd
        if preview.total_usd < budget * MIN_BUDGET_UTILISATION:
            utilisation = (preview.total_usd / budget * 100).quantize(Decimal("0.1"))
            warnings.append(f"Only {utilisation}% of the budget is distributed")

        unregistered = [
            s.login for s in preview.shares
            if s.ineligibility_reason == IneligibilityReason.UNREGISTERED
        ]
        if unregistered:
            warnings.append(
                f"{len(unregistered)} contributor(s) have no registered settlement account: "
                + ", ".join(unregistered)
            )

        return PolicyValidation(errors=tuple(errors), warnings=tuple(warnings))
