"""
Tests for PayrollService, the end-to-end surface.

Covers preview with degraded data and policy warnings, run creation
guards (tampered preview, unacknowledged degradation, stale price),
synchronous and queued execution, child runs for failed payouts, and
PR details carried through to the payslips.
"""

import dataclasses
import json
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from payroll_kernel.domain.types import (
    ArtifactKind,
    PayoutErrorCode,
    PayoutStatus,
    RetryPolicy,
    RunStatus,
)
from payroll_kernel.domain.values import ContributorIdentity, DistributionMode, DistributionPolicy
from payroll_kernel.exceptions import (
    DataSourceDegradedError,
    InvalidRunTransitionError,
    NoEligibleContributorsError,
    PreviewHashMismatchError,
    StalePriceError,
)
from payroll_services.execution_queue import ExecutionQueue
from payroll_services.payroll_service import PayrollService, retry_policy_from_settings
from payroll_services.ports import ContributionDetail, DateRange, RepoSelection
from tests.fakes import TEST_ACTOR, FakeContributionSource, FakeGateway, FakePriceFeed

REPOS = RepoSelection(repositories=("acme/widgets",))
MAY = DateRange(start=date(2024, 5, 1), end=date(2024, 5, 31))


class ServiceHarness:
    def __init__(self, ledger, orchestrator, identities, settings, clock, counts=None,
                 degraded_reasons=(), price_age=0, queue=None, details=None):
        self.source = FakeContributionSource(
            counts or {"alice": 3, "bob": 1}, degraded_reasons, details,
        )
        self.feed = FakePriceFeed(clock, age_seconds=price_age)
        self.service = PayrollService(
            ledger,
            orchestrator,
            self.source,
            self.feed,
            identities,
            settings=settings,
            queue=queue,
            clock=clock,
        )


@pytest.fixture
def harness(ledger, make_orchestrator, identities, payroll_settings, clock):
    def _build(gateway=None, **kwargs):
        orchestrator = make_orchestrator(gateway or FakeGateway())
        return ServiceHarness(ledger, orchestrator, identities, payroll_settings, clock, **kwargs)

    return _build


def _policy(**overrides):
    fields = {"mode": DistributionMode.PR_COUNT_PROPORTIONAL, "total_budget_usd": Decimal("400")}
    fields.update(overrides)
    return DistributionPolicy(**fields)


class TestPreview:

    def test_preview_uses_live_counts_and_price(self, harness):
        h = harness()

        preview = h.service.preview(_policy(), REPOS, MAY)

        amounts = {s.login: s.usd_amount for s in preview.eligible_shares}
        assert amounts == {"alice": Decimal("300.00"), "bob": Decimal("100.00")}
        assert preview.price_snapshot.usd_price == Decimal("0.05")
        assert preview.price_snapshot.asset_symbol == "HBAR"
        assert not preview.is_degraded

    def test_degraded_source_is_surfaced(self, harness, captured_logs):
        h = harness(degraded_reasons=("search results truncated",))

        preview = h.service.preview(_policy(), REPOS, MAY)

        assert preview.is_degraded
        assert [d.reason for d in preview.degradations] == ["search results truncated"]
        assert any(r["message"] == "contribution_data_degraded" for r in captured_logs())

    def test_policy_warnings_are_attached(self, harness):
        h = harness()

        preview = h.service.preview(_policy(max_share_cap=Decimal("0.05")), REPOS, MAY)

        assert any("share cap is very low" in w for w in preview.warnings)

    def test_creator_is_not_paid(self, harness):
        h = harness()

        preview = h.service.preview(_policy(), REPOS, MAY, creator_login="alice")

        assert [s.login for s in preview.eligible_shares] == ["bob"]


class TestCreateRun:

    def test_run_persisted_with_pending_payouts(self, harness, ledger):
        h = harness()
        preview = h.service.preview(_policy(), REPOS, MAY)

        run = h.service.create_run(preview, created_by=TEST_ACTOR)

        assert run.status == RunStatus.PREVIEW_READY
        assert run.preview_hash == preview.preview_hash
        assert run.price_snapshot == preview.price_snapshot
        assert run.created_by == TEST_ACTOR
        assert run.retry_policy == RetryPolicy(max_retries=3, retry_delay_seconds=1.0)
        payouts = h.service.list_payouts(run.run_id)
        assert {p.status for p in payouts} == {PayoutStatus.PENDING}
        assert ledger.compute_payout_digest(run.run_id) == run.payout_digest

    def test_tampered_preview_rejected(self, harness):
        h = harness()
        preview = h.service.preview(_policy(), REPOS, MAY)

        with pytest.raises(PreviewHashMismatchError):
            h.service.create_run(dataclasses.replace(preview, asset_decimals=6), created_by=TEST_ACTOR)

    def test_degraded_preview_needs_acknowledgement(self, harness):
        h = harness(degraded_reasons=("rate limited: acme/widgets",))
        preview = h.service.preview(_policy(), REPOS, MAY)

        with pytest.raises(DataSourceDegradedError):
            h.service.create_run(preview, created_by=TEST_ACTOR)

        run = h.service.create_run(preview, created_by=TEST_ACTOR, acknowledge_degraded=True)
        assert run.status == RunStatus.PREVIEW_READY

    def test_stale_price_rejected(self, harness, clock):
        h = harness()
        preview = h.service.preview(_policy(), REPOS, MAY)
        clock.advance(301)

        with pytest.raises(StalePriceError):
            h.service.create_run(preview, created_by=TEST_ACTOR)

    def test_nobody_eligible(self, harness):
        h = harness(counts={"zoe": 5})
        preview = h.service.preview(_policy(), REPOS, MAY)

        with pytest.raises(NoEligibleContributorsError):
            h.service.create_run(preview, created_by=TEST_ACTOR)

    def test_retry_policy_from_settings(self, payroll_settings):
        policy = retry_policy_from_settings(payroll_settings)
        assert policy.max_retries == 3
        assert policy.retry_delay_seconds == 1.0


class TestExecution:

    def test_preview_to_completed_run(self, harness):
        h = harness()
        run = h.service.create_run(h.service.preview(_policy(), REPOS, MAY), created_by=TEST_ACTOR)

        result = h.service.execute(run.run_id)

        assert result.status == RunStatus.COMPLETED
        assert result.total_confirmed_usd == Decimal("400.00")
        assert h.service.get_run(run.run_id).status == RunStatus.COMPLETED
        assert h.service.list_artifacts(run.run_id)
        assert h.feed.calls == 1

    def test_enqueue_without_queue(self, harness, create_run):
        h = harness()
        with pytest.raises(RuntimeError):
            h.service.enqueue(create_run({"alice": 1}).run_id)

    def test_enqueue_and_process(self, ledger, make_orchestrator, identities, payroll_settings, clock, create_run):
        orchestrator = make_orchestrator(FakeGateway())
        queue = ExecutionQueue(orchestrator.execute_run)
        h = ServiceHarness(ledger, orchestrator, identities, payroll_settings, clock, queue=queue)
        run = create_run({"alice": 1})

        assert h.service.enqueue(run.run_id) is True
        assert h.service.get_run(run.run_id).status == RunStatus.PREVIEW_READY
        assert queue.process_next() is True
        assert h.service.get_run(run.run_id).status == RunStatus.COMPLETED

    def test_resume_incomplete_runs(self, ledger, make_orchestrator, identities, payroll_settings, clock, create_run):
        orchestrator = make_orchestrator(FakeGateway())
        queue = ExecutionQueue(orchestrator.execute_run)
        h = ServiceHarness(ledger, orchestrator, identities, payroll_settings, clock, queue=queue)
        interrupted = create_run({"alice": 1})
        create_run({"bob": 1})
        ledger.start_run(interrupted.run_id, clock.now())

        assert h.service.resume_incomplete_runs() == 1
        queue.process_next()
        assert h.service.get_run(interrupted.run_id).status == RunStatus.COMPLETED

    def test_cancel(self, harness, create_run):
        h = harness()
        run = create_run({"alice": 1})

        result = h.service.cancel(run.run_id)

        assert result.status == RunStatus.FAILED


class TestRetryFailed:

    def test_child_run_pays_fixed_wallet(self, harness, identities, create_run, ledger):
        h = harness(gateway=FakeGateway(invalid_accounts={"0.0.1001"}))
        parent = create_run({"alice": 1, "bob": 1})
        h.service.execute(parent.run_id)
        bob_before = next(p for p in ledger.list_payouts(parent.run_id) if p.login == "bob")
        identities["bob"] = ContributorIdentity("user-bob", "0.0.2001")

        child = h.service.retry_failed(parent.run_id, created_by=TEST_ACTOR)

        assert child.parent_run_id == parent.run_id
        assert child.status == RunStatus.PREVIEW_READY
        assert child.price_snapshot == parent.price_snapshot
        (payout,) = ledger.list_payouts(child.run_id)
        assert payout.login == "bob"
        assert payout.settlement_account == "0.0.2001"
        assert payout.usd_amount == bob_before.usd_amount
        assert payout.idempotency_key != bob_before.idempotency_key
        assert h.service.execute(child.run_id).status == RunStatus.COMPLETED
        # the parent is untouched
        assert ledger.get_run(parent.run_id).status == RunStatus.PARTIALLY_COMPLETED

    def test_second_retry_does_not_pay_again(self, harness, identities, create_run, ledger):
        gateway = FakeGateway(invalid_accounts={"0.0.1001"})
        h = harness(gateway=gateway)
        parent = create_run({"alice": 1, "bob": 1})
        h.service.execute(parent.run_id)
        identities["bob"] = ContributorIdentity("user-bob", "0.0.2001")

        child = h.service.retry_failed(parent.run_id, created_by=TEST_ACTOR)
        with pytest.raises(NoEligibleContributorsError):
            h.service.retry_failed(parent.run_id, created_by=TEST_ACTOR)
        h.service.execute(child.run_id)

        to_fixed_wallet = [s for s in gateway.submissions if s["destination"] == "0.0.2001"]
        assert len(to_fixed_wallet) == 1
        bob = next(p for p in ledger.list_payouts(parent.run_id) if p.login == "bob")
        assert bob.superseded_by_run_id == child.run_id
        assert [r.parent_run_id for r in ledger.list_runs()].count(parent.run_id) == 1

    def test_failed_child_can_be_retried_in_turn(self, harness, create_run, ledger):
        h = harness(gateway=FakeGateway(invalid_accounts={"0.0.1001"}))
        parent = create_run({"alice": 1, "bob": 1})
        h.service.execute(parent.run_id)

        child = h.service.retry_failed(parent.run_id, created_by=TEST_ACTOR)
        assert h.service.execute(child.run_id).status == RunStatus.FAILED
        grandchild = h.service.retry_failed(child.run_id, created_by=TEST_ACTOR)

        assert grandchild.parent_run_id == child.run_id
        assert [p.login for p in ledger.list_payouts(grandchild.run_id)] == ["bob"]

    def test_filter_by_error_code(self, harness, create_run):
        h = harness(gateway=FakeGateway(invalid_accounts={"0.0.1001"}))
        parent = create_run({"alice": 1, "bob": 1})
        h.service.execute(parent.run_id)

        with pytest.raises(NoEligibleContributorsError):
            h.service.retry_failed(
                parent.run_id, created_by=TEST_ACTOR, error_codes={PayoutErrorCode.REJECTED},
            )

    def test_parent_must_be_terminal(self, harness, create_run):
        h = harness()
        run = create_run({"alice": 1})

        with pytest.raises(InvalidRunTransitionError):
            h.service.retry_failed(run.run_id, created_by=TEST_ACTOR)


MERGED = datetime(2024, 5, 20, 9, 30, tzinfo=timezone.utc)

DETAILS = {
    "alice": (
        ContributionDetail("acme/widgets", 14, "Fix rounding in invoices", MERGED, 40, 12),
        ContributionDetail("acme/widgets", 9, "Add CSV export", MERGED, 120, 3),
        ContributionDetail("acme/widgets", 11, "Bump dependencies", MERGED, 6, 6),
    ),
    "bob": (ContributionDetail("acme/widgets", 10, "Document the API", MERGED, 30, 0),),
}


class TestContributionDetails:

    def test_preview_carries_details_without_changing_hash(self, harness):
        plain = harness().service.preview(_policy(), REPOS, MAY)
        detailed = harness(details=DETAILS).service.preview(_policy(), REPOS, MAY)

        assert detailed.contribution_details["bob"] == DETAILS["bob"]
        assert plain.contribution_details == {}
        assert detailed.preview_hash == plain.preview_hash

    def test_payslip_lists_merged_prs(self, harness, ledger, content_store):
        h = harness(details=DETAILS)
        run = h.service.create_run(h.service.preview(_policy(), REPOS, MAY), created_by=TEST_ACTOR)
        alice = next(p for p in ledger.list_payouts(run.run_id) if p.login == "alice")
        assert alice.contributions == DETAILS["alice"]

        h.service.execute(run.run_id)

        payslip = ledger.get_artifact(run.run_id, ArtifactKind.PAYOUT_RECORD, "user-alice")
        record = json.loads(content_store.fetch(payslip.content_id))
        assert [c["number"] for c in record["contributions"]] == [9, 11, 14]
        assert record["contributions"][0] == {
            "repository": "acme/widgets",
            "number": 9,
            "title": "Add CSV export",
            "merged_at": MERGED.isoformat(),
            "additions": 120,
            "deletions": 3,
        }
        assert record["payout"]["contribution_count"] == 3

    def test_child_run_keeps_details(self, harness, ledger):
        h = harness(gateway=FakeGateway(invalid_accounts={"0.0.1001"}), details=DETAILS)
        parent = h.service.create_run(h.service.preview(_policy(), REPOS, MAY), created_by=TEST_ACTOR)
        h.service.execute(parent.run_id)

        child = h.service.retry_failed(parent.run_id, created_by=TEST_ACTOR)

        (bob,) = ledger.list_payouts(child.run_id)
        assert bob.contributions == DETAILS["bob"]
