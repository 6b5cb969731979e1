"""
Tests for the payroll ORM models.

Covers DTO round trips through a real database (exact Decimal storage,
timezone-aware datetimes) and the uniqueness constraints the settlement
guarantees rely on.
"""

import dataclasses
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from payroll_kernel.db.engine import session_scope
from payroll_kernel.domain.types import Artifact, ArtifactKind, PayoutStatus, RunStatus
from payroll_kernel.domain.values import ContributionDetail
from payroll_kernel.models import RUN_SCOPE, ArtifactModel, PayoutModel, PayrollRunModel

CREATED_AT = datetime(2024, 6, 1, tzinfo=timezone.utc)


class TestRunModel:

    def test_round_trip_preserves_frozen_inputs(self, create_run, session_factory, price_snapshot):
        run = create_run({"alice": 3, "bob": 1})

        with session_scope(session_factory) as session:
            loaded = session.get(PayrollRunModel, run.run_id).to_dto()

        assert loaded.status == RunStatus.PREVIEW_READY
        assert loaded.price_snapshot == price_snapshot
        assert loaded.price_snapshot.usd_price == Decimal("0.05")
        assert loaded.policy.total_budget_usd == Decimal("1000")
        assert loaded.retry_policy.max_retries == 3
        assert loaded.created_at.tzinfo is not None
        assert loaded.cancel_requested is False


class TestPayoutModel:

    def test_decimals_are_exact(self, create_run, session_factory):
        run = create_run({"alice": 1, "bob": 1, "carol": 1})

        with session_scope(session_factory) as session:
            rows = session.execute(
                select(PayoutModel).where(PayoutModel.run_id == run.run_id)
            ).scalars().all()
            payouts = [r.to_dto() for r in rows]

        assert {p.share_ratio for p in payouts} == {Decimal("0.333333333333333333")}
        assert {p.usd_amount for p in payouts} == {Decimal("333.33")}
        assert all(p.status == PayoutStatus.PENDING for p in payouts)
        assert all(p.attempt_count == 0 for p in payouts)

    def test_idempotency_key_is_unique(self, create_run, session_factory):
        run = create_run({"alice": 1})

        with pytest.raises(IntegrityError):
            with session_scope(session_factory) as session:
                existing = session.execute(
                    select(PayoutModel).where(PayoutModel.run_id == run.run_id)
                ).scalar_one()
                session.add(PayoutModel(
                    id=uuid4(),
                    run_id=run.run_id,
                    contributor_id="someone-else",
                    login="mallory",
                    idempotency_key=existing.idempotency_key,
                    settlement_account="0.0.9",
                    contribution_count=1,
                    share_ratio=Decimal("0"),
                    usd_amount=Decimal("0"),
                    native_amount=0,
                    status=PayoutStatus.PENDING.value,
                    created_at=CREATED_AT,
                    created_by_id="test",
                ))

    def test_contribution_details_stored_with_payout(self, create_run, ledger, session_factory):
        run = create_run({"alice": 1})
        payout = ledger.list_payouts(run.run_id)[0]
        detail = ContributionDetail("acme/widgets", 3, "Add retries", CREATED_AT, 8, 1)

        with session_scope(session_factory) as session:
            row = session.get(PayoutModel, payout.payout_id)
            row.contribution_details = [detail.to_dict()]

        stored = ledger.list_payouts(run.run_id)[0]
        assert stored.contributions == (detail,)
        assert stored.superseded_by_run_id is None

    def test_dto_without_details_stores_null(self, create_run, ledger):
        run = create_run({"alice": 1})
        payout = ledger.list_payouts(run.run_id)[0]

        model = PayoutModel.from_dto(dataclasses.replace(payout, contributions=()), CREATED_AT, "test")

        assert model.contribution_details is None
        assert model.to_dto().contributions == ()


class TestArtifactModel:

    def _artifact(self, run_id, contributor_id=None):
        return Artifact(
            artifact_id=uuid4(),
            run_id=run_id,
            kind=ArtifactKind.RUN_SUMMARY if contributor_id is None else ArtifactKind.PAYOUT_RECORD,
            content_id="bafy123",
            content_hash="0" * 64,
            size_bytes=10,
            verified=True,
            contributor_id=contributor_id,
            filename="x.json",
            created_at=CREATED_AT,
        )

    def test_run_level_scope(self, create_run, session_factory):
        run = create_run({"alice": 1})

        with session_scope(session_factory) as session:
            session.add(ArtifactModel.from_dto(self._artifact(run.run_id)))

        with session_scope(session_factory) as session:
            model = session.execute(select(ArtifactModel)).scalar_one()
            assert model.scope == RUN_SCOPE
            assert model.to_dto().contributor_id is None

    def test_run_level_artifact_is_write_once(self, create_run, session_factory):
        run = create_run({"alice": 1})

        with session_scope(session_factory) as session:
            session.add(ArtifactModel.from_dto(self._artifact(run.run_id)))

        with pytest.raises(IntegrityError):
            with session_scope(session_factory) as session:
                session.add(ArtifactModel.from_dto(self._artifact(run.run_id)))
