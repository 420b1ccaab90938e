"""Tests for domain models and action payloads."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from campaign_engine.domain.actions import (
    BatchAction,
    ChildSpec,
    CreateAdAction,
    CreateCampaignAction,
    DeleteEntityAction,
    UpdateAdSetAction,
    parse_action,
)
from campaign_engine.domain.enums import (
    JOB_TRANSITIONS,
    SLOT_TRANSITIONS,
    EntityType,
    JobStatus,
    SlotStatus,
)
from campaign_engine.domain.models import JobStatusView, JobView, QuotaSnapshot, SlotView
from campaign_engine.services.slot_ledger import plan_slots


def _job(**overrides) -> JobView:
    values = dict(
        id=1,
        owner="u1",
        target_account="act_1",
        account_group="default",
        parent_name="Parent",
        parent_spec={"name": "Parent"},
        child_specs=[],
        status=JobStatus.IN_PROGRESS,
        requested_children=2,
        children_created=0,
        retry_count=0,
        retry_budget=3,
    )
    values.update(overrides)
    return JobView(**values)


class TestActions:
    """Tests for validating action payloads."""

    def test_parse_selects_variant(self) -> None:
        action = parse_action({"action_type": "create_ad", "name": "Ad", "adset_id": "as_1"})

        assert isinstance(action, CreateAdAction)
        assert action.status == "PAUSED"

    def test_unknown_action_type(self) -> None:
        with pytest.raises(ValidationError):
            parse_action({"action_type": "launch_rocket", "name": "x"})

    def test_missing_dependency_id(self) -> None:
        with pytest.raises(ValidationError):
            parse_action({"action_type": "create_adset", "name": "Ad Set"})

    def test_extra_fields_are_forwarded(self) -> None:
        action = CreateCampaignAction(name="Sale", buying_type="AUCTION")

        params = action.params()

        assert params["buying_type"] == "AUCTION"
        assert "action_type" not in params
        assert "daily_budget" not in params

    def test_parse_accepts_models(self) -> None:
        original = DeleteEntityAction(entity_id="cmp_1", entity_type=EntityType.CAMPAIGN)

        assert parse_action(original) == original

    def test_update_params_are_the_changes(self) -> None:
        action = UpdateAdSetAction(entity_id="as_1", changes={"daily_budget": 2000})

        assert action.params() == {"daily_budget": 2000}

    def test_update_requires_changes(self) -> None:
        with pytest.raises(ValidationError):
            UpdateAdSetAction(entity_id="as_1", changes={})

    def test_batch_size_limits(self) -> None:
        with pytest.raises(ValidationError):
            BatchAction(operations=[])
        with pytest.raises(ValidationError):
            BatchAction(operations=[{"method": "GET"}] * 51)
        assert len(BatchAction(operations=[{"method": "GET"}] * 50).operations) == 50

    def test_budget_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            CreateCampaignAction(name="Sale", daily_budget=0)


class TestPlanSlots:
    """Tests for laying out a job's slots."""

    def test_parent_then_children(self) -> None:
        children = [
            ChildSpec(adset={"name": "Broad"}, ad={"name": "Hero"}),
            ChildSpec(adset={}),
        ]

        planned = plan_slots("Launch", children)

        assert [(number, kind, name) for number, kind, name, _ in planned] == [
            (1, EntityType.CAMPAIGN, "Launch"),
            (1, EntityType.AD_SET, "Broad"),
            (1, EntityType.AD, "Hero"),
            (2, EntityType.AD_SET, "Launch - Ad Set 2"),
        ]


class TestTransitions:
    """Tests for the status transition tables."""

    def test_terminal_job_states(self) -> None:
        assert JOB_TRANSITIONS[JobStatus.COMPLETED] == frozenset()
        assert JOB_TRANSITIONS[JobStatus.ROLLED_BACK] == frozenset()
        assert JOB_TRANSITIONS[JobStatus.FAILED] == {JobStatus.ROLLED_BACK}

    def test_created_slot_only_rolls_back(self) -> None:
        assert SLOT_TRANSITIONS[SlotStatus.CREATED] == {SlotStatus.ROLLED_BACK}
        assert SlotStatus.PENDING not in SLOT_TRANSITIONS[SlotStatus.FAILED]


class TestViews:
    """Tests for snapshot helpers."""

    def test_budget_exhausted(self) -> None:
        assert _job(retry_count=2).budget_exhausted is False
        assert _job(retry_count=3).budget_exhausted is True

    def test_progress(self) -> None:
        slots = [
            SlotView(id=i, job_id=1, slot_number=1, entity_type=EntityType.AD_SET, status=status)
            for i, status in enumerate([SlotStatus.CREATED, SlotStatus.PENDING, SlotStatus.FAILED])
        ]

        view = JobStatusView(job=_job(), slots=slots)

        assert view.progress == pytest.approx(1 / 3)
        assert view.slot_counts["created"] == 1
        assert view.slot_counts["rolled_back"] == 0
        assert JobStatusView(job=_job(), slots=[]).progress == 0.0

    def test_quota_remaining(self) -> None:
        snapshot = QuotaSnapshot(
            caller="u1",
            target_account="act_1",
            calls_used=210,
            calls_limit=200,
            window_reset_at=datetime(2026, 1, 1, tzinfo=UTC),
        )

        assert snapshot.remaining == 0
        assert snapshot.usage_percentage == pytest.approx(1.05)
