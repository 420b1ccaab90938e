"""Tests for the job orchestrator."""

import pytest
from conftest import ACCOUNT, OWNER, FakeClock, child_specs

from campaign_engine.adapters.ad_platform.base import PlatformResponse
from campaign_engine.adapters.ad_platform.stub import StubAdPlatformClient
from campaign_engine.domain.actions import CreateAdSetAction
from campaign_engine.domain.enums import (
    EntityType,
    FailureStatus,
    JobStatus,
    QueueStatus,
    SlotStatus,
)
from campaign_engine.services.engine import Engine
from campaign_engine.services.errors import (
    EntityError,
    JobNotFoundError,
    PayloadValidationError,
    PlatformUnavailableError,
)
from campaign_engine.services.orchestrator import CANCELLED_MESSAGE

PARENT = {"name": "Spring Sale", "objective": "OUTCOME_SALES"}


def _slots_by_type(engine: Engine, job_id: int, entity_type: EntityType):
    return [slot for slot in engine.slots.get_slots(job_id) if slot.entity_type == entity_type]


class TestStartJob:
    """Tests for verification and slot allocation."""

    @pytest.mark.asyncio
    async def test_start_allocates_slots_in_progress(
        self, engine: Engine, credential_id: int
    ) -> None:
        job_id = await engine.orchestrator.start_job(OWNER, ACCOUNT, PARENT, child_specs(3))

        job = engine.jobs.get(job_id)
        slots = engine.slots.get_slots(job_id)
        assert job.status == JobStatus.IN_PROGRESS
        assert job.started_at is not None
        assert job.requested_children == 6
        assert job.parent_name == "Spring Sale"
        assert len(slots) == 7
        assert slots[0].entity_type == EntityType.CAMPAIGN
        assert all(slot.status == SlotStatus.PENDING for slot in slots)

    @pytest.mark.asyncio
    async def test_duplicate_name_fails_job_without_slots(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        """A blocked verification leaves a failed job with nothing allocated."""
        client.existing_names[ACCOUNT] = {"Spring Sale"}

        job_id = await engine.orchestrator.start_job(OWNER, ACCOUNT, PARENT, child_specs(2))

        job = engine.jobs.get(job_id)
        assert job.status == JobStatus.FAILED
        assert engine.slots.get_slots(job_id) == []
        assert "already exists" in job.last_error
        assert job.retry_count == 0
        assert job.error_history[0]["verification_id"] is not None
        assert job.error_history[0]["checks"]["duplicate_name_exists"] is True
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_inconclusive_verification_blocks_by_default(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        client.failing_checks.add("count_entities")

        job_id = await engine.orchestrator.start_job(OWNER, ACCOUNT, PARENT, child_specs(1))

        assert engine.jobs.get(job_id).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_inconclusive_verification_can_be_allowed(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        client.failing_checks.add("count_entities")

        job_id = await engine.orchestrator.start_job(
            OWNER, ACCOUNT, PARENT, child_specs(1), allow_inconclusive=True
        )

        assert engine.jobs.get(job_id).status == JobStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_malformed_specs_rejected(self, engine: Engine, credential_id: int) -> None:
        with pytest.raises(PayloadValidationError):
            await engine.orchestrator.start_job(OWNER, ACCOUNT, {"objective": "x"}, child_specs(1))

    @pytest.mark.asyncio
    async def test_registered_account_uses_its_group(self, engine: Engine) -> None:
        engine.pool.register_account(ACCOUNT, "agency_a")
        engine.pool.add_credential("agency", "token-agency", account_group="agency_a")

        job_id = await engine.orchestrator.start_job(OWNER, ACCOUNT, PARENT, child_specs(1))

        job = engine.jobs.get(job_id)
        assert job.account_group == "agency_a"
        assert job.status == JobStatus.IN_PROGRESS


class TestDriveJob:
    """Tests for driving slots to completion."""

    @pytest.mark.asyncio
    async def test_happy_path_respects_dependency_order(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        view = await engine.orchestrator.run_job(OWNER, ACCOUNT, PARENT, child_specs(3))

        assert view.job.status == JobStatus.COMPLETED
        assert view.job.children_created == 6
        assert view.progress == 1.0
        assert view.slot_counts["created"] == 7

        campaign = _slots_by_type(engine, view.job.id, EntityType.CAMPAIGN)[0]
        assert view.job.parent_entity_id == campaign.remote_entity_id
        assert client.calls[0].action_type == "create_campaign"
        assert client.calls[0].action.objective == "OUTCOME_SALES"

        adsets = {s.remote_entity_id: s for s in _slots_by_type(engine, view.job.id, EntityType.AD_SET)}
        for call in client.calls_for("create_adset"):
            assert call.action.campaign_id == campaign.remote_entity_id
        for call in client.calls_for("create_ad"):
            adset = adsets[call.action.adset_id]
            assert call.action.name == f"Ad {adset.slot_number}"

    @pytest.mark.asyncio
    async def test_redrive_never_recreates(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        view = await engine.orchestrator.run_job(OWNER, ACCOUNT, PARENT, child_specs(2))
        calls = len(client.calls)

        status = await engine.orchestrator.drive_job(view.job.id)

        assert status == JobStatus.COMPLETED
        assert len(client.calls) == calls

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        client.script(PlatformUnavailableError("connection reset"), action_type="create_adset")

        view = await engine.orchestrator.run_job(
            OWNER, ACCOUNT, PARENT, child_specs(2, with_ads=False)
        )

        assert view.job.status == JobStatus.COMPLETED
        assert view.job.retry_count == 1
        assert view.job.error_history[-1]["error"] == "connection reset"
        assert view.failures == []
        retried = [slot for slot in view.slots if slot.retry_count == 1]
        assert len(retried) == 1

    @pytest.mark.asyncio
    async def test_transient_failures_back_off_before_retrying(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        delays: list[float] = []

        async def record_sleep(seconds: float) -> None:
            delays.append(seconds)

        engine.orchestrator.retry_base = 1.0
        engine.orchestrator.sleep = record_sleep
        client.script(
            *[PlatformUnavailableError("timeout") for _ in range(2)], action_type="create_adset"
        )

        view = await engine.orchestrator.run_job(
            OWNER, ACCOUNT, PARENT, child_specs(1, with_ads=False), retry_budget=10
        )

        assert view.job.status == JobStatus.COMPLETED
        assert delays == [1.0, 2.0]
        assert len(client.calls_for("create_adset")) == 3

    def test_retry_delay_doubles_up_to_the_cap(self, engine: Engine) -> None:
        engine.orchestrator.retry_base = 1.0

        assert [engine.orchestrator.retry_delay(n) for n in (1, 2, 3, 6)] == [1.0, 2.0, 4.0, 32.0]
        assert engine.orchestrator.retry_delay(7) == 60.0
        assert engine.orchestrator.retry_delay(20) == 60.0

    @pytest.mark.asyncio
    async def test_parent_entity_error_fails_job(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        """A rejected parent fails the job before any child is attempted."""
        client.script(
            PlatformResponse.entity_error(100, "Invalid parameter: budget too low"),
            action_type="create_campaign",
        )

        view = await engine.orchestrator.run_job(OWNER, ACCOUNT, PARENT, child_specs(2))

        assert view.job.status == JobStatus.FAILED
        assert view.job.rollback_triggered is False
        assert client.calls_for("create_adset") == []
        children = [slot for slot in view.slots if slot.entity_type != EntityType.CAMPAIGN]
        assert all(slot.status == SlotStatus.PENDING for slot in children)
        assert len(view.failures) == 1
        failure = view.failures[0]
        assert failure.entity_type == EntityType.CAMPAIGN
        assert failure.error_code == "100"
        assert failure.error_category == "budget"
        assert failure.status == FailureStatus.FAILED

    @pytest.mark.asyncio
    async def test_child_entity_error_completes_partially(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        """A rejected ad set is recorded and its ad is failed with it."""
        client.script(
            PlatformResponse.entity_error(1487741, "Ad violates policy"),
            action_type="create_adset",
        )

        view = await engine.orchestrator.run_job(OWNER, ACCOUNT, PARENT, child_specs(2))

        assert view.job.status == JobStatus.COMPLETED
        assert view.slot_counts["created"] == 3
        assert view.slot_counts["failed"] == 2
        by_type = {failure.entity_type: failure for failure in view.failures}
        assert by_type[EntityType.AD_SET].error_category == "policy"
        assert by_type[EntityType.AD_SET].campaign_id == view.job.parent_entity_id
        assert by_type[EntityType.AD].adset_name == by_type[EntityType.AD_SET].adset_name
        assert "was not created" in by_type[EntityType.AD].failure_reason

    @pytest.mark.asyncio
    async def test_slot_retry_cap_makes_failure_terminal(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        client.script(
            *[PlatformUnavailableError("timeout") for _ in range(3)], action_type="create_adset"
        )

        view = await engine.orchestrator.run_job(
            OWNER, ACCOUNT, PARENT, child_specs(1, with_ads=False), retry_budget=10
        )

        assert view.job.status == JobStatus.COMPLETED
        assert view.slot_counts["failed"] == 1
        assert len(view.failures) == 1
        assert view.failures[0].error_category == "network"
        assert view.failures[0].retry_count == 3

    @pytest.mark.asyncio
    async def test_budget_exhaustion_rolls_back(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        client.script(
            *[PlatformUnavailableError("timeout") for _ in range(5)], action_type="create_adset"
        )

        view = await engine.orchestrator.run_job(
            OWNER, ACCOUNT, PARENT, child_specs(1, with_ads=False), retry_budget=2
        )

        campaign = _slots_by_type(engine, view.job.id, EntityType.CAMPAIGN)[0]
        assert view.job.status == JobStatus.ROLLED_BACK
        assert view.job.rollback_triggered is True
        assert "Retry budget exhausted (2/2)" in view.job.rollback_reason
        assert view.job.rolled_back_at is not None
        assert campaign.status == SlotStatus.ROLLED_BACK
        assert client.deleted == [campaign.remote_entity_id]

    @pytest.mark.asyncio
    async def test_drive_unknown_job(self, engine: Engine) -> None:
        with pytest.raises(JobNotFoundError):
            await engine.orchestrator.drive_job(404)


class TestQuotaDeferral:
    """Tests for jobs that outrun their quota window."""

    @pytest.mark.asyncio
    async def test_children_deferred_until_window_rolls_over(
        self, engine: Engine, client: StubAdPlatformClient, clock: FakeClock, credential_id: int
    ) -> None:
        """The last call of the window creates the parent; children wait for the next one."""
        engine.quota.record(OWNER, ACCOUNT, 199)
        reset_at = engine.quota.window_reset_at(OWNER, ACCOUNT)

        view = await engine.orchestrator.run_job(
            OWNER, ACCOUNT, PARENT, child_specs(2, with_ads=False)
        )

        assert view.job.status == JobStatus.IN_PROGRESS
        assert view.job.retry_count == 0
        campaign, *adsets = view.slots
        assert campaign.status == SlotStatus.CREATED
        for slot in adsets:
            assert slot.status == SlotStatus.CREATING
            row = engine.queue.get(slot.queued_request_id)
            assert row.status == QueueStatus.QUEUED
            assert row.process_after == reset_at

        # Nothing is due before the rollover
        assert (await engine.processor.process_due()).selected == 0

        clock.advance(hours=1, seconds=1)
        report = await engine.processor.process_due()

        assert report.completed == 2
        view = engine.orchestrator.get_job_status(view.job.id)
        assert view.job.status == JobStatus.COMPLETED
        assert view.job.children_created == 2
        assert all(slot.status == SlotStatus.CREATED for slot in view.slots)
        assert len(client.calls_for("create_adset")) == 2

    @pytest.mark.asyncio
    async def test_ads_follow_once_their_ad_sets_land(
        self, engine: Engine, clock: FakeClock, credential_id: int
    ) -> None:
        engine.quota.record(OWNER, ACCOUNT, 199)

        view = await engine.orchestrator.run_job(OWNER, ACCOUNT, PARENT, child_specs(2))
        clock.advance(hours=1, seconds=1)
        await engine.processor.process_due()

        view = engine.orchestrator.get_job_status(view.job.id)
        assert view.job.status == JobStatus.COMPLETED
        assert view.job.children_created == 4

    @pytest.mark.asyncio
    async def test_pool_exhaustion_defers_without_spending_budget(
        self, engine: Engine, clock: FakeClock
    ) -> None:
        # Four verification calls and the parent fill this credential
        engine.pool.add_credential("small", "token-small", calls_limit=5)

        view = await engine.orchestrator.run_job(
            OWNER, ACCOUNT, PARENT, child_specs(2, with_ads=False)
        )

        assert view.job.status == JobStatus.IN_PROGRESS
        assert view.job.retry_count == 0
        assert engine.queue.depth() == 2
        assert "All credentials exhausted" in view.job.last_error

        clock.advance(hours=1, seconds=1)
        await engine.processor.process_due()

        assert engine.jobs.get(view.job.id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_queued_entity_error_settles_slot(
        self, engine: Engine, client: StubAdPlatformClient, clock: FakeClock, credential_id: int
    ) -> None:
        engine.quota.record(OWNER, ACCOUNT, 199)
        view = await engine.orchestrator.run_job(
            OWNER, ACCOUNT, PARENT, child_specs(1, with_ads=False)
        )
        client.script(
            PlatformResponse.entity_error(100, "Invalid targeting spec"), action_type="create_adset"
        )

        clock.advance(hours=1, seconds=1)
        await engine.processor.process_due()

        view = engine.orchestrator.get_job_status(view.job.id)
        assert view.job.status == JobStatus.COMPLETED
        assert view.slot_counts["failed"] == 1
        assert view.failures[0].error_category == "targeting"

    @pytest.mark.asyncio
    async def test_row_abandoned_mid_dispatch_is_reclaimed(
        self, engine: Engine, client: StubAdPlatformClient, clock: FakeClock, credential_id: int
    ) -> None:
        """A processor that died holding a row does not strand its job."""
        engine.quota.record(OWNER, ACCOUNT, 199)
        view = await engine.orchestrator.run_job(
            OWNER, ACCOUNT, PARENT, child_specs(1, with_ads=False)
        )
        adset = _slots_by_type(engine, view.job.id, EntityType.AD_SET)[0]
        clock.advance(hours=1, seconds=1)
        assert engine.queue.claim(adset.queued_request_id) is True

        report = await engine.processor.process_due()
        assert report.selected == 0
        assert engine.queue.get(adset.queued_request_id).status == QueueStatus.PROCESSING

        clock.advance(minutes=10, seconds=1)
        report = await engine.processor.process_due()

        assert report.completed == 1
        assert engine.jobs.get(view.job.id).status == JobStatus.COMPLETED
        assert len(client.calls_for("create_adset")) == 1


class TestRecovery:
    """Tests for resuming interrupted drives."""

    @pytest.mark.asyncio
    async def test_stale_creating_slot_is_reset_and_retried(
        self, engine: Engine, client: StubAdPlatformClient, clock: FakeClock, credential_id: int
    ) -> None:
        job_id = await engine.orchestrator.start_job(
            OWNER, ACCOUNT, PARENT, child_specs(1, with_ads=False)
        )
        # Simulate a worker that died right after claiming the parent slot
        parent = engine.slots.parent(job_id)
        engine.slots.begin(parent.id)

        assert await engine.orchestrator.drive_job(job_id) == JobStatus.IN_PROGRESS
        assert client.calls == []

        clock.advance(seconds=301)
        statuses = await engine.orchestrator.resume_in_progress()

        assert statuses == {job_id: JobStatus.COMPLETED}
        assert len(client.calls_for("create_campaign")) == 1

    @pytest.mark.asyncio
    async def test_stale_slot_adopts_entity_that_reached_the_platform(
        self, engine: Engine, client: StubAdPlatformClient, clock: FakeClock, credential_id: int
    ) -> None:
        """The worker died after the ad set was created but before its id was saved."""
        job_id = await engine.orchestrator.start_job(
            OWNER, ACCOUNT, PARENT, child_specs(1, with_ads=False)
        )
        parent = engine.slots.begin(engine.slots.parent(job_id).id)
        engine.slots.mark_created(parent.id, "cmp_live")
        engine.jobs.set_parent_entity(job_id, "cmp_live")
        adset = engine.slots.begin(_slots_by_type(engine, job_id, EntityType.AD_SET)[0].id)
        response = await client.perform_call(
            "token-primary",
            ACCOUNT,
            CreateAdSetAction(name=adset.entity_name, campaign_id="cmp_live", daily_budget=1000),
        )

        clock.advance(seconds=301)
        status = await engine.orchestrator.drive_job(job_id)

        assert status == JobStatus.COMPLETED
        assert len(client.calls_for("create_adset")) == 1
        assert engine.slots.get(adset.id).remote_entity_id == response.entity_id
        assert engine.jobs.get(job_id).children_created == 1

    @pytest.mark.asyncio
    async def test_stale_slot_waits_when_lookup_fails(
        self, engine: Engine, client: StubAdPlatformClient, clock: FakeClock, credential_id: int
    ) -> None:
        job_id = await engine.orchestrator.start_job(
            OWNER, ACCOUNT, PARENT, child_specs(1, with_ads=False)
        )
        parent = engine.slots.begin(engine.slots.parent(job_id).id)
        client.failing_checks.add("find_entities_by_name")

        clock.advance(seconds=301)
        status = await engine.orchestrator.drive_job(job_id)

        assert status == JobStatus.IN_PROGRESS
        assert engine.slots.get(parent.id).status == SlotStatus.CREATING
        assert client.calls == []

        client.failing_checks.clear()
        assert await engine.orchestrator.drive_job(job_id) == JobStatus.COMPLETED
        assert len(client.calls_for("create_campaign")) == 1

    @pytest.mark.asyncio
    async def test_slot_with_remote_id_is_not_created_again(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        job_id = await engine.orchestrator.start_job(
            OWNER, ACCOUNT, PARENT, child_specs(1, with_ads=False)
        )
        parent = engine.slots.parent(job_id)
        view = engine.slots.begin(parent.id)
        engine.slots.mark_created(view.id, "cmp_existing")
        engine.jobs.set_parent_entity(job_id, "cmp_existing")

        await engine.orchestrator.drive_job(job_id)

        assert client.calls_for("create_campaign") == []
        assert client.calls_for("create_adset")[0].action.campaign_id == "cmp_existing"


class TestCancelAndRollback:
    """Tests for cancelling jobs and rolling them back."""

    @pytest.mark.asyncio
    async def test_cancel_stops_job_and_queue(
        self, engine: Engine, clock: FakeClock, credential_id: int
    ) -> None:
        engine.quota.record(OWNER, ACCOUNT, 199)
        view = await engine.orchestrator.run_job(
            OWNER, ACCOUNT, PARENT, child_specs(2, with_ads=False)
        )

        job = await engine.orchestrator.cancel_job(view.job.id)

        assert job.status == JobStatus.FAILED
        assert job.last_error == CANCELLED_MESSAGE
        assert job.cancel_requested is True
        assert engine.queue.depth() == 0

        # Nothing is dispatched for a cancelled job after the rollover
        clock.advance(hours=1, seconds=1)
        assert (await engine.processor.process_due()).selected == 0

    @pytest.mark.asyncio
    async def test_cancel_with_rollback_deletes_created_entities(
        self, engine: Engine, client: StubAdPlatformClient, clock: FakeClock, credential_id: int
    ) -> None:
        engine.quota.record(OWNER, ACCOUNT, 199)
        view = await engine.orchestrator.run_job(
            OWNER, ACCOUNT, PARENT, child_specs(2, with_ads=False)
        )
        clock.advance(hours=1, seconds=1)

        job = await engine.orchestrator.cancel_job(view.job.id, rollback=True)

        assert job.status == JobStatus.ROLLED_BACK
        assert job.rollback_reason == CANCELLED_MESSAGE
        assert client.deleted == [job.parent_entity_id]

    @pytest.mark.asyncio
    async def test_rollback_runs_exactly_once(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        client.script(
            *[PlatformUnavailableError("timeout") for _ in range(5)], action_type="create_adset"
        )
        view = await engine.orchestrator.run_job(
            OWNER, ACCOUNT, PARENT, child_specs(1, with_ads=False), retry_budget=1
        )
        assert view.job.status == JobStatus.ROLLED_BACK
        deleted = list(client.deleted)

        report = await engine.rollback.rollback(view.job.id, "second attempt")
        status = await engine.orchestrator.drive_job(view.job.id)

        assert report.already_rolled_back is True
        assert report.triggered is False
        assert status == JobStatus.ROLLED_BACK
        assert client.deleted == deleted


class TestProgress:
    """Tests for the polling surface."""

    @pytest.mark.asyncio
    async def test_get_progress(self, engine: Engine, credential_id: int) -> None:
        view = await engine.orchestrator.run_job(OWNER, ACCOUNT, PARENT, child_specs(2))

        progress = engine.orchestrator.get_progress(view.job.id)

        assert progress["status"] == "completed"
        assert progress["children_created"] == 4
        assert progress["requested_children"] == 4
        assert progress["slot_counts"]["created"] == 5
        assert progress["progress"] == 1.0


class TestEntityError:
    def test_str_includes_code(self) -> None:
        error = EntityError(100, "Invalid parameter", subcode=33)

        assert str(error) == "(100) Invalid parameter"
        assert error.subcode == 33
