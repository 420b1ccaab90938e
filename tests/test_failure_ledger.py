"""Tests for the failure ledger and manual recovery."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from conftest import ACCOUNT, OWNER, FakeClock, child_specs

from campaign_engine.adapters.ad_platform.base import PlatformResponse
from campaign_engine.adapters.ad_platform.stub import StubAdPlatformClient
from campaign_engine.db.models import FailureRecordModel
from campaign_engine.domain.enums import EntityType, FailureStatus
from campaign_engine.services.engine import Engine
from campaign_engine.services.errors import FailureRecordNotFoundError
from campaign_engine.services.failure_ledger import FailureLedger, InvalidFailureTransitionError


async def _failed_ad(engine: Engine, client: StubAdPlatformClient, name: str = "Winter") -> int:
    """Run a one-child job whose ad is rejected. Returns the failure id."""
    client.script(
        PlatformResponse.entity_error(1487741, "Ad creative violates policy"),
        action_type="create_ad",
    )
    view = await engine.orchestrator.run_job(OWNER, ACCOUNT, {"name": name}, child_specs(1))
    assert len(view.failures) == 1
    return view.failures[0].id


class TestRecord:
    """Tests for writing entries."""

    @pytest.mark.asyncio
    async def test_entry_carries_entity_context(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        failure = engine.failures.get(await _failed_ad(engine, client))

        assert failure.entity_type == EntityType.AD
        assert failure.owner == OWNER
        assert failure.campaign_name == "Winter"
        assert failure.campaign_id is not None
        assert failure.adset_id is not None
        assert failure.adset_name == "Ad Set 1"
        assert failure.ad_name == "Ad 1"
        assert failure.error_code == "1487741"
        assert failure.error_category == "policy"
        assert "policies" in failure.user_friendly_reason
        assert failure.status == FailureStatus.FAILED

    @pytest.mark.asyncio
    async def test_slot_is_recorded_once(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        failure = engine.failures.get(await _failed_ad(engine, client))
        job = engine.jobs.get(failure.job_id)
        slot = engine.slots.get(failure.slot_id)

        again = engine.failures.record(job, slot, "second error", "second")

        assert again.id == failure.id
        assert len(engine.failures.list_for_job(job.id)) == 1
        assert engine.failures.failed_slot_ids(job.id) == {slot.id}

    @pytest.mark.asyncio
    async def test_losing_a_concurrent_insert_returns_the_winner(
        self,
        engine: Engine,
        client: StubAdPlatformClient,
        credential_id: int,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        failure = engine.failures.get(await _failed_ad(engine, client))
        job = engine.jobs.get(failure.job_id)
        slot = engine.slots.get(failure.slot_id)
        lookups = iter([None])
        real_lookup = engine.failures._for_slot
        # The first lookup misses, as it would for a writer that checked before the insert.
        monkeypatch.setattr(
            engine.failures, "_for_slot", lambda slot_id: next(lookups, real_lookup(slot_id))
        )

        again = engine.failures.record(job, slot, "second error", "second")

        assert again.id == failure.id
        assert again.failure_reason == failure.failure_reason
        assert len(engine.failures.list_for_job(job.id)) == 1


class TestRecovery:
    """Tests for the manual recovery transitions."""

    @pytest.mark.asyncio
    async def test_retrying_then_recovered(
        self, engine: Engine, client: StubAdPlatformClient, clock: FakeClock, credential_id: int
    ) -> None:
        failure_id = await _failed_ad(engine, client)

        retrying = engine.failures.mark_retrying(failure_id)
        recovered = engine.failures.mark_recovered(failure_id, ad_id="ad_manual")

        assert retrying.status == FailureStatus.RETRYING
        assert retrying.retry_count == 2
        assert recovered.status == FailureStatus.RECOVERED
        assert recovered.ad_id == "ad_manual"
        assert recovered.recovered_at == clock()

    @pytest.mark.asyncio
    async def test_permanent_failure_is_final(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        failure_id = await _failed_ad(engine, client)
        engine.failures.mark_permanent_failure(failure_id)

        with pytest.raises(InvalidFailureTransitionError):
            engine.failures.mark_recovered(failure_id)
        with pytest.raises(InvalidFailureTransitionError):
            engine.failures.mark_retrying(failure_id)

    def test_unknown_entry(self, engine: Engine) -> None:
        with pytest.raises(FailureRecordNotFoundError):
            engine.failures.get(404)
        with pytest.raises(FailureRecordNotFoundError):
            engine.failures.mark_permanent_failure(404)


class TestReporting:
    """Tests for listings, statistics and cleanup."""

    @pytest.mark.asyncio
    async def test_list_pending_newest_first(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        first = await _failed_ad(engine, client, "First")
        second = await _failed_ad(engine, client, "Second")
        third = await _failed_ad(engine, client, "Third")
        engine.failures.mark_recovered(third)

        pending = engine.failures.list_pending(OWNER)

        assert [failure.id for failure in pending] == [second, first]
        assert engine.failures.list_pending("someone-else") == []

    @pytest.mark.asyncio
    async def test_list_pending_by_campaign(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        first = await _failed_ad(engine, client, "First")
        await _failed_ad(engine, client, "Second")
        campaign_id = engine.failures.get(first).campaign_id

        pending = engine.failures.list_pending(OWNER, campaign_id)

        assert [failure.id for failure in pending] == [first]

    @pytest.mark.asyncio
    async def test_stats(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        first = await _failed_ad(engine, client, "First")
        await _failed_ad(engine, client, "Second")
        engine.failures.mark_recovered(first)

        stats = engine.failures.stats(OWNER)

        assert stats["total"] == 2
        assert stats["by_entity_type"] == {"campaign": 0, "ad_set": 0, "ad": 2}
        assert stats["by_status"]["recovered"] == 1
        assert stats["by_status"]["failed"] == 1
        assert stats["recovery_rate"] == 50.0

    def test_stats_without_entries(self, engine: Engine) -> None:
        assert engine.failures.stats(OWNER)["recovery_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_cleanup_recovered(
        self, engine: Engine, client: StubAdPlatformClient, clock: FakeClock, credential_id: int
    ) -> None:
        old = await _failed_ad(engine, client, "Old")
        pending = await _failed_ad(engine, client, "Pending")
        engine.failures.mark_recovered(old)
        clock.advance(days=31)
        recent = await _failed_ad(engine, client, "Recent")
        engine.failures.mark_recovered(recent)

        deleted = engine.failures.cleanup_recovered(older_than_days=30)

        assert deleted == 1
        with pytest.raises(FailureRecordNotFoundError):
            engine.failures.get(old)
        assert engine.failures.get(pending).status == FailureStatus.FAILED
        assert engine.failures.get(recent).recovered_at > clock() - timedelta(days=1)


def test_concurrent_retries_move_the_entry_once(file_session_factory, clock: FakeClock) -> None:
    """Only one of several racing retries wins, and the count rises by exactly one."""
    with file_session_factory() as session:
        row = FailureRecordModel(
            owner=OWNER,
            entity_type=EntityType.AD.value,
            failure_reason="Ad creative violates policy",
            user_friendly_reason="Rejected",
            retry_count=3,
            status=FailureStatus.FAILED.value,
            created_at=clock(),
        )
        session.add(row)
        session.flush()
        failure_id = row.id
    ledger = FailureLedger(file_session_factory, clock)

    def retry(_: int) -> bool:
        try:
            ledger.mark_retrying(failure_id)
        except InvalidFailureTransitionError:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as executor:
        outcomes = list(executor.map(retry, range(8)))

    failure = ledger.get(failure_id)
    assert outcomes.count(True) == 1
    assert failure.status == FailureStatus.RETRYING
    assert failure.retry_count == 4
