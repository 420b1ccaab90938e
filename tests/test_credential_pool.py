"""Tests for the credential pool."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from conftest import FakeClock

from campaign_engine.services.credential_pool import CredentialPool
from campaign_engine.services.errors import CredentialInUseError, CredentialNotFoundError


@pytest.fixture
def pool(session_factory, clock) -> CredentialPool:
    return CredentialPool(session_factory, clock, window=timedelta(hours=1))


class TestAcquire:
    """Tests for least-loaded credential selection."""

    def test_picks_lowest_usage_percentage(self, pool: CredentialPool) -> None:
        """The credential with the lowest usage ratio wins, not the lowest count."""
        busy = pool.add_credential("busy", "t1", calls_limit=100)
        roomy = pool.add_credential("roomy", "t2", calls_limit=400)
        pool.release(busy, 50)
        pool.release(roomy, 100)

        lease = pool.acquire("default")

        assert lease is not None
        assert lease.id == roomy
        assert lease.calls_used == 101
        assert lease.reserved == 1

    def test_ties_go_to_lowest_id(self, pool: CredentialPool) -> None:
        first = pool.add_credential("first", "t1")
        pool.add_credential("second", "t2")

        lease = pool.acquire("default")

        assert lease is not None
        assert lease.id == first

    def test_skips_inactive_and_full_credentials(self, pool: CredentialPool) -> None:
        inactive = pool.add_credential("inactive", "t1", calls_limit=10)
        full = pool.add_credential("full", "t2", calls_limit=10)
        spare = pool.add_credential("spare", "t3", calls_limit=10)
        pool.deactivate(inactive, "revoked")
        pool.release(full, 10)
        pool.release(spare, 9)

        lease = pool.acquire("default")

        assert lease is not None
        assert lease.id == spare

    def test_returns_none_when_group_exhausted(self, pool: CredentialPool) -> None:
        credential = pool.add_credential("only", "t1", calls_limit=2)
        pool.release(credential, 2)

        assert pool.acquire("default") is None

    def test_multi_call_reservation_skips_credentials_without_room(self, pool: CredentialPool) -> None:
        tight = pool.add_credential("tight", "t1", calls_limit=10)
        roomy = pool.add_credential("roomy", "t2", calls_limit=100)
        pool.release(tight, 7)
        pool.release(roomy, 50)

        lease = pool.acquire("default", calls=4)

        assert lease is not None
        assert lease.id == roomy
        assert lease.reserved == 4
        assert lease.calls_used == 54

    def test_groups_are_isolated(self, pool: CredentialPool) -> None:
        pool.add_credential("other", "t1", account_group="agency_b")

        assert pool.acquire("default") is None
        assert pool.acquire("agency_b") is not None

    def test_expired_window_resets_before_selection(
        self, pool: CredentialPool, clock: FakeClock
    ) -> None:
        credential = pool.add_credential("only", "t1", calls_limit=5)
        pool.release(credential, 5)
        assert pool.acquire("default") is None

        clock.advance(hours=1, seconds=1)
        lease = pool.acquire("default")

        assert lease is not None
        assert lease.calls_used == 1
        assert lease.window_reset_at == clock() + timedelta(hours=1)


class TestUsage:
    """Tests for usage accounting."""

    def test_release_opens_window_once(self, pool: CredentialPool, clock: FakeClock) -> None:
        credential = pool.add_credential("only", "t1")
        start = clock()

        pool.release(credential, 1)
        clock.advance(minutes=10)
        pool.release(credential, 3)

        lease = pool.acquire("default")
        assert lease is not None
        assert lease.calls_used == 5
        assert lease.window_reset_at == start + timedelta(hours=1)

    def test_release_never_exceeds_limit(self, pool: CredentialPool) -> None:
        credential = pool.add_credential("only", "t1", calls_limit=10)

        pool.release(credential, 25)

        row = pool.usage_snapshot()[0]
        assert row["calls_used"] == 10

    def test_mark_exhausted(self, pool: CredentialPool) -> None:
        credential = pool.add_credential("only", "t1", calls_limit=50)

        pool.mark_exhausted(credential)

        assert pool.acquire("default") is None
        assert pool.soonest_reset("default") is not None

    def test_release_refunds_unconsumed_reservation(self, pool: CredentialPool) -> None:
        credential = pool.add_credential("only", "t1", calls_limit=1)
        lease = pool.acquire("default")
        assert lease is not None
        assert pool.has_capacity("default") is False

        pool.release(credential, 0, lease.reserved)

        assert pool.usage_snapshot()[0]["calls_used"] == 0
        assert pool.has_capacity("default") is True

    def test_release_consumed_reservation_adds_nothing(self, pool: CredentialPool) -> None:
        credential = pool.add_credential("only", "t1")
        lease = pool.acquire("default")
        assert lease is not None

        pool.release(credential, 1, lease.reserved)

        assert pool.usage_snapshot()[0]["calls_used"] == 1

    def test_release_unknown_credential(self, pool: CredentialPool) -> None:
        with pytest.raises(CredentialNotFoundError):
            pool.release(999, 1)


class TestTokens:
    """Tests for encrypted token storage."""

    def test_token_round_trips_and_is_encrypted(self, pool: CredentialPool, session_factory) -> None:
        from campaign_engine.db.models import CredentialModel

        credential = pool.add_credential("only", "secret-token")

        with session_factory() as session:
            stored = session.get(CredentialModel, credential).encrypted_token
        assert "secret-token" not in stored
        assert pool.get_token(credential) == "secret-token"

    def test_update_token_reactivates(self, pool: CredentialPool) -> None:
        credential = pool.add_credential("only", "old")
        pool.deactivate(credential, "expired")

        pool.update_token(credential, "new")

        assert pool.get_token(credential) == "new"
        assert pool.acquire("default") is not None


class TestAccountsAndDeletion:
    """Tests for account group routing and credential deletion."""

    def test_resolve_account_group(self, pool: CredentialPool) -> None:
        pool.register_account("act_1", "agency_a", "Client A")

        assert pool.resolve_account_group("act_1") == "agency_a"
        assert pool.resolve_account_group("act_unknown") == "default"

    def test_register_account_twice_remaps(self, pool: CredentialPool) -> None:
        pool.register_account("act_1", "agency_a")
        pool.register_account("act_1", "agency_b")

        assert pool.resolve_account_group("act_1") == "agency_b"

    def test_delete_refused_while_jobs_in_flight(
        self, pool: CredentialPool, session_factory
    ) -> None:
        from campaign_engine.services.job_store import JobStore

        credential = pool.add_credential("only", "t1")
        with session_factory() as session:
            session.add(JobStore(session_factory).new_job("u", "act_1", "default", {"name": "C"}, []))

        with pytest.raises(CredentialInUseError):
            pool.delete_credential(credential)

    def test_delete(self, pool: CredentialPool) -> None:
        credential = pool.add_credential("only", "t1")

        pool.delete_credential(credential)

        assert pool.usage_snapshot() == []
        with pytest.raises(CredentialNotFoundError):
            pool.delete_credential(credential)

    def test_summary(self, pool: CredentialPool) -> None:
        first = pool.add_credential("a", "t1", calls_limit=100)
        pool.add_credential("b", "t2", calls_limit=100)
        pool.release(first, 100)

        summary = pool.summary()

        assert summary["total_credentials"] == 2
        assert summary["available_credentials"] == 1
        assert summary["exhausted_credentials"] == 1
        assert summary["usage_percentage"] == 50.0
        assert summary["minutes_until_reset"] == 60


def test_concurrent_acquires_never_overdraw(file_session_factory, clock: FakeClock) -> None:
    """Threads racing for the last calls of a credential get exactly the calls it has."""
    pool = CredentialPool(file_session_factory, clock, window=timedelta(hours=1))
    pool.add_credential("only", "t1", calls_limit=5)

    with ThreadPoolExecutor(max_workers=8) as executor:
        leases = list(executor.map(lambda _: pool.acquire("default"), range(20)))

    assert sum(lease is not None for lease in leases) == 5
    assert pool.usage_snapshot()[0]["calls_used"] == 5
