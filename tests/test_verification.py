"""Tests for the pre-creation verification gate."""

import pytest
from conftest import ACCOUNT, OWNER

from campaign_engine.adapters.ad_platform.base import AccountInfo
from campaign_engine.adapters.ad_platform.stub import StubAdPlatformClient
from campaign_engine.db.models import PreCreationVerificationModel
from campaign_engine.services.engine import Engine


class TestVerify:
    """Tests for the five verification checks."""

    @pytest.mark.asyncio
    async def test_all_checks_pass(self, engine: Engine, credential_id: int) -> None:
        result = await engine.verifier.verify(OWNER, ACCOUNT, "Spring Sale")

        assert result.can_proceed is True
        assert result.errors == []
        assert result.checks == {
            "account_accessible": True,
            "account_suspended": False,
            "duplicate_name_exists": False,
            "at_account_limit": False,
            "token_valid": True,
        }
        assert result.id is not None

    @pytest.mark.asyncio
    async def test_verification_is_charged_to_the_pool_only(
        self, engine: Engine, credential_id: int
    ) -> None:
        await engine.verifier.verify(OWNER, ACCOUNT, "Spring Sale")

        assert engine.pool.usage_snapshot()[0]["calls_used"] == 4
        assert engine.quota.get_window(OWNER, ACCOUNT).calls_used == 0

    @pytest.mark.asyncio
    async def test_duplicate_name_blocks(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        client.existing_names[ACCOUNT] = {"Spring Sale"}

        result = await engine.verifier.verify(OWNER, ACCOUNT, "Spring Sale")

        assert result.duplicate_name_exists is True
        assert result.can_proceed is False
        assert any("already exists" in error for error in result.errors)

    @pytest.mark.asyncio
    async def test_inaccessible_account_blocks(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        client.inaccessible_accounts.add(ACCOUNT)

        result = await engine.verifier.verify(OWNER, ACCOUNT, "Spring Sale")

        assert result.account_accessible is False
        assert result.account_suspended is None
        assert result.can_proceed is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [2, 3, 100, 101])
    async def test_blocking_account_status(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int, status: int
    ) -> None:
        client.accounts[ACCOUNT] = AccountInfo(account_id=ACCOUNT, account_status=status)

        result = await engine.verifier.verify(OWNER, ACCOUNT, "Spring Sale")

        assert result.account_suspended is True
        assert result.account_status == status
        assert result.can_proceed is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [7, 8, 9])
    async def test_warning_account_status(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int, status: int
    ) -> None:
        client.accounts[ACCOUNT] = AccountInfo(account_id=ACCOUNT, account_status=status)

        result = await engine.verifier.verify(OWNER, ACCOUNT, "Spring Sale")

        assert result.account_suspended is False
        assert result.can_proceed is True
        assert len(result.warnings) == 1

    @pytest.mark.asyncio
    async def test_unknown_account_status_is_inconclusive(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        client.accounts[ACCOUNT] = AccountInfo(account_id=ACCOUNT, account_status=42)

        result = await engine.verifier.verify(OWNER, ACCOUNT, "Spring Sale")

        assert result.account_suspended is None
        assert result.is_inconclusive is True
        assert result.can_proceed is False

    @pytest.mark.asyncio
    async def test_account_limit(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        client.entity_counts[ACCOUNT] = 5000

        result = await engine.verifier.verify(OWNER, ACCOUNT, "Spring Sale")

        assert result.at_account_limit is True
        assert result.current_entity_count == 5000
        assert result.can_proceed is False

    @pytest.mark.asyncio
    async def test_approaching_account_limit_warns(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        client.entity_counts[ACCOUNT] = 4600

        result = await engine.verifier.verify(OWNER, ACCOUNT, "Spring Sale")

        assert result.can_proceed is True
        assert result.warnings == ["Approaching campaign limit (4600/5000)"]

    @pytest.mark.asyncio
    async def test_invalid_token_blocks(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        client.invalid_tokens.add("token-primary")

        result = await engine.verifier.verify(OWNER, ACCOUNT, "Spring Sale")

        assert result.token_valid is False
        assert result.can_proceed is False

    @pytest.mark.asyncio
    async def test_check_that_cannot_run_is_unknown_not_false(
        self, engine: Engine, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        """A failing lookup yields None and a warning, never a pass or a block."""
        client.failing_checks.add("find_entities_by_name")

        result = await engine.verifier.verify(OWNER, ACCOUNT, "Spring Sale")

        assert result.duplicate_name_exists is None
        assert result.errors == []
        assert result.is_inconclusive is True
        assert result.can_proceed is False
        assert any("duplicate" in warning for warning in result.warnings)

    @pytest.mark.asyncio
    async def test_no_credential_leaves_every_check_unknown(self, engine: Engine) -> None:
        result = await engine.verifier.verify(OWNER, ACCOUNT, "Spring Sale")

        assert set(result.checks.values()) == {None}
        assert result.is_inconclusive is True
        assert result.warnings == ["No credential available to run verification checks"]

    @pytest.mark.asyncio
    async def test_result_is_persisted(
        self, engine: Engine, session_factory, client: StubAdPlatformClient, credential_id: int
    ) -> None:
        client.entity_counts[ACCOUNT] = 12

        result = await engine.verifier.verify(OWNER, ACCOUNT, "Spring Sale")

        with session_factory() as session:
            row = session.get(PreCreationVerificationModel, result.id)
            assert row is not None
            assert row.can_proceed is True
            assert row.current_entity_count == 12
            assert row.entity_limit == 5000
            assert row.caller == OWNER

    @pytest.mark.asyncio
    async def test_to_dict(self, engine: Engine, credential_id: int) -> None:
        result = await engine.verifier.verify(OWNER, ACCOUNT, "Spring Sale")

        data = result.to_dict()
        assert data["can_proceed"] is True
        assert data["checks"]["token_valid"] is True
        assert data["id"] == result.id
