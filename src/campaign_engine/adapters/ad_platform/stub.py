"""Stub ad platform client for testing and local development."""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any

from campaign_engine.adapters.ad_platform.base import (
    AccountInfo,
    AdPlatformClient,
    PlatformResponse,
)
from campaign_engine.domain.enums import EntityType
from campaign_engine.logging import get_logger
from campaign_engine.services.errors import PlatformUnavailableError

logger = get_logger(__name__)

_CREATED_TYPES = {
    "create_campaign": EntityType.CAMPAIGN,
    "create_adset": EntityType.AD_SET,
    "create_ad": EntityType.AD,
}

_ID_PREFIX = {
    "create_campaign": "cmp",
    "create_adset": "adset",
    "create_ad": "ad",
    "duplicate": "copy",
    "batch": "batch",
}


@dataclass
class StubEntity:
    """An entity the stub created."""

    target_account: str
    entity_type: EntityType
    name: str
    parent_id: str | None


@dataclass
class StubCall:
    """One call received by the stub."""

    token: str
    target_account: str
    action: Any

    @property
    def action_type(self) -> str:
        return str(self.action.action_type)


class StubAdPlatformClient(AdPlatformClient):
    """In-memory platform that succeeds unless told otherwise.

    Responses can be scripted per action type with ``script``; scripted entries
    are consumed in order. An entry may be an exception, which is raised.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.calls: list[StubCall] = []
        self.deleted: list[str] = []
        self.accounts: dict[str, AccountInfo] = {}
        self.default_account_status = 1
        self.inaccessible_accounts: set[str] = set()
        self.existing_names: dict[str, set[str]] = {}
        self.entity_counts: dict[str, int] = {}
        self.invalid_tokens: set[str] = set()
        self.failing_checks: set[str] = set()
        self.entities: dict[str, StubEntity] = {}
        self._scripted: list[tuple[str | None, PlatformResponse | Exception]] = []
        self._ids = itertools.count(1)

    @property
    def name(self) -> str:
        return "stub"

    def script(
        self, *responses: PlatformResponse | Exception, action_type: str | None = None
    ) -> None:
        """Queue responses for the next matching calls (any action when None)."""
        for response in responses:
            self._scripted.append((action_type, response))

    def calls_for(self, action_type: str) -> list[StubCall]:
        return [call for call in self.calls if call.action_type == action_type]

    def _next_scripted(self, action_type: str) -> PlatformResponse | Exception | None:
        for index, (wanted, response) in enumerate(self._scripted):
            if wanted is None or wanted == action_type:
                del self._scripted[index]
                return response
        return None

    async def perform_call(
        self, token: str, target_account: str, action: Any
    ) -> PlatformResponse:
        if self.latency:
            await asyncio.sleep(self.latency)

        call = StubCall(token=token, target_account=target_account, action=action)
        self.calls.append(call)

        if token in self.invalid_tokens:
            return PlatformResponse.invalid_credential()

        scripted = self._next_scripted(call.action_type)
        if isinstance(scripted, Exception):
            raise scripted
        if scripted is not None:
            logger.debug("stub_scripted_response", action_type=call.action_type, kind=scripted.kind)
            return scripted

        if call.action_type == "delete_entity":
            self.deleted.append(action.entity_id)
            return PlatformResponse.ok(action.entity_id, raw={"success": True})
        if call.action_type.startswith("update_"):
            return PlatformResponse.ok(action.entity_id, raw={"success": True})

        prefix = _ID_PREFIX.get(call.action_type, "entity")
        entity_id = f"{prefix}_{next(self._ids)}"
        entity_type = _CREATED_TYPES.get(call.action_type)
        if entity_type is not None:
            self.entities[entity_id] = StubEntity(
                target_account=target_account,
                entity_type=entity_type,
                name=action.name,
                parent_id=getattr(action, "campaign_id", None) or getattr(action, "adset_id", None),
            )
        return PlatformResponse.ok(entity_id, raw={"id": entity_id})

    def _check(self, name: str) -> None:
        if name in self.failing_checks:
            raise PlatformUnavailableError(f"stub check '{name}' unavailable")

    async def get_account(self, token: str, target_account: str) -> AccountInfo | None:
        self._check("get_account")
        if target_account in self.inaccessible_accounts:
            return None
        return self.accounts.get(
            target_account,
            AccountInfo(
                account_id=target_account,
                name=f"Stub account {target_account}",
                account_status=self.default_account_status,
            ),
        )

    async def find_entities_by_name(
        self,
        token: str,
        target_account: str,
        name: str,
        entity_type: EntityType = EntityType.CAMPAIGN,
        parent_id: str | None = None,
    ) -> list[str]:
        """Names in ``existing_names`` match at account level.

        Entities the stub created itself only match under their parent.
        """
        self._check("find_entities_by_name")
        if parent_id is None:
            if entity_type == EntityType.CAMPAIGN and name in self.existing_names.get(
                target_account, set()
            ):
                return [f"existing_{target_account}"]
            return []
        return [
            entity_id
            for entity_id, entity in self.entities.items()
            if entity.target_account == target_account
            and entity.entity_type == entity_type
            and entity.name == name
            and entity.parent_id == parent_id
            and entity_id not in self.deleted
        ]

    async def count_entities(self, token: str, target_account: str) -> int:
        self._check("count_entities")
        return self.entity_counts.get(target_account, 0)

    async def validate_token(self, token: str) -> bool:
        self._check("validate_token")
        return token not in self.invalid_tokens
