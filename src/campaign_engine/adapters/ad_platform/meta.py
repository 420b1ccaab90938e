"""Meta Graph API client."""

import json
from typing import Any

import httpx

from campaign_engine.adapters.ad_platform.base import (
    AccountInfo,
    AdPlatformClient,
    PlatformResponse,
)
from campaign_engine.config import settings
from campaign_engine.domain.enums import EntityType
from campaign_engine.logging import get_logger
from campaign_engine.services.errors import PlatformUnavailableError

logger = get_logger(__name__)

# Application, user, page and ad-account level throttling
RATE_LIMIT_CODES = {4, 17, 32, 613, 80004}
RATE_LIMIT_SUBCODES = {80004, 2446079}
INVALID_TOKEN_CODES = {190, 102}

_USAGE_HEADERS = ("x-business-use-case-usage", "x-app-usage", "x-ad-account-usage")

_ID_KEYS = ("id", "copied_campaign_id", "copied_adset_id", "copied_ad_id")

_CREATE_EDGES = {
    "create_campaign": "campaigns",
    "create_adset": "adsets",
    "create_ad": "ads",
}

_SEARCH_EDGES = {
    EntityType.CAMPAIGN: "campaigns",
    EntityType.AD_SET: "adsets",
    EntityType.AD: "ads",
}


def account_path(target_account: str) -> str:
    """Graph node for an ad account, accepting ids with or without the act_ prefix."""
    return target_account if target_account.startswith("act_") else f"act_{target_account}"


def _encode_params(params: dict[str, Any]) -> dict[str, str]:
    # Graph API expects nested values as JSON strings in form bodies
    return {
        key: value if isinstance(value, str) else json.dumps(value)
        for key, value in params.items()
    }


class MetaGraphClient(AdPlatformClient):
    """Ad platform client backed by the Meta Graph API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.meta_graph_url).rstrip("/")
        self.api_version = api_version or settings.meta_api_version
        self.timeout = timeout or settings.meta_request_timeout
        self._client = client

    @property
    def name(self) -> str:
        return "meta"

    @property
    def graph_url(self) -> str:
        return f"{self.base_url}/{self.api_version}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        client = await self._get_client()
        query = {"access_token": token, **(params or {})}
        try:
            return await client.request(
                method,
                f"{self.graph_url}/{path.lstrip('/')}",
                params=query,
                data=_encode_params(data) if data else None,
            )
        except httpx.HTTPError as e:
            logger.warning("meta_transport_error", path=path, error=str(e))
            raise PlatformUnavailableError(f"Graph API request failed: {e}") from e

    def classify(self, response: httpx.Response) -> PlatformResponse:
        """Turn an HTTP response into a classified platform response."""
        headers = {
            name: response.headers[name] for name in _USAGE_HEADERS if name in response.headers
        }
        try:
            body: dict[str, Any] = response.json()
        except ValueError:
            body = {}

        if response.status_code < 400 and "error" not in body:
            entity_id = next(
                (body[key] for key in _ID_KEYS if body.get(key)),
                None,
            )
            return PlatformResponse.ok(str(entity_id) if entity_id else "", raw=body, headers=headers)

        error = body.get("error", {}) if isinstance(body, dict) else {}
        code = error.get("code")
        subcode = error.get("error_subcode")
        message = error.get("error_user_msg") or error.get("message") or response.text[:500]

        if response.status_code == 429 or code in RATE_LIMIT_CODES or subcode in RATE_LIMIT_SUBCODES:
            return PlatformResponse.quota_exceeded(
                message, code=code, subcode=subcode, raw=body, headers=headers
            )
        if response.status_code == 401 or code in INVALID_TOKEN_CODES:
            return PlatformResponse.invalid_credential(
                message, code=code, subcode=subcode, raw=body, headers=headers
            )
        if response.status_code >= 500 and code in (None, 1, 2):
            raise PlatformUnavailableError(
                f"Graph API unavailable ({response.status_code}): {message}"
            )
        return PlatformResponse.entity_error(
            code, message, subcode=subcode, raw=body, headers=headers
        )

    async def perform_call(
        self, token: str, target_account: str, action: Any
    ) -> PlatformResponse:
        action_type = str(action.action_type)
        act = account_path(target_account)

        if action_type in _CREATE_EDGES:
            response = await self._request(
                "POST", f"{act}/{_CREATE_EDGES[action_type]}", token, data=action.params()
            )
        elif action_type.startswith("update_"):
            response = await self._request("POST", action.entity_id, token, data=action.params())
        elif action_type == "duplicate":
            data: dict[str, Any] = {
                "deep_copy": action.deep_copy,
                "status_option": action.status_option,
            }
            if action.rename_suffix:
                data["rename_options"] = {"rename_suffix": action.rename_suffix}
            response = await self._request("POST", f"{action.source_id}/copies", token, data=data)
        elif action_type == "batch":
            response = await self._request(
                "POST", "", token, data={"batch": action.operations, "include_headers": False}
            )
        elif action_type == "delete_entity":
            response = await self._request("DELETE", action.entity_id, token)
        else:
            raise ValueError(f"Unsupported action type: {action_type}")

        result = self.classify(response)
        if result.success and not result.entity_id:
            # Updates, deletes and batches answer {"success": true} without an id
            result.entity_id = (
                getattr(action, "entity_id", None) or getattr(action, "source_id", None) or ""
            )
        logger.debug(
            "meta_call_completed",
            action_type=action_type,
            target_account=target_account,
            kind=result.kind,
            code=result.code,
        )
        return result

    async def get_account(self, token: str, target_account: str) -> AccountInfo | None:
        response = await self._request(
            "GET",
            account_path(target_account),
            token,
            params={"fields": "id,name,account_status,business"},
        )
        result = self.classify(response)
        if not result.success:
            if result.kind == "entity_error" and response.status_code in (400, 403, 404):
                return None
            raise PlatformUnavailableError(f"Account lookup failed: {result.message}")
        body = result.raw
        return AccountInfo(
            account_id=str(body.get("id", target_account)),
            name=body.get("name"),
            account_status=body.get("account_status"),
            business_id=(body.get("business") or {}).get("id"),
        )

    async def find_entities_by_name(
        self,
        token: str,
        target_account: str,
        name: str,
        entity_type: EntityType = EntityType.CAMPAIGN,
        parent_id: str | None = None,
    ) -> list[str]:
        edge = _SEARCH_EDGES[entity_type]
        node = parent_id if parent_id is not None else account_path(target_account)
        filtering = [
            {"field": "name", "operator": "EQUAL", "value": name},
            {"field": "effective_status", "operator": "IN", "value": ["ACTIVE", "PAUSED"]},
        ]
        response = await self._request(
            "GET",
            f"{node}/{edge}",
            token,
            params={"fields": "id,name", "filtering": json.dumps(filtering), "limit": 10},
        )
        result = self.classify(response)
        if not result.success:
            raise PlatformUnavailableError(f"Name lookup failed: {result.message}")
        return [str(item["id"]) for item in result.raw.get("data", []) if "id" in item]

    async def count_entities(self, token: str, target_account: str) -> int:
        response = await self._request(
            "GET",
            f"{account_path(target_account)}/campaigns",
            token,
            params={"summary": "total_count", "limit": 0},
        )
        result = self.classify(response)
        if not result.success:
            raise PlatformUnavailableError(f"Campaign count failed: {result.message}")
        return int(result.raw.get("summary", {}).get("total_count", 0))

    async def validate_token(self, token: str) -> bool:
        response = await self._request("GET", "me", token, params={"fields": "id"})
        result = self.classify(response)
        if result.success:
            return True
        if result.kind == "invalid_credential":
            return False
        raise PlatformUnavailableError(f"Token check failed: {result.message}")
