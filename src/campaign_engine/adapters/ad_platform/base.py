"""Base interface for ad platform clients."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from campaign_engine.domain.enums import EntityType, ResponseKind


@dataclass
class PlatformResponse:
    """Classified response to one remote call."""

    kind: ResponseKind
    entity_id: str | None = None
    code: int | None = None
    subcode: int | None = None
    message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.kind == ResponseKind.SUCCESS

    @classmethod
    def ok(cls, entity_id: str, **kwargs: Any) -> "PlatformResponse":
        return cls(kind=ResponseKind.SUCCESS, entity_id=entity_id, **kwargs)

    @classmethod
    def quota_exceeded(cls, message: str = "Rate limit reached", **kwargs: Any) -> "PlatformResponse":
        return cls(kind=ResponseKind.QUOTA_EXCEEDED, message=message, **kwargs)

    @classmethod
    def invalid_credential(
        cls, message: str = "Invalid OAuth access token", **kwargs: Any
    ) -> "PlatformResponse":
        return cls(kind=ResponseKind.INVALID_CREDENTIAL, message=message, **kwargs)

    @classmethod
    def entity_error(cls, code: int | None, message: str, **kwargs: Any) -> "PlatformResponse":
        return cls(kind=ResponseKind.ENTITY_ERROR, code=code, message=message, **kwargs)


@dataclass
class AccountInfo:
    """Ad account details used by pre-creation verification."""

    account_id: str
    name: str | None = None
    account_status: int | None = None
    business_id: str | None = None


class AdPlatformClient(ABC):
    """Abstract base class for ad platform clients.

    Implementations:
    - StubAdPlatformClient: In-memory, scriptable responses for tests and local runs
    - MetaGraphClient: Meta Graph API over httpx

    ``perform_call`` classifies platform responses instead of raising, and raises
    ``PlatformUnavailableError`` only for transport failures. The lookup methods
    used by verification raise on any failure so the caller can tell "no" apart
    from "could not check".
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Client identifier."""
        ...

    @abstractmethod
    async def perform_call(
        self, token: str, target_account: str, action: Any
    ) -> PlatformResponse:
        """Execute one action against the platform.

        Args:
            token: Decrypted credential token
            target_account: Ad account the action applies to
            action: A validated action payload

        Returns:
            PlatformResponse classified as success, quota exceeded,
            invalid credential or entity error
        """
        ...

    @abstractmethod
    async def get_account(self, token: str, target_account: str) -> AccountInfo | None:
        """Fetch an ad account, or None when it is not accessible with this token."""
        ...

    @abstractmethod
    async def find_entities_by_name(
        self,
        token: str,
        target_account: str,
        name: str,
        entity_type: EntityType = EntityType.CAMPAIGN,
        parent_id: str | None = None,
    ) -> list[str]:
        """Ids of active or paused entities named exactly ``name``.

        With ``parent_id`` only children of that campaign or ad set are searched.
        """
        ...

    @abstractmethod
    async def count_entities(self, token: str, target_account: str) -> int:
        """Number of campaigns currently in the account."""
        ...

    @abstractmethod
    async def validate_token(self, token: str) -> bool:
        """Whether the token is accepted by the platform."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        return None
