"""Error taxonomy for the creation engine."""

import math
from datetime import datetime
from typing import Any


class EngineError(Exception):
    """Base class for errors raised by the creation engine."""

    pass


class AllCredentialsExhaustedError(EngineError):
    """No credential in the account group can take another call right now."""

    def __init__(
        self,
        account_group: str,
        retry_at: datetime | None,
        now: datetime,
    ) -> None:
        self.account_group = account_group
        self.retry_at = retry_at
        if retry_at is None:
            self.estimated_wait_minutes: int | None = None
        else:
            seconds = max((retry_at - now).total_seconds(), 0.0)
            self.estimated_wait_minutes = max(math.ceil(seconds / 60), 1)
        detail = (
            f"retry in ~{self.estimated_wait_minutes} min"
            if self.estimated_wait_minutes is not None
            else "no active credentials"
        )
        super().__init__(f"All credentials exhausted for group '{account_group}': {detail}")

    @property
    def retry_after_seconds(self) -> int | None:
        if self.estimated_wait_minutes is None:
            return None
        return self.estimated_wait_minutes * 60


class EntityError(EngineError):
    """Entity-level rejection (validation, duplicate, policy). Terminal for a slot."""

    def __init__(
        self,
        code: int | str | None,
        message: str,
        raw: dict[str, Any] | None = None,
        subcode: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.raw = raw or {}
        self.subcode = subcode

    def __str__(self) -> str:
        if self.code is None:
            return self.message
        return f"({self.code}) {self.message}"


class PlatformUnavailableError(EngineError):
    """Transport failure or platform outage. Transient."""

    pass


class PayloadValidationError(EngineError):
    """An action payload does not match its declared variant."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class InvalidSlotTransitionError(EngineError):
    """A slot status change is not allowed from its current status."""

    pass


class InvalidJobTransitionError(EngineError):
    """A job status change is not allowed from its current status."""

    pass


class JobNotFoundError(EngineError):
    """No creation job with the given id."""

    pass


class CredentialNotFoundError(EngineError):
    """No credential with the given id."""

    pass


class CredentialInUseError(EngineError):
    """The credential's group still serves in-flight jobs."""

    pass


class QueuedRequestNotFoundError(EngineError):
    """No queued request with the given id."""

    pass


class FailureRecordNotFoundError(EngineError):
    """No failure record with the given id."""

    pass
