"""Pool of rotating platform credentials.

Every mutation of a credential's usage counter is a single UPDATE keyed by id,
so concurrent dispatchers never lose increments.
"""

import math
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Float, case, cast, func, literal, select, update
from sqlalchemy.orm import Session

from campaign_engine.config import settings
from campaign_engine.db.models import (
    CreationJobModel,
    CredentialModel,
    InternalAccountModel,
    UTCDateTime,
)
from campaign_engine.db.session import SessionFactory, get_session_context
from campaign_engine.domain.enums import CredentialKind, JobStatus
from campaign_engine.domain.models import CredentialLease
from campaign_engine.logging import get_logger
from campaign_engine.services.encryption import decrypt_token, encrypt_token
from campaign_engine.services.errors import CredentialInUseError, CredentialNotFoundError
from campaign_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)


def _lease(row: CredentialModel, reserved: int = 0) -> CredentialLease:
    return CredentialLease(
        id=row.id,
        name=row.name,
        account_group=row.account_group,
        calls_used=row.calls_used,
        calls_limit=row.calls_limit,
        window_reset_at=row.window_reset_at,
        reserved=reserved,
    )


class CredentialPool:
    """Selects the least-loaded credential and tracks per-credential usage."""

    def __init__(
        self,
        session_factory: SessionFactory = get_session_context,
        clock: Clock = utc_now,
        window: timedelta | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._window = window or timedelta(seconds=settings.quota_window_seconds)

    # ------------------------------------------------------------------
    # Selection and usage
    # ------------------------------------------------------------------

    def _reset_expired(
        self, session: Session, now: datetime, credential_id: int | None = None
    ) -> int:
        stmt = (
            update(CredentialModel)
            .where(
                CredentialModel.window_reset_at.is_not(None),
                CredentialModel.window_reset_at <= now,
            )
            .values(calls_used=0, window_reset_at=None)
            .execution_options(synchronize_session=False)
        )
        if credential_id is not None:
            stmt = stmt.where(CredentialModel.id == credential_id)
        reset = session.execute(stmt).rowcount
        if reset:
            logger.info("credential_windows_reset", count=reset, credential_id=credential_id)
        return reset

    def _eligible(self, account_group: str, calls: int) -> list[Any]:
        return [
            CredentialModel.account_group == account_group,
            CredentialModel.active.is_(True),
            CredentialModel.calls_limit > 0,
            CredentialModel.calls_used + calls <= CredentialModel.calls_limit,
        ]

    def acquire(self, account_group: str, calls: int = 1) -> CredentialLease | None:
        """Reserve ``calls`` on the active credential with the lowest usage percentage.

        Each reservation is a conditional UPDATE, so concurrent callers can never
        push a credential past its limit: a candidate that filled up since it
        was read is skipped for the next one. Ties go to the lowest id. Returns
        None when no credential in the group has room. Calls the platform never
        consumed are handed back with ``release``.
        """
        now = self._clock()
        usage = cast(CredentialModel.calls_used, Float) / CredentialModel.calls_limit
        with self._session_factory() as session:
            self._reset_expired(session, now)
            candidates = session.scalars(
                select(CredentialModel.id)
                .where(*self._eligible(account_group, calls))
                .order_by(usage.asc(), CredentialModel.id.asc())
            ).all()
            for credential_id in candidates:
                result = session.execute(
                    update(CredentialModel)
                    .where(
                        CredentialModel.id == credential_id,
                        *self._eligible(account_group, calls),
                    )
                    .values(
                        calls_used=CredentialModel.calls_used + calls,
                        window_reset_at=func.coalesce(
                            CredentialModel.window_reset_at,
                            literal(now + self._window, UTCDateTime()),
                        ),
                        last_used_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    row = session.get(
                        CredentialModel, credential_id, populate_existing=True
                    )
                    return _lease(row, reserved=calls)
                logger.debug("credential_reservation_lost", credential_id=credential_id)
        logger.warning("credential_pool_exhausted", account_group=account_group)
        return None

    def has_capacity(self, account_group: str) -> bool:
        """True when some credential in the group could take one more call now."""
        now = self._clock()
        with self._session_factory() as session:
            self._reset_expired(session, now)
            return (
                session.scalar(
                    select(func.count(CredentialModel.id)).where(*self._eligible(account_group, 1))
                )
                or 0
            ) > 0

    def release(
        self, credential_id: int, calls_consumed: int = 1, calls_reserved: int = 0
    ) -> None:
        """Settle usage on a credential, starting its window if none is open.

        ``calls_reserved`` is what ``acquire`` already counted; only the
        difference is applied, so an unused reservation is refunded. The counter
        stays between zero and the credential's limit.
        """
        now = self._clock()
        delta = calls_consumed - calls_reserved
        new_used = CredentialModel.calls_used + delta
        with self._session_factory() as session:
            self._reset_expired(session, now, credential_id)
            result = session.execute(
                update(CredentialModel)
                .where(CredentialModel.id == credential_id)
                .values(
                    calls_used=case(
                        (new_used > CredentialModel.calls_limit, CredentialModel.calls_limit),
                        (new_used < 0, 0),
                        else_=new_used,
                    ),
                    window_reset_at=func.coalesce(
                        CredentialModel.window_reset_at,
                        literal(now + self._window, UTCDateTime()),
                    ),
                    last_used_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise CredentialNotFoundError(f"Credential {credential_id} not found")
        if delta < 0:
            logger.debug("credential_calls_refunded", credential_id=credential_id, calls=-delta)

    def mark_exhausted(self, credential_id: int) -> None:
        """Max out a credential's window after the platform rate-limited it."""
        now = self._clock()
        with self._session_factory() as session:
            result = session.execute(
                update(CredentialModel)
                .where(CredentialModel.id == credential_id)
                .values(
                    calls_used=CredentialModel.calls_limit,
                    window_reset_at=func.coalesce(
                        CredentialModel.window_reset_at,
                        literal(now + self._window, UTCDateTime()),
                    ),
                    last_used_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise CredentialNotFoundError(f"Credential {credential_id} not found")
        logger.warning("credential_marked_exhausted", credential_id=credential_id)

    def set_active(self, credential_id: int, active: bool, reason: str | None = None) -> None:
        with self._session_factory() as session:
            result = session.execute(
                update(CredentialModel)
                .where(CredentialModel.id == credential_id)
                .values(active=active, deactivated_reason=None if active else reason)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise CredentialNotFoundError(f"Credential {credential_id} not found")
        logger.info(
            "credential_active_changed", credential_id=credential_id, active=active, reason=reason
        )

    def deactivate(self, credential_id: int, reason: str = "invalid credential") -> None:
        self.set_active(credential_id, False, reason)

    def activate(self, credential_id: int) -> None:
        self.set_active(credential_id, True)

    def soonest_reset(self, account_group: str) -> datetime | None:
        """Earliest window reset among the group's active credentials."""
        with self._session_factory() as session:
            return session.scalar(
                select(func.min(CredentialModel.window_reset_at)).where(
                    CredentialModel.account_group == account_group,
                    CredentialModel.active.is_(True),
                    CredentialModel.window_reset_at.is_not(None),
                )
            )

    # ------------------------------------------------------------------
    # Token storage
    # ------------------------------------------------------------------

    def add_credential(
        self,
        name: str,
        token: str,
        account_group: str | None = None,
        kind: CredentialKind = CredentialKind.SYSTEM_USER,
        calls_limit: int | None = None,
        external_id: str | None = None,
    ) -> int:
        """Store a new credential with its token encrypted. Returns its id."""
        with self._session_factory() as session:
            row = CredentialModel(
                name=name,
                kind=str(kind),
                external_id=external_id,
                encrypted_token=encrypt_token(token),
                account_group=account_group or settings.default_account_group,
                calls_used=0,
                calls_limit=calls_limit or settings.default_calls_limit,
                active=True,
            )
            session.add(row)
            session.flush()
            credential_id = row.id
        logger.info(
            "credential_added",
            credential_id=credential_id,
            kind=str(kind),
            account_group=account_group or settings.default_account_group,
        )
        return credential_id

    def get_token(self, credential_id: int) -> str:
        with self._session_factory() as session:
            encrypted = session.scalar(
                select(CredentialModel.encrypted_token).where(CredentialModel.id == credential_id)
            )
        if encrypted is None:
            raise CredentialNotFoundError(f"Credential {credential_id} not found")
        return decrypt_token(encrypted)

    def update_token(self, credential_id: int, token: str) -> None:
        """Replace a credential's token and reactivate it."""
        with self._session_factory() as session:
            result = session.execute(
                update(CredentialModel)
                .where(CredentialModel.id == credential_id)
                .values(encrypted_token=encrypt_token(token), active=True, deactivated_reason=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise CredentialNotFoundError(f"Credential {credential_id} not found")

    def delete_credential(self, credential_id: int) -> None:
        """Delete a credential unless its group still serves in-flight jobs."""
        with self._session_factory() as session:
            row = session.get(CredentialModel, credential_id)
            if row is None:
                raise CredentialNotFoundError(f"Credential {credential_id} not found")
            in_flight = session.scalar(
                select(func.count(CreationJobModel.id)).where(
                    CreationJobModel.account_group == row.account_group,
                    CreationJobModel.status.in_([JobStatus.PENDING, JobStatus.IN_PROGRESS]),
                )
            )
            if in_flight:
                raise CredentialInUseError(
                    f"Credential {credential_id} serves {in_flight} in-flight job(s)"
                )
            session.delete(row)
        logger.info("credential_deleted", credential_id=credential_id)

    # ------------------------------------------------------------------
    # Account groups
    # ------------------------------------------------------------------

    def resolve_account_group(self, target_account: str) -> str:
        """Credential group for an ad account, falling back to the default group."""
        with self._session_factory() as session:
            group = session.scalar(
                select(InternalAccountModel.account_group).where(
                    InternalAccountModel.target_account == target_account,
                    InternalAccountModel.is_active.is_(True),
                )
            )
        return group or settings.default_account_group

    def register_account(
        self, target_account: str, account_group: str, name: str | None = None
    ) -> None:
        with self._session_factory() as session:
            row = session.scalars(
                select(InternalAccountModel).where(
                    InternalAccountModel.target_account == target_account
                )
            ).first()
            if row is None:
                session.add(
                    InternalAccountModel(
                        target_account=target_account, account_group=account_group, name=name
                    )
                )
            else:
                row.account_group = account_group
                row.name = name or row.name
                row.is_active = True

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def usage_snapshot(self, account_group: str | None = None) -> list[dict[str, Any]]:
        """Per-credential usage rows, ordered by id."""
        stmt = select(CredentialModel).order_by(CredentialModel.id)
        if account_group is not None:
            stmt = stmt.where(CredentialModel.account_group == account_group)
        with self._session_factory() as session:
            return [
                {
                    "id": row.id,
                    "name": row.name,
                    "kind": row.kind,
                    "account_group": row.account_group,
                    "active": row.active,
                    "calls_used": row.calls_used,
                    "calls_limit": row.calls_limit,
                    "usage_percentage": round(row.usage_percentage * 100, 1),
                    "window_reset_at": row.window_reset_at,
                    "deactivated_reason": row.deactivated_reason,
                }
                for row in session.scalars(stmt)
            ]

    def summary(self, account_group: str | None = None) -> dict[str, Any]:
        """Capacity overview of the pool."""
        now = self._clock()
        rows = self.usage_snapshot(account_group)
        active = [row for row in rows if row["active"]]
        # Windows that already expired count as free even before the next sweep
        available = [
            row
            for row in active
            if row["calls_used"] < row["calls_limit"]
            or (row["window_reset_at"] is not None and row["window_reset_at"] <= now)
        ]
        resets = [
            row["window_reset_at"]
            for row in active
            if row["window_reset_at"] is not None and row["window_reset_at"] > now
        ]
        next_reset = min(resets) if resets else None
        total_capacity = sum(row["calls_limit"] for row in active)
        total_used = sum(row["calls_used"] for row in active)
        return {
            "total_credentials": len(rows),
            "active_credentials": len(active),
            "available_credentials": len(available),
            "exhausted_credentials": len(active) - len(available),
            "total_capacity": total_capacity,
            "total_used": total_used,
            "usage_percentage": round(total_used / total_capacity * 100, 1)
            if total_capacity
            else 0.0,
            "next_reset_at": next_reset,
            "minutes_until_reset": math.ceil((next_reset - now).total_seconds() / 60)
            if next_reset
            else None,
        }
