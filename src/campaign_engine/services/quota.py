"""Per (caller, target account) quota windows."""

import json
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campaign_engine.config import settings
from campaign_engine.db.models import QuotaWindowModel
from campaign_engine.db.session import SessionFactory, get_session_context
from campaign_engine.domain.models import QuotaSnapshot
from campaign_engine.logging import get_logger
from campaign_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)


def next_window_reset(observed: datetime, now: datetime, window: timedelta) -> datetime:
    """Advance ``observed`` by whole windows until it lies after ``now``."""
    if observed > now:
        return observed
    elapsed_windows = int((now - observed) / window) + 1
    return observed + elapsed_windows * window


def parse_usage_headers(headers: dict[str, str]) -> tuple[int | None, int | None]:
    """Extract (call_count, seconds_to_regain_access) from platform usage headers.

    The business use case header wins over the app header when both are present.
    """
    business = headers.get("x-business-use-case-usage")
    app = headers.get("x-app-usage")
    try:
        if business:
            usage: dict[str, Any] = json.loads(business)
            entries = next(iter(usage.values()), None)
            if entries:
                entry = entries[0]
                regain_minutes = entry.get("estimated_time_to_regain_access") or 0
                return int(entry.get("call_count", 0)), int(regain_minutes) * 60
        if app:
            usage = json.loads(app)
            return int(usage.get("call_count", 0)), None
    except (ValueError, TypeError, AttributeError, IndexError) as e:
        logger.warning("usage_headers_unparseable", error=str(e))
    return None, None


class QuotaTracker:
    """Counts calls per (caller, target account) against a fixed window."""

    def __init__(
        self,
        session_factory: SessionFactory = get_session_context,
        clock: Clock = utc_now,
        window: timedelta | None = None,
        default_limit: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._window = window or timedelta(seconds=settings.quota_window_seconds)
        self._default_limit = default_limit or settings.default_calls_limit

    def _select(self, caller: str, target_account: str) -> Any:
        return select(QuotaWindowModel).where(
            QuotaWindowModel.caller == caller,
            QuotaWindowModel.target_account == target_account,
        )

    def _ensure_window(self, caller: str, target_account: str, now: datetime) -> None:
        with self._session_factory() as session:
            if session.scalars(self._select(caller, target_account)).first() is not None:
                return
        try:
            with self._session_factory() as session:
                session.add(
                    QuotaWindowModel(
                        caller=caller,
                        target_account=target_account,
                        calls_used=0,
                        calls_limit=self._default_limit,
                        window_reset_at=now + self._window,
                    )
                )
        except IntegrityError:
            # Another actor created the row first
            logger.debug("quota_window_create_raced", caller=caller, target_account=target_account)

    def _rollover(self, session: Session, row: QuotaWindowModel, now: datetime) -> bool:
        """Compare-and-reset an expired window. Only one concurrent caller wins."""
        observed = row.window_reset_at
        if observed > now:
            return False
        result = session.execute(
            update(QuotaWindowModel)
            .where(
                QuotaWindowModel.id == row.id,
                QuotaWindowModel.window_reset_at == observed,
            )
            .values(calls_used=0, window_reset_at=next_window_reset(observed, now, self._window))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(
                "quota_window_rolled_over",
                caller=row.caller,
                target_account=row.target_account,
                previous_reset_at=observed.isoformat(),
            )
        return bool(result.rowcount)

    def _load(self, session: Session, caller: str, target_account: str) -> QuotaWindowModel:
        return session.scalars(
            self._select(caller, target_account).execution_options(populate_existing=True)
        ).one()

    @staticmethod
    def _snapshot(row: QuotaWindowModel) -> QuotaSnapshot:
        return QuotaSnapshot(
            caller=row.caller,
            target_account=row.target_account,
            calls_used=row.calls_used,
            calls_limit=row.calls_limit,
            window_reset_at=row.window_reset_at,
        )

    def get_window(self, caller: str, target_account: str) -> QuotaSnapshot:
        """Current window for the pair, rolled over if it has expired."""
        now = self._clock()
        self._ensure_window(caller, target_account, now)
        with self._session_factory() as session:
            row = self._load(session, caller, target_account)
            if self._rollover(session, row, now):
                row = self._load(session, caller, target_account)
            return self._snapshot(row)

    def record(self, caller: str, target_account: str, calls_consumed: int = 1) -> QuotaSnapshot:
        """Count consumed calls. The counter is clamped at the window's limit."""
        now = self._clock()
        self._ensure_window(caller, target_account, now)
        with self._session_factory() as session:
            row = self._load(session, caller, target_account)
            self._rollover(session, row, now)
            new_used = QuotaWindowModel.calls_used + calls_consumed
            session.execute(
                update(QuotaWindowModel)
                .where(QuotaWindowModel.id == row.id)
                .values(
                    calls_used=case(
                        (new_used > QuotaWindowModel.calls_limit, QuotaWindowModel.calls_limit),
                        else_=new_used,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            snapshot = self._snapshot(self._load(session, caller, target_account))
        logger.debug(
            "quota_recorded",
            caller=caller,
            target_account=target_account,
            calls_used=snapshot.calls_used,
            calls_limit=snapshot.calls_limit,
        )
        return snapshot

    def reserve(self, caller: str, target_account: str, calls: int = 1) -> bool:
        """Count ``calls`` against the window only if they all fit.

        The check and the increment are one conditional UPDATE, so concurrent
        reservations can never take the window past its limit. Returns False
        when the call should be queued instead.
        """
        now = self._clock()
        self._ensure_window(caller, target_account, now)
        with self._session_factory() as session:
            row = self._load(session, caller, target_account)
            self._rollover(session, row, now)
            result = session.execute(
                update(QuotaWindowModel)
                .where(
                    QuotaWindowModel.id == row.id,
                    QuotaWindowModel.calls_used + calls <= QuotaWindowModel.calls_limit,
                )
                .values(calls_used=QuotaWindowModel.calls_used + calls)
                .execution_options(synchronize_session=False)
            )
            reserved = result.rowcount == 1
        if not reserved:
            logger.info("quota_reservation_refused", caller=caller, target_account=target_account)
        return reserved

    def refund(self, caller: str, target_account: str, calls: int = 1) -> None:
        """Hand back reserved calls the platform never consumed."""
        remaining = QuotaWindowModel.calls_used - calls
        with self._session_factory() as session:
            session.execute(
                update(QuotaWindowModel)
                .where(
                    QuotaWindowModel.caller == caller,
                    QuotaWindowModel.target_account == target_account,
                )
                .values(calls_used=case((remaining < 0, 0), else_=remaining))
                .execution_options(synchronize_session=False)
            )

    def window_reset_at(self, caller: str, target_account: str) -> datetime:
        return self.get_window(caller, target_account).window_reset_at

    def set_limit(self, caller: str, target_account: str, calls_limit: int) -> None:
        now = self._clock()
        self._ensure_window(caller, target_account, now)
        with self._session_factory() as session:
            session.execute(
                update(QuotaWindowModel)
                .where(
                    QuotaWindowModel.caller == caller,
                    QuotaWindowModel.target_account == target_account,
                )
                .values(calls_limit=calls_limit)
                .execution_options(synchronize_session=False)
            )

    def sync_from_headers(
        self, caller: str, target_account: str, headers: dict[str, str]
    ) -> QuotaSnapshot | None:
        """Raise the local counter to the usage the platform reports.

        The counter is never lowered within a window, so local bookkeeping only
        errs towards queueing early.
        """
        reported, regain_seconds = parse_usage_headers(headers)
        if reported is None:
            return None
        now = self._clock()
        self._ensure_window(caller, target_account, now)
        with self._session_factory() as session:
            row = self._load(session, caller, target_account)
            self._rollover(session, row, now)
            target = QuotaWindowModel.calls_limit if regain_seconds else reported
            session.execute(
                update(QuotaWindowModel)
                .where(QuotaWindowModel.id == row.id)
                .values(
                    calls_used=case(
                        (QuotaWindowModel.calls_used >= target, QuotaWindowModel.calls_used),
                        (target > QuotaWindowModel.calls_limit, QuotaWindowModel.calls_limit),
                        else_=target,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            return self._snapshot(self._load(session, caller, target_account))
