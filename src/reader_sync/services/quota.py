# ABOUTME: Durable daily quota tracker for upstream API calls.
# ABOUTME: Consumes budget with a conditional UPDATE so concurrent runs cannot overspend.

from collections.abc import Mapping
from datetime import date, datetime
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reader_sync.config import Settings, get_settings
from reader_sync.db.models import QuotaState, utc_now
from reader_sync.db.session import get_session_factory
from reader_sync.errors import QuotaExceeded
from reader_sync.models import QuotaSnapshot

log = structlog.get_logger()

RATE_LIMIT_HEADERS = {
    "zone1_usage": "X-Reader-Zone1-Usage",
    "zone1_limit": "X-Reader-Zone1-Limit",
    "zone2_usage": "X-Reader-Zone2-Usage",
    "zone2_limit": "X-Reader-Zone2-Limit",
    "reset_after": "X-Reader-Limits-Reset-After",
}


def _parse_header_int(value: str) -> int | None:
    try:
        return int(value.replace(",", "").split(".", 1)[0])
    except ValueError:
        return None


class QuotaTracker:
    """Gate for every upstream call against a fixed per-day budget.

    State lives in one QuotaState row per (service, day). The day boundary
    follows ``quota_reset_timezone``. Earlier days are kept as history.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.service = self.settings.upstream_service
        self.limit = self.settings.daily_quota_limit
        self._tz = ZoneInfo(self.settings.quota_reset_timezone)

    def today(self) -> date:
        """Current calendar day in the configured reset timezone."""
        return datetime.now(self._tz).date()

    async def _ensure_row(self, session: AsyncSession, day: date) -> None:
        dialect = session.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = (
            insert(QuotaState)
            .values(service=self.service, day=day, calls_used=0, calls_limit=self.limit)
            .on_conflict_do_nothing(index_elements=["service", "day"])
        )
        await session.execute(stmt)

    async def _load(self, session: AsyncSession, day: date) -> QuotaState | None:
        result = await session.execute(
            select(QuotaState).where(QuotaState.service == self.service, QuotaState.day == day)
        )
        return result.scalar_one_or_none()

    def _to_snapshot(self, row: QuotaState | None, day: date) -> QuotaSnapshot:
        if row is None:
            return QuotaSnapshot(day=day, calls_used=0, calls_limit=self.limit)
        return QuotaSnapshot(day=day, calls_used=row.calls_used, calls_limit=row.calls_limit)

    async def snapshot(self) -> QuotaSnapshot:
        day = self.today()
        async with self.session_factory() as session:
            return self._to_snapshot(await self._load(session, day), day)

    async def can_consume(self, n: int = 1) -> bool:
        """Whether n more calls fit in today's budget. Read-only."""
        snap = await self.snapshot()
        return snap.calls_used + n <= snap.calls_limit

    async def consume(self, n: int = 1) -> QuotaSnapshot:
        """Atomically take n units, or raise QuotaExceeded leaving state unchanged."""
        if n < 1:
            raise ValueError("n must be >= 1")

        day = self.today()
        async with self.session_factory() as session:
            await self._ensure_row(session, day)
            result = await session.execute(
                update(QuotaState)
                .where(
                    QuotaState.service == self.service,
                    QuotaState.day == day,
                    QuotaState.calls_used + n <= QuotaState.calls_limit,
                )
                .values(calls_used=QuotaState.calls_used + n, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            consumed = result.rowcount == 1
            await session.commit()
            snap = self._to_snapshot(await self._load(session, day), day)

        if not consumed:
            log.error(
                "quota_exceeded",
                service=self.service,
                requested=n,
                used=snap.calls_used,
                limit=snap.calls_limit,
            )
            raise QuotaExceeded(n, snap.calls_used, snap.calls_limit)

        if snap.remaining <= snap.calls_limit * 0.05:
            log.error("quota_critical", remaining=snap.remaining, limit=snap.calls_limit)
        elif snap.remaining <= snap.calls_limit * 0.2:
            log.warning("quota_low", remaining=snap.remaining, limit=snap.calls_limit)
        return snap

    async def reset(self) -> QuotaSnapshot:
        """Start today's counter at zero. Idempotent within a day.

        Also applies the configured ``daily_quota_limit`` to today's row, so a
        changed limit takes effect from the next run rather than the next day.
        """
        day = self.today()
        async with self.session_factory() as session:
            await self._ensure_row(session, day)
            await session.execute(
                update(QuotaState)
                .where(
                    QuotaState.service == self.service,
                    QuotaState.day == day,
                    QuotaState.calls_limit != self.limit,
                )
                .values(calls_limit=self.limit, updated_at=utc_now())
            )
            await session.commit()
            snap = self._to_snapshot(await self._load(session, day), day)
        log.debug("quota_reset", day=str(day), used=snap.calls_used)
        return snap

    async def record_rate_limit_headers(self, headers: Mapping[str, str]) -> None:
        """Store upstream rate-limit headers on today's row. Never raises."""
        values: dict[str, int] = {}
        for column, header in RATE_LIMIT_HEADERS.items():
            raw = headers.get(header)
            if raw is None:
                continue
            parsed = _parse_header_int(raw)
            if parsed is not None:
                values[column] = parsed
        if not values:
            return

        day = self.today()
        try:
            async with self.session_factory() as session:
                await self._ensure_row(session, day)
                await session.execute(
                    update(QuotaState)
                    .where(QuotaState.service == self.service, QuotaState.day == day)
                    .values(**values, updated_at=utc_now())
                )
                await session.commit()
            log.debug("rate_limit_headers_recorded", **values)
        except SQLAlchemyError as e:
            log.error("rate_limit_headers_error", error=str(e))
