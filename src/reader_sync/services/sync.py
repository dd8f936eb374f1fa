# ABOUTME: Sync run orchestration: metadata, round-robin fetch, reconcile, flush, prune.
# ABOUTME: Records every attempt as a SyncRun and exposes trigger/status/cancel entry points.

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime

import httpx
import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from reader_sync.config import Settings, get_settings
from reader_sync.db.models import Feed, Folder, SyncRun, Tag, utc_now
from reader_sync.db.session import get_session_factory
from reader_sync.errors import (
    PruneError,
    QuotaExceeded,
    StorageWriteError,
    SyncCancelled,
    UpstreamFetchError,
)
from reader_sync.models import RemoteSubscription, RemoteTag, SyncRunView, SyncStatus, SyncTrigger
from reader_sync.services.pruner import RetentionPruner
from reader_sync.services.quota import QuotaTracker
from reader_sync.services.reconciler import Reconciler
from reader_sync.services.scheduler import FeedCursor, FetchScheduler
from reader_sync.services.upstream import UpstreamClient

log = structlog.get_logger()

_background_tasks: set[asyncio.Task] = set()


@dataclass
class RunOutcome:
    fetched: int = 0
    committed: int = 0
    pruned: int = 0
    flushed: int = 0
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False

    def status(self) -> SyncStatus:
        if self.cancelled:
            return SyncStatus.PARTIAL
        if not self.errors:
            return SyncStatus.COMPLETED
        return SyncStatus.PARTIAL if self.committed > 0 else SyncStatus.FAILED


def _latest(*stamps: datetime | None) -> datetime | None:
    present = [s for s in stamps if s is not None]
    return max(present) if present else None


def _to_view(run: SyncRun) -> SyncRunView:
    return SyncRunView(
        id=run.id,
        trigger=run.trigger,
        status=run.status,
        started_at=run.started_at,
        finished_at=run.finished_at,
        articles_fetched=run.articles_fetched,
        articles_committed=run.articles_committed,
        articles_pruned=run.articles_pruned,
        changes_flushed=run.changes_flushed,
        conflicts=run.conflicts,
        api_calls=run.api_calls,
        errors=list(run.errors or []),
    )


class SyncService:
    """Runs the sync pipeline against one store and one upstream."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.http_client = http_client

    async def start(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> str:
        """Create a pending SyncRun and return its id."""
        sync_id = str(uuid.uuid4())
        async with self.session_factory() as session:
            session.add(
                SyncRun(id=sync_id, trigger=trigger.value, status=SyncStatus.PENDING.value, errors=[])
            )
            await session.commit()
        log.info("sync_created", sync_id=sync_id, trigger=trigger.value)
        return sync_id

    async def trigger(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> str:
        """Start a run in the background and return its id for polling."""
        sync_id = await self.start(trigger)
        task = asyncio.create_task(self.run(sync_id))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        return sync_id

    async def status(self, sync_id: str) -> SyncRunView | None:
        async with self.session_factory() as session:
            run = await session.get(SyncRun, sync_id)
            return _to_view(run) if run else None

    async def cancel(self, sync_id: str) -> bool:
        """Request cancellation; the run stops before its next upstream call."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(SyncRun)
                .where(
                    SyncRun.id == sync_id,
                    SyncRun.status.in_([SyncStatus.PENDING.value, SyncStatus.RUNNING.value]),
                )
                .values(cancel_requested=True)
            )
            await session.commit()
        requested = result.rowcount == 1
        log.info("sync_cancel_requested", sync_id=sync_id, accepted=requested)
        return requested

    async def _check_cancelled(self, sync_id: str) -> None:
        async with self.session_factory() as session:
            flag = await session.scalar(
                select(SyncRun.cancel_requested).where(SyncRun.id == sync_id)
            )
        if flag:
            raise SyncCancelled(f"Sync {sync_id} cancelled")

    async def _set_status(self, sync_id: str, status: SyncStatus) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(SyncRun).where(SyncRun.id == sync_id).values(status=status.value)
            )
            await session.commit()

    async def run(self, sync_id: str) -> SyncRunView | None:
        """Execute one sync run end to end. Never raises; the outcome is on the SyncRun.

        Returns None only when the store is unreachable at the very end.
        """
        outcome = RunOutcome()
        api_calls = 0
        conflicts = 0
        log.info("sync_started", sync_id=sync_id)

        try:
            await self._set_status(sync_id, SyncStatus.RUNNING)
            quota = QuotaTracker(self.session_factory, self.settings)
            await quota.reset()

            async def cancel_check() -> None:
                await self._check_cancelled(sync_id)

            client = UpstreamClient(
                quota, self.settings, http_client=self.http_client, cancel_check=cancel_check
            )
            reconciler = Reconciler(self.session_factory, client, self.settings)
            try:
                async with client:
                    await self._pipeline(client, reconciler, outcome)
            finally:
                api_calls = client.calls_made
                conflicts = reconciler.conflicts
        except QuotaExceeded as e:
            outcome.errors.append(str(e))
        except SyncCancelled:
            outcome.cancelled = True
            outcome.errors.append("Sync cancelled")
            log.warning("sync_cancelled", sync_id=sync_id)
        except UpstreamFetchError as e:
            outcome.errors.append(str(e))
        except SQLAlchemyError as e:
            log.error("sync_storage_unavailable", sync_id=sync_id, error=str(e))
            outcome.errors.append(f"Storage unavailable: {e}")
        except Exception as e:
            log.exception("sync_unexpected_error", sync_id=sync_id)
            outcome.errors.append(f"Unexpected error: {e}")

        outcome.pruned = await self._prune()
        try:
            return await self._finish(sync_id, outcome, api_calls, conflicts)
        except SQLAlchemyError as e:
            log.error("sync_finalize_failed", sync_id=sync_id, error=str(e))
            return None

    async def _pipeline(
        self, client: UpstreamClient, reconciler: Reconciler, outcome: RunOutcome
    ) -> None:
        cursors = await self.sync_metadata(client)

        scheduler = FetchScheduler(
            client,
            global_cap=self.settings.global_article_cap_per_sync,
            per_feed_cap=self.settings.per_feed_article_cap,
            batch_size=self.settings.fetch_batch_size,
            concurrency=self.settings.fetch_concurrency,
        )
        try:
            async for remote in scheduler.stream(cursors):
                outcome.fetched += 1
                try:
                    await reconciler.upsert_article(remote)
                    outcome.committed += 1
                except StorageWriteError as e:
                    outcome.errors.append(str(e))
        finally:
            outcome.errors.extend(scheduler.errors)
            await self._record_feed_progress(scheduler.cursors)

        flush = await reconciler.flush_pending_state_changes()
        outcome.flushed = flush.submitted
        outcome.errors.extend(flush.errors)

    async def sync_metadata(self, client: UpstreamClient) -> list[FeedCursor]:
        """Pull subscriptions, folders/tags and unread counts; return fetch cursors."""
        subscriptions = await client.list_subscriptions()
        remote_tags = await client.list_tags()
        unread = await client.unread_counts()

        async with self.session_factory() as session:
            folders, tags = await self._upsert_groupings(session, subscriptions, remote_tags)

            result = await session.execute(
                select(Feed).options(selectinload(Feed.folders), selectinload(Feed.tags))
            )
            feeds = {feed.upstream_id: feed for feed in result.scalars()}
            for sub in subscriptions:
                feed = feeds.get(sub.id)
                if feed is None:
                    feed = Feed(upstream_id=sub.id, title=sub.title, folders=[], tags=[])
                    session.add(feed)
                    feeds[sub.id] = feed
                    log.info("feed_discovered", feed_id=sub.id, title=sub.title)
                feed.title = sub.title
                feed.url = sub.url
                feed.html_url = sub.html_url
                feed.unread_count = unread.get(sub.id, 0)
                feed.folders = [folders[c.id] for c in sub.categories if c.id in folders]
                feed.tags = [tags[c.id] for c in sub.categories if c.id in tags]
            await session.commit()

            subscribed = [feeds[sub.id] for sub in subscriptions]
            return [
                FeedCursor(
                    upstream_id=feed.upstream_id,
                    feed_id=feed.id,
                    last_fetched_at=feed.last_fetched_at,
                    newer_than=feed.newest_item_at,
                    continuation=feed.fetch_continuation,
                )
                for feed in subscribed
            ]

    async def _upsert_groupings(
        self,
        session: AsyncSession,
        subscriptions: list[RemoteSubscription],
        remote_tags: list[RemoteTag],
    ) -> tuple[dict[str, Folder], dict[str, Tag]]:
        tag_ids = {t.id for t in remote_tags if t.is_label and t.type == "tag"}
        folder_names: dict[str, str] = {
            t.id: t.name for t in remote_tags if t.is_label and t.id not in tag_ids
        }
        for sub in subscriptions:
            for category in sub.categories:
                if category.id not in tag_ids:
                    folder_names[category.id] = category.label or category.id.rsplit("/", 1)[-1]
        tag_names = {t.id: t.name for t in remote_tags if t.id in tag_ids}

        existing_folders = await session.execute(select(Folder))
        folders = {f.upstream_id: f for f in existing_folders.scalars()}
        for upstream_id, name in folder_names.items():
            folder = folders.get(upstream_id)
            if folder is None:
                folder = Folder(upstream_id=upstream_id, name=name)
                session.add(folder)
                folders[upstream_id] = folder
            folder.name = name

        existing_tags = await session.execute(select(Tag))
        tags = {t.upstream_id: t for t in existing_tags.scalars()}
        for upstream_id, name in tag_names.items():
            tag = tags.get(upstream_id)
            if tag is None:
                tag = Tag(upstream_id=upstream_id, name=name)
                session.add(tag)
                tags[upstream_id] = tag
            tag.name = name

        return folders, tags

    async def _record_feed_progress(self, cursors: list[FeedCursor]) -> None:
        """Persist each feed's cursor after the fetch phase.

        A feed stopped by a cap keeps its ``ot`` cursor and saves the
        continuation, so the next run resumes the same backlog. The cursor
        only advances once the backlog is drained, to the newest item seen
        anywhere in it.
        """
        now = utc_now()
        async with self.session_factory() as session:
            for cursor in cursors:
                if cursor.failed or cursor.feed_id is None:
                    continue
                if not cursor.exhausted and cursor.fetched == 0:
                    continue
                feed = await session.get(Feed, cursor.feed_id)
                if feed is None:
                    continue
                feed.last_fetched_at = now
                newest = _latest(feed.backlog_newest_at, cursor.newest_seen)
                if cursor.exhausted:
                    feed.newest_item_at = _latest(feed.newest_item_at, newest)
                    feed.fetch_continuation = None
                    feed.backlog_newest_at = None
                else:
                    feed.fetch_continuation = cursor.continuation
                    feed.backlog_newest_at = newest
                    log.debug(
                        "feed_backlog_saved", feed_id=cursor.upstream_id, fetched=cursor.fetched
                    )
            await session.commit()

    async def _prune(self) -> int:
        try:
            return await RetentionPruner(self.session_factory, self.settings).prune()
        except PruneError as e:
            log.warning("prune_deferred", error=str(e))
            return 0

    async def _finish(
        self, sync_id: str, outcome: RunOutcome, api_calls: int, conflicts: int
    ) -> SyncRunView:
        status = outcome.status()
        async with self.session_factory() as session:
            run = await session.get(SyncRun, sync_id)
            run.status = status.value
            run.finished_at = utc_now()
            run.articles_fetched = outcome.fetched
            run.articles_committed = outcome.committed
            run.articles_pruned = outcome.pruned
            run.changes_flushed = outcome.flushed
            run.conflicts = conflicts
            run.api_calls = api_calls
            run.errors = outcome.errors
            await session.commit()
            view = _to_view(run)

        log.info(
            "sync_finished",
            sync_id=sync_id,
            status=status.value,
            fetched=outcome.fetched,
            committed=outcome.committed,
            pruned=outcome.pruned,
            api_calls=api_calls,
            errors=len(outcome.errors),
        )
        return view


async def trigger_sync(trigger: SyncTrigger = SyncTrigger.MANUAL) -> str:
    """Start a background sync run with default wiring."""
    return await SyncService().trigger(trigger)


async def get_sync_status(sync_id: str) -> SyncRunView | None:
    return await SyncService().status(sync_id)


async def cancel_sync(sync_id: str) -> bool:
    return await SyncService().cancel(sync_id)


async def run_periodic_sync(interval_minutes: int, service: SyncService | None = None) -> None:
    """Scheduled sync loop used by the web server.

    A store error on one tick is logged and the loop waits for the next one.
    """
    service = service or SyncService()
    while True:
        try:
            sync_id = await service.start(SyncTrigger.SCHEDULED)
            await service.run(sync_id)
        except SQLAlchemyError as e:
            log.error("scheduled_sync_failed", error=str(e))
        await asyncio.sleep(interval_minutes * 60)
