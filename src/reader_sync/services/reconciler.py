# ABOUTME: Merges fetched articles into local storage and pushes local state changes upstream.
# ABOUTME: Deduplicates on canonical URL and resolves read/starred flags last-write-wins.

from collections import defaultdict
from datetime import datetime, timedelta
from itertools import batched
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reader_sync.config import Settings, get_settings
from reader_sync.db.models import Article, Feed, PendingStateChange, utc_now
from reader_sync.db.session import get_session_factory
from reader_sync.errors import StorageWriteError, UpstreamSubmitError
from reader_sync.models import FlushResult, QueueStats, RemoteArticle, StateAction
from reader_sync.services.extractor import extract_content
from reader_sync.services.upstream import UpstreamClient

log = structlog.get_logger()

TRACKING_PARAMS = {"fbclid", "gclid", "mc_cid", "mc_eid", "ref_src"}
DEFAULT_PORTS = {"http": 80, "https": 443}


def canonical_url(url: str) -> str:
    """Normalize an article URL into its deduplication key."""
    url = url.strip()
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return url

    scheme = parts.scheme.lower()
    try:
        host = (parts.hostname or "").lower()
        port = parts.port
    except ValueError:
        host, port = parts.netloc.lower(), None
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        host = f"{host}:{port}"

    query = urlencode(
        sorted(
            (k, v)
            for k, v in parse_qsl(parts.query, keep_blank_values=True)
            if not k.lower().startswith("utm_") and k.lower() not in TRACKING_PARAMS
        )
    )
    return urlunsplit((scheme, host, parts.path or "/", query, ""))


def resolve_flag(
    local_change_at: datetime | None, local_value: bool, remote_at: datetime, remote_value: bool
) -> tuple[bool, bool]:
    """Last-write-wins for one flag. Returns (value, local_won); ties go to remote."""
    if local_change_at is not None and local_change_at > remote_at:
        return local_value, True
    return remote_value, False


class Reconciler:
    """Writes remote articles into the store and manages the pending-change queue."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        client: UpstreamClient | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.client = client
        self.conflicts = 0
        self.created = 0
        self.updated = 0
        self._feed_ids: dict[str, int | None] = {}

    async def _resolve_feed(self, session: AsyncSession, upstream_feed_id: str) -> int | None:
        if upstream_feed_id not in self._feed_ids:
            result = await session.execute(
                select(Feed.id).where(Feed.upstream_id == upstream_feed_id)
            )
            self._feed_ids[upstream_feed_id] = result.scalar_one_or_none()
        return self._feed_ids[upstream_feed_id]

    @staticmethod
    async def _find(session: AsyncSession, url: str) -> Article | None:
        result = await session.execute(select(Article).where(Article.url == url))
        return result.scalar_one_or_none()

    async def upsert_article(self, remote: RemoteArticle) -> Article:
        """Insert or merge one remote article, keyed by canonical URL."""
        url = canonical_url(remote.url)
        try:
            async with self.session_factory() as session:
                feed_id = await self._resolve_feed(session, remote.feed_id)
                article = await self._find(session, url)
                if article is None:
                    article = await self._try_insert(session, remote, url, feed_id)
                    if article is not None:
                        self.created += 1
                        return article
                    # Lost an insert race; the other writer's row is merged below
                    article = await self._find(session, url)
                    if article is None:
                        raise StorageWriteError("Article vanished after insert conflict", url=url)

                await self._merge(session, article, remote, feed_id)
                await session.commit()
                self.updated += 1
                return article
        except SQLAlchemyError as e:
            log.error("article_write_failed", url=url, error=str(e))
            raise StorageWriteError(f"Failed to store {url}: {e}", url=url) from e

    async def _try_insert(
        self, session: AsyncSession, remote: RemoteArticle, url: str, feed_id: int | None
    ) -> Article | None:
        full_content = None
        if self.settings.extract_full_content:
            full_content = await extract_content(remote.url, self.settings)

        article = Article(
            url=url,
            upstream_id=remote.upstream_id,
            feed_id=feed_id,
            title=remote.title,
            author=remote.author,
            content=remote.content,
            full_content=full_content,
            published_at=remote.published_at,
            is_read=remote.is_read,
            is_starred=remote.is_starred,
            last_modified=remote.last_modified,
            fetched_at=utc_now(),
        )
        session.add(article)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            log.info("article_insert_conflict", url=url)
            return None
        log.debug("article_created", url=url, feed_id=remote.feed_id)
        return article

    async def _merge(
        self, session: AsyncSession, article: Article, remote: RemoteArticle, feed_id: int | None
    ) -> None:
        # Content: only non-empty remote values overwrite
        if remote.title and remote.title != "Untitled":
            article.title = remote.title
        if remote.author:
            article.author = remote.author
        if remote.content:
            article.content = remote.content
        if remote.published_at:
            article.published_at = remote.published_at
        if remote.upstream_id:
            article.upstream_id = remote.upstream_id
        if feed_id is not None:
            article.feed_id = feed_id

        result = await session.execute(
            select(PendingStateChange)
            .where(PendingStateChange.article_id == article.id)
            .where(PendingStateChange.attempts < self.settings.sync_max_retries)
            .order_by(PendingStateChange.changed_at, PendingStateChange.id)
        )
        pending: dict[str, list[PendingStateChange]] = defaultdict(list)
        for change in result.scalars():
            pending[StateAction(change.action).flag].append(change)

        last_modified = article.last_modified
        for flag, remote_value in (("is_read", remote.is_read), ("is_starred", remote.is_starred)):
            changes = pending.get(flag, [])
            latest = changes[-1] if changes else None
            local_value = StateAction(latest.action).value_set if latest else getattr(article, flag)

            value, local_won = resolve_flag(
                latest.changed_at if latest else None,
                local_value,
                remote.last_modified,
                remote_value,
            )
            if latest is not None and local_value != remote_value:
                self.conflicts += 1
                log.info(
                    "sync_conflict",
                    url=article.url,
                    flag=flag,
                    local=local_value,
                    remote=remote_value,
                    resolution="local" if local_won else "remote",
                )

            if local_won:
                last_modified = max(last_modified, latest.changed_at)
            else:
                for change in changes:
                    await session.delete(change)
                if getattr(article, flag) != value:
                    last_modified = max(last_modified, remote.last_modified)
            setattr(article, flag, value)

        article.last_modified = last_modified

    async def queue_state_change(
        self, article_id: int, action: StateAction
    ) -> PendingStateChange | None:
        """Apply a user read/star action locally and queue it for upstream."""
        async with self.session_factory() as session:
            article = await session.get(Article, article_id)
            if article is None:
                return None

            now = utc_now()
            setattr(article, action.flag, action.value_set)
            article.last_modified = now
            change = PendingStateChange(article_id=article_id, action=action.value, changed_at=now)
            session.add(change)
            await session.commit()

        log.info("state_change_queued", article_id=article_id, action=action.value)
        return change

    def _retry_at(self, change: PendingStateChange) -> datetime | None:
        """Earliest time a failed change may be resent; None if it never failed."""
        if change.attempts == 0 or change.last_attempt_at is None:
            return None
        backoff = timedelta(minutes=self.settings.sync_retry_backoff_minutes)
        return change.last_attempt_at + backoff * 2 ** (change.attempts - 1)

    async def flush_pending_state_changes(self) -> FlushResult:
        """Send queued changes upstream, one edit-tag call per action batch.

        Failed batches stay queued with their attempt count bumped and are
        skipped until their backoff (``sync_retry_backoff_minutes``, doubled
        per attempt) has passed. QuotaExceeded propagates to the caller.
        """
        if self.client is None:
            raise RuntimeError("Reconciler has no upstream client to flush with")

        result = FlushResult()
        async with self.session_factory() as session:
            rows = await session.execute(
                select(PendingStateChange, Article.upstream_id)
                .join(Article, PendingStateChange.article_id == Article.id)
                .where(PendingStateChange.attempts < self.settings.sync_max_retries)
                .order_by(PendingStateChange.changed_at, PendingStateChange.id)
            )

            # Later changes to the same (article, flag) replace earlier ones
            latest: dict[tuple[int, str], tuple[PendingStateChange, str | None]] = {}
            superseded: dict[tuple[int, str], list[PendingStateChange]] = defaultdict(list)
            for change, upstream_id in rows.all():
                key = (change.article_id, StateAction(change.action).flag)
                if key in latest:
                    superseded[key].append(latest[key][0])
                latest[key] = (change, upstream_id)

            groups: dict[StateAction, list[tuple[PendingStateChange, str]]] = defaultdict(list)
            now = utc_now()
            for key, (change, upstream_id) in latest.items():
                if not upstream_id:
                    log.warning("state_change_without_upstream_id", article_id=change.article_id)
                    await session.delete(change)
                    for old in superseded.pop(key, []):
                        await session.delete(old)
                    continue
                retry_at = self._retry_at(change)
                if retry_at is not None and retry_at > now:
                    log.debug(
                        "state_change_backing_off",
                        article_id=change.article_id,
                        attempts=change.attempts,
                        retry_at=retry_at.isoformat(),
                    )
                    continue
                groups[StateAction(change.action)].append((change, upstream_id))
            await session.commit()

            if not groups:
                log.debug("no_pending_state_changes")
                return result

            for action, items in groups.items():
                for chunk in batched(items, self.settings.flush_batch_size):
                    try:
                        await self.client.edit_tag([uid for _, uid in chunk], action)
                    except UpstreamSubmitError as e:
                        now = utc_now()
                        for change, _ in chunk:
                            change.attempts += 1
                            change.last_attempt_at = now
                            change.last_error = str(e)
                        await session.commit()
                        result.failed += len(chunk)
                        result.errors.append(f"{action.value}: {e}")
                        log.error(
                            "state_flush_failed", action=action.value, count=len(chunk), error=str(e)
                        )
                        continue

                    for change, _ in chunk:
                        key = (change.article_id, action.flag)
                        for old in superseded.pop(key, []):
                            await session.delete(old)
                        await session.delete(change)
                    await session.commit()
                    result.submitted += len(chunk)

        log.info("state_flush_complete", submitted=result.submitted, failed=result.failed)
        return result

    async def clear_failed_changes(self) -> int:
        """Drop queued changes that used up their retries."""
        async with self.session_factory() as session:
            result = await session.execute(
                delete(PendingStateChange).where(
                    PendingStateChange.attempts >= self.settings.sync_max_retries
                )
            )
            await session.commit()
        log.info("failed_state_changes_cleared", count=result.rowcount)
        return result.rowcount

    async def queue_stats(self) -> QueueStats:
        max_retries = self.settings.sync_max_retries
        async with self.session_factory() as session:
            pending = await session.scalar(
                select(func.count())
                .select_from(PendingStateChange)
                .where(PendingStateChange.attempts < max_retries)
            )
            failed = await session.scalar(
                select(func.count())
                .select_from(PendingStateChange)
                .where(PendingStateChange.attempts >= max_retries)
            )
            oldest = await session.scalar(select(func.min(PendingStateChange.changed_at)))
        return QueueStats(pending=pending or 0, failed=failed or 0, oldest_change_at=oldest)
