# ABOUTME: Round-robin fetch scheduler for article streams.
# ABOUTME: Splits a global article cap fairly across feeds, bounded by a per-feed cap.

import asyncio
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from datetime import datetime

import structlog

from reader_sync.errors import QuotaExceeded, SyncCancelled, UpstreamFetchError
from reader_sync.models import RemoteArticle, StreamPage
from reader_sync.services.upstream import UpstreamClient

log = structlog.get_logger()


@dataclass
class FeedCursor:
    """Per-feed fetch state for one sync run."""

    upstream_id: str
    feed_id: int | None = None
    last_fetched_at: datetime | None = None
    newer_than: datetime | None = None
    fetched: int = 0
    continuation: str | None = None
    exhausted: bool = False
    failed: bool = False
    newest_seen: datetime | None = None

    def sort_key(self) -> tuple:
        # Never-fetched feeds first, then stalest
        stamp = self.last_fetched_at.timestamp() if self.last_fetched_at else float("-inf")
        return (stamp, self.feed_id if self.feed_id is not None else 0, self.upstream_id)


def round_quantum(remaining: int, active: int, batch_size: int) -> int:
    """Articles each active feed may request in the next round."""
    if active <= 0 or remaining <= 0:
        return 0
    return max(1, min(batch_size, remaining // active))


class FetchScheduler:
    """Allocates stream requests across feeds in rounds.

    Each round asks every active feed for an equal share of the remaining
    global budget (never more than ``batch_size``). A feed drops out once it
    returns fewer items than requested, runs out of continuation, or reaches
    ``per_feed_cap``. The run stops at ``global_cap`` or when no feed is left.
    """

    def __init__(
        self,
        client: UpstreamClient,
        global_cap: int,
        per_feed_cap: int,
        batch_size: int = 10,
        concurrency: int = 4,
    ):
        if global_cap < 0 or per_feed_cap < 0 or batch_size < 1 or concurrency < 1:
            raise ValueError("caps must be >= 0, batch_size and concurrency >= 1")
        self.client = client
        self.global_cap = global_cap
        self.per_feed_cap = per_feed_cap
        self.batch_size = batch_size
        self._semaphore = asyncio.Semaphore(concurrency)
        self.total = 0
        self.rounds = 0
        self.errors: list[str] = []
        self.cursors: list[FeedCursor] = []

    def _done(self, cursor: FeedCursor) -> bool:
        return cursor.exhausted or cursor.failed or cursor.fetched >= self.per_feed_cap

    async def _fetch(self, cursor: FeedCursor, n: int) -> StreamPage:
        async with self._semaphore:
            return await self.client.stream_contents(
                cursor.upstream_id, n, continuation=cursor.continuation, newer_than=cursor.newer_than
            )

    def _plan_round(self, active: list[FeedCursor]) -> list[tuple[FeedCursor, int]]:
        remaining = self.global_cap - self.total
        quantum = round_quantum(remaining, len(active), self.batch_size)
        plan = []
        for cursor in active:
            n = min(quantum, self.per_feed_cap - cursor.fetched, remaining)
            if n <= 0:
                continue
            plan.append((cursor, n))
            remaining -= n
        return plan

    async def stream(self, cursors: Iterable[FeedCursor]) -> AsyncIterator[RemoteArticle]:
        """Yield remote articles round by round, each feed's items in upstream order."""
        self.cursors = sorted(cursors, key=FeedCursor.sort_key)
        active = [c for c in self.cursors if not self._done(c)]

        while active and self.total < self.global_cap:
            plan = self._plan_round(active)
            if not plan:
                break
            self.rounds += 1
            log.debug("fetch_round", round=self.rounds, feeds=len(plan), total=self.total)

            results = await asyncio.gather(
                *(self._fetch(cursor, n) for cursor, n in plan), return_exceptions=True
            )

            abort: BaseException | None = None
            for (cursor, n), result in zip(plan, results, strict=True):
                if isinstance(result, QuotaExceeded | SyncCancelled):
                    abort = abort or result
                    continue
                if isinstance(result, UpstreamFetchError):
                    cursor.failed = True
                    self.errors.append(f"feed {cursor.upstream_id}: {result}")
                    log.error("feed_fetch_failed", feed_id=cursor.upstream_id, error=str(result))
                    continue
                if isinstance(result, BaseException):
                    raise result

                received = min(result.returned, n)
                cursor.fetched += received
                self.total += received
                cursor.continuation = result.continuation
                if received < n or not result.continuation:
                    cursor.exhausted = True

                for article in result.articles[:n]:
                    if article.published_at and (
                        cursor.newest_seen is None or article.published_at > cursor.newest_seen
                    ):
                        cursor.newest_seen = article.published_at
                    yield article

            if abort is not None:
                log.warning("fetch_aborted", reason=str(abort), total=self.total)
                raise abort

            active = [c for c in active if not self._done(c)]

        log.info("fetch_scheduled", total=self.total, rounds=self.rounds, errors=len(self.errors))

    def feed_progress(self) -> dict[str, int]:
        return {c.upstream_id: c.fetched for c in self.cursors}
