# ABOUTME: Async client for the Google Reader-style upstream API (Inoreader).
# ABOUTME: Every request consumes one quota unit before it is sent.

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from reader_sync.config import Settings, get_settings
from reader_sync.errors import QuotaExceeded, UpstreamFetchError, UpstreamSubmitError
from reader_sync.models import (
    RemoteArticle,
    RemoteSubscription,
    RemoteTag,
    StateAction,
    StreamPage,
)
from reader_sync.services.quota import QuotaTracker

log = structlog.get_logger()


class UpstreamClient:
    """Thin wrapper over the upstream endpoints used by the sync pipeline.

    ``cancel_check`` is awaited before each request and may raise
    SyncCancelled to stop a run between two upstream calls.
    """

    def __init__(
        self,
        quota: QuotaTracker,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        cancel_check: Callable[[], Awaitable[None]] | None = None,
    ):
        self.quota = quota
        self.settings = settings or get_settings()
        self.cancel_check = cancel_check
        self.calls_made = 0
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=self.settings.upstream_base_url,
            timeout=self.settings.upstream_timeout,
            headers=self._default_headers(),
        )

    def _default_headers(self) -> dict[str, str]:
        headers = {"User-Agent": self.settings.upstream_user_agent}
        token = self.settings.upstream_access_token
        if token is not None:
            headers["Authorization"] = f"Bearer {token.get_secret_value()}"
        return headers

    async def __aenter__(self) -> "UpstreamClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        data: Any = None,
        feed_id: str | None = None,
    ) -> httpx.Response:
        if self.cancel_check is not None:
            await self.cancel_check()

        if not await self.quota.can_consume(1):
            snap = await self.quota.snapshot()
            log.warning("upstream_call_blocked", path=path, used=snap.calls_used)
            raise QuotaExceeded(1, snap.calls_used, snap.calls_limit)
        await self.quota.consume(1)
        self.calls_made += 1

        try:
            response = await self._client.request(method, path, params=params, data=data)
        except httpx.HTTPError as e:
            log.error("upstream_http_error", path=path, feed_id=feed_id, error=str(e))
            raise UpstreamFetchError(f"{method} {path} failed: {e}", feed_id=feed_id) from e

        await self.quota.record_rate_limit_headers(response.headers)

        if response.status_code == 429:
            snap = await self.quota.snapshot()
            raise QuotaExceeded(
                1, snap.calls_used, snap.calls_limit, "Upstream rate limit reached (HTTP 429)"
            )
        if response.is_error:
            log.error(
                "upstream_bad_status", path=path, feed_id=feed_id, status=response.status_code
            )
            raise UpstreamFetchError(
                f"{method} {path} returned {response.status_code}",
                feed_id=feed_id,
                status_code=response.status_code,
            )
        return response

    async def _get_json(self, path: str, *, params: Any = None, feed_id: str | None = None):
        response = await self._request("GET", path, params=params, feed_id=feed_id)
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamFetchError(f"GET {path} returned invalid JSON", feed_id=feed_id) from e

    async def list_subscriptions(self) -> list[RemoteSubscription]:
        data = await self._get_json("subscription/list")
        subs = [RemoteSubscription.model_validate(s) for s in data.get("subscriptions", [])]
        log.info("subscriptions_listed", count=len(subs))
        return subs

    async def list_tags(self) -> list[RemoteTag]:
        data = await self._get_json("tag/list")
        return [RemoteTag.model_validate(t) for t in data.get("tags", [])]

    async def unread_counts(self) -> dict[str, int]:
        data = await self._get_json("unread-count")
        counts: dict[str, int] = {}
        for item in data.get("unreadcounts", []):
            try:
                counts[item["id"]] = int(item.get("count", 0))
            except (KeyError, TypeError, ValueError):
                continue
        return counts

    async def stream_contents(
        self,
        feed_id: str,
        n: int,
        continuation: str | None = None,
        newer_than: datetime | None = None,
    ) -> StreamPage:
        """Fetch up to n items of one feed, newest first."""
        params: dict[str, Any] = {"n": n}
        if continuation:
            params["c"] = continuation
        if newer_than is not None:
            params["ot"] = int(newer_than.timestamp())

        data = await self._get_json(
            f"stream/contents/{quote(feed_id, safe='')}", params=params, feed_id=feed_id
        )
        items = data.get("items", [])
        articles = []
        for item in items:
            article = RemoteArticle.from_item(item, feed_id)
            if article is None:
                log.debug("stream_item_without_url", feed_id=feed_id, item_id=item.get("id"))
                continue
            articles.append(article)
        return StreamPage(
            articles=articles,
            requested=n,
            returned=len(items),
            continuation=data.get("continuation") or None,
        )

    async def edit_tag(self, upstream_ids: list[str], action: StateAction) -> None:
        """Apply one state change to a batch of items."""
        form = {"i": list(upstream_ids), "a" if action.value_set else "r": action.upstream_tag}
        try:
            await self._request("POST", "edit-tag", data=form)
        except UpstreamFetchError as e:
            raise UpstreamSubmitError(str(e)) from e
        log.info("state_changes_submitted", action=action.value, count=len(upstream_ids))
