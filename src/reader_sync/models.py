# ABOUTME: Pydantic schemas for upstream payloads and API views.
# ABOUTME: Parses Google Reader-style JSON into RemoteArticle/RemoteSubscription objects.

import html
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

READ_STATE = "user/-/state/com.google/read"
STARRED_STATE = "user/-/state/com.google/starred"


class SyncStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class SyncTrigger(StrEnum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class StateAction(StrEnum):
    READ = "read"
    UNREAD = "unread"
    STAR = "star"
    UNSTAR = "unstar"

    @property
    def flag(self) -> str:
        """Article attribute this action sets."""
        return "is_read" if self in (StateAction.READ, StateAction.UNREAD) else "is_starred"

    @property
    def value_set(self) -> bool:
        return self in (StateAction.READ, StateAction.STAR)

    @property
    def upstream_tag(self) -> str:
        return READ_STATE if self.flag == "is_read" else STARRED_STATE


def _from_epoch(value: Any, divisor: int = 1) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value) / divisor, tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return None


class RemoteCategory(BaseModel):
    """Folder or tag reference attached to a subscription."""

    id: str
    label: str = ""


class RemoteSubscription(BaseModel):
    """A feed as listed by upstream subscription/list."""

    id: str
    title: str = "Untitled"
    url: str | None = None
    html_url: str | None = Field(default=None, alias="htmlUrl")
    categories: list[RemoteCategory] = []

    model_config = {"populate_by_name": True}


class RemoteTag(BaseModel):
    """Entry from upstream tag/list; type is 'folder' or 'tag' when present."""

    id: str
    type: str | None = None

    @property
    def name(self) -> str:
        return self.id.rsplit("/label/", 1)[-1]

    @property
    def is_label(self) -> bool:
        return "/label/" in self.id


class RemoteArticle(BaseModel):
    """Article payload from upstream stream/contents, annotated with its source feed."""

    upstream_id: str | None = None
    feed_id: str
    url: str
    title: str = "Untitled"
    author: str | None = None
    content: str | None = None
    published_at: datetime | None = None
    last_modified: datetime
    is_read: bool = False
    is_starred: bool = False

    @classmethod
    def from_item(cls, item: dict[str, Any], feed_id: str) -> "RemoteArticle | None":
        """Build from a stream item; returns None for items without a link."""
        url = ""
        for key in ("canonical", "alternate"):
            links = item.get(key) or []
            if links and links[0].get("href"):
                url = links[0]["href"]
                break
        if not url:
            return None

        body = (item.get("content") or item.get("summary") or {}).get("content")
        categories = item.get("categories") or []
        published = _from_epoch(item.get("published"))
        last_modified = (
            _from_epoch(item.get("updated"))
            or _from_epoch(item.get("crawlTimeMsec"), 1000)
            or published
            or datetime.now(UTC)
        )
        return cls(
            upstream_id=item.get("id"),
            feed_id=(item.get("origin") or {}).get("streamId") or feed_id,
            url=url,
            title=html.unescape(item.get("title") or "") or "Untitled",
            author=item.get("author") or None,
            content=html.unescape(body) if body else None,
            published_at=published,
            last_modified=last_modified,
            is_read=READ_STATE in categories,
            is_starred=STARRED_STATE in categories,
        )


class StreamPage(BaseModel):
    """One page of stream/contents."""

    articles: list[RemoteArticle]
    requested: int
    returned: int
    continuation: str | None = None


class QuotaSnapshot(BaseModel):
    day: date
    calls_used: int
    calls_limit: int

    @property
    def remaining(self) -> int:
        return max(self.calls_limit - self.calls_used, 0)


class FlushResult(BaseModel):
    """Outcome of pushing queued state changes upstream."""

    submitted: int = 0
    failed: int = 0
    errors: list[str] = []

    @property
    def partial_failure(self) -> bool:
        return self.failed > 0


class QueueStats(BaseModel):
    pending: int
    failed: int
    oldest_change_at: datetime | None


class SyncRunView(BaseModel):
    """Sync run data returned to pollers."""

    id: str
    trigger: SyncTrigger
    status: SyncStatus
    started_at: datetime
    finished_at: datetime | None
    articles_fetched: int
    articles_committed: int
    articles_pruned: int
    changes_flushed: int
    conflicts: int
    api_calls: int
    errors: list[str]


class ArticleStateView(BaseModel):
    id: int
    url: str
    is_read: bool
    is_starred: bool
    last_modified: datetime
