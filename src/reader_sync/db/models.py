# ABOUTME: SQLAlchemy ORM models for feeds, articles, sync queue, runs and quota.
# ABOUTME: Enforces canonical URL uniqueness and per-day quota rows at the storage layer.

from datetime import UTC, date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC (SQLite drops tzinfo)."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


class Base(DeclarativeBase):
    pass


feed_folders = Table(
    "feed_folders",
    Base.metadata,
    Column("feed_id", ForeignKey("feeds.id", ondelete="CASCADE"), primary_key=True),
    Column("folder_id", ForeignKey("folders.id", ondelete="CASCADE"), primary_key=True),
)

feed_tags = Table(
    "feed_tags",
    Base.metadata,
    Column("feed_id", ForeignKey("feeds.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Folder(Base):
    __tablename__ = "folders"

    id: Mapped[int] = mapped_column(primary_key=True)
    upstream_id: Mapped[str] = mapped_column(String(512), unique=True)
    name: Mapped[str] = mapped_column(String(255))
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("folders.id"))

    feeds: Mapped[list["Feed"]] = relationship(secondary=feed_folders, back_populates="folders")


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(primary_key=True)
    upstream_id: Mapped[str] = mapped_column(String(512), unique=True)
    name: Mapped[str] = mapped_column(String(255))

    feeds: Mapped[list["Feed"]] = relationship(secondary=feed_tags, back_populates="tags")


class Feed(Base):
    __tablename__ = "feeds"

    id: Mapped[int] = mapped_column(primary_key=True)
    upstream_id: Mapped[str] = mapped_column(String(512), unique=True)
    title: Mapped[str] = mapped_column(String(500))
    url: Mapped[str | None] = mapped_column(String(2048))
    html_url: Mapped[str | None] = mapped_column(String(2048))
    unread_count: Mapped[int] = mapped_column(Integer, default=0)

    # Incremental cursor and round-robin ordering key
    newest_item_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_fetched_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    # Backlog left by a capped fetch; newest_item_at moves only once it drains
    fetch_continuation: Mapped[str | None] = mapped_column(String(512))
    backlog_newest_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)

    folders: Mapped[list[Folder]] = relationship(secondary=feed_folders, back_populates="feeds")
    tags: Mapped[list[Tag]] = relationship(secondary=feed_tags, back_populates="feeds")
    articles: Mapped[list["Article"]] = relationship(back_populates="feed")


class Article(Base):
    __tablename__ = "articles"
    __table_args__ = (
        Index("ix_articles_published_at", "published_at"),
        Index("ix_articles_upstream_id", "upstream_id"),
        Index("ix_articles_is_starred", "is_starred"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    url: Mapped[str] = mapped_column(String(2048), unique=True)
    upstream_id: Mapped[str | None] = mapped_column(String(512))
    feed_id: Mapped[int | None] = mapped_column(ForeignKey("feeds.id"))
    title: Mapped[str] = mapped_column(String(500), default="Untitled")
    author: Mapped[str | None] = mapped_column(String(255))
    published_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    content: Mapped[str | None] = mapped_column(Text)
    full_content: Mapped[str | None] = mapped_column(Text)
    summary: Mapped[str | None] = mapped_column(Text)

    # State flags, resolved last-write-wins on last_modified
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    is_starred: Mapped[bool] = mapped_column(Boolean, default=False)
    last_modified: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)

    fetched_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)

    feed: Mapped[Feed | None] = relationship(back_populates="articles")
    pending_changes: Mapped[list["PendingStateChange"]] = relationship(
        back_populates="article", cascade="all, delete-orphan", passive_deletes=True
    )


class PendingStateChange(Base):
    __tablename__ = "pending_state_changes"
    __table_args__ = (Index("ix_pending_state_changes_changed_at", "changed_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    article_id: Mapped[int] = mapped_column(ForeignKey("articles.id", ondelete="CASCADE"))
    action: Mapped[str] = mapped_column(String(20))
    changed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_error: Mapped[str | None] = mapped_column(Text)

    article: Mapped[Article] = relationship(back_populates="pending_changes")


class SyncRun(Base):
    __tablename__ = "sync_runs"
    __table_args__ = (Index("ix_sync_runs_started_at", "started_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    trigger: Mapped[str] = mapped_column(String(20), default="manual")
    status: Mapped[str] = mapped_column(String(20), default="pending")
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    articles_fetched: Mapped[int] = mapped_column(Integer, default=0)
    articles_committed: Mapped[int] = mapped_column(Integer, default=0)
    articles_pruned: Mapped[int] = mapped_column(Integer, default=0)
    changes_flushed: Mapped[int] = mapped_column(Integer, default=0)
    conflicts: Mapped[int] = mapped_column(Integer, default=0)
    api_calls: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[list[str]] = mapped_column(JSON, default=list)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)


class QuotaState(Base):
    __tablename__ = "quota_state"
    __table_args__ = (UniqueConstraint("service", "day", name="uq_quota_state_service_day"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    service: Mapped[str] = mapped_column(String(50))
    day: Mapped[date] = mapped_column(Date)
    calls_used: Mapped[int] = mapped_column(Integer, default=0)
    calls_limit: Mapped[int] = mapped_column(Integer)

    # Last rate-limit headers reported by upstream
    zone1_usage: Mapped[int | None] = mapped_column(Integer)
    zone1_limit: Mapped[int | None] = mapped_column(Integer)
    zone2_usage: Mapped[int | None] = mapped_column(Integer)
    zone2_limit: Mapped[int | None] = mapped_column(Integer)
    reset_after: Mapped[int | None] = mapped_column(Integer)

    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)
