# ABOUTME: Shared test fixtures for reader-sync.
# ABOUTME: Provides a file-backed async DB, settings, fake upstream and wired services.

from collections.abc import AsyncGenerator

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fakes import FakeUpstream
from reader_sync.config import Settings
from reader_sync.db.models import Article, Base, Feed
from reader_sync.db.session import build_engine
from reader_sync.services.quota import QuotaTracker
from reader_sync.services.upstream import UpstreamClient


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the environment's .env file."""
    return Settings(
        _env_file=None,
        db_path=tmp_path / "reader_sync_test.db",
        upstream_base_url="https://upstream.test/reader/api/0",
        daily_quota_limit=100,
        global_article_cap_per_sync=30,
        per_feed_article_cap=20,
        fetch_batch_size=10,
        fetch_concurrency=4,
        retention_limit=1000,
        prune_chunk_size=2,
        flush_batch_size=100,
        sync_max_retries=3,
    )


@pytest.fixture
async def session_factory(settings) -> AsyncGenerator[async_sessionmaker[AsyncSession]]:
    """SQLite file DB so separate sessions see each other's commits."""
    engine = build_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
async def http_client(upstream, settings) -> AsyncGenerator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(upstream.handler), base_url=settings.upstream_base_url
    ) as client:
        yield client


@pytest.fixture
def quota(session_factory, settings) -> QuotaTracker:
    return QuotaTracker(session_factory, settings)


@pytest.fixture
def client(quota, settings, http_client) -> UpstreamClient:
    return UpstreamClient(quota, settings, http_client=http_client)


@pytest.fixture
def sample_feed() -> Feed:
    return Feed(upstream_id="feed/https://example.com/rss", title="Example")


@pytest.fixture
def sample_article() -> Article:
    return Article(
        url="https://example.com/article-1",
        title="Test Article",
        author="Test Author",
        content="This is test article content.",
    )
