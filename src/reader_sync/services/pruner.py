# ABOUTME: Retention pruner bounding the number of stored articles.
# ABOUTME: Deletes the oldest non-starred articles in chunks; starred ones are never touched.

from itertools import batched

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reader_sync.config import Settings, get_settings
from reader_sync.db.models import Article, PendingStateChange
from reader_sync.db.session import get_session_factory
from reader_sync.errors import PruneError

log = structlog.get_logger()


class RetentionPruner:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.retention_limit = self.settings.retention_limit
        self.chunk_size = self.settings.prune_chunk_size

    async def prune(self) -> int:
        """Delete oldest non-starred articles until the total is at most the limit.

        Articles without a published date count as oldest. Returns the number
        deleted; raises PruneError on storage failure.
        """
        try:
            async with self.session_factory() as session:
                total = await session.scalar(select(func.count()).select_from(Article)) or 0
                if total <= self.retention_limit:
                    log.debug("retention_within_limit", total=total, limit=self.retention_limit)
                    return 0

                excess = total - self.retention_limit
                result = await session.execute(
                    select(Article.id)
                    .where(Article.is_starred.is_(False))
                    .order_by(
                        Article.published_at.is_(None).desc(),
                        Article.published_at.asc(),
                        Article.id.asc(),
                    )
                    .limit(excess)
                )
                candidate_ids = result.scalars().all()

                deleted = 0
                chunks = 0
                for chunk in batched(candidate_ids, self.chunk_size):
                    await session.execute(
                        delete(PendingStateChange).where(PendingStateChange.article_id.in_(chunk))
                    )
                    removed = await session.execute(
                        delete(Article).where(Article.id.in_(chunk), Article.is_starred.is_(False))
                    )
                    await session.commit()
                    deleted += removed.rowcount
                    chunks += 1
        except SQLAlchemyError as e:
            log.error("retention_prune_failed", error=str(e))
            raise PruneError(f"Retention prune failed: {e}") from e

        if deleted < excess:
            log.warning(
                "retention_limit_unreachable",
                total=total,
                limit=self.retention_limit,
                deleted=deleted,
            )
        log.info("retention_pruned", deleted=deleted, chunks=chunks, limit=self.retention_limit)
        return deleted
