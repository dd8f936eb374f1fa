# ABOUTME: FastAPI route handlers for sync control, quota, queue and article state.
# ABOUTME: Thin layer over SyncService, QuotaTracker and Reconciler.

import structlog
from fastapi import APIRouter, HTTPException

from reader_sync.db.models import Article
from reader_sync.db.session import get_session_factory
from reader_sync.models import (
    ArticleStateView,
    QueueStats,
    StateAction,
    SyncRunView,
    SyncTrigger,
)
from reader_sync.services.quota import QuotaTracker
from reader_sync.services.reconciler import Reconciler
from reader_sync.services.sync import SyncService

log = structlog.get_logger()
router = APIRouter()


@router.post("/sync", status_code=202)
async def trigger_sync():
    """Start a manual sync in the background."""
    tracker = QuotaTracker()
    snap = await tracker.snapshot()
    if snap.remaining <= 0:
        raise HTTPException(
            status_code=429,
            detail={"error": "rate_limit_exceeded", "used": snap.calls_used, "limit": snap.calls_limit},
        )

    sync_id = await SyncService().trigger(SyncTrigger.MANUAL)
    log.info("sync_triggered", sync_id=sync_id)
    return {"sync_id": sync_id, "status": "pending"}


@router.get("/sync/{sync_id}", response_model=SyncRunView)
async def sync_status(sync_id: str):
    """Poll a sync run."""
    view = await SyncService().status(sync_id)
    if view is None:
        raise HTTPException(status_code=404, detail="Sync run not found")
    return view


@router.post("/sync/{sync_id}/cancel")
async def cancel_sync(sync_id: str):
    """Ask a pending or running sync to stop before its next upstream call."""
    if not await SyncService().cancel(sync_id):
        raise HTTPException(status_code=409, detail="Sync run is not active")
    return {"sync_id": sync_id, "cancel_requested": True}


@router.get("/quota")
async def quota_status():
    """Today's upstream call budget."""
    snap = await QuotaTracker().snapshot()
    return {
        "day": snap.day.isoformat(),
        "used": snap.calls_used,
        "limit": snap.calls_limit,
        "remaining": snap.remaining,
    }


@router.get("/queue", response_model=QueueStats)
async def queue_status():
    """Pending local read/star changes waiting for upstream."""
    return await Reconciler().queue_stats()


@router.post("/articles/{article_id}/{action}", response_model=ArticleStateView)
async def article_action(article_id: int, action: StateAction):
    """Mark an article read/unread/starred/unstarred and queue the change."""
    change = await Reconciler().queue_state_change(article_id, action)
    if change is None:
        raise HTTPException(status_code=404, detail="Article not found")

    session_factory = get_session_factory()
    async with session_factory() as session:
        article = await session.get(Article, article_id)
        if article is None:
            raise HTTPException(status_code=404, detail="Article not found")
        return ArticleStateView(
            id=article.id,
            url=article.url,
            is_read=article.is_read,
            is_starred=article.is_starred,
            last_modified=article.last_modified,
        )
