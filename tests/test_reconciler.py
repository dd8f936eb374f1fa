# ABOUTME: Tests for article reconciliation and the pending state-change queue.
# ABOUTME: Covers URL dedup, last-write-wins on flags, conflicts and upstream flushing.

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select

from fakes import READ, STARRED
from reader_sync.db.models import Article, Feed, PendingStateChange
from reader_sync.errors import QuotaExceeded
from reader_sync.models import RemoteArticle, StateAction
from reader_sync.services.reconciler import Reconciler, canonical_url, resolve_flag

FEED = "feed/https://example.com"
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def remote(url="https://example.com/a", **kwargs) -> RemoteArticle:
    fields = {
        "upstream_id": "item-1",
        "feed_id": FEED,
        "url": url,
        "title": "Title",
        "content": "<p>Body</p>",
        "published_at": T0,
        "last_modified": T0,
    }
    fields.update(kwargs)
    return RemoteArticle(**fields)


@pytest.fixture
def reconciler(session_factory, settings, client) -> Reconciler:
    return Reconciler(session_factory, client, settings)


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


async def _reload(session_factory, article_id) -> Article:
    async with session_factory() as session:
        return await session.get(Article, article_id)


async def _set_attempts(session_factory, change_id, attempts, last_attempt_at=None) -> None:
    async with session_factory() as session:
        row = await session.get(PendingStateChange, change_id)
        row.attempts = attempts
        row.last_attempt_at = last_attempt_at
        await session.commit()


def test_canonical_url_lowercases_scheme_and_host():
    assert canonical_url("HTTPS://Example.COM/Path") == "https://example.com/Path"


def test_canonical_url_drops_default_port_and_fragment():
    assert canonical_url("https://example.com:443/a#section") == "https://example.com/a"
    assert canonical_url("http://example.com:8080/a") == "http://example.com:8080/a"


def test_canonical_url_strips_tracking_params_and_sorts_query():
    url = "https://example.com/a?utm_source=rss&b=2&fbclid=x&a=1"
    assert canonical_url(url) == "https://example.com/a?a=1&b=2"


def test_canonical_url_empty_path_becomes_root():
    assert canonical_url("https://example.com") == "https://example.com/"


def test_canonical_url_non_absolute_returned_trimmed():
    assert canonical_url("  not a url ") == "not a url"


def test_resolve_flag_newer_local_wins():
    assert resolve_flag(T0 + timedelta(seconds=1), True, T0, False) == (True, True)


def test_resolve_flag_newer_remote_wins():
    assert resolve_flag(T0, True, T0 + timedelta(seconds=1), False) == (False, False)


def test_resolve_flag_tie_goes_to_remote():
    assert resolve_flag(T0, True, T0, False) == (False, False)


def test_resolve_flag_no_local_change_takes_remote():
    assert resolve_flag(None, True, T0, False) == (False, False)


async def test_insert_new_article(reconciler, session_factory, db_session):
    db_session.add(Feed(upstream_id=FEED, title="Example"))
    await db_session.commit()

    article = await reconciler.upsert_article(remote(is_starred=True))

    assert article.id is not None
    assert reconciler.created == 1
    stored = await _reload(session_factory, article.id)
    assert stored.url == "https://example.com/a"
    assert stored.upstream_id == "item-1"
    assert stored.feed_id is not None
    assert stored.is_read is False
    assert stored.is_starred is True
    assert stored.last_modified == T0


async def test_unknown_feed_stored_without_feed(reconciler):
    article = await reconciler.upsert_article(remote())

    assert article.feed_id is None


async def test_same_canonical_url_is_deduplicated(reconciler, session_factory):
    first = await reconciler.upsert_article(remote("https://example.com/a?utm_source=x"))
    second = await reconciler.upsert_article(remote("https://EXAMPLE.com/a#top"))

    assert first.id == second.id
    assert await _count(session_factory, Article) == 1
    assert reconciler.created == 1
    assert reconciler.updated == 1


async def test_merge_overwrites_only_non_empty_content(reconciler, session_factory):
    article = await reconciler.upsert_article(remote(author="Alice"))

    await reconciler.upsert_article(
        remote(title="Untitled", author=None, content="<p>Updated</p>", last_modified=T0)
    )

    stored = await _reload(session_factory, article.id)
    assert stored.title == "Title"
    assert stored.author == "Alice"
    assert stored.content == "<p>Updated</p>"


async def test_remote_flag_change_applies_without_local_edit(reconciler, session_factory):
    article = await reconciler.upsert_article(remote())
    later = T0 + timedelta(hours=1)

    await reconciler.upsert_article(remote(is_read=True, last_modified=later))

    stored = await _reload(session_factory, article.id)
    assert stored.is_read is True
    assert stored.last_modified == later
    assert reconciler.conflicts == 0


async def test_newer_local_change_survives_older_remote(reconciler, session_factory):
    """A local read made after the remote edit is kept and stays queued."""
    article = await reconciler.upsert_article(remote())
    await reconciler.queue_state_change(article.id, StateAction.READ)

    await reconciler.upsert_article(remote(is_read=False, last_modified=T0 + timedelta(hours=1)))

    stored = await _reload(session_factory, article.id)
    assert stored.is_read is True
    assert reconciler.conflicts == 1
    assert await _count(session_factory, PendingStateChange) == 1


async def test_change_past_retry_limit_does_not_override_remote(
    reconciler, session_factory, settings
):
    """A change that can no longer be delivered no longer shadows remote state."""
    article = await reconciler.upsert_article(remote())
    change = await reconciler.queue_state_change(article.id, StateAction.READ)
    await _set_attempts(session_factory, change.id, settings.sync_max_retries, datetime.now(UTC))

    await reconciler.upsert_article(remote(is_read=False, last_modified=T0 + timedelta(hours=1)))

    stored = await _reload(session_factory, article.id)
    assert stored.is_read is False
    assert reconciler.conflicts == 0
    # Left for clear_failed_changes
    assert await _count(session_factory, PendingStateChange) == 1


async def test_newer_remote_change_beats_local(reconciler, session_factory):
    """A remote edit newer than the queued local change wins and drops the change."""
    article = await reconciler.upsert_article(remote())
    await reconciler.queue_state_change(article.id, StateAction.STAR)
    future = datetime.now(UTC) + timedelta(hours=1)

    await reconciler.upsert_article(remote(is_starred=False, last_modified=future))

    stored = await _reload(session_factory, article.id)
    assert stored.is_starred is False
    assert stored.last_modified == future
    assert reconciler.conflicts == 1
    assert await _count(session_factory, PendingStateChange) == 0


async def test_tie_resolves_to_remote(reconciler, session_factory):
    article = await reconciler.upsert_article(remote())
    change = await reconciler.queue_state_change(article.id, StateAction.READ)

    await reconciler.upsert_article(remote(is_read=False, last_modified=change.changed_at))

    stored = await _reload(session_factory, article.id)
    assert stored.is_read is False


async def test_flags_resolve_independently(reconciler, session_factory):
    """A local read does not shield the starred flag from a remote update."""
    article = await reconciler.upsert_article(remote())
    await reconciler.queue_state_change(article.id, StateAction.READ)

    await reconciler.upsert_article(
        remote(is_read=False, is_starred=True, last_modified=T0 + timedelta(minutes=5))
    )

    stored = await _reload(session_factory, article.id)
    assert stored.is_read is True
    assert stored.is_starred is True


async def test_insert_race_falls_back_to_merge(reconciler, session_factory, monkeypatch):
    """If another writer inserts first, the unique key conflict turns into a merge."""
    existing = await reconciler.upsert_article(remote())
    real_find = Reconciler._find
    calls = {"n": 0}

    async def racing_find(session, url):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return await real_find(session, url)

    monkeypatch.setattr(Reconciler, "_find", staticmethod(racing_find))

    merged = await reconciler.upsert_article(remote(content="<p>Second writer</p>"))

    assert merged.id == existing.id
    assert await _count(session_factory, Article) == 1
    stored = await _reload(session_factory, existing.id)
    assert stored.content == "<p>Second writer</p>"


async def test_full_content_extracted_when_enabled(session_factory, settings, monkeypatch):
    settings.extract_full_content = True
    fetched = []

    async def fake_extract(url, settings=None):
        fetched.append(url)
        return "<p>Full text</p>"

    monkeypatch.setattr("reader_sync.services.reconciler.extract_content", fake_extract)
    reconciler = Reconciler(session_factory, None, settings)

    article = await reconciler.upsert_article(remote())
    await reconciler.upsert_article(remote())

    assert fetched == ["https://example.com/a"]
    stored = await _reload(session_factory, article.id)
    assert stored.full_content == "<p>Full text</p>"


async def test_queue_state_change_applies_locally(reconciler, session_factory):
    article = await reconciler.upsert_article(remote())

    change = await reconciler.queue_state_change(article.id, StateAction.STAR)

    assert change.action == "star"
    stored = await _reload(session_factory, article.id)
    assert stored.is_starred is True
    assert stored.last_modified == change.changed_at


async def test_queue_state_change_unknown_article(reconciler):
    assert await reconciler.queue_state_change(9999, StateAction.READ) is None


async def test_flush_groups_by_action(reconciler, session_factory, upstream):
    a = await reconciler.upsert_article(remote("https://example.com/a", upstream_id="id-a"))
    b = await reconciler.upsert_article(remote("https://example.com/b", upstream_id="id-b"))
    c = await reconciler.upsert_article(remote("https://example.com/c", upstream_id="id-c"))
    await reconciler.queue_state_change(a.id, StateAction.READ)
    await reconciler.queue_state_change(b.id, StateAction.READ)
    await reconciler.queue_state_change(c.id, StateAction.STAR)

    result = await reconciler.flush_pending_state_changes()

    assert result.submitted == 3
    assert result.failed == 0
    assert len(upstream.edit_tags) == 2
    sent = {form.get("a", [""])[0]: sorted(form["i"]) for form in upstream.edit_tags}
    assert sent == {READ: ["id-a", "id-b"], STARRED: ["id-c"]}
    assert await _count(session_factory, PendingStateChange) == 0


async def test_flush_sends_only_latest_change_per_flag(reconciler, session_factory, upstream):
    article = await reconciler.upsert_article(remote())
    await reconciler.queue_state_change(article.id, StateAction.READ)
    await reconciler.queue_state_change(article.id, StateAction.UNREAD)

    result = await reconciler.flush_pending_state_changes()

    assert result.submitted == 1
    assert upstream.edit_tags == [{"i": ["item-1"], "r": [READ]}]
    assert await _count(session_factory, PendingStateChange) == 0


async def test_flush_splits_large_batches(reconciler, session_factory, upstream, settings):
    settings.flush_batch_size = 2
    for i in range(5):
        art = await reconciler.upsert_article(
            remote(f"https://example.com/{i}", upstream_id=f"id-{i}")
        )
        await reconciler.queue_state_change(art.id, StateAction.READ)

    result = await reconciler.flush_pending_state_changes()

    assert result.submitted == 5
    assert [len(form["i"]) for form in upstream.edit_tags] == [2, 2, 1]


async def test_flush_failure_keeps_changes_for_retry(reconciler, session_factory, upstream):
    article = await reconciler.upsert_article(remote())
    await reconciler.queue_state_change(article.id, StateAction.READ)
    upstream.fail_edit_tag = True

    result = await reconciler.flush_pending_state_changes()

    assert result.partial_failure
    assert result.failed == 1
    async with session_factory() as session:
        change = (await session.execute(select(PendingStateChange))).scalar_one()
    assert change.attempts == 1
    assert change.last_attempt_at is not None
    assert change.last_error is not None

    # Still inside the backoff window: nothing is sent
    upstream.fail_edit_tag = False
    sent_before = upstream.call_count
    waiting = await reconciler.flush_pending_state_changes()
    assert waiting.submitted == 0
    assert upstream.call_count == sent_before

    await _set_attempts(
        session_factory, change.id, 1, datetime.now(UTC) - timedelta(minutes=6)
    )
    retry = await reconciler.flush_pending_state_changes()
    assert retry.submitted == 1
    assert await _count(session_factory, PendingStateChange) == 0


async def test_retry_backoff_doubles_per_attempt(reconciler, session_factory, upstream):
    article = await reconciler.upsert_article(remote())
    change = await reconciler.queue_state_change(article.id, StateAction.READ)
    # Second retry waits 10 minutes with the default 5 minute backoff
    await _set_attempts(
        session_factory, change.id, 2, datetime.now(UTC) - timedelta(minutes=6)
    )

    result = await reconciler.flush_pending_state_changes()

    assert result.submitted == 0
    assert upstream.edit_tags == []

    await _set_attempts(
        session_factory, change.id, 2, datetime.now(UTC) - timedelta(minutes=11)
    )
    result = await reconciler.flush_pending_state_changes()

    assert result.submitted == 1
    assert upstream.edit_tags == [{"i": ["item-1"], "a": [READ]}]


async def test_newer_change_is_sent_despite_backoff_on_older_one(
    reconciler, session_factory, upstream
):
    article = await reconciler.upsert_article(remote())
    older = await reconciler.queue_state_change(article.id, StateAction.READ)
    await _set_attempts(session_factory, older.id, 1, datetime.now(UTC))
    await reconciler.queue_state_change(article.id, StateAction.UNREAD)

    result = await reconciler.flush_pending_state_changes()

    assert result.submitted == 1
    assert upstream.edit_tags == [{"i": ["item-1"], "r": [READ]}]
    assert await _count(session_factory, PendingStateChange) == 0


async def test_changes_past_retry_limit_are_skipped(
    reconciler, session_factory, upstream, settings
):
    settings.sync_retry_backoff_minutes = 0
    article = await reconciler.upsert_article(remote())
    await reconciler.queue_state_change(article.id, StateAction.READ)
    upstream.fail_edit_tag = True
    for _ in range(settings.sync_max_retries):
        await reconciler.flush_pending_state_changes()

    sent_before = upstream.call_count
    result = await reconciler.flush_pending_state_changes()

    assert result.submitted == 0
    assert result.failed == 0
    assert upstream.call_count == sent_before

    stats = await reconciler.queue_stats()
    assert stats.pending == 0
    assert stats.failed == 1

    assert await reconciler.clear_failed_changes() == 1
    assert await _count(session_factory, PendingStateChange) == 0


async def test_flush_drops_changes_without_upstream_id(reconciler, session_factory, upstream):
    article = await reconciler.upsert_article(remote(upstream_id=None))
    await reconciler.queue_state_change(article.id, StateAction.READ)

    result = await reconciler.flush_pending_state_changes()

    assert result.submitted == 0
    assert upstream.edit_tags == []
    assert await _count(session_factory, PendingStateChange) == 0


async def test_flush_with_empty_queue_makes_no_calls(reconciler, upstream):
    result = await reconciler.flush_pending_state_changes()

    assert result.submitted == 0
    assert upstream.call_count == 0


async def test_flush_propagates_quota_exhaustion(reconciler, quota, session_factory):
    article = await reconciler.upsert_article(remote())
    await reconciler.queue_state_change(article.id, StateAction.READ)
    quota.limit = 0

    with pytest.raises(QuotaExceeded):
        await reconciler.flush_pending_state_changes()

    assert await _count(session_factory, PendingStateChange) == 1


async def test_flush_requires_client(session_factory, settings):
    with pytest.raises(RuntimeError):
        await Reconciler(session_factory, None, settings).flush_pending_state_changes()


async def test_queue_stats(reconciler):
    empty = await reconciler.queue_stats()
    assert empty.pending == 0
    assert empty.oldest_change_at is None

    article = await reconciler.upsert_article(remote())
    change = await reconciler.queue_state_change(article.id, StateAction.READ)

    stats = await reconciler.queue_stats()
    assert stats.pending == 1
    assert stats.failed == 0
    assert stats.oldest_change_at == change.changed_at
