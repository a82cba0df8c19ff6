"""Tests for WatchlistSyncEngine."""

import asyncio
import logging
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from watchlist_feed_sync.config import Config, DatabaseConfig, SyncConfig
from watchlist_feed_sync.database import Database
from watchlist_feed_sync.models import (
    AutoRequestOutcome,
    AvailabilityRecord,
    ErrorKind,
    MediaKind,
    MediaStatus,
    MediaType,
    SubmissionResult,
    SyncRunStatus,
    User,
    UserSettings,
    WatchlistItem,
    WatchlistSubscription,
)
from watchlist_feed_sync.permissions import Permission
from watchlist_feed_sync.sync.engine import WatchlistSyncEngine, filter_unavailable

ENGINE_LOGGER = "watchlist_feed_sync.sync.engine"
FEED_URL = "https://rss.plex.tv/feed-1"

MATRIX = WatchlistItem(external_id="a", tmdb_id=603, kind=MediaKind.MOVIE, title="The Matrix")
INCEPTION = WatchlistItem(external_id="b", tmdb_id=27205, kind=MediaKind.MOVIE, title="Inception")
GOT = WatchlistItem(external_id="c", tmdb_id=1399, tvdb_id=121361, kind=MediaKind.SERIES, title="Game of Thrones")
SEVERANCE = WatchlistItem(external_id="d", tmdb_id=95396, kind=MediaKind.SERIES, title="Severance")


@pytest.fixture
async def db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    database = Database(str(db_path))
    await database.connect()
    yield database
    await database.close()
    db_path.unlink(missing_ok=True)


@pytest.fixture
def test_config(db):
    """Create test configuration."""
    return Config(
        database=DatabaseConfig(path=db.db_path),
        sync=SyncConfig(interval_seconds=0.01),
    )


@pytest.fixture
def feed_client():
    """Mock feed client."""
    client = MagicMock()
    client.probe = AsyncMock(return_value='"etag-2"')
    client.fetch_items = AsyncMock(return_value=[])
    client.close = AsyncMock()
    return client


@pytest.fixture
def request_client():
    """Mock request service, accepts everything."""
    client = MagicMock()
    client.submit = AsyncMock(return_value=SubmissionResult(request_id=1))
    client.close = AsyncMock()
    return client


@pytest.fixture
def engine(test_config, feed_client, request_client, db):
    """Engine wired to mocks and the temporary database."""
    engine = WatchlistSyncEngine(test_config, feed_client=feed_client, request_client=request_client)
    with patch("watchlist_feed_sync.sync.engine.get_db", return_value=db):
        yield engine


def make_user(
    permissions: Permission = Permission.AUTO_REQUEST,
    sync_movies: bool = True,
    sync_tv: bool = True,
    feed_url: str | None = FEED_URL,
    cache_token: str | None = None,
    user_id: int = 1,
) -> User:
    return User(
        id=user_id,
        display_name=f"user{user_id}",
        permissions=permissions,
        subscription=WatchlistSubscription(user_id=user_id, feed_url=feed_url, cache_token=cache_token),
        settings=UserSettings(user_id=user_id, watchlist_sync_movies=sync_movies, watchlist_sync_tv=sync_tv),
    )


async def store_user(db: Database, user: User) -> None:
    """Persist a user built with make_user()."""
    await db.upsert_user(user.id, user.display_name, user.permissions)
    await db.set_watchlist_feed(user.id, user.feed_url)
    if user.subscription and user.subscription.cache_token:
        await db.update_cache_token(user.id, user.subscription.cache_token)
    await db.set_user_settings(user.id, user.sync_movies, user.sync_tv)


class TestAvailabilityFilter:
    """Test filter_unavailable()."""

    def test_available_series_dropped(self):
        records = [AvailabilityRecord(tmdb_id=1399, media_type=MediaType.TV, status=MediaStatus.AVAILABLE)]
        assert filter_unavailable([GOT], records) == []

    def test_partially_available_series_kept(self):
        records = [
            AvailabilityRecord(tmdb_id=1399, media_type=MediaType.TV, status=MediaStatus.PARTIALLY_AVAILABLE)
        ]
        assert filter_unavailable([GOT], records) == [GOT]

    def test_available_movie_dropped(self):
        records = [AvailabilityRecord(tmdb_id=603, media_type=MediaType.MOVIE, status=MediaStatus.AVAILABLE)]
        assert filter_unavailable([MATRIX], records) == []

    def test_pending_movie_dropped(self):
        records = [AvailabilityRecord(tmdb_id=603, media_type=MediaType.MOVIE, status=MediaStatus.PENDING)]
        assert filter_unavailable([MATRIX], records) == []

    def test_unknown_movie_kept(self):
        records = [AvailabilityRecord(tmdb_id=603, media_type=MediaType.MOVIE, status=MediaStatus.UNKNOWN)]
        assert filter_unavailable([MATRIX], records) == [MATRIX]

    def test_no_record_kept(self):
        assert filter_unavailable([MATRIX], []) == [MATRIX]

    def test_record_of_other_media_type_ignored(self):
        """Test that a TV record does not satisfy a movie with the same TMDB id."""
        records = [AvailabilityRecord(tmdb_id=603, media_type=MediaType.TV, status=MediaStatus.AVAILABLE)]
        assert filter_unavailable([MATRIX], records) == [MATRIX]

    def test_order_preserved(self):
        records = [AvailabilityRecord(tmdb_id=27205, media_type=MediaType.MOVIE, status=MediaStatus.AVAILABLE)]
        assert filter_unavailable([SEVERANCE, INCEPTION, MATRIX, GOT], records) == [SEVERANCE, MATRIX, GOT]


class TestGates:
    """Test the per-user gate sequence."""

    @pytest.mark.asyncio
    async def test_no_feed_url(self, engine, feed_client, request_client, caplog):
        """Test that a user without feed makes no network calls."""
        user = make_user(feed_url=None)

        with caplog.at_level(logging.WARNING, logger=ENGINE_LOGGER):
            run = await engine.sync_user(user)

        assert run.status is SyncRunStatus.SKIPPED
        feed_client.probe.assert_not_called()
        feed_client.fetch_items.assert_not_called()
        request_client.submit.assert_not_called()
        assert any(r.levelno == logging.WARNING for r in caplog.records)

    @pytest.mark.asyncio
    async def test_no_subscription(self, engine, feed_client):
        user = make_user()
        user.subscription = None

        run = await engine.sync_user(user)

        assert run.status is SyncRunStatus.SKIPPED
        feed_client.probe.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_permissions(self, engine, feed_client, request_client, caplog):
        """Test that users without any auto-request permission are skipped silently."""
        user = make_user(permissions=Permission.REQUEST | Permission.AUTO_APPROVE)

        with caplog.at_level(logging.DEBUG, logger=ENGINE_LOGGER):
            run = await engine.sync_user(user)

        assert run.status is SyncRunStatus.SKIPPED
        feed_client.probe.assert_not_called()
        request_client.submit.assert_not_called()
        assert caplog.records == []

    @pytest.mark.asyncio
    async def test_auto_approve_tv_passes_first_gate(self, engine, feed_client):
        """Test that AUTO_APPROVE_TV alone is enough to reach the feed."""
        user = make_user(permissions=Permission.AUTO_APPROVE_TV)

        await engine.sync_user(user)

        feed_client.probe.assert_called_once_with(FEED_URL)

    @pytest.mark.asyncio
    async def test_both_toggles_disabled(self, engine, feed_client, request_client):
        """Test that disabled sync settings make no dispatches even with candidates."""
        feed_client.fetch_items.return_value = [MATRIX, GOT]
        user = make_user(sync_movies=False, sync_tv=False)

        run = await engine.sync_user(user)

        assert run.status is SyncRunStatus.SKIPPED
        request_client.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_settings_absent(self, engine, feed_client, request_client):
        user = make_user()
        user.settings = None

        run = await engine.sync_user(user)

        assert run.status is SyncRunStatus.SKIPPED
        feed_client.probe.assert_not_called()


class TestConditionalFetch:
    """Test the etag probe."""

    @pytest.mark.asyncio
    async def test_etag_match_skips_fetch(self, engine, feed_client, request_client):
        """Test that an unchanged feed is never downloaded."""
        feed_client.probe.return_value = '"etag-1"'
        user = make_user(cache_token='"etag-1"')

        run = await engine.sync_user(user)

        assert run.status is SyncRunStatus.UNCHANGED
        feed_client.fetch_items.assert_not_called()
        request_client.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_etag_changed_fetches(self, engine, feed_client, db):
        """Test that a changed etag triggers a fetch and is stored afterwards."""
        user = make_user(cache_token='"etag-1"')
        await store_user(db, user)

        run = await engine.sync_user(user)

        assert run.status is SyncRunStatus.SYNCED
        feed_client.fetch_items.assert_called_once_with(FEED_URL)
        subscription = await db.get_subscription(user.id)
        assert subscription.cache_token == '"etag-2"'
        assert user.subscription.cache_token == '"etag-2"'

    @pytest.mark.asyncio
    async def test_no_stored_token_fetches(self, engine, feed_client):
        """Test that the first pass always fetches."""
        feed_client.probe.return_value = None
        user = make_user(cache_token=None)

        await engine.sync_user(user)

        feed_client.fetch_items.assert_called_once()

    @pytest.mark.asyncio
    async def test_probe_failure_leaves_subscription(self, engine, feed_client, db, caplog):
        """Test that a failed probe ends the pass without touching the token."""
        feed_client.probe.side_effect = RuntimeError("connection reset")
        user = make_user(cache_token='"etag-1"')
        await store_user(db, user)

        with caplog.at_level(logging.ERROR, logger=ENGINE_LOGGER):
            run = await engine.sync_user(user)

        assert run.status is SyncRunStatus.FAILED
        feed_client.fetch_items.assert_not_called()
        subscription = await db.get_subscription(user.id)
        assert subscription.cache_token == '"etag-1"'
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    @pytest.mark.asyncio
    async def test_fetch_failure_leaves_subscription(self, engine, feed_client, request_client, db):
        """Test that a failed fetch neither dispatches nor commits the token."""
        feed_client.fetch_items.side_effect = RuntimeError("HTTP 500")
        user = make_user(cache_token='"etag-1"')
        await store_user(db, user)

        run = await engine.sync_user(user)

        assert run.status is SyncRunStatus.FAILED
        request_client.submit.assert_not_called()
        subscription = await db.get_subscription(user.id)
        assert subscription.cache_token == '"etag-1"'


class TestSyncPass:
    """Test a full per-user pass."""

    @pytest.mark.asyncio
    async def test_unavailable_items_are_requested(self, engine, feed_client, request_client, db):
        """Test that only items missing locally reach the request service."""
        await db.upsert_media(27205, MediaType.MOVIE, MediaStatus.AVAILABLE)
        await db.upsert_media(1399, MediaType.TV, MediaStatus.PARTIALLY_AVAILABLE)
        feed_client.fetch_items.return_value = [MATRIX, INCEPTION, GOT]
        user = make_user()
        await store_user(db, user)

        run = await engine.sync_user(user)

        assert run.status is SyncRunStatus.SYNCED
        assert run.fetched == 3
        assert run.candidates == 2
        assert run.outcomes == {AutoRequestOutcome.CREATED: 2}
        requested = {c.args[0].media_id for c in request_client.submit.call_args_list}
        assert requested == {603, 1399}

    @pytest.mark.asyncio
    async def test_matrix_reaches_dispatch(self, engine, feed_client, request_client):
        """Test a movie with no availability record is requested."""
        feed_client.fetch_items.return_value = [MATRIX]

        await engine.sync_user(make_user())

        request_client.submit.assert_called_once()
        payload, user_id = request_client.submit.call_args.args
        assert payload.media_id == 603
        assert payload.media_type is MediaType.MOVIE
        assert payload.seasons is None
        assert payload.is4k is False
        assert payload.is_auto_request is True
        assert user_id == 1

    @pytest.mark.asyncio
    async def test_cache_token_committed_after_all_dispatches(self, engine, feed_client, request_client, db):
        """Test that the etag is written only after every dispatch settled, failures included."""
        events: list[str] = []

        async def submit(payload, user_id):
            await asyncio.sleep(0.01 if payload.media_id == 603 else 0)
            events.append(f"submit:{payload.media_id}")
            if payload.media_id == 27205:
                raise RuntimeError("boom")
            if payload.media_id == 1399:
                return SubmissionResult(error_kind=ErrorKind.OTHER, message="HTTP 500")
            return SubmissionResult(request_id=5)

        request_client.submit.side_effect = submit
        feed_client.fetch_items.return_value = [MATRIX, INCEPTION, GOT]
        user = make_user(cache_token='"etag-1"')
        await store_user(db, user)

        original_update = db.update_cache_token

        async def update_cache_token(user_id, token):
            events.append("commit")
            await original_update(user_id, token)

        with patch.object(db, "update_cache_token", side_effect=update_cache_token):
            run = await engine.sync_user(user)

        assert events[-1] == "commit"
        assert sorted(events[:-1]) == ["submit:1399", "submit:27205", "submit:603"]
        assert run.outcomes == {AutoRequestOutcome.CREATED: 1, AutoRequestOutcome.FAILED: 2}
        subscription = await db.get_subscription(user.id)
        assert subscription.cache_token == '"etag-2"'

    @pytest.mark.asyncio
    async def test_missing_etag_keeps_stored_token(self, engine, feed_client, db):
        feed_client.probe.return_value = None
        user = make_user(cache_token='"etag-1"')
        await store_user(db, user)

        run = await engine.sync_user(user)

        assert run.status is SyncRunStatus.SYNCED
        subscription = await db.get_subscription(user.id)
        assert subscription.cache_token == '"etag-1"'

    @pytest.mark.asyncio
    async def test_empty_feed_commits_token(self, engine, feed_client, db):
        feed_client.fetch_items.return_value = []
        user = make_user()
        await store_user(db, user)

        run = await engine.sync_user(user)

        assert run.status is SyncRunStatus.SYNCED
        assert (await db.get_subscription(user.id)).cache_token == '"etag-2"'


class TestDispatch:
    """Test per-item dispatch and error classification."""

    @pytest.mark.asyncio
    async def test_series_without_tvdb(self, engine, request_client, caplog):
        """Test that a show without TVDB id is skipped with an error log."""
        with caplog.at_level(logging.ERROR, logger=ENGINE_LOGGER):
            result = await engine.dispatch(SEVERANCE, make_user())

        assert result.outcome is AutoRequestOutcome.SKIPPED_UNRESOLVED_ID
        request_client.submit.assert_not_called()
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    @pytest.mark.asyncio
    async def test_movie_without_tmdb(self, engine, request_client):
        item = WatchlistItem(external_id="x", tmdb_id=0, kind=MediaKind.MOVIE, title="Unknown")

        result = await engine.dispatch(item, make_user())

        assert result.outcome is AutoRequestOutcome.SKIPPED_UNRESOLVED_ID
        request_client.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_series_payload(self, engine, request_client):
        """Test the request submitted for a series."""
        result = await engine.dispatch(GOT, make_user())

        assert result.outcome is AutoRequestOutcome.CREATED
        payload, _ = request_client.submit.call_args.args
        assert payload.media_type is MediaType.TV
        assert payload.seasons == "all"
        assert payload.tvdb_id == 121361
        assert payload.is4k is False

    @pytest.mark.parametrize(
        ("permissions", "sync_movies", "sync_tv", "item", "allowed"),
        [
            (Permission.AUTO_REQUEST_MOVIE, True, True, MATRIX, True),
            (Permission.AUTO_REQUEST_MOVIE, True, True, GOT, False),
            (Permission.AUTO_REQUEST_TV, True, True, GOT, True),
            (Permission.AUTO_REQUEST_TV, True, True, MATRIX, False),
            (Permission.AUTO_APPROVE_TV, True, True, GOT, False),
            (Permission.AUTO_REQUEST, False, True, MATRIX, False),
            (Permission.AUTO_REQUEST, True, False, GOT, False),
            (Permission.AUTO_REQUEST, True, True, GOT, True),
            (Permission.ADMIN, True, True, MATRIX, True),
        ],
    )
    @pytest.mark.asyncio
    async def test_media_type_gate(
        self, engine, request_client, caplog, permissions, sync_movies, sync_tv, item, allowed
    ):
        """Test the per media type permission and toggle check."""
        user = make_user(permissions=permissions, sync_movies=sync_movies, sync_tv=sync_tv)

        with caplog.at_level(logging.DEBUG, logger=ENGINE_LOGGER):
            result = await engine.dispatch(item, user)

        if allowed:
            assert result.outcome is AutoRequestOutcome.CREATED
            request_client.submit.assert_called_once()
        else:
            assert result.outcome is AutoRequestOutcome.SKIPPED_PERMISSION
            request_client.submit.assert_not_called()
            assert caplog.records == []

    @pytest.mark.parametrize(
        ("error_kind", "outcome"),
        [
            (ErrorKind.DUPLICATE, AutoRequestOutcome.SKIPPED_DUPLICATE),
            (ErrorKind.QUOTA_EXCEEDED, AutoRequestOutcome.SKIPPED_QUOTA),
            (ErrorKind.PERMISSION_DENIED, AutoRequestOutcome.SKIPPED_PERMISSION),
            (ErrorKind.NO_SEASONS_AVAILABLE, AutoRequestOutcome.SKIPPED_NO_SEASONS),
        ],
    )
    @pytest.mark.asyncio
    async def test_expected_failures_log_debug(self, engine, request_client, caplog, error_kind, outcome):
        """Test that expected submission failures never log above debug."""
        request_client.submit.return_value = SubmissionResult(error_kind=error_kind, message="nope")

        with caplog.at_level(logging.DEBUG, logger=ENGINE_LOGGER):
            result = await engine.dispatch(GOT, make_user())

        assert result.outcome is outcome
        assert caplog.records
        assert all(r.levelno == logging.DEBUG for r in caplog.records)

    @pytest.mark.asyncio
    async def test_other_failure_logs_error(self, engine, request_client, caplog):
        request_client.submit.return_value = SubmissionResult(error_kind=ErrorKind.OTHER, message="HTTP 500")

        with caplog.at_level(logging.DEBUG, logger=ENGINE_LOGGER):
            result = await engine.dispatch(MATRIX, make_user())

        assert result.outcome is AutoRequestOutcome.FAILED
        assert result.reason == "HTTP 500"
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    @pytest.mark.asyncio
    async def test_raised_failure_logs_error(self, engine, request_client, caplog):
        """Test that an exception from the submitter is classified as Failed."""
        request_client.submit.side_effect = ValueError("unexpected")

        with caplog.at_level(logging.DEBUG, logger=ENGINE_LOGGER):
            result = await engine.dispatch(MATRIX, make_user())

        assert result.outcome is AutoRequestOutcome.FAILED
        assert result.reason == "unexpected"
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    @pytest.mark.asyncio
    async def test_created_logs_info(self, engine, caplog):
        with caplog.at_level(logging.DEBUG, logger=ENGINE_LOGGER):
            result = await engine.dispatch(MATRIX, make_user())

        assert result.outcome is AutoRequestOutcome.CREATED
        assert any(r.levelno == logging.INFO and "The Matrix" in r.getMessage() for r in caplog.records)


class TestSweep:
    """Test sync_all_users()."""

    @pytest.mark.asyncio
    async def test_users_isolated(self, engine, feed_client, request_client, db):
        """Test that one user's failing feed does not affect the next user."""
        await store_user(db, make_user(user_id=1, cache_token='"old-1"'))
        await store_user(db, make_user(user_id=2, cache_token='"old-2"'))
        await store_user(db, make_user(user_id=3, feed_url=None))

        async def probe(url):
            if url.endswith("/user1"):
                raise RuntimeError("DNS failure")
            return '"new"'

        await db.set_watchlist_feed(1, "https://rss.plex.tv/user1")
        await db.update_cache_token(1, '"old-1"')
        feed_client.probe.side_effect = probe
        feed_client.fetch_items.return_value = [MATRIX]

        runs = await engine.sync_all_users()

        assert [(r.user_id, r.status) for r in runs] == [(1, SyncRunStatus.FAILED), (2, SyncRunStatus.SYNCED)]
        request_client.submit.assert_called_once()
        assert (await db.get_subscription(1)).cache_token == '"old-1"'
        assert (await db.get_subscription(2)).cache_token == '"new"'
        assert engine.last_sweep_at is not None
        assert engine.get_status()["users_processed"] == 2

    @pytest.mark.asyncio
    async def test_users_processed_sequentially(self, engine, feed_client, db):
        """Test that one user's pass finishes before the next starts."""
        await store_user(db, make_user(user_id=1))
        await store_user(db, make_user(user_id=2))
        active = 0
        max_active = 0

        async def fetch_items(url):
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0.01)
            active -= 1
            return []

        feed_client.fetch_items.side_effect = fetch_items

        await engine.sync_all_users()

        assert feed_client.fetch_items.call_count == 2
        assert max_active == 1

    @pytest.mark.asyncio
    async def test_status_outcomes(self, engine, feed_client, db):
        await store_user(db, make_user(user_id=1))
        feed_client.fetch_items.return_value = [MATRIX, SEVERANCE]

        await engine.sync_all_users()

        status = engine.get_status()
        assert status["outcomes"] == {"created": 1, "skipped_unresolved_id": 1}
        assert status["worker_running"] is False


class TestWorker:
    """Test the background worker."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine):
        """Test that the worker runs sweeps until stopped."""
        with patch.object(engine, "sync_all_users", new_callable=AsyncMock) as mock_sweep:
            mock_sweep.return_value = []
            await engine.start_worker(interval_seconds=0.01)
            assert engine.get_status()["worker_running"] is True
            await asyncio.sleep(0.05)
            await engine.stop_worker()

        assert mock_sweep.call_count >= 1
        assert engine.get_status()["worker_running"] is False

    @pytest.mark.asyncio
    async def test_worker_survives_sweep_errors(self, engine):
        """Test that a failing sweep does not stop the loop."""
        with patch.object(engine, "sync_all_users", new_callable=AsyncMock) as mock_sweep:
            mock_sweep.side_effect = RuntimeError("database locked")
            await engine.start_worker(interval_seconds=0.01)
            await asyncio.sleep(0.05)
            await engine.stop_worker()

        assert mock_sweep.call_count >= 2

    @pytest.mark.asyncio
    async def test_close_closes_clients(self, engine, feed_client, request_client):
        await engine.close()

        feed_client.close.assert_awaited_once()
        request_client.close.assert_awaited_once()
