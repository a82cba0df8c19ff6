"""Watchlist sync engine: feed -> availability filter -> auto-requests."""

import asyncio
import contextlib
import logging
from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from ..config import Config, get_config
from ..database import get_db
from ..feed import WatchlistFeedClient
from ..mediarequest import MediaRequestClient, RequestSubmitter
from ..models import (
    MEDIA_TYPE_BY_KIND,
    AutoRequestOutcome,
    AvailabilityRecord,
    DispatchResult,
    ErrorKind,
    MediaKind,
    MediaRequestPayload,
    MediaStatus,
    SyncRun,
    SyncRunStatus,
    User,
    WatchlistItem,
    WatchlistSubscription,
)
from ..permissions import Permission, has_any

logger = logging.getLogger(__name__)


# A user needs one of these to be considered for watchlist sync at all
SYNC_PERMISSIONS = (Permission.AUTO_REQUEST, Permission.AUTO_REQUEST_MOVIE, Permission.AUTO_APPROVE_TV)

AUTO_REQUEST_PERMISSIONS: dict[MediaKind, tuple[Permission, ...]] = {
    MediaKind.MOVIE: (Permission.AUTO_REQUEST, Permission.AUTO_REQUEST_MOVIE),
    MediaKind.SERIES: (Permission.AUTO_REQUEST, Permission.AUTO_REQUEST_TV),
}

OUTCOME_BY_ERROR_KIND: dict[ErrorKind, AutoRequestOutcome] = {
    ErrorKind.PERMISSION_DENIED: AutoRequestOutcome.SKIPPED_PERMISSION,
    ErrorKind.DUPLICATE: AutoRequestOutcome.SKIPPED_DUPLICATE,
    ErrorKind.QUOTA_EXCEEDED: AutoRequestOutcome.SKIPPED_QUOTA,
    ErrorKind.NO_SEASONS_AVAILABLE: AutoRequestOutcome.SKIPPED_NO_SEASONS,
    ErrorKind.OTHER: AutoRequestOutcome.FAILED,
}


def filter_unavailable(
    items: Iterable[WatchlistItem],
    records: Iterable[AvailabilityRecord],
) -> list[WatchlistItem]:
    """Drop items the local media index already satisfies.

    Movies count as satisfied once they have any known status, series only
    when fully available. Order is preserved.
    """
    index: dict[tuple[int, str], AvailabilityRecord] = {
        (r.tmdb_id, r.media_type.value): r for r in records
    }

    def satisfied(item: WatchlistItem) -> bool:
        record = index.get((item.tmdb_id, MEDIA_TYPE_BY_KIND[item.kind].value))
        if record is None:
            return False
        if item.kind is MediaKind.MOVIE:
            return record.status != MediaStatus.UNKNOWN
        return record.status == MediaStatus.AVAILABLE

    return [item for item in items if not satisfied(item)]


class WatchlistSyncEngine:
    """Engine that turns watchlist feeds into auto-requests.

    Architecture:
    1. Worker loop -> sync_all_users() -> eligible users, one at a time
    2. sync_user() -> gates -> ETag probe -> feed fetch -> availability filter
    3. dispatch() per candidate, concurrently -> request service
    4. commit_cache_token() once every dispatch has settled
    """

    def __init__(
        self,
        config: Config | None = None,
        feed_client: WatchlistFeedClient | None = None,
        request_client: RequestSubmitter | None = None,
    ):
        self.config = config or get_config()
        self.feed_client = feed_client or WatchlistFeedClient(self.config.feed)
        self.request_client = request_client or MediaRequestClient(self.config.requests)
        self._running = False
        self._worker_task: asyncio.Task[None] | None = None
        # Serialises sweeps between the worker and manual triggers
        self._sweep_lock = asyncio.Lock()
        self.last_sweep_at: datetime | None = None
        self.last_runs: list[SyncRun] = []

    # ========== Sweep ==========

    async def sync_all_users(self) -> list[SyncRun]:
        """Sync the watchlist of every eligible user, one user at a time."""
        async with self._sweep_lock:
            db = await get_db()
            users = await db.list_sync_eligible_users()
            logger.debug("Watchlist sync sweep: %d eligible users", len(users))

            runs: list[SyncRun] = []
            for user in users:
                runs.append(await self.sync_user(user))

            self.last_runs = runs
            self.last_sweep_at = datetime.now(UTC)
            return runs

    async def sync_user(self, user: User) -> SyncRun:
        """Run one full watchlist pass for a user. Never raises."""
        try:
            return await self._sync_user(user)
        except Exception as e:
            logger.exception("[%s] Watchlist sync failed: %s", user.display_name, e)
            return SyncRun(user_id=user.id, status=SyncRunStatus.FAILED)

    async def _sync_user(self, user: User) -> SyncRun:
        subscription = user.subscription
        if subscription is None or not subscription.feed_url:
            logger.warning("[%s] Skipping watchlist feed sync for user without feed", user.display_name)
            return SyncRun(user_id=user.id, status=SyncRunStatus.SKIPPED)

        if not has_any(user.permissions, SYNC_PERMISSIONS):
            return SyncRun(user_id=user.id, status=SyncRunStatus.SKIPPED)

        if not user.sync_movies and not user.sync_tv:
            return SyncRun(user_id=user.id, status=SyncRunStatus.SKIPPED)

        feed_url = subscription.feed_url
        try:
            token = await self.feed_client.probe(feed_url)
        except Exception as e:
            logger.error("[%s] Watchlist feed probe failed: %s", user.display_name, e)
            return SyncRun(user_id=user.id, status=SyncRunStatus.FAILED)

        if subscription.cache_token and token == subscription.cache_token:
            logger.debug("[%s] Etag matches, doing nothing", user.display_name)
            return SyncRun(user_id=user.id, status=SyncRunStatus.UNCHANGED, cache_token=token)

        try:
            items = await self.feed_client.fetch_items(feed_url)
        except Exception as e:
            logger.error("[%s] Failed to retrieve watchlist items: %s", user.display_name, e)
            return SyncRun(user_id=user.id, status=SyncRunStatus.FAILED)

        candidates = await self.resolve_candidates(items)
        logger.debug(
            "[%s] Watchlist has %d items, %d not yet available",
            user.display_name,
            len(items),
            len(candidates),
        )

        results = await asyncio.gather(
            *[self.dispatch(item, user) for item in candidates],
            return_exceptions=True,
        )

        outcomes: Counter[AutoRequestOutcome] = Counter()
        for item, result in zip(candidates, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("[%s] Dispatch for '%s' crashed: %s", user.display_name, item.title, result)
                outcomes[AutoRequestOutcome.FAILED] += 1
            else:
                outcomes[result.outcome] += 1

        if token is not None:
            await self.commit_cache_token(subscription, token)

        return SyncRun(
            user_id=user.id,
            status=SyncRunStatus.SYNCED,
            fetched=len(items),
            candidates=len(candidates),
            outcomes=dict(outcomes),
            cache_token=subscription.cache_token,
        )

    # ========== Availability ==========

    async def resolve_candidates(self, items: list[WatchlistItem]) -> list[WatchlistItem]:
        """Filter fetched items down to the ones not yet available locally."""
        if not items:
            return []
        db = await get_db()
        records = await db.get_related_media(item.tmdb_id for item in items)
        return filter_unavailable(items, records)

    # ========== Dispatch ==========

    def _may_auto_request(self, user: User, kind: MediaKind) -> bool:
        """Check auto-request permission and the sync toggle for a media kind."""
        enabled = user.sync_movies if kind is MediaKind.MOVIE else user.sync_tv
        return enabled and has_any(user.permissions, AUTO_REQUEST_PERMISSIONS[kind])

    async def dispatch(self, item: WatchlistItem, user: User) -> DispatchResult:
        """Submit an auto-request for one watchlist item and classify the result."""
        if item.kind is MediaKind.SERIES and not item.tvdb_id:
            logger.error(
                "[%s] Missing TVDB ID from Plex metadata, cannot request '%s'",
                user.display_name,
                item.title,
            )
            return DispatchResult(item=item, outcome=AutoRequestOutcome.SKIPPED_UNRESOLVED_ID)

        if not item.tmdb_id:
            logger.error(
                "[%s] Missing TMDB ID from Plex metadata, cannot request '%s'",
                user.display_name,
                item.title,
            )
            return DispatchResult(item=item, outcome=AutoRequestOutcome.SKIPPED_UNRESOLVED_ID)

        if not self._may_auto_request(user, item.kind):
            return DispatchResult(item=item, outcome=AutoRequestOutcome.SKIPPED_PERMISSION)

        payload = MediaRequestPayload(
            media_id=item.tmdb_id,
            media_type=MEDIA_TYPE_BY_KIND[item.kind],
            seasons="all" if item.kind is MediaKind.SERIES else None,
            tvdb_id=item.tvdb_id,
            is4k=False,
            is_auto_request=True,
        )

        try:
            result = await self.request_client.submit(payload, user.id)
        except Exception as e:
            logger.error(
                "[%s] Failed to create media request from watchlist for '%s': %s",
                user.display_name,
                item.title,
                e,
                exc_info=True,
            )
            return DispatchResult(item=item, outcome=AutoRequestOutcome.FAILED, reason=str(e))

        if result.error_kind is None:
            logger.info(
                "[%s] Created media request from watchlist: %s (request %s)",
                user.display_name,
                item.title,
                result.request_id,
            )
            return DispatchResult(item=item, outcome=AutoRequestOutcome.CREATED)

        outcome = OUTCOME_BY_ERROR_KIND[result.error_kind]
        if outcome is AutoRequestOutcome.FAILED:
            logger.error(
                "[%s] Failed to create media request from watchlist for '%s': %s",
                user.display_name,
                item.title,
                result.message,
            )
        else:
            # Expected while polling continuously (quota reached, already requested, ...)
            logger.debug(
                "[%s] Failed to create media request from watchlist for '%s': %s (%s)",
                user.display_name,
                item.title,
                result.message,
                result.error_kind.value,
            )
        return DispatchResult(item=item, outcome=outcome, reason=result.message or result.error_kind.value)

    # ========== Cache ==========

    async def commit_cache_token(self, subscription: WatchlistSubscription, token: str | None) -> None:
        """Persist the conditional-fetch token of a subscription."""
        db = await get_db()
        await db.update_cache_token(subscription.user_id, token)
        subscription.cache_token = token

    # ========== Worker ==========

    async def start_worker(self, interval_seconds: float | None = None) -> None:
        """Start the background worker that runs a sweep every interval."""
        if self._running:
            return

        interval = interval_seconds if interval_seconds is not None else self.config.sync.interval_seconds
        self._running = True
        self._worker_task = asyncio.create_task(self._worker_loop(interval))
        logger.info("Watchlist sync worker started (interval: %ss)", interval)

    async def stop_worker(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._worker_task:
            self._worker_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker_task
            self._worker_task = None
        logger.info("Watchlist sync worker stopped")

    async def _worker_loop(self, interval_seconds: float) -> None:
        """Main worker loop. A sweep never overlaps the next one."""
        if not self.config.sync.run_on_startup:
            await asyncio.sleep(interval_seconds)

        while self._running:
            try:
                runs = await self.sync_all_users()
                synced = sum(1 for r in runs if r.status is SyncRunStatus.SYNCED)
                if synced:
                    logger.debug("Watchlist sweep synced %d of %d users", synced, len(runs))
            except Exception as e:
                logger.exception("Error in watchlist sync loop: %s", e)

            await asyncio.sleep(interval_seconds)

    async def close(self) -> None:
        """Close HTTP clients owned by the engine."""
        await self.feed_client.close()
        close = getattr(self.request_client, "close", None)
        if close is not None:
            await close()

    def get_status(self) -> dict[str, Any]:
        """Get current worker status and the last sweep summary."""
        totals: Counter[str] = Counter()
        for run in self.last_runs:
            for outcome, count in run.outcomes.items():
                totals[outcome.value] += count

        return {
            "worker_running": self._running,
            "sweep_in_progress": self._sweep_lock.locked(),
            "last_sweep_at": self.last_sweep_at,
            "users_processed": len(self.last_runs),
            "outcomes": dict(totals),
        }
