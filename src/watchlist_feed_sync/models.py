"""Data models for watchlist-feed-sync."""

from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Literal

from pydantic import BaseModel, Field

from .permissions import Permission


class MediaKind(str, Enum):
    """Kind of a watchlist entry."""

    MOVIE = "movie"
    SERIES = "series"


class MediaType(str, Enum):
    """Media type as understood by the availability index and request service."""

    MOVIE = "movie"
    TV = "tv"


MEDIA_TYPE_BY_KIND: dict[MediaKind, MediaType] = {
    MediaKind.MOVIE: MediaType.MOVIE,
    MediaKind.SERIES: MediaType.TV,
}


class MediaStatus(IntEnum):
    """Availability status of a media record."""

    UNKNOWN = 1
    PENDING = 2
    PROCESSING = 3
    PARTIALLY_AVAILABLE = 4
    AVAILABLE = 5


class ErrorKind(str, Enum):
    """Failure kinds reported by the request-submission service."""

    PERMISSION_DENIED = "permission_denied"
    DUPLICATE = "duplicate"
    QUOTA_EXCEEDED = "quota_exceeded"
    NO_SEASONS_AVAILABLE = "no_seasons_available"
    OTHER = "other"


class AutoRequestOutcome(str, Enum):
    """Result of one auto-request dispatch attempt."""

    CREATED = "created"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    SKIPPED_QUOTA = "skipped_quota"
    SKIPPED_PERMISSION = "skipped_permission"
    SKIPPED_NO_SEASONS = "skipped_no_seasons"
    SKIPPED_UNRESOLVED_ID = "skipped_unresolved_id"
    FAILED = "failed"


class SyncRunStatus(str, Enum):
    """How a per-user pass ended."""

    SKIPPED = "skipped"  # Gate short-circuit
    UNCHANGED = "unchanged"  # ETag matched
    SYNCED = "synced"
    FAILED = "failed"  # Fetch-level failure


# ========== Users ==========


class WatchlistSubscription(BaseModel):
    """A user's watchlist feed and its conditional-fetch token."""

    id: int | None = None
    user_id: int
    feed_url: str | None = None
    cache_token: str | None = None  # ETag from the last successful pass


class UserSettings(BaseModel):
    """Per-user watchlist sync toggles."""

    user_id: int
    watchlist_sync_movies: bool = False
    watchlist_sync_tv: bool = False


class User(BaseModel):
    """User with its subscription and settings attached (either may be absent)."""

    id: int
    display_name: str
    permissions: Permission = Permission.NONE
    subscription: WatchlistSubscription | None = None
    settings: UserSettings | None = None

    @property
    def feed_url(self) -> str | None:
        if self.subscription is None:
            return None
        return self.subscription.feed_url or None

    @property
    def sync_movies(self) -> bool:
        return self.settings is not None and self.settings.watchlist_sync_movies

    @property
    def sync_tv(self) -> bool:
        return self.settings is not None and self.settings.watchlist_sync_tv


# ========== Feed ==========


class WatchlistItem(BaseModel):
    """Normalised watchlist feed entry. Never persisted."""

    external_id: str
    tmdb_id: int = 0  # 0 when unresolved
    tvdb_id: int | None = None
    kind: MediaKind
    title: str


class AvailabilityRecord(BaseModel):
    """Row of the local media-availability index."""

    tmdb_id: int
    media_type: MediaType
    status: MediaStatus = MediaStatus.UNKNOWN


# ========== Requests ==========


class MediaRequestPayload(BaseModel):
    """Request submitted to the request service."""

    media_id: int
    media_type: MediaType
    seasons: Literal["all"] | None = None
    tvdb_id: int | None = None
    is4k: bool = False
    is_auto_request: bool = True


class SubmissionResult(BaseModel):
    """Outcome of a submission: a request id, or an error kind."""

    request_id: int | None = None
    error_kind: ErrorKind | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error_kind is None


class DispatchResult(BaseModel):
    """Dispatch outcome for one watchlist item."""

    item: WatchlistItem
    outcome: AutoRequestOutcome
    reason: str | None = None


class SyncRun(BaseModel):
    """Summary of one per-user sync pass."""

    user_id: int
    status: SyncRunStatus
    fetched: int = 0
    candidates: int = 0
    outcomes: dict[AutoRequestOutcome, int] = Field(default_factory=dict)
    cache_token: str | None = None
    finished_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
