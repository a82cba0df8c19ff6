"""SQLite database for users, watchlist subscriptions and the media index."""

import logging
from collections.abc import Iterable
from pathlib import Path

import aiosqlite

from .config import get_config
from .models import (
    AvailabilityRecord,
    MediaStatus,
    MediaType,
    User,
    UserSettings,
    WatchlistSubscription,
)
from .permissions import Permission

logger = logging.getLogger(__name__)


class Database:
    """Async SQLite database for the watchlist sync."""

    def __init__(self, db_path: str | Path | None = None, journal_mode: str | None = None):
        self._config_db_path = db_path
        self._config_journal_mode = journal_mode
        self._db: aiosqlite.Connection | None = None

    @property
    def db_path(self) -> str:
        """Get database path from config or override."""
        if self._config_db_path:
            return str(self._config_db_path)
        return get_config().database.path

    @property
    def journal_mode(self) -> str:
        """Get journal mode from config or override."""
        if self._config_journal_mode:
            return self._config_journal_mode.upper()
        try:
            return get_config().database.journal_mode.upper()
        except RuntimeError:
            return "WAL"  # Default if config not loaded (tests)

    async def connect(self) -> None:
        """Connect to the database and create tables."""
        db_path = Path(self.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Connecting to database: %s (journal_mode=%s)", db_path, self.journal_mode)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        if self.journal_mode in ("WAL", "DELETE", "TRUNCATE", "MEMORY", "OFF"):
            await self._db.execute(f"PRAGMA journal_mode={self.journal_mode}")
        # Needed for the subscription cascade on user delete
        await self._db.execute("PRAGMA foreign_keys=ON")

        await self._create_tables()
        logger.info("Database connected successfully")

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            logger.info("Closing database connection")
            await self._db.close()
            self._db = None

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        assert self._db is not None

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY,
                display_name TEXT NOT NULL,
                permissions INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS user_settings (
                user_id INTEGER PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
                watchlist_sync_movies BOOLEAN NOT NULL DEFAULT 0,
                watchlist_sync_tv BOOLEAN NOT NULL DEFAULT 0
            )
        """
        )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS user_watchlists (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
                url TEXT,
                etag TEXT
            )
        """
        )

        # Local availability index, keyed by TMDB id and media type
        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS media (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tmdb_id INTEGER NOT NULL,
                media_type TEXT NOT NULL,
                status INTEGER NOT NULL DEFAULT 1,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(tmdb_id, media_type)
            )
        """
        )

        await self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_media_tmdb_id
            ON media(tmdb_id)
        """
        )

        await self._db.commit()

    # ========== Users ==========

    async def upsert_user(
        self,
        user_id: int,
        display_name: str,
        permissions: int = Permission.NONE,
    ) -> None:
        """Insert or update a user."""
        assert self._db is not None

        logger.debug("Upserting user %d (%s), permissions=%d", user_id, display_name, permissions)
        await self._db.execute(
            """
            INSERT INTO users (id, display_name, permissions, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(id)
            DO UPDATE SET display_name = excluded.display_name,
                          permissions = excluded.permissions,
                          updated_at = CURRENT_TIMESTAMP
            """,
            (user_id, display_name, int(permissions)),
        )
        await self._db.commit()

    async def delete_user(self, user_id: int) -> bool:
        """Delete a user together with its settings and subscription."""
        assert self._db is not None

        cursor = await self._db.execute("DELETE FROM users WHERE id = ?", (user_id,))
        await self._db.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted user %d", user_id)
        return deleted

    async def set_user_settings(self, user_id: int, sync_movies: bool, sync_tv: bool) -> None:
        """Store the per-type watchlist sync toggles of a user."""
        assert self._db is not None

        await self._db.execute(
            """
            INSERT INTO user_settings (user_id, watchlist_sync_movies, watchlist_sync_tv)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id)
            DO UPDATE SET watchlist_sync_movies = excluded.watchlist_sync_movies,
                          watchlist_sync_tv = excluded.watchlist_sync_tv
            """,
            (user_id, sync_movies, sync_tv),
        )
        await self._db.commit()

    async def set_watchlist_feed(self, user_id: int, url: str | None) -> None:
        """Configure the watchlist feed of a user.

        Changing the URL drops the stored ETag, it belongs to the old feed.
        """
        assert self._db is not None

        logger.info("Setting watchlist feed for user %d", user_id)
        await self._db.execute(
            """
            INSERT INTO user_watchlists (user_id, url, etag)
            VALUES (?, ?, NULL)
            ON CONFLICT(user_id)
            DO UPDATE SET url = excluded.url,
                          etag = CASE WHEN user_watchlists.url IS excluded.url
                                      THEN user_watchlists.etag ELSE NULL END
            """,
            (user_id, url),
        )
        await self._db.commit()

    async def get_subscription(self, user_id: int) -> WatchlistSubscription | None:
        """Get the watchlist subscription of a user."""
        assert self._db is not None

        async with self._db.execute(
            "SELECT id, user_id, url, etag FROM user_watchlists WHERE user_id = ?",
            (user_id,),
        ) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            return WatchlistSubscription(
                id=row["id"],
                user_id=row["user_id"],
                feed_url=row["url"],
                cache_token=row["etag"],
            )

    async def list_sync_eligible_users(self) -> list[User]:
        """Get users with a non-empty watchlist feed, subscription and settings attached."""
        assert self._db is not None

        users: list[User] = []
        async with self._db.execute(
            """
            SELECT u.id, u.display_name, u.permissions,
                   w.id AS watchlist_id, w.url, w.etag,
                   s.user_id AS settings_user_id,
                   s.watchlist_sync_movies, s.watchlist_sync_tv
            FROM users u
            JOIN user_watchlists w ON w.user_id = u.id
            LEFT JOIN user_settings s ON s.user_id = u.id
            WHERE w.url IS NOT NULL AND w.url != ''
            ORDER BY u.id
            """
        ) as cursor:
            async for row in cursor:
                settings = None
                if row["settings_user_id"] is not None:
                    settings = UserSettings(
                        user_id=row["id"],
                        watchlist_sync_movies=bool(row["watchlist_sync_movies"]),
                        watchlist_sync_tv=bool(row["watchlist_sync_tv"]),
                    )
                users.append(
                    User(
                        id=row["id"],
                        display_name=row["display_name"],
                        permissions=Permission(row["permissions"]),
                        subscription=WatchlistSubscription(
                            id=row["watchlist_id"],
                            user_id=row["id"],
                            feed_url=row["url"],
                            cache_token=row["etag"],
                        ),
                        settings=settings,
                    )
                )
        logger.debug("Found %d users with a watchlist feed", len(users))
        return users

    async def update_cache_token(self, user_id: int, token: str | None) -> None:
        """Persist the conditional-fetch token of a user's subscription."""
        assert self._db is not None

        await self._db.execute(
            "UPDATE user_watchlists SET etag = ? WHERE user_id = ?",
            (token, user_id),
        )
        await self._db.commit()
        logger.debug("Stored watchlist etag for user %d: %s", user_id, token)

    # ========== Media availability index ==========

    async def upsert_media(self, tmdb_id: int, media_type: MediaType, status: MediaStatus) -> None:
        """Insert or update an availability record."""
        assert self._db is not None

        await self._db.execute(
            """
            INSERT INTO media (tmdb_id, media_type, status, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(tmdb_id, media_type)
            DO UPDATE SET status = excluded.status,
                          updated_at = CURRENT_TIMESTAMP
            """,
            (tmdb_id, media_type.value, int(status)),
        )
        await self._db.commit()

    async def get_related_media(self, tmdb_ids: Iterable[int]) -> list[AvailabilityRecord]:
        """Look up availability records by TMDB id."""
        assert self._db is not None

        ids = sorted({i for i in tmdb_ids if i})
        if not ids:
            return []

        placeholders = ",".join("?" * len(ids))
        records: list[AvailabilityRecord] = []
        async with self._db.execute(
            f"SELECT tmdb_id, media_type, status FROM media WHERE tmdb_id IN ({placeholders})",
            ids,
        ) as cursor:
            async for row in cursor:
                records.append(
                    AvailabilityRecord(
                        tmdb_id=row["tmdb_id"],
                        media_type=MediaType(row["media_type"]),
                        status=MediaStatus(row["status"]),
                    )
                )
        logger.debug("Availability lookup: %d ids -> %d records", len(ids), len(records))
        return records

    # ========== Stats ==========

    async def get_user_count(self) -> int:
        """Get total number of users."""
        assert self._db is not None
        async with self._db.execute("SELECT COUNT(*) FROM users") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def get_subscription_count(self) -> int:
        """Get number of users with a watchlist feed configured."""
        assert self._db is not None
        async with self._db.execute(
            "SELECT COUNT(*) FROM user_watchlists WHERE url IS NOT NULL AND url != ''"
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0


# Global database instance
_db: Database | None = None


async def get_db() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
        await _db.connect()
    return _db


async def close_db() -> None:
    """Close the global database connection."""
    global _db
    if _db:
        await _db.close()
        _db = None
