"""Main entry point for watchlist-feed-sync."""

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from .api import health_router, status_router
from .config import get_config, load_config
from .database import close_db, get_db
from .sync import WatchlistSyncEngine


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # Silence noisy third-party loggers
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def init_config() -> None:
    """Initialize configuration from file.

    Loads config from CONFIG_PATH env var, /config/config.yaml, or ./config.yaml.
    Sets up logging based on config.
    """
    config_path = os.environ.get("CONFIG_PATH", "/config/config.yaml")

    # Allow local development with config.yaml in current directory
    if not Path(config_path).exists():
        local_config = Path("config.yaml")
        if local_config.exists():
            config_path = str(local_config)
        else:
            print(f"Error: Configuration file not found: {config_path}")
            print("Create a config.yaml file or set CONFIG_PATH environment variable")
            sys.exit(1)

    config = load_config(config_path)
    setup_logging(config.logging.level)

    logger = logging.getLogger(__name__)
    logger.info("Loaded configuration from %s", config_path)
    logger.info("Request service: %s", config.requests.url)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    logger = logging.getLogger(__name__)

    logger.info("Starting watchlist-feed-sync...")

    await get_db()
    logger.info("Database initialized")

    # One engine (and one set of HTTP clients) for the whole process
    config = get_config()
    engine = WatchlistSyncEngine(config)
    await engine.start_worker(interval_seconds=config.sync.interval_seconds)

    app.state.engine = engine

    yield

    logger.info("Shutting down watchlist-feed-sync...")
    await engine.stop_worker()
    await engine.close()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    init_config()

    app = FastAPI(
        title="watchlist-feed-sync",
        description="Automatic media requests from Plex watchlist RSS feeds",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health_router)  # /healthz, /readyz
    app.include_router(status_router)  # /api/status, /api/sync

    return app


def main() -> None:
    """Main entry point."""
    app = create_app()
    config = get_config()

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
