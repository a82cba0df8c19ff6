"""Status API endpoints."""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ..database import get_db
from ..models import SyncRun
from ..sync import WatchlistSyncEngine

router = APIRouter(prefix="/api", tags=["status"])


class SyncStatus(BaseModel):
    """Status of the watchlist sync worker."""

    worker_running: bool
    sweep_in_progress: bool
    last_sweep_at: datetime | None
    users_processed: int
    outcomes: dict[str, int]


class OverallStatus(BaseModel):
    """Overall system status."""

    users: int
    subscriptions: int
    sync: SyncStatus


class SweepResult(BaseModel):
    """Result of a manually triggered sweep."""

    users_processed: int
    runs: list[SyncRun]


def get_engine(request: Request) -> WatchlistSyncEngine:
    """Get the sync engine from app state."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return engine


@router.get("/status", response_model=OverallStatus)
async def get_status(request: Request) -> OverallStatus:
    """Get worker state, last sweep summary and user counts."""
    engine = get_engine(request)
    db = await get_db()

    return OverallStatus(
        users=await db.get_user_count(),
        subscriptions=await db.get_subscription_count(),
        sync=SyncStatus(**engine.get_status()),
    )


@router.post("/sync", response_model=SweepResult)
async def trigger_sync(request: Request) -> SweepResult:
    """Run one watchlist sweep now. Waits for a running sweep to finish first."""
    engine = get_engine(request)
    runs = await engine.sync_all_users()
    return SweepResult(users_processed=len(runs), runs=runs)
