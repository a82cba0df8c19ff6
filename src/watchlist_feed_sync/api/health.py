"""Health check endpoints for Kubernetes/Docker."""

from fastapi import APIRouter, Request, Response

from ..database import get_db
from ..sync import WatchlistSyncEngine

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz() -> Response:
    """
    Liveness probe for Kubernetes.

    Returns 200 if the service is alive.
    """
    return Response(content="ok", media_type="text/plain")


@router.get("/readyz")
async def readyz(request: Request) -> Response:
    """
    Readiness probe for Kubernetes.

    Checks:
    - Database is connected
    - Engine is initialized and its worker is running
    """
    try:
        db = await get_db()
        if db._db is None:
            return Response(
                content="database not connected",
                status_code=503,
                media_type="text/plain",
            )

        engine: WatchlistSyncEngine | None = getattr(request.app.state, "engine", None)
        if engine is None:
            return Response(
                content="engine not initialized",
                status_code=503,
                media_type="text/plain",
            )

        if not engine.get_status().get("worker_running"):
            return Response(
                content="worker not running",
                status_code=503,
                media_type="text/plain",
            )

        return Response(content="ok", media_type="text/plain")

    except Exception as e:
        return Response(
            content=f"error: {e}",
            status_code=503,
            media_type="text/plain",
        )
