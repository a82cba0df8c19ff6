"""Client for the request-submission service (Overseerr compatible API)."""

import logging
from typing import Any, Protocol

import httpx

from ..config import RequestServiceConfig
from ..models import ErrorKind, MediaRequestPayload, SubmissionResult

logger = logging.getLogger(__name__)

DEFAULT_LIMITS = httpx.Limits(max_connections=20, max_keepalive_connections=10)


class RequestSubmitter(Protocol):
    """Anything that can submit a media request on behalf of a user."""

    async def submit(self, payload: MediaRequestPayload, user_id: int) -> SubmissionResult: ...


def classify_response(response: httpx.Response) -> SubmissionResult:
    """Map a request-service response to a SubmissionResult."""
    try:
        body: Any = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = str(body.get("message") or body.get("error") or response.reason_phrase or "")

    status = response.status_code
    if status == 202 and body.get("id") is None:
        # Accepted without creating anything: every season is already requested or available
        return SubmissionResult(error_kind=ErrorKind.NO_SEASONS_AVAILABLE, message=message)
    if 200 <= status < 300:
        return SubmissionResult(request_id=body.get("id"), message=message)
    if status == 409:
        return SubmissionResult(error_kind=ErrorKind.DUPLICATE, message=message)
    if status == 403:
        if "quota" in message.lower():
            return SubmissionResult(error_kind=ErrorKind.QUOTA_EXCEEDED, message=message)
        return SubmissionResult(error_kind=ErrorKind.PERMISSION_DENIED, message=message)
    return SubmissionResult(error_kind=ErrorKind.OTHER, message=f"HTTP {status}: {message}")


class MediaRequestClient:
    """Async client submitting media requests. Never raises from submit()."""

    def __init__(self, config: RequestServiceConfig):
        self.config = config
        self.base_url = config.url.rstrip("/")
        self.headers = {
            "X-Api-Key": config.api_key,
            "Content-Type": "application/json",
        }
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=10.0),
                limits=DEFAULT_LIMITS,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def submit(self, payload: MediaRequestPayload, user_id: int) -> SubmissionResult:
        """Submit a request on behalf of ``user_id``."""
        body: dict[str, Any] = {
            "mediaId": payload.media_id,
            "mediaType": payload.media_type.value,
            "is4k": payload.is4k,
            "isAutoRequest": payload.is_auto_request,
        }
        if payload.seasons is not None:
            body["seasons"] = payload.seasons
        if payload.tvdb_id is not None:
            body["tvdbId"] = payload.tvdb_id

        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/api/v1/request",
                headers={**self.headers, "X-Api-User": str(user_id)},
                json=body,
            )
        except httpx.HTTPError as e:
            logger.debug("Request submission transport error: %s", e)
            return SubmissionResult(error_kind=ErrorKind.OTHER, message=f"Connection error: {e}")

        result = classify_response(response)
        logger.debug(
            "Submitted %s %d for user %d -> %s",
            payload.media_type.value,
            payload.media_id,
            user_id,
            result.error_kind.value if result.error_kind else f"request {result.request_id}",
        )
        return result

    async def health_check(self) -> bool:
        """Check if the request service is reachable."""
        try:
            client = await self._get_client()
            response = await client.get(f"{self.base_url}/api/v1/status", headers=self.headers)
            response.raise_for_status()
            logger.debug("Request service health check OK")
            return True
        except Exception as e:
            logger.warning("Request service health check FAILED: %s", e)
            return False
