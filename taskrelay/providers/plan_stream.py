"""
HTTP client for the plan generation service.

The service answers a POST with a server-sent event stream. This client only
opens the request and yields raw response lines; frame parsing and state live
in ``taskrelay.engine.plan_stream``.
"""

import asyncio
from collections.abc import AsyncGenerator

import httpx
import structlog

from taskrelay.exceptions import UpstreamError
from taskrelay.models.domain import PlanStreamRequest

log = structlog.get_logger(__name__)

# Keep error bodies short in logs and messages.
_MAX_ERROR_BODY = 500


class PlanStreamClient:
    """Streaming client for the plan generation endpoint."""

    def __init__(
        self,
        base_url: str,
        path: str = "/api/planning/generate",
        timeout: float = 300.0,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.path = path
        self.timeout = timeout
        self.headers = {"Accept": "text/event-stream"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the underlying client."""
        async with self._lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.base_url,
                    timeout=httpx.Timeout(self.timeout, connect=10.0),
                    headers=self.headers,
                    transport=self._transport,
                )
                log.info("plan_stream_client_initialized", base_url=self.base_url)

    async def close(self) -> None:
        """Close the underlying client."""
        async with self._lock:
            if self._client:
                await self._client.aclose()
                self._client = None
                log.info("plan_stream_client_closed", base_url=self.base_url)

    async def lines(self, request: PlanStreamRequest) -> AsyncGenerator[str, None]:
        """POST a generation request and yield the response body line by line.

        Cancelling the consumer closes the response, which aborts the request.

        Raises:
            UpstreamError: On a non-success status or a transport failure
        """
        if self._client is None:
            await self.initialize()
        assert self._client is not None

        log.info(
            "plan_stream_requested",
            thread_id=request.thread_id,
            model=request.model,
            current_version=request.current_version,
            has_feedback=bool(request.feedback),
        )

        try:
            async with self._client.stream("POST", self.path, json=request.to_payload()) as response:
                if response.is_error:
                    body = (await response.aread()).decode("utf-8", errors="replace")[:_MAX_ERROR_BODY]
                    log.error("plan_stream_rejected", status=response.status_code, body=body)
                    raise UpstreamError(
                        "Plan generation request failed",
                        status_code=response.status_code,
                        response_text=body,
                    )

                async for line in response.aiter_lines():
                    yield line
        except httpx.HTTPError as e:
            log.error("plan_stream_transport_failed", error=str(e))
            raise UpstreamError(f"Plan generation stream failed: {e}") from e
