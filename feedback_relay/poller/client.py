"""Async HTTP client for the broker side-channel."""

from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from feedback_relay.config import RelayConfig
from feedback_relay.core.errors import BrokerUnavailableError
from feedback_relay.protocol import BrokerSnapshot, FeedbackResponse

log = structlog.get_logger()


@dataclass
class SubmitResult:
    """Outcome of POST /api/feedback/submit."""

    success: bool
    status_code: int
    error: Optional[str] = None

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class BrokerClient:
    """Talks to brokers on 127.0.0.1 with short per-call timeouts."""

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        host: str = "127.0.0.1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or RelayConfig()
        self.host = host
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Loopback only: never route through environment proxies
            self._client = httpx.AsyncClient(trust_env=False, transport=self._transport)
        return self._client

    def url(self, port: int, path: str) -> str:
        return f"http://{self.host}:{port}{path}"

    async def __aenter__(self) -> "BrokerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, port: int, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        response = await self.client.get(
            self.url(port, path),
            params=params,
            timeout=self.config.get_timeout_seconds,
        )
        response.raise_for_status()
        return response.json()

    async def fetch_current(
        self,
        port: int,
        workspace: Optional[str] = None,
        latest_start_time: Optional[int] = None,
    ) -> Optional[BrokerSnapshot]:
        """Poll one port; None when no broker answers there."""
        params: dict[str, Any] = {}
        if workspace is not None:
            params["workspace"] = workspace
        if latest_start_time:
            params["latestStartTime"] = latest_start_time

        try:
            data = await self._get_json(port, "/api/feedback/current", params or None)
            return BrokerSnapshot.from_dict(port, data)
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            log.debug("poll_port_failed", port=port, error=str(e) or type(e).__name__)
            return None

    async def health(self, port: int) -> Optional[dict[str, Any]]:
        """Probe liveness; None when no broker answers there."""
        try:
            data = await self._get_json(port, "/api/health")
        except (httpx.HTTPError, ValueError) as e:
            log.debug("health_port_failed", port=port, error=str(e) or type(e).__name__)
            return None
        return data if isinstance(data, dict) else None

    async def submit(self, port: int, response: FeedbackResponse) -> SubmitResult:
        """Deliver an answer.

        Raises:
            BrokerUnavailableError: If the broker cannot be reached
        """
        try:
            http_response = await self.client.post(
                self.url(port, "/api/feedback/submit"),
                json=response.to_submit_body(),
                timeout=self.config.post_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise BrokerUnavailableError(port, str(e) or type(e).__name__) from e

        try:
            body = http_response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        success = http_response.status_code == 200 and bool(body.get("success"))
        error = None if success else str(body.get("error") or f"HTTP {http_response.status_code}")
        return SubmitResult(success=success, status_code=http_response.status_code, error=error)

    async def request_shutdown(self, port: int) -> bool:
        """Ask the broker on a port to exit."""
        try:
            http_response = await self.client.post(
                self.url(port, "/api/shutdown"),
                timeout=self.config.post_timeout_seconds,
            )
        except httpx.HTTPError as e:
            log.info("shutdown_request_failed", port=port, error=str(e) or type(e).__name__)
            return False
        return http_response.status_code == 200
