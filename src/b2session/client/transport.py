"""HTTP transport shared by every protocol operation."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from b2session.core.exceptions import ProtocolViolationError, TransientError

logger = logging.getLogger(__name__)


@dataclass
class TransportRequest:
    """One HTTP exchange to perform."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: Optional[dict[str, Any]] = None
    json: Any = None
    content: Optional[bytes] = None
    timeout: Optional[float] = None


@dataclass
class TransportResponse:
    """Status, headers and fully read body of an HTTP response."""

    status_code: int
    headers: httpx.Headers
    content: bytes

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        """Decode the body as JSON.

        Raises:
            ProtocolViolationError: If the body is not valid JSON
        """
        try:
            return json.loads(self.content)
        except ValueError as e:
            raise ProtocolViolationError(
                "Response body is not valid JSON", status=self.status_code
            ) from e


class Transport:
    """Thin wrapper around a shared ``httpx.AsyncClient``.

    Connection pooling and TLS are left to httpx. The only job of this class
    is to turn timeouts and connection failures into ``TransientError`` so
    nothing httpx-specific leaks out of the client.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 60.0,
        user_agent: str | None = None,
    ):
        """Initialize the transport.

        Args:
            client: Pre-built client to use. One is created when omitted.
            timeout: Default per-request timeout in seconds
            user_agent: User-Agent header sent with every request
        """
        headers = {"User-Agent": user_agent} if user_agent else None
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def send(self, request: TransportRequest, *, operation: str | None = None) -> TransportResponse:
        """Perform one HTTP exchange.

        Args:
            request: Request to send
            operation: Name of the protocol operation, for errors and logs

        Returns:
            The response, whatever its status code

        Raises:
            TransientError: On timeout or connection failure
        """
        timeout = request.timeout if request.timeout is not None else httpx.USE_CLIENT_DEFAULT
        try:
            response = await self._client.request(
                request.method,
                request.url,
                headers=request.headers,
                params=request.params,
                json=request.json,
                content=request.content,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning(
                "Request timed out",
                extra={"operation": operation, "error": str(e)},
            )
            raise TransientError(f"Request timed out: {e}", operation=operation) from e
        except httpx.TransportError as e:
            logger.warning(
                "Transport error",
                extra={"operation": operation, "error": str(e), "error_type": type(e).__name__},
            )
            raise TransientError(f"Transport error: {e}", operation=operation) from e

        return TransportResponse(
            status_code=response.status_code,
            headers=response.headers,
            content=response.content,
        )

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
