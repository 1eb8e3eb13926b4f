"""
HTTP request primitive for the query engine.

The engine only ever needs ``request(method, path, body) -> ApiResult``:
a JSON body in, a parsed JSON body plus an ok/status pair out. Transport
failures are converted to FetchError so Query code only deals with one
failure type for the fetch stage.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .config import EngineConfig
from .errors import FetchError
from .shared.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ApiResponse:
    """Status half of an API result."""

    ok: bool
    status: int


@dataclass
class ApiResult:
    """Result of an API call: the response status and the decoded body."""

    response: ApiResponse
    data: Any = None


class ApiClient:
    """Async JSON client bound to one server origin.

    The underlying ``httpx.AsyncClient`` is created lazily so the client can
    be constructed outside of a running event loop.
    """

    def __init__(
        self,
        config: EngineConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.server_url,
                headers=self.config.headers,
                timeout=httpx.Timeout(self.config.request_timeout),
                transport=self._transport,
            )
        return self._client

    async def request(self, method: str, path: str, body: Any = None) -> ApiResult:
        """Send a JSON request and decode the JSON response.

        Args:
            method: HTTP method
            path: Path relative to the server origin
            body: JSON-serializable request body

        Returns:
            ApiResult with ``response.ok`` False for non-2xx statuses.

        Raises:
            FetchError: if the request could not be completed at all.
        """
        client = self._get_client()
        kwargs: Dict[str, Any] = {}
        if body is not None:
            kwargs["json"] = body
        try:
            response = await client.request(method, path.lstrip("/"), **kwargs)
        except httpx.TimeoutException as e:
            raise FetchError(f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise FetchError(f"{method} {path} failed: {e}") from e

        try:
            data = response.json() if response.content else None
        except ValueError:
            data = {"error_description": response.text}

        logger.debug("%s %s -> %d", method, path, response.status_code)
        return ApiResult(
            response=ApiResponse(ok=response.is_success, status=response.status_code),
            data=data,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
