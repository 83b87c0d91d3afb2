"""HTTP transport for the upstream API.

The transport only moves bytes: it sends one request with the current
bearer token and hands back status, headers and decoded body. Retry,
spacing and status interpretation belong to the governor.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class ApiResponse:
    status: int
    data: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def error_message(self) -> str:
        """Best-effort error text from the body."""
        if isinstance(self.data, dict):
            message = self.data.get("message") or self.data.get("error")
            if isinstance(message, str) and message:
                return message
        return self.text[:200] if self.text else f"HTTP {self.status}"


class HttpTransport:
    """Sends requests with ``httpx.AsyncClient``.

    Args:
        base_url: Upstream API root.
        token_provider: Returns the current access token, or None.
        client: Optional pre-built client (tests pass one wired to
            ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        client: Optional[httpx.AsyncClient] = None,
        app_version: Optional[str] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._token_provider = token_provider or (lambda: None)
        self._client = client
        self._owns_client = client is None
        self.app_version = app_version

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url)
        return self._client

    def _headers(self, requires_auth: bool) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.app_version:
            headers["X-App-Version"] = self.app_version
        if requires_auth:
            token = self._token_provider()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    async def send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        timeout: float = 30.0,
        requires_auth: bool = True,
    ) -> ApiResponse:
        """Send one request.

        Raises:
            httpx.TransportError: On connection failures and timeouts.
        """
        client = self._get_client()
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        response = await client.request(
            method,
            url,
            params={k: v for k, v in (params or {}).items() if v is not None},
            json=json,
            headers=self._headers(requires_auth),
            timeout=timeout,
        )
        text = response.text
        data: Any = None
        if text:
            try:
                data = response.json()
            except ValueError:
                logger.debug(f"{method} {path} returned non-JSON body ({response.status_code})")
        return ApiResponse(
            status=response.status_code,
            data=data,
            headers={k.lower(): v for k, v in response.headers.items()},
            text=text,
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
