from __future__ import annotations

from typing import Any

import httpx
import structlog

from driftwood.core.errors import ProviderCallError

logger = structlog.get_logger()


def is_retryable_status(status_code: int) -> bool:
    """Determine if HTTP status code is retryable."""
    return status_code in (408, 429, 500, 502, 503, 504)


class BaseHTTPClient:
    """Async HTTP client that maps failures onto ProviderCallError.

    It never retries: only the caller knows whether a request is idempotent.
    Failures are classified as transient (retryable) or permanent.
    """

    provider = "http"

    def __init__(self, base_url: str = "", *, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    def _headers(self) -> dict[str, str]:
        """Override to provide custom headers."""
        return {"Content-Type": "application/json"}

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Execute one HTTP request. ``path`` may be an absolute URL."""
        url = path if path.startswith(("http://", "https://")) else f"{self._base_url}{path}"
        req_headers = self._headers()
        if headers:
            req_headers.update(headers)

        try:
            response = await self._http().request(
                method,
                url,
                params=params,
                json=json,
                headers=req_headers,
            )
        except (httpx.TimeoutException, httpx.ConnectError, httpx.ReadError) as exc:
            logger.warning("http_network_error", method=method, url=url, error=str(exc))
            raise ProviderCallError(
                f"{method} {url}: {exc}", provider=self.provider, retryable=True
            ) from exc

        if response.is_error:
            status = response.status_code
            retryable = is_retryable_status(status)
            log = logger.warning if retryable or status == 404 else logger.error
            log("http_error", status=status, method=method, url=url)
            raise ProviderCallError(
                f"{method} {url}: HTTP {status}: {_error_message(response)}",
                provider=self.provider,
                status=status,
                retryable=retryable,
            )
        return response.json() if response.content else {}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", error))
    return str(error or body)[:200]
