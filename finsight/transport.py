"""
HTTP transport for the upstream API.

Wraps httpx.AsyncClient and turns every failure into the client's error
taxonomy, so nothing above this layer deals with httpx exceptions or status
codes directly.
"""
import logging
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from .errors import (
    ClientError,
    MalformedResponseError,
    RateLimitedError,
    RequestTimeoutError,
    TransientError,
    parse_retry_after,
)

logger = logging.getLogger("transport")

DEFAULT_TIMEOUT_SECONDS = 30.0


class Environment(Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


BASE_URLS: Dict[Environment, str] = {
    Environment.DEVELOPMENT: "https://api-dev.perplexity.ai/v1",
    Environment.STAGING: "https://api-staging.perplexity.ai/v1",
    Environment.PRODUCTION: "https://api.perplexity.ai/v1",
}


def resolve_base_url(environment: str, base_url: Optional[str] = None) -> str:
    """An explicit base URL wins; otherwise pick by environment name."""
    if base_url:
        return base_url.rstrip("/")
    try:
        return BASE_URLS[Environment(environment.lower())]
    except ValueError:
        raise ValueError(
            f"Unknown API environment '{environment}', "
            f"expected one of {[e.value for e in Environment]}"
        )


class HttpTransport:
    """
    JSON over HTTPS with bearer auth and request correlation.

    Usage:
        transport = HttpTransport("https://api.perplexity.ai/v1", api_key="...")
        data = await transport.request("GET", "/market-news", correlation_id)
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            base_url: API root, e.g. https://api.perplexity.ai/v1
            api_key: Sent as `Authorization: Bearer <key>` when set
            default_timeout: Seconds, used when a call gives no timeout
            client: Preconfigured client (tests pass one with a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.default_timeout = default_timeout

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=default_timeout)
        self._headers = headers

    async def request(
        self,
        method: str,
        path: str,
        correlation_id: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Perform one HTTP request and return the decoded JSON body.

        Raises:
            RequestTimeoutError: The timeout elapsed
            TransientError: Connection failure or 5xx
            RateLimitedError: 429, with any Retry-After hint
            ClientError: Any other 4xx
            MalformedResponseError: Body was not valid JSON
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = dict(self._headers)
        headers["X-Request-ID"] = correlation_id
        query = {k: v for k, v in (params or {}).items() if v is not None}

        try:
            response = await self._client.request(
                method,
                url,
                params=query or None,
                json=json,
                headers=headers,
                timeout=timeout if timeout is not None else self.default_timeout,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"{method} {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientError(f"{method} {path} connection error: {e}") from e

        self._raise_for_status(method, path, response)

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{method} {path} returned invalid JSON: {e}",
                status_code=response.status_code,
            ) from e

    @staticmethod
    def _raise_for_status(method: str, path: str, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        detail = response.text[:200]
        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            raise RateLimitedError(
                f"{method} {path} rate limited (retry after {retry_after}s)",
                retry_after=retry_after,
            )
        if status >= 500:
            raise TransientError(f"{method} {path} returned {status}: {detail}", status_code=status)
        raise ClientError(f"{method} {path} returned {status}: {detail}", status_code=status)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
