"""Base service class for outbound HTTP integrations."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from coursepay.exceptions import ServiceError

DEFAULT_TIMEOUT = httpx.Timeout(connect=5.0, read=30.0, write=10.0, pool=5.0)


class BaseService:
    """Base class for HTTP API clients.

    Provides:
    - Shared httpx.AsyncClient with connection pooling
    - Structured logging bound to the service name
    - Timeout and HTTP errors mapped to ServiceError

    Connection errors are re-raised untouched so callers can decide whether
    an operation is safe to retry.
    """

    service_name = "http"

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: httpx.Timeout | float | None = None) -> None:
        """Initialize the base service.

        Args:
            client: Optional httpx.AsyncClient. If not provided,
                    a new client will be created and owned by this service.
            timeout: Timeout for the owned client.
        """
        self.client = client or httpx.AsyncClient(timeout=timeout or DEFAULT_TIMEOUT)
        self.logger = structlog.get_logger(service=self.__class__.__name__)
        self._owns_client = client is None

    async def close(self) -> None:
        """Close the HTTP client if owned by this service."""
        if self._owns_client and self.client:
            await self.client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Make a single HTTP request.

        Raises:
            ServiceError: On timeout or non-2xx response.
            httpx.ConnectError: When the host could not be reached.
        """
        self.logger.debug("http_request", method=method, url=url)

        try:
            response = await self.client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            self.logger.error("request_timeout", method=method, url=url, error=str(e))
            raise ServiceError(
                message=f"Request timeout: {url}",
                service_name=self.service_name,
                original_error=e,
            ) from e
        except httpx.HTTPStatusError as e:
            self.logger.warning(
                "http_error",
                method=method,
                url=url,
                status_code=e.response.status_code,
            )
            raise ServiceError(
                message=f"HTTP {e.response.status_code}: {url}",
                service_name=self.service_name,
                original_error=e,
            ) from e

        self.logger.debug("http_response", method=method, url=url, status_code=response.status_code)
        return response

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self._request("POST", url, **kwargs)
