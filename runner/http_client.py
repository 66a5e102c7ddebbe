"""
Instrumented HTTP client for the runner.

Wraps httpx with structured logging for every outbound call: the worker's
loopback API and the model host the download pipeline fetches from.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx

from runner.logging_utils import get_logger, timer


class LoggedHTTPClient:
    """
    httpx.AsyncClient wrapper that logs method, URL, status, duration and
    transport errors for every request.
    """

    def __init__(
        self,
        service: str,
        base_url: Optional[str] = None,
        timeout: Optional[httpx.Timeout] = None,
        **client_kwargs
    ):
        """
        Args:
            service: Service name for logging (e.g., "worker", "model_host")
            base_url: Base URL for the service
            timeout: Request timeout configuration
            **client_kwargs: Extra httpx.AsyncClient arguments (tests pass transport=)
        """
        self.service = service
        self.logger = get_logger()

        kwargs = client_kwargs.copy()
        if base_url:
            kwargs["base_url"] = base_url
        if timeout:
            kwargs["timeout"] = timeout
        self._client_kwargs = kwargs
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(**self._client_kwargs)
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client:
            await self._client.__aexit__(exc_type, exc_val, exc_tb)
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    @staticmethod
    def _timeout_value(kwargs: dict) -> Optional[float]:
        timeout = kwargs.get("timeout")
        if isinstance(timeout, httpx.Timeout):
            return timeout.read or timeout.connect
        return timeout

    def _log_failure(self, method: str, url: str, request_id: str, kwargs: dict, elapsed_ms: float, exc: Exception):
        if isinstance(exc, httpx.TimeoutException):
            error = f"Timeout: {exc}"
        elif isinstance(exc, httpx.ConnectError):
            error = f"Connection error: {exc}"
        else:
            error = str(exc) or type(exc).__name__
        self.logger.http_out(
            service=self.service,
            method=method,
            url=str(url),
            request_id=request_id,
            timeout=self._timeout_value(kwargs),
            request_body=kwargs.get("json") or kwargs.get("content"),
            duration_ms=elapsed_ms,
            error=error,
        )

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = self._get_client()
        request_id = str(uuid.uuid4())[:8]

        with timer() as t:
            try:
                response = await client.request(method, url, **kwargs)
            except Exception as e:
                self._log_failure(method, url, request_id, kwargs, t.stop(), e)
                raise

            self.logger.http_out(
                service=self.service,
                method=method,
                url=str(url),
                request_id=request_id,
                timeout=self._timeout_value(kwargs),
                request_body=kwargs.get("json") or kwargs.get("content"),
                status_code=response.status_code,
                response_body=response.text if response.status_code >= 400 else None,
                duration_ms=t.stop(),
            )
            return response

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    @asynccontextmanager
    async def stream(self, method: str, url: str, **kwargs: Any):
        """
        Stream a request; the status line is logged once headers arrive.

        Yields:
            httpx.Response in streaming mode
        """
        client = self._get_client()
        request_id = str(uuid.uuid4())[:8]

        with timer() as t:
            try:
                async with client.stream(method, url, **kwargs) as response:
                    self.logger.http_out(
                        service=self.service,
                        method=method,
                        url=str(url),
                        request_id=request_id,
                        timeout=self._timeout_value(kwargs),
                        request_body=kwargs.get("json"),
                        status_code=response.status_code,
                        duration_ms=t.stop(),
                    )
                    yield response
            except httpx.HTTPError as e:
                self._log_failure(method, url, request_id, kwargs, t.stop(), e)
                raise


# Service-specific clients

def worker_client(base_url: str, timeout: Optional[httpx.Timeout] = None, **kwargs) -> LoggedHTTPClient:
    """Client for the worker's loopback API. Inference may take very long."""
    return LoggedHTTPClient(
        service="worker",
        base_url=base_url,
        timeout=timeout or httpx.Timeout(connect=10.0, read=3600.0, write=60.0, pool=10.0),
        **kwargs
    )


def download_client(timeout: Optional[httpx.Timeout] = None, **kwargs) -> LoggedHTTPClient:
    """Client for fetching model packages from the model host."""
    return LoggedHTTPClient(
        service="model_host",
        timeout=timeout or httpx.Timeout(connect=30.0, read=60.0, write=60.0, pool=60.0),
        follow_redirects=True,
        **kwargs
    )
