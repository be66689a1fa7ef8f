"""
HTTP Job Executor

Executes exactly one HTTP request per job under a per-job policy:
protocol version, redirect following, TLS verification, keep-alive and
an overall deadline. Every outcome is either a NormalizedResponse or an
HttpExecutionError carrying a descriptive message.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ..errors import HttpExecutionError, RedirectLimitExceeded, RequestTimeout
from ..protocol import HttpOptions, HttpRequest

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000

# Connection-specific headers are illegal in HTTP/2
HTTP2_FORBIDDEN_HEADERS = frozenset(
    ("connection", "keep-alive", "proxy-connection", "transfer-encoding", "upgrade")
)


@dataclass
class NormalizedResponse:
    """
    Final response of a job.

    Attributes:
        status: Numeric status code
        headers: Lower-cased header names; repeated values joined by ", "
        body: Body decoded as UTF-8 (invalid bytes replaced)
        redirects: Number of redirect hops followed
    """

    status: int
    headers: dict[str, str]
    body: str
    redirects: int = 0


def _describe(error: Exception) -> str:
    message = str(error)
    return message if message else type(error).__name__


class HttpExecutor:
    """
    Runs HTTP jobs.

    Holds no per-job state. The only state shared across jobs is the pool
    of keep-alive clients, keyed by protocol and TLS policy.

    Usage:
        >>> executor = HttpExecutor()
        >>> response = await executor.execute(request, options, timeout_ms=5000)
        >>> await executor.aclose()
    """

    def __init__(
        self,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the executor.

        Args:
            default_timeout_ms: Deadline for jobs that carry no timeoutMs
            transport: Transport override (tests use httpx.MockTransport)
        """
        self.default_timeout_ms = default_timeout_ms
        self._transport = transport
        self._pooled: dict[tuple[bool, bool], httpx.AsyncClient] = {}

    async def execute(
        self,
        request: HttpRequest,
        options: Optional[HttpOptions] = None,
        timeout_ms: Optional[int] = None,
    ) -> NormalizedResponse:
        """
        Execute one request, following redirects per policy.

        The deadline covers the whole redirect chain. When it expires the
        in-flight request is cancelled and its connection closed.

        Raises:
            RequestTimeout: deadline expired
            RedirectLimitExceeded: next hop would exceed maxRedirects
            HttpExecutionError: any other transport or URL failure
        """
        options = options or HttpOptions()
        timeout_ms = timeout_ms or self.default_timeout_ms

        try:
            return await asyncio.wait_for(
                self._run(request, options),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            raise RequestTimeout(timeout_ms) from None

    async def _run(self, request: HttpRequest, options: HttpOptions) -> NormalizedResponse:
        http2 = options.http_version == "2"
        if options.http_version == "1.0":
            logger.debug("HTTP/1.0 requested, sending over the HTTP/1.1 transport")

        client, owned = self._client_for(http2, options)
        try:
            return await self._follow(client, request, options, http2)
        finally:
            if owned:
                await client.aclose()

    async def _follow(
        self,
        client: httpx.AsyncClient,
        request: HttpRequest,
        options: HttpOptions,
        http2: bool,
    ) -> NormalizedResponse:
        """Send the request and each redirect hop with the same method, headers and body."""
        url = request.url
        headers = self._build_headers(request, options, http2)
        content = request.body.encode("utf-8") if request.body else None
        redirects = 0

        while True:
            logger.debug(f"{request.method} {url}")
            try:
                response = await client.request(
                    request.method,
                    url,
                    headers=headers,
                    content=content,
                )
            except httpx.TimeoutException:
                raise RequestTimeout() from None
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                raise HttpExecutionError(_describe(e)) from e

            location = response.headers.get("location")
            if options.follow_redirects and 300 <= response.status_code < 400 and location:
                if redirects >= options.max_redirects:
                    raise RedirectLimitExceeded(options.max_redirects)
                try:
                    url = str(httpx.URL(url).join(location))
                except httpx.InvalidURL as e:
                    raise HttpExecutionError(f"Invalid redirect location: {location}") from e
                redirects += 1
                continue

            normalized = self._normalize(response)
            normalized.redirects = redirects
            return normalized

    def _build_headers(
        self,
        request: HttpRequest,
        options: HttpOptions,
        http2: bool,
    ) -> list[tuple[str, str]]:
        headers = list((request.headers or {}).items())

        if http2:
            return [(k, v) for k, v in headers if k.lower() not in HTTP2_FORBIDDEN_HEADERS]

        if options.keep_alive is False and not any(k.lower() == "connection" for k, _ in headers):
            headers.append(("Connection", "close"))
        return headers

    def _client_for(self, http2: bool, options: HttpOptions) -> tuple[httpx.AsyncClient, bool]:
        """
        Get a client for the job.

        Returns:
            (client, owned) where owned clients must be closed by the caller
        """
        verify = options.reject_unauthorized

        if options.keep_alive:
            key = (http2, verify)
            client = self._pooled.get(key)
            if client is None or client.is_closed:
                client = self._build_client(http2, verify, keep_alive=True)
                self._pooled[key] = client
            return client, False

        return self._build_client(http2, verify, keep_alive=options.keep_alive), True

    def _build_client(
        self,
        http2: bool,
        verify: bool,
        keep_alive: Optional[bool],
    ) -> httpx.AsyncClient:
        limits = httpx.Limits(max_keepalive_connections=0) if keep_alive is False else httpx.Limits()

        # Redirects are followed by _follow() and the deadline by execute()
        return httpx.AsyncClient(
            http1=not http2,
            http2=http2,
            verify=verify,
            follow_redirects=False,
            timeout=None,
            limits=limits,
            transport=self._transport,
        )

    @staticmethod
    def _normalize(response: httpx.Response) -> NormalizedResponse:
        headers: dict[str, str] = {}
        for name, value in response.headers.multi_items():
            if name in headers:
                headers[name] = f"{headers[name]}, {value}"
            else:
                headers[name] = value

        return NormalizedResponse(
            status=response.status_code,
            headers=headers,
            body=response.content.decode("utf-8", errors="replace"),
        )

    async def aclose(self) -> None:
        """Close pooled keep-alive clients."""
        clients = list(self._pooled.values())
        self._pooled.clear()
        for client in clients:
            await client.aclose()
