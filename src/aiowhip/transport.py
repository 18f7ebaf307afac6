import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import aiohttp
from multidict import CIMultiDict, CIMultiDictProxy
from yarl import URL

logger = logging.getLogger(__name__)

MAX_REDIRECTS = 10
REDIRECT_CODES = (301, 307)


def resolve_url(base: str, location: str) -> str:
    """
    Resolve a `Location` header value against `base`.

    Absolute values are returned as is, values starting with `/` replace the
    path of `base`, anything else replaces the last segment of its path.

    :raises ValueError: if `location` is not a valid URL.
    """
    return str(URL(base).join(URL(location)))


@dataclass
class HttpExchange:
    """
    The working state of a single request, across redirects.
    """

    method: str
    url: str
    payload: Optional[str] = None
    content_type: Optional[str] = None
    redirect_url: Optional[str] = None
    redirects: int = 0

    @property
    def target(self) -> str:
        return self.redirect_url or self.url


@dataclass
class WhipResponse:
    """
    The outcome of :meth:`WhipTransport.send`.

    A `status` of `0` means no final response was obtained, `reason` then
    says why.
    """

    status: int
    reason: str = ""
    headers: CIMultiDictProxy = field(
        default_factory=lambda: CIMultiDictProxy(CIMultiDict())
    )
    body: str = ""
    url: Optional[str] = None

    @property
    def content_type(self) -> Optional[str]:
        value = self.headers.get("Content-Type")
        if value is None:
            return None
        return value.split(";", 1)[0].strip().lower()

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class WhipTransport:
    """
    Issues the HTTP requests of a WHIP session.

    Every request carries the bearer token and the latest known ETag (as
    `If-Match`) when available. Redirects are followed manually so that the
    method and payload are preserved.

    :param server_url: The WHIP endpoint, used to resolve relative redirects.
    :param token: An optional bearer token.
    """

    def __init__(
        self,
        server_url: str,
        token: Optional[str] = None,
        max_redirects: int = MAX_REDIRECTS,
        timeout: Optional[float] = None,
    ) -> None:
        self.etag: Optional[str] = None
        self.max_redirects = max_redirects
        self.server_url = server_url
        self.token = token

        self._http: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()
            self._http = None

    async def send(
        self,
        method: str,
        url: str,
        payload: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> WhipResponse:
        """
        Send a request and return the final response.

        Only 301 and 307 are acted upon, any other status is returned as is.
        """
        exchange = HttpExchange(
            method=method, url=url, payload=payload, content_type=content_type
        )
        while True:
            try:
                response = await self._request(exchange)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                reason = str(exc) or exc.__class__.__name__
                logger.error("%s %s failed: %s", method, exchange.target, reason)
                return WhipResponse(status=0, reason=reason, url=exchange.target)

            if response.status not in REDIRECT_CODES:
                return response

            exchange.redirects += 1
            if exchange.redirects > self.max_redirects:
                logger.error("Too many redirects, giving up...")
                return WhipResponse(
                    status=0, reason="Too many redirects", url=exchange.target
                )
            location = response.headers.get("Location")
            if location is None:
                logger.error("Redirect without a Location header")
                return WhipResponse(
                    status=0, reason="Missing Location", url=exchange.target
                )
            try:
                exchange.redirect_url = resolve_url(self.server_url, location)
            except ValueError as exc:
                logger.error("Invalid redirect location %r: %s", location, exc)
                return WhipResponse(
                    status=0, reason="Invalid Location", url=exchange.target
                )
            logger.info("  -- Redirected to %s", exchange.redirect_url)

    async def _request(self, exchange: HttpExchange) -> WhipResponse:
        headers = {}
        data = None
        if exchange.payload is not None and exchange.content_type is not None:
            headers["Content-Type"] = exchange.content_type
            data = exchange.payload.encode("utf8")
        if self.token is not None:
            headers["Authorization"] = f"Bearer {self.token}"
        if self.etag is not None:
            headers["If-Match"] = self.etag

        if self._http is None:
            self._http = aiohttp.ClientSession(timeout=self._timeout)

        logger.debug("%s %s", exchange.method, exchange.target)
        async with self._http.request(
            exchange.method,
            exchange.target,
            data=data,
            headers=headers,
            allow_redirects=False,
        ) as response:
            body = (await response.read()).decode("utf8", errors="replace")
            return WhipResponse(
                status=response.status,
                reason=response.reason or "",
                headers=response.headers,
                body=body,
                url=exchange.target,
            )
