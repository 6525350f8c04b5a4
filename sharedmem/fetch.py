"""
Bounded Fetcher — size, time and redirect limited HTTP GET.

Redirects are followed by an explicit loop (httpx auto-follow is off) so
that the URL guard runs before EVERY connection, including each redirect
target.  The body is streamed and the connection dropped as soon as the
byte cap is crossed; partial data is never returned.

Limits (defaults, see FetchConfig):
    max_bytes        1 MiB per response body
    timeout_seconds  15 s per hop
    max_redirects    5 hops followed; the 6th redirect fails
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin

import httpx

from sharedmem.config import FetchConfig
from sharedmem.errors import (
    FetchTimeout,
    HTTPStatusError,
    InvalidURL,
    NetworkError,
    RedirectMissingLocation,
    ResponseTooLarge,
    TooManyRedirects,
)
from sharedmem.urlguard import Resolver, validate_url

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
TEXTUAL_CONTENT_TYPES = ("text/html", "text/plain", "application/xhtml+xml")


@dataclass
class FetchResult:
    """Outcome of a successful fetch."""
    url: str
    status: int
    content_type: str
    text: str
    bytes_read: int
    redirects: int = 0


class BoundedFetcher:
    """HTTP GET with SSRF validation on every hop and hard resource bounds."""

    def __init__(
        self,
        config: Optional[FetchConfig] = None,
        resolver: Optional[Resolver] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Args:
            config: Fetch limits.  Defaults to FetchConfig().
            resolver: Hostname resolver passed to the URL guard.
            transport: httpx transport override (tests use MockTransport).
        """
        self._config = config or FetchConfig()
        self._resolver = resolver
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(self._config.timeout_seconds),
            follow_redirects=False,
            transport=self._transport,
            headers={
                "User-Agent": self._config.user_agent,
                "Accept": self._config.accept,
            },
        )

    def fetch(self, url: str) -> FetchResult:
        """
        Fetch url and return its decoded body.

        Raises:
            SafetyRejection: The URL or a redirect target failed the guard.
            TooManyRedirects, RedirectMissingLocation, HTTPStatusError,
            ResponseTooLarge, FetchTimeout, NetworkError.
        """
        current = url
        hops = 0
        with self._client() as client:
            while True:
                # httpx resolves the host again on connect; a resolver that
                # answers differently the second time is not caught here.
                current = validate_url(current, resolver=self._resolver)
                result = self._get_one(client, current, hops)
                if isinstance(result, FetchResult):
                    return result
                # Redirect: result is the next URL
                hops += 1
                if hops > self._config.max_redirects:
                    raise TooManyRedirects("Too many redirects")
                logger.debug("Redirect %d: %s -> %s", hops, current, result)
                current = result

    def _get_one(self, client: httpx.Client, url: str, hops: int):
        """Issue one GET.  Returns a FetchResult, or the redirect target URL."""
        deadline = time.monotonic() + self._config.timeout_seconds
        try:
            with client.stream("GET", url) as resp:
                status = resp.status_code
                if status in REDIRECT_STATUSES:
                    location = resp.headers.get("location")
                    if not location:
                        raise RedirectMissingLocation("Redirect with no location")
                    return urljoin(url, location)
                if status != 200:
                    raise HTTPStatusError(status)

                content_type = resp.headers.get("content-type", "")
                if not any(t in content_type for t in TEXTUAL_CONTENT_TYPES):
                    # Accepted anyway; extraction may be degraded.
                    logger.debug(
                        "Non-text content type %r from %s", content_type, url,
                    )

                body = self._read_capped(resp, deadline)
                return FetchResult(
                    url=url,
                    status=status,
                    content_type=content_type,
                    text=body.decode("utf-8", errors="replace"),
                    bytes_read=len(body),
                    redirects=hops,
                )
        except httpx.InvalidURL as e:
            raise InvalidURL("Invalid URL") from e
        except httpx.TimeoutException as e:
            raise FetchTimeout(f"Timeout: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Network error: {e}") from e

    def _read_capped(self, resp: httpx.Response, deadline: float) -> bytes:
        """Read the streamed body, aborting once it exceeds max_bytes or the hop deadline."""
        limit = self._config.max_bytes
        chunks = []
        total = 0
        for chunk in resp.iter_bytes():
            total += len(chunk)
            if total > limit:
                resp.close()
                raise ResponseTooLarge(
                    f"Response too large (>{limit} bytes)"
                )
            if time.monotonic() > deadline:
                resp.close()
                raise FetchTimeout("Timeout: body not received in time")
            chunks.append(chunk)
        return b"".join(chunks)

