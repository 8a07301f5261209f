"""HTTP webseed range fetching (BEP 19).

Provides:
- URL resolution for single-file and multi-file packs
- Byte-range GET requests with response validation
- Bounded retries with exponential backoff, rotating between webseeds
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Awaitable, Callable, Protocol, runtime_checkable
from urllib.parse import quote

import aiohttp

from packleech.utils.backoff import RetryPolicy
from packleech.utils.exceptions import NetworkError
from packleech.utils.logging_config import get_logger

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from packleech.models import FileEntry, NetworkConfig, PackMetadata

logger = get_logger(__name__)

_CONTENT_RANGE = re.compile(r"^\s*bytes\s+(\d+)-(\d+)/(\d+|\*)\s*$", re.IGNORECASE)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RangeRequest:
    """A contiguous byte range of one file, with every URL serving that file."""

    urls: tuple[str, ...]
    start: int
    length: int
    piece_index: int | None = None

    @property
    def end(self) -> int:
        """Inclusive last byte, as used in the ``Range`` header."""
        return self.start + self.length - 1

    @property
    def range_header(self) -> str:
        """Value of the ``Range`` header."""
        return f"bytes={self.start}-{self.end}"


@runtime_checkable
class Fetcher(Protocol):
    """Anything that can return the exact bytes of a range request."""

    async def fetch(self, request: RangeRequest) -> bytes:
        """Return exactly ``request.length`` bytes or raise :class:`NetworkError`."""
        ...


def resolve_webseed_url(base_url: str, metadata: PackMetadata, entry: FileEntry) -> str:
    """URL serving ``entry`` on the webseed ``base_url``.

    Single-file packs: the URL itself, or the URL plus the pack name when it
    ends with ``/``. Multi-file packs: the URL as a directory, followed by the
    pack name and the file's path components.
    """
    if metadata.single_file:
        if base_url.endswith("/"):
            return base_url + quote(metadata.name)
        return base_url
    base = base_url if base_url.endswith("/") else base_url + "/"
    return base + "/".join(quote(part) for part in entry.parts)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, when.timestamp() - time.time())


def _content_range_start(value: str | None) -> int | None:
    if not value:
        return None
    match = _CONTENT_RANGE.match(value)
    if match is None:
        return None
    return int(match.group(1))


async def _read_body(response: aiohttp.ClientResponse, limit: int) -> bytes:
    """Read at most ``limit + 1`` bytes, enough to tell an oversized body."""
    chunks = []
    received = 0
    while received <= limit:
        chunk = await response.content.read(limit + 1 - received)
        if not chunk:
            break
        chunks.append(chunk)
        received += len(chunk)
    return b"".join(chunks)


@dataclass
class _FetchState:
    active: list[str]
    turn: int = 0

    def next_url(self) -> str:
        url = self.active[self.turn % len(self.active)]
        self.turn += 1
        return url

    def drop(self, url: str) -> None:
        if url in self.active:
            self.active.remove(url)


class HttpFetcher:
    """Range fetcher backed by an aiohttp client session.

    Each :meth:`fetch` runs an explicit attempt loop: transient failures are
    retried with the delays of the :class:`RetryPolicy`, moving to the next
    webseed on every attempt; a permanent failure removes that webseed from
    the rotation for the request.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        request_timeout: float = 30.0,
        connect_timeout: float = 10.0,
        user_agent: str = "packleech/0.1",
        max_connections: int = 0,
        session: aiohttp.ClientSession | None = None,
        sleep: Sleep | None = None,
    ):
        """Initialize fetcher.

        Args:
            policy: Retry policy for transient failures
            request_timeout: Total timeout of one attempt in seconds
            connect_timeout: Connect timeout of one attempt in seconds
            user_agent: ``User-Agent`` header value
            max_connections: Connection pool limit (0 = aiohttp default)
            session: Externally owned session to use instead of a private one
            sleep: Coroutine used to wait between attempts

        """
        self.policy = policy or RetryPolicy()
        self.timeout = aiohttp.ClientTimeout(
            total=request_timeout, connect=connect_timeout
        )
        self.user_agent = user_agent
        self.max_connections = max_connections
        self.session = session
        self._owns_session = session is None
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_config(cls, config: NetworkConfig) -> HttpFetcher:
        """Build a fetcher from the network configuration."""
        policy = RetryPolicy(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            jitter=config.jitter,
        )
        return cls(
            policy=policy,
            request_timeout=config.request_timeout,
            connect_timeout=config.connect_timeout,
            user_agent=config.user_agent,
            max_connections=config.concurrency * 2,
        )

    async def start(self) -> None:
        """Open the client session."""
        if self.session is None:
            connector = aiohttp.TCPConnector(limit=self.max_connections or 100)
            self.session = aiohttp.ClientSession(
                timeout=self.timeout,
                connector=connector,
                headers={"User-Agent": self.user_agent},
            )
            self._owns_session = True

    async def stop(self) -> None:
        """Close the client session if this fetcher opened it."""
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    async def __aenter__(self) -> HttpFetcher:
        """Start on context entry."""
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        """Stop on context exit."""
        await self.stop()

    async def fetch(self, request: RangeRequest) -> bytes:
        """Fetch the exact bytes of ``request``.

        Raises:
            NetworkError: Permanent (``transient=False``) once every webseed
                failed permanently or the retry budget is exhausted

        """
        if not request.urls:
            msg = "Range request has no webseed URL"
            raise ValueError(msg)
        if self.session is None:
            await self.start()

        state = _FetchState(active=list(request.urls))
        attempt = 0
        while True:
            attempt += 1
            url = state.next_url()
            try:
                return await self._attempt(url, request)
            except NetworkError as e:
                if e.permanent:
                    state.drop(url)
                    if not state.active:
                        raise NetworkError(
                            e.message,
                            transient=False,
                            status=e.status,
                            url=url,
                            attempts=attempt,
                            retryable=e.retryable,
                        ) from e
                    logger.warning("Dropping webseed %s for this range: %s", url, e.message)
                    continue

                if not self.policy.should_retry(attempt):
                    msg = (
                        f"Giving up on {request.range_header} after {attempt} "
                        f"attempts: {e.message}"
                    )
                    raise NetworkError(
                        msg,
                        transient=False,
                        status=e.status,
                        url=url,
                        attempts=attempt,
                        retryable=True,
                    ) from e

                delay = self.policy.delay_for(attempt)
                if e.retry_after is not None:
                    delay = max(delay, min(e.retry_after, self.policy.max_delay))
                logger.warning(
                    "Attempt %d for %s of %s failed (%s); retrying in %.2fs",
                    attempt,
                    request.range_header,
                    url,
                    e.message,
                    delay,
                )
                await self._sleep(delay)

    async def _attempt(self, url: str, request: RangeRequest) -> bytes:
        """Issue one range request and validate the response."""
        assert self.session is not None  # nosec B101 - started in fetch()
        headers = {"Range": request.range_header, "User-Agent": self.user_agent}
        logger.debug("GET %s Range: %s", url, request.range_header)
        try:
            async with self.session.get(
                url, headers=headers, timeout=self.timeout
            ) as response:
                return await self._read_response(url, request, response)
        except asyncio.TimeoutError as e:
            msg = f"Timed out fetching {url}"
            raise NetworkError(msg, transient=True, url=url) from e
        except aiohttp.ClientError as e:
            msg = f"Connection error fetching {url}: {e}"
            raise NetworkError(msg, transient=True, url=url) from e

    async def _read_response(
        self,
        url: str,
        request: RangeRequest,
        response: aiohttp.ClientResponse,
    ) -> bytes:
        status = response.status
        if status == 206:
            start = _content_range_start(response.headers.get("Content-Range"))
            if start is not None and start != request.start:
                msg = f"Server returned range starting at {start}, expected {request.start}"
                raise NetworkError(
                    msg, transient=False, status=status, url=url, retryable=False
                )
            data = await _read_body(response, request.length)
            if len(data) != request.length:
                msg = f"Expected {request.length} bytes, received {len(data)}"
                raise NetworkError(msg, transient=True, status=status, url=url)
            return data

        if status == 200:
            # The server ignored the Range header; only usable if the whole
            # file is exactly the requested range.
            declared = response.content_length
            if request.start != 0 or (
                declared is not None and declared != request.length
            ):
                msg = f"Server does not support range requests ({url})"
                raise NetworkError(
                    msg, transient=False, status=status, url=url, retryable=False
                )
            data = await _read_body(response, request.length)
            if len(data) != request.length:
                msg = f"Server does not support range requests ({url})"
                raise NetworkError(
                    msg, transient=False, status=status, url=url, retryable=False
                )
            return data

        retry_after = _parse_retry_after(response.headers.get("Retry-After"))
        if status >= 500 or status in (408, 429):
            msg = f"HTTP {status} from {url}"
            raise NetworkError(
                msg, transient=True, status=status, url=url, retry_after=retry_after
            )
        if 400 <= status < 500:
            msg = f"HTTP {status} from {url}"
            raise NetworkError(
                msg, transient=False, status=status, url=url, retryable=False
            )
        msg = f"Unexpected HTTP {status} from {url}"
        raise NetworkError(msg, transient=True, status=status, url=url)

