"""HTTP GET capability used by the resolver, the workers and the key cache."""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

import aiohttp

from .constants import REQUEST_HEADERS, CONNECT_TIMEOUT, READ_TIMEOUT
from .exceptions import NetworkError


@dataclass
class HttpResponse:
    """A fully read HTTP response."""
    status: int
    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    @property
    def content_length(self) -> Optional[int]:
        """The declared Content-Length, or None if absent or unusable."""
        value = self.header('Content-Length')
        if value is None or not str(value).strip().isdigit():
            return None
        return int(value)

    @property
    def is_content_encoded(self) -> bool:
        encoding = (self.header('Content-Encoding') or '').strip().lower()
        return encoding not in ('', 'identity')

    def text(self, encoding: str = 'utf-8') -> str:
        return self.body.decode(encoding, 'replace')


class HttpFetcher:
    """
    Thin aiohttp wrapper returning ``HttpResponse`` objects.

    Use as an async context manager; the underlying session is shared by every
    request of one job.
    """

    def __init__(self, headers: Optional[Mapping[str, str]] = None,
                 connect_timeout: float = CONNECT_TIMEOUT, read_timeout: float = READ_TIMEOUT):
        self.headers = dict(REQUEST_HEADERS)
        if headers:
            self.headers.update(headers)
        self.timeout = aiohttp.ClientTimeout(total=None, connect=connect_timeout, sock_read=read_timeout)
        self.logger = logging.getLogger(__name__)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> 'HttpFetcher':
        self._session = aiohttp.ClientSession(headers=self.headers, timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def fetch(self, url: str) -> HttpResponse:
        """
        Issues a GET request and reads the whole body.

        Raises:
            NetworkError: On any transport failure or timeout.
        """
        if self._session is None:
            raise RuntimeError("HttpFetcher must be used inside 'async with'.")
        try:
            async with self._session.get(url, allow_redirects=True) as response:
                body = await response.read()
                return HttpResponse(response.status, body, dict(response.headers))
        except asyncio.TimeoutError:
            raise NetworkError(f"Request timed out: {url}", url=url)
        except aiohttp.ClientError as e:
            raise NetworkError(f"Connection failed: {e}", url=url)

    async def get(self, url: str) -> HttpResponse:
        """
        Like ``fetch`` but also rejects non-success statuses.

        Raises:
            NetworkError: On transport failure or a non-2xx status.
        """
        response = await self.fetch(url)
        if not response.ok:
            self.logger.debug(f"GET {url} -> HTTP {response.status}")
            raise NetworkError(f"HTTP {response.status} for {url}", url=url, status=response.status)
        return response
