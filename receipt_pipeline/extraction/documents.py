"""Document download with a bounded in-process cache.

Fetched documents are kept as ``data:`` URLs so repeated extraction of the
same upload (queue redelivery, explicit resend) skips the network.
"""

import base64
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from receipt_pipeline.shared.config import Settings
from receipt_pipeline.shared.errors import DocumentFetchError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "image/jpeg"


@dataclass
class _CacheEntry:
    data: str
    stored_at: float


class DocumentCache:
    """TTL cache of encoded documents keyed by URL.

    Eviction is opportunistic: once the cache grows past ``max_entries``,
    expired entries are dropped on the next write, then the oldest live ones
    until the cache is back at its cap. Races between concurrent
    jobs are harmless; a miss only costs a re-fetch.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: _CacheEntry, now: float) -> bool:
        return now - entry.stored_at >= self.ttl_seconds

    def get(self, url: str) -> str | None:
        entry = self._entries.get(url)
        if entry is None:
            return None
        if self._expired(entry, self._clock()):
            self._entries.pop(url, None)
            return None
        return entry.data

    def set(self, url: str, data: str) -> None:
        now = self._clock()
        # Re-inserting moves the key to the end, keeping insertion order oldest-first
        self._entries.pop(url, None)
        self._entries[url] = _CacheEntry(data=data, stored_at=now)
        if len(self._entries) > self.max_entries:
            self.evict_expired(now)
            while len(self._entries) > self.max_entries:
                del self._entries[next(iter(self._entries))]

    def evict_expired(self, now: float | None = None) -> int:
        """Drop expired entries and return how many were removed."""
        now = self._clock() if now is None else now
        stale = [url for url, entry in self._entries.items() if self._expired(entry, now)]
        for url in stale:
            del self._entries[url]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()


class DocumentFetcher:
    """Downloads receipt documents and encodes them as base64 data URLs."""

    def __init__(
        self,
        settings: Settings,
        cache: DocumentCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize fetcher.

        Args:
            settings: Application settings (timeouts, cache sizing)
            cache: Cache instance; a new one sized from settings if omitted
            transport: Optional httpx transport, used by tests
        """
        self.settings = settings
        self.cache = cache or DocumentCache(
            ttl_seconds=settings.document_cache_ttl_seconds,
            max_entries=settings.document_cache_max_entries,
        )
        self._transport = transport

    async def fetch_data_url(self, url: str) -> str:
        """Return the document at ``url`` as ``data:<type>;base64,<payload>``.

        Raises:
            DocumentFetchError: On network failure, non-2xx response or non-image content
        """
        cached = self.cache.get(url)
        if cached is not None:
            return cached

        try:
            response = await self._download(url)
        except httpx.HTTPError as e:
            raise DocumentFetchError(f"Failed to fetch document: {e}") from e

        if response.status_code >= 400:
            raise DocumentFetchError(f"Failed to fetch document: HTTP {response.status_code}")

        content_type = response.headers.get("content-type", DEFAULT_CONTENT_TYPE)
        content_type = content_type.split(";")[0].strip() or DEFAULT_CONTENT_TYPE
        if not content_type.startswith("image/"):
            raise DocumentFetchError(f"Unsupported file type: {content_type}")

        encoded = base64.b64encode(response.content).decode("ascii")
        data_url = f"data:{content_type};base64,{encoded}"
        self.cache.set(url, data_url)
        return data_url

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential_jitter(initial=0.5, max=2),
        stop=stop_after_attempt(2),
        reraise=True,
    )
    async def _download(self, url: str) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self.settings.document_fetch_timeout_seconds,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            logger.debug(f"Fetching document {url}")
            return await client.get(url, headers={"User-Agent": "Mozilla/5.0"})
