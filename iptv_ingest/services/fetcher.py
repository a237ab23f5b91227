"""
Rate-Limited HTTP Fetcher

The single valve through which the ingestion core touches the network.

- Per-provider in-flight limit (asyncio.Semaphore per provider id)
- Retries with exponential backoff on transport errors, timeouts, 5xx and 429
- Optional disk caching: callers pass the cache key, freshness comes from
  the cache policy
"""

import asyncio
import zlib
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..config import Settings, get_settings
from ..core.exceptions import (
    FetchError,
    FetchRateLimited,
    FetchStatus,
    FetchTimeout,
    FetchTransport,
)
from ..core.logging import get_logger
from .disk_cache import DiskCache

logger = get_logger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, (FetchTransport, FetchTimeout)):
        return True
    if isinstance(exc, FetchStatus):
        return exc.code == 429 or exc.code >= 500
    return False


class Fetcher:
    """
    Shared HTTP client with per-provider concurrency limits.

    Limits are registered per provider id with ``configure``; unknown ids
    fall back to ``default_concurrency``.
    """

    def __init__(
        self,
        cache: Optional[DiskCache] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        default_concurrency: int = 4,
    ):
        self.settings = settings or get_settings()
        self.cache = cache
        self.default_concurrency = default_concurrency
        self._limits: Dict[str, int] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._client = httpx.AsyncClient(
            timeout=self.settings.fetch_timeout_seconds,
            follow_redirects=True,
            transport=transport,
        )

    # =========================================================================
    # RATE LIMITS
    # =========================================================================

    def configure(self, provider_id: str, concurrent: int):
        """Set the in-flight limit for a provider. Takes effect for new waiters."""
        concurrent = max(1, int(concurrent))
        if self._limits.get(provider_id) != concurrent:
            self._limits[provider_id] = concurrent
            self._semaphores[provider_id] = asyncio.Semaphore(concurrent)

    def concurrency(self, provider_id: str) -> int:
        return self._limits.get(provider_id, self.default_concurrency)

    def _semaphore(self, provider_id: str) -> asyncio.Semaphore:
        if provider_id not in self._semaphores:
            self.configure(provider_id, self.default_concurrency)
        return self._semaphores[provider_id]

    # =========================================================================
    # REQUESTS
    # =========================================================================

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception(_should_retry),
            stop=stop_after_attempt(max(1, self.settings.fetch_max_attempts)),
            wait=wait_exponential(
                multiplier=self.settings.fetch_backoff_seconds,
                max=self.settings.fetch_backoff_max_seconds,
            ),
            reraise=True,
        )

    async def _send_once(
        self,
        provider_id: str,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        headers: Optional[Dict[str, str]],
        json_body: Any,
        timeout: Optional[float],
    ) -> httpx.Response:
        async with self._semaphore(provider_id):
            try:
                response = await self._client.request(
                    method,
                    url,
                    params=params,
                    headers=headers,
                    json=json_body,
                    timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
                )
            except httpx.TimeoutException as e:
                raise FetchTimeout(url) from e
            except httpx.TransportError as e:
                raise FetchTransport(url, str(e) or type(e).__name__) from e

        if response.status_code >= 400:
            logger.debug("fetch_status", provider_id=provider_id, url=url, status=response.status_code)
            raise FetchStatus(url, response.status_code)
        return response

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            return response.json()
        return response.text

    async def fetch(
        self,
        provider_id: str,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        cache_key: Optional[str] = None,
        timeout: Optional[float] = None,
        refresh: bool = False,
    ) -> Any:
        """
        Issue a request (or serve it from cache) and return the body.

        JSON content types are parsed; everything else is returned as text.
        ``refresh`` skips the cache lookup but still stores the new body.

        Raises:
            FetchTimeout, FetchTransport, FetchStatus, FetchRateLimited
        """
        if cache_key and self.cache is not None and not refresh:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug("fetch_cache_hit", provider_id=provider_id, key=cache_key)
                return cached

        try:
            async for attempt in self._retrying():
                with attempt:
                    attempt_num = attempt.retry_state.attempt_number
                    if attempt_num > 1:
                        logger.info("fetch_retry", provider_id=provider_id, url=url, attempt=attempt_num)
                    response = await self._send_once(
                        provider_id, method, url, params, headers, json_body, timeout
                    )
        except FetchStatus as e:
            if e.code == 429:
                raise FetchRateLimited(url) from e
            raise

        body = self._decode(response)
        if cache_key and self.cache is not None:
            self.cache.set(cache_key, body)
        return body

    async def get(self, provider_id: str, url: str, **kwargs) -> Any:
        return await self.fetch(provider_id, "GET", url, **kwargs)

    async def download(
        self,
        provider_id: str,
        url: str,
        cache_key: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Path:
        """
        Stream a (possibly gzipped) body to the cache and return its local path.

        Gzip payloads are detected by magic bytes and decompressed while
        writing, so the cached file is always plain.
        """
        if self.cache is None:
            raise FetchError("download requires a disk cache", url=url)

        if self.cache.is_fresh(cache_key):
            logger.debug("download_cache_hit", provider_id=provider_id, key=cache_key)
            return self.cache.path_for(cache_key)

        async for attempt in self._retrying():
            with attempt:
                await self._stream_to_file(provider_id, url, params, cache_key)

        path = self.cache.commit(cache_key)
        logger.info("download_completed", provider_id=provider_id, key=cache_key, bytes=path.stat().st_size)
        return path

    async def _stream_to_file(self, provider_id: str, url: str, params, cache_key: str):
        tmp = self.cache.temp_path_for(cache_key)
        async with self._semaphore(provider_id):
            try:
                async with self._client.stream("GET", url, params=params) as response:
                    if response.status_code >= 400:
                        raise FetchStatus(url, response.status_code)
                    # Raw bytes: a gzip transfer encoding and a .gz file both
                    # start with the gzip magic.
                    decompressor = None
                    head = b""
                    with tmp.open("wb") as out:
                        async for chunk in response.aiter_raw():
                            if decompressor is None and head is not None:
                                head += chunk
                                if len(head) < 2:
                                    continue
                                if head[:2] == GZIP_MAGIC:
                                    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
                                chunk, head = head, None
                            out.write(decompressor.decompress(chunk) if decompressor else chunk)
                        if head:
                            out.write(head)
                        if decompressor:
                            out.write(decompressor.flush())
            except httpx.TimeoutException as e:
                raise FetchTimeout(url) from e
            except httpx.TransportError as e:
                raise FetchTransport(url, str(e) or type(e).__name__) from e
            except zlib.error as e:
                raise FetchTransport(url, f"corrupt gzip body: {e}") from e

    async def aclose(self):
        await self._client.aclose()


