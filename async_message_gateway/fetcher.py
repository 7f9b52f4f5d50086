"""Download images referenced by outgoing messages."""

import asyncio
from typing import Awaitable, Callable, List, Optional

import aiohttp

from .logger import get_logger

FetchCallable = Callable[[str], Awaitable[Optional[bytes]]]


class ImageFetcher:
    """Fetch image bytes over HTTP(S), falling back from https to http."""

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        max_redirects: int = 3,
        fetch_callable: Optional[FetchCallable] = None,
        logger=None,
    ):
        """Initialise the fetcher with optional overrides for testing."""
        self.timeout = timeout
        self.max_redirects = max_redirects
        self.fetch_callable = fetch_callable
        self.logger = logger or get_logger("ImageFetcher")

    @staticmethod
    def candidates(url: str) -> List[str]:
        """Return the URLs to try, in order."""
        urls = [url]
        if url.lower().startswith("https://"):
            urls.append("http://" + url[len("https://"):])
        return urls

    async def _download(self, url: str) -> Optional[bytes]:
        if self.fetch_callable is not None:
            return await self.fetch_callable(url)
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.get(url, headers={"Accept": "image/*"}, max_redirects=self.max_redirects) as resp:
                if not 200 <= resp.status < 300:
                    raise aiohttp.ClientResponseError(
                        resp.request_info, resp.history, status=resp.status, message=resp.reason or ""
                    )
                return await resp.read()

    async def fetch(self, url: str) -> Optional[bytes]:
        """Return the image content, or ``None`` when every candidate failed."""
        for candidate in self.candidates(url):
            try:
                content = await self._download(candidate)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                self.logger.warning("Image download from %s failed: %s", candidate, exc)
                continue
            if content:
                return content
        return None
