"""
Shared HTTP client for the source adapters.

Wraps a lazily created aiohttp ClientSession with a certifi-backed SSL
context, a User-Agent header (some upstreams reject anonymous clients) and a
bounded per-request timeout.
"""

import logging
import ssl
from typing import Any, Dict, Optional

import aiohttp
import certifi


class HttpClient:
    """Thin async JSON/text client used by every adapter."""

    def __init__(self, user_agent: str = "topiq/1.0", timeout_seconds: float = 4.0):
        self.logger = logging.getLogger(__name__)
        self.headers = {"User-Agent": user_agent, "Accept": "application/json"}
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp ClientSession with proper SSL configuration."""
        if self.session is None or self.session.closed:
            ssl_context = ssl.create_default_context(cafile=certifi.where())
            connector = aiohttp.TCPConnector(ssl=ssl_context)

            self.session = aiohttp.ClientSession(
                headers=self.headers,
                timeout=self.timeout,
                connector=connector
            )
        return self.session

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a URL and decode the JSON body. Raises on HTTP or decode errors."""
        session = await self._get_session()
        async with session.get(url, params=params) as response:
            response.raise_for_status()
            # Some upstreams send JSON with a text/plain content type
            return await response.json(content_type=None)

    async def get_text(self, url: str, params: Optional[Dict[str, Any]] = None) -> str:
        session = await self._get_session()
        async with session.get(url, params=params) as response:
            response.raise_for_status()
            return await response.text()

    async def close(self) -> None:
        """Close aiohttp session for cleanup."""
        if self.session and not self.session.closed:
            await self.session.close()
            self.session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
