"""
Static-HTML implementation of the page interaction surface.

Fetches documents with aiohttp and answers DOM queries with selectolax.
There is no script execution, so ``scroll_to_bottom`` is a no-op and
``click`` only works for elements that carry a link target. That is
enough for server-rendered listings with numbered or next-link
pagination; JavaScript-driven pages need a browser-backed adapter.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional
from urllib.parse import urljoin

import aiohttp
import structlog
from selectolax.parser import HTMLParser, Node

from shelfcrawl.config.config import HttpConfig

logger = structlog.get_logger(__name__)

_CLICK_TARGET_ATTRIBUTES = ("href", "data-href", "data-next-url", "data-url")


class HttpPage:
    """One browsing context over a shared aiohttp session."""

    def __init__(self, session: aiohttp.ClientSession, *, default_timeout_ms: int = 10000) -> None:
        self.session = session
        self.default_timeout_ms = default_timeout_ms
        self._url = ""
        self._status: Optional[int] = None
        self._tree: Optional[HTMLParser] = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def last_status(self) -> Optional[int]:
        return self._status

    def load_html(self, html: str, url: str = "") -> None:
        """Replace the current document without a network round trip."""
        self._tree = HTMLParser(html)
        self._url = url

    async def navigate(self, url: str, timeout_ms: Optional[int] = None) -> bool:
        target = urljoin(self._url, url) if self._url else url
        timeout = aiohttp.ClientTimeout(total=(timeout_ms or self.default_timeout_ms) / 1000.0)
        try:
            async with self.session.get(target, timeout=timeout, allow_redirects=True) as response:
                self._status = response.status
                if response.status >= 400:
                    logger.debug("Navigation rejected", url=target, status=response.status)
                    return False
                html = await response.text(errors="replace")
                self._tree = HTMLParser(html)
                self._url = str(response.url)
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._status = None
            logger.debug("Navigation failed", url=target, error=str(e) or type(e).__name__)
            return False

    def _require_tree(self) -> HTMLParser:
        if self._tree is None:
            self._tree = HTMLParser("")
        return self._tree

    async def query_all(self, selector: str) -> List[Node]:
        return list(self._require_tree().css(selector))

    async def text_of(self, element: Node) -> Optional[str]:
        text = element.text(strip=True)
        return text or None

    async def attribute_of(self, element: Node, name: str) -> Optional[str]:
        value = element.attributes.get(name)
        return value if value else None

    async def click(self, element: Node) -> bool:
        """Follow the element's link target, if it has one."""
        for attribute in _CLICK_TARGET_ATTRIBUTES:
            target = element.attributes.get(attribute)
            if not target or target.startswith("#") or target.lower().startswith("javascript:"):
                continue
            return await self.navigate(urljoin(self._url, target))
        return False

    async def scroll_to_bottom(self) -> None:
        return None

    async def count_matching(self, selector: str) -> int:
        return len(self._require_tree().css(selector))


class HttpPageFactory:
    """
    Hands out HttpPage instances backed by one pooled session.

    Usable as an async context manager; the session is created on first use
    and closed by ``close()``.
    """

    def __init__(self, config: Optional[HttpConfig] = None, *, navigation_timeout_ms: int = 10000) -> None:
        self.config = config or HttpConfig()
        self.navigation_timeout_ms = navigation_timeout_ms
        self.session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self.session is None or self.session.closed:
                self.session = aiohttp.ClientSession(
                    connector=aiohttp.TCPConnector(limit=self.config.max_connections),
                    timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
                    headers={"User-Agent": self.config.user_agent},
                )
            return self.session

    @asynccontextmanager
    async def open(self) -> AsyncIterator[HttpPage]:
        session = await self._get_session()
        yield HttpPage(session, default_timeout_ms=self.navigation_timeout_ms)

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None

    async def __aenter__(self) -> "HttpPageFactory":
        await self._get_session()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

