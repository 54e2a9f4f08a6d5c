"""
Pagination detection and single-step advancement.

The controller is decision logic over the PageInteraction protocol. It
never loops on its own: callers drive ``extract -> record_items ->
should_stop -> advance`` and the controller guarantees termination through
three independent limits (``max_pages``, ``max_items`` and consecutive empty
steps) plus a visited-URL set that treats landing on a known page as no
progress. Any exception inside detection or advancement fails closed.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

import structlog

from shelfcrawl.config.config import PaginationConfig
from shelfcrawl.observability import increment
from shelfcrawl.pagination.probes import (
    CLICKABLE_SELECTOR,
    DEFAULT_PROBES,
    LOAD_MORE_SELECTORS,
    NEXT_CONTROL_SELECTORS,
    NEXT_URL_HINTS,
    NUMBERED_SELECTORS,
    Probe,
    is_load_more_text,
    is_next_text,
)
from shelfcrawl.protocols import PageInteraction, PaginationType

PAGE_PARAMETERS = ("page", "p", "pg", "pagenumber", "page_number", "currentpage")
_PATH_PAGE = re.compile(r"/page/(\d+)(/|$)", re.IGNORECASE)


def canonical_url(url: str) -> str:
    """Lowercase scheme and host, drop the fragment, sort the query, trim a trailing slash."""
    parts = urlparse(url)
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    path = parts.path.rstrip("/") or "/"
    return urlunparse((parts.scheme.lower(), parts.netloc.lower(), path, "", query, ""))


def increment_page_url(url: str, current_page: int) -> Optional[str]:
    """
    Next-page URL derived from a page counter in the query or path.

    Returns None when the URL carries no recognisable counter.
    """
    parts = urlparse(url)
    params = parse_qsl(parts.query, keep_blank_values=True)
    for index, (key, value) in enumerate(params):
        if key.lower() in PAGE_PARAMETERS and value.isdigit():
            params[index] = (key, str(int(value) + 1))
            return urlunparse(parts._replace(query=urlencode(params)))

    match = _PATH_PAGE.search(parts.path)
    if match:
        number = int(match.group(1)) + 1
        path = parts.path[: match.start()] + f"/page/{number}" + match.group(2) + parts.path[match.end() :]
        return urlunparse(parts._replace(path=path))
    return None


@dataclass
class PaginationSession:
    """Traversal state for one category's listing pages."""

    start_url: str = ""
    max_pages: int = 20
    max_items: int = 500
    empty_page_threshold: int = 1
    pagination_type: PaginationType = PaginationType.UNKNOWN
    current_page: int = 1
    seen_item_keys: Set[str] = field(default_factory=set)
    consecutive_empty_pages: int = 0
    visited_urls: Set[str] = field(default_factory=set)
    stop_reason: Optional[str] = None

    @property
    def items_collected(self) -> int:
        return len(self.seen_item_keys)

    def to_state(self) -> Dict[str, Any]:
        """Snapshot stored as checkpoint pagination state."""
        return {
            "start_url": self.start_url,
            "pagination_type": self.pagination_type.value,
            "current_page": self.current_page,
            "items_collected": self.items_collected,
            "consecutive_empty_pages": self.consecutive_empty_pages,
            "stop_reason": self.stop_reason,
        }


class PaginationController:
    """
    Detects the pagination mechanism of a listing and advances one step.

    Args:
        config: Timing and selector settings.
        probes: Ordered detection probes; the first match wins.
        sleep: Awaitable used for the post-click / post-scroll wait.
    """

    def __init__(
        self,
        config: Optional[PaginationConfig] = None,
        probes: Sequence[Probe] = DEFAULT_PROBES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or PaginationConfig()
        self.probes = tuple(probes)
        self._sleep = sleep
        self.logger = structlog.get_logger(self.__class__.__name__)

    def new_session(
        self,
        start_url: str,
        *,
        max_pages: int = 20,
        max_items: int = 500,
        empty_page_threshold: Optional[int] = None,
    ) -> PaginationSession:
        session = PaginationSession(
            start_url=start_url,
            max_pages=max_pages,
            max_items=max_items,
            empty_page_threshold=empty_page_threshold or self.config.empty_page_threshold,
        )
        if start_url:
            session.visited_urls.add(canonical_url(start_url))
        return session

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def detect_type(self, page: PageInteraction) -> PaginationType:
        """Run the probes in priority order; ``single-page`` if none match."""
        for probe in self.probes:
            try:
                result = await probe.run(page)
            except Exception as e:
                self.logger.warning("Pagination probe failed", probe=probe.name, url=page.url, error=str(e))
                return PaginationType.UNKNOWN
            if result.found:
                self.logger.debug(
                    "Pagination detected", type=result.pagination_type.value, evidence=result.evidence, url=page.url
                )
                return result.pagination_type
        return PaginationType.SINGLE_PAGE

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def record_items(self, session: PaginationSession, items: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """
        Register the items seen after a step and return the new ones.

        Items are keyed by ``item_key`` (falling back to ``url``). Only as many
        new items as ``max_items`` still allows are accepted. A step that adds
        nothing increments ``consecutive_empty_pages``.
        """
        accepted: List[Dict[str, Any]] = []
        for item in items:
            if session.items_collected >= session.max_items:
                break
            key = item.get("item_key") or item.get("url")
            if not key:
                continue
            key = str(key)
            if key in session.seen_item_keys:
                continue
            session.seen_item_keys.add(key)
            accepted.append(dict(item))

        if accepted:
            session.consecutive_empty_pages = 0
        else:
            session.consecutive_empty_pages += 1
        return accepted

    def should_stop(self, session: PaginationSession) -> bool:
        if session.items_collected >= session.max_items:
            session.stop_reason = "max_items_reached"
        elif session.consecutive_empty_pages >= session.empty_page_threshold:
            session.stop_reason = "empty_pages"
        elif session.current_page >= session.max_pages:
            session.stop_reason = "max_pages_reached"
        else:
            return False
        return True

    # ------------------------------------------------------------------
    # Advancement
    # ------------------------------------------------------------------

    async def advance(self, page: PageInteraction, session: PaginationSession) -> bool:
        """
        Move the page one step forward. Returns True only on verified progress.

        Never steps past ``max_pages`` and never raises.
        """
        if session.current_page >= session.max_pages:
            session.stop_reason = "max_pages_reached"
            return False
        if session.items_collected >= session.max_items:
            session.stop_reason = "max_items_reached"
            return False

        ptype = session.pagination_type
        try:
            if ptype is PaginationType.NUMBERED:
                moved = await self._advance_numbered(page, session)
            elif ptype is PaginationType.NEXT_BUTTON:
                moved = await self._advance_next(page, session)
            elif ptype is PaginationType.LOAD_MORE:
                moved = await self._advance_load_more(page)
            elif ptype is PaginationType.INFINITE_SCROLL:
                moved = await self._advance_infinite_scroll(page)
            else:
                moved = False
        except Exception as e:
            self.logger.warning("Pagination advance failed", type=ptype.value, url=page.url, error=str(e))
            session.stop_reason = "error"
            moved = False

        if moved:
            session.current_page += 1
        elif session.stop_reason is None:
            session.stop_reason = "no_more_pages"

        increment("pagination_steps_total", labels={"pagination_type": ptype.value, "outcome": str(moved).lower()})
        return moved

    async def _advance_numbered(self, page: PageInteraction, session: PaginationSession) -> bool:
        url = await self.resolve_next_url(page, session)
        if url is not None:
            return await self._goto(page, url, session)

        # Only step to a page the listing actually links to.
        control = await self._find_page_number(page, session.current_page + 1)
        if control is None:
            return False
        url = self._fresh(self._absolute(page, await page.attribute_of(control, "href")), session)
        if url is None:
            url = self._fresh(increment_page_url(page.url, session.current_page), session)
        if url is not None:
            return await self._goto(page, url, session)
        return await self._click_and_verify(page, control, session)

    async def _advance_next(self, page: PageInteraction, session: PaginationSession) -> bool:
        url = await self.resolve_next_url(page, session)
        if url is not None:
            return await self._goto(page, url, session)

        control = await self._find_control(page, NEXT_CONTROL_SELECTORS, is_next_text)
        if control is None:
            return False
        return await self._click_and_verify(page, control, session)

    async def _advance_load_more(self, page: PageInteraction) -> bool:
        control = await self._find_control(page, LOAD_MORE_SELECTORS, is_load_more_text)
        if control is None:
            return False
        before = await page.count_matching(self.config.item_selector)
        if not await page.click(control):
            return False
        await self._sleep(self.config.scroll_delay_ms / 1000.0)
        after = await page.count_matching(self.config.item_selector)
        return after > before

    async def _advance_infinite_scroll(self, page: PageInteraction) -> bool:
        before = await page.count_matching(self.config.item_selector)
        await page.scroll_to_bottom()
        await self._sleep(self.config.scroll_delay_ms / 1000.0)
        after = await page.count_matching(self.config.item_selector)
        return after > before

    # ------------------------------------------------------------------
    # Resolution helpers
    # ------------------------------------------------------------------

    async def resolve_next_url(self, page: PageInteraction, session: PaginationSession) -> Optional[str]:
        """First unvisited same-origin URL from the machine-readable next hints."""
        for selector, attribute in NEXT_URL_HINTS:
            for element in await page.query_all(selector):
                url = self._fresh(self._absolute(page, await page.attribute_of(element, attribute)), session)
                if url is not None:
                    return url
        return None

    async def _find_page_number(self, page: PageInteraction, number: int) -> Optional[Any]:
        wanted = str(number)
        for selector in NUMBERED_SELECTORS:
            for element in await page.query_all(selector):
                text = await page.text_of(element)
                if text is not None and text.strip() == wanted:
                    return element
        return None

    async def _find_control(
        self, page: PageInteraction, selectors: Sequence[str], text_predicate: Callable[[Optional[str]], bool]
    ) -> Optional[Any]:
        for selector in selectors:
            elements = await page.query_all(selector)
            if elements:
                return elements[0]
        for element in await page.query_all(CLICKABLE_SELECTOR):
            if text_predicate(await page.text_of(element)):
                return element
        return None

    def _absolute(self, page: PageInteraction, href: Optional[str]) -> Optional[str]:
        if not href:
            return None
        href = href.strip()
        if not href or href.startswith("#") or href.lower().startswith("javascript:"):
            return None
        url = urljoin(page.url, href)
        if page.url:
            here, there = urlparse(page.url), urlparse(url)
            if (here.scheme, here.netloc.lower()) != (there.scheme, there.netloc.lower()):
                return None
        return url

    def _fresh(self, url: Optional[str], session: PaginationSession) -> Optional[str]:
        if url is None or canonical_url(url) in session.visited_urls:
            return None
        return url

    async def _goto(self, page: PageInteraction, url: str, session: PaginationSession) -> bool:
        if not await page.navigate(url, self.config.navigation_timeout_ms):
            return False
        return self._mark_visited(page, session)

    async def _click_and_verify(self, page: PageInteraction, control: Any, session: PaginationSession) -> bool:
        before = page.url
        if not await page.click(control):
            return False
        if page.url == before:
            # In-place (script driven) page swap; the empty-page limit guards progress.
            return True
        return self._mark_visited(page, session)

    def _mark_visited(self, page: PageInteraction, session: PaginationSession) -> bool:
        landed = canonical_url(page.url) if page.url else ""
        if landed and landed in session.visited_urls:
            self.logger.debug("Pagination landed on a visited page", url=page.url)
            session.stop_reason = "duplicate_page"
            return False
        if landed:
            session.visited_urls.add(landed)
        return True
