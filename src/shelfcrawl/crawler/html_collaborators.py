"""
Generic link-based discovery and extraction collaborators.

These work on plain server-rendered storefronts: categories are the
same-site links in the navigation, subcategories are links nested under a
category's path, and products are anchors that look like product URLs.
Site-specific selector tables belong in custom collaborators.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import urldefrag, urljoin, urlparse

import structlog

from shelfcrawl.exceptions import NavigationError
from shelfcrawl.protocols import CategoryLink, CategoryNode, PageFactory, PageInteraction

logger = structlog.get_logger(__name__)

NAVIGATION_SELECTOR = "nav a[href], header a[href], .menu a[href], [role='navigation'] a[href]"
PRODUCT_LINK_SELECTOR = 'a[href*="/product/"], a[href*="/item/"], a[href*="/p/"], a[href*="/products/"]'


def _normalise(base: str, href: str) -> Optional[str]:
    if not href or href.startswith(("#", "javascript:", "mailto:", "tel:")):
        return None
    url, _ = urldefrag(urljoin(base, href))
    return url


def _same_site(a: str, b: str) -> bool:
    return urlparse(a).netloc.lower() == urlparse(b).netloc.lower()


async def _links(page: PageInteraction, selector: str) -> List[Dict[str, str]]:
    found: List[Dict[str, str]] = []
    seen = set()
    for element in await page.query_all(selector):
        url = _normalise(page.url, await page.attribute_of(element, "href") or "")
        if url is None or url in seen or not _same_site(url, page.url):
            continue
        seen.add(url)
        found.append({"name": (await page.text_of(element)) or url, "url": url})
    return found


class LinkCategoryDiscovery:
    """Discovers categories from navigation links and nested category paths."""

    def __init__(
        self,
        pages: PageFactory,
        *,
        navigation_selector: str = NAVIGATION_SELECTOR,
        max_links: int = 50,
    ) -> None:
        self.pages = pages
        self.navigation_selector = navigation_selector
        self.max_links = max_links

    async def discover_top_level(self, url: str) -> List[CategoryLink]:
        async with self.pages.open() as page:
            if not await page.navigate(url):
                raise NavigationError(url, "could not load root page", getattr(page, "last_status", None))
            links = await _links(page, self.navigation_selector)
        root = urlparse(url).path.rstrip("/")
        categories = [
            CategoryLink(name=link["name"], url=link["url"])
            for link in links
            if urlparse(link["url"]).path.rstrip("/") not in ("", root)
        ]
        logger.debug("Top-level categories found", url=url, count=len(categories))
        return categories[: self.max_links]

    async def expand_category(self, category: CategoryLink, depth: int) -> List[CategoryNode]:
        async with self.pages.open() as page:
            if not await page.navigate(category.url):
                raise NavigationError(category.url, "could not load category", getattr(page, "last_status", None))
            parent_path = urlparse(page.url).path.rstrip("/")
            children: List[CategoryNode] = []
            for link in await _links(page, "a[href]"):
                path = urlparse(link["url"]).path.rstrip("/")
                if not parent_path or not path.startswith(parent_path + "/"):
                    continue
                if await self._looks_like_product(link["url"]):
                    continue
                children.append(CategoryNode(name=link["name"], url=link["url"]))
        logger.debug("Subcategories found", url=category.url, depth=depth, count=len(children))
        return children[: self.max_links]

    async def _looks_like_product(self, url: str) -> bool:
        path = urlparse(url).path
        return any(marker in path for marker in ("/product/", "/item/", "/p/", "/products/"))


class ProductLinkExtractor:
    """Extracts one record per product link on a listing page, keyed by URL."""

    def __init__(self, selector: str = PRODUCT_LINK_SELECTOR) -> None:
        self.selector = selector

    async def extract_listing_page(self, page: PageInteraction) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        seen = set()
        for element in await page.query_all(self.selector):
            url = _normalise(page.url, await page.attribute_of(element, "href") or "")
            if url is None or url in seen:
                continue
            seen.add(url)
            records.append({"item_key": url, "url": url, "title": await page.text_of(element)})
        return records
