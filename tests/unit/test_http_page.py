"""
Unit tests for the static-HTML page adapter and the link-based collaborators.
"""

import aiohttp
import pytest
from aioresponses import aioresponses
from shelfcrawl.crawler import HttpPage, HttpPageFactory
from shelfcrawl.crawler.html_collaborators import LinkCategoryDiscovery, ProductLinkExtractor
from shelfcrawl.exceptions import NavigationError
from shelfcrawl.protocols import CategoryLink, PageInteraction

from tests.helpers import ROOT, StaticSiteFactory, StaticSitePage, listing_html

CATEGORY = "https://shop.example.com/c/shoes"


class TestHttpPage:
    @pytest.mark.asyncio
    async def test_navigate_and_query(self):
        with aioresponses() as mocked:
            mocked.get(CATEGORY, status=200, body=listing_html(["boot", "sandal"]))
            async with aiohttp.ClientSession() as session:
                page = HttpPage(session)

                assert await page.navigate(CATEGORY)

                elements = await page.query_all('a[href*="/product/"]')
                assert page.url == CATEGORY
                assert page.last_status == 200
                assert [await page.text_of(e) for e in elements] == ["Boot", "Sandal"]
                assert await page.attribute_of(elements[0], "href") == "/product/boot"
                assert await page.attribute_of(elements[0], "data-missing") is None
                assert await page.count_matching("a") == 2

    @pytest.mark.asyncio
    async def test_error_status_keeps_previous_document(self):
        with aioresponses() as mocked:
            mocked.get(CATEGORY, status=200, body=listing_html(["boot"]))
            mocked.get(f"{CATEGORY}?page=2", status=404, body="gone")
            async with aiohttp.ClientSession() as session:
                page = HttpPage(session)
                await page.navigate(CATEGORY)

                assert not await page.navigate("?page=2")

                assert page.last_status == 404
                assert page.url == CATEGORY
                assert await page.count_matching('a[href*="/product/"]') == 1

    @pytest.mark.asyncio
    async def test_connection_failure_returns_false(self):
        with aioresponses() as mocked:
            mocked.get(CATEGORY, exception=aiohttp.ClientConnectionError("refused"))
            async with aiohttp.ClientSession() as session:
                page = HttpPage(session)

                assert not await page.navigate(CATEGORY)
                assert page.last_status is None

    @pytest.mark.asyncio
    async def test_click_follows_link_targets(self):
        html = '<a id="go" href="/c/bags">Bags</a><button id="more" data-href="?page=2">More</button>'
        html += '<button id="inert">Nothing</button><a id="anchor" href="#top">Top</a>'
        with aioresponses() as mocked:
            mocked.get("https://shop.example.com/c/bags", status=200, body="<p>bags</p>")
            mocked.get(f"{CATEGORY}?page=2", status=200, body="<p>page two</p>")
            async with aiohttp.ClientSession() as session:
                page = HttpPage(session)
                page.load_html(html, CATEGORY)
                inert = (await page.query_all("#inert"))[0]
                anchor = (await page.query_all("#anchor"))[0]
                more = (await page.query_all("#more"))[0]

                assert not await page.click(inert)
                assert not await page.click(anchor)
                assert await page.click(more)
                assert page.url == f"{CATEGORY}?page=2"

    @pytest.mark.asyncio
    async def test_empty_page_queries(self):
        page = HttpPage(session=None)

        assert await page.query_all("a") == []
        assert await page.count_matching("a") == 0
        assert await page.scroll_to_bottom() is None
        assert isinstance(page, PageInteraction)


class TestHttpPageFactory:
    @pytest.mark.asyncio
    async def test_pages_share_one_session(self):
        async with HttpPageFactory() as factory:
            async with factory.open() as first, factory.open() as second:
                assert isinstance(first, HttpPage)
                assert first.session is second.session
            session = factory.session
            assert not session.closed

        assert session.closed
        assert factory.session is None


class TestLinkCategoryDiscovery:
    @pytest.fixture
    def site(self):
        nav = (
            '<nav><a href="/">Home</a><a href="/c/shoes">Shoes</a><a href="/c/bags#top">Bags</a>'
            '<a href="/c/shoes">Shoes again</a><a href="https://elsewhere.example.org/c/x">Partner</a>'
            '<a href="javascript:void(0)">Menu</a></nav>'
        )
        shoes = (
            '<a href="/c/shoes/running">Running</a><a href="/c/shoes/boots">Boots</a>'
            '<a href="/c/shoes/p/123">A product</a><a href="/c/bags">Bags</a>'
        )
        return {ROOT: f"<html><body>{nav}</body></html>", CATEGORY: f"<html><body>{shoes}</body></html>"}

    @pytest.mark.asyncio
    async def test_discovers_same_site_navigation_links(self, site):
        discovery = LinkCategoryDiscovery(StaticSiteFactory(site))

        links = await discovery.discover_top_level(ROOT)

        assert links == [
            CategoryLink(name="Shoes", url=CATEGORY),
            CategoryLink(name="Bags", url="https://shop.example.com/c/bags"),
        ]

    @pytest.mark.asyncio
    async def test_unreachable_root_raises(self, site):
        discovery = LinkCategoryDiscovery(StaticSiteFactory(site, statuses={ROOT: 503}))

        with pytest.raises(NavigationError) as exc_info:
            await discovery.discover_top_level(ROOT)

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_expands_nested_paths_only(self, site):
        factory = StaticSiteFactory(site)
        discovery = LinkCategoryDiscovery(factory)

        children = await discovery.expand_category(CategoryLink(name="Shoes", url=CATEGORY), depth=0)

        assert [child.url for child in children] == [f"{CATEGORY}/running", f"{CATEGORY}/boots"]
        assert factory.opened == factory.closed == 1


class TestProductLinkExtractor:
    @pytest.mark.asyncio
    async def test_one_record_per_product_url(self):
        page = StaticSitePage({})
        page.load_html(listing_html(["boot", "boot", "sandal"], extra='<a href="/c/bags">Bags</a>'), CATEGORY)

        records = await ProductLinkExtractor().extract_listing_page(page)

        assert records == [
            {"item_key": "https://shop.example.com/product/boot", "url": "https://shop.example.com/product/boot", "title": "Boot"},
            {
                "item_key": "https://shop.example.com/product/sandal",
                "url": "https://shop.example.com/product/sandal",
                "title": "Sandal",
            },
        ]
