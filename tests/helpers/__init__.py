"""Shared test doubles."""

from .stubs import (
    ROOT,
    FakeClock,
    FakeSleep,
    FlakyStore,
    RecordingStore,
    StaticSiteFactory,
    StaticSitePage,
    StubExplorer,
    StubExtractor,
    StubNavigator,
    listing_html,
    metric_value,
    next_link,
    numbered_pagination,
)

__all__ = [
    "ROOT",
    "FakeClock",
    "FakeSleep",
    "FlakyStore",
    "RecordingStore",
    "StaticSiteFactory",
    "StaticSitePage",
    "StubExplorer",
    "StubExtractor",
    "StubNavigator",
    "listing_html",
    "metric_value",
    "next_link",
    "numbered_pagination",
]
