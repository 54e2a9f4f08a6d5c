"""
Typed probes used to recognise a listing page's pagination mechanism.

Each probe answers found / not-found for one mechanism. Expected absence is
a normal result, never an exception; only a failing page interaction
raises, and the controller maps that to ``PaginationType.UNKNOWN``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Tuple

from shelfcrawl.protocols import PageInteraction, PaginationType

NUMBERED_SELECTORS = (".pagination a", ".page-numbers a", '[class*="pagination"] a')
LOAD_MORE_SELECTORS = (
    'button[class*="load-more"]',
    'button[class*="show-more"]',
    ".load-more-button",
    'button[data-test*="load"]',
)
INFINITE_SCROLL_SELECTORS = ('[class*="infinite-scroll"]', "[data-infinite-scroll]")
NEXT_CONTROL_SELECTORS = ('a[rel="next"]', ".next-page", 'button[aria-label*="next"]', 'a[aria-label*="next"]')
CLICKABLE_SELECTOR = "a, button"

# Machine-readable "next" hints, in resolution order: (selector, attribute).
NEXT_URL_HINTS: Tuple[Tuple[str, str], ...] = (
    ('link[rel="next"]', "href"),
    ("[data-next-url]", "data-next-url"),
    ('a[rel="next"]', "href"),
    (".pagination .next:not(.disabled) a", "href"),
    ("a.next", "href"),
)

_NEXT_TEXT = re.compile(r"^(next( page)?|›|»|>|→)$", re.IGNORECASE)
_LOAD_MORE_TEXT = re.compile(r"^(load|show|view) more", re.IGNORECASE)


def is_next_text(text: Optional[str]) -> bool:
    return bool(text) and bool(_NEXT_TEXT.match(text.strip()))  # type: ignore[union-attr]


def is_load_more_text(text: Optional[str]) -> bool:
    return bool(text) and bool(_LOAD_MORE_TEXT.match(text.strip()))  # type: ignore[union-attr]


def is_page_number(text: Optional[str]) -> bool:
    return bool(text) and text.strip().isdigit()  # type: ignore[union-attr]


class ProbeStatus(Enum):
    FOUND = "found"
    NOT_FOUND = "not-found"


@dataclass(frozen=True)
class ProbeResult:
    status: ProbeStatus
    pagination_type: PaginationType
    evidence: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status is ProbeStatus.FOUND


@dataclass(frozen=True)
class Probe:
    """
    Looks for one pagination mechanism.

    ``selectors`` are tried in order. When ``text_predicate`` is set, a
    selector only counts if one of its matches has text satisfying it, and
    ``text_fallback`` additionally scans every link and button by text.
    """

    pagination_type: PaginationType
    selectors: Tuple[str, ...]
    text_predicate: Optional[Callable[[Optional[str]], bool]] = None
    text_fallback: bool = False
    name: str = field(default="")

    async def run(self, page: PageInteraction) -> ProbeResult:
        for selector in self.selectors:
            if self.text_predicate is None:
                if await page.count_matching(selector) > 0:
                    return self._found(selector)
                continue
            if await self._any_text_matches(page, selector):
                return self._found(selector)

        if self.text_fallback and self.text_predicate is not None:
            if await self._any_text_matches(page, CLICKABLE_SELECTOR):
                return self._found(f"text:{CLICKABLE_SELECTOR}")

        return ProbeResult(ProbeStatus.NOT_FOUND, self.pagination_type)

    async def _any_text_matches(self, page: PageInteraction, selector: str) -> bool:
        assert self.text_predicate is not None
        for element in await page.query_all(selector):
            if self.text_predicate(await page.text_of(element)):
                return True
        return False

    def _found(self, evidence: str) -> ProbeResult:
        return ProbeResult(ProbeStatus.FOUND, self.pagination_type, evidence)


# Fixed priority order: the first probe that finds its mechanism wins.
DEFAULT_PROBES: Tuple[Probe, ...] = (
    Probe(PaginationType.NUMBERED, NUMBERED_SELECTORS, text_predicate=is_page_number, name="numbered"),
    Probe(PaginationType.LOAD_MORE, LOAD_MORE_SELECTORS, name="load-more"),
    Probe(PaginationType.LOAD_MORE, (), text_predicate=is_load_more_text, text_fallback=True, name="load-more-text"),
    Probe(PaginationType.INFINITE_SCROLL, INFINITE_SCROLL_SELECTORS, name="infinite-scroll"),
    Probe(PaginationType.NEXT_BUTTON, NEXT_CONTROL_SELECTORS, name="next-button"),
    Probe(PaginationType.NEXT_BUTTON, (), text_predicate=is_next_text, text_fallback=True, name="next-text"),
)
