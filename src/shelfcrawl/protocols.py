"""
Collaborator contracts and shared value types for shelfcrawl.

The control plane never talks to a browser, an HTTP stack or a database
directly. It depends on the narrow protocols below:

- PageInteraction: the DOM-level surface used by pagination and extraction
- PageFactory: opens and releases page handles
- NavigationDiscovery / CategoryExplorer: category tree discovery
- ListingExtractor: product record extraction from a listing page

Any object with matching methods satisfies a protocol; nothing has to
inherit from these classes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncContextManager, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

# ============================================================================
# Enums
# ============================================================================


class PaginationType(Enum):
    """Mechanism a listing page uses to reveal more items."""

    NUMBERED = "numbered"
    LOAD_MORE = "load-more"
    INFINITE_SCROLL = "infinite-scroll"
    NEXT_BUTTON = "next-button"
    SINGLE_PAGE = "single-page"
    UNKNOWN = "unknown"


class ProcessingStatus(Enum):
    """Outcome of one category task or one job."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    # Held back by the throttle; the checkpoint stays active for a resume.
    DEFERRED = "deferred"
    SUCCESS = "success"
    ERROR = "error"


# ============================================================================
# Value types exchanged with collaborators
# ============================================================================


@dataclass(frozen=True)
class CategoryLink:
    """A category found during navigation discovery."""

    name: str
    url: str

    @classmethod
    def coerce(cls, value: Any) -> "CategoryLink":
        if isinstance(value, CategoryLink):
            return value
        if isinstance(value, Mapping):
            url = str(value["url"])
            return cls(name=str(value.get("name") or url), url=url)
        return cls(name=str(getattr(value, "name", "") or value.url), url=str(value.url))


@dataclass(frozen=True)
class CategoryNode:
    """A subcategory returned by category expansion."""

    name: str
    url: str
    has_products: bool = False

    @classmethod
    def coerce(cls, value: Any) -> "CategoryNode":
        if isinstance(value, CategoryNode):
            return value
        if isinstance(value, Mapping):
            url = str(value["url"])
            has_products = value.get("has_products", value.get("hasProducts", False))
            return cls(name=str(value.get("name") or url), url=url, has_products=bool(has_products))
        return cls(
            name=str(getattr(value, "name", "") or value.url),
            url=str(value.url),
            has_products=bool(getattr(value, "has_products", False)),
        )


# ============================================================================
# Protocols
# ============================================================================


@runtime_checkable
class PageInteraction(Protocol):
    """Narrow page surface the pagination controller and extractors depend on."""

    @property
    def url(self) -> str:
        """URL of the currently loaded document."""
        ...

    @property
    def last_status(self) -> Optional[int]:
        """HTTP status of the last navigation, when the engine exposes one."""
        ...

    async def navigate(self, url: str, timeout_ms: Optional[int] = None) -> bool:
        """Load a URL. Returns False instead of raising on ordinary failures."""
        ...

    async def query_all(self, selector: str) -> List[Any]:
        """Return element handles matching a CSS selector."""
        ...

    async def text_of(self, element: Any) -> Optional[str]:
        ...

    async def attribute_of(self, element: Any, name: str) -> Optional[str]:
        ...

    async def click(self, element: Any) -> bool:
        ...

    async def scroll_to_bottom(self) -> None:
        ...

    async def count_matching(self, selector: str) -> int:
        ...


class PageFactory(Protocol):
    """Opens a page handle that is released when the context exits."""

    def open(self) -> AsyncContextManager[PageInteraction]:
        ...


class NavigationDiscovery(Protocol):
    """Finds the top-level categories of a site."""

    async def discover_top_level(self, url: str) -> Sequence[Any]:
        """Return CategoryLink objects or ``{"name", "url"}`` mappings."""
        ...


class CategoryExplorer(Protocol):
    """Expands one category into its direct subcategories."""

    async def expand_category(self, category: CategoryLink, depth: int) -> Sequence[Any]:
        """Return CategoryNode objects or ``{"name", "url", "has_products"}`` mappings."""
        ...


class ListingExtractor(Protocol):
    """Extracts product records from the listing page currently loaded."""

    async def extract_listing_page(self, page: PageInteraction) -> List[Dict[str, Any]]:
        """Return records that carry at least ``item_key`` and ``url``."""
        ...
