"""Page through TeamCity collections using count/start locator dimensions."""

from typing import Any, Callable, Dict, List, Optional

from teamcity_mcp.locators import join_locator
from teamcity_mcp.log import debug_log

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000


def paged_locator(base: Optional[str], count: int, start: int) -> str:
    return join_locator(base, f"count:{count}", f"start:{start}" if start else None)


def fetch_pages(
    fetch_page: Callable[[int, int], List[Any]],
    page_size: int = DEFAULT_PAGE_SIZE,
    fetch_all: bool = False,
    max_pages: Optional[int] = None,
) -> Dict[str, Any]:
    """Fetch one page, or every page up to max_pages.

    Args:
        fetch_page: Callable taking (count, start) and returning that page's items
        page_size: Items per request
        fetch_all: Keep requesting until a short page comes back
        max_pages: Upper bound on requests when fetch_all is set

    Returns:
        Dictionary with the items and a pagination summary
    """
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
    if max_pages is not None and max_pages < 1:
        raise ValueError("max_pages must be at least 1")

    if not fetch_all:
        items = fetch_page(page_size, 0)
        return {"items": items, "pagination": {"page": 1, "page_size": page_size}}

    items = []
    page = 0
    while max_pages is None or page < max_pages:
        batch = fetch_page(page_size, page * page_size)
        items.extend(batch)
        page += 1
        debug_log(f"Fetched page {page} ({len(batch)} items, {len(items)} total)")
        if len(batch) < page_size:
            break
    return {"items": items, "pagination": {"mode": "all", "page_size": page_size, "fetched": len(items)}}
