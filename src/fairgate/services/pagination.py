"""Lazy traversal of paginated list endpoints."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from fairgate.models.envelope import PageParams, Pagination

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_LIMIT = 100

PageFetcher = Callable[[PageParams], Awaitable[tuple[list[T], Pagination]]]


async def iterate(
    fetch: PageFetcher[T], *, page_limit: int = DEFAULT_PAGE_LIMIT
) -> AsyncIterator[T]:
    """Yield every item of every page, fetching pages on demand.

    Traversal stops after the last reported page, or after an empty page
    for APIs that do not report ``totalPages``. A fetch error is raised
    after the items of all previous pages have been yielded. Leaving the
    loop early stops fetching.

    Args:
        fetch: Fetches one page and returns its items and pagination metadata
        page_limit: Page size to request

    Yields:
        Items in page order
    """
    params = PageParams(page_no=1, page_limit=page_limit)

    while True:
        logger.debug(f"Fetching page {params.page_no}")
        items, meta = await fetch(params)

        for item in items:
            yield item

        if meta.total_pages > 0 and params.page_no >= meta.total_pages:
            return
        if not items:
            return

        params = params.next_page()
