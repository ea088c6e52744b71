from __future__ import annotations
import logging
from typing import Any, Awaitable, Callable, List, Tuple

logger = logging.getLogger(__name__)

# fetch_page(page) -> (items on that page, next page number or 0 when done)
PageFetcher = Callable[[int], Awaitable[Tuple[List[Any], int]]]


async def paginate(
    fetch_page: PageFetcher,
    sink: Callable[[Any], None],
    first_page: int = 1,
) -> int:
    """
    Page-number pagination shared by every list hydrate.

    Streams each item to sink as soon as its page arrives and follows the
    next-page indicator until it is 0. Errors from fetch_page propagate
    immediately; items already streamed stay streamed.

    Returns the number of items streamed.
    """
    page = first_page
    streamed = 0
    while True:
        items, next_page = await fetch_page(page)
        for item in items:
            sink(item)
            streamed += 1

        if next_page == 0:
            break
        page = next_page

    logger.debug("paginate: streamed %d item(s), last page %d", streamed, page)
    return streamed
