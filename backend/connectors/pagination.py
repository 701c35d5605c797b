"""
Offset-based pagination over the Jira REST API.

Jira returns either a bare page of records or an envelope like
``{ issues|values: [...], startAt, maxResults, total, isLast }``. The client
unwraps the envelope into a :class:`Page`; this module only decides when to
ask for the next one.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from connectors.errors import SyncCancelledError
from connectors.models import Page

logger = logging.getLogger(__name__)

FetchPage = Callable[[int, int], Awaitable[Page]]


def ensure_not_cancelled(cancel_event: Optional[asyncio.Event], stage: str) -> None:
    """Raise SyncCancelledError when the caller has asked the run to stop."""
    if cancel_event is not None and cancel_event.is_set():
        logger.info("Sync cancelled by caller", extra={"stage": stage})
        raise SyncCancelledError(f"sync cancelled ({stage})", stage=stage)


async def walk_pages(
    fetch_page: FetchPage,
    page_size: int,
    *,
    cancel_event: Optional[asyncio.Event] = None,
    stage: str = "pagination",
) -> AsyncIterator[dict[str, Any]]:
    """
    Yield raw records until the remote source is exhausted.

    Stops on the first empty or under-sized page, or one flagged ``isLast``.
    An exception from any page propagates and ends the walk; records already
    yielded are the caller's business.
    """
    if page_size < 1:
        raise ValueError(f"page_size must be positive, got {page_size}")

    start_at: int = 0
    pages: int = 0
    while True:
        ensure_not_cancelled(cancel_event, stage)

        page: Page = await fetch_page(start_at, page_size)
        pages += 1
        items: list[dict[str, Any]] = page.items

        for item in items:
            yield item

        if not items or len(items) < page_size or page.is_last:
            break
        start_at += len(items)

    logger.debug(
        "Pagination finished",
        extra={"stage": stage, "pages": pages, "records": start_at + len(items)},
    )


async def collect_pages(
    fetch_page: FetchPage,
    page_size: int,
    *,
    cancel_event: Optional[asyncio.Event] = None,
    stage: str = "pagination",
) -> list[dict[str, Any]]:
    """Drain :func:`walk_pages` into a list. All pages or nothing."""
    return [
        item
        async for item in walk_pages(
            fetch_page, page_size, cancel_event=cancel_event, stage=stage
        )
    ]
