"""Offset/limit paging over the backend's ``buildPages`` action."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Protocol, Sequence, Tuple

from ..api.schemas import PageBatch
from ..errors import UpstreamError

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_BATCHES = 1000


class PageSource(Protocol):
    """Anything able to answer a ``buildPages`` request."""

    async def build_pages(
        self,
        output_spreadsheet_id: str,
        *,
        selected_headers: Optional[Sequence[str]],
        cfg: Dict[str, Any],
        offset: int,
        limit: int,
    ) -> PageBatch: ...


@dataclass(slots=True)
class Cursor:
    """Paging position. The backend owns ``offset``; we never compute it."""

    offset: int = 0
    limit: int = DEFAULT_BATCH_SIZE

    def advance(self, next_offset: Optional[int]) -> None:
        if next_offset is None:
            raise UpstreamError(
                f"Transform backend reported more pages at offset {self.offset} "
                "without a nextOffset"
            )
        if next_offset < self.offset:
            raise UpstreamError(
                f"Transform backend moved the cursor backwards ({self.offset} -> {next_offset})"
            )
        self.offset = next_offset


@dataclass(slots=True)
class RenderablePage:
    """Page descriptor with its final archive entry name."""

    name: str
    html: str
    position: int


def entry_name(name: Optional[str], position: int) -> str:
    """Archive entry name for a page: last path segment, or ``page_<n>.png``."""

    base = (name or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    if base in ("", ".", ".."):
        return f"page_{position}.png"
    return base


async def iter_page_batches(
    source: PageSource,
    output_spreadsheet_id: str,
    *,
    selected_headers: Optional[Sequence[str]] = None,
    cfg: Optional[Dict[str, Any]] = None,
    limit: int = DEFAULT_BATCH_SIZE,
    max_batches: int = DEFAULT_MAX_BATCHES,
) -> AsyncIterator[Tuple[int, PageBatch]]:
    """Yield ``(offset, batch)`` until the backend reports ``done``.

    The loop stops on ``done`` whatever ``nextOffset`` says. A backend that keeps
    answering ``done=false`` is cut off after ``max_batches`` calls.
    """

    cursor = Cursor(limit=limit)
    cfg = cfg or {}
    for batch_number in range(1, max_batches + 1):
        batch = await source.build_pages(
            output_spreadsheet_id,
            selected_headers=selected_headers,
            cfg=cfg,
            offset=cursor.offset,
            limit=cursor.limit,
        )
        LOGGER.debug(
            "Batch %d for %s: offset=%d pages=%d done=%s nextOffset=%s",
            batch_number,
            output_spreadsheet_id,
            cursor.offset,
            len(batch.pages),
            batch.done,
            batch.next_offset,
        )
        yield cursor.offset, batch
        if batch.done:
            return
        cursor.advance(batch.next_offset)
    raise UpstreamError(
        f"Transform backend did not finish paging after {max_batches} batches"
    )


async def iter_pages(
    source: PageSource,
    output_spreadsheet_id: str,
    *,
    selected_headers: Optional[Sequence[str]] = None,
    cfg: Optional[Dict[str, Any]] = None,
    limit: int = DEFAULT_BATCH_SIZE,
    max_batches: int = DEFAULT_MAX_BATCHES,
) -> AsyncIterator[RenderablePage]:
    """Flatten :func:`iter_page_batches` into individual pages."""

    async for offset, batch in iter_page_batches(
        source,
        output_spreadsheet_id,
        selected_headers=selected_headers,
        cfg=cfg,
        limit=limit,
        max_batches=max_batches,
    ):
        for index, page in enumerate(batch.pages):
            position = offset + index
            yield RenderablePage(
                name=entry_name(page.name, position),
                html=page.html,
                position=position,
            )


__all__ = [
    "Cursor",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_MAX_BATCHES",
    "PageSource",
    "RenderablePage",
    "entry_name",
    "iter_page_batches",
    "iter_pages",
]
