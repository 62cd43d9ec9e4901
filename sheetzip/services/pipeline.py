"""Prepare / render / run orchestration."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from ..api.schemas import PrepareRequest, RenderOptions, RenderRequest
from ..config import Settings
from ..errors import SheetZipError, ValidationError
from .apps_script import AppsScriptClient
from .archive import COMPRESSION_METHODS, ArchiveState, StreamingArchiveWriter, stream_archive
from .pagination import PageSource, iter_pages
from .renderer import RendererFactory, render_with_retry

LOGGER = logging.getLogger(__name__)

ERROR_MARKER_NAME = "_ERROR.txt"


@dataclass(slots=True)
class RenderJob:
    """Everything a render run needs once the request has been validated."""

    output_spreadsheet_id: str
    selected_headers: Optional[List[str]]
    cfg: Dict[str, Any]
    zip_name: str
    output_url: Optional[str] = None


@dataclass(slots=True)
class RunSummary:
    """Outcome of one render run."""

    output_spreadsheet_id: str
    pages_written: int = 0
    error: Optional[str] = None
    elapsed_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


def render_job_from_request(request: RenderRequest, settings: Settings) -> RenderJob:
    """Validate a ``/api/render`` body."""

    if not request.outputSpreadsheetId:
        raise ValidationError("Missing outputSpreadsheetId")
    return RenderJob(
        output_spreadsheet_id=request.outputSpreadsheetId,
        selected_headers=request.selectedHeaders,
        cfg=request.cfg,
        zip_name=(request.zipName or "").strip() or settings.default_zip_name,
        output_url=request.output_url or None,
    )


def render_job_from_prepare(
    prepared: Dict[str, Any],
    *,
    selected_headers: Optional[List[str]],
    cfg: Dict[str, Any],
    zip_name: str,
) -> RenderJob:
    """Chain a ``prepare`` answer into a render job.

    The backend's ``headers`` are used only when the caller chose none.
    """

    output_id = str(prepared.get("outputSpreadsheetId") or "").strip()
    if not output_id:
        raise ValidationError("Missing outputSpreadsheetId in the prepare result")
    if selected_headers is None:
        headers = prepared.get("headers")
        selected_headers = [str(item) for item in headers] if isinstance(headers, list) else None
    return RenderJob(
        output_spreadsheet_id=output_id,
        selected_headers=selected_headers,
        cfg=cfg,
        zip_name=zip_name,
        output_url=prepared.get("output_url") or None,
    )


async def prepare(client: AppsScriptClient, request: PrepareRequest) -> Dict[str, Any]:
    """Forward an upload to the backend; the answer is returned untouched."""

    return await client.prepare(request)


async def render_into_archive(
    job: RenderJob,
    writer: StreamingArchiveWriter,
    *,
    source: PageSource,
    renderer_factory: RendererFactory,
    settings: Settings,
) -> RunSummary:
    """Fetch, render and archive every page of ``job``.

    Errors end the run instead of propagating: the client already holds a
    200 response, so the best signal left is an early end of archive. The
    archive is finalized exactly once on every path.
    """

    summary = RunSummary(output_spreadsheet_id=job.output_spreadsheet_id)
    started = time.perf_counter()
    try:
        options = RenderOptions.from_cfg(job.cfg)
        LOGGER.info(
            "Render run started for %s (viewport %dx%d@%.2f, wait %dms)",
            job.output_spreadsheet_id,
            options.width,
            options.height,
            options.device_scale_factor,
            options.wait_ms,
        )
        async with renderer_factory(settings) as renderer:
            async for page in iter_pages(
                source,
                job.output_spreadsheet_id,
                selected_headers=job.selected_headers,
                cfg=job.cfg,
                limit=settings.page_batch_size,
                max_batches=settings.max_page_batches,
            ):
                entry = await writer.open_entry(page.name)
                image = await render_with_retry(
                    renderer, page.html, options, retry_max=settings.render_retry_max
                )
                await entry.push(image, final=True)
                summary.pages_written += 1
                LOGGER.debug("Rendered %s (%d bytes)", page.name, len(image))
    except Exception as exc:
        summary.error = str(exc) or exc.__class__.__name__
        LOGGER.exception(
            "Render run for %s aborted after %d pages",
            job.output_spreadsheet_id,
            summary.pages_written,
        )
        if settings.archive_error_marker:
            await _write_error_marker(writer, summary.error)
    finally:
        if writer.state is not ArchiveState.FINALIZED:
            await writer.finalize()
        summary.elapsed_s = round(time.perf_counter() - started, 3)

    LOGGER.info(
        "Render run finished for %s: pages=%d ok=%s elapsed=%.2fs",
        job.output_spreadsheet_id,
        summary.pages_written,
        summary.ok,
        summary.elapsed_s,
    )
    return summary


async def _write_error_marker(writer: StreamingArchiveWriter, message: str) -> None:
    if writer.state is ArchiveState.FINALIZED:
        return
    try:
        await writer.abandon_entry()
        await writer.add(ERROR_MARKER_NAME, message.encode("utf-8"))
    except SheetZipError as exc:
        LOGGER.warning("Could not append %s: %s", ERROR_MARKER_NAME, exc)


def open_archive_stream(
    job: RenderJob,
    *,
    source: PageSource,
    renderer_factory: RendererFactory,
    settings: Settings,
) -> AsyncIterator[bytes]:
    """Return the response body for ``job``; rendering starts when it is read."""

    writer = StreamingArchiveWriter(
        queue_size=settings.archive_queue_size,
        compression=COMPRESSION_METHODS[settings.archive_compression],
    )

    async def _produce(target: StreamingArchiveWriter) -> RunSummary:
        return await render_into_archive(
            job,
            target,
            source=source,
            renderer_factory=renderer_factory,
            settings=settings,
        )

    return stream_archive(writer, _produce)


__all__ = [
    "ERROR_MARKER_NAME",
    "RenderJob",
    "RunSummary",
    "open_archive_stream",
    "prepare",
    "render_into_archive",
    "render_job_from_prepare",
    "render_job_from_request",
]
