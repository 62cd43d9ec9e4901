"""Upload, render and one-shot run endpoints."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse

from ..api.schemas import PrepareRequest, RenderRequest
from ..config import Settings, get_settings
from ..errors import ValidationError
from ..services import pipeline
from ..services.apps_script import AppsScriptClient
from ..services.renderer import RendererFactory, open_browser_renderer

router = APIRouter(prefix="/api", tags=["pipeline"])


def get_transform_client(settings: Settings = Depends(get_settings)) -> AppsScriptClient:
    """Dependency returning the transform backend client."""

    return AppsScriptClient(settings)


def get_renderer_factory() -> RendererFactory:
    """Dependency returning the per-run renderer factory."""

    return open_browser_renderer


@router.post("/prepare")
async def prepare_upload(
    file: Optional[UploadFile] = File(default=None),
    headerRow: Optional[str] = Form(default=None),
    sheetPrefix: Optional[str] = Form(default=None),
    outputName: Optional[str] = Form(default=None),
    *,
    settings: Settings = Depends(get_settings),
    client: AppsScriptClient = Depends(get_transform_client),
) -> JSONResponse:
    """Upload a workbook to the backend and relay its answer unchanged."""

    upload = await _read_upload(
        file,
        header_row=headerRow,
        sheet_prefix=sheetPrefix,
        output_name=outputName,
        settings=settings,
    )
    data = await pipeline.prepare(client, upload)
    return JSONResponse(content=data)


@router.post("/render")
async def render_archive(
    payload: RenderRequest,
    *,
    settings: Settings = Depends(get_settings),
    client: AppsScriptClient = Depends(get_transform_client),
    renderer_factory: RendererFactory = Depends(get_renderer_factory),
) -> StreamingResponse:
    """Stream a ZIP of PNGs for an already prepared output spreadsheet."""

    job = pipeline.render_job_from_request(payload, settings)
    body = pipeline.open_archive_stream(
        job, source=client, renderer_factory=renderer_factory, settings=settings
    )
    return _archive_response(job, body)


@router.post("/run")
async def run_pipeline(
    file: Optional[UploadFile] = File(default=None),
    headerRow: Optional[str] = Form(default=None),
    sheetPrefix: Optional[str] = Form(default=None),
    outputName: Optional[str] = Form(default=None),
    cfgJson: Optional[str] = Form(default=None),
    selectedHeadersJson: Optional[str] = Form(default=None),
    zipName: Optional[str] = Form(default=None),
    *,
    settings: Settings = Depends(get_settings),
    client: AppsScriptClient = Depends(get_transform_client),
    renderer_factory: RendererFactory = Depends(get_renderer_factory),
) -> StreamingResponse:
    """Prepare then render in one request."""

    upload = await _read_upload(
        file,
        header_row=headerRow,
        sheet_prefix=sheetPrefix,
        output_name=outputName,
        settings=settings,
    )
    cfg = _parse_cfg(cfgJson)
    selected_headers = _parse_selected_headers(selectedHeadersJson)

    prepared = await pipeline.prepare(client, upload)
    job = pipeline.render_job_from_prepare(
        prepared,
        selected_headers=selected_headers,
        cfg=cfg,
        zip_name=(zipName or "").strip() or settings.default_zip_name,
    )
    body = pipeline.open_archive_stream(
        job, source=client, renderer_factory=renderer_factory, settings=settings
    )
    return _archive_response(job, body)


async def _read_upload(
    file: Optional[UploadFile],
    *,
    header_row: Optional[str],
    sheet_prefix: Optional[str],
    output_name: Optional[str],
    settings: Settings,
) -> PrepareRequest:
    if file is None:
        raise ValidationError("Missing file")
    content = await file.read()
    return PrepareRequest(
        file_bytes=content,
        file_name=file.filename or "upload.xlsx",
        header_row=_parse_header_row(header_row, settings.default_header_row),
        sheet_prefix=(sheet_prefix or "").strip() or settings.default_sheet_prefix,
        output_name=(output_name or "").strip() or settings.default_output_name,
    )


def _parse_header_row(raw: Optional[str], default: int) -> int:
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValidationError(f"headerRow must be an integer, got {raw!r}") from exc
    if value < 1:
        raise ValidationError("headerRow must be at least 1")
    return value


def _parse_json_field(name: str, raw: Optional[str]) -> Any:
    if raw is None or not raw.strip():
        return None
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} is not valid JSON: {exc}") from exc


def _parse_cfg(raw: Optional[str]) -> Dict[str, Any]:
    value = _parse_json_field("cfgJson", raw)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError("cfgJson must be a JSON object")
    return value


def _parse_selected_headers(raw: Optional[str]) -> Optional[List[str]]:
    value = _parse_json_field("selectedHeadersJson", raw)
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValidationError("selectedHeadersJson must be a JSON array")
    return [str(item) for item in value]


def content_disposition(filename: str) -> str:
    """``attachment`` header value; non-ASCII names get an RFC 5987 variant."""

    cleaned = "".join(ch for ch in filename if ch not in '\r\n"\\')
    fallback = cleaned.encode("ascii", "ignore").decode("ascii").strip() or "archive.zip"
    value = f'attachment; filename="{fallback}"'
    if fallback != cleaned:
        value += f"; filename*=UTF-8''{quote(cleaned, safe='')}"
    return value


def _header_value(value: str) -> str:
    value = value.replace("\r", "").replace("\n", "")
    if value.isascii():
        return value
    return quote(value, safe=":/?&=#%@+,;~!$'()*[]")


def _archive_response(job: pipeline.RenderJob, body: AsyncIterator[bytes]) -> StreamingResponse:
    headers = {
        "Content-Disposition": content_disposition(job.zip_name),
        "Cache-Control": "no-store",
        "X-Output-Id": _header_value(job.output_spreadsheet_id),
    }
    if job.output_url:
        headers["X-Output-Url"] = _header_value(job.output_url)
    return StreamingResponse(body, media_type="application/zip", headers=headers)


__all__ = [
    "content_disposition",
    "get_renderer_factory",
    "get_transform_client",
    "router",
]
