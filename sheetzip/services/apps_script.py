"""HTTP client for the Apps Script transform backend."""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError as SchemaError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..api.schemas import PageBatch, PrepareRequest
from ..config import Settings
from ..errors import BackendConfigError, TransientUpstreamError, UpstreamError

LOGGER = logging.getLogger(__name__)

SNIPPET_CHARS = 200
_MAX_BACKOFF_S = 8.0
_HTML_PREFIXES = ("<!doctype", "<html")
_RETRYABLE_EXCEPTIONS = (httpx.TransportError, TransientUpstreamError)


def decode_backend_body(text: str) -> Dict[str, Any]:
    """Parse a backend answer, raising :class:`UpstreamError` when unusable."""

    snippet = text[:SNIPPET_CHARS]
    if text.lstrip().lower().startswith(_HTML_PREFIXES):
        raise BackendConfigError(
            "Transform backend answered HTML instead of JSON "
            f"(check the deployment URL and access settings): {snippet}"
        )
    try:
        data = json.loads(text)
    except ValueError:
        data = None
    if not isinstance(data, dict):
        raise UpstreamError(f"Transform backend did not return JSON: {snippet}")
    if not data.get("ok"):
        raise UpstreamError(str(data.get("error") or "Transform backend error"))
    return data


class AppsScriptClient:
    """Posts ``action``-tagged JSON bodies to the configured backend URL."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = settings.apps_script_url
        self._timeout = httpx.Timeout(settings.apps_script_timeout_s)
        self._retry_max = settings.apps_script_retry_max
        self._backoff_s = settings.apps_script_backoff_s
        self._transport = transport

    async def call(self, action: str, **payload: Any) -> Dict[str, Any]:
        """Invoke ``action`` and return the decoded ``ok`` payload."""

        if not self._url:
            raise UpstreamError("APPS_SCRIPT_URL is not configured")

        body = {"action": action, **payload}
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(_RETRYABLE_EXCEPTIONS),
            stop=stop_after_attempt(self._retry_max + 1),
            wait=wait_exponential(multiplier=self._backoff_s, max=_MAX_BACKOFF_S),
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    text = await self._post(action, body)
        except httpx.TransportError as exc:
            raise UpstreamError(f"Transform backend unreachable: {exc}") from exc
        return decode_backend_body(text)

    async def _post(self, action: str, body: Dict[str, Any]) -> str:
        async with httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            response = await client.post(self._url, json=body)
        LOGGER.debug(
            "Transform backend action=%s status=%s bytes=%d",
            action,
            response.status_code,
            len(response.content),
        )
        if response.status_code >= 500:
            raise TransientUpstreamError(
                f"Transform backend answered HTTP {response.status_code}: "
                f"{response.text[:SNIPPET_CHARS]}"
            )
        return response.text

    async def prepare(self, request: PrepareRequest) -> Dict[str, Any]:
        """Upload the workbook and return the backend's answer verbatim."""

        LOGGER.info(
            "Preparing %s (%d bytes, headerRow=%d, sheetPrefix=%s)",
            request.file_name,
            len(request.file_bytes),
            request.header_row,
            request.sheet_prefix,
        )
        return await self.call(
            "prepare",
            fileBase64=base64.b64encode(request.file_bytes).decode("ascii"),
            fileName=request.file_name,
            headerRow=request.header_row,
            sheetPrefix=request.sheet_prefix,
            outputName=request.output_name,
        )

    async def build_pages(
        self,
        output_spreadsheet_id: str,
        *,
        selected_headers: Optional[Sequence[str]],
        cfg: Dict[str, Any],
        offset: int,
        limit: int,
    ) -> PageBatch:
        """Fetch one batch of rendered page descriptors."""

        headers: Optional[List[str]] = (
            list(selected_headers) if selected_headers is not None else None
        )
        data = await self.call(
            "buildPages",
            outputSpreadsheetId=output_spreadsheet_id,
            selectedHeaders=headers,
            cfg=cfg,
            offset=offset,
            limit=limit,
        )
        try:
            return PageBatch.model_validate(data)
        except SchemaError as exc:
            raise UpstreamError(
                f"Transform backend returned a malformed page batch: {exc}"
            ) from exc


__all__ = ["AppsScriptClient", "SNIPPET_CHARS", "decode_backend_body"]
