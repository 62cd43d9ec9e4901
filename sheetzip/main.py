"""FastAPI application: edge gating, error envelope and routers."""

from __future__ import annotations

import hmac
import logging
import time
from typing import Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import Settings, get_settings
from .errors import AuthError, MethodError, SheetZipError
from .routers.pipeline import router as pipeline_router
from .utils.logging import configure_logging

LOGGER = logging.getLogger(__name__)

ENDPOINTS = ["/api/prepare", "/api/render", "/api/run"]

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS, GET",
    "Access-Control-Allow-Headers": "Content-Type, X-API-Key",
    "Access-Control-Expose-Headers": "Content-Disposition, Content-Type, X-Output-Url, X-Output-Id",
    "Access-Control-Max-Age": "86400",
}


def error_response(message: str, status_code: int = 400) -> JSONResponse:
    """Uniform ``{ok: false, error}`` body."""

    return JSONResponse(status_code=status_code, content={"ok": False, "error": message})


def _check_api_key(request: Request, settings: Settings) -> None:
    if not settings.api_key:
        return
    supplied = request.headers.get("x-api-key", "")
    if not hmac.compare_digest(supplied.encode("utf-8"), settings.api_key.encode("utf-8")):
        raise AuthError("Unauthorized")


def _describe_validation_error(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid request"


async def _gate(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if request.method == "OPTIONS":
        return Response(status_code=204)
    if request.method == "GET":
        return JSONResponse(content={"ok": True, "endpoints": ENDPOINTS})
    try:
        _check_api_key(request, get_settings())
        if request.method != "POST":
            raise MethodError("Method Not Allowed")
        return await call_next(request)
    except SheetZipError as exc:
        return error_response(exc.message, exc.status_code)
    except Exception as exc:
        LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(str(exc) or exc.__class__.__name__, 500)


def create_app() -> FastAPI:
    """Build the application."""

    configure_logging(get_settings().log_level)
    app = FastAPI(title="SheetZip", version=__version__)
    app.include_router(pipeline_router)

    @app.exception_handler(SheetZipError)
    async def _sheetzip_error(request: Request, exc: SheetZipError) -> JSONResponse:
        if exc.status_code >= 500:
            LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc)
        return error_response(exc.message, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return error_response(_describe_validation_error(exc), 400)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return error_response(str(exc.detail), exc.status_code)

    @app.middleware("http")
    async def edge(request: Request, call_next):
        started = time.perf_counter()
        response = await _gate(request, call_next)
        response.headers.update(CORS_HEADERS)
        elapsed_ms = (time.perf_counter() - started) * 1000
        LOGGER.info(
            "[%s] %s -> %s (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    return app


app = create_app()


__all__ = ["CORS_HEADERS", "ENDPOINTS", "app", "create_app", "error_response"]
