"""Test configuration for SheetZip."""

from __future__ import annotations

import asyncio
import inspect
import io
import json
import sys
import zipfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Generator

import httpx
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from sheetzip.api.schemas import RenderOptions  # noqa: E402
from sheetzip.config import Settings, get_settings, reset_settings_cache  # noqa: E402
from sheetzip.errors import RenderError  # noqa: E402
from sheetzip.services.apps_script import AppsScriptClient  # noqa: E402

BACKEND_URL = "https://script.test/macros/s/deployment/exec"


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Provide isolated configuration for each test."""

    monkeypatch.setenv("APPS_SCRIPT_URL", BACKEND_URL)
    monkeypatch.setenv("API_KEY", "")
    monkeypatch.setenv("APPS_SCRIPT_BACKOFF_S", "0")
    monkeypatch.setenv("ARCHIVE_ERROR_MARKER", "false")
    monkeypatch.setenv("RENDER_RETRY_MAX", "0")
    reset_settings_cache()
    yield
    reset_settings_cache()


def make_batches(sizes: list[int], *, last_next_offset: int | None = 999) -> list[dict]:
    """Deterministic ``buildPages`` answers; the last one reports ``done``."""

    batches: list[dict] = []
    offset = 0
    for index, size in enumerate(sizes):
        pages = [
            {"name": f"CT{offset + i + 1:03d}.png", "html": f"<p>page {offset + i + 1}</p>"}
            for i in range(size)
        ]
        done = index == len(sizes) - 1
        next_offset = last_next_offset if done else offset + size
        batches.append({"ok": True, "pages": pages, "done": done, "nextOffset": next_offset})
        offset += size
    return batches


class FakeBackend:
    """Scripted Apps Script stand-in served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.prepare_response: Any = {
            "ok": True,
            "outputSpreadsheetId": "sheet-123",
            "output_url": "https://docs.test/spreadsheets/d/sheet-123",
            "headers": ["Ho ten", "Ngay cong"],
            "sheets": 3,
        }
        self.batches: list[Any] = make_batches([1])

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if body["action"] == "prepare":
            return _as_response(self.prepare_response)
        index = len(self.build_calls) - 1
        if index >= len(self.batches):
            return httpx.Response(200, json={"ok": False, "error": "no more batches scripted"})
        return _as_response(self.batches[index])

    @property
    def build_calls(self) -> list[dict[str, Any]]:
        return [body for body in self.requests if body["action"] == "buildPages"]

    @property
    def prepare_calls(self) -> list[dict[str, Any]]:
        return [body for body in self.requests if body["action"] == "prepare"]

    def client(self, settings: Settings | None = None) -> AppsScriptClient:
        return AppsScriptClient(
            settings or get_settings(), transport=httpx.MockTransport(self.handler)
        )


def _as_response(item: Any) -> httpx.Response:
    if isinstance(item, httpx.Response):
        return item
    return httpx.Response(200, json=item)


class StubRenderer:
    """Renderer returning ``PNG:<html>``; can be told to fail on the n-th call."""

    def __init__(self, fail_on: set[int] | None = None) -> None:
        self.fail_on = fail_on or set()
        self.calls: list[tuple[str, RenderOptions]] = []
        self.opened = 0
        self.closed = 0

    async def render_png(self, html: str, options: RenderOptions) -> bytes:
        self.calls.append((html, options))
        if len(self.calls) in self.fail_on:
            raise RenderError(f"render failed on call {len(self.calls)}")
        return f"PNG:{html}".encode("utf-8")

    @asynccontextmanager
    async def factory(self, settings: Settings) -> AsyncIterator["StubRenderer"]:
        self.opened += 1
        try:
            yield self
        finally:
            self.closed += 1


def read_zip(payload: bytes) -> dict[str, bytes]:
    """Return ``{name: bytes}`` for an archive, preserving entry order."""

    with zipfile.ZipFile(io.BytesIO(payload)) as archive:
        return {name: archive.read(name) for name in archive.namelist()}


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def stub_renderer() -> StubRenderer:
    return StubRenderer()


@pytest.fixture()
def client(fake_backend: FakeBackend, stub_renderer: StubRenderer) -> Generator[TestClient, None, None]:
    """Return a test client wired to the fake backend and stub renderer."""

    from sheetzip.main import app
    from sheetzip.routers.pipeline import get_renderer_factory, get_transform_client

    app.dependency_overrides[get_transform_client] = lambda: fake_backend.client()
    app.dependency_overrides[get_renderer_factory] = lambda: stub_renderer.factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        loop = asyncio.new_event_loop()
        try:
            signature = inspect.signature(pyfuncitem.obj)
            kwargs = {
                name: pyfuncitem.funcargs[name]
                for name in signature.parameters
                if name in pyfuncitem.funcargs
            }
            loop.run_until_complete(pyfuncitem.obj(**kwargs))
        finally:
            loop.close()
        return True
    return None
