"""Headless Chromium rasterisation of backend HTML pages."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, Protocol

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)

from ..api.schemas import RenderOptions
from ..config import Settings
from ..errors import RenderError

LOGGER = logging.getLogger(__name__)

_FONTS_READY_JS = "() => (document.fonts ? document.fonts.ready.then(() => true) : true)"


class Renderer(Protocol):
    """Turns one HTML document into PNG bytes."""

    async def render_png(self, html: str, options: RenderOptions) -> bytes: ...


RendererFactory = Callable[[Settings], AsyncContextManager[Renderer]]


class BrowserRenderer:
    """Renders pages in fresh contexts of a single shared browser."""

    def __init__(self, browser: Browser) -> None:
        self._browser = browser

    async def render_png(self, html: str, options: RenderOptions) -> bytes:
        try:
            context = await self._browser.new_context(
                viewport={"width": options.width, "height": options.height},
                device_scale_factor=options.device_scale_factor,
            )
        except PlaywrightError as exc:
            raise RenderError(f"Could not open a browser context: {exc}") from exc

        try:
            page = await context.new_page()
            await page.set_content(html, wait_until="networkidle")
            await _wait_for_fonts(page)
            if options.wait_ms > 0:
                await asyncio.sleep(options.wait_ms / 1000)
            return await page.screenshot(type="png", full_page=True)
        except PlaywrightError as exc:
            raise RenderError(f"Browser failed to render page: {exc}") from exc
        finally:
            await _close_context(context)


async def _wait_for_fonts(page: Page) -> None:
    try:
        await page.evaluate(_FONTS_READY_JS)
    except PlaywrightError as exc:
        LOGGER.debug("document.fonts.ready unavailable: %s", exc)


async def _close_context(context: BrowserContext) -> None:
    try:
        await context.close()
    except PlaywrightError as exc:
        LOGGER.warning("Failed to close browser context: %s", exc)


async def _acquire_browser(playwright: Playwright, settings: Settings) -> Browser:
    timeout_ms = settings.browser_launch_timeout_s * 1000
    try:
        if settings.browser_cdp_url:
            LOGGER.info("Attaching to remote browser at %s", settings.browser_cdp_url)
            return await playwright.chromium.connect_over_cdp(
                settings.browser_cdp_url, timeout=timeout_ms
            )
        return await playwright.chromium.launch(headless=True, timeout=timeout_ms)
    except PlaywrightError as exc:
        raise RenderError(f"Could not start the headless browser: {exc}") from exc


@asynccontextmanager
async def open_browser_renderer(settings: Settings) -> AsyncIterator[BrowserRenderer]:
    """Hold one browser for the duration of a run and always release it."""

    async with async_playwright() as playwright:
        browser = await _acquire_browser(playwright, settings)
        try:
            yield BrowserRenderer(browser)
        finally:
            try:
                await browser.close()
            except PlaywrightError as exc:
                LOGGER.warning("Failed to close browser: %s", exc)


async def render_with_retry(
    renderer: Renderer,
    html: str,
    options: RenderOptions,
    *,
    retry_max: int = 0,
) -> bytes:
    """Render ``html``, retrying :class:`RenderError` up to ``retry_max`` times."""

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(RenderError),
        stop=stop_after_attempt(retry_max + 1),
        before_sleep=before_sleep_log(LOGGER, logging.WARNING),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await renderer.render_png(html, options)
    raise RenderError("Renderer produced no image")  # pragma: no cover - reraise=True


__all__ = [
    "BrowserRenderer",
    "Renderer",
    "RendererFactory",
    "open_browser_renderer",
    "render_with_retry",
]
