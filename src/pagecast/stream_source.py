# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import asyncio
import base64
import binascii
import logging
from typing import Any, AsyncIterator, Dict, Optional, Set

from playwright.async_api import async_playwright, Error as PlaywrightError

from .settings import PipelineConfig

logger = logging.getLogger("capture")

MUTE_MEDIA_SCRIPT = """() => {
    document.querySelectorAll('audio, video').forEach((el) => { el.muted = true; el.volume = 0; });
}"""


class CaptureUnavailable(Exception):
    pass


class RenderSession:
    """One headless browser and the single page rendered inside it."""
    def __init__(self, playwright, browser, page):
        self.playwright = playwright
        self.browser = browser
        self.page = page
        self.loaded = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def navigate(self, url: str, timeout_ms: int = 30000) -> None:
        logger.info(f"Loading {url}")
        try:
            await self.page.goto(url, wait_until="networkidle", timeout=timeout_ms)
        except PlaywrightError as e:
            raise CaptureUnavailable(f"Render target {url} did not finish loading: {e}") from e
        self.loaded = True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.loaded = False
        try:
            await self.browser.close()
        finally:
            await self.playwright.stop()
        logger.info("Browser closed")


class CaptureHandle:
    """
    Live MJPEG byte stream of a page, fed by a DevTools screencast.

    The browser only emits a frame when the page repaints, so iteration
    paces itself at the configured frame rate and repeats the newest frame
    in between. A consumer that falls behind skips frames, never reorders them.
    """
    container = "mjpeg"

    def __init__(self, cdp_session, framerate: int = 30, quality: int = 90,
                 max_width: Optional[int] = None, max_height: Optional[int] = None):
        self.cdp_session = cdp_session
        self.framerate = max(1, int(framerate))
        self.quality = quality
        self.max_width = max_width
        self.max_height = max_height
        self.frames_received = 0
        self._latest: Optional[bytes] = None
        self._frame_ready = asyncio.Event()
        self._closed = asyncio.Event()
        self._ack_tasks: Set[asyncio.Task] = set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def start(self) -> None:
        self.cdp_session.on("Page.screencastFrame", self._on_frame)
        params: Dict[str, Any] = {"format": "jpeg", "quality": self.quality, "everyNthFrame": 1}
        if self.max_width:
            params["maxWidth"] = self.max_width
        if self.max_height:
            params["maxHeight"] = self.max_height
        await self.cdp_session.send("Page.startScreencast", params)
        logger.info(f"Screencast started at {self.framerate} fps")

    def _on_frame(self, params: Dict[str, Any]) -> None:
        # Chrome pauses the screencast until each frame is acknowledged
        task = asyncio.ensure_future(self._ack(params.get("sessionId")))
        self._ack_tasks.add(task)
        task.add_done_callback(self._ack_tasks.discard)
        if self.closed:
            return
        try:
            data = base64.b64decode(params["data"])
        except (KeyError, binascii.Error) as e:
            logger.warning(f"Dropping malformed screencast frame: {e}")
            return
        self._latest = data
        self.frames_received += 1
        self._frame_ready.set()

    async def _ack(self, session_id) -> None:
        if self.closed or session_id is None:
            return
        try:
            await self.cdp_session.send("Page.screencastFrameAck", {"sessionId": session_id})
        except PlaywrightError as e:
            logger.debug(f"Screencast frame ack failed: {e}")

    async def frames(self) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        interval = 1.0 / self.framerate

        ready = asyncio.ensure_future(self._frame_ready.wait())
        closing = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait([ready, closing], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (ready, closing):
                if not task.done():
                    task.cancel()

        next_tick = loop.time()
        while not self.closed:
            yield self._latest
            next_tick += interval
            delay = next_tick - loop.time()
            if delay < 0:
                next_tick = loop.time()
                delay = 0
            try:
                await asyncio.wait_for(self._closed.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.frames()

    async def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        for task in list(self._ack_tasks):
            task.cancel()
        try:
            await self.cdp_session.send("Page.stopScreencast")
        finally:
            await self.cdp_session.detach()
        logger.info(f"Screencast stopped after {self.frames_received} frames")


class StreamSource:
    async def open(self, config: PipelineConfig) -> RenderSession:
        logger.info("Launching headless browser...")
        playwright = await async_playwright().start()
        browser = None
        try:
            browser = await playwright.chromium.launch(
                headless=True,
                args=[
                    f"--window-size={config.width},{config.height}",
                    "--no-sandbox",
                    "--disable-setuid-sandbox",
                    "--disable-gpu",
                    "--autoplay-policy=no-user-gesture-required",
                    "--mute-audio",
                ],
            )
            page = await browser.new_page(viewport={"width": config.width, "height": config.height})
        except BaseException as e:
            # also reached when startup is cancelled mid-launch
            try:
                if browser is not None:
                    await browser.close()
            finally:
                await playwright.stop()
            if isinstance(e, PlaywrightError):
                stage = "launch browser" if browser is None else "open page"
                raise CaptureUnavailable(f"Could not {stage}: {e}") from e
            raise
        return RenderSession(playwright, browser, page)

    async def acquire(self, session: RenderSession, config: PipelineConfig) -> CaptureHandle:
        if session.closed or not session.loaded:
            raise CaptureUnavailable("Render target has not finished loading")

        # Network idle does not mean painted; give the page time to settle
        logger.info(f"Page loaded, settling for {config.settle_delay:.1f}s")
        await asyncio.sleep(config.settle_delay)

        try:
            await session.page.evaluate(MUTE_MEDIA_SCRIPT)
            cdp_session = await session.page.context.new_cdp_session(session.page)
        except PlaywrightError as e:
            raise CaptureUnavailable(f"Could not attach to render target: {e}") from e

        capture = CaptureHandle(
            cdp_session,
            framerate=config.framerate,
            quality=config.capture_quality,
            max_width=config.width,
            max_height=config.height,
        )
        try:
            await capture.start()
        except PlaywrightError as e:
            try:
                await cdp_session.detach()
            except PlaywrightError:
                logger.debug("DevTools session already detached")
            raise CaptureUnavailable(f"Screencast could not start: {e}") from e
        return capture
