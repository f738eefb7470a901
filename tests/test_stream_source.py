import asyncio
import base64

import pytest
from playwright.async_api import Error as PlaywrightError

import pagecast.stream_source as stream_source
from pagecast.settings import PipelineConfig
from pagecast.stream_source import CaptureHandle, CaptureUnavailable, RenderSession, StreamSource

CONFIG = PipelineConfig(output_url='rtmp://host/app/key', framerate=50, settle_delay=0)


class FakeCDPSession:
    def __init__(self):
        self.handlers = {}
        self.sent = []
        self.detached = False

    def on(self, event, handler):
        self.handlers[event] = handler

    async def send(self, method, params=None):
        self.sent.append((method, params))

    async def detach(self):
        self.detached = True

    def emit_frame(self, data, session_id):
        self.handlers["Page.screencastFrame"]({
            "data": base64.b64encode(data).decode("ascii"),
            "sessionId": session_id,
            "metadata": {},
        })


class FakePage:
    def __init__(self, cdp):
        self.cdp = cdp
        self.context = self
        self.scripts = []

    async def evaluate(self, script):
        self.scripts.append(script)

    async def new_cdp_session(self, page):
        return self.cdp


class FakeClosable:
    def __init__(self):
        self.closed = 0

    async def close(self):
        self.closed += 1

    async def stop(self):
        self.closed += 1


def methods(cdp):
    return [method for method, _ in cdp.sent]


def test_handle_starts_screencast_with_capture_bounds():
    cdp = FakeCDPSession()

    async def scenario():
        handle = CaptureHandle(cdp, framerate=30, quality=80, max_width=1280, max_height=720)
        await handle.start()
        await handle.close()

    asyncio.run(scenario())
    method, params = cdp.sent[0]
    assert method == "Page.startScreencast"
    assert params == {"format": "jpeg", "quality": 80, "everyNthFrame": 1, "maxWidth": 1280, "maxHeight": 720}
    assert "Page.stopScreencast" in methods(cdp)
    assert cdp.detached


def test_frames_are_acknowledged_and_repeated_at_frame_rate():
    cdp = FakeCDPSession()

    async def scenario():
        handle = CaptureHandle(cdp, framerate=50)
        await handle.start()
        cdp.emit_frame(b"first", 1)
        received = []
        async for frame in handle:
            received.append(frame)
            if len(received) == 3:
                cdp.emit_frame(b"second", 2)
            if len(received) == 6:
                await handle.close()
        return received, handle

    received, handle = asyncio.run(scenario())
    assert received[:3] == [b"first"] * 3
    assert received[3:] == [b"second"] * 3
    assert handle.frames_received == 2
    acks = [params["sessionId"] for method, params in cdp.sent if method == "Page.screencastFrameAck"]
    assert acks == [1, 2]


def test_closing_before_first_frame_ends_iteration():
    cdp = FakeCDPSession()

    async def scenario():
        handle = CaptureHandle(cdp, framerate=30)
        await handle.start()
        asyncio.get_running_loop().call_later(0.05, lambda: asyncio.ensure_future(handle.close()))
        return [frame async for frame in handle]

    assert asyncio.run(scenario()) == []


def test_close_is_idempotent():
    cdp = FakeCDPSession()

    async def scenario():
        handle = CaptureHandle(cdp)
        await handle.start()
        await handle.close()
        await handle.close()

    asyncio.run(scenario())
    assert methods(cdp).count("Page.stopScreencast") == 1


def test_malformed_frame_is_dropped():
    cdp = FakeCDPSession()

    async def scenario():
        handle = CaptureHandle(cdp)
        await handle.start()
        cdp.handlers["Page.screencastFrame"]({"data": "***not base64***", "sessionId": 9})
        await asyncio.sleep(0)
        await handle.close()
        return handle

    handle = asyncio.run(scenario())
    assert handle.frames_received == 0


def test_acquire_requires_a_loaded_page():
    session = RenderSession(FakeClosable(), FakeClosable(), FakePage(FakeCDPSession()))

    with pytest.raises(CaptureUnavailable):
        asyncio.run(StreamSource().acquire(session, CONFIG))


def test_acquire_mutes_page_and_attaches_capture():
    cdp = FakeCDPSession()
    page = FakePage(cdp)
    session = RenderSession(FakeClosable(), FakeClosable(), page)
    session.loaded = True

    async def scenario():
        handle = await StreamSource().acquire(session, CONFIG)
        await handle.close()
        return handle

    handle = asyncio.run(scenario())
    assert handle.container == "mjpeg"
    assert handle.framerate == 50
    assert len(page.scripts) == 1 and "muted" in page.scripts[0]
    assert methods(cdp)[0] == "Page.startScreencast"


def test_session_close_releases_browser_once():
    playwright, browser = FakeClosable(), FakeClosable()
    session = RenderSession(playwright, browser, FakePage(FakeCDPSession()))
    session.loaded = True

    async def scenario():
        await session.close()
        await session.close()

    asyncio.run(scenario())
    assert browser.closed == 1
    assert playwright.closed == 1
    assert session.closed and not session.loaded


class FakeBrowser(FakeClosable):
    def __init__(self, hang_on_page=False):
        super().__init__()
        self.hang_on_page = hang_on_page
        self.page_requested = asyncio.Event()

    async def new_page(self, viewport=None):
        self.page_requested.set()
        if self.hang_on_page:
            await asyncio.Event().wait()
        return FakePage(FakeCDPSession())


class FakeChromium:
    def __init__(self, browser=None, error=None):
        self.browser = browser
        self.error = error
        self.launching = asyncio.Event()

    async def launch(self, headless=True, args=None):
        self.launching.set()
        if self.error:
            raise self.error
        if self.browser is None:
            await asyncio.Event().wait()
        return self.browser


class FakePlaywright(FakeClosable):
    def __init__(self, chromium):
        super().__init__()
        self.chromium = chromium


def use_playwright(monkeypatch, playwright):
    class Starter:
        async def start(self):
            return playwright

    monkeypatch.setattr(stream_source, 'async_playwright', Starter)


def test_cancelled_launch_stops_playwright(monkeypatch):
    chromium = FakeChromium()
    playwright = FakePlaywright(chromium)
    use_playwright(monkeypatch, playwright)

    async def scenario():
        task = asyncio.ensure_future(StreamSource().open(CONFIG))
        await chromium.launching.wait()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return task

    task = asyncio.run(scenario())
    assert task.cancelled()
    assert playwright.closed == 1


def test_cancelled_page_creation_closes_browser(monkeypatch):
    browser = FakeBrowser(hang_on_page=True)
    playwright = FakePlaywright(FakeChromium(browser=browser))
    use_playwright(monkeypatch, playwright)

    async def scenario():
        task = asyncio.ensure_future(StreamSource().open(CONFIG))
        await browser.page_requested.wait()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return task

    task = asyncio.run(scenario())
    assert task.cancelled()
    assert browser.closed == 1
    assert playwright.closed == 1


def test_launch_error_is_capture_unavailable(monkeypatch):
    playwright = FakePlaywright(FakeChromium(error=PlaywrightError("no chromium")))
    use_playwright(monkeypatch, playwright)

    with pytest.raises(CaptureUnavailable):
        asyncio.run(StreamSource().open(CONFIG))
    assert playwright.closed == 1


def test_open_returns_session_with_page(monkeypatch):
    browser = FakeBrowser()
    use_playwright(monkeypatch, FakePlaywright(FakeChromium(browser=browser)))

    session = asyncio.run(StreamSource().open(CONFIG))
    assert session.browser is browser
    assert not session.loaded
    assert browser.closed == 0
