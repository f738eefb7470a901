# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import asyncio
import enum
import logging
import signal
from typing import Any, Dict, List, Optional

from .audio import SecondaryAudioFetcher
from .settings import PipelineConfig

logger = logging.getLogger("pipeline")

EXIT_INTERRUPTED = 0
EXIT_STARTUP_FAILURE = 1


class PipelineState(enum.Enum):
    IDLE = 'idle'
    INITIALIZING = 'initializing'
    STREAMING = 'streaming'
    TERMINATING = 'terminating'
    STOPPED = 'stopped'


class TeardownStepFailure(Exception):
    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"teardown step '{step}' failed: {cause!r}")
        self.step = step
        self.cause = cause


class TranscodeRuntimeExit(Exception):
    """Records that the transcoder ended on its own. A trigger, not a failure."""
    def __init__(self, returncode: int):
        super().__init__(f"transcoder exited with code {returncode}")
        self.returncode = returncode


class InterruptRequested(Exception):
    def __init__(self, reason: str = "interrupt"):
        super().__init__(reason)
        self.reason = reason


class StartupFailure(Exception):
    def __init__(self, phase: str, cause: BaseException):
        super().__init__(f"{phase} phase failed: {cause}")
        self.phase = phase
        self.cause = cause


def render_query(config: PipelineConfig) -> Dict[str, str]:
    """Query string the frontend reads to run in broadcast mode."""
    return {
        "drive_audio": config.audio_asset,
        "drive_bg": config.background_asset,
        "server": "1",
        # the soundtrack is fetched by ffmpeg; the page itself stays silent
        "mute": "1",
    }


def exit_status(returncode: int) -> int:
    if returncode < 0:
        return 128 - returncode
    return returncode


class PipelineLifecycleController:
    """
    Drives one broadcast session: frontend, browser, capture, transcoder.

    Startup is strictly sequential and aborts on the first failure. Once
    streaming, the controller waits for whichever comes first, the transcoder
    exiting or an interrupt, and then tears everything down in a fixed order.
    """
    def __init__(self, config: PipelineConfig, frontend, stream_source, transcoder,
                 audio_fetcher: Optional[SecondaryAudioFetcher] = None,
                 metrics=None, teardown_timeout: float = 5.0,
                 navigation_timeout_ms: int = 30000):
        self.config = config
        self.frontend = frontend
        self.stream_source = stream_source
        self.transcoder = transcoder
        self.audio_fetcher = audio_fetcher or SecondaryAudioFetcher()
        self.metrics = metrics
        self.teardown_timeout = teardown_timeout
        self.navigation_timeout_ms = navigation_timeout_ms

        self.state = PipelineState.IDLE
        self.session = None
        self.capture = None
        self.process = None
        self.fatal_error: Optional[StartupFailure] = None
        self.trigger: Optional[Exception] = None
        self.teardown_failures: List[TeardownStepFailure] = []

        self._interrupt_event = asyncio.Event()
        self._stopped_event = asyncio.Event()
        self._frontend_started = False

    def _set_state(self, state: PipelineState) -> None:
        logger.info(f"Pipeline state: {self.state.value} -> {state.value}")
        self.state = state
        if self.metrics:
            self.metrics.set_state(state.value)

    def status(self) -> str:
        return self.state.value

    def request_shutdown(self, reason: str = "interrupt") -> None:
        if self._interrupt_event.is_set():
            logger.info(f"Shutdown already requested, ignoring {reason}")
            return
        logger.info(f"Received {reason}, initiating shutdown")
        if self.trigger is None:
            self.trigger = InterruptRequested(reason)
        self._interrupt_event.set()

    async def _phase(self, phase: str, coro) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise StartupFailure(phase, e) from e

    async def start(self) -> None:
        """Idle -> Initializing -> Streaming. Raises StartupFailure naming the failed phase."""
        await self._phase("frontend", self.frontend.start())
        self._frontend_started = True
        self._set_state(PipelineState.INITIALIZING)

        self.session = await self._phase("render", self.stream_source.open(self.config))
        url = self.frontend.render_url(render_query(self.config))
        await self._phase("render", self.session.navigate(url, self.navigation_timeout_ms))

        logger.info("Starting capture (video only)...")
        self.capture = await self._phase("capture", self.stream_source.acquire(self.session, self.config))

        audio_url = self.audio_fetcher.resolve(self.config.audio_asset)
        if audio_url:
            logger.info("Soundtrack will be pulled by the transcoder")
        else:
            logger.info("No soundtrack configured, broadcasting without audio")
        self.process = await self._phase("transcode", self.transcoder.start(self.capture, audio_url, self.config))
        self._set_state(PipelineState.STREAMING)

    async def wait_for_trigger(self) -> int:
        """Suspend until the transcoder exits or an interrupt arrives; return the exit status."""
        exited = asyncio.ensure_future(self.process.wait())
        interrupted = asyncio.ensure_future(self._interrupt_event.wait())
        try:
            await asyncio.wait([exited, interrupted], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (exited, interrupted):
                if not task.done():
                    task.cancel()

        if self.trigger is None and exited.done() and not exited.cancelled():
            self.trigger = TranscodeRuntimeExit(exited.result())

        if isinstance(self.trigger, TranscodeRuntimeExit):
            logger.info(f"Transcoder exited with code {self.trigger.returncode}, stopping broadcast")
            return exit_status(self.trigger.returncode)
        return EXIT_INTERRUPTED

    async def _teardown_step(self, step: str, coro, timeout: Optional[float] = None) -> None:
        timeout = timeout or self.teardown_timeout
        try:
            await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as e:
            failure = TeardownStepFailure(step, e)
            logger.warning(f"Timeout while waiting for {step} to stop (after {timeout}s)")
            self.teardown_failures.append(failure)
        except Exception as e:
            failure = TeardownStepFailure(step, e)
            logger.error(f"Error while stopping {step}: {e}", exc_info=True)
            self.teardown_failures.append(failure)

    async def _stop_capture(self) -> None:
        process, capture = self.process, self.capture
        self.capture = None
        try:
            if process is not None:
                await process.stop_forwarding()
        finally:
            if capture is not None:
                await capture.close()

    async def _stop_transcoder(self) -> None:
        process, self.process = self.process, None
        if process is not None:
            await process.terminate(timeout=self.teardown_timeout)

    async def _close_session(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            await session.close()

    async def _stop_frontend(self) -> None:
        if not self._frontend_started:
            return
        self._frontend_started = False
        await self.frontend.stop()

    async def shutdown(self) -> None:
        """Exhaustive, idempotent teardown. A second call waits for the first."""
        if self.state in (PipelineState.TERMINATING, PipelineState.STOPPED):
            await self._stopped_event.wait()
            return
        self._set_state(PipelineState.TERMINATING)
        logger.info("Starting shutdown sequence")
        try:
            await self._teardown_step("capture", self._stop_capture())
            # SIGINT grace period, then the kill and the reap after it
            await self._teardown_step("transcoder", self._stop_transcoder(),
                                      timeout=2 * self.teardown_timeout + 1)
            await self._teardown_step("browser", self._close_session())
            await self._teardown_step("frontend", self._stop_frontend())
            if self.metrics:
                await self._teardown_step("metrics", self.metrics.stop_http())
        finally:
            self._set_state(PipelineState.STOPPED)
            self._stopped_event.set()
        logger.info("Shutdown complete")

    def _install_signal_handlers(self, loop) -> List[int]:
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
                installed.append(sig)
            except (NotImplementedError, RuntimeError) as e:
                logger.debug(f"Cannot handle {sig.name} on this loop: {e}")
        return installed

    async def run(self, handle_signals: bool = True) -> int:
        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers(loop) if handle_signals else []
        exit_code = EXIT_STARTUP_FAILURE
        startup = asyncio.ensure_future(self.start())
        interrupted = asyncio.ensure_future(self._interrupt_event.wait())
        try:
            if self.metrics:
                self.metrics.start_http()
                self.metrics.set_state(self.state.value)

            await asyncio.wait([startup, interrupted], return_when=asyncio.FIRST_COMPLETED)
            if not startup.done():
                logger.info("Interrupted during startup, aborting")
                startup.cancel()
                await asyncio.gather(startup, return_exceptions=True)
                exit_code = EXIT_INTERRUPTED
            else:
                error = startup.exception()
                if isinstance(error, StartupFailure):
                    self.fatal_error = error
                    logger.critical(f"Fatal error in {error.phase} phase: {error.cause}", exc_info=error.cause)
                    exit_code = EXIT_STARTUP_FAILURE
                elif error is not None:
                    raise error
                else:
                    logger.info("Broadcast is live")
                    exit_code = await self.wait_for_trigger()
        finally:
            for task in (startup, interrupted):
                if not task.done():
                    task.cancel()
            await asyncio.gather(startup, interrupted, return_exceptions=True)
            await self.shutdown()
            for sig in installed:
                loop.remove_signal_handler(sig)
        return exit_code
