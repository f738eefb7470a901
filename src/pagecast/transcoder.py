# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import asyncio
import logging
import signal
import urllib.parse
from asyncio import subprocess
from typing import AsyncIterable, List, Optional

from .metrics import Metrics, ProcessMonitor
from .settings import PipelineConfig

logger = logging.getLogger("transcoder")

# Demuxers that carry bare frames and need the input rate spelled out
FRAME_CONTAINERS = ('mjpeg', 'image2pipe')


class TranscodeSpawnFailure(Exception):
    pass


def build_ffmpeg_args(config: PipelineConfig, input_format: str, audio_url: Optional[str] = None) -> List[str]:
    """Argument list for ffmpeg: video on stdin, optional audio URL, one network output."""
    fps = str(config.framerate)

    # Input 0: captured video on stdin
    args = ["-re", "-f", input_format]
    if input_format in FRAME_CONTAINERS:
        args += ["-framerate", fps]
    args += ["-i", "pipe:0"]

    # Input 1: soundtrack, fetched by ffmpeg itself
    if audio_url:
        args += ["-re", "-i", audio_url]

    args += [
        "-map", "0:v:0",
        "-c:v", config.video_codec,
        "-pix_fmt", config.pixel_format,
        "-preset", config.x264_preset,
        "-r", fps,
        "-b:v", config.video_bitrate,
    ]

    if audio_url:
        args += [
            "-map", "1:a:0",
            "-c:a", config.audio_codec,
            "-b:a", config.audio_bitrate,
            "-ar", str(config.audio_sample_rate),
            "-ac", str(config.audio_channels),
        ]
    else:
        args.append("-an")

    args += ["-f", config.output_format, config.output_url]
    return args


def redact_url(url: str) -> str:
    """Hide the stream key (last path segment) of a broadcast URL."""
    parts = urllib.parse.urlsplit(url)
    if not parts.scheme or '/' not in parts.path.strip('/'):
        return url
    head, _, _ = parts.path.rpartition('/')
    return urllib.parse.urlunsplit((parts.scheme, parts.netloc, f"{head}/****", '', ''))


class TranscodeProcess:
    """
    Handle on a running transcoder.

    `exited` resolves exactly once with the process return code. The capture
    stream is forwarded to stdin by a background task until the capture ends,
    the process stops reading, or `stop_forwarding` is called.
    """
    def __init__(self, process: subprocess.Process, capture: AsyncIterable[bytes],
                 metrics: Optional[Metrics] = None):
        self.process = process
        self.capture = capture
        self.metrics = metrics
        self.exited: asyncio.Future = asyncio.get_running_loop().create_future()
        self._forward_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self.monitor: Optional[ProcessMonitor] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def start(self) -> None:
        self._watch_task = asyncio.create_task(self._watch())
        self._forward_task = asyncio.create_task(self._forward())
        if self.metrics:
            self.monitor = ProcessMonitor(self.pid)
            self.monitor.on_stats = self.metrics.set_process_usage
            self.monitor.start()

    async def _watch(self) -> None:
        returncode = await self.process.wait()
        logger.info(f"ffmpeg exited with code {returncode}")
        if self.metrics:
            self.metrics.set_exit_code(returncode)
        if not self.exited.done():
            self.exited.set_result(returncode)

    async def _forward(self) -> None:
        stdin = self.process.stdin
        frames = self.capture.__aiter__()
        try:
            async for chunk in frames:
                stdin.write(chunk)
                await stdin.drain()
                if self.metrics:
                    self.metrics.record_forwarded(len(chunk))
            logger.info("Capture stream ended")
        except asyncio.CancelledError:
            pass
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"ffmpeg stopped reading its input: {e}")
        finally:
            if not stdin.is_closing():
                stdin.close()
            aclose = getattr(frames, "aclose", None)
            if aclose is not None:
                await aclose()

    async def wait(self) -> int:
        return await asyncio.shield(self.exited)

    async def stop_forwarding(self) -> None:
        task, self._forward_task = self._forward_task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def _kill(self) -> None:
        try:
            self.process.kill()
        except ProcessLookupError:
            pass

    async def terminate(self, timeout: float = 5.0) -> int:
        """Ask ffmpeg to finish (SIGINT flushes the output), kill it if it does not."""
        try:
            if not self.exited.done() and self.process.returncode is None:
                logger.info("Sending SIGINT to ffmpeg")
                try:
                    self.process.send_signal(signal.SIGINT)
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(asyncio.shield(self.exited), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"ffmpeg did not exit within {timeout}s, killing it")
                    self._kill()
            return await asyncio.shield(self.exited)
        except asyncio.CancelledError:
            if not self.exited.done():
                logger.warning("Termination of ffmpeg was cancelled, killing it")
                self._kill()
            raise
        finally:
            monitor, self.monitor = self.monitor, None
            if monitor:
                await monitor.stop()


class TranscodeSupervisor:
    def __init__(self, binary: str = "ffmpeg", metrics: Optional[Metrics] = None):
        self.binary = binary
        self.metrics = metrics

    async def start(self, capture, audio_url: Optional[str], config: PipelineConfig) -> TranscodeProcess:
        args = build_ffmpeg_args(config, capture.container, audio_url)
        shown = args[:-1] + [redact_url(args[-1])]
        logger.info(f"{self.binary} {' '.join(shown)}")
        try:
            process = await subprocess.create_subprocess_exec(
                self.binary, *args,
                stdin=subprocess.PIPE,
                stdout=None,
                stderr=None,
            )
        except OSError as e:
            raise TranscodeSpawnFailure(f"Could not start {self.binary}: {e}") from e

        handle = TranscodeProcess(process, capture, metrics=self.metrics)
        handle.start()
        logger.info(f"ffmpeg started with pid {process.pid}")
        return handle
