# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import asyncio
import logging
from http.server import HTTPServer
from typing import Optional

import psutil
from prometheus_client import CollectorRegistry, Counter, Gauge, MetricsHandler

logger_metrics = logging.getLogger("metrics")

PIPELINE_STATES = ['idle', 'initializing', 'streaming', 'terminating', 'stopped']


class Metrics:
    def __init__(self, port: int = 8000, registry: Optional[CollectorRegistry] = None):
        self.port = port
        self.registry = registry if registry is not None else CollectorRegistry()
        self.server: Optional[HTTPServer] = None
        self._task: Optional[asyncio.Task] = None

        self.pipeline_state = Gauge('pipeline_state', 'Current pipeline lifecycle state', ['state'], registry=self.registry)
        self.bytes_forwarded = Counter('capture_bytes_forwarded', 'Bytes of captured video written to the transcoder', registry=self.registry)
        self.frames_forwarded = Counter('capture_frames_forwarded', 'Captured frames written to the transcoder', registry=self.registry)
        self.transcoder_exit_code = Gauge('transcoder_exit_code', 'Exit code of the last transcoder process', registry=self.registry)
        self.transcoder_cpu_percent = Gauge('transcoder_cpu_percent', 'CPU utilization of the transcoder process', registry=self.registry)
        self.transcoder_rss_bytes = Gauge('transcoder_rss_bytes', 'Resident memory of the transcoder process', registry=self.registry)

    def set_state(self, state: str):
        for name in PIPELINE_STATES:
            self.pipeline_state.labels(state=name).set(1 if name == state else 0)

    def record_forwarded(self, size: int):
        self.frames_forwarded.inc()
        self.bytes_forwarded.inc(size)

    def set_exit_code(self, code: int):
        self.transcoder_exit_code.set(code)

    def set_process_usage(self, cpu_percent: float, rss_bytes: int):
        self.transcoder_cpu_percent.set(cpu_percent)
        self.transcoder_rss_bytes.set(rss_bytes)

    def start_http(self):
        if self._task is not None:
            logger_metrics.warning("Metrics server is already running")
            return
        self.server = HTTPServer(('localhost', self.port), MetricsHandler.factory(self.registry))
        self._task = asyncio.create_task(asyncio.to_thread(self.server.serve_forever))
        logger_metrics.info(f"Metrics server started on port {self.port}")

    async def stop_http(self):
        if self._task is None:
            return
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
        if not self._task.done():
            await self._task
        self._task = None
        logger_metrics.info("Metrics server stopped")


class ProcessMonitor:
    """Samples CPU and memory of one child process until stopped or the process goes away."""
    def __init__(self, pid: int, period: float = 1, enabled: bool = True):
        self.pid = pid
        self.period = max(0.1, float(period))
        self.enabled = enabled
        self.stop_event = asyncio.Event()
        self.task: Optional[asyncio.Task] = None
        self.on_stats = None

    def start(self):
        if not self.enabled:
            return
        self.stop_event.clear()
        self.task = asyncio.create_task(self._monitor_loop())
        logger_metrics.debug(f"Process monitor started for pid {self.pid}")

    async def _monitor_loop(self):
        try:
            proc = psutil.Process(self.pid)
            # First call primes the counter and always reports 0.0
            proc.cpu_percent(None)
            while not self.stop_event.is_set():
                _, pending = await asyncio.wait([asyncio.ensure_future(self.stop_event.wait())], timeout=self.period)
                for task in pending:
                    task.cancel()
                if self.stop_event.is_set():
                    break
                cpu, rss = await asyncio.to_thread(self._sample, proc)
                if self.on_stats:
                    self.on_stats(cpu, rss)
        except asyncio.CancelledError:
            pass
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger_metrics.debug(f"Process monitor lost pid {self.pid}: {e}")
        finally:
            logger_metrics.debug(f"Process monitor stopped for pid {self.pid}")

    @staticmethod
    def _sample(proc):
        with proc.oneshot():
            return proc.cpu_percent(None), proc.memory_info().rss

    async def stop(self):
        self.stop_event.set()
        if self.task:
            await self.task
            self.task = None
