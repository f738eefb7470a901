# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import asyncio
import logging
import sys
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

from .audio import SecondaryAudioFetcher
from .metrics import Metrics
from .pipeline import PipelineLifecycleController
from .settings import AppSettings, ConfigurationError, PipelineConfig, apply_log_level, load_settings
from .stream_source import StreamSource
from .transcoder import TranscodeSupervisor
from .web_server import FrontendServer

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("main")


def build_controller(settings: AppSettings, config: PipelineConfig) -> PipelineLifecycleController:
    metrics = Metrics(settings.metrics_http_port) if settings.enable_metrics_http else None
    frontend = FrontendServer(settings.web_root, host=settings.addr, port=settings.port, page=settings.page)
    controller = PipelineLifecycleController(
        config,
        frontend=frontend,
        stream_source=StreamSource(),
        transcoder=TranscodeSupervisor(binary=settings.ffmpeg_path, metrics=metrics),
        audio_fetcher=SecondaryAudioFetcher(),
        metrics=metrics,
        teardown_timeout=float(settings.teardown_timeout),
        navigation_timeout_ms=settings.navigation_timeout_ms,
    )
    frontend.status_provider = controller.status
    return controller


async def run(settings: AppSettings, config: PipelineConfig) -> int:
    controller = build_controller(settings, config)
    return await controller.run()


def main(argv: Optional[List[str]] = None) -> int:
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path, override=False)
    settings = load_settings(argv)
    apply_log_level(settings)

    # Nothing is started until the endpoint is known
    try:
        config = PipelineConfig.from_settings(settings)
    except ConfigurationError as e:
        logger.error(f"{e}. Exiting.")
        return 1

    try:
        return asyncio.run(run(settings, config))
    except KeyboardInterrupt:
        logger.info("pagecast interrupted, exiting...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
