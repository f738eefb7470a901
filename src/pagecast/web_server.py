# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import logging
import os
import urllib.parse
from typing import Callable, Dict, Optional

from aiohttp import web

logger = logging.getLogger("frontend")


class FrontendServer:
    """Serves the page that gets broadcast, plus a liveness endpoint."""
    def __init__(self, web_root: str, host: str = '0.0.0.0', port: int = 3000,
                 page: str = 'index.html', status_provider: Optional[Callable[[], str]] = None):
        self.web_root = os.path.abspath(os.path.expanduser(web_root))
        self.host = host
        self.port = port
        self.page = page.lstrip('/')
        self.status_provider = status_provider
        self.runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()

        async def handle_health(request):
            state = self.status_provider() if self.status_provider else None
            return web.json_response({"ok": True, "state": state})

        app.add_routes([web.get('/health', handle_health)])
        if os.path.isdir(self.web_root):
            app.router.add_static('/', self.web_root, show_index=False)
        else:
            logger.warning(f"Web root {self.web_root} does not exist, only /health will be served")
        return app

    async def start(self) -> None:
        if self.runner is not None:
            logger.warning("Frontend server is already running")
            return
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except Exception:
            await runner.cleanup()
            raise
        self.runner = runner
        logger.info(f"Frontend serving {self.web_root} on http://localhost:{self.port}")

    async def stop(self) -> None:
        if self.runner is None:
            return
        runner, self.runner = self.runner, None
        await runner.cleanup()
        logger.info("Frontend server shut down successfully.")

    def render_url(self, query: Dict[str, str]) -> str:
        params = urllib.parse.urlencode(query)
        return f"http://localhost:{self.port}/{self.page}?{params}"
