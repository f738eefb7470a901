# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import logging
import urllib.parse
from typing import Optional

logger = logging.getLogger("audio")

DRIVE_DOWNLOAD_URL = "https://drive.google.com/uc?export=download&id={asset_id}"


class SecondaryAudioFetcher:
    """Turns a soundtrack asset id into a URL the transcoder can fetch itself."""
    def __init__(self, url_template: str = DRIVE_DOWNLOAD_URL):
        self.url_template = url_template

    def resolve(self, asset_id: Optional[str]) -> Optional[str]:
        if not asset_id or not asset_id.strip():
            return None
        url = self.url_template.format(asset_id=urllib.parse.quote(asset_id.strip(), safe=''))
        logger.debug(f"Resolved audio asset {asset_id} to {url}")
        return url
