# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import argparse
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger("settings")

# Settings Precedence and Naming Convention
# -----------------------------------------
# 1. Command-line (CLI) arguments (e.g., --port 9000) have the highest precedence.
# 2. The standard environment variable (e.g., export PAGECAST_PORT=9000) is used if no CLI flag is set.
# 3. A legacy environment variable (e.g., export PORT=8888), if defined for the setting,
#    is used as a FALLBACK if the standard environment variable is not set.
# 4. The 'default' value in the SETTING_DEFINITIONS list is used if none of the above are set.
#
# A setting with `name: 'my_setting_name'` corresponds to:
#   - CLI Flag: --my-setting-name
#   - Standard Environment Variable: PAGECAST_MY_SETTING_NAME

X264_PRESETS = ['ultrafast', 'superfast', 'veryfast', 'faster', 'fast', 'medium', 'slow', 'slower', 'veryslow']

SETTING_DEFINITIONS = [
    # Broadcast target
    {'name': 'output_url', 'type': 'str', 'default': '', 'env_var': 'YT_RTMP', 'help': 'RTMP endpoint including the stream key, e.g. rtmp://a.rtmp.youtube.com/live2/KEY. Required.'},

    # Capture
    {'name': 'width', 'type': 'int', 'default': 1920, 'env_var': 'WIDTH', 'help': 'Browser viewport and capture width in pixels.'},
    {'name': 'height', 'type': 'int', 'default': 1080, 'env_var': 'HEIGHT', 'help': 'Browser viewport and capture height in pixels.'},
    {'name': 'framerate', 'type': 'int', 'default': 30, 'env_var': 'FPS', 'help': 'Capture and output frame rate.'},
    {'name': 'settle_delay_ms', 'type': 'int', 'default': 1200, 'help': 'Delay after the page reports network idle before capture starts.'},
    {'name': 'navigation_timeout_ms', 'type': 'int', 'default': 30000, 'help': 'Maximum time to wait for the render target to load.'},
    {'name': 'capture_quality', 'type': 'int', 'default': 90, 'help': 'JPEG quality (1-100) of captured frames.'},

    # Page parameters
    {'name': 'audio_asset', 'type': 'str', 'default': '', 'env_var': 'DRIVE_AUDIO', 'help': 'Google Drive file id of the soundtrack. Leave empty for a video-only broadcast.'},
    {'name': 'background_asset', 'type': 'str', 'default': '', 'env_var': 'DRIVE_BG', 'help': 'Google Drive file id of the page background, passed to the frontend.'},

    # Encoder
    {'name': 'video_codec', 'type': 'str', 'default': 'libx264', 'help': 'ffmpeg video encoder.'},
    {'name': 'x264_preset', 'type': 'enum', 'default': 'veryfast', 'env_var': 'X264_PRESET', 'meta': {'allowed': X264_PRESETS}, 'help': 'Encoder speed preset.'},
    {'name': 'pixel_format', 'type': 'str', 'default': 'yuv420p', 'help': 'Output pixel format.'},
    {'name': 'video_bitrate', 'type': 'str', 'default': '4500k', 'env_var': 'VBITRATE', 'help': 'Output video bitrate, ffmpeg notation.'},
    {'name': 'audio_codec', 'type': 'str', 'default': 'aac', 'help': 'ffmpeg audio encoder.'},
    {'name': 'audio_bitrate', 'type': 'str', 'default': '160k', 'env_var': 'ABITRATE', 'help': 'Output audio bitrate, ffmpeg notation.'},
    {'name': 'audio_sample_rate', 'type': 'int', 'default': 44100, 'help': 'Output audio sample rate in Hz.'},
    {'name': 'audio_channels', 'type': 'int', 'default': 2, 'help': 'Number of output audio channels.'},
    {'name': 'output_format', 'type': 'str', 'default': 'flv', 'help': 'Output container required by the endpoint protocol.'},
    {'name': 'ffmpeg_path', 'type': 'str', 'default': 'ffmpeg', 'help': 'Path to the ffmpeg binary.'},

    # Server Startup & Operational Settings
    {'name': 'addr', 'type': 'str', 'default': '0.0.0.0', 'help': 'Host the frontend server listens on.'},
    {'name': 'port', 'type': 'int', 'default': 3000, 'env_var': 'PORT', 'help': 'Port the frontend server listens on.'},
    {'name': 'web_root', 'type': 'str', 'default': 'frontend', 'help': 'Directory containing the page to broadcast.'},
    {'name': 'page', 'type': 'str', 'default': 'index.html', 'help': 'Page under the web root that is rendered.'},
    {'name': 'teardown_timeout', 'type': 'int', 'default': 5, 'help': 'Seconds each shutdown step may take before it is abandoned.'},
    {'name': 'enable_metrics_http', 'type': 'bool', 'default': False, 'help': 'Enable the Prometheus HTTP metrics port.'},
    {'name': 'metrics_http_port', 'type': 'int', 'default': 8000, 'help': 'Port to start the Prometheus metrics server on.'},
    {'name': 'debug', 'type': 'bool', 'default': False, 'help': 'Enable debug logging.'},
]


class ConfigurationError(Exception):
    pass


class AppSettings:
    """
    Parses and stores application settings from command-line arguments and
    environment variables, based on a centralized definition list.
    """
    def __init__(self, setting: List[Dict[str, Any]], argv: Optional[List[str]] = None,
                 environ: Optional[Mapping[str, str]] = None):
        parser = argparse.ArgumentParser(description="pagecast web page broadcaster")
        self._setting_definitions = setting
        self._environ = os.environ if environ is None else environ
        self._add_arguments(parser)
        args, _ = parser.parse_known_args(argv)
        self._process_and_set_attributes(args)

    def _add_arguments(self, parser):
        """Programmatically add arguments to the parser from definitions."""
        for setting in self._setting_definitions:
            name = setting['name']
            cli_flag = f'--{name.replace("_", "-")}'
            standard_env_var = f'PAGECAST_{name.upper()}'
            legacy_env_var = setting.get('env_var')
            env_help_text = f"Env: {standard_env_var}"
            if legacy_env_var:
                env_help_text = f"Env: {standard_env_var} (or {legacy_env_var})"
            parser.add_argument(
                cli_flag,
                dest=name,
                type=str,
                default=None,
                help=f"{setting['help']} ({env_help_text})"
            )

    def _process_and_set_attributes(self, args):
        """Process parsed arguments and set them as class attributes."""
        for setting in self._setting_definitions:
            name = setting['name']
            stype = setting['type']
            cli_val = getattr(args, name, None)
            std_env_val = self._environ.get(f'PAGECAST_{name.upper()}')
            legacy_env_val = self._environ.get(setting['env_var']) if setting.get('env_var') else None

            raw_value = cli_val if cli_val is not None else (std_env_val if std_env_val is not None else (legacy_env_val if legacy_env_val is not None else setting['default']))
            try:
                if stype == 'bool':
                    processed_value = str(raw_value).strip().lower() in ['true', '1', 'yes']
                elif stype == 'enum':
                    allowed = setting.get('meta', {}).get('allowed', [])
                    processed_value = str(raw_value).strip()
                    if processed_value not in allowed:
                        logger.warning(f"Invalid value '{raw_value}' for {name}. Using default '{setting['default']}'.")
                        processed_value = setting['default']
                elif stype == 'int':
                    processed_value = int(raw_value)
                else:
                    processed_value = str(raw_value)
            except (ValueError, TypeError) as e:
                logger.error(f"Could not parse setting '{name}' with value '{raw_value}'. Using default. Error: {e}")
                processed_value = setting['default']
            setattr(self, name, processed_value)


def load_settings(argv: Optional[List[str]] = None) -> AppSettings:
    return AppSettings(SETTING_DEFINITIONS, argv=argv)


def apply_log_level(settings: AppSettings) -> None:
    if settings.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    else:
        logging.getLogger().setLevel(logging.INFO)


@dataclass(frozen=True)
class PipelineConfig:
    """Resolved, read-only parameters shared by every pipeline component."""
    output_url: str
    width: int = 1920
    height: int = 1080
    framerate: int = 30
    audio_asset: str = ''
    background_asset: str = ''
    video_codec: str = 'libx264'
    x264_preset: str = 'veryfast'
    pixel_format: str = 'yuv420p'
    video_bitrate: str = '4500k'
    audio_codec: str = 'aac'
    audio_bitrate: str = '160k'
    audio_sample_rate: int = 44100
    audio_channels: int = 2
    output_format: str = 'flv'
    settle_delay: float = 1.2
    capture_quality: int = 90

    def __post_init__(self):
        if not self.output_url or not self.output_url.strip():
            raise ConfigurationError("Output endpoint is not set (PAGECAST_OUTPUT_URL or YT_RTMP)")
        if self.width <= 0 or self.height <= 0:
            raise ConfigurationError(f"Invalid frame size {self.width}x{self.height}")
        if self.framerate <= 0:
            raise ConfigurationError(f"Invalid frame rate {self.framerate}")

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "PipelineConfig":
        return cls(
            output_url=settings.output_url.strip(),
            width=settings.width,
            height=settings.height,
            framerate=settings.framerate,
            audio_asset=settings.audio_asset.strip(),
            background_asset=settings.background_asset.strip(),
            video_codec=settings.video_codec,
            x264_preset=settings.x264_preset,
            pixel_format=settings.pixel_format,
            video_bitrate=settings.video_bitrate,
            audio_codec=settings.audio_codec,
            audio_bitrate=settings.audio_bitrate,
            audio_sample_rate=settings.audio_sample_rate,
            audio_channels=settings.audio_channels,
            output_format=settings.output_format,
            settle_delay=max(0, settings.settle_delay_ms) / 1000.0,
            capture_quality=min(100, max(1, settings.capture_quality)),
        )
