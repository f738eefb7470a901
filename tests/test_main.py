import asyncio
import os

import pagecast.__main__ as entry


def test_missing_endpoint_fails_before_anything_starts(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for var in ('YT_RTMP', 'PAGECAST_OUTPUT_URL'):
        monkeypatch.delenv(var, raising=False)

    def forbidden(*args, **kwargs):
        raise AssertionError("pipeline must not be built without an endpoint")

    monkeypatch.setattr(entry, 'build_controller', forbidden)
    monkeypatch.setattr(entry, 'StreamSource', forbidden)
    assert entry.main([]) == 1


def test_endpoint_from_dotenv_file(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv('YT_RTMP', raising=False)
    monkeypatch.delenv('PAGECAST_OUTPUT_URL', raising=False)
    (tmp_path / '.env').write_text('YT_RTMP=rtmp://host/app/key\n')
    seen = {}

    async def fake_run(settings, config):
        seen['config'] = config
        return 7

    monkeypatch.setattr(entry, 'run', fake_run)
    try:
        assert entry.main([]) == 7
    finally:
        os.environ.pop('YT_RTMP', None)
    assert seen['config'].output_url == 'rtmp://host/app/key'


def test_build_controller_wires_frontend_status(tmp_path):
    settings = entry.load_settings([
        '--web-root', str(tmp_path),
        '--output-url', 'rtmp://host/app/key',
        '--navigation-timeout-ms', '5000',
    ])
    config = entry.PipelineConfig.from_settings(settings)

    async def scenario():
        return entry.build_controller(settings, config)

    controller = asyncio.run(scenario())
    assert controller.frontend.status_provider() == 'idle'
    assert controller.metrics is None
    assert controller.transcoder.binary == 'ffmpeg'
    assert controller.navigation_timeout_ms == 5000
