import asyncio
import stat
import sys
import textwrap


def write_fake_ffmpeg(tmp_path, body):
    """An executable that stands in for ffmpeg and ignores its arguments."""
    script = tmp_path / 'fake-ffmpeg'
    script.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


def ignoring_sigint(ready):
    """Body of a fake ffmpeg that only a kill can stop, like one stuck on a dead socket."""
    return f"""
        import signal, time
        signal.signal(signal.SIGINT, signal.SIG_IGN)
        open({str(ready)!r}, 'w').close()
        while True:
            time.sleep(0.1)
    """


async def wait_for_file(path, timeout=20):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not path.exists():
        if loop.time() > deadline:
            raise AssertionError(f"{path} was never created")
        await asyncio.sleep(0.05)
