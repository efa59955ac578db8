import os
import sys
import signal
import asyncio
import pytest
from loguru import logger

from tallyclock import main as tally_main
from tallyclock.common import ShutdownReason
from tallyclock.config import TallyMode, save_config
from tallyclock.context import RunContext

@pytest.fixture(autouse=True)
def restore_logger():
    yield
    # main() replaces the log sinks
    logger.remove()
    logger.add(lambda msg: sys.stderr.write(msg))

def test_clean_exit_marker(tmp_path):
    marker = tmp_path / 'clean_exit'
    tally_main.write_clean_exit_marker(str(marker))
    assert marker.exists()

    # existing marker is left in place
    tally_main.write_clean_exit_marker(str(marker))
    assert marker.exists()

    # failures are logged only
    tally_main.write_clean_exit_marker(str(tmp_path / 'missing' / 'clean_exit'))
    tally_main.write_clean_exit_marker(None)

def test_main_bad_config(tmp_path):
    fn = tmp_path / 'config.json'
    fn.write_text('{"tally_mode": 7}')
    marker = tmp_path / 'clean_exit'
    assert tally_main.main([str(fn)]) == 1
    assert not marker.exists()

    fn.write_text('{"gpio_pulls": "UUUU"}')
    assert tally_main.main([str(fn), '--log-level', 'debug']) == 1

    fn.write_text('{"tally_mode": 2, "tally_remote_host": 5}')
    assert tally_main.main([str(fn)]) == 1

def test_main_writes_marker(tmp_path, monkeypatch, make_config):
    marker = tmp_path / 'clean_exit'
    config = make_config(TallyMode.DISABLED, clean_exit_file=str(marker))
    fn = tmp_path / 'config.json'
    save_config(config, fn)
    loaded = []

    async def fake_run_tally(config):
        loaded.append(config)
        context = RunContext(config=config)
        context.request_shutdown(ShutdownReason.USER)
        return context

    monkeypatch.setattr(tally_main, 'run_tally', fake_run_tally)
    assert tally_main.main([str(fn)]) == 0
    assert loaded == [config]
    assert marker.exists()

@pytest.mark.asyncio
async def test_run_tally_signal(make_config):
    config = make_config(TallyMode.DISABLED)
    task = asyncio.ensure_future(tally_main.run_tally(config))
    await asyncio.sleep(.1)
    assert not task.done()

    os.kill(os.getpid(), signal.SIGTERM)
    context = await asyncio.wait_for(task, 1)
    assert context.shutdown_reason == ShutdownReason.SIGNAL
    assert not context.running
