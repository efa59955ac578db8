from pathlib import Path
import pytest

from tallyclock.config import TallyConfig, TallyMode, GpioVariant, RemoteEndpoint
from tallyclock.pins import MemoryPinDriver, PinBridge

FAST_TIMINGS = dict(
    poll_interval=.01,
    heartbeat_interval=.1,
    idle_factor=3,
    connect_timeout=.5,
    auth_timeout=.5,
    backoff_min=.05,
    backoff_max=.4,
)

def build_config(mode=TallyMode.DISABLED, controllers=(), secret='secret', **kwargs):
    remotes = tuple(
        RemoteEndpoint(host=c.hostaddr, service=c.service, secret=secret)
        for c in controllers
    )
    kw = FAST_TIMINGS.copy()
    kw.update(kwargs)
    return TallyConfig(
        mode=mode, gpio_variant=GpioVariant.MEMORY, remotes=remotes, **kw
    )

@pytest.fixture
def make_config():
    return build_config

@pytest.fixture
def memory_driver():
    return MemoryPinDriver()

@pytest.fixture
def pin_bridge(memory_driver):
    return PinBridge(memory_driver, poll_interval=.01)

@pytest.fixture
def config_tmpdir(tmpdir):
    base = Path(tmpdir)
    return base / 'config'
