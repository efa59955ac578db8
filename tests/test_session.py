import asyncio
import pytest

from tallyclock.common import SessionState, AuthError, NetworkError, Provenance
from tallyclock.config import TallyMode
from tallyclock.context import RunContext
from tallyclock.session import RemoteSession
from tallyclock.state import TallySnapshot, byte_to_values

from fakecontroller import FakeController, wait_for_state, wait_for_attribute

def build_session(make_config, controller, **kwargs):
    config = make_config(TallyMode.TCP, controllers=[controller], **kwargs)
    context = RunContext(config=config)
    session = RemoteSession(config.remotes[0], context)
    return session, context

async def get_unused_port_controller():
    controller = FakeController()
    await controller.open()
    await controller.close()
    return controller

@pytest.mark.asyncio
async def test_stream(make_config):
    async with FakeController() as controller:
        session, context = build_session(make_config, controller)
        updates = asyncio.Queue()

        def on_remote_update(instance, seq, values, **kwargs):
            updates.put_nowait((seq, values))

        session.bind(on_remote_update=on_remote_update)

        assert session.state == SessionState.DISCONNECTED
        await session.open()
        await wait_for_state(session, SessionState.STREAMING)
        await asyncio.wait_for(controller.authenticated.wait(), 1)

        snapshot = TallySnapshot.from_byte(0b101, Provenance.LOCAL)
        assert session.send_snapshot(snapshot)
        await controller.wait_for_value(0b101)
        assert controller.received[-1] == (1, 0b101)

        snapshot = TallySnapshot.from_byte(0b111, Provenance.LOCAL)
        assert session.send_snapshot(snapshot)
        await controller.wait_for_value(0b111)
        assert controller.received[-1] == (2, 0b111)

        await controller.send_tally(5, 0b1)
        seq, values = await asyncio.wait_for(updates.get(), 1)
        assert seq == 5
        assert values == byte_to_values(0b1)

        # stale and duplicate frames are no-ops
        await controller.send_tally(3, 0b10)
        await controller.send_tally(5, 0b100)
        await controller.send_tally(6, 0b1000)
        seq, values = await asyncio.wait_for(updates.get(), 1)
        assert seq == 6
        assert values == byte_to_values(0b1000)
        assert session.last_rx_seq == 6
        await asyncio.sleep(.05)
        assert updates.empty()
        assert session.state == SessionState.STREAMING

        # heartbeats keep the connection alive past the idle timeout
        await asyncio.sleep(context.config.idle_timeout * 2)
        assert session.state == SessionState.STREAMING
        assert controller.num_connections == 1

        await session.close()
        assert session.state == SessionState.DISCONNECTED
        assert session.writer is None

@pytest.mark.asyncio
async def test_auth_rejected(make_config):
    async with FakeController(secret='not the secret') as controller:
        session, context = build_session(make_config, controller)
        states = []

        def on_state(instance, value, **kwargs):
            states.append(value)

        session.bind(state=on_state)

        await session.open()
        await wait_for_state(session, SessionState.BACKOFF)
        assert isinstance(session.last_error, AuthError)
        assert session.backoff_delay == context.config.backoff_min
        assert context.running
        assert states == [
            SessionState.CONNECTING, SessionState.AUTHENTICATING,
            SessionState.DISCONNECTED, SessionState.BACKOFF,
        ]

        # retries after the delay
        await wait_for_attribute(controller, 'num_auth_attempts', 3)
        assert session.state != SessionState.STREAMING
        assert not session.send_snapshot(TallySnapshot())

        await session.close()
        assert session.state == SessionState.DISCONNECTED

@pytest.mark.asyncio
async def test_backoff_growth(make_config):
    controller = await get_unused_port_controller()
    session, context = build_session(make_config, controller)
    delays = []

    def on_backoff_delay(instance, value, **kwargs):
        if value is not None:
            delays.append(value)

    session.bind(backoff_delay=on_backoff_delay)
    await session.open()
    await wait_for_attribute(session, 'num_attempts', 6)
    await session.close()

    assert isinstance(session.last_error, NetworkError)
    assert len(delays) >= 5
    assert delays[0] == context.config.backoff_min
    for a, b in zip(delays, delays[1:]):
        assert b >= a
    assert max(delays) <= context.config.backoff_max
    assert delays[-1] == context.config.backoff_max

@pytest.mark.asyncio
async def test_shutdown_during_backoff(make_config):
    controller = await get_unused_port_controller()
    session, context = build_session(make_config, controller, backoff_min=10, backoff_max=10)
    await session.open()
    await wait_for_state(session, SessionState.BACKOFF)
    num_attempts = session.num_attempts

    context.request_shutdown()
    await asyncio.wait_for(session.close(), .5)
    assert session.state == SessionState.DISCONNECTED
    assert session.num_attempts == num_attempts

@pytest.mark.asyncio
async def test_shutdown_while_streaming(make_config):
    async with FakeController() as controller:
        session, context = build_session(make_config, controller)
        await session.open()
        await wait_for_state(session, SessionState.STREAMING)
        context.request_shutdown()
        await asyncio.wait_for(session.close(), .5)
        assert session.state == SessionState.DISCONNECTED
        assert session.writer is None

@pytest.mark.asyncio
async def test_idle_timeout(make_config):
    async with FakeController() as controller:
        controller.send_heartbeats = False
        session, context = build_session(make_config, controller)
        await session.open()
        await wait_for_state(session, SessionState.STREAMING)
        await wait_for_attribute(controller, 'num_connections', 2)
        assert isinstance(session.last_error, NetworkError)
        await session.close()

@pytest.mark.asyncio
async def test_auth_timeout(make_config):
    async with FakeController() as controller:
        controller.silent_auth = True
        session, context = build_session(make_config, controller, auth_timeout=.1)
        await session.open()
        await wait_for_state(session, SessionState.BACKOFF)
        assert isinstance(session.last_error, NetworkError)
        await session.close()

@pytest.mark.asyncio
async def test_reconnect_after_drop(make_config):
    async with FakeController() as controller:
        session, context = build_session(make_config, controller)
        updates = asyncio.Queue()

        def on_remote_update(instance, seq, values, **kwargs):
            updates.put_nowait(seq)

        session.bind(on_remote_update=on_remote_update)
        await session.open()
        await wait_for_state(session, SessionState.STREAMING)
        await asyncio.wait_for(controller.authenticated.wait(), 1)
        await controller.send_tally(10, 1)
        assert await asyncio.wait_for(updates.get(), 1) == 10

        await controller.drop_clients()
        controller.authenticated.clear()
        await wait_for_attribute(controller, 'num_connections', 2)
        await wait_for_state(session, SessionState.STREAMING)
        await asyncio.wait_for(controller.authenticated.wait(), 1)

        # sequence tracking restarts with the new connection
        await controller.send_tally(1, 1)
        assert await asyncio.wait_for(updates.get(), 1) == 1
        await session.close()

@pytest.mark.asyncio
async def test_first_frame_seq_zero(make_config):
    async with FakeController() as controller:
        session, context = build_session(make_config, controller)
        updates = asyncio.Queue()

        def on_remote_update(instance, seq, values, **kwargs):
            updates.put_nowait((seq, values))

        session.bind(on_remote_update=on_remote_update)
        assert session.last_rx_seq is None
        await session.open()
        await wait_for_state(session, SessionState.STREAMING)
        await asyncio.wait_for(controller.authenticated.wait(), 1)

        # nothing has been applied yet, so sequence zero is accepted
        await controller.send_tally(0, 0b1)
        seq, values = await asyncio.wait_for(updates.get(), 1)
        assert seq == 0
        assert values == byte_to_values(0b1)
        assert session.last_rx_seq == 0

        await controller.send_tally(0, 0b11)
        await controller.send_tally(1, 0b111)
        seq, values = await asyncio.wait_for(updates.get(), 1)
        assert seq == 1
        assert values == byte_to_values(0b111)
        await session.close()

@pytest.mark.asyncio
async def test_backoff_reset_after_healthy_stream(make_config):
    async with FakeController() as controller:
        controller.reject_all = True
        session, context = build_session(make_config, controller)
        conf = context.config

        await session.open()
        await wait_for_attribute(controller, 'num_auth_attempts', 3)
        assert session.backoff.pending > conf.backoff_min

        controller.reject_all = False
        await wait_for_state(session, SessionState.STREAMING)
        await asyncio.wait_for(controller.authenticated.wait(), 1)
        assert session.backoff.pending > conf.backoff_min

        # stream for longer than the next delay, then lose the connection
        await asyncio.sleep(session.backoff.pending + .1)
        assert session.state == SessionState.STREAMING
        await controller.drop_clients()
        await wait_for_state(session, SessionState.BACKOFF)
        assert session.backoff_delay == conf.backoff_min

        await session.close()

@pytest.mark.asyncio
async def test_no_backoff_reset_after_short_stream(make_config):
    async with FakeController() as controller:
        controller.reject_all = True
        session, context = build_session(make_config, controller, backoff_max=2)
        conf = context.config

        await session.open()
        await wait_for_attribute(controller, 'num_auth_attempts', 3)
        controller.reject_all = False
        await wait_for_state(session, SessionState.STREAMING)
        await asyncio.wait_for(controller.authenticated.wait(), 1)
        pending = session.backoff.pending
        assert pending > conf.backoff_min

        await controller.drop_clients()
        await wait_for_state(session, SessionState.BACKOFF)
        assert session.backoff_delay == pending

        await session.close()
