from __future__ import annotations
import typing as tp
from loguru import logger
import asyncio

from pydispatch import Dispatcher, Property

from tallyclock.common import NUM_LINES, Provenance, HardwareError, ShutdownReason
from tallyclock.config import TallyMode
from tallyclock.context import RunContext
from tallyclock.state import TallyState, TallySnapshot
from tallyclock.pins import PinBridge, create_driver
from tallyclock.pool import SessionPool, RemoteUpdate
from tallyclock.utils import NamedQueue, cancel_task

Changes = tp.Set[tp.Tuple[int, bool]]

class ChannelView(object):
    """The last value known on one propagation channel for each line

    Values are recorded both when sent on the channel and when received
    from it, so a value is never echoed back to the side that supplied it.
    """
    def __init__(self):
        self.values: tp.List[bool|None] = [None] * NUM_LINES

    def diff(self, changes: tp.Iterable[tp.Tuple[int, bool]]) -> Changes:
        """Get the changes whose value differs from the view
        """
        return {(line, v) for line, v in changes if self.values[line] != v}

    def update(self, changes: tp.Iterable[tp.Tuple[int, bool]]):
        for line, v in changes:
            self.values[line] = v


class TallyMediator(Dispatcher):
    """Top level coordinator for tally state

    Reconciles the hardware I/O bank and the remote sessions according to
    the configured :class:`~.config.TallyMode`. This is the only writer of
    :attr:`state`. Change notifications from the :class:`~.pins.PinBridge`
    and :class:`~.pool.SessionPool` are queued and applied by a single task.

    Arguments:
        context: The shared :class:`~.context.RunContext`
        pin_bridge: Optional :class:`~.pins.PinBridge`. If not given, one is
            created for the configured gpio variant when the mode needs it
        pool: Optional :class:`~.pool.SessionPool`. If not given, one is
            created when the mode uses the network

    :Events:
        .. event:: on_state_changed(snapshot: TallySnapshot)

            Fired after the tally state changes
    """
    running = Property(False)
    _events_ = ['on_state_changed']
    def __init__(
        self,
        context: RunContext,
        pin_bridge: PinBridge|None = None,
        pool: SessionPool|None = None
    ):
        self.context = context
        config = context.config
        self.mode = config.mode
        self.state = TallyState()
        self.inbox = NamedQueue()
        self.network_view = ChannelView()
        self.output_view = ChannelView()
        if pin_bridge is None and self.uses_pins:
            pin_bridge = PinBridge(
                create_driver(config.gpio_variant), config.poll_interval,
            )
        if pool is None and self.mode.uses_tcp:
            pool = SessionPool(context)
        self.pin_bridge = pin_bridge
        self.pool = pool
        self._process_task = None
        self.state.bind(on_change=self._on_state_change)

    @property
    def uses_pins(self) -> bool:
        """``True`` if the hardware bank is used in the current mode"""
        if self.mode.uses_gpio:
            return True
        return self.mode == TallyMode.TCP and self.context.config.mirror_outputs

    @property
    def mirrors_outputs(self) -> bool:
        """``True`` if remote state is written to the hardware outputs"""
        if self.mode == TallyMode.TCP_GPIO_ECHO:
            return True
        return self.mode == TallyMode.TCP and self.context.config.mirror_outputs

    def current_snapshot(self) -> TallySnapshot:
        """Get the current tally state

        Intended to be called once per rendered frame. Never blocks.
        """
        return self.state.snapshot()

    async def open(self):
        """Start the hardware polling, remote sessions and processing task
        """
        if self.running:
            return
        self.running = True
        if self.mode == TallyMode.DISABLED:
            logger.info('Tally disabled')
            return
        self._process_task = asyncio.ensure_future(self.process_loop())
        if self.pin_bridge is not None and self.uses_pins:
            await self._open_pins()
        if self.pool is not None and self.mode.uses_tcp:
            self.pool.bind(on_remote_update=self._on_remote_update)
            await self.pool.open()
        logger.success(f'TallyMediator running in {self.mode.name} mode')

    async def _open_pins(self):
        try:
            self.pin_bridge.configure(self.context.config.pin_config)
        except HardwareError as exc:
            logger.error(f'GPIO unavailable, continuing without it: {exc}')
            return
        if self.mode.uses_gpio:
            self.pin_bridge.bind(on_inputs_changed=self._on_inputs_changed)
            await self.pin_bridge.open()

    async def close(self):
        """Stop all tasks, close the sockets and release the hardware
        """
        if not self.running:
            return
        self.running = False
        self.context.request_shutdown(ShutdownReason.UNKNOWN)
        if self.pool is not None:
            self.pool.unbind(self)
            try:
                await self.pool.close()
            except Exception as exc:
                logger.opt(exception=exc).error('Error closing sessions')
        if self.pin_bridge is not None:
            self.pin_bridge.unbind(self)
            try:
                await self.pin_bridge.close()
            except Exception as exc:
                logger.opt(exception=exc).error('Error closing GPIO')
        t = self._process_task
        self._process_task = None
        await cancel_task(t)
        logger.success('TallyMediator closed')

    def _on_inputs_changed(self, bridge, changes, **kwargs):
        for line, value in changes:
            self.inbox.put_nowait(self.inbox.create_item(('local', line), value))

    def _on_remote_update(self, update: RemoteUpdate, **kwargs):
        key = ('remote', update.endpoint_id)
        self.inbox.put_nowait(self.inbox.create_item(key, update))

    def _on_state_change(self, state, snapshot, **kwargs):
        self.emit('on_state_changed', snapshot)

    @logger.catch
    async def process_loop(self):
        """Apply queued changes from the hardware and the remote sessions
        """
        while True:
            items = [await self.inbox.get()]
            while not self.inbox.empty():
                items.append(self.inbox.get_nowait())
            local_changes = set()
            for item in items:
                source, key = item.key
                if source == 'local':
                    local_changes.add((key, item.item))
                else:
                    self.handle_remote_update(item.item)
            if len(local_changes):
                self.handle_local_changes(local_changes)

    def handle_local_changes(self, changes: tp.Iterable[tp.Tuple[int, bool]]) -> Changes:
        """Adopt changes from the hardware inputs

        In :attr:`~.config.TallyMode.TCP_GPIO_ECHO` mode, lines whose value
        differs from what the network last knew are broadcast.

        Returns:
            set: The changes that were broadcast
        """
        if not self.mode.uses_gpio:
            return set()
        changes = set(changes)
        self.state.update(changes, Provenance.LOCAL)
        if self.mode != TallyMode.TCP_GPIO_ECHO or self.pool is None:
            return set()
        to_send = self.network_view.diff(changes)
        if not len(to_send):
            return to_send
        self.network_view.update(to_send)
        self.pool.broadcast(self.state.snapshot())
        return to_send

    def handle_remote_update(self, update: RemoteUpdate) -> Changes:
        """Adopt a tally update from a remote session

        When outputs are mirrored, lines whose value differs from the last
        written output are sent to the hardware.

        Returns:
            set: The changes written to the outputs
        """
        if not self.mode.uses_tcp:
            logger.debug(f'Ignoring remote update from {update.endpoint_id}')
            return set()
        changes = set(enumerate(update.values))
        self.network_view.update(changes)
        self.state.update(changes, Provenance.REMOTE)
        if self.mode == TallyMode.TCP_GPIO_ECHO and self.pool is not None:
            # reconnecting sessions catch up to what the network last set
            self.pool.set_latest(self.state.snapshot())
        bridge = self.pin_bridge
        if not self.mirrors_outputs or bridge is None or not bridge.enabled:
            return set()
        to_write = self.output_view.diff(changes)
        if not len(to_write):
            return to_write
        if not bridge.write_outputs(to_write):
            return set()
        self.output_view.update(to_write)
        return to_write
