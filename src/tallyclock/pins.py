from __future__ import annotations
import typing as tp
from loguru import logger
import asyncio

from pydispatch import Dispatcher, Property

from tallyclock.common import NUM_LINES, HardwareError
from tallyclock.config import GpioVariant, PinConfig, PullMode
from tallyclock.state import values_to_byte, byte_to_values
from tallyclock.utils import cancel_task

Changes = tp.Set[tp.Tuple[int, bool]]

class PinDriver(object):
    """Capability interface for an 8 line discrete I/O bank

    All methods raise :class:`~.common.HardwareError` on failure.
    """
    name: tp.ClassVar[str] = ''

    def open(self):
        raise NotImplementedError

    def close(self):
        raise NotImplementedError

    def apply_pulls(self, pin_config: PinConfig):
        raise NotImplementedError

    def read_inputs(self) -> tp.Tuple[bool, ...]:
        raise NotImplementedError

    def write_outputs(self, values: tp.Sequence[bool]):
        raise NotImplementedError


class MemoryPinDriver(PinDriver):
    """Simulated I/O bank held in memory

    Inputs are changed with :meth:`set_input`. Failures can be injected by
    setting :attr:`fail_reads` or :attr:`fail_writes`.
    """
    name = 'memory'
    def __init__(self):
        self.is_open = False
        self.pin_config = None
        self.inputs = [False] * NUM_LINES
        self.outputs = [False] * NUM_LINES
        self.fail_open = False
        self.fail_reads = False
        self.fail_writes = False
        self.write_count = 0

    def open(self):
        if self.fail_open:
            raise HardwareError('Simulated bus unavailable', source=self.name)
        self.is_open = True

    def close(self):
        self.is_open = False

    def apply_pulls(self, pin_config: PinConfig):
        self._check_open()
        self.pin_config = pin_config

    def set_input(self, line: int, value: bool):
        self.inputs[line] = bool(value)

    def read_inputs(self) -> tp.Tuple[bool, ...]:
        self._check_open()
        if self.fail_reads:
            raise HardwareError('Simulated read failure', source=self.name)
        return tuple(self.inputs)

    def write_outputs(self, values: tp.Sequence[bool]):
        self._check_open()
        if self.fail_writes:
            raise HardwareError('Simulated write failure', source=self.name)
        self.outputs[:] = [bool(v) for v in values]
        self.write_count += 1

    def _check_open(self):
        if not self.is_open:
            raise HardwareError('Not open', source=self.name)


class PiFaceDriver(PinDriver):
    """Driver for the PiFace Digital expansion board

    Uses :mod:`pifacedigitalio`. The board only provides pull-up resistors,
    so lines configured for pull-down are left floating.
    """
    name = 'piface'
    def __init__(self, hardware_addr: int = 0):
        self.hardware_addr = hardware_addr
        self._pfd = None

    def _load_module(self):
        try:
            import pifacedigitalio
        except ImportError as exc:
            raise HardwareError(
                'pifacedigitalio is required for PiFace access', source=self.name,
            ) from exc
        return pifacedigitalio

    def open(self):
        if self._pfd is not None:
            return
        mod = self._load_module()
        try:
            self._pfd = mod.PiFaceDigital(hardware_addr=self.hardware_addr)
        except Exception as exc:
            raise HardwareError(f'Could not open board: {exc!r}', source=self.name) from exc

    def close(self):
        pfd = self._pfd
        self._pfd = None
        if pfd is None:
            return
        try:
            pfd.deinit_board()
        except Exception as exc:
            raise HardwareError(f'Error releasing board: {exc!r}', source=self.name) from exc

    def apply_pulls(self, pin_config: PinConfig):
        pfd = self._get_board()
        mask = 0
        for i, pull in enumerate(pin_config):
            if pull == PullMode.UP:
                mask |= 1 << i
            elif pull == PullMode.DOWN:
                logger.warning(f'PiFace has no pull-down resistors, line {i} left floating')
        try:
            pfd.gppub.value = mask
        except Exception as exc:
            raise HardwareError(f'Could not set pulls: {exc!r}', source=self.name) from exc

    def read_inputs(self) -> tp.Tuple[bool, ...]:
        pfd = self._get_board()
        try:
            value = pfd.input_port.value
        except Exception as exc:
            raise HardwareError(f'Read failed: {exc!r}', source=self.name) from exc
        return byte_to_values(value & 0xff)

    def write_outputs(self, values: tp.Sequence[bool]):
        pfd = self._get_board()
        try:
            pfd.output_port.value = values_to_byte(values)
        except Exception as exc:
            raise HardwareError(f'Write failed: {exc!r}', source=self.name) from exc

    def _get_board(self):
        if self._pfd is None:
            raise HardwareError('Not open', source=self.name)
        return self._pfd


def create_driver(variant: GpioVariant) -> PinDriver:
    """Create the :class:`PinDriver` for the configured variant
    """
    if variant == GpioVariant.PIFACE:
        return PiFaceDriver()
    elif variant == GpioVariant.MEMORY:
        return MemoryPinDriver()
    raise HardwareError(f'No driver available for {variant}')


class PinBridge(Dispatcher):
    """Edge-triggered access to the discrete I/O bank

    Arguments:
        driver: The :class:`PinDriver` to use
        poll_interval: Seconds between input polls

    Properties:
        enabled (bool): ``True`` while the hardware is usable. Set to ``False``
            when the bank faults, after which the bridge stays idle
        running (bool): ``True`` while the poll loop is active

    :Events:
        .. event:: on_inputs_changed(bridge: PinBridge, changes: set)

            Fired from the poll loop when any input line changes. *changes*
            is a set of ``(line, value)`` tuples
    """
    enabled = Property(False)
    running = Property(False)
    _events_ = ['on_inputs_changed']
    def __init__(self, driver: PinDriver, poll_interval: float = .02):
        self.driver = driver
        self.poll_interval = poll_interval
        self.pin_config = None
        self._last_inputs = None
        self._outputs = [False] * NUM_LINES
        self._poll_task = None

    @property
    def outputs(self) -> tp.Tuple[bool, ...]:
        """The last output values successfully written"""
        return tuple(self._outputs)

    def configure(self, pin_config: PinConfig):
        """Open the hardware and apply the per-line pull configuration

        Raises:
            HardwareError: If *pin_config* is malformed or the bus is unavailable
        """
        if not isinstance(pin_config, PinConfig) or len(pin_config.pulls) != NUM_LINES:
            raise HardwareError(f'Malformed pin config: {pin_config!r}')
        self.driver.open()
        self.driver.apply_pulls(pin_config)
        self.pin_config = pin_config
        self._last_inputs = None
        self.enabled = True
        logger.info(f'PinBridge configured with pulls "{pin_config}"')

    def poll_inputs(self) -> Changes:
        """Read the inputs and return the lines that changed since the last poll

        The first poll after :meth:`configure` reports all lines.

        Raises:
            HardwareError: If the read fails
        """
        values = self.driver.read_inputs()
        last = self._last_inputs
        self._last_inputs = values
        if last is None:
            return {(i, v) for i, v in enumerate(values)}
        return {(i, v) for i, v in enumerate(values) if v != last[i]}

    def write_outputs(self, changes: tp.Iterable[tp.Tuple[int, bool]]) -> bool:
        """Set the given output lines, leaving the others unchanged

        This is best-effort. On failure, the error is logged and the previous
        output values are kept.

        Returns:
            bool: ``True`` if the outputs were written
        """
        if not self.enabled:
            return False
        values = list(self._outputs)
        for line, value in changes:
            values[line] = bool(value)
        if values == self._outputs:
            return True
        try:
            self.driver.write_outputs(values)
        except HardwareError as exc:
            logger.warning(f'Output write failed: {exc}')
            return False
        self._outputs = values
        logger.debug(f'outputs: {values_to_byte(values):08b}')
        return True

    async def open(self):
        """Start the poll loop
        """
        if self.running:
            return
        if not self.enabled:
            logger.warning('PinBridge not configured, poll loop not started')
            return
        self.running = True
        self._poll_task = asyncio.ensure_future(self.poll_loop())
        logger.success('PinBridge running')

    async def close(self):
        """Stop the poll loop and release the hardware
        """
        self.running = False
        t = self._poll_task
        self._poll_task = None
        await cancel_task(t)
        self.enabled = False
        try:
            self.driver.close()
        except HardwareError as exc:
            logger.warning(f'Error releasing hardware: {exc}')
        logger.success('PinBridge closed')

    @logger.catch
    async def poll_loop(self):
        """Poll the inputs every :attr:`poll_interval` while :attr:`running`
        """
        while self.running:
            try:
                changes = self.poll_inputs()
            except HardwareError as exc:
                logger.error(f'Input read failed, disabling GPIO: {exc}')
                self.enabled = False
                self.running = False
                break
            if len(changes):
                logger.debug(f'inputs changed: {sorted(changes)}')
                self.emit('on_inputs_changed', self, changes)
            await asyncio.sleep(self.poll_interval)
