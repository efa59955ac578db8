from __future__ import annotations
from loguru import logger
import asyncio

from pydispatch import Dispatcher, Property

from tallyclock.common import (
    SessionState, TallyError, AuthError, ProtocolError, NetworkError,
)
from tallyclock.config import RemoteEndpoint
from tallyclock.context import RunContext
from tallyclock.backoff import Backoff
from tallyclock.state import TallySnapshot, byte_to_values
from tallyclock.protocol import (
    Frame, FrameType, read_frame, write_frame, build_credential,
)
from tallyclock.utils import cancel_task

class RemoteSession(Dispatcher):
    """A single authenticated, reconnecting connection to a remote controller

    Each session runs independently: errors only affect the session itself,
    which waits according to its :class:`~.backoff.Backoff` schedule and
    tries again for as long as it is running.

    Arguments:
        endpoint: The :class:`~.config.RemoteEndpoint` to connect to
        context: The shared :class:`~.context.RunContext`

    Properties:
        state (SessionState): The current :class:`~.common.SessionState`
        backoff_delay (float): The delay being waited while in
            :attr:`~.common.SessionState.BACKOFF`, otherwise ``None``
        num_attempts (int): Number of connection attempts made
        last_error: The exception that ended the last attempt

    Attributes:
        reader: :class:`asyncio.StreamReader` used to receive from the controller
        writer: :class:`asyncio.StreamWriter` used to send to the controller

    :Events:
        .. event:: on_remote_update(session: RemoteSession, seq: int, values: tuple)

            Fired for each accepted tally frame with the sequence number
            and the 8 line values
    """
    state: SessionState = Property(SessionState.DISCONNECTED)
    backoff_delay: float|None = Property(None)
    num_attempts: int = Property(0)
    last_error = Property(None)
    _events_ = ['on_remote_update']
    def __init__(self, endpoint: RemoteEndpoint, context: RunContext):
        self.endpoint = endpoint
        self.context = context
        conf = context.config
        self.backoff = Backoff(conf.backoff_min, conf.backoff_max)
        self.reader = None
        self.writer = None
        self._main_task = None
        self._stop_evt = asyncio.Event()
        self._pending = None
        self._pending_evt = asyncio.Event()
        self._tx_seq = 0
        self._rx_seq = None
        self._stream_start = None

    @property
    def id(self) -> str:
        return self.endpoint.id

    @property
    def running(self) -> bool:
        return self.context.running and not self._stop_evt.is_set()

    @property
    def last_rx_seq(self) -> int|None:
        """Sequence number of the last accepted frame on the current connection,
        or ``None`` if nothing has been accepted yet
        """
        return self._rx_seq

    async def open(self):
        """Start the connection task
        """
        if self._main_task is not None:
            return
        self._stop_evt.clear()
        self._main_task = asyncio.ensure_future(self.run())

    async def close(self):
        """Stop the connection task and close the socket
        """
        self._stop_evt.set()
        t = self._main_task
        self._main_task = None
        if t is not None:
            await t
        logger.debug(f'{self.id}: closed')

    def send_snapshot(self, snapshot: TallySnapshot) -> bool:
        """Queue a snapshot for transmission

        Only the latest snapshot is kept. Nothing is queued unless the
        session is :attr:`~.common.SessionState.STREAMING`.

        Returns:
            bool: ``True`` if the snapshot was accepted
        """
        if self.state != SessionState.STREAMING:
            return False
        self._pending = snapshot
        self._pending_evt.set()
        return True

    @logger.catch
    async def run(self):
        """Connect, authenticate and stream until stopped, with backoff between
        attempts
        """
        while self.running:
            await self._attempt()
            if not self.running:
                break
            delay = self.backoff.next_delay()
            self.backoff_delay = delay
            self.state = SessionState.BACKOFF
            logger.info(f'{self.id}: retrying in {delay} seconds')
            await self._sleep(delay)
            self.backoff_delay = None
        self.state = SessionState.DISCONNECTED

    async def _attempt(self):
        self.num_attempts += 1
        task = asyncio.ensure_future(self.connect_and_stream())
        stop = asyncio.ensure_future(self._wait_for_stop())
        try:
            await asyncio.wait({task, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await cancel_task(stop)
            await cancel_task(task)
            await self.disconnect()
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        self.last_error = exc
        if isinstance(exc, AuthError):
            logger.warning(f'{self.id}: authentication failed: {exc.msg}')
        elif isinstance(exc, TallyError):
            logger.info(f'{self.id}: {exc.__class__.__name__}: {exc.msg}')
        else:
            logger.opt(exception=exc).error(f'{self.id}: unexpected error')

    async def _wait_for_stop(self):
        waiters = [
            asyncio.ensure_future(self.context.shutdown.wait()),
            asyncio.ensure_future(self._stop_evt.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in waiters:
                t.cancel()

    async def _sleep(self, delay: float):
        try:
            await asyncio.wait_for(self._wait_for_stop(), delay)
        except asyncio.TimeoutError:
            pass

    async def connect_and_stream(self):
        """Run a single connection attempt

        Returns only by raising a :class:`~.common.TallyError` describing why
        the connection ended.
        """
        conf = self.context.config
        self.state = SessionState.CONNECTING
        logger.debug(f'{self.id}: connecting')
        coro = asyncio.open_connection(self.endpoint.host, self.endpoint.service)
        try:
            self.reader, self.writer = await asyncio.wait_for(coro, conf.connect_timeout)
        except asyncio.TimeoutError:
            raise NetworkError('Connection timed out', source=self.id)
        except OSError as exc:
            raise NetworkError(f'Could not connect: {exc}', source=self.id)

        self.state = SessionState.AUTHENTICATING
        await self.authenticate(self.reader, self.writer)
        logger.info(f'{self.id}: connected')
        await self.stream(self.reader, self.writer)

    async def authenticate(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Send the credential and wait for the controller's response

        Raises:
            AuthError: If the credential is rejected
            NetworkError: If no response arrives within the auth timeout
            ProtocolError: If the response is not an accept or reject frame
        """
        timeout = self.context.config.auth_timeout
        credential = build_credential(self.endpoint.secret)
        await write_frame(writer, Frame.auth(credential))
        try:
            frame = await asyncio.wait_for(read_frame(reader), timeout)
        except asyncio.TimeoutError:
            raise NetworkError('Authentication timed out', source=self.id)
        if frame.frame_type == FrameType.AUTH_ACCEPT:
            return
        elif frame.frame_type == FrameType.AUTH_REJECT:
            raise AuthError('Credential rejected', source=self.id)
        raise ProtocolError(
            f'Unexpected {frame.frame_type.name} frame during authentication',
            source=self.id,
        )

    async def stream(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Exchange tally frames until an error occurs
        """
        self._tx_seq = 0
        self._rx_seq = None
        self._pending = None
        self._pending_evt.clear()
        self._stream_start = asyncio.get_running_loop().time()
        self.state = SessionState.STREAMING
        tasks = [
            asyncio.ensure_future(self.read_loop(reader)),
            asyncio.ensure_future(self.write_loop(writer)),
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for t in tasks:
                await cancel_task(t)
        for t in done:
            exc = t.exception()
            if exc is not None:
                raise exc
        raise NetworkError('Stream ended', source=self.id)

    async def read_loop(self, reader: asyncio.StreamReader):
        """Receive frames, raising :class:`~.common.NetworkError` if nothing
        arrives within the idle timeout
        """
        idle_timeout = self.context.config.idle_timeout
        while True:
            try:
                frame = await asyncio.wait_for(read_frame(reader), idle_timeout)
            except asyncio.TimeoutError:
                raise NetworkError(
                    f'No data received for {idle_timeout} seconds', source=self.id,
                )
            if frame.frame_type == FrameType.HEARTBEAT:
                continue
            elif frame.frame_type == FrameType.TALLY:
                self.handle_tally_frame(frame)
            else:
                raise ProtocolError(
                    f'Unexpected {frame.frame_type.name} frame while streaming',
                    source=self.id,
                )

    def handle_tally_frame(self, frame: Frame) -> bool:
        """Apply an inbound tally frame

        Frames with a sequence number not greater than the last accepted one
        are discarded.

        Returns:
            bool: ``True`` if the frame was accepted
        """
        seq, value = frame.unpack_tally()
        if self._rx_seq is not None and seq <= self._rx_seq:
            logger.debug(f'{self.id}: discarding stale frame seq={seq}, last={self._rx_seq}')
            return False
        self._rx_seq = seq
        values = byte_to_values(value)
        logger.debug(f'{self.id}: rx seq={seq}, value={value:08b}')
        self.emit('on_remote_update', self, seq, values)
        return True

    async def write_loop(self, writer: asyncio.StreamWriter):
        """Send pending snapshots, or heartbeats while idle
        """
        heartbeat_interval = self.context.config.heartbeat_interval
        while True:
            try:
                await asyncio.wait_for(self._pending_evt.wait(), heartbeat_interval)
            except asyncio.TimeoutError:
                await write_frame(writer, Frame.heartbeat())
                continue
            self._pending_evt.clear()
            snapshot = self._pending
            self._pending = None
            if snapshot is None:
                continue
            self._tx_seq += 1
            value = snapshot.to_byte()
            await write_frame(writer, Frame.tally(self._tx_seq, value))
            logger.debug(f'{self.id}: tx seq={self._tx_seq}, value={value:08b}')

    async def disconnect(self):
        """Close the socket and reset the backoff schedule if the connection
        had been healthy
        """
        w = self.writer
        self.reader = None
        self.writer = None
        self._pending = None
        self._pending_evt.clear()
        if self._stream_start is not None:
            duration = asyncio.get_running_loop().time() - self._stream_start
            self._stream_start = None
            if duration > self.backoff.pending:
                self.backoff.reset()
        if w is not None:
            w.close()
            try:
                await w.wait_closed()
            except (ConnectionError, OSError) as exc:
                logger.debug(f'{self.id}: error closing socket: {exc!r}')
        self.state = SessionState.DISCONNECTED

    def __repr__(self):
        return f'<{self.__class__.__name__}: "{self}">'
    def __str__(self):
        return self.id
