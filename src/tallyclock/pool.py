from __future__ import annotations
import typing as tp
from loguru import logger
import asyncio
from dataclasses import dataclass

from pydispatch import Dispatcher, Property, DictProperty

from tallyclock.common import SessionState
from tallyclock.context import RunContext
from tallyclock.session import RemoteSession
from tallyclock.state import TallySnapshot

@dataclass(frozen=True)
class RemoteUpdate:
    """An inbound tally update from one of the sessions
    """
    endpoint_id: str
    """Id of the originating :class:`~.config.RemoteEndpoint` (diagnostic only)"""

    seq: int
    """Sequence number of the frame within its connection"""

    values: tp.Tuple[bool, ...]
    """The 8 line values"""


class SessionPool(Dispatcher):
    """Container for one :class:`~.session.RemoteSession` per configured remote

    Sessions are created from :attr:`.config.TallyConfig.remotes` and live
    for the lifetime of the pool.

    :Events:
        .. event:: on_remote_update(update: RemoteUpdate)

            Fired for every tally frame accepted by any session

        .. event:: on_session_state(session: RemoteSession, state: SessionState)

            Fired when any session changes state
    """
    running = Property(False)
    sessions: tp.Dict[str, RemoteSession] = DictProperty()
    """Mapping of :class:`~.session.RemoteSession` instances using their
    endpoint id as keys
    """
    _events_ = ['on_remote_update', 'on_session_state']
    def __init__(self, context: RunContext):
        self.context = context
        self.latest = None
        for endpoint in context.config.remotes:
            if endpoint.id in self.sessions:
                logger.warning(f'Ignoring duplicate remote "{endpoint.id}"')
                continue
            session = RemoteSession(endpoint, context)
            session.bind(
                state=self._on_session_state,
                on_remote_update=self._on_session_update,
            )
            self.sessions[endpoint.id] = session

    @property
    def states(self) -> tp.Dict[str, SessionState]:
        """Current :class:`~.common.SessionState` for each session"""
        return {key:s.state for key, s in self.sessions.items()}

    async def open(self):
        """Start all sessions
        """
        if self.running:
            return
        self.running = True
        if not len(self.sessions):
            logger.warning('No remote hosts configured')
        await asyncio.gather(*[s.open() for s in self.sessions.values()])
        logger.success(f'SessionPool running with {len(self.sessions)} session(s)')

    async def close(self):
        """Stop all sessions and close their sockets
        """
        if not self.running:
            return
        self.running = False
        await asyncio.gather(*[s.close() for s in self.sessions.values()])
        logger.success('SessionPool closed')

    def broadcast(self, snapshot: TallySnapshot) -> int:
        """Deliver a snapshot to every streaming session

        The snapshot is stored as the latest value and handed to sessions as
        they reach :attr:`~.common.SessionState.STREAMING`. Earlier snapshots
        are not replayed.

        Returns:
            int: The number of sessions the snapshot was delivered to
        """
        self.set_latest(snapshot)
        count = 0
        for session in self.sessions.values():
            if session.send_snapshot(snapshot):
                count += 1
        logger.debug(f'broadcast {snapshot.to_byte():08b} to {count} session(s)')
        return count

    def set_latest(self, snapshot: TallySnapshot):
        """Replace the snapshot given to sessions as they start streaming,
        without sending it to the sessions already streaming
        """
        self.latest = snapshot

    def _on_session_state(self, instance, value, **kwargs):
        if value == SessionState.STREAMING and self.latest is not None:
            instance.send_snapshot(self.latest)
        self.emit('on_session_state', instance, value)

    def _on_session_update(self, session, seq, values, **kwargs):
        update = RemoteUpdate(endpoint_id=session.id, seq=seq, values=values)
        self.emit('on_remote_update', update)
