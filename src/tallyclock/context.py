from __future__ import annotations
from loguru import logger
import asyncio
from dataclasses import dataclass, field

from tallyclock.common import ShutdownReason
from tallyclock.config import TallyConfig

@dataclass
class RunContext:
    """Shared state passed to every tally task

    Constructed once at startup. Tasks observe :attr:`shutdown` and exit when
    it is set.
    """
    config: TallyConfig
    """The :class:`~.config.TallyConfig` in use"""

    shutdown: asyncio.Event = field(default_factory=asyncio.Event)
    """Process-wide shutdown signal"""

    shutdown_reason: ShutdownReason|None = None
    """The reason given to :meth:`request_shutdown`"""

    @property
    def running(self) -> bool:
        return not self.shutdown.is_set()

    def request_shutdown(self, reason: ShutdownReason = ShutdownReason.UNKNOWN):
        """Signal all tasks to stop
        """
        if self.shutdown.is_set():
            return
        logger.info(f'Shutdown requested: {reason.name}')
        self.shutdown_reason = reason
        self.shutdown.set()
