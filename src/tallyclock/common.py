from __future__ import annotations
import enum

NUM_LINES = 8
"""Number of tally lines handled by the appliance"""


class TallyError(Exception):
    """Base class for all errors raised by the tally subsystem
    """
    def __init__(self, msg: str, source: str|None = None):
        super().__init__(msg)
        self.msg = msg
        self.source = source
    def __str__(self):
        if self.source is None:
            return self.msg
        return f'{self.source}: {self.msg}'

class ConfigError(TallyError):
    """Invalid configuration. Fatal at startup
    """

class HardwareError(TallyError):
    """The discrete I/O bank is unavailable or faulting
    """

class AuthError(TallyError):
    """Credentials rejected by a remote controller
    """

class ProtocolError(TallyError):
    """Malformed or unexpected frame from a remote controller
    """

class NetworkError(TallyError):
    """Connection refused, timed out or reset
    """


class Provenance(enum.Enum):
    """Which side most recently supplied a tally line's value
    """

    UNSET = enum.auto()
    """No value has been supplied yet"""

    LOCAL = enum.auto()
    """Value came from the local hardware inputs"""

    REMOTE = enum.auto()
    """Value came from a remote tally controller"""


class SessionState(enum.IntFlag):
    """Connection state of a :class:`~.session.RemoteSession`
    """
    DISCONNECTED = enum.auto()
    """No connection and no attempt in progress"""

    CONNECTING = enum.auto()
    """A TCP connection is being opened"""

    AUTHENTICATING = enum.auto()
    """Connected, waiting for the controller to accept the credential"""

    STREAMING = enum.auto()
    """Authenticated and exchanging tally frames"""

    BACKOFF = enum.auto()
    """Waiting before the next connection attempt"""


class ShutdownReason(enum.Enum):
    """Reason given with :meth:`.context.RunContext.request_shutdown`
    """

    UNKNOWN = enum.auto()
    USER = enum.auto()
    """Quit requested by the user (keyboard)"""

    SIGNAL = enum.auto()
    """Process signal (SIGINT/SIGTERM)"""
