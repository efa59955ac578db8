from __future__ import annotations
import typing as tp
from loguru import logger
import os
import sys
import enum
from pathlib import Path
from dataclasses import dataclass, field

import jsonfactory

from tallyclock.common import NUM_LINES, ConfigError

def get_config_dir(app_name: str) -> Path:
    """Directory holding the configuration for *app_name*

    ``$XDG_CONFIG_HOME`` (or ``~/.config``) is used on Linux and other POSIX
    systems, ``~/Library/Application Support`` on MacOS and ``%APPDATA%`` on
    Windows.
    """
    if sys.platform == 'win32':
        base = os.environ.get('APPDATA') or Path.home() / 'AppData' / 'Roaming'
    elif sys.platform == 'darwin':
        base = Path.home() / 'Library' / 'Application Support'
    else:
        base = os.environ.get('XDG_CONFIG_HOME') or Path.home() / '.config'
    return Path(base) / app_name

DEFAULT_FILENAME: Path = get_config_dir('tallyclock') / 'config.json'
"""Config file used when no path is given on the command line"""

DEFAULT_SERVICE = '6254'
DEFAULT_SECRET = 'SharedSecretGoesHere'
DEFAULT_PULLS = 'UUUUUUUU'
DEFAULT_CLEAN_EXIT_FILE = '/tmp/piclock_clean_exit'


class PullMode(enum.Enum):
    """Input pull resistor setting for a single line
    """
    UP = 'U'
    DOWN = 'D'
    FLOATING = 'O'


@dataclass(frozen=True)
class PinConfig:
    """Per-line pull resistor configuration for the 8 line I/O bank
    """
    pulls: tp.Tuple[PullMode, ...] = tuple(PullMode.UP for _ in range(NUM_LINES))

    @classmethod
    def from_string(cls, s: str) -> 'PinConfig':
        """Parse a descriptor string with one character per line

        Characters must be one of ``"U"`` (pull-up), ``"D"`` (pull-down)
        or ``"O"`` (floating).

        Raises:
            ConfigError: If the length or any character is invalid
        """
        if not isinstance(s, str) or len(s) != NUM_LINES:
            raise ConfigError(
                f'Pull mode string must be {NUM_LINES} characters: {s!r}',
                source='gpio_pulls',
            )
        pulls = []
        for c in s:
            try:
                pulls.append(PullMode(c))
            except ValueError:
                raise ConfigError(
                    f'Invalid pull mode {c!r} in {s!r}', source='gpio_pulls',
                )
        return cls(pulls=tuple(pulls))

    def __str__(self):
        return ''.join(p.value for p in self.pulls)

    def __iter__(self) -> tp.Iterator[PullMode]:
        yield from self.pulls

    def __getitem__(self, line: int) -> PullMode:
        return self.pulls[line]


@dataclass(frozen=True)
class RemoteEndpoint:
    """A remote tally controller to connect to
    """
    host: str
    """Host name or address"""

    service: str = DEFAULT_SERVICE
    """Port number or service name"""

    secret: str = field(default=DEFAULT_SECRET, repr=False)
    """Shared secret used to build the authentication credential"""

    @property
    def id(self) -> str:
        """Unique id formatted as ``"host:service"``"""
        return f'{self.host}:{self.service}'

    def __str__(self):
        return self.id


class TallyMode(enum.Enum):
    """Tally operating mode, decoded from the configured bitmask

    Bit 0 enables the GPIO bank, bit 1 enables the network sessions.
    """
    DISABLED = 0
    GPIO = 1
    TCP = 2
    TCP_GPIO_ECHO = 3
    """Network tally with local GPIO state passed back to the controllers"""

    @classmethod
    def from_bitmask(cls, value: int) -> 'TallyMode':
        """Decode the integer bitmask

        Raises:
            ConfigError: If the value is not one of the four legal modes
        """
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f'Invalid tally mode: {value!r}', source='tally_mode')
        try:
            return cls(value)
        except ValueError:
            raise ConfigError(f'Invalid tally mode: {value!r}', source='tally_mode')

    @property
    def uses_gpio(self) -> bool:
        return self in (TallyMode.GPIO, TallyMode.TCP_GPIO_ECHO)

    @property
    def uses_tcp(self) -> bool:
        return self in (TallyMode.TCP, TallyMode.TCP_GPIO_ECHO)


class GpioVariant(enum.Enum):
    """Hardware I/O bank selector
    """
    PIFACE = 0
    """PiFace Digital expansion board"""

    RASPBERRY_PI = 1
    """On-board Raspberry Pi header (not supported)"""

    MEMORY = 'memory'
    """In-process simulated bank"""

    @classmethod
    def from_value(cls, value: tp.Any) -> 'GpioVariant':
        if isinstance(value, GpioVariant):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ConfigError(f'Invalid gpio mode: {value!r}', source='gpio_mode')


@dataclass(frozen=True)
class TallyConfig:
    """Immutable configuration values consumed by the tally core
    """
    mode: TallyMode = TallyMode.DISABLED
    gpio_variant: GpioVariant = GpioVariant.PIFACE
    pin_config: PinConfig = field(default_factory=PinConfig)
    remotes: tp.Tuple[RemoteEndpoint, ...] = ()
    clean_exit_file: str|None = DEFAULT_CLEAN_EXIT_FILE
    mirror_outputs: bool = False
    """In :attr:`TallyMode.TCP`, drive the hardware outputs as a local
    indicator of the remote state"""

    poll_interval: float = .02
    """Seconds between hardware input polls"""

    heartbeat_interval: float = 1.
    """Seconds of outbound silence before a heartbeat frame is sent"""

    idle_factor: float = 3.
    """Inbound silence longer than ``heartbeat_interval * idle_factor``
    forces a reconnect"""

    connect_timeout: float = 2.
    auth_timeout: float = 5.
    backoff_min: float = 1.
    backoff_max: float = 30.

    _number_fields = (
        'poll_interval', 'heartbeat_interval', 'idle_factor',
        'connect_timeout', 'auth_timeout', 'backoff_min', 'backoff_max',
    )

    def __post_init__(self):
        for attr in self._number_fields:
            val = getattr(self, attr)
            if isinstance(val, bool) or not isinstance(val, (int, float)) or val <= 0:
                raise ConfigError(f'Must be a positive number: {val!r}', source=attr)
        if self.idle_factor < 1:
            raise ConfigError('Must be at least 1', source='idle_factor')
        if self.backoff_max < self.backoff_min:
            raise ConfigError('Must not be less than backoff_min', source='backoff_max')
        if self.mode.uses_gpio and self.gpio_variant == GpioVariant.RASPBERRY_PI:
            raise ConfigError(
                'Raspberry Pi GPIO is not supported, use the PiFace Digital',
                source='gpio_mode',
            )

    @property
    def idle_timeout(self) -> float:
        return self.heartbeat_interval * self.idle_factor

    @classmethod
    def from_dict(cls, d: tp.Dict[str, tp.Any]) -> 'TallyConfig':
        """Build an instance from a ``dict`` using the configuration file keys

        Raises:
            ConfigError: If any value is invalid
        """
        d = d.copy()
        d.pop('__class__', None)
        kw = {}
        kw['mode'] = TallyMode.from_bitmask(d.pop('tally_mode', 0))
        kw['gpio_variant'] = GpioVariant.from_value(d.pop('gpio_mode', 0))
        kw['pin_config'] = PinConfig.from_string(d.pop('gpio_pulls', DEFAULT_PULLS))

        hosts = d.pop('tally_remote_host', [])
        if isinstance(hosts, str):
            hosts = [hosts]
        elif not isinstance(hosts, (list, tuple)):
            raise ConfigError(
                f'Expected a host name or a list of them: {hosts!r}',
                source='tally_remote_host',
            )
        service = str(d.pop('tally_remote_port', DEFAULT_SERVICE))
        secret = d.pop('tally_shared_secret', DEFAULT_SECRET)
        if not isinstance(secret, str):
            raise ConfigError(f'Invalid secret type: {type(secret)}', source='tally_shared_secret')
        remotes = []
        for host in hosts:
            if not isinstance(host, str) or not len(host):
                raise ConfigError(f'Invalid host: {host!r}', source='tally_remote_host')
            remotes.append(RemoteEndpoint(host=host, service=service, secret=secret))
        kw['remotes'] = tuple(remotes)

        kw['clean_exit_file'] = d.pop('clean_exit_file', DEFAULT_CLEAN_EXIT_FILE)
        kw['mirror_outputs'] = bool(d.pop('mirror_outputs', False))
        for attr in cls._number_fields:
            if attr in d:
                kw[attr] = d.pop(attr)
        for key in d.keys():
            logger.warning(f'Ignoring unknown config key "{key}"')
        return cls(**kw)

    def to_dict(self) -> tp.Dict[str, tp.Any]:
        """Serialize using the configuration file keys
        """
        d = dict(
            tally_mode=self.mode.value,
            gpio_mode=self.gpio_variant.value,
            gpio_pulls=str(self.pin_config),
            tally_remote_host=[r.host for r in self.remotes],
            tally_remote_port=DEFAULT_SERVICE,
            tally_shared_secret=DEFAULT_SECRET,
            clean_exit_file=self.clean_exit_file,
            mirror_outputs=self.mirror_outputs,
        )
        if len(self.remotes):
            d['tally_remote_port'] = self.remotes[0].service
            d['tally_shared_secret'] = self.remotes[0].secret
        d.update({attr:getattr(self, attr) for attr in self._number_fields})
        return d


def load_config(filename: tp.Optional['pathlib.Path'] = None) -> TallyConfig:
    """Read a :class:`TallyConfig` from a json file

    If the file does not exist, the defaults are used.

    Arguments:
        filename: The configuration filename. If not provided,
            :data:`DEFAULT_FILENAME` is used

    Raises:
        ConfigError: If the file cannot be parsed or contains invalid values
    """
    if filename is None:
        filename = DEFAULT_FILENAME
    filename = Path(filename)
    logger.info(f'Config using filename: {filename}')
    if not filename.exists():
        logger.warning(f'Config file "{filename}" not found, using defaults')
        return TallyConfig()
    try:
        data = jsonfactory.loads(filename.read_text())
    except ValueError as exc:
        raise ConfigError(f'Could not parse "{filename}": {exc}')
    if isinstance(data, TallyConfig):
        return data
    if not isinstance(data, dict):
        raise ConfigError(f'Expected a json object in "{filename}"')
    return TallyConfig.from_dict(data)

def save_config(config: TallyConfig, filename: tp.Optional['pathlib.Path'] = None):
    """Write a :class:`TallyConfig` to a json file
    """
    if filename is None:
        filename = DEFAULT_FILENAME
    filename = Path(filename)
    p = filename.parent
    if not p.exists():
        p.mkdir(mode=0o700, parents=True)
    filename.write_text(jsonfactory.dumps(config, indent=2))


@jsonfactory.register
class TallyConfigHandler(object):
    """Tags a saved :class:`TallyConfig` with its class path so that
    :func:`load_config` gets an instance back
    """
    tag = f'{TallyConfig.__module__}.{TallyConfig.__qualname__}'

    def encode(self, o):
        if isinstance(o, TallyConfig):
            return dict(o.to_dict(), __class__=self.tag)

    def decode(self, d):
        if d.get('__class__') == self.tag:
            return TallyConfig.from_dict(d)
        return d
