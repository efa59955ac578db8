"""Framing for the remote tally link

Every frame starts with a three byte header::

    +-----------+-----------------------+------------------+
    | Type (1B) | Payload length (2B BE) | Payload (N bytes)|
    +-----------+-----------------------+------------------+

The client opens the connection with an :attr:`~FrameType.AUTH` frame whose
payload is an opaque credential (see :func:`build_credential`). The controller
answers with :attr:`~FrameType.AUTH_ACCEPT` or :attr:`~FrameType.AUTH_REJECT`.
After acceptance both sides exchange :attr:`~FrameType.TALLY` frames carrying
a sequence number and the full 8 line state, and
:attr:`~FrameType.HEARTBEAT` frames while idle.
"""
from __future__ import annotations
import typing as tp
import asyncio
import enum
import hashlib
import hmac
import os
import struct
from dataclasses import dataclass

from tallyclock.common import ProtocolError, NetworkError

HEADER = struct.Struct('!BH')
TALLY_PAYLOAD = struct.Struct('!QB')
MAX_PAYLOAD = 1024
NONCE_SIZE = 16
CREDENTIAL_SIZE = NONCE_SIZE + hashlib.sha256().digest_size

class FrameType(enum.IntEnum):
    AUTH = 0x01
    AUTH_ACCEPT = 0x02
    AUTH_REJECT = 0x03
    TALLY = 0x10
    HEARTBEAT = 0x11

_FIXED_SIZES = {
    FrameType.AUTH_ACCEPT:0,
    FrameType.AUTH_REJECT:0,
    FrameType.TALLY:TALLY_PAYLOAD.size,
    FrameType.HEARTBEAT:0,
}

@dataclass(frozen=True)
class Frame:
    frame_type: FrameType
    payload: bytes = b''

    @classmethod
    def auth(cls, credential: bytes) -> 'Frame':
        return cls(FrameType.AUTH, credential)

    @classmethod
    def accept(cls) -> 'Frame':
        return cls(FrameType.AUTH_ACCEPT)

    @classmethod
    def reject(cls) -> 'Frame':
        return cls(FrameType.AUTH_REJECT)

    @classmethod
    def heartbeat(cls) -> 'Frame':
        return cls(FrameType.HEARTBEAT)

    @classmethod
    def tally(cls, seq: int, value: int) -> 'Frame':
        """Build a tally frame from a sequence number and 8-bit line state
        """
        return cls(FrameType.TALLY, TALLY_PAYLOAD.pack(seq, value))

    def unpack_tally(self) -> tp.Tuple[int, int]:
        """Get the ``(sequence, value)`` from a tally frame
        """
        if self.frame_type != FrameType.TALLY:
            raise ProtocolError(f'Not a tally frame: {self.frame_type!r}')
        return TALLY_PAYLOAD.unpack(self.payload)

    def build(self) -> bytes:
        """Encode the frame for transmission
        """
        if len(self.payload) > MAX_PAYLOAD:
            raise ProtocolError(f'Payload {len(self.payload)} exceeds max {MAX_PAYLOAD}')
        return HEADER.pack(self.frame_type, len(self.payload)) + self.payload


def parse_header(data: bytes) -> tp.Tuple[FrameType, int]:
    """Validate a frame header

    Returns:
        The frame type and payload length

    Raises:
        ProtocolError: If the type is unknown or the length is invalid for it
    """
    type_value, length = HEADER.unpack(data)
    try:
        frame_type = FrameType(type_value)
    except ValueError:
        raise ProtocolError(f'Unknown frame type: 0x{type_value:02x}')
    if length > MAX_PAYLOAD:
        raise ProtocolError(f'Frame length {length} exceeds max {MAX_PAYLOAD}')
    expected = _FIXED_SIZES.get(frame_type)
    if expected is not None and length != expected:
        raise ProtocolError(
            f'Invalid length {length} for {frame_type.name} (expected {expected})'
        )
    return frame_type, length

async def read_frame(reader: asyncio.StreamReader) -> Frame:
    """Read a single :class:`Frame` from the stream

    Raises:
        ProtocolError: On a malformed frame
        NetworkError: If the connection is closed or reset
    """
    try:
        header = await reader.readexactly(HEADER.size)
        frame_type, length = parse_header(header)
        payload = b''
        if length:
            payload = await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise NetworkError(f'Connection closed ({len(exc.partial)} bytes pending)')
    except ConnectionError as exc:
        raise NetworkError(f'Connection error: {exc!r}')
    return Frame(frame_type, payload)

async def write_frame(writer: asyncio.StreamWriter, frame: Frame):
    """Send a :class:`Frame` and drain the stream

    Raises:
        NetworkError: If the connection is closed or reset
    """
    try:
        writer.write(frame.build())
        await writer.drain()
    except ConnectionError as exc:
        raise NetworkError(f'Connection error: {exc!r}')


def build_credential(secret: str, nonce: bytes|None = None) -> bytes:
    """Derive the opaque credential sent in the :attr:`~FrameType.AUTH` frame

    The credential is a random nonce followed by an HMAC-SHA256 of the nonce
    keyed with the shared secret, so the secret itself never crosses the wire.
    """
    if nonce is None:
        nonce = os.urandom(NONCE_SIZE)
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f'Nonce must be {NONCE_SIZE} bytes')
    mac = hmac.new(secret.encode('UTF-8'), nonce, hashlib.sha256).digest()
    return nonce + mac

def verify_credential(secret: str, credential: bytes) -> bool:
    """Check a credential built by :func:`build_credential`
    """
    if len(credential) != CREDENTIAL_SIZE:
        return False
    nonce = credential[:NONCE_SIZE]
    expected = build_credential(secret, nonce)
    return hmac.compare_digest(expected, credential)
