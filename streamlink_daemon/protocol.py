"""Framed packet protocol used on the control and video TCP sockets.

Each packet on the wire is laid out as::

    | start code (4) | packet size (4, hex text) | resolution (4) | mode (2) |
    | sequence (2) | total data size (4) | data | end code (4) |

Integer fields are little-endian. The packet size is the whole packet
length written as at least three lower-case hex digits, NUL padded to four
bytes. Data longer than MAX_STREAM_SLICE is split over several packets with
increasing sequence numbers, each carrying the size of the whole message.
"""

from __future__ import annotations

import re
import select
import socket
import struct
import time
from dataclasses import dataclass
from typing import Union

SCODE = b"STA\x00"
ECODE = b"END\x00"

SCODE_SIZE = 4
ECODE_SIZE = 4
PACKET_SIZE = 4
RESOL_SIZE = 4
MODE_SIZE = 2
SEQ_NUMB_SIZE = 2
DATA_SIZE = 4
PACKET_PARAMS_SIZE = (
    SCODE_SIZE + ECODE_SIZE + PACKET_SIZE + RESOL_SIZE + MODE_SIZE + SEQ_NUMB_SIZE + DATA_SIZE
)

MAX_STREAM_SLICE = 1400 * 32
MAX_PACKET_SLICE = MAX_STREAM_SLICE + PACKET_PARAMS_SIZE

DEFAULT_TCP_WINDOW_SIZE = 8 * 1024 * 1024
LISTEN_BACKLOG = 5
SEND_RETRIES = 20
RECV_RETRIES = 100

_FIELDS = struct.Struct("<IHHI")
HEADER_SIZE = SCODE_SIZE + PACKET_SIZE + _FIELDS.size

_SEND_FLAGS = getattr(socket, "MSG_NOSIGNAL", 0) | getattr(socket, "MSG_DONTWAIT", 0)
_PEEK_FLAGS = socket.MSG_PEEK | getattr(socket, "MSG_DONTWAIT", 0)
_WAIT_ATTEMPTS = 20
_WAIT_INTERVAL = 0.005
_SELECT_TIMEOUT = 0.1

_HEX_ALLOWED = re.compile(r"[0-9A-Fa-f\-\x00]*")
_HEX_PREFIX = re.compile(r"(-?)([0-9A-Fa-f]*)")


class ProtocolError(ValueError):
    """A packet could not be built or did not follow the wire format."""


@dataclass(frozen=True)
class Packet:
    """One decoded packet."""

    resol_type: int
    mode_type: int
    sequence: int
    total_size: int
    payload: bytes

    @property
    def width(self) -> int:
        return (self.resol_type >> 16) & 0xFFFF

    @property
    def height(self) -> int:
        return self.resol_type & 0xFFFF

    @property
    def channel(self) -> int:
        return (self.mode_type >> 8) & 0xFF

    @property
    def frame_type(self) -> int:
        return self.mode_type & 0xFF

    @property
    def wire_size(self) -> int:
        """Number of bytes the packet takes on the wire."""
        return PACKET_PARAMS_SIZE + len(self.payload)


def _size_field(size: int) -> bytes:
    return (f"{size:03x}".encode("ascii") + b"\x00")[:PACKET_SIZE]


def _payload_length(slice_size: int) -> int:
    length = slice_size - PACKET_PARAMS_SIZE
    if length < 0 or length > MAX_PACKET_SLICE:
        raise ProtocolError(f"invalid packet size: {slice_size}")
    return length


def encode_packets(resol_type: int, mode_type: int, data: bytes) -> list[bytes]:
    """Split data into wire packets carrying the given resolution and mode."""
    data = bytes(data)
    if not data:
        raise ProtocolError("no data to send")
    total = len(data)
    packets = []
    for sequence, offset in enumerate(range(0, total, MAX_STREAM_SLICE)):
        chunk = data[offset:offset + MAX_STREAM_SLICE]
        fields = _FIELDS.pack(
            resol_type & 0xFFFFFFFF,
            mode_type & 0xFFFF,
            sequence & 0xFFFF,
            total & 0xFFFFFFFF,
        )
        packets.append(
            b"".join(
                (SCODE, _size_field(PACKET_PARAMS_SIZE + len(chunk)), fields, chunk, ECODE)
            )
        )
    return packets


def decode_packet(data: bytes) -> Packet:
    """Decode the packet at the start of data; trailing bytes are ignored."""
    data = bytes(data)
    if len(data) < SCODE_SIZE or data[:SCODE_SIZE] != SCODE:
        raise ProtocolError("could not find start code")
    if len(data) < HEADER_SIZE:
        raise ProtocolError("packet header is truncated")
    try:
        slice_size = parse_hex(data[SCODE_SIZE:SCODE_SIZE + PACKET_SIZE])
    except ProtocolError as exc:
        raise ProtocolError("could not find packet size") from exc
    length = _payload_length(slice_size)
    resol, mode, sequence, total = _FIELDS.unpack_from(data, SCODE_SIZE + PACKET_SIZE)
    end = HEADER_SIZE + length
    if len(data) < end:
        raise ProtocolError("could not get data")
    if data[end:end + ECODE_SIZE] != ECODE:
        raise ProtocolError("could not find end code")
    return Packet(resol, mode, sequence, total, data[HEADER_SIZE:end])


def find_first(haystack: bytes, needle: bytes, start: int = 0) -> int:
    """Return the first index at or after start where needle occurs, or -1."""
    if not needle:
        raise ValueError("needle must not be empty")
    if start < 0:
        raise ValueError("start must not be negative")
    if start > len(haystack) or len(needle) > len(haystack):
        return -1
    return bytes(haystack).find(bytes(needle), start)


def parse_hex(text: Union[str, bytes]) -> int:
    """Parse a hex size field; NUL bytes end the number and '-' is accepted."""
    if isinstance(text, (bytes, bytearray, memoryview)):
        text = bytes(text).decode("latin-1")
    if not _HEX_ALLOWED.fullmatch(text):
        raise ProtocolError(f"not a hex number: {text!r}")
    head = text.split("\x00", 1)[0]
    match = _HEX_PREFIX.match(head)
    sign, digits = match.group(1), match.group(2)
    if not digits:
        return 0
    value = int(digits, 16)
    return -value if sign else value


def create_socket(port: int, host: str = "") -> socket.socket:
    """Create a non-blocking TCP socket listening on host:port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, DEFAULT_TCP_WINDOW_SIZE)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, DEFAULT_TCP_WINDOW_SIZE)
        sock.bind((host, port))
        sock.listen(LISTEN_BACKLOG)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


def send_all(sock: socket.socket, data: bytes, retries: int = SEND_RETRIES) -> int:
    """Send data, retrying up to retries times; return the number of bytes sent.

    Raises ConnectionError when the socket stays unwritable with no retries left.
    """
    view = memoryview(bytes(data))
    total = 0
    if not view:
        return 0
    while True:
        try:
            total += sock.send(view[total:], _SEND_FLAGS)
        except (BlockingIOError, InterruptedError):
            if retries == 0:
                raise ConnectionError("could not send: socket not writable") from None
            select.select([], [sock], [], _SELECT_TIMEOUT)
            time.sleep(0.001)
        if total >= len(view) or retries <= 0:
            return total
        retries -= 1


def recv_exact(sock: socket.socket, size: int, retries: int = RECV_RETRIES) -> bytes:
    """Read up to size bytes, retrying up to retries times; may return fewer."""
    if size <= 0:
        return b""
    received = bytearray()
    while True:
        try:
            chunk = sock.recv(size - len(received))
        except (BlockingIOError, InterruptedError):
            time.sleep(0.00001)
        else:
            if not chunk:
                break
            received += chunk
        if len(received) >= size or retries <= 0:
            break
        retries -= 1
    return bytes(received)


def _wait_for(sock: socket.socket, size: int) -> bool:
    for _ in range(_WAIT_ATTEMPTS):
        try:
            available = len(sock.recv(size, _PEEK_FLAGS)) if size else 0
        except (BlockingIOError, InterruptedError):
            available = 0
        if available >= size:
            return True
        time.sleep(_WAIT_INTERVAL)
    return False


def send_message(sock: socket.socket, resol_type: int, mode_type: int, data: bytes) -> None:
    """Send data as one or more packets."""
    for packet in encode_packets(resol_type, mode_type, data):
        if send_all(sock, packet, SEND_RETRIES) < len(packet):
            raise ConnectionError("incomplete packet sent")


def _read_field(sock: socket.socket, size: int, what: str) -> bytes:
    chunk = recv_exact(sock, size, RECV_RETRIES)
    if len(chunk) != size:
        raise ProtocolError(f"could not get {what}")
    return chunk


def recv_message(sock: socket.socket) -> Packet:
    """Read one packet from the socket."""
    if recv_exact(sock, SCODE_SIZE, 1) != SCODE:
        raise ProtocolError("could not find start code")
    try:
        slice_size = parse_hex(_read_field(sock, PACKET_SIZE, "packet size"))
    except ProtocolError as exc:
        raise ProtocolError("could not find packet size") from exc
    resol = _read_field(sock, RESOL_SIZE, "resolution")
    mode = _read_field(sock, MODE_SIZE, "mode")
    sequence = _read_field(sock, SEQ_NUMB_SIZE, "sequence number")
    total = _read_field(sock, DATA_SIZE, "data size")
    length = _payload_length(slice_size)
    if not _wait_for(sock, length):
        raise ProtocolError("could not receive data")
    payload = _read_field(sock, length, "data")
    if recv_exact(sock, ECODE_SIZE, RECV_RETRIES) != ECODE:
        raise ProtocolError("could not find end code")
    resol_type, mode_type, seq, total_size = _FIELDS.unpack(resol + mode + sequence + total)
    return Packet(resol_type, mode_type, seq, total_size, payload)