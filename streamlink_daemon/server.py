"""TCP control and video server built on the framed packet protocol."""

from __future__ import annotations

import fcntl
import logging
import queue
import select
import socket
import struct
import threading
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional, Union

from .config import (
    M_MODULE_MAIN_CTRL_PARAMS,
    M_MODULE_MAIN_REC_STATUS,
    M_MODULE_MAIN_STREAM_CLOSE,
    M_MODULE_MAIN_STREAM_START,
    M_MODULE_MAIN_STREAM_STOP,
)
from .protocol import ProtocolError, recv_message, send_message
from .worker import Worker

log = logging.getLogger(__name__)

TCP_PORT = 9000
TCP_DEVICE = "enp0s3"

MAX_VIDEO_CONNECT_SIZE = 7
MAX_NET_OBJECT_SIZE = 10

FD_TYPE_NONE = 0
FD_TYPE_STREAM = 1

SOCK_CONTROL = 0
SOCK_VIDEO_01 = 1
SOCK_MAX = 9

POLL_TIMEOUT_MS = 1000

_SIOCGIFADDR = 0x8915
_SIOCGIFBRDADDR = 0x8919
_SIOCGIFNETMASK = 0x891B
_SIOCGIFHWADDR = 0x8927

# command(4) | prm_type(1) | pad(1) | length(2) | params
_HEADER = struct.Struct("<4sBxH")

Frame = tuple[int, int, int, int, bytes]


class CommandId(IntEnum):
    START = M_MODULE_MAIN_STREAM_START
    STOP = M_MODULE_MAIN_STREAM_STOP
    CLOSE = M_MODULE_MAIN_STREAM_CLOSE
    CTRL_PARAMS = M_MODULE_MAIN_CTRL_PARAMS
    REC_STATUS = M_MODULE_MAIN_REC_STATUS


_COMMANDS = {
    "STRT": CommandId.START,
    "STOP": CommandId.STOP,
    "CLSE": CommandId.CLOSE,
    "LIVE": CommandId.CTRL_PARAMS,
    "RECS": CommandId.REC_STATUS,
}


@dataclass(frozen=True)
class ControlCommand:
    """A control command received from a client."""

    name: str
    command_id: CommandId
    status: int = 0
    params: bytes = b""


def build_command(command: Union[str, bytes], params: bytes = b"") -> bytes:
    """Build the body of a control packet."""
    name = command.encode("ascii") if isinstance(command, str) else bytes(command)
    if len(name) != 4:
        raise ValueError(f"command must be four characters: {command!r}")
    params = bytes(params)
    if len(params) > 0xFFFF:
        raise ValueError("command parameters too long")
    return _HEADER.pack(name, 0, len(params)) + params


def parse_command(data: bytes) -> Optional[ControlCommand]:
    """Decode a control packet body; None for commands the server ignores."""
    data = bytes(data)
    if len(data) < _HEADER.size:
        raise ProtocolError("control packet is truncated")
    raw, _prm_type, length = _HEADER.unpack_from(data)
    name = raw.decode("latin-1")
    command_id = _COMMANDS.get(name)
    if command_id is None:
        return None
    params = data[_HEADER.size:_HEADER.size + length]
    status = 0
    if command_id is CommandId.REC_STATUS and length > 0:
        status = int.from_bytes(params[:4], "little")
    return ControlCommand(name, command_id, status, params)


def _log_command(command: ControlCommand) -> None:
    log.info("Get Message : %s (%d, status %#x)", command.name, command.command_id, command.status)


@dataclass
class _Entry:
    fd: int
    events: int
    kind: int
    addr: Optional[tuple]
    revents: int = 0


class ObjectTable:
    """Fixed-capacity table of file descriptors to poll."""

    def __init__(self, capacity: int = MAX_NET_OBJECT_SIZE) -> None:
        self.capacity = capacity
        self._entries: list[_Entry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter([entry.fd for entry in self._entries])

    def _find(self, fd: int) -> int:
        for position, entry in enumerate(self._entries):
            if entry.fd == fd:
                return position
        raise KeyError(fd)

    def add(self, fd: int, events: int, kind: int = FD_TYPE_STREAM, addr: Optional[tuple] = None) -> int:
        """Append an object; return the new count."""
        if len(self._entries) >= self.capacity:
            raise OverflowError("no more objects to poll")
        self._entries.append(_Entry(fd, events, kind, addr))
        log.debug("Add Network Object #%d - %d, %d", len(self._entries) - 1, fd, kind)
        return len(self._entries)

    def remove(self, fd: int) -> int:
        """Remove an object, moving the last one into its place; return the new count."""
        position = self._find(fd)
        log.debug("Delete Network Object #%d - %d", position, fd)
        last = self._entries.pop()
        if position < len(self._entries):
            self._entries[position] = last
        return len(self._entries)

    def kind_of(self, fd: int) -> int:
        try:
            return self._entries[self._find(fd)].kind
        except KeyError:
            return FD_TYPE_NONE

    def set_kind(self, fd: int, kind: int) -> None:
        self._entries[self._find(fd)].kind = kind


class ControlWorker(Worker):
    """Serves one control connection: sends queued parameters, dispatches commands."""

    def __init__(
        self,
        sock: socket.socket,
        on_command: Optional[Callable[[ControlCommand], None]] = None,
        outgoing: Optional["queue.Queue[tuple[int, bytes]]"] = None,
        index: int = 0,
    ) -> None:
        super().__init__(index)
        self.sock = sock
        self.on_command = on_command or _log_command
        self.outgoing = outgoing if outgoing is not None else queue.Queue()

    def _send_pending(self) -> None:
        try:
            flag, data = self.outgoing.get_nowait()
        except queue.Empty:
            return
        if not data:
            return
        body = build_command("LIVE", data) if flag == 1 else bytes(_HEADER.size)
        try:
            send_message(self.sock, 0, 0, body)
        except OSError as exc:
            log.warning("control send failed: %s", exc)

    def run_loop(self) -> None:
        while self.running():
            self._send_pending()
            try:
                readable, _, _ = select.select([self.sock], [], [], 0.005)
                if not readable:
                    continue
                if not self.sock.recv(1, socket.MSG_PEEK):
                    break
            except BlockingIOError:
                continue
            except (OSError, ValueError):
                break
            try:
                packet = recv_message(self.sock)
            except ProtocolError:
                time.sleep(0.005)
                continue
            except OSError:
                break
            if packet.total_size <= 0:
                continue
            try:
                command = parse_command(packet.payload)
            except ProtocolError:
                continue
            if command is not None:
                self.on_command(command)


class _VideoWorker(Worker):
    """Streams queued frames to one video connection."""

    def __init__(self, index: int, sock: socket.socket, frames: "queue.Queue[Frame]") -> None:
        super().__init__(index)
        self.sock = sock
        self.frames = frames

    def run_loop(self) -> None:
        log.info("Video(#-%d) Thread Start...", self.index)
        last = time.monotonic()
        count = 0
        try:
            while self.running():
                now = time.monotonic()
                if now - last >= 1:
                    last = now
                    if count:
                        log.info("Video CH-#%d, Frame %dfps", self.index, count)
                        count = 0
                try:
                    width, height, channel, frame_type, data = self.frames.get(timeout=0.001)
                except queue.Empty:
                    continue
                if not data:
                    continue
                resol = ((width & 0xFFFF) << 16) + (height & 0xFFFF)
                mode = ((channel & 0xFF) << 8) + (frame_type & 0xFF)
                try:
                    send_message(self.sock, resol, mode, data)
                except (OSError, ProtocolError) as exc:
                    log.warning("Error, video socket %s", exc)
                    break
                count += 1
        finally:
            log.info("Video(#-%d) Thread Stop...", self.index)
            self.sock.close()


@dataclass(frozen=True)
class _InterfaceInfo:
    name: str
    ip: str
    broadcast: str
    netmask: str
    mac: str


def _ioctl_addr(sock: socket.socket, request: int, name: str) -> str:
    raw = fcntl.ioctl(sock.fileno(), request, struct.pack("256s", name.encode()[:15]))
    return socket.inet_ntoa(raw[20:24])


def _interface_info(device: str) -> Optional[_InterfaceInfo]:
    prefix = device[: max(len(device) - 1, 0)]
    try:
        names = [name for _, name in socket.if_nameindex()]
    except OSError:
        return None
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        for name in names:
            if not name.startswith(prefix):
                continue
            try:
                ip = _ioctl_addr(sock, _SIOCGIFADDR, name)
            except OSError:
                continue
            if ip == "127.0.0.1":
                continue
            try:
                broadcast = _ioctl_addr(sock, _SIOCGIFBRDADDR, name)
                netmask = _ioctl_addr(sock, _SIOCGIFNETMASK, name)
            except OSError:
                broadcast = netmask = "0.0.0.0"
            try:
                raw = fcntl.ioctl(sock.fileno(), _SIOCGIFHWADDR, struct.pack("256s", name.encode()[:15]))
                mac = ":".join(f"{b:02X}" for b in raw[18:24])
            except OSError:
                mac = "00:00:00:00:00:00"
            return _InterfaceInfo(name, ip, broadcast, netmask, mac)
    return None


class NetworkServer:
    """Accepts one control and several video connections on consecutive ports."""

    def __init__(
        self,
        port: int = TCP_PORT,
        host: str = "",
        device: str = TCP_DEVICE,
        on_command: Optional[Callable[[ControlCommand], None]] = None,
        control_queue: Optional["queue.Queue[tuple[int, bytes]]"] = None,
    ) -> None:
        self.port = port
        self.host = host
        self.device = device
        self.on_command = on_command
        self.control_queue = control_queue if control_queue is not None else queue.Queue()
        self.video_queues: dict[int, "queue.Queue[Frame]"] = {
            index: queue.Queue() for index in range(SOCK_MAX - SOCK_VIDEO_01)
        }
        self._table = ObjectTable()
        self._listeners: dict[int, tuple[int, socket.socket]] = {}
        self._sockets_ready = False
        self._stop = threading.Event()
        self._control: Optional[ControlWorker] = None
        self._videos: dict[int, _VideoWorker] = {}
        self._ip_address: Optional[str] = None

    @property
    def listening_ports(self) -> list[int]:
        """Bound ports of the listening sockets, control first."""
        ordered = sorted(self._listeners.values(), key=lambda item: item[0])
        return [sock.getsockname()[1] for _, sock in ordered]

    def _close_listeners(self) -> None:
        for fd, (_, sock) in list(self._listeners.items()):
            try:
                self._table.remove(fd)
            except KeyError:
                pass
            sock.close()
        self._listeners.clear()
        self._sockets_ready = False

    def open_sockets(self) -> None:
        """Create the control and video listening sockets."""
        from .protocol import create_socket

        self._close_listeners()
        for index in range(SOCK_MAX):
            try:
                sock = create_socket(self.port + index if self.port else 0, self.host)
            except OSError:
                log.error(
                    "Could not create socket for network %s (%d)",
                    "control" if index == SOCK_CONTROL else "stream",
                    index,
                )
                self._close_listeners()
                raise
            self._listeners[sock.fileno()] = (index, sock)
            self._table.add(sock.fileno(), select.POLLIN)
        self._sockets_ready = True
        log.info("Creating sockets for control and streaming")

    def _lookup_address(self) -> None:
        info = _interface_info(self.device)
        if info is None:
            return
        log.info(
            "%s: H/W address %s, IP address %s, broadcast %s, netmask %s",
            info.name, info.mac, info.ip, info.broadcast, info.netmask,
        )
        if self._ip_address is None:
            self._ip_address = info.ip

    def address_status(self) -> Optional[tuple[str, int]]:
        """The interface address and base port, or None if no address is known."""
        if not self._ip_address:
            return None
        return self._ip_address, self.port

    def _poll(self, timeout_ms: int) -> int:
        poller = select.poll()
        for entry in self._table._entries:
            entry.revents = 0
            poller.register(entry.fd, entry.events)
        try:
            results = poller.poll(timeout_ms)
        except OSError as exc:
            log.error("poll error: %s", exc)
            return -1
        events = dict(results)
        for entry in self._table._entries:
            entry.revents = events.get(entry.fd, 0)
        return len(results)

    def _accept(self, fd: int) -> bool:
        listener = self._listeners.get(fd)
        if listener is None:
            return False
        index, sock = listener
        try:
            conn, addr = sock.accept()
        except OSError as exc:
            log.warning("accept error: %s", exc)
            return False
        log.info("accept from %s for %s", addr[0], "control" if index == SOCK_CONTROL else "streaming")
        conn.setblocking(False)
        if index == SOCK_CONTROL:
            self._stop_control()
            self._control = ControlWorker(conn, self.on_command, self.control_queue)
            self._control.start()
        else:
            video = index - SOCK_VIDEO_01
            self._stop_video(video)
            worker = _VideoWorker(video, conn, self.video_queues[video])
            self._videos[video] = worker
            worker.start()
        return True

    def serve(self) -> None:
        """Accept connections until stop() is called."""
        self._lookup_address()
        try:
            while not self._stop.is_set():
                time.sleep(0.01)
                if not self._sockets_ready:
                    try:
                        self.open_sockets()
                    except OSError:
                        pass
                    self._stop.wait(0.5)
                    continue
                if self._poll(POLL_TIMEOUT_MS) <= 0:
                    continue
                for entry in list(self._table._entries):
                    if self._stop.is_set():
                        break
                    if entry.revents & ~select.POLLIN:
                        self._table.remove(entry.fd)
                    elif entry.revents & select.POLLIN:
                        if not self._accept(entry.fd):
                            break
        finally:
            self.close_clients()
            self._close_listeners()

    def stop(self) -> None:
        """Ask serve() to return."""
        self._stop.set()

    def _stop_control(self) -> None:
        worker, self._control = self._control, None
        if worker is not None:
            worker.stop()
            worker.join()
            worker.sock.close()

    def _stop_video(self, index: int) -> None:
        worker = self._videos.pop(index, None)
        if worker is not None:
            worker.stop()
            worker.join()

    def close_clients(self) -> None:
        """Stop every client worker."""
        for index in list(self._videos):
            self._stop_video(index)
        self._stop_control()