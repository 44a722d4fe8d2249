# streamlink_daemon

Building blocks for a small video streaming daemon, using only the standard
library (Python 3.10 or later). The network server relies on `fcntl` and
`select.poll`, so it runs on Linux and similar POSIX systems.

The package has four modules:

- `streamlink_daemon.config`: streaming settings parsed from command-line
  style arguments, the help text and the start-up banner.
- `streamlink_daemon.protocol`: the framed TCP packet format, with encoding,
  decoding and socket helpers.
- `streamlink_daemon.worker`: a stoppable, joinable background thread.
- `streamlink_daemon.server`: a TCP server with one control port and eight
  video ports, plus the control command format.

## Configuration

```python
from streamlink_daemon.config import parse_args, banner, usage, StreamMode, CodecType

config = parse_args(["--mode", "rtp", "--host", "192.0.2.10", "--port", "5000", "--codec", "h265"])
assert config.mode is StreamMode.RTP
assert config.codec is CodecType.H265
print(banner(config))
print(usage("stream_daemon"))
```

`parse_args(argv)` takes the arguments without the program name (with
`argv=None` it reads `sys.argv[1:]`) and returns an `AppConfig` dataclass.

| Option | Field | Meaning | Default |
| --- | --- | --- | --- |
| `-m`, `--mode` | `mode` | `rtsp` or `rtp` (`StreamMode`) | `rtsp` |
| `-c`, `--codec` | `codec` | `h264` or `h265` (`CodecType`) | `h264` |
| `-f`, `--fps` | `fps` | frame rate, 1 to 120 | 30 |
| `-s`, `--source` | `source` | `test` or `v4l2` (`SourceType`) | `test` |
| `-d`, `--device` | `device` | V4L2 device path | `/dev/video0` |
| `-H`, `--host` | `host` | RTP destination address | `127.0.0.1` |
| `-p`, `--port` | `port` | RTP destination port, 1024 to 65535 | 5000 |
| `-w`, `--width` | `width` | frame width, at least 1 | 1280 |
| `-e`, `--height` | `height` | frame height, at least 1 | 720 |
| `-b`, `--bitrate` | `bitrate` | bitrate in kbps, at least 1 | 2000 |
| `--rtsp-host` | `rtsp_host` | RTSP server bind address | `127.0.0.1` |
| `--rtsp-port` | `rtsp_port` | RTSP server port, 1024 to 65535 | 8554 |
| `-h`, `--help` | | print the help text and exit with status 0 | |

Details:

- Numbers are read from their leading digits, so `30fps` means 30 and text
  without digits means 0.
- An out-of-range number raises `ConfigError`, a `ValueError` subclass, with a
  message such as `Invalid port: 80 (1024-65535)`.
- Mode, codec and source names are case-insensitive. Any unrecognised name
  falls back to the default.
- Host and device values are cut to 63 characters.
- Long options may be abbreviated to an unambiguous prefix, and take
  `--name=value` or `--name value`. Short options may be bundled (`-mrtp`).
- Unknown options, ambiguous options and options missing their value are
  reported on standard error and skipped. Operands are ignored, and so is
  everything after `--`.

## Packet protocol

A message is split into slices of at most 44,800 bytes (`MAX_STREAM_SLICE`),
and each slice is sent as one packet:

```
| "STA\0" | packet size | resolution | mode | sequence | total size | data | "END\0" |
```

The packet size is the length of the whole packet, written as lower-case hex
text of at least three digits and NUL-padded to four bytes. Resolution (4
bytes), mode (2), sequence (2) and total message size (4) are little-endian.
Each packet has 24 bytes of framing (`PACKET_PARAMS_SIZE`).

```python
from streamlink_daemon.protocol import encode_packets, decode_packet

resol = (1280 << 16) | 720
mode = (1 << 8) | 2
packets = encode_packets(resol, mode, b"hello")
packet = decode_packet(packets[0])
assert (packet.width, packet.height, packet.channel, packet.frame_type) == (1280, 720, 1, 2)
assert packet.payload == b"hello" and packet.total_size == 5
assert packet.wire_size == len(packets[0])
```

- `encode_packets(resol_type, mode_type, data)` returns one `bytes` per slice,
  numbered from sequence 0. Empty data raises `ProtocolError`.
- `decode_packet(data)` returns a `Packet` (`resol_type`, `mode_type`,
  `sequence`, `total_size`, `payload`) and ignores trailing bytes. A missing
  start or end code, a bad size field or truncated data raises
  `ProtocolError`, a `ValueError` subclass.
- `parse_hex(text)` reads a size field from `str` or `bytes`. A NUL ends the
  number and a leading `-` is accepted.
- `find_first(haystack, needle, start=0)` returns the first index of `needle`
  at or after `start`, or -1.

Socket helpers:

- `create_socket(port, host="")` returns a non-blocking TCP socket that is
  already listening, with `SO_REUSEADDR`, an immediate-reset linger setting
  and 8 MiB send and receive buffers.
- `send_all(sock, data, retries=20)` sends with retries and returns the number
  of bytes sent. It raises `ConnectionError` when the socket stays unwritable.
- `recv_exact(sock, size, retries=100)` reads up to `size` bytes and may
  return fewer.
- `send_message(sock, resol_type, mode_type, data)` sends every packet of a
  message.
- `recv_message(sock)` reads one packet and returns a `Packet`.

## Workers

`Worker` is an abstract base class for a thread. Subclasses implement
`run_loop()` and check `running()` to find out when to finish.

```python
import time
from streamlink_daemon.worker import Worker

class Ticker(Worker):
    def run_loop(self):
        while self.running():
            time.sleep(0.01)

ticker = Ticker(index=1)
ticker.start()
ticker.stop()
assert ticker.join(timeout=1.0)
assert ticker.done
```

- `start()` runs `run_loop` on a daemon thread. Starting a worker twice raises
  `RuntimeError`.
- `stop()` asks the worker to finish.
- `join(timeout=None)` waits for `run_loop` to return and returns `True` once
  it has. Calling it on a worker that was never started raises `RuntimeError`.
- `priority` (`Priority`) and `policy` (`Policy`) are stored on the worker
  for its subclasses. They do not change how the thread is scheduled.

## Network server

`NetworkServer(port=9000, host="", device="enp0s3", on_command=None, control_queue=None)`
listens on `port` for the control connection, and on the next eight ports for
video connections. With `port=0`, every socket gets a free port instead;
`listening_ports` lists the bound ports, control first.

```python
import threading
from streamlink_daemon.server import NetworkServer

server = NetworkServer(port=0, on_command=print)
server.open_sockets()
print(server.listening_ports)

thread = threading.Thread(target=server.serve)
thread.start()
# ... clients connect ...
server.stop()
thread.join()
```

- `serve()` looks up the address of the network interface whose name matches
  `device`, opens the listening sockets if they are not open yet (retrying
  every half second), and accepts connections until `stop()` is called. It
  then stops every client worker and closes the listening sockets.
- Each accepted connection gets its own worker. A new connection on a port
  replaces the previous one.
- The control worker (`ControlWorker`) reads packets, decodes them with
  `parse_command`, and passes each `ControlCommand` to `on_command`. Without a
  callback, commands are logged. To send parameters to the client, put a
  `(1, data)` pair on `control_queue`; it goes out as a `LIVE` command.
- A video worker sends the frames put on `server.video_queues[n]`, where `n`
  is 0 to 7. Each frame is a `(width, height, channel, frame_type, data)`
  tuple.
- `close_clients()` stops every client worker.
- `address_status()` returns `(ip_address, port)` once an interface address is
  known, otherwise `None`.
- `ObjectTable` is the bounded table (10 entries by default) of file
  descriptors that the server polls.

### Control commands

A control body has a four-letter command, a one-byte parameter type, a pad
byte, a little-endian two-byte parameter length, and then the parameters.

```python
from streamlink_daemon.server import build_command, parse_command, CommandId

body = build_command("RECS", (5).to_bytes(4, "little"))
command = parse_command(body)
assert command.command_id is CommandId.REC_STATUS and command.status == 5
```

| Command | `CommandId` |
| --- | --- |
| `STRT` | `START` (1001) |
| `STOP` | `STOP` (1002) |
| `CLSE` | `CLOSE` (1003) |
| `LIVE` | `CTRL_PARAMS` (1004) |
| `RECS` | `REC_STATUS` (1005), with `status` taken from the first four parameter bytes |

`parse_command` returns `None` for any other command name. It raises
`ProtocolError` when the body is shorter than its header.

## What this package does not do

- It has no command that starts a daemon. `parse_args` and `banner` produce a
  configuration and its banner, but nothing here captures, encodes or streams
  video over RTSP or RTP.
- The network server only carries packets. Frames must be put on its video
  queues by the caller, and received control commands are only handed to the
  `on_command` callback.