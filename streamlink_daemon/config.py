"""Command-line configuration of the stream daemon."""

from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Iterator, Sequence

SW_BUILD_VERSION = "01.00.00"
APP_VERSION = (0x01, 0x00, 0x00)

KEY_MQ_MAIN_TASK = 0x20000001
KEY_MQ_NETWORK_TASK = 0x20000002
KEY_MQ_RTP_TASK = 0x20000002

M_MODULE_MAIN_STREAM_START = 1001
M_MODULE_MAIN_STREAM_STOP = 1002
M_MODULE_MAIN_STREAM_CLOSE = 1003
M_MODULE_MAIN_CTRL_PARAMS = 1004
M_MODULE_MAIN_REC_STATUS = 1005

M_RTP_STREAM_START = 2010
M_RTP_STREAM_STOP = 2011
M_RTP_STREAM_RESTART = 2012

DEFAULT_RTP_HOST = "127.0.0.1"
DEFAULT_RTP_PORT = 5000
DEFAULT_RTSP_HOST = "127.0.0.1"
DEFAULT_RTSP_PORT = 8554
DEFAULT_WIDTH = 1280
DEFAULT_HEIGHT = 720
DEFAULT_FPS = 30
DEFAULT_BITRATE = 2000
DEFAULT_DEVICE = "/dev/video0"

# Text fields hold at most this many characters.
MAX_TEXT_LENGTH = 63

DEFAULT_PROG = "stream_daemon"


class StreamMode(IntEnum):
    RTSP = 0
    RTP = 1


class SourceType(IntEnum):
    TEST = 0
    V4L2 = 1


class CodecType(IntEnum):
    H264 = 0
    H265 = 1


class ConfigError(ValueError):
    """An option was given a value outside its allowed range."""


@dataclass
class AppConfig:
    mode: StreamMode = StreamMode.RTSP
    source: SourceType = SourceType.TEST
    host: str = DEFAULT_RTP_HOST
    port: int = DEFAULT_RTP_PORT
    device: str = DEFAULT_DEVICE
    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT
    fps: int = DEFAULT_FPS
    bitrate: int = DEFAULT_BITRATE
    codec: CodecType = CodecType.H264
    rtsp_host: str = DEFAULT_RTSP_HOST
    rtsp_port: int = DEFAULT_RTSP_PORT


def usage(prog: str) -> str:
    """Return the help text for the command."""
    return (
        f"Usage: {prog} [OPTIONS]\n\n"
        "Common:\n"
        "  -m, --mode        <rtsp|rtp>       Streaming mode        (default: rtsp)\n"
        "  -c, --codec       <h264|h265>       Codec format          (default: h264)\n"
        f"  -f, --fps         <FPS>             Framerate 1-120       (default: {DEFAULT_FPS})\n"
        "  -s, --source      <test|v4l2>       Video source          (default: test)\n"
        f"  -d, --device      <PATH>            V4L2 device path      (default: {DEFAULT_DEVICE})\n"
        "  -h, --help                          Show this help\n\n"
        "RTP mode:\n"
        f"  -H, --host        <IP>              Destination IP        (default: {DEFAULT_RTP_HOST})\n"
        f"  -p, --port        <PORT>            Destination port      (default: {DEFAULT_RTP_PORT})\n"
        f"  -w, --width       <W>               Frame width           (default: {DEFAULT_WIDTH})\n"
        f"  -e, --height      <H>               Frame height          (default: {DEFAULT_HEIGHT})\n"
        f"  -b, --bitrate     <KBPS>            Bitrate kbps          (default: {DEFAULT_BITRATE})\n\n"
        "RTSP mode:\n"
        f"      --rtsp-host   <IP>              Server bind address   (default: {DEFAULT_RTSP_HOST})\n"
        f"      --rtsp-port   <PORT>            Server port           (default: {DEFAULT_RTSP_PORT})\n\n"
        "Examples:\n"
        f"  {prog} --mode rtsp\n"
        f"  {prog} --mode rtsp --rtsp-host 0.0.0.0 --codec h265\n"
        f"  {prog} --mode rtsp --source v4l2 --device /dev/video0\n"
        f"  {prog} --mode rtp --host 192.168.1.100 --port 5000 --codec h265\n"
        f"  {prog} --mode rtp --source v4l2 --device /dev/video0 --width 1920 --height 1080\n\n"
    )


def banner(config: AppConfig) -> str:
    """Return the start-up banner for the given configuration."""
    mode = "RTP" if config.mode == StreamMode.RTP else "RTSP"
    return (
        "\n+--------------------------------------------+ \n"
        "|                                            |\n"
        "|     D A S H - B O A R D   S T A R T        |\n"
        "|                                            |\n"
        f"|      VERSION {SW_BUILD_VERSION}           \t     |\n"
        "|                                            |\n"
        f"|      MODE: {mode:<30} |\n"
        "+--------------------------------------------+\n\n"
    )


_SHORT_OPTIONS = {
    "m": "mode",
    "H": "host",
    "p": "port",
    "w": "width",
    "e": "height",
    "f": "fps",
    "b": "bitrate",
    "c": "codec",
    "s": "source",
    "d": "device",
    "h": "help",
}

_LONG_OPTIONS = (
    "mode",
    "host",
    "port",
    "width",
    "height",
    "fps",
    "bitrate",
    "codec",
    "source",
    "device",
    "rtsp-host",
    "rtsp-port",
    "help",
)

_FLAG_OPTIONS = frozenset({"help"})

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def _atoi(text: str) -> int:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else 0


def _warn(message: str) -> None:
    print(message, file=sys.stderr)


def _resolve_long(key: str, prog: str) -> str | None:
    if key in _LONG_OPTIONS:
        return key
    candidates = [name for name in _LONG_OPTIONS if name.startswith(key)]
    if len(candidates) == 1:
        return candidates[0]
    if candidates:
        _warn(f"{prog}: option '--{key}' is ambiguous")
    else:
        _warn(f"{prog}: unrecognized option '--{key}'")
    return None


def _scan(argv: Sequence[str], prog: str) -> Iterator[tuple[str, str | None]]:
    """Yield (option, value) pairs; bad options are reported and skipped."""
    tokens = iter(argv)
    for token in tokens:
        if token == "--":
            return
        if token.startswith("--"):
            key, has_value, inline = token[2:].partition("=")
            name = _resolve_long(key, prog)
            if name is None:
                continue
            if name in _FLAG_OPTIONS:
                if has_value:
                    _warn(f"{prog}: option '--{name}' doesn't allow an argument")
                    continue
                yield name, None
            elif has_value:
                yield name, inline
            else:
                value = next(tokens, None)
                if value is None:
                    _warn(f"{prog}: option '--{name}' requires an argument")
                    continue
                yield name, value
        elif token.startswith("-") and token != "-":
            rest = token[1:]
            while rest:
                letter, rest = rest[0], rest[1:]
                name = _SHORT_OPTIONS.get(letter)
                if name is None:
                    _warn(f"{prog}: invalid option -- '{letter}'")
                    continue
                if name in _FLAG_OPTIONS:
                    yield name, None
                    continue
                value = rest if rest else next(tokens, None)
                rest = ""
                if value is None:
                    _warn(f"{prog}: option requires an argument -- '{letter}'")
                    continue
                yield name, value
        # Operands are ignored.


def _ranged(label: str, value: str, low: int, high: int | None = None) -> int:
    number = _atoi(value)
    if number < low or (high is not None and number > high):
        suffix = f" ({low}-{high})" if high is not None else ""
        raise ConfigError(f"Invalid {label}: {number}{suffix}")
    return number


def _text(value: str) -> str:
    return value[:MAX_TEXT_LENGTH]


_APPLY: dict[str, Callable[[AppConfig, str], None]] = {
    "mode": lambda c, v: setattr(
        c, "mode", StreamMode.RTP if v.lower() == "rtp" else StreamMode.RTSP
    ),
    "host": lambda c, v: setattr(c, "host", _text(v)),
    "port": lambda c, v: setattr(c, "port", _ranged("port", v, 1024, 65535)),
    "width": lambda c, v: setattr(c, "width", _ranged("width", v, 1)),
    "height": lambda c, v: setattr(c, "height", _ranged("height", v, 1)),
    "fps": lambda c, v: setattr(c, "fps", _ranged("fps", v, 1, 120)),
    "bitrate": lambda c, v: setattr(c, "bitrate", _ranged("bitrate", v, 1)),
    "codec": lambda c, v: setattr(
        c, "codec", CodecType.H265 if v.lower() == "h265" else CodecType.H264
    ),
    "source": lambda c, v: setattr(
        c, "source", SourceType.V4L2 if v.lower() == "v4l2" else SourceType.TEST
    ),
    "device": lambda c, v: setattr(c, "device", _text(v)),
    "rtsp-host": lambda c, v: setattr(c, "rtsp_host", _text(v)),
    "rtsp-port": lambda c, v: setattr(
        c, "rtsp_port", _ranged("rtsp-port", v, 1024, 65535)
    ),
}


def parse_args(argv: Sequence[str] | None = None) -> AppConfig:
    """Build an AppConfig from command-line arguments (without the program name).

    Raises ConfigError for out-of-range values; prints the help text and
    raises SystemExit(0) for --help.
    """
    prog = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else DEFAULT_PROG
    args = list(sys.argv[1:] if argv is None else argv)
    config = AppConfig()
    for name, value in _scan(args, prog):
        if name == "help":
            print(usage(prog), end="")
            raise SystemExit(0)
        _APPLY[name](config, value)
    return config