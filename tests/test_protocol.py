import select
import socket

import pytest

from streamlink_daemon.protocol import (
    ECODE,
    MAX_PACKET_SLICE,
    MAX_STREAM_SLICE,
    PACKET_PARAMS_SIZE,
    SCODE,
    Packet,
    ProtocolError,
    create_socket,
    decode_packet,
    encode_packets,
    find_first,
    parse_hex,
    recv_exact,
    recv_message,
    send_all,
    send_message,
)


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    yield a, b
    a.close()
    b.close()


def test_single_packet_wire_bytes():
    packets = encode_packets(0, 0, b"abcd")
    expected = (
        b"STA\x00" + b"01c\x00" + b"\x00" * 8 + b"\x04\x00\x00\x00" + b"abcd" + b"END\x00"
    )
    assert packets == [expected]


def test_packet_framing_codes():
    (packet,) = encode_packets(1, 2, b"xyz")
    assert packet.startswith(SCODE)
    assert packet.endswith(ECODE)
    assert len(packet) == PACKET_PARAMS_SIZE + 3


def test_round_trip_fields():
    resol = (1920 << 16) | 1080
    mode = (2 << 8) | 1
    (packet,) = encode_packets(resol, mode, b"frame-data")
    decoded = decode_packet(packet)
    assert decoded == Packet(resol, mode, 0, len(b"frame-data"), b"frame-data")
    assert decoded.width == 1920
    assert decoded.height == 1080
    assert decoded.channel == 2
    assert decoded.frame_type == 1
    assert decoded.wire_size == len(packet)


def test_large_data_is_split():
    data = bytes(range(256)) * ((MAX_STREAM_SLICE + 10) // 256 + 1)
    data = data[: MAX_STREAM_SLICE + 10]
    packets = encode_packets(7, 3, data)
    assert len(packets) == 2
    assert len(packets[0]) == MAX_PACKET_SLICE
    decoded = [decode_packet(p) for p in packets]
    assert [d.sequence for d in decoded] == [0, 1]
    assert all(d.total_size == len(data) for d in decoded)
    assert b"".join(d.payload for d in decoded) == data


def test_empty_data_rejected():
    with pytest.raises(ProtocolError):
        encode_packets(0, 0, b"")


def test_decode_bad_start_code():
    (packet,) = encode_packets(0, 0, b"abc")
    with pytest.raises(ProtocolError, match="start code"):
        decode_packet(b"X" + packet[1:])


def test_decode_bad_end_code():
    (packet,) = encode_packets(0, 0, b"abc")
    with pytest.raises(ProtocolError, match="end code"):
        decode_packet(packet[:-4] + b"FIN\x00")


def test_decode_truncated():
    (packet,) = encode_packets(0, 0, b"abcdef")
    with pytest.raises(ProtocolError):
        decode_packet(packet[:-8])


def test_decode_invalid_size_field():
    (packet,) = encode_packets(0, 0, b"abc")
    broken = packet[:4] + b"zz\x00\x00" + packet[8:]
    with pytest.raises(ProtocolError, match="packet size"):
        decode_packet(broken)


def test_parse_hex_nul_padded():
    assert parse_hex(b"01c\x00") == 0x1C


@pytest.mark.parametrize("number", [0, 24, 255, 4095, MAX_PACKET_SLICE])
def test_parse_hex_round_trip(number):
    assert parse_hex(f"{number:03x}") == number


@pytest.mark.parametrize("text", ["0x1c", "g123", " 12"])
def test_parse_hex_rejects_bad_characters(text):
    with pytest.raises(ProtocolError):
        parse_hex(text)


def test_find_first_locates_occurrences():
    haystack = b"--STA--STA"
    first = find_first(haystack, b"STA", 0)
    assert haystack[first:first + 3] == b"STA"
    assert b"STA" not in haystack[: first + 2]
    second = find_first(haystack, b"STA", first + 1)
    assert second > first
    assert haystack[second:second + 3] == b"STA"
    assert find_first(haystack, b"STA", second + 1) == -1


def test_find_first_out_of_range():
    assert find_first(b"abc", b"a", 10) == -1
    assert find_first(b"ab", b"abc", 0) == -1


def test_find_first_empty_needle():
    with pytest.raises(ValueError):
        find_first(b"abc", b"", 0)


def test_send_all_and_recv_exact(pair):
    a, b = pair
    assert send_all(a, b"hello") == 5
    assert recv_exact(b, 5) == b"hello"


def test_recv_exact_returns_short_read(pair):
    a, b = pair
    b.setblocking(False)
    a.sendall(b"abc")
    assert recv_exact(b, 10, 5) == b"abc"


def test_message_round_trip_over_socket(pair):
    a, b = pair
    send_message(a, 0x00100020, 0x0102, b"payload")
    packet = recv_message(b)
    assert packet.payload == b"payload"
    assert packet.resol_type == 0x00100020
    assert packet.mode_type == 0x0102
    assert packet.total_size == len(b"payload")


def test_recv_message_garbage(pair):
    a, b = pair
    a.sendall(b"XXXXYYYY")
    with pytest.raises(ProtocolError, match="start code"):
        recv_message(b)


def test_recv_message_truncated(pair):
    a, b = pair
    (packet,) = encode_packets(0, 0, b"abcdef")
    a.sendall(packet[:10])
    a.shutdown(socket.SHUT_WR)
    with pytest.raises(ProtocolError):
        recv_message(b)


def test_create_socket_accepts_connections():
    server = create_socket(0, "127.0.0.1")
    try:
        assert server.getblocking() is False
        port = server.getsockname()[1]
        client = socket.create_connection(("127.0.0.1", port))
        try:
            readable, _, _ = select.select([server], [], [], 2.0)
            assert readable == [server]
            conn, _ = server.accept()
            try:
                send_message(client, 1, 2, b"ping")
                assert recv_message(conn).payload == b"ping"
            finally:
                conn.close()
        finally:
            client.close()
    finally:
        server.close()