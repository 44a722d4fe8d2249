import queue
import socket
import threading

import pytest

from streamlink_daemon.protocol import ProtocolError, recv_message, send_message
from streamlink_daemon.server import (
    FD_TYPE_NONE,
    SOCK_MAX,
    CommandId,
    ControlCommand,
    ControlWorker,
    NetworkServer,
    ObjectTable,
    build_command,
    parse_command,
)


def test_build_command_wire_bytes():
    assert build_command("STRT") == b"STRT\x00\x00\x00\x00"


def test_command_ids_match_module_ids():
    assert parse_command(build_command("STRT")).command_id == 1001
    assert parse_command(build_command("STOP")).command_id == 1002
    assert parse_command(build_command("CLSE")).command_id == 1003
    assert parse_command(build_command("LIVE")).command_id == 1004
    recs = parse_command(build_command("RECS", (0).to_bytes(4, "little")))
    assert recs.command_id == 1005


@pytest.mark.parametrize(
    "name,expected",
    [
        ("STRT", CommandId.START),
        ("STOP", CommandId.STOP),
        ("CLSE", CommandId.CLOSE),
        ("LIVE", CommandId.CTRL_PARAMS),
    ],
)
def test_parse_known_commands(name, expected):
    command = parse_command(build_command(name))
    assert command.command_id is expected
    assert command.name == name


def test_recs_status_round_trip():
    command = parse_command(build_command("RECS", (5).to_bytes(4, "little")))
    assert command.command_id is CommandId.REC_STATUS
    assert command.status == 5


def test_live_params_round_trip():
    command = parse_command(build_command("LIVE", b"abc"))
    assert command.params == b"abc"


def test_unknown_command_is_ignored():
    assert parse_command(build_command("AESP")) is None


def test_truncated_command_rejected():
    with pytest.raises(ProtocolError):
        parse_command(b"STR")


def test_build_command_rejects_bad_name():
    with pytest.raises(ValueError):
        build_command("START")


def test_object_table_add_and_remove_moves_last():
    table = ObjectTable()
    assert table.add(10, 1) == 1
    assert table.add(11, 1) == 2
    assert table.add(12, 1) == 3
    assert table.remove(10) == 2
    assert list(table) == [12, 11]


def test_object_table_capacity():
    table = ObjectTable(capacity=2)
    table.add(1, 1)
    table.add(2, 1)
    with pytest.raises(OverflowError):
        table.add(3, 1)


def test_object_table_kinds():
    table = ObjectTable()
    table.add(5, 1, kind=0)
    table.set_kind(5, 1)
    assert table.kind_of(5) == 1
    assert table.kind_of(99) == FD_TYPE_NONE
    with pytest.raises(KeyError):
        table.set_kind(99, 1)
    with pytest.raises(KeyError):
        table.remove(99)


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    b.settimeout(5)
    yield a, b
    a.close()
    b.close()


def test_control_worker_dispatches_commands(pair):
    server_side, client_side = pair
    received = queue.Queue()
    worker = ControlWorker(server_side, on_command=received.put)
    worker.start()
    try:
        send_message(client_side, 0, 0, build_command("STOP"))
        command = received.get(timeout=5)
    finally:
        worker.stop()
        worker.join(5)
    assert command == ControlCommand("STOP", CommandId.STOP, 0, b"")


def test_control_worker_sends_live_params(pair):
    server_side, client_side = pair
    outgoing = queue.Queue()
    worker = ControlWorker(server_side, outgoing=outgoing)
    outgoing.put((1, b"abc"))
    worker.start()
    try:
        packet = recv_message(client_side)
    finally:
        worker.stop()
        worker.join(5)
    command = parse_command(packet.payload)
    assert command.name == "LIVE"
    assert command.params == b"abc"


def test_address_status_unknown_before_serving():
    assert NetworkServer(port=0).address_status() is None


def test_open_sockets_creates_all_listeners():
    server = NetworkServer(port=0, host="127.0.0.1")
    server.open_sockets()
    try:
        ports = server.listening_ports
        assert len(ports) == SOCK_MAX
        assert len(set(ports)) == SOCK_MAX
    finally:
        server.close_clients()
        server._close_listeners()


def test_serve_accepts_control_connection():
    received = queue.Queue()
    server = NetworkServer(port=0, host="127.0.0.1", device="none0", on_command=received.put)
    server.open_sockets()
    control_port = server.listening_ports[0]
    thread = threading.Thread(target=server.serve, daemon=True)
    thread.start()
    try:
        with socket.create_connection(("127.0.0.1", control_port), timeout=5) as client:
            send_message(client, 0, 0, build_command("CLSE"))
            command = received.get(timeout=5)
    finally:
        server.stop()
        thread.join(5)
    assert command.command_id is CommandId.CLOSE
    assert not thread.is_alive()