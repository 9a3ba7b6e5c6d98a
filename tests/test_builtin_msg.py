import os
import socket
import tempfile
import threading

import pytest

from rootlesskit.builtin_msg import (
    REQUEST_TYPE_CONNECT,
    REQUEST_TYPE_INIT,
    Reply,
    Request,
    connect_to_child,
    connect_to_child_with_retry,
    connect_to_child_with_socket_path,
    initiate,
    read_message,
    write_message,
)
from rootlesskit.port import Spec


def _start(target):
    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread


def test_write_message_frames_json_with_le_length():
    a, b = socket.socketpair()
    with a, b:
        sent = write_message(a, None)
        assert b.recv(64) == b"\x04\x00\x00\x00null"
        assert sent == 8


def test_round_trip_request():
    a, b = socket.socketpair()
    with a, b:
        req = Request(type=REQUEST_TYPE_CONNECT, proto="tcp6", ip="::1", port=8080)
        write_message(a, req)
        data = read_message(b)
        assert data == {"Type": "connect", "Proto": "tcp6", "IP": "::1", "Port": 8080}
        assert Request.from_dict(data) == req


def test_round_trip_reply():
    a, b = socket.socketpair()
    with a, b:
        write_message(a, Reply(error="boom"))
        assert Reply.from_dict(read_message(b)) == Reply(error="boom")


def test_reply_from_null_is_empty():
    assert Reply.from_dict(None) == Reply()


def test_request_from_non_object_is_rejected():
    with pytest.raises(ValueError):
        Request.from_dict([1, 2])


def test_read_message_on_truncated_stream():
    a, b = socket.socketpair()
    with b:
        a.sendall(b"\x05\x00")
        a.close()
        with pytest.raises(EOFError):
            read_message(b)


def test_initiate_sends_init_and_reads_reply():
    a, b = socket.socketpair()
    seen = {}

    def server():
        seen["req"] = read_message(b)
        write_message(b, None)
        b.close()

    thread = _start(server)
    with a:
        assert initiate(a) == Reply()
    thread.join(5)
    assert seen["req"]["Type"] == REQUEST_TYPE_INIT


def test_connect_to_child_receives_fd():
    a, b = socket.socketpair()
    r, w = os.pipe()
    seen = {}

    def server():
        seen["req"] = read_message(b)
        socket.send_fds(b, [b"dummy"], [w])
        b.close()

    thread = _start(server)
    with a:
        fd = connect_to_child(a, Spec(proto="udp", child_port=53, child_ip="10.0.2.3"))
    thread.join(5)
    os.write(fd, b"x")
    os.close(fd)
    os.close(w)
    assert os.read(r, 1) == b"x"
    os.close(r)
    assert seen["req"] == {"Type": "connect", "Proto": "udp", "IP": "10.0.2.3", "Port": 53}


def test_connect_to_child_reports_error_reply():
    a, b = socket.socketpair()

    def server():
        read_message(b)
        write_message(b, Reply(error="boom"))
        b.close()

    thread = _start(server)
    with a, pytest.raises(RuntimeError, match="boom"):
        connect_to_child(a, Spec(proto="tcp", child_port=80))
    thread.join(5)


def test_connect_to_child_with_socket_path():
    with tempfile.TemporaryDirectory(prefix="rkm") as d:
        path = os.path.join(d, "s.sock")
        r, w = os.pipe()
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        listener.bind(path)
        listener.listen(1)
        seen = {}

        def server():
            conn, _ = listener.accept()
            with conn:
                seen["req"] = Request.from_dict(read_message(conn))
                socket.send_fds(conn, [b"dummy"], [w])

        thread = _start(server)
        fd = connect_to_child_with_socket_path(path, Spec(proto="tcp", child_port=80))
        thread.join(5)
        listener.close()
        os.write(fd, b"y")
        os.close(fd)
        os.close(w)
        assert os.read(r, 1) == b"y"
        os.close(r)
        assert seen["req"] == Request(type="connect", proto="tcp", port=80)


def test_connect_with_retry_raises_last_error():
    with tempfile.TemporaryDirectory(prefix="rkm") as d:
        missing = os.path.join(d, "missing.sock")
        with pytest.raises(FileNotFoundError):
            connect_to_child_with_retry(missing, Spec(proto="tcp", child_port=80), 2)


def test_connect_with_no_retries():
    with pytest.raises(RuntimeError, match="reached max retry"):
        connect_to_child_with_retry("/nonexistent", Spec(proto="tcp", child_port=80), 0)