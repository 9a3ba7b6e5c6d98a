import io
import socket
import threading
import time

import pytest

from rootlesskit.udpproxy import UDPProxy, conn_track_key


def test_key_ipv4():
    assert conn_track_key(("127.0.0.1", 5000)) == (0, 0x7F000001, 5000)


def test_key_ipv6():
    assert conn_track_key(("::1", 53, 0, 0)) == (0, 1, 53)
    key = conn_track_key(("2001:db8::1", 53, 0, 0))
    assert key.ip_high == 0x20010DB800000000
    assert key.ip_low == 1


def test_keys_distinguish_addresses():
    a = conn_track_key(("10.0.0.1", 1000))
    assert a == conn_track_key(("10.0.0.1", 1000))
    assert len({a, conn_track_key(("10.0.0.2", 1000)), conn_track_key(("10.0.0.1", 1001))}) == 3


def test_key_rejects_non_ip():
    with pytest.raises(ValueError):
        conn_track_key(("not-an-ip", 1))


@pytest.fixture
def echo_addr():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(0.1)
    stop = threading.Event()

    def serve():
        while not stop.is_set():
            try:
                data, addr = sock.recvfrom(65535)
            except TimeoutError:
                continue
            except OSError:
                return
            sock.sendto(b"echo:" + data, addr)

    t = threading.Thread(target=serve, daemon=True)
    t.start()
    yield sock.getsockname()
    stop.set()
    t.join(5)
    sock.close()


def _start_proxy(backend_addr, dials, **kwargs):
    listener = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    listener.bind(("127.0.0.1", 0))

    def dial():
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(backend_addr)
        dials.append(s)
        return s

    proxy = UDPProxy(listener, dial, **kwargs)
    t = threading.Thread(target=proxy.run, daemon=True)
    t.start()
    return proxy, t, listener.getsockname()


def _client():
    c = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    c.settimeout(5)
    return c


def test_round_trip_through_proxy(echo_addr):
    dials = []
    proxy, t, addr = _start_proxy(echo_addr, dials)
    client = _client()
    try:
        client.sendto(b"ping", addr)
        data1, _ = client.recvfrom(65535)
        client.sendto(b"pong", addr)
        data2, _ = client.recvfrom(65535)
    finally:
        client.close()
        proxy.close()
        t.join(5)
    assert data1 == b"echo:ping"
    assert data2 == b"echo:pong"
    assert len(dials) == 1
    assert not t.is_alive()


def test_each_client_gets_its_own_backend(echo_addr):
    dials = []
    proxy, t, addr = _start_proxy(echo_addr, dials)
    a, b = _client(), _client()
    try:
        a.sendto(b"a", addr)
        b.sendto(b"b", addr)
        got_a, _ = a.recvfrom(65535)
        got_b, _ = b.recvfrom(65535)
    finally:
        a.close()
        b.close()
        proxy.close()
        t.join(5)
    assert (got_a, got_b) == (b"echo:a", b"echo:b")
    assert len(dials) == 2


def test_idle_backend_expires(echo_addr):
    dials = []
    proxy, t, addr = _start_proxy(echo_addr, dials, conn_track_timeout=0.2)
    client = _client()
    try:
        client.sendto(b"one", addr)
        first, _ = client.recvfrom(65535)
        time.sleep(0.8)
        client.sendto(b"two", addr)
        second, _ = client.recvfrom(65535)
    finally:
        client.close()
        proxy.close()
        t.join(5)
    assert (first, second) == (b"echo:one", b"echo:two")
    assert len(dials) == 2


def test_dial_failure_is_logged():
    listener = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    listener.bind(("127.0.0.1", 0))
    addr = listener.getsockname()
    log = io.StringIO()

    def dial():
        raise ConnectionError("backend down")

    proxy = UDPProxy(listener, dial, log_writer=log)
    t = threading.Thread(target=proxy.run, daemon=True)
    t.start()
    client = _client()
    try:
        client.sendto(b"x", addr)
        deadline = time.monotonic() + 5
        while "backend down" not in log.getvalue() and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        client.close()
        proxy.close()
        t.join(5)
    assert "Can't proxy a datagram to udp: backend down" in log.getvalue()
    assert "Stopping proxy" not in log.getvalue()
    assert not t.is_alive()


def test_close_stops_idle_proxy():
    listener = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    listener.bind(("127.0.0.1", 0))
    proxy = UDPProxy(listener, lambda: None, log_writer=io.StringIO())
    t = threading.Thread(target=proxy.run, daemon=True)
    t.start()
    proxy.close()
    t.join(5)
    assert not t.is_alive()
    assert listener.fileno() == -1