"""A UDP proxy that tracks one backend connection per client address."""

from __future__ import annotations

import ipaddress
import select
import socket
import sys
import threading
import time
from typing import Any, Callable, NamedTuple, TextIO

UDP_CONN_TRACK_TIMEOUT = 90.0
"""Seconds a client's backend connection is kept without traffic."""

UDP_BUF_SIZE = 65507
"""Largest datagram the proxy handles."""

_LOW_MASK = (1 << 64) - 1


class ConnTrackKey(NamedTuple):
    """A client address split into hashable parts."""

    ip_high: int
    ip_low: int
    port: int


def conn_track_key(addr: tuple[Any, ...]) -> ConnTrackKey:
    """Turn a socket address ``(host, port, ...)`` into a connection tracking key."""
    host, port = addr[0], addr[1]
    ip = ipaddress.ip_address(str(host).split("%", 1)[0])
    value = int(ip)
    if ip.version == 4:
        return ConnTrackKey(0, value, port)
    return ConnTrackKey(value >> 64, value & _LOW_MASK, port)


class UDPProxy:
    """Forward datagrams from ``listener`` to backends made by ``backend_dial``.

    Each client address gets its own backend socket; replies from it go back
    to that client. A backend socket idle for ``conn_track_timeout`` seconds
    is closed.
    """

    def __init__(
        self,
        listener: socket.socket,
        backend_dial: Callable[[], socket.socket],
        log_writer: TextIO | None = None,
        conn_track_timeout: float = UDP_CONN_TRACK_TIMEOUT,
    ) -> None:
        self.listener = listener
        self.backend_dial = backend_dial
        self.log_writer = log_writer
        self.conn_track_timeout = conn_track_timeout
        self._table: dict[ConnTrackKey, socket.socket] = {}
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._wake_r, self._wake_w = socket.socketpair()

    def _log(self, message: str) -> None:
        (self.log_writer or sys.stderr).write(message + "\n")

    def _reply_loop(
        self, proxy_conn: socket.socket, client_addr: tuple[Any, ...], key: ConnTrackKey
    ) -> None:
        try:
            while True:
                deadline = time.monotonic() + self.conn_track_timeout
                while True:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return
                    readable, _, _ = select.select([proxy_conn, self._wake_r], [], [], remaining)
                    if self._closed.is_set() or not readable:
                        return
                    try:
                        data = proxy_conn.recv(UDP_BUF_SIZE)
                    except ConnectionRefusedError:
                        # The last write found nothing listening; keep waiting.
                        continue
                    break
                self.listener.sendto(data, client_addr)
        except (OSError, ValueError):
            return
        finally:
            with self._lock:
                if self._table.get(key) is proxy_conn:
                    del self._table[key]
            proxy_conn.close()

    def run(self) -> None:
        """Forward traffic until :meth:`close` is called or the listener fails."""
        while True:
            try:
                select.select([self.listener, self._wake_r], [], [])
                if self._closed.is_set():
                    break
                data, client = self.listener.recvfrom(UDP_BUF_SIZE)
            except (OSError, ValueError) as exc:
                if not self._closed.is_set():
                    self._log(f"Stopping proxy on udp: {exc}")
                break

            key = conn_track_key(client)
            with self._lock:
                conn = self._table.get(key)
                if conn is None:
                    try:
                        conn = self.backend_dial()
                    except Exception as exc:
                        self._log(f"Can't proxy a datagram to udp: {exc}")
                        continue
                    self._table[key] = conn
                    threading.Thread(
                        target=self._reply_loop, args=(conn, client, key), daemon=True
                    ).start()
            try:
                conn.send(data)
            except OSError as exc:
                self._log(f"Can't proxy a datagram to udp: {exc}")

    def close(self) -> None:
        """Stop forwarding and close the listener and every backend socket."""
        self._closed.set()
        try:
            self._wake_w.send(b"\0")
        except OSError:
            pass
        self.listener.close()
        with self._lock:
            for conn in self._table.values():
                conn.close()