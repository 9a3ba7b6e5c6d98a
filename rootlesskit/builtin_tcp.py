"""TCP forwarding of the builtin port driver's parent side."""

from __future__ import annotations

import errno
import ipaddress
import select
import socket
import sys
import threading
from typing import Callable, TextIO

from rootlesskit.builtin_msg import connect_to_child_with_retry
from rootlesskit.port import Spec

_COPY_BUFSIZE = 65536
_POLL_INTERVAL = 0.05
_RETRIES = 10


def _log(log_writer: TextIO | None, message: str) -> None:
    (log_writer or sys.stderr).write(message + "\n")


def _bind_address(proto: str, parent_ip: str) -> tuple[socket.AddressFamily, str, bool]:
    if parent_ip:
        ip = ipaddress.ip_address(parent_ip)
        if ip.version == 6 and ip.ipv4_mapped is not None and not proto.endswith("6"):
            ip = ip.ipv4_mapped
        if (proto.endswith("4") and ip.version != 4) or (proto.endswith("6") and ip.version != 6):
            raise OSError(errno.EAFNOSUPPORT, f"address {parent_ip}: not suitable for {proto}")
        family = socket.AF_INET if ip.version == 4 else socket.AF_INET6
        return family, str(ip), False
    if proto.endswith("4"):
        return socket.AF_INET, "0.0.0.0", False
    if proto.endswith("6"):
        return socket.AF_INET6, "::", False
    if socket.has_dualstack_ipv6():
        return socket.AF_INET6, "::", True
    return socket.AF_INET, "0.0.0.0", False


def _listen(spec: Spec) -> socket.socket:
    family, host, dualstack = _bind_address(spec.proto, spec.parent_ip)
    return socket.create_server(
        (host, spec.parent_port), family=family, dualstack_ipv6=dualstack
    )


def _copy(to: socket.socket, frm: socket.socket) -> None:
    try:
        while data := frm.recv(_COPY_BUFSIZE):
            to.sendall(data)
    except OSError:
        pass
    for sock, how in ((frm, socket.SHUT_RD), (to, socket.SHUT_WR)):
        try:
            sock.shutdown(how)
        except OSError:
            pass


def bicopy(x: socket.socket, y: socket.socket, quit: threading.Event) -> None:
    """Copy data both ways between ``x`` and ``y``, then close both.

    Returns when both directions reach end of stream, or when ``quit`` is set.
    """
    brokers = [
        threading.Thread(target=_copy, args=(x, y), daemon=True),
        threading.Thread(target=_copy, args=(y, x), daemon=True),
    ]
    for broker in brokers:
        broker.start()
    while any(b.is_alive() for b in brokers) and not quit.wait(_POLL_INTERVAL):
        pass
    for sock in (x, y):
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
    for broker in brokers:
        broker.join()
    x.close()
    y.close()


def _copy_conn_to_child(
    conn: socket.socket,
    socket_path: str,
    spec: Spec,
    quit: threading.Event,
    log_writer: TextIO | None,
) -> None:
    with conn:
        try:
            fd = connect_to_child_with_retry(socket_path, spec, _RETRIES)
            child = socket.socket(fileno=fd)
        except (OSError, RuntimeError, ValueError, EOFError) as exc:
            _log(log_writer, f"copyConnToChild: {exc}")
            return
        with child:
            bicopy(conn, child, quit)


def run(
    socket_path: str, spec: Spec, log_writer: TextIO | None = None
) -> Callable[[float | None], None]:
    """Listen on the spec's parent address and forward each connection to the child.

    Returns immediately with a ``stop(timeout=None)`` function. Calling it
    stops accepting, closes the forwarded connections and the listener, and
    raises TimeoutError if the listener is not closed within ``timeout``
    seconds, or the error from closing it.
    """
    try:
        listener = _listen(spec)
    except (OSError, ValueError) as exc:
        _log(log_writer, f"listen: {exc}")
        raise

    quit = threading.Event()
    stopped = threading.Event()
    close_errors: list[OSError] = []
    wake_r, wake_w = socket.socketpair()

    def serve() -> None:
        try:
            while True:
                try:
                    select.select([listener, wake_r], [], [])
                    if quit.is_set():
                        return
                    conn, _ = listener.accept()
                except (OSError, ValueError) as exc:
                    _log(log_writer, f"accept: {exc}")
                    return
                threading.Thread(
                    target=_copy_conn_to_child,
                    args=(conn, socket_path, spec, quit, log_writer),
                    daemon=True,
                ).start()
        finally:
            try:
                listener.close()
            except OSError as exc:
                close_errors.append(exc)
            wake_r.close()
            stopped.set()

    threading.Thread(target=serve, daemon=True).start()

    def stop(timeout: float | None = None) -> None:
        quit.set()
        try:
            wake_w.send(b"\0")
        except OSError:
            pass
        if not stopped.wait(timeout):
            raise TimeoutError("timed out while waiting for the TCP listener to close")
        wake_w.close()
        if close_errors:
            raise close_errors[0]

    return stop