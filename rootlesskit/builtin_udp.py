"""UDP forwarding of the builtin port driver's parent side."""

from __future__ import annotations

import errno
import ipaddress
import socket
import threading
from typing import Callable, TextIO

from rootlesskit.builtin_msg import connect_to_child_with_retry
from rootlesskit.port import Spec
from rootlesskit.udpproxy import UDPProxy

_RETRIES = 10


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
    if proto.endswith("6") or socket.has_ipv6:
        return socket.AF_INET6, "::", not proto.endswith("6")
    return socket.AF_INET, "0.0.0.0", False


def _listen(spec: Spec) -> socket.socket:
    family, host, dualstack = _bind_address(spec.proto, spec.parent_ip)
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        if dualstack:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        sock.bind((host, spec.parent_port))
    except BaseException:
        sock.close()
        raise
    return sock


def run(
    socket_path: str, spec: Spec, log_writer: TextIO | None = None
) -> Callable[[float | None], None]:
    """Listen on the spec's parent address and proxy datagrams to the child.

    Returns immediately with a ``stop(timeout=None)`` function that closes the
    proxy and waits up to ``timeout`` seconds for it to finish.
    """
    listener = _listen(spec)

    def backend_dial() -> socket.socket:
        fd = connect_to_child_with_retry(socket_path, spec, _RETRIES)
        conn = socket.socket(fileno=fd)
        if conn.type != socket.SOCK_DGRAM:
            conn.close()
            raise RuntimeError(f"received socket is not a UDP socket: {conn!r}")
        return conn

    proxy = UDPProxy(listener, backend_dial, log_writer)
    runner = threading.Thread(target=proxy.run, daemon=True)
    runner.start()

    def stop(timeout: float | None = None) -> None:
        proxy.close()
        runner.join(timeout)

    return stop