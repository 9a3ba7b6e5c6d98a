"""Parent side of the builtin port driver.

The parent listens on the host ports itself. For each new connection or UDP
client it asks the child driver for a socket dialled inside the child's
namespaces and copies the traffic between the two.
"""

from __future__ import annotations

import errno
import os
import sys
import threading
from typing import Callable, TextIO

from rootlesskit import builtin_tcp, builtin_udp
from rootlesskit.builtin_msg import CHILD_READY_PIPE_PATH, SOCKET_PATH, initiate
from rootlesskit.port import ChildContext, ParentDriver, PortDriverInfo, Spec, Status
from rootlesskit.portutil import validate_port_spec

_SOCKET_NAME = ".bp.sock"
_READY_PIPE_NAME = ".bp-ready.pipe"
_UNPRIVILEGED_PORT_START_PATH = "/proc/sys/net/ipv4/ip_unprivileged_port_start"
_REMOVE_TIMEOUT = 5.0

Stopper = Callable[[float | None], None]


def is_eperm(err: BaseException) -> bool:
    """Tell whether ``err`` is a permission error, by errno or by its message."""
    if isinstance(err, OSError) and err.errno == errno.EPERM:
        return True
    return "permission denied" in str(err).lower()


def _unprivileged_port_start() -> int | None:
    try:
        with open(_UNPRIVILEGED_PORT_START_PATH, encoding="utf-8") as f:
            return int(f.read().strip())
    except (OSError, ValueError):
        return None


def annotate_eperm(orig_err: BaseException, spec: Spec) -> BaseException:
    """Explain a permission error caused by binding a privileged port.

    Returns ``orig_err`` itself when the error is unrelated to
    net.ipv4.ip_unprivileged_port_start, or that value cannot be read.
    """
    start = _unprivileged_port_start()
    if start is None or spec.parent_port >= start:
        return orig_err
    text = (
        f"cannot expose privileged port {spec.parent_port}, you can add "
        f"'net.ipv4.ip_unprivileged_port_start={spec.parent_port}' to /etc/sysctl.conf "
        f"(currently {start})"
    )
    program = os.path.basename(sys.argv[0]) if sys.argv else ""
    if program == "rootlesskit":
        # Only meaningful when the parent driver runs outside the child user namespace.
        text += ", or set CAP_NET_BIND_SERVICE on rootlesskit binary"
    text += f", or choose a larger port number (>= {start})"
    annotated = PermissionError(f"{text}: {orig_err}")
    annotated.__cause__ = orig_err
    return annotated


class BuiltinParentDriver(ParentDriver):
    """Parent driver that forwards host ports to the builtin child driver."""

    def __init__(
        self, log_writer: TextIO | None, socket_path: str, child_ready_pipe_path: str
    ) -> None:
        self.log_writer = log_writer
        self.socket_path = socket_path
        self.child_ready_pipe_path = child_ready_pipe_path
        self._lock = threading.Lock()
        self._ports: dict[int, Status] = {}
        self._stoppers: dict[int, Stopper] = {}
        self._next_id = 1

    def info(self) -> PortDriverInfo:
        return PortDriverInfo(
            driver="builtin",
            protos=["tcp", "tcp4", "tcp6", "udp", "udp4", "udp6"],
            disallow_loopback_child_ip=False,
        )

    def opaque_for_child(self) -> dict[str, str]:
        return {
            SOCKET_PATH: self.socket_path,
            CHILD_READY_PIPE_PATH: self.child_ready_pipe_path,
        }

    def run_parent_driver(
        self,
        init_complete: threading.Event,
        quit: threading.Event,
        cctx: ChildContext | None,
    ) -> None:
        # The child closes its end of the pipe once its socket is listening.
        with open(self.child_ready_pipe_path, "rb") as ready:
            ready.read()
        import socket

        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as conn:
            conn.connect(self.socket_path)
            initiate(conn)
        init_complete.set()
        quit.wait()

    def add_port(self, spec: Spec) -> Status:
        with self._lock:
            validate_port_spec(spec, self._ports)
        if spec.proto in ("tcp", "tcp4", "tcp6"):
            runner = builtin_tcp.run
        elif spec.proto in ("udp", "udp4", "udp6"):
            runner = builtin_udp.run
        else:
            raise RuntimeError("spec was not validated?")
        try:
            stop = runner(self.socket_path, spec, self.log_writer)
        except OSError as exc:
            if is_eperm(exc):
                annotated = annotate_eperm(exc, spec)
                if annotated is not exc:
                    raise annotated from exc
            raise
        with self._lock:
            status = Status(id=self._next_id, spec=spec)
            self._ports[status.id] = status
            self._stoppers[status.id] = stop
            self._next_id += 1
        return status

    def list_ports(self) -> list[Status]:
        with self._lock:
            return list(self._ports.values())

    def remove_port(self, port_id: int) -> None:
        with self._lock:
            stop = self._stoppers.get(port_id)
            if stop is None:
                raise LookupError(f"unknown id: {port_id}")
            try:
                stop(_REMOVE_TIMEOUT)
            finally:
                del self._stoppers[port_id]
                self._ports.pop(port_id, None)


def _remove_all(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        import shutil

        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.remove(path)


def new_parent_driver(log_writer: TextIO | None, state_dir: str) -> BuiltinParentDriver:
    """Create the builtin parent driver, making its ready pipe in ``state_dir``."""
    socket_path = os.path.join(state_dir, _SOCKET_NAME)
    ready_pipe_path = os.path.join(state_dir, _READY_PIPE_NAME)
    # A crashed earlier instance may have left the pipe behind.
    try:
        _remove_all(ready_pipe_path)
    except OSError as exc:
        raise OSError(exc.errno, f"cannot remove {ready_pipe_path}: {exc}") from exc
    try:
        os.mkfifo(ready_pipe_path, 0o600)
    except OSError as exc:
        raise OSError(exc.errno, f"cannot mkfifo {ready_pipe_path}: {exc}") from exc
    return BuiltinParentDriver(log_writer, socket_path, ready_pipe_path)