"""Child side of the builtin port driver.

It listens on a UNIX socket inside the child's namespaces, dials the
requested address there, and hands the connected socket to the parent.
"""

from __future__ import annotations

import ipaddress
import os
import select
import socket
import threading
from contextlib import contextmanager
from typing import Iterator, Mapping, TextIO

from rootlesskit.builtin_msg import (
    CHILD_READY_PIPE_PATH,
    REQUEST_TYPE_CONNECT,
    REQUEST_TYPE_INIT,
    SOCKET_PATH,
    Reply,
    Request,
    read_message,
    write_message,
)
from rootlesskit.port import ChildDriver

_PROTOS = frozenset({"tcp", "tcp4", "tcp6", "udp", "udp4", "udp6"})


@contextmanager
def _in_netns(path: str) -> Iterator[None]:
    """Run the calling thread inside the network namespace at ``path``."""
    with open("/proc/thread-self/ns/net", "rb") as original, open(path, "rb") as target:
        os.setns(target.fileno(), os.CLONE_NEWNET)
        try:
            yield
        finally:
            os.setns(original.fileno(), os.CLONE_NEWNET)


class BuiltinChildDriver(ChildDriver):
    """Serves connect requests from the builtin parent driver."""

    def __init__(self, log_writer: TextIO | None = None) -> None:
        self.log_writer = log_writer

    def run_child_driver(
        self,
        opaque: Mapping[str, str] | None,
        quit: threading.Event,
        detached_netns_path: str,
    ) -> None:
        opaque = opaque or {}
        socket_path = opaque.get(SOCKET_PATH, "")
        if not socket_path:
            raise ValueError("socket path not set")
        ready_pipe_path = opaque.get(CHILD_READY_PIPE_PATH, "")
        if not ready_pipe_path:
            raise ValueError("child ready pipe path not set")

        ready_fd = os.open(ready_pipe_path, os.O_WRONLY)
        try:
            listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                listener.bind(socket_path)
                listener.listen()
            except BaseException:
                listener.close()
                raise
        finally:
            # Nothing is written: closing the pipe tells the parent we are listening.
            os.close(ready_fd)

        wake_r, wake_w = socket.socketpair()

        def watch() -> None:
            quit.wait()
            try:
                wake_w.send(b"\0")
            except OSError:
                pass

        threading.Thread(target=watch, daemon=True).start()
        try:
            while True:
                readable, _, _ = select.select([listener, wake_r], [], [])
                if wake_r in readable:
                    return
                conn, _ = listener.accept()
                threading.Thread(
                    target=self._serve, args=(conn, detached_netns_path), daemon=True
                ).start()
        finally:
            listener.close()
            wake_r.close()
            wake_w.close()

    def _serve(self, conn: socket.socket, detached_netns_path: str) -> None:
        try:
            self._routine(conn, detached_netns_path)
        except Exception as exc:
            try:
                write_message(conn, Reply(error=str(exc)))
            except OSError:
                pass
        finally:
            conn.close()

    def _routine(self, conn: socket.socket, detached_netns_path: str) -> None:
        request = Request.from_dict(read_message(conn))
        if request.type == REQUEST_TYPE_INIT:
            write_message(conn, None)
        elif request.type == REQUEST_TYPE_CONNECT:
            if detached_netns_path:
                with _in_netns(detached_netns_path):
                    self._handle_connect(conn, request)
            else:
                self._handle_connect(conn, request)
        else:
            raise ValueError(f"unknown request type {request.type!r}")

    def _handle_connect(self, conn: socket.socket, request: Request) -> None:
        if request.proto not in _PROTOS:
            raise ValueError(f"unknown proto: {request.proto!r}")
        # The dial protocol does not need the "4" or "6" suffix.
        dial_proto = request.proto.removesuffix("6").removesuffix("4")
        text = request.ip or "127.0.0.1"
        try:
            ip = ipaddress.ip_address(text)
        except ValueError:
            raise ValueError(f"invalid IP: {text!r}") from None
        if ip.version == 6 and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        family = socket.AF_INET if ip.version == 4 else socket.AF_INET6
        kind = socket.SOCK_STREAM if dial_proto == "tcp" else socket.SOCK_DGRAM
        with socket.socket(family, kind) as target:
            target.connect((str(ip), request.port))
            socket.send_fds(conn, [b"dummy"], [target.fileno()])


def new_child_driver(log_writer: TextIO | None = None) -> BuiltinChildDriver:
    """Create the builtin child driver."""
    return BuiltinChildDriver(log_writer)