"""Messages between the builtin port driver's parent and child.

Requests and replies are JSON documents, each preceded by its length as a
little-endian uint32. A reply to a connect request carries the connected
socket as an SCM_RIGHTS file descriptor.
"""

from __future__ import annotations

import array
import json
import socket
import struct
import time
from dataclasses import dataclass
from typing import Any

from rootlesskit.port import Spec

# Keys of the opaque map the parent driver hands to the child driver.
SOCKET_PATH = "builtin.socketpath"
CHILD_READY_PIPE_PATH = "builtin.readypipepath"

REQUEST_TYPE_INIT = "init"
REQUEST_TYPE_CONNECT = "connect"

_HEADER = struct.Struct("<I")
_FD_SIZE = array.array("i").itemsize
_REPLY_BUFSIZE = 4096


@dataclass(frozen=True)
class Request:
    """A request from the parent: ``init`` or ``connect``."""

    type: str
    proto: str = ""
    ip: str = ""
    port: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form."""
        return {"Type": self.type, "Proto": self.proto, "IP": self.ip, "Port": self.port}

    @classmethod
    def from_dict(cls, data: Any) -> Request:
        """Build a request from its JSON form."""
        if not isinstance(data, dict):
            raise ValueError(f"unexpected request: {data!r}")
        return cls(
            type=str(data.get("Type", "")),
            proto=str(data.get("Proto", "")),
            ip=str(data.get("IP", "")),
            port=int(data.get("Port", 0)),
        )


@dataclass(frozen=True)
class Reply:
    """A reply from the child; ``error`` is empty on success."""

    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form."""
        return {"Error": self.error}

    @classmethod
    def from_dict(cls, data: Any) -> Reply:
        """Build a reply from its JSON form; JSON ``null`` is an empty reply."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError(f"unexpected reply: {data!r}")
        return cls(error=str(data.get("Error", "")))


def write_message(sock: socket.socket, obj: Any) -> int:
    """Send ``obj`` (a Request, a Reply or a JSON value) as one framed message.

    Returns the number of bytes sent.
    """
    if isinstance(obj, (Request, Reply)):
        obj = obj.to_dict()
    body = json.dumps(obj, separators=(",", ":")).encode()
    frame = _HEADER.pack(len(body)) + body
    sock.sendall(frame)
    return len(frame)


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            raise EOFError(f"unexpected EOF: got {len(buf)} of {size} bytes")
        buf += chunk
    return bytes(buf)


def read_message(sock: socket.socket) -> Any:
    """Receive one framed message and return its decoded JSON value."""
    (length,) = _HEADER.unpack(_recv_exact(sock, _HEADER.size))
    return json.loads(_recv_exact(sock, length))


def initiate(sock: socket.socket) -> Reply:
    """Send an ``init`` request over the child socket and return the reply."""
    write_message(sock, Request(type=REQUEST_TYPE_INIT))
    sock.shutdown(socket.SHUT_WR)
    reply = Reply.from_dict(read_message(sock))
    sock.shutdown(socket.SHUT_RD)
    return reply


def _reply_error(data: bytes) -> str:
    if len(data) < _HEADER.size:
        return ""
    (length,) = _HEADER.unpack_from(data)
    try:
        return Reply.from_dict(json.loads(data[_HEADER.size : _HEADER.size + length])).error
    except (ValueError, TypeError):
        return ""


def connect_to_child(sock: socket.socket, spec: Spec) -> int:
    """Ask the child for a socket connected to the spec's child address.

    Returns the received file descriptor; the caller owns it.
    """
    request = Request(
        type=REQUEST_TYPE_CONNECT,
        proto=spec.proto,
        ip=spec.child_ip,
        port=spec.child_port,
    )
    write_message(sock, request)
    sock.shutdown(socket.SHUT_WR)
    oob_space = socket.CMSG_SPACE(_FD_SIZE)
    data, ancdata, _flags, _addr = sock.recvmsg(_REPLY_BUFSIZE, oob_space)
    if not ancdata:
        error = _reply_error(data)
        if error:
            raise RuntimeError(error)
        raise RuntimeError(f"expected OOB space {oob_space}, got 0")
    fds: list[int] = []
    for level, kind, cdata in ancdata:
        if level == socket.SOL_SOCKET and kind == socket.SCM_RIGHTS:
            usable = len(cdata) - len(cdata) % _FD_SIZE
            fds.extend(array.array("i", cdata[:usable]))
    if len(ancdata) != 1 or len(fds) != 1:
        for fd in fds:
            socket.close(fd)
        raise RuntimeError(f"unexpected fds: {fds}")
    sock.shutdown(socket.SHUT_RD)
    return fds[0]


def connect_to_child_with_socket_path(socket_path: str, spec: Spec) -> int:
    """Connect to the child's UNIX socket and call :func:`connect_to_child`."""
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.connect(socket_path)
        return connect_to_child(sock, spec)


def connect_to_child_with_retry(socket_path: str, spec: Spec, retries: int) -> int:
    """Try :func:`connect_to_child_with_socket_path` up to ``retries`` times.

    The i-th retry waits i*5 milliseconds first; the last error is raised.
    """
    for attempt in range(retries):
        try:
            return connect_to_child_with_socket_path(socket_path, spec)
        except (OSError, RuntimeError, ValueError, EOFError):
            if attempt == retries - 1:
                raise
        time.sleep(attempt * 0.005)
    raise RuntimeError("reached max retry")