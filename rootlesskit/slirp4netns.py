"""Port driver that forwards ports through the slirp4netns API socket."""

from __future__ import annotations

import ipaddress
import json
import socket
import threading
from typing import Any, Mapping, TextIO

from rootlesskit.port import (
    ChildContext,
    ChildDriver,
    ParentDriver,
    PortDriverInfo,
    Spec,
    Status,
)
from rootlesskit.portutil import validate_port_spec


def _to_ipv4(text: str) -> ipaddress.IPv4Address | None:
    addr = ipaddress.ip_address(text)
    if isinstance(addr, ipaddress.IPv4Address):
        return addr
    return addr.ipv4_mapped


def call_api(api_socket_path: str, request: Mapping[str, Any]) -> dict[str, Any]:
    """Send one JSON request to the slirp4netns API socket and return its reply."""
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as conn:
        conn.connect(api_socket_path)
        conn.sendall(json.dumps(request).encode() + b"\n")
        conn.shutdown(socket.SHUT_WR)
        chunks = []
        while chunk := conn.recv(65536):
            chunks.append(chunk)
    reply = json.loads(b"".join(chunks))
    if not isinstance(reply, dict):
        raise ValueError(f"unexpected reply: {reply!r}")
    for key in ("return", "error"):
        if reply.get(key) is not None and not isinstance(reply[key], dict):
            raise ValueError(f"unexpected reply: {reply!r}")
    return reply


class Slirp4netnsParentDriver(ParentDriver):
    """Parent driver that asks slirp4netns to add and remove host forwards."""

    def __init__(self, log_writer: TextIO | None, api_socket_path: str) -> None:
        self.log_writer = log_writer
        self.api_socket_path = api_socket_path
        self._lock = threading.Lock()
        self._child_ip = ""
        self._ports: dict[int, Status] = {}

    def info(self) -> PortDriverInfo:
        # No IPv6 support yet.
        return PortDriverInfo(
            driver="slirp4netns",
            protos=["tcp", "tcp4", "udp", "udp4"],
            disallow_loopback_child_ip=True,
        )

    def opaque_for_child(self) -> dict[str, str]:
        """Return the child's settings: none, as there is no child-side logic."""
        return {}

    def run_parent_driver(
        self,
        init_complete: threading.Event,
        quit: threading.Event,
        cctx: ChildContext | None,
    ) -> None:
        if cctx is not None and cctx.ip is not None:
            v4 = _to_ipv4(str(cctx.ip))
            if v4 is not None:
                self._child_ip = str(v4)
        init_complete.set()
        quit.wait()

    def _guest_addr(self, child_ip: str) -> str:
        if not child_ip:
            return self._child_ip
        try:
            v4 = _to_ipv4(child_ip)
        except ValueError:
            raise ValueError(f"invalid IP: {child_ip!r}") from None
        if v4 is None:
            raise ValueError(f"unsupported IP (v6?): {child_ip}")
        return str(v4)

    def add_port(self, spec: Spec) -> Status:
        with self._lock:
            validate_port_spec(spec, self._ports)
            if spec.proto.endswith("6"):
                raise ValueError(f"unsupported protocol {spec.proto!r}")
            request = {
                "execute": "add_hostfwd",
                "arguments": {
                    "proto": spec.proto.removesuffix("4"),
                    "host_addr": spec.parent_ip,
                    "host_port": spec.parent_port,
                    "guest_addr": self._guest_addr(spec.child_ip),
                    "guest_port": spec.child_port,
                },
            }
            reply = call_api(self.api_socket_path, request)
            if reply.get("error"):
                raise RuntimeError(f"reply.Error: {reply['error']}")
            returned = reply.get("return") or {}
            if "id" not in returned:
                raise RuntimeError(f"unexpected reply: {reply}")
            raw_id = returned["id"]
            if isinstance(raw_id, bool) or not isinstance(raw_id, (int, float)):
                raise RuntimeError(f"unexpected id: {raw_id!r}")
            status = Status(id=int(raw_id), spec=spec)
            self._ports[status.id] = status
            return status

    def list_ports(self) -> list[Status]:
        with self._lock:
            return list(self._ports.values())

    def remove_port(self, port_id: int) -> None:
        with self._lock:
            request = {"execute": "remove_hostfwd", "arguments": {"id": port_id}}
            reply = call_api(self.api_socket_path, request)
            if reply.get("error"):
                raise RuntimeError(f"reply.Error: {reply['error']}")
            self._ports.pop(port_id, None)


class Slirp4netnsChildDriver(ChildDriver):
    """Child driver with nothing to do: slirp4netns needs no child-side logic."""

    def run_child_driver(
        self,
        opaque: Mapping[str, str] | None,
        quit: threading.Event,
        detached_netns_path: str,
    ) -> None:
        quit.wait()


def new_parent_driver(log_writer: TextIO | None, api_socket_path: str) -> Slirp4netnsParentDriver:
    """Create the parent driver for the given slirp4netns API socket."""
    if not api_socket_path:
        raise ValueError("api socket path is not set")
    return Slirp4netnsParentDriver(log_writer, api_socket_path)


def new_child_driver() -> Slirp4netnsChildDriver:
    """Create the child driver."""
    return Slirp4netnsChildDriver()