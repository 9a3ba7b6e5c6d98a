"""Port forwarding specifications and the driver interfaces."""

from __future__ import annotations

import ipaddress
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass(frozen=True)
class Spec:
    """A forwarded port.

    ``proto`` is one of tcp, tcp4, tcp6, udp, udp4, udp6 (sctp variants are
    accepted by validation too). An empty ``parent_ip`` means all addresses.
    An empty ``child_ip`` lets the driver choose its default.
    """

    proto: str = ""
    parent_ip: str = ""
    parent_port: int = 0
    child_port: int = 0
    child_ip: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form, leaving out empty fields."""
        pairs = (
            ("proto", self.proto),
            ("parentIP", self.parent_ip),
            ("parentPort", self.parent_port),
            ("childPort", self.child_port),
            ("childIP", self.child_ip),
        )
        return {key: value for key, value in pairs if value}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Spec:
        """Build a spec from its JSON form; missing fields take their defaults."""
        return cls(
            proto=str(data.get("proto", "")),
            parent_ip=str(data.get("parentIP", "")),
            parent_port=int(data.get("parentPort", 0)),
            child_port=int(data.get("childPort", 0)),
            child_ip=str(data.get("childIP", "")),
        )


@dataclass(frozen=True)
class Status:
    """A port that a driver has opened, with the ID the driver gave it."""

    id: int
    spec: Spec

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form."""
        return {"id": self.id, "spec": self.spec.to_dict()}


@dataclass(frozen=True)
class ChildContext:
    """Information about the child handed to a parent driver."""

    ip: ipaddress.IPv4Address | None = None


@dataclass(frozen=True)
class PortDriverInfo:
    """Description of a port driver."""

    driver: str
    protos: list[str] = field(default_factory=list)
    disallow_loopback_child_ip: bool = False


class ParentDriver(ABC):
    """A port driver running in the parent process. Must be thread-safe."""

    @abstractmethod
    def info(self) -> PortDriverInfo:
        """Describe the driver."""

    @abstractmethod
    def opaque_for_child(self) -> dict[str, str] | None:
        """Return the data the child driver needs, typically socket paths."""

    @abstractmethod
    def run_parent_driver(
        self,
        init_complete: threading.Event,
        quit: threading.Event,
        cctx: ChildContext | None,
    ) -> None:
        """Set ``init_complete`` once ready to manage ports, then block until ``quit`` is set."""

    @abstractmethod
    def add_port(self, spec: Spec) -> Status:
        """Open a port and return its status."""

    @abstractmethod
    def list_ports(self) -> list[Status]:
        """Return the open ports."""

    @abstractmethod
    def remove_port(self, port_id: int) -> None:
        """Close the port with the given ID."""


class ChildDriver(ABC):
    """A port driver running inside the child's namespaces."""

    @abstractmethod
    def run_child_driver(
        self,
        opaque: Mapping[str, str] | None,
        quit: threading.Event,
        detached_netns_path: str,
    ) -> None:
        """Serve the parent driver until ``quit`` is set."""