"""Parsing and validation of port specifications."""

from __future__ import annotations

import ipaddress
import re
from typing import Mapping

from rootlesskit.port import Spec, Status

_PARENT_IP, _PARENT_PORT, _CHILD_IP, _CHILD_PORT, _PROTO = range(5)

_VALID_PROTOS = frozenset(
    {"tcp", "tcp4", "tcp6", "udp", "udp4", "udp6", "sctp", "sctp4", "sctp6"}
)

_TOKEN_RE = re.compile(r"[\[\]:]|[^\[\]:\s]+")
_INT_RE = re.compile(r"[+-]?[0-9]+")


def _atoi(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"invalid integer: {text!r}")
    return int(text)


def _is_ip(text: str) -> bool:
    if "%" in text:
        return False
    try:
        ipaddress.ip_address(text)
    except ValueError:
        return False
    return True


def validate_proto(proto: str) -> None:
    """Raise ValueError unless ``proto`` is a known protocol name."""
    if proto not in _VALID_PROTOS:
        raise ValueError(f"unknown proto: {proto!r}")


def parse_port_spec(port_spec: str) -> Spec:
    """Parse ``<parent IP>:<parent port>[:<child IP>]:<child port>/<proto>``.

    IPv6 addresses are written in square brackets, e.g. ``[::1]:8080:[::2]:80/udp``.
    """
    proto_pos = port_spec.rfind("/")
    if proto_pos < 0:
        raise ValueError(f"missing proto in PortSpec string: {port_spec!r}")
    parts = [""] * 5
    parts[_PROTO] = port_spec[proto_pos + 1 :]
    try:
        validate_proto(parts[_PROTO])
    except ValueError as exc:
        raise ValueError(f"invalid PortSpec string: {port_spec!r}: {exc}") from exc

    port_pos = port_spec.rfind(":")
    if port_pos < 0 or port_pos > proto_pos:
        raise ValueError(f"unexpected PortSpec string: {port_spec!r}")
    parts[_CHILD_PORT] = port_spec[port_pos + 1 : proto_pos]

    index = _PARENT_IP
    delimiter = ":"
    tokens = iter(_TOKEN_RE.findall(port_spec[:port_pos]))
    for token in tokens:
        if index > _CHILD_PORT:
            raise ValueError(f"unexpected PortSpec string: {port_spec!r}")
        if token == "[":
            delimiter = "]"
            continue
        if token == delimiter:
            if delimiter == "]":
                delimiter = ":"
                next(tokens, None)
            index += 1
            continue
        parts[index] += token

    if parts[_PARENT_IP] and not _is_ip(parts[_PARENT_IP]):
        raise ValueError(f"unexpected ParentIP in PortSpec string: {port_spec!r}")
    if parts[_CHILD_IP] and not _is_ip(parts[_CHILD_IP]):
        raise ValueError(f"unexpected ChildIP in PortSpec string: {port_spec!r}")

    try:
        parent_port = _atoi(parts[_PARENT_PORT])
    except ValueError as exc:
        raise ValueError(f"unexpected ParentPort in PortSpec string: {port_spec!r}: {exc}") from exc
    try:
        child_port = _atoi(parts[_CHILD_PORT])
    except ValueError as exc:
        raise ValueError(f"unexpected ChildPort in PortSpec string: {port_spec!r}: {exc}") from exc

    return Spec(
        proto=parts[_PROTO],
        parent_ip=parts[_PARENT_IP],
        parent_port=parent_port,
        child_port=child_port,
        child_ip=parts[_CHILD_IP],
    )


def validate_port_spec(spec: Spec, existing_ports: Mapping[int, Status] | None = None) -> None:
    """Raise ValueError if ``spec`` is invalid or conflicts with an existing port."""
    validate_proto(spec.proto)
    if spec.parent_ip and not _is_ip(spec.parent_ip):
        raise ValueError(f"invalid ParentIP: {spec.parent_ip!r}")
    if spec.child_ip and not _is_ip(spec.child_ip):
        raise ValueError(f"invalid ChildIP: {spec.child_ip!r}")
    if not 0 < spec.parent_port <= 65535:
        raise ValueError(f"invalid ParentPort: {spec.parent_port}")
    if not 0 < spec.child_port <= 65535:
        raise ValueError(f"invalid ChildPort: {spec.child_port}")
    for port_id, status in (existing_ports or {}).items():
        existing = status.spec
        same_proto = existing.proto == spec.proto
        same_parent = existing.parent_ip == spec.parent_ip and existing.parent_port == spec.parent_port
        if same_proto and same_parent:
            raise ValueError(f"conflict with ID {port_id}")