import dataclasses

import pytest

from rootlesskit.port import Spec, Status
from rootlesskit.portutil import parse_port_spec, validate_port_spec, validate_proto


@pytest.mark.parametrize(
    "text, expected",
    [
        ("127.0.0.1:8080:80/tcp", Spec(proto="tcp", parent_ip="127.0.0.1", parent_port=8080, child_port=80)),
        ("127.0.0.1:8080:80/tcp4", Spec(proto="tcp4", parent_ip="127.0.0.1", parent_port=8080, child_port=80)),
        (
            "127.0.0.1:8080:10.0.2.100:80/tcp",
            Spec(proto="tcp", parent_ip="127.0.0.1", parent_port=8080, child_ip="10.0.2.100", child_port=80),
        ),
        ("[::1]:8080:80/tcp", Spec(proto="tcp", parent_ip="::1", parent_port=8080, child_port=80)),
        (
            "[::1]:8080:[::2]:80/udp",
            Spec(proto="udp", parent_ip="::1", parent_port=8080, child_ip="::2", child_port=80),
        ),
    ],
)
def test_parse_port_spec_valid(text, expected):
    assert parse_port_spec(text) == expected


@pytest.mark.parametrize(
    "text",
    [
        "bad",
        "127.0.0.1:8080:80/tcp,127.0.0.1:4040:40/tcp",
        "8080",
        "127.0.0.1:8080:80/foo",
        "invalid:8080:80/tcp",
        "127.0.0.1:abc:80/tcp",
    ],
)
def test_parse_port_spec_invalid(text):
    with pytest.raises(ValueError):
        parse_port_spec(text)


def test_validate_proto():
    validate_proto("sctp6")
    with pytest.raises(ValueError, match="unknown proto"):
        validate_proto("TCP")


@pytest.fixture
def existing_ports():
    return {
        1: Status(id=1, spec=Spec(proto="tcp", parent_ip="", parent_port=80, child_port=80)),
        2: Status(id=2, spec=Spec(proto="tcp", parent_ip="10.10.10.10", parent_port=8080, child_port=8080)),
    }


BASE = Spec(proto="tcp", parent_ip="127.0.0.1", parent_port=1001, child_port=1001)


@pytest.mark.parametrize("proto", ["", "NaN", "TCP"])
def test_validate_invalid_protos(existing_ports, proto):
    with pytest.raises(ValueError, match="unknown proto"):
        validate_port_spec(dataclasses.replace(BASE, proto=proto), existing_ports)


@pytest.mark.parametrize("proto", ["udp", "tcp", "sctp"])
def test_validate_valid_protos(existing_ports, proto):
    assert validate_port_spec(dataclasses.replace(BASE, proto=proto), existing_ports) is None


def test_validate_invalid_ips(existing_ports):
    with pytest.raises(ValueError, match="invalid ParentIP"):
        validate_port_spec(Spec(proto="tcp", parent_ip="invalid", parent_port=80, child_port=80), existing_ports)
    with pytest.raises(ValueError, match="invalid ChildIP"):
        validate_port_spec(Spec(proto="tcp", parent_port=80, child_ip="invalid", child_port=80), existing_ports)


@pytest.mark.parametrize("value", [-200, 0, 1000000])
def test_validate_invalid_ports(existing_ports, value):
    with pytest.raises(ValueError, match="invalid ParentPort"):
        validate_port_spec(dataclasses.replace(BASE, parent_port=value), existing_ports)
    with pytest.raises(ValueError, match="invalid ChildPort"):
        validate_port_spec(dataclasses.replace(BASE, child_port=value), existing_ports)


@pytest.mark.parametrize("value", [20, 500, 1337, 65000])
def test_validate_valid_ports(existing_ports, value):
    assert validate_port_spec(dataclasses.replace(BASE, parent_port=value), existing_ports) is None
    assert validate_port_spec(dataclasses.replace(BASE, child_port=value), existing_ports) is None


@pytest.mark.parametrize(
    "spec",
    [
        Spec(proto="udp", parent_port=80, child_port=80),
        Spec(proto="tcp", parent_ip="10.10.10.11", parent_port=8080, child_port=8080),
        Spec(proto="tcp", parent_ip="10.10.10.10", parent_port=8081, child_port=8080),
    ],
)
def test_validate_no_conflict(existing_ports, spec):
    assert validate_port_spec(spec, existing_ports) is None


def test_validate_conflict_id1(existing_ports):
    with pytest.raises(ValueError, match=r"^conflict with ID 1$"):
        validate_port_spec(Spec(proto="tcp", parent_port=80, child_port=90), existing_ports)


def test_validate_conflict_id2(existing_ports):
    spec = Spec(proto="tcp", parent_ip="10.10.10.10", parent_port=8080, child_port=8080)
    with pytest.raises(ValueError, match=r"^conflict with ID 2$"):
        validate_port_spec(spec, existing_ports)


def test_parsed_spec_passes_validation():
    spec = parse_port_spec("[::1]:8080:[::2]:80/udp")
    assert validate_port_spec(spec, {}) is None