"""Reading the mount table from /proc/<pid>/mountinfo."""

from __future__ import annotations

import re
from dataclasses import dataclass
from os import PathLike
from typing import Callable, Iterable, Iterator

MOUNTINFO_PATH = "/proc/self/mountinfo"

_OCTAL_ESCAPE_RE = re.compile(r"\\([0-7]{3})")


@dataclass(frozen=True)
class MountInfo:
    """One line of a mountinfo file."""

    id: int
    parent: int
    major: int
    minor: int
    root: str
    mountpoint: str
    options: str
    optional: str
    fstype: str
    source: str
    vfs_options: str


MountFilter = Callable[[MountInfo], tuple[bool, bool]]
"""Returns ``(skip, stop)`` for a mount: whether to leave it out, and whether to stop reading."""


def _unescape(text: str) -> str:
    return _OCTAL_ESCAPE_RE.sub(lambda m: chr(int(m.group(1), 8)), text)


def _parse_line(line: str) -> MountInfo:
    fields = line.split(" ")
    try:
        sep = fields.index("-", 6)
    except ValueError:
        raise ValueError(f"parsing {line!r} failed: missing separator ('-')") from None
    if len(fields) - sep - 1 < 3:
        raise ValueError(f"parsing {line!r} failed: not enough fields after a separator")
    major_minor = fields[2].split(":")
    if len(major_minor) != 2:
        raise ValueError(f"parsing {line!r} failed: unexpected major:minor pair {fields[2]!r}")
    try:
        mount_id = int(fields[0])
        parent_id = int(fields[1])
        major = int(major_minor[0])
        minor = int(major_minor[1])
    except ValueError as exc:
        raise ValueError(f"parsing {line!r} failed: {exc}") from exc
    return MountInfo(
        id=mount_id,
        parent=parent_id,
        major=major,
        minor=minor,
        root=_unescape(fields[3]),
        mountpoint=_unescape(fields[4]),
        options=fields[5],
        optional=" ".join(fields[6:sep]),
        fstype=_unescape(fields[sep + 1]),
        source=_unescape(fields[sep + 2]),
        vfs_options=fields[sep + 3],
    )


def _iter_mounts(lines: Iterable[str]) -> Iterator[MountInfo]:
    for line in lines:
        line = line.rstrip("\n")
        if not line.strip():
            continue
        yield _parse_line(line)


def _apply_filter(mounts: Iterable[MountInfo], mount_filter: MountFilter | None) -> list[MountInfo]:
    if mount_filter is None:
        return list(mounts)
    kept: list[MountInfo] = []
    for info in mounts:
        skip, stop = mount_filter(info)
        if not skip:
            kept.append(info)
        if stop:
            break
    return kept


def parse_mountinfo(text: str) -> list[MountInfo]:
    """Parse mountinfo text into its mounts, in file order."""
    return list(_iter_mounts(text.splitlines()))


def get_mounts(
    mount_filter: MountFilter | None = None,
    path: str | PathLike[str] = MOUNTINFO_PATH,
) -> list[MountInfo]:
    """Read a mountinfo file and return the mounts that pass ``mount_filter``."""
    with open(path, encoding="utf-8", errors="surrogateescape") as f:
        return _apply_filter(_iter_mounts(f), mount_filter)


def fstype_filter(*args: str) -> MountFilter:
    """Keep only mounts whose filesystem type is one of ``args``."""
    wanted = frozenset(args)

    def _filter(info: MountInfo) -> tuple[bool, bool]:
        return info.fstype not in wanted, False

    return _filter


def single_entry_filter(mountpoint: str) -> MountFilter:
    """Keep only the first mount at ``mountpoint`` and stop there."""

    def _filter(info: MountInfo) -> tuple[bool, bool]:
        if info.mountpoint == mountpoint:
            return False, True
        return True, False

    return _filter