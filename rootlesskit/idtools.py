"""Reading subordinate ID ranges from /etc/subuid and /etc/subgid."""

from __future__ import annotations

import re
from dataclasses import dataclass
from os import PathLike

SUBUID_FILE = "/etc/subuid"
SUBGID_FILE = "/etc/subgid"

_INT_RE = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class SubIDRange:
    """A range of subordinate IDs."""

    start: int
    length: int


def _atoi(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"invalid integer: {text!r}")
    return int(text)


def parse_subid_file(path: str | PathLike[str], uid: int, username: str) -> list[SubIDRange]:
    """Return every range in a subuid/subgid file that belongs to the user.

    An entry matches by numeric UID, or by ``username`` when it is not empty.
    """
    uid_text = str(uid)
    ranges: list[SubIDRange] = []
    with open(path, encoding="utf-8") as subid_file:
        for raw in subid_file:
            text = raw.strip()
            if not text or text.startswith("#"):
                continue
            parts = text.split(":")
            if len(parts) != 3:
                raise ValueError(
                    f"Cannot parse subuid/gid information: Format not correct for {path} file"
                )
            owner, start, length = parts
            if owner == uid_text or (username and owner == username):
                try:
                    ranges.append(SubIDRange(_atoi(start), _atoi(length)))
                except ValueError as exc:
                    raise ValueError(
                        f"String to int conversion failed during subuid/gid parsing of {path}: {exc}"
                    ) from exc
    return ranges


def get_subid_ranges(
    uid: int,
    username: str,
    subuid_path: str | PathLike[str] = SUBUID_FILE,
    subgid_path: str | PathLike[str] = SUBGID_FILE,
) -> tuple[list[SubIDRange], list[SubIDRange]]:
    """Return the user's subuid and subgid ranges; raise LookupError if either is empty."""
    subuid_ranges = parse_subid_file(subuid_path, uid, username)
    subgid_ranges = parse_subid_file(subgid_path, uid, username)
    if not subuid_ranges:
        raise LookupError(f"No subuid ranges found for user {uid} ({username!r})")
    if not subgid_ranges:
        raise LookupError(f"No subgid ranges found for user {uid} ({username!r})")
    return subuid_ranges, subgid_ranges