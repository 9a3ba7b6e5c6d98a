"""Reading subordinate ID ranges through the getsubids command."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from typing import Iterable

from rootlesskit.idtools import SubIDRange

log = logging.getLogger(__name__)

_INT_RE = re.compile(r"[+-]?[0-9]+")


def _atoi(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"invalid integer: {text!r}")
    return int(text)


def without_duplicates(ranges: Iterable[SubIDRange]) -> list[SubIDRange]:
    """Drop repeated ranges, keeping the first occurrence of each."""
    return list(dict.fromkeys(ranges))


def parse_getsubids_output(text: str) -> tuple[list[SubIDRange], list[str]]:
    """Parse lines like ``0: foo 100000 655360``; return the ranges and any warnings."""
    ranges: list[SubIDRange] = []
    warns: list[str] = []
    for number, raw in enumerate(text.split("\n"), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        by_colon = line.split(":")
        if len(by_colon) < 2:
            raise ValueError(f"line {number}: unparsable line {line!r}")
        if len(by_colon) > 2:
            warns.append(f"line {number}: line {line!r} contains unknown fields")
        triplet = by_colon[1].split()
        if len(triplet) < 3:
            raise ValueError(f"line {number}: unparsable line {line!r}")
        if len(triplet) > 3:
            warns.append(f"line {number}: line {line!r} contains unknown fields")
        values = []
        for field in triplet[1:3]:
            try:
                values.append(_atoi(field))
            except ValueError as exc:
                raise ValueError(
                    f"line {number}: unparsable line {line!r}: failed to parse {field!r}: {exc}"
                ) from exc
        ranges.append(SubIDRange(*values))
    return ranges, warns


def exec_getsubids(exe: str, group: bool, name: str) -> list[SubIDRange]:
    """Run ``getsubids [-g] name`` and return the ranges it prints."""
    args = [exe, *(["-g"] if group else []), name]
    log.debug("Executing %s", args)
    try:
        proc = subprocess.run(args, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise RuntimeError(f"failed to exec {args}: {exc}") from exc
    if proc.returncode != 0:
        raise RuntimeError(
            f"failed to exec {args}: exit status {proc.returncode} "
            f"(stdout={proc.stdout!r}, stderr={proc.stderr!r})"
        )
    ranges, warns = parse_getsubids_output(proc.stdout)
    for warn in warns:
        log.warning(
            "Error while parsing the result of %s: %s (stdout=%r, stderr=%r)",
            args, warn, proc.stdout, proc.stderr,
        )
    return ranges


def _try_getsubids(exe: str, group: bool, name: str) -> tuple[list[SubIDRange], Exception | None]:
    try:
        return exec_getsubids(exe, group, name), None
    except (RuntimeError, ValueError) as exc:
        return [], exc


def _query(exe: str, group: bool, uid: int, username: str) -> list[SubIDRange]:
    kind = "subgids" if group else "subuids"
    by_name, name_err = _try_getsubids(exe, group, username)
    by_uid, uid_err = _try_getsubids(exe, group, str(uid))
    if name_err is not None:
        log.debug("subid-source:dynamic: failed to get %s by the username %r: %s", kind, username, name_err)
    if uid_err is not None:
        log.debug("subid-source:dynamic: failed to get %s by the UID %d: %s", kind, uid, uid_err)
        if name_err is not None:
            raise RuntimeError(
                f"subid-source:dynamic: failed to get {kind} by the username {username!r}: {name_err}; "
                f"also failed to get {kind} by the UID {uid}: {uid_err}"
            ) from name_err
    return without_duplicates(by_name + by_uid)


def get_subid_ranges(uid: int, username: str) -> tuple[list[SubIDRange], list[SubIDRange]]:
    """Query getsubids (or ``$GETSUBIDS``) by username and by UID for both ID kinds."""
    exe_name = os.environ.get("GETSUBIDS") or "getsubids"
    exe = shutil.which(exe_name)
    if exe is None:
        raise FileNotFoundError(
            f"subid-source:dynamic: exec: {exe_name!r}: executable file not found in $PATH"
        )
    return _query(exe, False, uid, username), _query(exe, True, uid, username)