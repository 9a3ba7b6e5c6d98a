"""Moving the current cgroup2 processes into a sub-group."""

from __future__ import annotations

import logging
import os
import posixpath

from rootlesskit.mountinfo import fstype_filter, get_mounts

log = logging.getLogger(__name__)


def _join(*parts: str) -> str:
    joined = "/".join(p for p in parts if p)
    if not joined:
        return ""
    cleaned = posixpath.normpath(joined)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def evacuate_cgroup2(evac: str) -> None:
    """Move every process of the current cgroup2 group into the sub-group ``evac``.

    Then enable as many controllers as possible for the sub-groups of the
    current group. Does nothing when cgroup2 is not mounted.
    """
    if not evac:
        raise ValueError("got empty evacuation group name")
    if "/" in evac:
        raise ValueError(f'unexpected evacuation group name {evac!r}: must not contain "/"')

    mountpoint = find_cgroup2_mountpoint()
    if not mountpoint:
        log.warning("cgroup2 is not mounted. cgroup2 evacuation is discarded.")
        return

    old_group = get_cgroup2(os.getpid())
    new_group = _join(old_group, evac)
    old_path = _join(mountpoint, old_group)
    new_path = _join(mountpoint, new_group)

    os.makedirs(new_path, mode=0o755, exist_ok=True)

    with open(os.path.join(old_path, "cgroup.procs"), encoding="utf-8") as f:
        procs = f.read()
    for pid_text in procs.split("\n"):
        if pid_text in ("", "0"):
            continue
        try:
            with open(os.path.join(new_path, "cgroup.procs"), "w", encoding="utf-8") as f:
                f.write(pid_text)
        except OSError as exc:
            log.warning("failed to move process %s to cgroup %r: %s", pid_text, new_group, exc)

    with open(os.path.join(old_path, "cgroup.controllers"), encoding="utf-8") as f:
        controllers = f.read().split()
    for controller in controllers:
        log.debug("enabling controller %r", controller)
        try:
            with open(os.path.join(old_path, "cgroup.subtree_control"), "w", encoding="utf-8") as f:
                f.write("+" + controller)
        except OSError as exc:
            log.warning("failed to enable controller %r: %s", controller, exc)


def find_cgroup2_mountpoint() -> str:
    """Return where cgroup2 is mounted, or an empty string."""
    try:
        mounts = get_mounts(fstype_filter("cgroup2"))
    except (OSError, ValueError) as exc:
        log.warning("failed to find mountpoint for cgroup2: %s", exc)
        return ""
    if not mounts:
        return ""
    if len(mounts) != 1:
        log.warning("expected single mountpoint for cgroup2, got %d", len(mounts))
    return mounts[0].mountpoint


def get_cgroup2(pid: int) -> str:
    """Return the cgroup2 group of a process, or an empty string."""
    path = f"/proc/{pid}/cgroup"
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as exc:
        log.warning("failed to read %r: %s", path, exc)
        return ""
    return get_cgroup2_from_proc_pid_cgroup(data)


def get_cgroup2_from_proc_pid_cgroup(data: bytes | str) -> str:
    """Extract the group from the ``0::`` line of /proc/<pid>/cgroup content."""
    text = data.decode("utf-8", errors="surrogateescape") if isinstance(data, bytes) else data
    for line in text.split("\n"):
        if line.startswith("0::"):
            return line.removeprefix("0::")
    return ""