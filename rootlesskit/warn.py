"""Warnings about host settings that keep rootless namespaces from working."""

from __future__ import annotations

import logging
import os

from rootlesskit.mountinfo import get_mounts, single_entry_filter

log = logging.getLogger(__name__)

_MAX_USER_NAMESPACES_THRESHOLD = 1024


def warn_propagation(propagation: str) -> None:
    """Warn when non-private propagation is asked for but the host root is not shared."""
    try:
        mounts = get_mounts(single_entry_filter("/"))
    except (OSError, ValueError) as exc:
        log.warning("Failed to parse mountinfo: %s", exc)
        return
    if not mounts:
        log.warning("Failed to parse mountinfo")
        return
    root = mounts[0]
    # A "sane" host has root.optional like "shared:1"; inside a container it is like "master:363".
    if "private" not in propagation and "shared" not in root.optional:
        log.warning(
            "The host root filesystem is mounted as %r. Setting child propagation to %r is not supported.",
            root.optional,
            propagation,
        )


def _read_int(path: str) -> tuple[str, int | None] | None:
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read().strip()
    except OSError:
        return None
    try:
        return text, int(text)
    except ValueError:
        return text, None


def warn_sysctl(proc_sys: str = "/proc/sys") -> None:
    """Check kernel.unprivileged_userns_clone and user.max_user_namespaces."""
    uuc_path = os.path.join(proc_sys, "kernel", "unprivileged_userns_clone")
    uuc_name = "/proc/sys/kernel/unprivileged_userns_clone"
    # The file exists only on distros carrying the patch that adds this sysctl.
    result = _read_int(uuc_path)
    if result is not None:
        text, value = result
        if value is None:
            log.warning("Failed to parse %s (%r)", uuc_name, text)
        elif value == 0:
            log.warning("%s needs to be set to 1.", uuc_name)

    mun_path = os.path.join(proc_sys, "user", "max_user_namespaces")
    mun_name = "/proc/sys/user/max_user_namespaces"
    result = _read_int(mun_path)
    if result is not None:
        text, value = result
        if value is None:
            log.warning("Failed to parse %s (%r)", mun_name, text)
        elif value == 0:
            log.warning("%s needs to be set to non-zero.", mun_name)
        elif value < _MAX_USER_NAMESPACES_THRESHOLD:
            log.warning(
                "%s=%d may be low. Consider setting to >= %d.",
                mun_name,
                value,
                _MAX_USER_NAMESPACES_THRESHOLD,
            )