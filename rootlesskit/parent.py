"""Parent-side setup: state directory, preflight checks and UID/GID maps."""

from __future__ import annotations

import enum
import fcntl
import logging
import os
import pwd
import shutil
import subprocess
from dataclasses import dataclass
from typing import Sequence

from rootlesskit import dynidtools, idtools
from rootlesskit.idtools import SubIDRange
from rootlesskit.warn import warn_propagation, warn_sysctl

log = logging.getLogger(__name__)

# Documented state files. Undocumented ones are subject to change.
STATE_FILE_LOCK = "lock"
STATE_FILE_CHILD_PID = "child_pid"
STATE_FILE_API_SOCK = "api.sock"
STATE_FILE_NETNS = "netns"


class SubidSource(enum.StrEnum):
    """Where subordinate ID ranges come from."""

    AUTO = "auto"  # try dynamic, then fall back to static
    DYNAMIC = "dynamic"  # getsubids
    STATIC = "static"  # /etc/subuid and /etc/subgid


@dataclass(frozen=True)
class CurrentUser:
    """The user running the process; IDs are kept as decimal text."""

    uid: str
    gid: str
    username: str


@dataclass
class StateDirLock:
    """An exclusive lock on the lock file of a state directory."""

    path: str
    fd: int

    def unlock(self) -> None:
        """Release the lock and close the file."""
        if self.fd < 0:
            return
        try:
            fcntl.flock(self.fd, fcntl.LOCK_UN)
        finally:
            os.close(self.fd)
            self.fd = -1

    def __enter__(self) -> StateDirLock:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unlock()


def current_user() -> CurrentUser:
    """Return the user running this process."""
    uid = os.getuid()
    try:
        entry = pwd.getpwuid(uid)
    except KeyError:
        username = os.environ.get("USER", "")
        if not username:
            raise LookupError(f"user: unknown userid {uid}") from None
        return CurrentUser(uid=str(uid), gid=str(os.getgid()), username=username)
    return CurrentUser(uid=str(uid), gid=str(entry.pw_gid), username=entry.pw_name)


def check_preflight(pipe_fd_env_key: str, state_dir: str, propagation: str) -> None:
    """Validate the parent options and warn about problematic host settings."""
    if not pipe_fd_env_key:
        raise ValueError("pipe FD env key is not set")
    if not state_dir:
        raise ValueError("state dir is not set")
    if not os.path.isabs(state_dir):
        raise ValueError("state dir must be absolute")
    try:
        is_dir = os.path.isdir(state_dir) and os.stat(state_dir) is not None
    except OSError as exc:
        raise ValueError(f"state dir is inaccessible: {exc}") from exc
    if not is_dir:
        raise ValueError(f"state dir is inaccessible: {state_dir}")

    if os.geteuid() == 0:
        log.warning("Running RootlessKit as the root user is unsupported.")

    warn_sysctl()
    # An invalid propagation does not result in an error.
    warn_propagation(propagation)


def create_cleanup_lock(state_dir: str) -> int:
    """Hold a shared lock on the state dir so that systemd does not clean it up.

    Returns the open descriptor that carries the lock; it stays locked until closed.
    """
    fd = os.open(state_dir, os.O_RDONLY)
    try:
        fcntl.flock(fd, fcntl.LOCK_SH)
    except OSError:
        log.warning("Failed to lock the state dir %s", state_dir)
    return fd


def lock_state_dir(state_dir: str) -> StateDirLock:
    """Create and exclusively lock the lock file in the state dir."""
    lock_path = os.path.join(state_dir, STATE_FILE_LOCK)
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_RDONLY, 0o600)
    except OSError as exc:
        raise RuntimeError(f"failed to lock {lock_path}: {exc}") from exc
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as exc:
        os.close(fd)
        raise RuntimeError(
            f"failed to lock {lock_path}, another RootlessKit is running with the same state directory?"
        ) from exc
    except OSError as exc:
        os.close(fd)
        raise RuntimeError(f"failed to lock {lock_path}: {exc}") from exc
    return StateDirLock(path=lock_path, fd=fd)


def _remove_all(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


def init_state_dir(state_dir: str) -> None:
    """Create the state dir and remove everything in it except the lock file.

    A crashed earlier run may have left files behind.
    """
    os.makedirs(state_dir, mode=0o755, exist_ok=True)
    with lock_state_dir(state_dir):
        for name in os.listdir(state_dir):
            if name == STATE_FILE_LOCK:
                continue
            path = os.path.join(state_dir, name)
            try:
                _remove_all(path)
            except OSError as exc:
                raise OSError(f"failed to remove {path}: {exc}") from exc


def _to_source(subid_source: SubidSource | str) -> SubidSource:
    if not subid_source:
        return SubidSource.AUTO
    try:
        return SubidSource(subid_source)
    except ValueError:
        raise ValueError(f"unknown subid source {str(subid_source)!r}") from None


def get_subid_ranges(
    user: CurrentUser, subid_source: SubidSource | str
) -> tuple[list[SubIDRange], list[SubIDRange]]:
    """Return the user's subuid and subgid ranges from the chosen source."""
    source = _to_source(subid_source)
    uid = int(user.uid)
    match source:
        case SubidSource.STATIC:
            log.debug("subid-source: using the static source")
            return idtools.get_subid_ranges(uid, user.username)
        case SubidSource.DYNAMIC:
            log.debug("subid-source: using the dynamic source")
            return dynidtools.get_subid_ranges(uid, user.username)
        case _:
            error: Exception | None = None
            try:
                subuids, subgids = get_subid_ranges(user, SubidSource.DYNAMIC)
                if subuids and subgids:
                    return subuids, subgids
            except (OSError, RuntimeError, ValueError, LookupError) as exc:
                error = exc
            log.debug(
                "failed to use subid source %r, falling back to %r: %s",
                SubidSource.DYNAMIC.value,
                SubidSource.STATIC.value,
                error,
            )
            return get_subid_ranges(user, SubidSource.STATIC)


def newugidmap_args_from_subid_ranges(
    user: CurrentUser,
    subuid_ranges: Sequence[SubIDRange],
    subgid_ranges: Sequence[SubIDRange],
) -> tuple[list[str], list[str]]:
    """Build the newuidmap and newgidmap arguments: the user maps to 0, ranges follow from 1."""

    def build(own_id: str, ranges: Sequence[SubIDRange]) -> list[str]:
        args = ["0", own_id, "1"]
        last = 1
        for r in ranges:
            args += [str(last), str(r.start), str(r.length)]
            last += r.length
        return args

    return build(user.uid, subuid_ranges), build(user.gid, subgid_ranges)


def newugidmap_args(subid_source: SubidSource | str) -> tuple[list[str], list[str]]:
    """Build the map arguments for the current user."""
    user = current_user()
    subuids, subgids = get_subid_ranges(user, subid_source)
    log.debug("subuid ranges=%s", subuids)
    log.debug("subgid ranges=%s", subgids)
    return newugidmap_args_from_subid_ranges(user, subuids, subgids)


def _run_map_tool(tool: str, pid_text: str, args: list[str]) -> None:
    try:
        proc = subprocess.run(
            [tool, pid_text, *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise RuntimeError(f"{tool} {pid_text} {args} failed: : {exc}") from exc
    if proc.returncode != 0:
        raise RuntimeError(
            f"{tool} {pid_text} {args} failed: {proc.stdout}: exit status {proc.returncode}"
        )


def setup_uidgid_map(pid: int, subid_source: SubidSource | str) -> None:
    """Write the UID and GID maps of process ``pid`` with newuidmap and newgidmap."""
    try:
        uid_args, gid_args = newugidmap_args(subid_source)
    except (OSError, RuntimeError, ValueError, LookupError) as exc:
        raise RuntimeError(f"failed to compute uid/gid map: {exc}") from exc
    pid_text = str(pid)
    _run_map_tool("newuidmap", pid_text, uid_args)
    _run_map_tool("newgidmap", pid_text, gid_args)