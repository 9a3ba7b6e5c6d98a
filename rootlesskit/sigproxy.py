"""Forwarding the signals this process receives to a child process."""

from __future__ import annotations

import logging
import os
import platform
import signal
import threading
from types import FrameType
from typing import Any

log = logging.getLogger(__name__)

_SIGRTMIN = 34
_SIGRTMAX_DEFAULT = 64
_SIGRTMAX_MIPS = 127

_COMMON_NAMES = (
    "ABRT", "ALRM", "BUS", "CHLD", "CLD", "CONT", "FPE", "HUP", "ILL", "INT",
    "IO", "IOT", "KILL", "PIPE", "POLL", "PROF", "PWR", "QUIT", "SEGV", "STOP",
    "SYS", "TERM", "TRAP", "TSTP", "TTIN", "TTOU", "URG", "USR1", "USR2",
    "VTALRM", "WINCH", "XCPU", "XFSZ",
)

# Caught but never passed on to the child.
_NOT_FORWARDED = frozenset({signal.SIGCHLD, signal.SIGPIPE, signal.SIGURG})

# Signals that cannot be caught, and synchronous fault signals whose
# Python-level handler would make a real fault loop forever.
_NEVER_CAUGHT = frozenset(
    {signal.SIGKILL, signal.SIGSTOP, signal.SIGSEGV, signal.SIGBUS, signal.SIGFPE, signal.SIGILL}
)


def _is_mips(machine: str) -> bool:
    return machine.lower().startswith("mips")


def signal_map(machine: str | None = None) -> dict[str, int]:
    """Map Linux signal names (without ``SIG``) to numbers.

    ``machine`` selects the architecture (default: this one); MIPS has
    ``EMT`` instead of ``STKFLT`` and a higher real-time maximum. Standard
    signals take this platform's numbers and are left out where unknown.
    """
    machine = platform.machine() if machine is None else machine
    mips = _is_mips(machine)
    names = _COMMON_NAMES + (("EMT",) if mips else ("STKFLT",))
    result: dict[str, int] = {}
    for name in names:
        value = getattr(signal, "SIG" + name, None)
        if value is not None:
            result[name] = int(value)
    rtmax = _SIGRTMAX_MIPS if mips else _SIGRTMAX_DEFAULT
    result["RTMIN"] = _SIGRTMIN
    for offset in range(1, 16):
        result[f"RTMIN+{offset}"] = _SIGRTMIN + offset
    for offset in range(14, 0, -1):
        result[f"RTMAX-{offset}"] = rtmax - offset
    result["RTMAX"] = rtmax
    return result


class SignalForwarder:
    """Signal handlers that pass every caught signal on to ``pid``."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self._previous: dict[int, Any] = {}

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        if signum in _NOT_FORWARDED:
            return
        try:
            os.kill(self.pid, signum)
        except OSError as exc:
            log.debug("Error sending signal %d: %s", signum, exc)

    def _install(self) -> None:
        wanted = set(signal_map().values()) & set(signal.valid_signals())
        for signum in sorted(wanted - _NEVER_CAUGHT):
            try:
                previous = signal.signal(signum, self._handle)
            except (OSError, ValueError, RuntimeError):
                continue
            self._previous[signum] = previous

    def stop(self) -> None:
        """Stop catching signals and put the earlier handlers back."""
        for signum, previous in self._previous.items():
            signal.signal(signum, signal.SIG_DFL if previous is None else previous)
        self._previous.clear()

    def __enter__(self) -> SignalForwarder:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


def forward_all_signals(pid: int) -> SignalForwarder:
    """Catch every catchable signal and send it on to ``pid``.

    SIGCHLD, SIGPIPE and SIGURG are caught but not forwarded. Must be
    called from the main thread.
    """
    if threading.current_thread() is not threading.main_thread():
        raise RuntimeError("signals can only be forwarded from the main thread")
    forwarder = SignalForwarder(pid)
    forwarder._install()
    return forwarder