"""Reading of process information from a Linux-style /proc filesystem."""

from __future__ import annotations

import errno
import os
import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .process_types import (
    MemBytePct,
    ProcCPUInfo,
    ProcFDInfo,
    ProcMemInfo,
    ProcState,
    get_proc_state,
    unix_time_ms_to_time,
)
from .resolve import Resolver

try:
    import pwd
except ImportError:  # not available on every platform
    pwd = None  # type: ignore[assignment]

__all__ = [
    "TICKS",
    "list_pids",
    "get_info_for_pid",
    "fill_pid_metrics",
    "get_mem_data",
    "get_cpu_time",
    "get_args",
    "get_env_data",
    "get_fd_stats",
    "get_linux_boot_time",
    "get_proc_status",
    "get_user",
    "get_proc_string_data",
]

# System tick rate (USER_HZ) assumed for values in /proc/[pid]/stat.
TICKS = 100

_PAGE_SHIFT = 12
_UINT64_LIMIT = 1 << 64
_UINT_RE = re.compile(r"[0-9]+")
_INT_RE = re.compile(r"[+-]?[0-9]+")

EnvFilter = Optional[Callable[[str], bool]]

# Boot time does not change while the system is up; cache it per stat file.
_boot_times: Dict[str, int] = {}


def _wrap(exc: Exception, message: str) -> Exception:
    """Build an exception of the same kind with added context."""
    text = f"{message}: {exc}"
    try:
        return type(exc)(text)
    except TypeError:
        base = OSError if isinstance(exc, OSError) else ValueError
        return base(text)


def _read_bytes(path: str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise _wrap(exc, f"error opening file {path}") from exc


def _read_text(path: str) -> str:
    return _read_bytes(path).decode("utf-8", "replace")


def _parse_uint(raw: str, what: str) -> int:
    if not _UINT_RE.fullmatch(raw) or int(raw) >= _UINT64_LIMIT:
        raise ValueError(f"error parsing {what} {raw!r}")
    return int(raw)


def _pid_path(hostfs: Resolver, pid: int, name: str) -> str:
    return hostfs.join("proc", str(pid), name)


def list_pids(hostfs: Resolver) -> List[int]:
    """Return the numeric process IDs found in the proc directory, sorted."""
    proc_dir = hostfs.resolve_hostfs("proc")
    try:
        names = os.listdir(proc_dir)
    except OSError as exc:
        raise _wrap(exc, f"error reading from procfs {proc_dir}") from exc

    pids = []
    for name in names:
        if not name or not "0" <= name[0] <= "9":
            continue
        if _INT_RE.fullmatch(name):
            pids.append(int(name))
    return sorted(pids)


def get_info_for_pid(hostfs: Resolver, pid: int) -> ProcState:
    """Read name, state, parent and group of a process from its stat file.

    Raises ProcessLookupError when the process does not exist.
    """
    path = _pid_path(hostfs, pid, "stat")
    try:
        data = Path(path).read_bytes()
    except FileNotFoundError as exc:
        raise ProcessLookupError(errno.ESRCH, os.strerror(errno.ESRCH)) from exc
    except OSError as exc:
        raise _wrap(exc, f"error reading procdir {path}") from exc

    text = data.decode("utf-8", "replace")
    left = data.find(b"(")
    right = data.rfind(b")")
    if left < 0 or right < 0 or left >= right or right + 2 >= len(data):
        raise ValueError(f"failed to extract comm for pid {pid} from {text!r}")
    name = data[left + 1 : right].decode("utf-8", "replace")

    fields = data[right + 2 :].split()
    if len(fields) <= 36:
        raise ValueError(f"expected more stat fields for pid {pid} from {text!r}")

    state_code = fields[0][:1].decode("latin-1")
    ppid_raw = fields[1].decode("latin-1")
    pgid_raw = fields[2].decode("latin-1")
    if not (_INT_RE.fullmatch(ppid_raw) and _INT_RE.fullmatch(pgid_raw)):
        raise ValueError(f"failed to parse stat fields for pid {pid} from {text!r}")

    return ProcState(
        name=name,
        state=get_proc_state(state_code),
        ppid=int(ppid_raw),
        pgid=int(pgid_raw),
        pid=pid,
    )


def fill_pid_metrics(
    hostfs: Resolver, pid: int, state: ProcState, env_filter: EnvFilter
) -> ProcState:
    """Fill memory, CPU, args, FD, environment, paths and user into ``state``.

    ``state`` is updated in place and returned. Arguments and environment
    already present are kept. Environment errors are ignored.
    """
    try:
        state.memory = get_mem_data(hostfs, pid)
    except (OSError, ValueError) as exc:
        raise _wrap(exc, f"error getting memory data for pid {pid}") from exc

    try:
        state.cpu = get_cpu_time(hostfs, pid)
    except (OSError, ValueError) as exc:
        raise _wrap(exc, f"error getting CPU data for pid {pid}") from exc

    if not state.args:
        try:
            state.args = get_args(hostfs, pid)
        except OSError as exc:
            raise _wrap(exc, f"error getting CLI args for pid {pid}") from exc

    try:
        state.fd = get_fd_stats(hostfs, pid)
    except (OSError, ValueError) as exc:
        raise _wrap(exc, f"error getting FD metrics for pid {pid}") from exc

    if state.env is None:
        try:
            state.env = get_env_data(hostfs, pid, env_filter)
        except OSError:
            state.env = None

    try:
        state.exe, state.cwd = get_proc_string_data(hostfs, pid)
    except OSError as exc:
        raise _wrap(exc, f"error getting metadata for pid {pid}") from exc

    try:
        state.username = get_user(hostfs, pid)
    except (OSError, ValueError) as exc:
        raise _wrap(exc, f"error creating username for pid {pid}") from exc

    return state


def get_mem_data(hostfs: Resolver, pid: int) -> ProcMemInfo:
    """Read size, RSS and shared memory (in bytes) from the statm file."""
    path = _pid_path(hostfs, pid, "statm")
    fields = _read_text(path).split()
    if len(fields) < 3:
        raise ValueError(f"malformed memory data in {path}")

    size = _parse_uint(fields[0], "memory size")
    rss = _parse_uint(fields[1], "memory rss")
    try:
        share = _parse_uint(fields[2], "memory share")
    except ValueError:
        share = 0

    return ProcMemInfo(
        size=(size << _PAGE_SHIFT) % _UINT64_LIMIT,
        share=(share << _PAGE_SHIFT) % _UINT64_LIMIT,
        rss=MemBytePct(bytes=(rss << _PAGE_SHIFT) % _UINT64_LIMIT),
    )


def get_cpu_time(hostfs: Resolver, pid: int) -> ProcCPUInfo:
    """Read user and system CPU time (in milliseconds) and the start time."""
    path = _pid_path(hostfs, pid, "stat")
    fields = _read_text(path).split()
    if len(fields) <= 21:
        raise ValueError(f"expected more stat fields in {path}")

    user = _parse_uint(fields[13], f"user CPU times for pid {pid}")
    system = _parse_uint(fields[14], f"system CPU times for pid {pid}")

    try:
        btime = get_linux_boot_time(hostfs)
    except (OSError, ValueError) as exc:
        raise _wrap(exc, f"error fetching boot time for pid {pid}") from exc

    info = ProcCPUInfo()
    # One tick throughout the process metrics is one millisecond.
    info.user.ticks = user * (1000 // TICKS)
    info.system.ticks = system * (1000 // TICKS)
    info.total.ticks = info.user.ticks + info.system.ticks

    start = _parse_uint(fields[21], f"start time value for pid {pid}")
    start //= TICKS
    start += btime
    start *= 1000
    info.start_time = unix_time_ms_to_time(start)
    return info


def get_args(hostfs: Resolver, pid: int) -> List[str]:
    """Read the NUL-terminated command line arguments of a process."""
    data = _read_bytes(_pid_path(hostfs, pid, "cmdline"))
    return [part.decode("utf-8", "replace") for part in data.split(b"\0")[:-1]]


def get_env_data(hostfs: Resolver, pid: int, env_filter: EnvFilter) -> Dict[str, str]:
    """Read the environment of a process, keeping names the filter accepts."""
    data = _read_bytes(_pid_path(hostfs, pid, "environ"))
    env: Dict[str, str] = {}
    for pair in data.split(b"\0"):
        parts = pair.split(b"=", 1)
        if len(parts) != 2:
            continue
        key = parts[0].strip().decode("utf-8", "replace")
        if not key:
            continue
        if env_filter is None or env_filter(key):
            env[key] = parts[1].strip().decode("utf-8", "replace")
    return env


def get_fd_stats(hostfs: Resolver, pid: int) -> ProcFDInfo:
    """Read the open file limits and count the open descriptors."""
    info = ProcFDInfo()
    for line in _read_text(_pid_path(hostfs, pid, "limits")).split("\n"):
        if not line.startswith("Max open files"):
            continue
        fields = line.split()
        if len(fields) == 6:
            info.limit.soft = _parse_uint(fields[3], f"limits value for pid {pid}")
            info.limit.hard = _parse_uint(fields[4], f"limits value for pid {pid}")

    fd_path = _pid_path(hostfs, pid, "fd")
    try:
        info.open = len(os.listdir(fd_path))
    except OSError as exc:
        raise _wrap(exc, f"error reading FD directory for pid {pid}") from exc
    return info


def get_linux_boot_time(hostfs: Resolver) -> int:
    """Return the boot time of the system in seconds since the Unix epoch."""
    path = hostfs.join("proc", "stat")
    cached = _boot_times.get(path)
    if cached:
        return cached

    for line in _read_text(path).split("\n"):
        if line.startswith("btime"):
            try:
                btime = _parse_uint(line[6:], "boot time")
            except ValueError as exc:
                raise ValueError(f"error reading boot time: {exc}") from exc
            _boot_times[path] = btime
            return btime
    raise ValueError(f"no boot time found in file {path}")


def get_proc_status(hostfs: Resolver, pid: int) -> Dict[str, str]:
    """Read the 'key: value' lines of a process status file."""
    status: Dict[str, str] = {}
    for line in _read_text(_pid_path(hostfs, pid, "status")).split("\n"):
        key, sep, value = line.partition(":")
        if sep:
            status[key] = value.strip()
    return status


def get_user(hostfs: Resolver, pid: int) -> str:
    """Return the name of the process owner, or its UID if it has no name."""
    try:
        status = get_proc_status(hostfs, pid)
    except OSError as exc:
        raise _wrap(exc, f"error fetching user ID for pid {pid}") from exc

    uid_values = status.get("Uid")
    if uid_values is None:
        raise ValueError("field Uid not found in proc status")
    uid_fields = uid_values.split()
    if not uid_fields:
        raise ValueError("field Uid is empty in proc status")
    uid = uid_fields[0]

    if pwd is not None:
        try:
            return pwd.getpwuid(int(uid)).pw_name
        except (KeyError, ValueError, OverflowError):
            pass
    return uid


def get_proc_string_data(hostfs: Resolver, pid: int) -> Tuple[str, str]:
    """Return the executable path and working directory of a process."""
    try:
        exe = os.readlink(_pid_path(hostfs, pid, "exe"))
    except OSError as exc:
        raise _wrap(exc, f"error fetching exe from pid {pid}") from exc
    try:
        cwd = os.readlink(_pid_path(hostfs, pid, "cwd"))
    except OSError as exc:
        raise _wrap(exc, f"error fetching cwd for pid {pid}") from exc
    return exe, cwd