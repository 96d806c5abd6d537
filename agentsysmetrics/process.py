"""Collection of per-process metrics with filtering and history tracking."""

from __future__ import annotations

import copy
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Tuple

from .process_types import (
    IncludeTopConfig,
    PidState,
    ProcessNotExistError,
    ProcState,
    get_proc_cpu_percentage,
    get_proc_mem_percentage,
    round_metric,
)
from .procfs import fill_pid_metrics, get_info_for_pid, list_pids
from .resolve import Resolver, new_test_resolver

__all__ = ["ProcsTrack", "Stats", "list_states", "get_pid_state"]

_log = logging.getLogger(__name__)


def _wrap(exc: Exception, message: str) -> Exception:
    """Build an exception of the same kind with added context."""
    text = f"{message}: {exc}"
    try:
        return type(exc)(text)
    except TypeError:
        base = OSError if isinstance(exc, OSError) else ValueError
        return base(text)


class ProcsTrack:
    """Thread-safe store of the last known state of each process."""

    def __init__(self) -> None:
        self._pids: Dict[int, ProcState] = {}
        self._lock = threading.Lock()

    def get_pid(self, pid: int) -> Optional[ProcState]:
        """Return the stored state of a process, or None."""
        with self._lock:
            return self._pids.get(pid)

    def set_pid(self, pid: int, state: ProcState) -> None:
        """Store the state of one process."""
        with self._lock:
            self._pids[pid] = state

    def set_map(self, pids: Dict[int, ProcState]) -> None:
        """Replace all stored states."""
        with self._lock:
            self._pids = dict(pids)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pids)


def _compile_all(patterns: List[str], what: str) -> List[Pattern[str]]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as exc:
            raise ValueError(f"failed to compile {what} [{pattern}]: {exc}") from exc
    return compiled


def _total_physical_memory(hostfs: Resolver) -> int:
    """Total physical memory in bytes from meminfo, or 0 when unknown."""
    path = hostfs.join("proc", "meminfo")
    try:
        text = Path(path).read_text()
    except OSError as exc:
        _log.warning("Getting memory details: %s", exc)
        return 0
    for line in text.splitlines():
        key, sep, rest = line.partition(":")
        if not sep or key.strip() != "MemTotal":
            continue
        parts = rest.split()
        if parts and parts[0].isdigit():
            value = int(parts[0])
            if len(parts) > 1 and parts[1].lower() == "kb":
                value *= 1024
            return value
    _log.warning("Getting memory details: no MemTotal in %s", path)
    return 0


@dataclass(eq=False)
class Stats:
    """Configuration and state for collecting process metrics."""

    hostfs: Optional[Resolver] = None
    procs: List[str] = field(default_factory=list)
    procs_map: ProcsTrack = field(default_factory=ProcsTrack)
    cpu_ticks: bool = False
    env_whitelist: List[str] = field(default_factory=list)
    cache_cmd_line: bool = False
    include_top: IncludeTopConfig = field(default_factory=IncludeTopConfig)

    _skip_extended: bool = field(default=False, init=False, repr=False)
    _proc_regexps: List[Pattern[str]] = field(
        default_factory=list, init=False, repr=False
    )
    _env_regexps: List[Pattern[str]] = field(
        default_factory=list, init=False, repr=False
    )

    @property
    def _resolver(self) -> Resolver:
        return self.hostfs if self.hostfs is not None else new_test_resolver("/")

    def init(self) -> None:
        """Prepare for collection; raises ValueError on a bad pattern."""
        if self.hostfs is None:
            self.hostfs = new_test_resolver("/")
        self.procs_map = ProcsTrack()
        if not self.procs:
            return
        self._proc_regexps = _compile_all(self.procs, "regexp")
        self._env_regexps = _compile_all(self.env_whitelist, "env whitelist regexp")

    def fetch_pids(self) -> Tuple[Dict[int, ProcState], List[ProcState]]:
        """Read every process that passes the name filter."""
        try:
            pids = list_pids(self._resolver)
        except OSError as exc:
            raise _wrap(exc, "error gathering PIDs") from exc
        proc_map: Dict[int, ProcState] = {}
        plist: List[ProcState] = []
        for pid in pids:
            try:
                status, saved = self._pid_fill(pid, True)
            except (OSError, ValueError) as exc:
                _log.debug("Error fetching PID info for %d, skipping: %s", pid, exc)
                continue
            if not saved:
                _log.debug(
                    "Process name does not match the provided regex; PID=%d; name=%s",
                    pid,
                    status.name,
                )
                continue
            proc_map[pid] = status
            plist.append(status)
        return proc_map, plist

    def get(self) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """Return process events and their root events for matching processes."""
        if not self.procs:
            return [], []

        pid_map, plist = self.fetch_pids()
        self.procs_map.set_map(pid_map)
        plist = self.include_top_processes(plist)

        total_phy_mem = _total_physical_memory(self._resolver)

        events: List[Dict[str, Any]] = []
        roots: List[Dict[str, Any]] = []
        for tracked in plist:
            process = copy.deepcopy(tracked)
            process.memory.rss.pct = get_proc_mem_percentage(process, total_phy_mem)
            roots.append(process.format_for_root().to_dict())
            events.append(self._process_event(process))
        return events, roots

    def get_one(self, pid: int) -> Dict[str, Any]:
        """Return the event of one process, without name filtering."""
        try:
            state, _ = self._pid_fill(pid, False)
        except (OSError, ValueError) as exc:
            raise _wrap(exc, f"error fetching PID {pid}") from exc
        self.procs_map.set_pid(pid, state)
        return self._process_event(copy.deepcopy(state))

    def get_self(self) -> ProcState:
        """Return the state of the current process."""
        pid = os.getpid()
        try:
            state, _ = self._pid_fill(pid, False)
        except (OSError, ValueError) as exc:
            raise _wrap(exc, f"error fetching PID {pid}") from exc
        self.procs_map.set_pid(pid, state)
        return copy.deepcopy(state)

    def match_process(self, name: str) -> bool:
        """True if the name matches any of the process patterns."""
        return any(regex.search(name) for regex in self._proc_regexps)

    def include_top_processes(self, processes: List[ProcState]) -> List[ProcState]:
        """Keep only the top processes by CPU and by memory, if configured."""
        top = self.include_top
        if not top.enabled or (top.by_cpu == 0 and top.by_memory == 0):
            return processes

        result: List[ProcState] = []
        if top.by_cpu > 0:
            by_cpu = sorted(
                processes, key=lambda p: p.cpu.total.pct or 0.0, reverse=True
            )
            result.extend(by_cpu[: top.by_cpu])

        if top.by_memory > 0:
            by_memory = sorted(
                processes, key=lambda p: p.memory.rss.bytes or 0, reverse=True
            )
            for proc in by_memory[: top.by_memory]:
                if all(existing.pid != proc.pid for existing in result):
                    result.append(proc)
        return result

    def is_whitelisted_env_var(self, name: str) -> bool:
        """True if the variable name matches the whitelist; False if it is empty."""
        return any(regex.search(name) for regex in self._env_regexps)

    def _pid_fill(self, pid: int, apply_filter: bool) -> Tuple[ProcState, bool]:
        """Read a process; the flag is False only if the name filter rejected it."""
        hostfs = self._resolver
        try:
            status = get_info_for_pid(hostfs, pid)
        except (OSError, ValueError) as exc:
            raise _wrap(exc, "GetInfoForPid") from exc
        if self._skip_extended:
            return status, True

        status = self._cache_cmd_line(status)
        if apply_filter and not self.match_process(status.name):
            return status, False

        try:
            status = fill_pid_metrics(hostfs, pid, status, self.is_whitelisted_env_var)
        except (OSError, ValueError) as exc:
            raise _wrap(exc, "FillPidMetrics") from exc
        if status.args and not status.cmdline:
            status.cmdline = " ".join(status.args)

        last = self.procs_map.get_pid(status.pid or 0)
        status.sample_time = datetime.now(timezone.utc)
        if status.cpu.total.ticks is not None:
            status.cpu.total.value = round_metric(float(status.cpu.total.ticks))
        if last is not None:
            status = get_proc_cpu_percentage(last, status)
        return status, True

    def _cache_cmd_line(self, state: ProcState) -> ProcState:
        """Reuse arguments and environment stored from an earlier sample."""
        previous = self.procs_map.get_pid(state.pid or 0)
        if previous is not None:
            if self.cache_cmd_line:
                state.args = list(previous.args)
                state.cmdline = previous.cmdline
            state.env = dict(previous.env) if previous.env is not None else None
        return state

    def _process_event(self, process: ProcState) -> Dict[str, Any]:
        if not self.cpu_ticks:
            process.cpu.user.ticks = None
            process.cpu.system.ticks = None
            process.cpu.total.ticks = None
        return process.to_dict()


def list_states(hostfs: Resolver) -> List[ProcState]:
    """List all processes with only their basic information filled in."""
    stats = Stats(hostfs=hostfs, procs=[".*"])
    stats._skip_extended = True
    try:
        stats.init()
    except ValueError as exc:
        raise ValueError(f"error initializing process collectors: {exc}") from exc
    _, plist = stats.fetch_pids()
    return plist


def _pid_exists(hostfs: Resolver, pid: int) -> bool:
    if pid <= 0:
        raise ValueError(f"invalid pid {pid}")
    if os.name != "posix":
        return os.path.exists(hostfs.join("proc", str(pid)))
    try:
        os.kill(pid, 0)
    except (ProcessLookupError, OverflowError):
        return False
    except PermissionError:
        return True
    return True


def get_pid_state(hostfs: Resolver, pid: int) -> PidState:
    """Return the scheduler state of a process.

    Raises ProcessNotExistError when there is no such process.
    """
    try:
        exists = _pid_exists(hostfs, pid)
    except (OSError, ValueError) as exc:
        raise _wrap(exc, f"Error trying to find process: {pid}") from exc
    if not exists:
        raise ProcessNotExistError()
    try:
        state = get_info_for_pid(hostfs, pid)
    except (OSError, ValueError) as exc:
        raise _wrap(exc, f"error getting state info for pid {pid}") from exc
    return state.state if state.state is not None else PidState.UNKNOWN