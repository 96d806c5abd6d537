"""Process state records, their event layouts, and derived percentages."""

from __future__ import annotations

import copy
import enum
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .numcpu import num_cpu

__all__ = [
    "ProcessNotExistError",
    "PidState",
    "PID_STATES",
    "IncludeTopConfig",
    "CPUTicks",
    "CPUTotal",
    "ProcCPUInfo",
    "MemBytePct",
    "ProcMemInfo",
    "ProcLimits",
    "ProcFDInfo",
    "ProcState",
    "ProcStateRootEvent",
    "get_proc_state",
    "round_metric",
    "unix_time_ms_to_time",
    "get_proc_mem_percentage",
    "get_proc_cpu_percentage",
]

_UINT64_LIMIT = 1 << 64
_INT64_SIGN = 1 << 63
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ProcessNotExistError(ProcessLookupError):
    """A process was not found."""

    def __init__(self, message: str = "process does not exist") -> None:
        super().__init__(message)


class PidState(str, enum.Enum):
    """Scheduler states a process can be in."""

    DEAD = "dead"
    RUNNING = "running"
    SLEEPING = "sleeping"
    IDLE = "idle"
    DISK_SLEEP = "disk_sleep"
    STOPPED = "stopped"
    ZOMBIE = "zombie"
    WAKE_KILL = "wakekill"
    WAKING = "waking"
    PARKED = "parked"
    UNKNOWN = "unknown"


PID_STATES: Dict[str, PidState] = {
    "S": PidState.SLEEPING,
    "R": PidState.RUNNING,
    "D": PidState.DISK_SLEEP,
    "I": PidState.IDLE,
    "T": PidState.STOPPED,
    "Z": PidState.ZOMBIE,
    "X": PidState.DEAD,
    "x": PidState.DEAD,
    "K": PidState.WAKE_KILL,
    "W": PidState.WAKING,
    "P": PidState.PARKED,
}


def get_proc_state(code: str) -> PidState:
    """Map a one-letter state code from /proc to a PidState."""
    return PID_STATES.get(code, PidState.UNKNOWN)


@dataclass
class IncludeTopConfig:
    """Configuration for keeping only the top N processes."""

    enabled: bool = False
    by_cpu: int = 0
    by_memory: int = 0


@dataclass
class CPUTicks:
    """A tick count for one kind of CPU time."""

    ticks: Optional[int] = None


@dataclass
class CPUTotal:
    """Total CPU metrics of a process."""

    value: Optional[float] = None
    ticks: Optional[int] = None
    pct: Optional[float] = None
    norm_pct: Optional[float] = None


@dataclass
class ProcCPUInfo:
    """CPU metrics of a process."""

    start_time: str = ""
    total: CPUTotal = field(default_factory=CPUTotal)
    user: CPUTicks = field(default_factory=CPUTicks)
    system: CPUTicks = field(default_factory=CPUTicks)


@dataclass
class MemBytePct:
    """A memory amount in bytes and as a fraction of the total."""

    bytes: Optional[int] = None
    pct: Optional[float] = None


@dataclass
class ProcMemInfo:
    """Memory metrics of a process."""

    size: Optional[int] = None
    share: Optional[int] = None
    rss: MemBytePct = field(default_factory=MemBytePct)


@dataclass
class ProcLimits:
    """Soft and hard limits on open file descriptors."""

    soft: Optional[int] = None
    hard: Optional[int] = None


@dataclass
class ProcFDInfo:
    """File descriptor metrics of a process."""

    open: Optional[int] = None
    limit: ProcLimits = field(default_factory=ProcLimits)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (
        isinstance(value, (list, dict, tuple)) and not value
    )


def _compact(**items: Any) -> Dict[str, Any]:
    """Keep the items whose values are not empty."""
    return {key: value for key, value in items.items() if not _is_empty(value)}


def _pct(value: Optional[float]) -> Dict[str, Any]:
    return _compact(pct=value)


@dataclass
class ProcStateRootEvent:
    """Top-level event fields copied out of a process state."""

    command_line: str = ""
    state: Optional[PidState] = None
    cpu_start_time: str = ""
    cpu_pct: Optional[float] = None
    memory_pct: Optional[float] = None
    working_directory: str = ""
    executable: str = ""
    args: List[str] = field(default_factory=list)
    name: str = ""
    pid: Optional[int] = None
    parent_pid: Optional[int] = None
    pgid: Optional[int] = None
    user_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Render as nested process and user fields, leaving out empty ones."""
        process = _compact(
            command_line=self.command_line,
            state=self.state.value if self.state is not None else None,
            cpu=_compact(start_time=self.cpu_start_time, pct=self.cpu_pct),
            memory=_pct(self.memory_pct),
            working_directory=self.working_directory,
            executable=self.executable,
            args=list(self.args),
            name=self.name,
            pid=self.pid,
            parent=_compact(pid=self.parent_pid),
            pgid=self.pgid,
        )
        return _compact(process=process, user=_compact(name=self.user_name))


@dataclass
class ProcState:
    """Information and metrics of one process."""

    name: str = ""
    state: Optional[PidState] = None
    username: str = ""
    pid: Optional[int] = None
    ppid: Optional[int] = None
    pgid: Optional[int] = None

    args: List[str] = field(default_factory=list)
    cmdline: str = ""
    cwd: str = ""
    exe: str = ""
    env: Optional[Dict[str, str]] = None

    memory: ProcMemInfo = field(default_factory=ProcMemInfo)
    cpu: ProcCPUInfo = field(default_factory=ProcCPUInfo)
    fd: ProcFDInfo = field(default_factory=ProcFDInfo)

    cgroup: Optional[Dict[str, Any]] = None

    sample_time: Optional[datetime] = None

    def format_for_root(self) -> ProcStateRootEvent:
        """Move identifying fields into a root event and return it.

        Name, pid, ppid, pgid, username, cwd, exe and args are cleared here;
        the command line, state, start time and percentages are copied.
        """
        root = ProcStateRootEvent(
            name=self.name,
            pid=self.pid,
            parent_pid=self.ppid,
            pgid=self.pgid,
            user_name=self.username,
            command_line=self.cmdline,
            state=self.state,
            cpu_start_time=self.cpu.start_time,
            cpu_pct=self.cpu.total.norm_pct,
            memory_pct=self.memory.rss.pct,
            working_directory=self.cwd,
            executable=self.exe,
            args=self.args,
        )
        self.name = ""
        self.pid = None
        self.ppid = None
        self.pgid = None
        self.username = ""
        self.cwd = ""
        self.exe = ""
        self.args = []
        return root

    def to_dict(self) -> Dict[str, Any]:
        """Render as a nested event, leaving out empty fields."""
        cpu = self.cpu
        memory = _compact(
            size=self.memory.size,
            share=self.memory.share,
            rss=_compact(bytes=self.memory.rss.bytes, pct=self.memory.rss.pct),
        )
        cpu_dict = _compact(
            start_time=cpu.start_time,
            total=_compact(
                value=cpu.total.value,
                ticks=cpu.total.ticks,
                pct=cpu.total.pct,
                norm=_pct(cpu.total.norm_pct),
            ),
            user=_compact(ticks=cpu.user.ticks),
            system=_compact(ticks=cpu.system.ticks),
        )
        fd = _compact(
            open=self.fd.open,
            limit=_compact(soft=self.fd.limit.soft, hard=self.fd.limit.hard),
        )
        return _compact(
            name=self.name,
            state=self.state.value if self.state is not None else None,
            username=self.username,
            pid=self.pid,
            ppid=self.ppid,
            pgid=self.pgid,
            args=list(self.args),
            cmdline=self.cmdline,
            cwd=self.cwd,
            exe=self.exe,
            env=dict(self.env) if self.env else None,
            memory=memory,
            cpu=cpu_dict,
            fd=fd,
            cgroup=dict(self.cgroup) if self.cgroup else None,
        )


def round_metric(value: float) -> float:
    """Round to four decimal places, halves going up."""
    if not math.isfinite(value):
        return value
    digit = value * 10_000
    fraction = digit - math.trunc(digit)
    rounded = math.ceil(digit) if fraction >= 0.5 else math.floor(digit)
    return rounded / 10_000


def unix_time_ms_to_time(unix_time_ms: int) -> str:
    """Format milliseconds since the Unix epoch as a UTC timestamp string."""
    moment = _EPOCH + timedelta(milliseconds=unix_time_ms)
    millis = moment.microsecond // 1000
    return moment.strftime("%Y-%m-%dT%H:%M:%S") + f".{millis:03d}Z"


def get_proc_mem_percentage(proc: ProcState, total_phy_mem: int) -> Optional[float]:
    """Return RSS as a fraction of total memory, or None if the total is 0."""
    if total_phy_mem == 0:
        return None
    rss = proc.memory.rss.bytes or 0
    return round_metric(rss / total_phy_mem)


def _millis_toward_zero(delta: timedelta) -> int:
    micros = (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds
    return micros // 1000 if micros >= 0 else -((-micros) // 1000)


def get_proc_cpu_percentage(s0: ProcState, s1: ProcState) -> ProcState:
    """Return a copy of ``s1`` with CPU percentages since ``s0`` filled in.

    The raw percentage ranges over [0, cores]; the normalized one over [0, 1].
    ``s1`` itself is returned unchanged when ticks or sample times are missing
    or when no time and no CPU time passed.
    """
    if s0.cpu.total.ticks is None or s1.cpu.total.ticks is None:
        return s1
    if s0.sample_time is None or s1.sample_time is None:
        return s1

    time_delta_ms = _millis_toward_zero(s1.sample_time - s0.sample_time)
    cpu_delta = (s1.cpu.total.ticks - s0.cpu.total.ticks) % _UINT64_LIMIT
    if cpu_delta >= _INT64_SIGN:
        cpu_delta -= _UINT64_LIMIT

    if time_delta_ms == 0:
        if cpu_delta == 0:
            return s1
        pct = math.copysign(math.inf, cpu_delta)
    else:
        pct = cpu_delta / time_delta_ms
    normalized = pct / num_cpu()

    result = copy.deepcopy(s1)
    result.cpu.total.norm_pct = round_metric(normalized)
    result.cpu.total.pct = round_metric(pct)
    return result