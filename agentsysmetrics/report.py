"""Self-monitoring metrics of the running agent, organised in registries."""

from __future__ import annotations

import enum
import gc
import logging
import os
import sys
import threading
import time
import tracemalloc
import uuid
from typing import Any, Callable, Dict, Mapping, Optional, Union

from .numcpu import num_cpu
from .process import Stats
from .process_types import IncludeTopConfig, round_metric

try:
    import resource
except ImportError:  # not available on every platform
    resource = None  # type: ignore[assignment]

__all__ = [
    "Mode",
    "Registry",
    "DEFAULT_REGISTRY",
    "process_metrics",
    "system_metrics",
    "MONITORING_CGROUPS_HIERARCHY_OVERRIDE",
    "ephemeral_id",
    "mem_stats_reporter",
    "instance_cpu_reporter",
    "fd_usage_reporter",
    "report_system_load_average",
    "report_system_cpu_usage",
    "report_runtime",
    "info_reporter",
    "process_name",
    "setup_metrics",
]

_log = logging.getLogger(__name__)

# Undocumented variable overriding the cgroups path under /sys/fs/cgroup.
MONITORING_CGROUPS_HIERARCHY_OVERRIDE = "LIBBEAT_MONITORING_CGROUPS_HIERARCHY_OVERRIDE"


class Mode(enum.IntEnum):
    """How much detail a reporter should produce."""

    REPORTED = 0
    FULL = 1


Reporter = Callable[[Mode], Mapping[str, Any]]


class Registry:
    """A named tree of sub-registries and reporter functions."""

    def __init__(self) -> None:
        self._entries: Dict[str, Union["Registry", Reporter]] = {}
        self._lock = threading.Lock()

    def _add(self, name: str, entry: Union["Registry", Reporter]) -> None:
        with self._lock:
            if name in self._entries:
                raise ValueError(f"name {name!r} is already registered")
            self._entries[name] = entry

    def new_registry(self, name: str) -> "Registry":
        """Create, attach and return a child registry."""
        child = Registry()
        self._add(name, child)
        return child

    def new_func(self, name: str, func: Reporter) -> None:
        """Attach a reporter; it is called with the mode on every snapshot."""
        self._add(name, func)

    def snapshot(self, mode: Mode) -> Dict[str, Any]:
        """Collect the current values of all entries as a nested dict."""
        with self._lock:
            entries = list(self._entries.items())
        result: Dict[str, Any] = {}
        for name, entry in entries:
            if isinstance(entry, Registry):
                result[name] = entry.snapshot(mode)
            else:
                result[name] = dict(entry(mode))
        return result

    def do(self, mode: Mode, callback: Callable[[str, Any], None]) -> None:
        """Call ``callback`` with each dotted key and leaf value."""
        _flatten("", self.snapshot(mode), callback)


def _flatten(
    prefix: str, data: Mapping[str, Any], callback: Callable[[str, Any], None]
) -> None:
    for key, value in data.items():
        full_key = f"{prefix}.{key}" if prefix else key
        if isinstance(value, Mapping):
            _flatten(full_key, value, callback)
        else:
            callback(full_key, value)


DEFAULT_REGISTRY = Registry()
process_metrics = DEFAULT_REGISTRY.new_registry("beat")
system_metrics = DEFAULT_REGISTRY.new_registry("system")

_start_time = time.monotonic()
_ephemeral_id = uuid.uuid4()
_process_stats: Optional[Stats] = None


def ephemeral_id() -> uuid.UUID:
    """Return the random identifier generated for this run."""
    return _ephemeral_id


def _max_rss_bytes() -> int:
    if resource is None:
        return 0
    max_rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    return max_rss if sys.platform == "darwin" else max_rss * 1024


def mem_stats_reporter(process_stats: Stats) -> Reporter:
    """Build a reporter for interpreter allocation figures and process RSS."""

    def report(mode: Mode) -> Dict[str, Any]:
        current, peak = (
            tracemalloc.get_traced_memory() if tracemalloc.is_tracing() else (0, 0)
        )
        values: Dict[str, Any] = {"memory_total": peak}
        if mode == Mode.FULL:
            values["memory_alloc"] = current
            values["memory_sys"] = _max_rss_bytes()
            values["gc_next"] = max(gc.get_threshold()[0] - gc.get_count()[0], 0)
        try:
            state = process_stats.get_self()
        except (OSError, ValueError) as exc:
            _log.error("Error while getting memory usage: %s", exc)
            return values
        values["rss"] = state.memory.rss.bytes or 0
        return values

    return report


def instance_cpu_reporter(process_stats: Stats) -> Reporter:
    """Build a reporter for the CPU time used by this process."""

    def report(_mode: Mode) -> Dict[str, Any]:
        try:
            state = process_stats.get_self()
        except (OSError, ValueError) as exc:
            _log.error("Error retrieving CPU percentages: %s", exc)
            return {}
        cpu = state.cpu
        user = cpu.user.ticks or 0
        system = cpu.system.ticks or 0
        total = cpu.total.ticks or 0
        return {
            "user": {"ticks": user, "time": {"ms": user}},
            "system": {"ticks": system, "time": {"ms": system}},
            "total": {
                "value": cpu.total.value or 0.0,
                "ticks": total,
                "time": {"ms": total},
            },
        }

    return report


def fd_usage_reporter(process_stats: Stats) -> Reporter:
    """Build a reporter for open file descriptors and their limits."""

    def report(_mode: Mode) -> Dict[str, Any]:
        try:
            state = process_stats.get_self()
        except (OSError, ValueError) as exc:
            _log.error("Error while retrieving FD information: %s", exc)
            return {}
        fd = state.fd
        return {
            "open": fd.open or 0,
            "limit": {"hard": fd.limit.hard or 0, "soft": fd.limit.soft or 0},
        }

    return report


def report_system_load_average(mode: Mode) -> Dict[str, Any]:
    """Report the system load averages, raw and divided by the CPU count."""
    del mode  # the same figures are reported in every mode
    try:
        one, five, fifteen = os.getloadavg()
    except (AttributeError, OSError) as exc:
        _log.error("Error retrieving load average: %s", exc)
        return {}
    cores = num_cpu()
    return {
        "1": round_metric(one),
        "5": round_metric(five),
        "15": round_metric(fifteen),
        "norm": {
            "1": round_metric(one / cores),
            "5": round_metric(five / cores),
            "15": round_metric(fifteen / cores),
        },
    }


def report_system_cpu_usage(mode: Mode) -> Dict[str, Any]:
    """Report the number of CPU cores."""
    del mode
    return {"cores": num_cpu()}


def report_runtime(mode: Mode) -> Dict[str, Any]:
    """Report the number of live threads."""
    del mode
    return {"threads": threading.active_count()}


def info_reporter(service_name: str, version: str) -> Reporter:
    """Build a reporter for uptime, run identifier, name and version."""

    def report(_mode: Mode) -> Dict[str, Any]:
        uptime_ms = int((time.monotonic() - _start_time) * 1000)
        return {
            "uptime": {"ms": uptime_ms},
            "ephemeral_id": str(_ephemeral_id),
            "name": service_name,
            "version": version,
        }

    return report


def _is_linux() -> bool:
    return sys.platform.startswith("linux")


def _is_darwin() -> bool:
    return sys.platform == "darwin"


def _is_windows() -> bool:
    return sys.platform in ("win32", "cygwin")


def _is_freebsd() -> bool:
    return sys.platform.startswith("freebsd")


def process_name(name: str) -> str:
    """Truncate to 15 characters where the kernel limits process names."""
    if (_is_linux() or _is_darwin()) and len(name) > 15:
        return name[:15]
    return name


def setup_metrics(name: str, version: str) -> None:
    """Register the system and process reporters in the default registry."""
    global _process_stats

    if not (_is_linux() or _is_darwin() or _is_windows() or _is_freebsd()):
        _log.warning("Metrics not implemented for this OS.")
        return

    system_metrics.new_func("cpu", report_system_cpu_usage)

    name = process_name(name)
    stats = Stats(
        procs=[name],
        env_whitelist=[],
        cpu_ticks=True,
        cache_cmd_line=True,
        include_top=IncludeTopConfig(),
    )
    try:
        stats.init()
    except (OSError, ValueError) as exc:
        raise ValueError(f"failed to init process stats for agent: {exc}") from exc
    _process_stats = stats

    process_metrics.new_func("memstats", mem_stats_reporter(stats))
    process_metrics.new_func("cpu", instance_cpu_reporter(stats))
    process_metrics.new_func("runtime", report_runtime)
    process_metrics.new_func("info", info_reporter(name, version))

    if not _is_windows():
        system_metrics.new_func("load", report_system_load_average)
    if _is_linux() or _is_freebsd():
        process_metrics.new_func("handles", fd_usage_reporter(stats))