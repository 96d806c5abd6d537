"""Accurate counting of the system's logical CPUs."""

from __future__ import annotations

import logging
import os
import re
import sys
from pathlib import Path
from typing import Optional

__all__ = ["num_cpu", "get_cpu", "parse_cpu_list", "parse_cpu_range"]

_log = logging.getLogger(__name__)

_ONLINE_PATH = "/sys/devices/system/cpu/online"
_PRESENT_PATH = "/sys/devices/system/cpu/present"
_PRESENT_ENV = "LINUX_CPU_COUNT_PRESENT"

_RANGE_RE = re.compile(r"\s*([+-]?\d+)-\s*([+-]?\d+)")


def _runtime_cpu_count() -> int:
    """CPUs this process may run on, as the scheduler reports them."""
    try:
        return len(os.sched_getaffinity(0))
    except (AttributeError, OSError):
        return os.cpu_count() or 1


def num_cpu() -> int:
    """Return the system CPU count, falling back to the runtime count."""
    try:
        count = get_cpu()
    except (OSError, ValueError) as exc:
        _log.debug("Error fetching CPU count: %s", exc)
        return _runtime_cpu_count()
    if count is None:
        _log.debug(
            "Accurate CPU counts not available on platform, "
            "falling back to the runtime CPU count for metrics"
        )
        return _runtime_cpu_count()
    return count


def get_cpu() -> Optional[int]:
    """Read the CPU count from sysfs.

    Returns None when the platform offers no such count. Counts online CPUs,
    or present CPUs when LINUX_CPU_COUNT_PRESENT is set.
    """
    if not sys.platform.startswith("linux"):
        return None

    cpu_path = _PRESENT_PATH if _PRESENT_ENV in os.environ else _ONLINE_PATH
    try:
        raw = Path(cpu_path).read_text()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise OSError(f"error reading file {cpu_path}: {exc}") from exc

    try:
        return parse_cpu_list(raw)
    except ValueError as exc:
        raise ValueError(f"error parsing file {cpu_path}: {exc}") from exc


def parse_cpu_list(raw: str) -> int:
    """Count the CPUs in a sysfs list such as '0-1,3'."""
    count = 0
    for part in raw.split(","):
        if "-" in part:
            try:
                count += parse_cpu_range(part)
            except ValueError as exc:
                raise ValueError(f"error parsing line {part}: {exc}") from exc
        else:
            count += 1
    return count


def parse_cpu_range(cpu_range: str) -> int:
    """Count the CPUs in an inclusive range such as '4-31'."""
    match = _RANGE_RE.match(cpu_range)
    if match is None:
        raise ValueError(f"error reading from range {cpu_range!r}")
    first, last = int(match.group(1)), int(match.group(2))
    return (last - first) + 1