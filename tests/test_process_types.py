from datetime import datetime, timedelta, timezone

import pytest

from agentsysmetrics.numcpu import num_cpu
from agentsysmetrics.process_types import (
    CPUTicks,
    CPUTotal,
    MemBytePct,
    ProcCPUInfo,
    ProcessNotExistError,
    ProcFDInfo,
    ProcLimits,
    ProcMemInfo,
    ProcState,
    ProcStateRootEvent,
    PidState,
    get_proc_cpu_percentage,
    get_proc_mem_percentage,
    get_proc_state,
    round_metric,
    unix_time_ms_to_time,
)


def _cpu_state(user, system, total, sample_time):
    return ProcState(
        cpu=ProcCPUInfo(
            user=CPUTicks(ticks=user),
            system=CPUTicks(ticks=system),
            total=CPUTotal(ticks=total),
        ),
        sample_time=sample_time,
    )


def test_proc_mem_percentage():
    p = ProcState(
        pid=3456,
        memory=ProcMemInfo(rss=MemBytePct(bytes=1416), size=145164088),
    )
    assert get_proc_mem_percentage(p, 10000) == 0.1416


def test_proc_mem_percentage_zero_total_is_none():
    p = ProcState(memory=ProcMemInfo(rss=MemBytePct(bytes=1416)))
    assert get_proc_mem_percentage(p, 0) is None


def test_proc_cpu_percentage():
    now = datetime.now(timezone.utc)
    p1 = _cpu_state(11345, 37, 11382, now)
    p2 = _cpu_state(14794, 47, 14841, now + timedelta(seconds=1))

    new_state = get_proc_cpu_percentage(p1, p2)

    assert new_state.cpu.total.pct == 3.459
    assert new_state.cpu.total.norm_pct == pytest.approx(3.459 / num_cpu(), abs=5e-5)
    assert p2.cpu.total.pct is None


def test_proc_cpu_percentage_missing_ticks_returns_s1():
    now = datetime.now(timezone.utc)
    p1 = _cpu_state(1, 1, None, now)
    p2 = _cpu_state(5, 5, 10, now + timedelta(seconds=1))
    result = get_proc_cpu_percentage(p1, p2)
    assert result is p2
    assert result.cpu.total.pct is None


def test_proc_cpu_percentage_no_elapsed_time_returns_s1():
    now = datetime.now(timezone.utc)
    p1 = _cpu_state(1, 1, 10, now)
    p2 = _cpu_state(1, 1, 10, now)
    result = get_proc_cpu_percentage(p1, p2)
    assert result.cpu.total.pct is None


@pytest.mark.parametrize(
    "value, expected",
    [(0.1416, 0.1416), (3.459, 3.459), (1.23456, 1.2346), (1.23454, 1.2345), (-1.23456, -1.2346)],
)
def test_round_metric(value, expected):
    assert round_metric(value) == expected


@pytest.mark.parametrize(
    "ms, expected",
    [(0, "1970-01-01T00:00:00.000Z"), (1500000000123, "2017-07-14T02:40:00.123Z")],
)
def test_unix_time_ms_to_time(ms, expected):
    assert unix_time_ms_to_time(ms) == expected


@pytest.mark.parametrize(
    "code, expected",
    [
        ("S", PidState.SLEEPING),
        ("R", PidState.RUNNING),
        ("D", PidState.DISK_SLEEP),
        ("x", PidState.DEAD),
        ("X", PidState.DEAD),
        ("P", PidState.PARKED),
        ("?", PidState.UNKNOWN),
    ],
)
def test_get_proc_state(code, expected):
    assert get_proc_state(code) is expected


def test_pid_state_values():
    assert get_proc_state("D").value == "disk_sleep"
    assert get_proc_state("K").value == "wakekill"
    assert get_proc_state("W").value == "waking"


def test_process_not_exist_error():
    err = ProcessNotExistError()
    assert isinstance(err, ProcessLookupError)
    assert "process does not exist" in str(err)


def _full_state():
    return ProcState(
        name="agent",
        state=PidState.RUNNING,
        username="user",
        pid=42,
        ppid=1,
        pgid=42,
        args=["agent", "-v"],
        cmdline="agent -v",
        cwd="/tmp",
        exe="/usr/bin/agent",
        env={"HOME": "/home/user"},
        memory=ProcMemInfo(size=100, share=10, rss=MemBytePct(bytes=50, pct=0.5)),
        cpu=ProcCPUInfo(
            start_time="2017-07-14T02:40:00.123Z",
            total=CPUTotal(value=30.0, ticks=30, pct=0.2, norm_pct=0.05),
            user=CPUTicks(ticks=20),
            system=CPUTicks(ticks=10),
        ),
        fd=ProcFDInfo(open=5, limit=ProcLimits(soft=1024, hard=4096)),
    )


def test_format_for_root_moves_fields():
    state = _full_state()
    root = state.format_for_root()

    assert root.to_dict() == {
        "process": {
            "command_line": "agent -v",
            "state": "running",
            "cpu": {"start_time": "2017-07-14T02:40:00.123Z", "pct": 0.05},
            "memory": {"pct": 0.5},
            "working_directory": "/tmp",
            "executable": "/usr/bin/agent",
            "args": ["agent", "-v"],
            "name": "agent",
            "pid": 42,
            "parent": {"pid": 1},
            "pgid": 42,
        },
        "user": {"name": "user"},
    }
    assert state.name == ""
    assert state.pid is None
    assert state.ppid is None
    assert state.pgid is None
    assert state.username == ""
    assert state.cwd == ""
    assert state.exe == ""
    assert state.args == []
    assert state.cmdline == "agent -v"


def test_to_dict_after_root_format():
    state = _full_state()
    state.format_for_root()
    assert state.to_dict() == {
        "state": "running",
        "cmdline": "agent -v",
        "env": {"HOME": "/home/user"},
        "memory": {"size": 100, "share": 10, "rss": {"bytes": 50, "pct": 0.5}},
        "cpu": {
            "start_time": "2017-07-14T02:40:00.123Z",
            "total": {"value": 30.0, "ticks": 30, "pct": 0.2, "norm": {"pct": 0.05}},
            "user": {"ticks": 20},
            "system": {"ticks": 10},
        },
        "fd": {"open": 5, "limit": {"soft": 1024, "hard": 4096}},
    }


def test_to_dict_empty_state_is_empty():
    assert ProcState().to_dict() == {}


def test_to_dict_keeps_zero_values():
    state = ProcState(pid=0, fd=ProcFDInfo(open=0))
    assert state.to_dict() == {"pid": 0, "fd": {"open": 0}}


def test_root_event_empty():
    assert ProcStateRootEvent().to_dict() == {}