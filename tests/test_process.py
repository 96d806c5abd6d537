import os
import time
from pathlib import Path

import pytest

from agentsysmetrics.process import ProcsTrack, Stats, get_pid_state, list_states
from agentsysmetrics.process_types import (
    CPUTotal,
    IncludeTopConfig,
    MemBytePct,
    PidState,
    ProcCPUInfo,
    ProcessNotExistError,
    ProcMemInfo,
    ProcState,
)
from agentsysmetrics.resolve import new_test_resolver

LIMITS = (
    "Limit                     Soft Limit           Hard Limit           Units     \n"
    "Max cpu time              unlimited            unlimited            seconds   \n"
    "Max open files            1024                 4096                 files     \n"
)


def _write_system(root: Path) -> None:
    proc = root / "proc"
    proc.mkdir(parents=True, exist_ok=True)
    (proc / "stat").write_text("cpu  1 2 3 4\nbtime 1600000000\n")
    (proc / "meminfo").write_text("MemTotal:        1000 kB\nMemFree:  10 kB\n")


def _write_proc(
    root: Path,
    pid: int,
    name: str = "prog",
    state: str = "S",
    rss_pages: int = 50,
    cmdline: bytes = b"prog\0--flag\0",
) -> None:
    d = root / "proc" / str(pid)
    d.mkdir(parents=True)
    rest = (
        [state, "1", str(pid)]
        + ["0"] * 8
        + ["150", "50"]
        + ["0"] * 6
        + ["1000"]
        + ["0"] * 20
    )
    (d / "stat").write_text(f"{pid} ({name}) " + " ".join(rest) + "\n")
    (d / "statm").write_text(f"100 {rss_pages} 10 0 0 0 0\n")
    (d / "cmdline").write_bytes(cmdline)
    (d / "environ").write_bytes(b"HOME=/home/example\0PATH=/bin\0")
    (d / "limits").write_text(LIMITS)
    (d / "status").write_text(f"Name:\t{name}\nUid:\t4242424\t4242424\t4242424\t4242424\n")
    fd = d / "fd"
    fd.mkdir()
    for i in range(3):
        (fd / str(i)).write_text("")
    os.symlink("/usr/bin/" + name, d / "exe")
    os.symlink("/home/example", d / "cwd")


@pytest.fixture
def fake_root(tmp_path):
    _write_system(tmp_path)
    return tmp_path


def _resolver(root):
    return new_test_resolver(str(root))


def test_procs_track_roundtrip():
    track = ProcsTrack()
    assert track.get_pid(5) is None
    state = ProcState(pid=5, name="a")
    track.set_pid(5, state)
    assert track.get_pid(5).name == "a"
    track.set_map({7: ProcState(pid=7, name="b")})
    assert track.get_pid(5) is None
    assert track.get_pid(7).name == "b"
    assert len(track) == 1


def test_match_procs():
    stats = Stats(procs=[".*"])
    stats.init()
    assert stats.match_process("metricbeat") is True

    stats.procs = ["metricbeat"]
    stats.init()
    assert stats.match_process("burn") is False

    stats.procs = ["$^"]
    stats.init()
    assert stats.match_process("burn") is False


def test_init_rejects_bad_pattern():
    stats = Stats(procs=["("])
    with pytest.raises(ValueError):
        stats.init()


def test_env_whitelist():
    stats = Stats(procs=[".*"])
    stats.init()
    assert stats.is_whitelisted_env_var("HOME") is False
    stats = Stats(procs=[".*"], env_whitelist=["^HO"])
    stats.init()
    assert stats.is_whitelisted_env_var("HOME") is True
    assert stats.is_whitelisted_env_var("PATH") is False


def _top_processes():
    data = [
        (1, 10, 3000),
        (2, 5, 4000),
        (3, 7, 2000),
        (4, 5, 8000),
        (5, 12, 9000),
        (6, 5, 7000),
        (7, 80, 11000),
        (8, 50, 13000),
        (9, 15, 1000),
        (10, 60, 500),
    ]
    return [
        ProcState(
            pid=pid,
            cpu=ProcCPUInfo(total=CPUTotal(pct=float(pct))),
            memory=ProcMemInfo(rss=MemBytePct(bytes=rss)),
        )
        for pid, pct, rss in data
    ]


ALL_PIDS = [1, 2, 3, 4, 5, 6, 7, 8, 9, 10]


@pytest.mark.parametrize(
    "cfg, expected",
    [
        (IncludeTopConfig(enabled=True, by_cpu=2), [7, 10]),
        (IncludeTopConfig(enabled=True, by_cpu=4), [7, 10, 8, 9]),
        (IncludeTopConfig(enabled=True, by_memory=2), [8, 7]),
        (IncludeTopConfig(enabled=True, by_memory=4), [8, 7, 5, 4]),
        (IncludeTopConfig(enabled=True, by_cpu=2, by_memory=2), [7, 10, 8]),
        (IncludeTopConfig(enabled=True, by_cpu=4, by_memory=4), [7, 10, 8, 9, 5, 4]),
        (IncludeTopConfig(enabled=False, by_cpu=4, by_memory=4), ALL_PIDS),
        (IncludeTopConfig(enabled=True), ALL_PIDS),
        (IncludeTopConfig(enabled=True, by_cpu=12), ALL_PIDS),
        (IncludeTopConfig(enabled=True, by_cpu=12, by_memory=14), ALL_PIDS),
        (IncludeTopConfig(enabled=True, by_cpu=14, by_memory=12), ALL_PIDS),
        (IncludeTopConfig(enabled=True, by_cpu=1, by_memory=3), [5, 7, 8]),
        (IncludeTopConfig(enabled=True, by_cpu=3, by_memory=1), [7, 8, 10]),
    ],
)
def test_include_top_processes(cfg, expected):
    stats = Stats(include_top=cfg)
    result = stats.include_top_processes(_top_processes())
    assert sorted(p.pid for p in result) == sorted(expected)


def test_get_without_procs_returns_nothing(fake_root):
    stats = Stats(hostfs=_resolver(fake_root))
    stats.init()
    assert stats.get() == ([], [])


def test_get_filters_and_formats(fake_root):
    _write_proc(fake_root, 101, name="prog")
    _write_proc(fake_root, 102, name="other")
    stats = Stats(hostfs=_resolver(fake_root), procs=["prog"])
    stats.init()
    events, roots = stats.get()

    assert len(events) == 1 and len(roots) == 1
    root = roots[0]
    assert root["process"]["name"] == "prog"
    assert root["process"]["pid"] == 101
    assert root["process"]["parent"] == {"pid": 1}
    assert root["process"]["args"] == ["prog", "--flag"]
    assert root["process"]["command_line"] == "prog --flag"
    assert root["process"]["executable"] == "/usr/bin/prog"
    assert root["process"]["working_directory"] == "/home/example"
    assert root["process"]["memory"] == {"pct": 0.2}
    assert root["user"] == {"name": "4242424"}

    event = events[0]
    assert "name" not in event
    assert "pid" not in event
    assert "env" not in event
    assert event["memory"]["rss"]["bytes"] == 50 << 12
    assert event["memory"]["rss"]["pct"] == 0.2
    assert "ticks" not in event["cpu"]["total"]
    assert event["cpu"]["total"]["value"] == 2000.0
    assert event["cpu"]["start_time"] == "2020-09-13T12:26:50.000Z"
    assert event["fd"] == {"open": 3, "limit": {"soft": 1024, "hard": 4096}}

    assert stats.procs_map.get_pid(102) is None
    assert stats.procs_map.get_pid(101).name == "prog"


def test_get_with_ticks_and_env(fake_root):
    _write_proc(fake_root, 101)
    stats = Stats(
        hostfs=_resolver(fake_root),
        procs=[".*"],
        cpu_ticks=True,
        env_whitelist=["^HOME$"],
    )
    stats.init()
    events, _ = stats.get()
    cpu = events[0]["cpu"]
    assert cpu["user"] == {"ticks": 1500}
    assert cpu["system"] == {"ticks": 500}
    assert cpu["total"]["ticks"] == 2000
    assert events[0]["env"] == {"HOME": "/home/example"}


def test_get_top_by_memory(fake_root):
    _write_proc(fake_root, 101, rss_pages=10)
    _write_proc(fake_root, 102, rss_pages=90)
    stats = Stats(
        hostfs=_resolver(fake_root),
        procs=[".*"],
        include_top=IncludeTopConfig(enabled=True, by_memory=1),
    )
    stats.init()
    _, roots = stats.get()
    assert [r["process"]["pid"] for r in roots] == [102]


def test_get_one_cache_cmd_line(fake_root):
    _write_proc(fake_root, 101)
    stats = Stats(hostfs=_resolver(fake_root), procs=[".*"], cache_cmd_line=True)
    stats.init()
    first = stats.get_one(101)
    (fake_root / "proc" / "101" / "cmdline").write_bytes(b"changed\0")
    second = stats.get_one(101)
    assert first["args"] == ["prog", "--flag"]
    assert second["args"] == ["prog", "--flag"]
    assert second["cmdline"] == "prog --flag"


def test_get_one_without_cache_rereads_args(fake_root):
    _write_proc(fake_root, 101)
    stats = Stats(hostfs=_resolver(fake_root), procs=[".*"], cache_cmd_line=False)
    stats.init()
    stats.get_one(101)
    (fake_root / "proc" / "101" / "cmdline").write_bytes(b"changed\0")
    second = stats.get_one(101)
    assert second["args"] == ["changed"]
    assert second["cmdline"] == "changed"


def test_get_one_missing_pid(fake_root):
    stats = Stats(hostfs=_resolver(fake_root), procs=[".*"])
    stats.init()
    with pytest.raises(ProcessLookupError):
        stats.get_one(999)


def test_self_persist(fake_root):
    pid = os.getpid()
    _write_proc(fake_root, pid)
    stats = Stats(hostfs=_resolver(fake_root), procs=[".*"], cpu_ticks=True)
    stats.init()
    first = stats.get_self()
    assert first.cpu.total.pct is None
    assert first.pid == pid
    time.sleep(0.005)
    second = stats.get_self()
    assert second.cpu.total.pct == 0.0
    assert second.sample_time >= first.sample_time


def test_list_states(fake_root):
    _write_proc(fake_root, 101, state="S")
    _write_proc(fake_root, 102, state="R")
    (fake_root / "proc" / "sys").mkdir()
    states = list_states(_resolver(fake_root))
    assert [s.pid for s in states] == [101, 102]
    assert [s.state for s in states] == [PidState.SLEEPING, PidState.RUNNING]
    assert all(s.memory.size is None for s in states)


def test_get_pid_state_running(fake_root):
    pid = os.getpid()
    _write_proc(fake_root, pid, state="R")
    assert get_pid_state(_resolver(fake_root), pid) is PidState.RUNNING


def test_get_pid_state_missing(fake_root):
    with pytest.raises(ProcessNotExistError):
        get_pid_state(_resolver(fake_root), 4194305)


def test_get_pid_state_invalid(fake_root):
    with pytest.raises(ValueError):
        get_pid_state(_resolver(fake_root), 0)