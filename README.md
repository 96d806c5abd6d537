# agentsysmetrics

System and process metrics for monitoring agents. On Linux they are read
directly from `/proc` and `/sys`.

## Modules

- **`agentsysmetrics.resolve`**: `new_test_resolver(path)` returns a
  `TestingResolver`. It places paths such as `proc` under another root, so a
  container can read the host's filesystem. An empty path or `"/"` means no
  other root, and then `is_set` is `False`.
- **`agentsysmetrics.numcpu`**: `num_cpu()` reads the number of online CPUs from
  `/sys/devices/system/cpu/online`. If `LINUX_CPU_COUNT_PRESENT` is set, it reads
  `present` instead. If sysfs cannot answer, it returns the number of CPUs this
  process may run on. `get_cpu()` returns `None` on platforms other than Linux.
  `parse_cpu_list("0-1,3")` returns `3`.
- **`agentsysmetrics.network`**: `map_proc_net_counters(raw)` groups netstat and
  SNMP counter tables by protocol: `ip`, `tcp`, `udp`, `udp_lite` and `icmp`.
  The signed `MaxConn` counter is read as a signed 64-bit value.
- **`agentsysmetrics.hwmon`**: `detect_hwmon(hostfs)` lists the devices under
  `/sys/class/hwmon` and the temperature, voltage and fan sensors on each.
  `report_sensors(device)` reads those sensors and keys them by their
  lower-cased label. `SensorMetrics.to_dict()` places each value under its unit,
  for example `{"temp": {"celsius": 52}, "max": {"celsius": 81}}`.
- **`agentsysmetrics.process_types`**: dataclasses for the state of a process,
  such as `ProcState` and `IncludeTopConfig`. It also has `get_proc_cpu_percentage`,
  `get_proc_mem_percentage` and `round_metric`, which rounds to four decimal places.
- **`agentsysmetrics.procfs`**: reads a Linux-style `/proc` for each process:
  `stat`, `statm`, `cmdline`, `environ`, `limits`, `status`, `fd`, `exe` and `cwd`.
- **`agentsysmetrics.process`**:
  - `Stats` collects the processes whose names match regular expressions.
  - It works out CPU percentages between samples.
  - It can keep only the top processes by CPU or by memory.
  - It can filter environment variables against a whitelist.
  - `list_states(hostfs)` lists every process with basic information only.
  - `get_pid_state(hostfs, pid)` returns a process's `PidState`. It raises
    `ProcessNotExistError` when there is no such process.
- **`agentsysmetrics.report`**: `setup_metrics(name, version)` registers reporters
  in the `beat` and `system` child registries of `DEFAULT_REGISTRY`:
  - `beat`: `memstats`, `cpu`, `runtime` and `info`. On Linux and FreeBSD it
    also registers `handles`, which reports file descriptor use.
  - `system`: `cpu` (the core count). On every platform except Windows it also
    registers `load`.

  Read the reporters with `Registry.snapshot(mode)`, which returns a nested dict.
  `Registry.do(mode, callback)` calls the callback with each dotted key, such as
  `cpu.total.ticks`, and its value. `mode` is `Mode.REPORTED` or `Mode.FULL`.

## Example

```python
from agentsysmetrics.process import Stats
from agentsysmetrics.process_types import IncludeTopConfig

stats = Stats(procs=[".*"], include_top=IncludeTopConfig(enabled=True, by_cpu=5))
stats.init()
events, root_events = stats.get()
```

```python
from agentsysmetrics.hwmon import detect_hwmon, report_sensors
from agentsysmetrics.resolve import new_test_resolver

for device in detect_hwmon(new_test_resolver("/")):
    for label, metrics in report_sensors(device).items():
        print(device.name, label, metrics.to_dict())
```

```python
from agentsysmetrics.report import Mode, process_metrics, setup_metrics

setup_metrics("myagent", "1.0.0")
print(process_metrics.snapshot(Mode.FULL))
```

## Limitations

- Process details are read only from a Linux-style `/proc`. There is no
  collector for macOS, Windows or other systems.
- cgroup metrics are not collected.
- The package has no command-line program and no HTTP endpoint. It only
  produces dicts for the caller to send or store.

## Testing

```
pip install -e .[test]
pytest
```