"""Discovery and reading of hardware monitoring sensors exposed through sysfs."""

from __future__ import annotations

import enum
import os
import posixpath
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .resolve import Resolver

__all__ = [
    "BASE_DIR",
    "NoMetricError",
    "SensorType",
    "Sensor",
    "SensorMetrics",
    "Device",
    "report_sensors",
    "detect_hwmon",
    "find_sensors_in_path",
    "get_sensor_type",
]

BASE_DIR = "/sys/class/hwmon"

_SENSOR_FILE_RE = re.compile(r"([a-z]*)([0-9]*)")
_INT_RE = re.compile(r"[+-]?\d+")
_UINT64_LIMIT = 1 << 64


class NoMetricError(Exception):
    """A sensor has files in its directory but no readable value."""

    def __init__(self, message: str = "no Metrics exist in this device") -> None:
        super().__init__(message)


class SensorType(enum.Enum):
    """Kinds of sensor, by the prefix of their sysfs files and their units."""

    TEMP = ("temp", "celsius")
    VOLT = ("in", "millivolts")
    FAN = ("fan", "rpm")

    def __init__(self, file_key: str, units: str) -> None:
        self.file_key = file_key
        self.units = units


def get_sensor_type(name: str) -> Optional[SensorType]:
    """Return the sensor type for a file prefix, or None if unsupported."""
    for sensor_type in SensorType:
        if sensor_type.file_key == name:
            return sensor_type
    return None


@dataclass
class SensorMetrics:
    """Values read from one sensor."""

    label: str = ""
    sensor_type: SensorType = SensorType.TEMP
    critical: Optional[int] = None
    max: Optional[int] = None
    lowest: Optional[int] = None
    average: Optional[int] = None
    value: Optional[int] = None

    def to_dict(self) -> Dict[str, Dict[str, int]]:
        """Nest each present value under its unit; the value is keyed by the sensor type."""
        entries = (
            ("critical", self.critical),
            ("max", self.max),
            ("lowest", self.lowest),
            ("average", self.average),
            (self.sensor_type.file_key, self.value),
        )
        units = self.sensor_type.units
        return {key: {units: value} for key, value in entries if value is not None}


def _read_stripped(name: str, path: str) -> str:
    full_path = os.path.join(path, name)
    try:
        return Path(full_path).read_text().strip()
    except FileNotFoundError:
        raise
    except OSError as exc:
        raise OSError(f"error reading file: {exc}") from exc


def _read_uint(name: str, path: str) -> int:
    raw = _read_stripped(name, path)
    if not _INT_RE.fullmatch(raw):
        raise ValueError(f"error converting value {raw!r}")
    return int(raw) % _UINT64_LIMIT


def _value_for_sensor(name: str, path: str, sensor_type: SensorType) -> int:
    value = _read_uint(name, path)
    if sensor_type is SensorType.TEMP:
        value //= 1000  # millicelsius to celsius
    return value


def _optional_value(name: str, path: str, sensor_type: SensorType) -> Optional[int]:
    try:
        return _value_for_sensor(name, path, sensor_type)
    except (OSError, ValueError):
        return None


@dataclass(frozen=True)
class Sensor:
    """A single metric of a hwmon chip, such as temp7."""

    dev_type: SensorType
    sensor_num: int

    def _file_name(self, kind: str) -> str:
        return f"{self.dev_type.file_key}{self.sensor_num}_{kind}"

    def fetch(self, path: str) -> SensorMetrics:
        """Read this sensor's label and values from the device directory."""
        label_name = self._file_name("label")
        try:
            label = _read_stripped(label_name, path)
        except FileNotFoundError:
            label = f"{self.dev_type.file_key}_{self.sensor_num}"
        except OSError as exc:
            raise OSError(
                f"error fetching label for {label_name} in {path}: {exc}"
            ) from exc

        input_name = self._file_name("input")
        try:
            value = _value_for_sensor(input_name, path, self.dev_type)
        except FileNotFoundError as exc:
            raise NoMetricError() from exc
        except OSError as exc:
            raise OSError(
                f"error fetching input for {input_name} in {path}: {exc}"
            ) from exc
        except ValueError as exc:
            raise ValueError(
                f"error fetching input for {input_name} in {path}: {exc}"
            ) from exc

        return SensorMetrics(
            label=label,
            sensor_type=self.dev_type,
            value=value,
            critical=_optional_value(self._file_name("crit"), path, self.dev_type),
            max=_optional_value(self._file_name("max"), path, self.dev_type),
            lowest=_optional_value(self._file_name("lowest"), path, self.dev_type),
            average=_optional_value(self._file_name("average"), path, self.dev_type),
        )


@dataclass
class Device:
    """A sensor chip, usually exposed as /sys/class/hwmon/hwmon*."""

    name: str
    abs_path: str
    sensors: List[Sensor] = field(default_factory=list)


def report_sensors(dev: Device) -> Dict[str, SensorMetrics]:
    """Read every sensor of a device, keyed by its lower-cased label."""
    metrics: Dict[str, SensorMetrics] = {}
    for sensor in dev.sensors:
        try:
            data = sensor.fetch(dev.abs_path)
        except NoMetricError:
            continue
        except OSError as exc:
            raise OSError(
                f"error fetching sensor data for {sensor.dev_type.file_key}: {exc}"
            ) from exc
        except ValueError as exc:
            raise ValueError(
                f"error fetching sensor data for {sensor.dev_type.file_key}: {exc}"
            ) from exc
        metrics[data.label.replace(" ", "_").lower()] = data
    return metrics


def find_sensors_in_path(path: str) -> List[Sensor]:
    """List the supported sensors whose files live in a hwmon directory."""
    try:
        entries = sorted(os.scandir(path), key=lambda entry: entry.name)
    except OSError as exc:
        raise OSError(f"error reading from hwmon path {path}: {exc}") from exc

    sensors: List[Sensor] = []
    seen = set()
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            continue
        if "_" not in entry.name:
            continue
        match = _SENSOR_FILE_RE.match(entry.name)
        whole, prefix, number = match.group(0), match.group(1), match.group(2)
        if whole in seen:
            continue
        sensor_type = get_sensor_type(prefix)
        if sensor_type is None:
            continue
        if not number:
            raise ValueError(f"error parsing int {number!r} in {entry.name}")
        seen.add(whole)
        sensors.append(Sensor(dev_type=sensor_type, sensor_num=int(number)))
    return sensors


def detect_hwmon(hostfs: Resolver) -> List[Device]:
    """Find the hwmon devices of the system and the sensors on each."""
    full_path = hostfs.resolve_hostfs(BASE_DIR)
    try:
        os.stat(full_path)
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"hwmon path {full_path} does not exist") from exc
    except OSError:
        pass

    try:
        names = sorted(os.listdir(full_path))
    except OSError as exc:
        raise OSError(f"error reading directory {full_path}: {exc}") from exc

    devices: List[Device] = []
    for entry_name in names:
        name = os.path.join(full_path, entry_name)
        try:
            is_link = stat.S_ISLNK(os.lstat(name).st_mode)
        except OSError as exc:
            raise OSError(f"error statting hwinfo path {name}: {exc}") from exc

        abs_path = name
        if is_link:
            try:
                abs_path = os.readlink(name)
            except OSError as exc:
                raise OSError(f"error reading path link {name}: {exc}") from exc
            if not os.path.isabs(abs_path):
                abs_path = posixpath.normpath(posixpath.join(BASE_DIR, abs_path))

        sensors = find_sensors_in_path(abs_path)

        name_path = os.path.join(abs_path, "name")
        try:
            device_name = Path(name_path).read_text().strip()
        except OSError as exc:
            raise OSError(
                f"error reading sensor name file {name_path}: {exc}"
            ) from exc
        devices.append(Device(name=device_name, abs_path=abs_path, sensors=sensors))

    if not devices:
        raise FileNotFoundError(f"no hwmon devices found in {full_path}")
    return devices