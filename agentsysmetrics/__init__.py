"""System, process and hardware-sensor metrics read from procfs and sysfs."""

__version__ = "0.1.0"

__all__ = ["hwmon", "network", "numcpu", "process", "process_types", "procfs", "report", "resolve"]