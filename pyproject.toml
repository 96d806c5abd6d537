[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "agentsysmetrics"
version = "0.1.0"
description = "Process, CPU, hardware-sensor and self-monitoring metrics read from procfs and sysfs"
requires-python = ">=3.10"
dependencies = []
keywords = ["metrics", "monitoring", "procfs", "sysfs", "hwmon", "process"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["agentsysmetrics"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
