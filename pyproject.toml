[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cpushaper"
version = "0.1.0"
description = "Adaptive CPU duty-cycle controller with host utilisation sampling, OpenMetrics export and instance metadata helpers"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "cpu",
    "utilisation",
    "controller",
    "openmetrics",
    "monitoring",
    "instance-metadata",
    "wsgi",
]
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
packages = ["cpushaper"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
