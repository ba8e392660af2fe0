[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "espbrew"
version = "0.1.0"
description = "Building blocks for a farm of ESP development boards: serial device discovery, device locking, job queueing, peer tracking, and HTTP/WebSocket clients for a cluster leader."
requires-python = ">=3.11"
keywords = [
    "esp32",
    "espressif",
    "embedded",
    "serial",
    "serial-monitor",
    "device-farm",
    "cluster",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems",
    "Topic :: System :: Hardware",
    "Topic :: Terminals :: Serial",
]
dependencies = [
    "httpx",
    "websocket-client",
    "pyserial",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
    "respx",
]

[tool.hatch.build.targets.wheel]
packages = ["espbrew"]

[tool.hatch.build.targets.sdist]
include = [
    "espbrew",
    "tests",
    "pyproject.toml",
    "README.md",
]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
