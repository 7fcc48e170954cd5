[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tsprobe"
version = "0.1.0"
description = "Command-line tools for capturing, searching and slicing MPEG transport streams"
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = [
    "mpeg-ts",
    "transport-stream",
    "iso13818",
    "pcr",
    "sei",
    "h264",
    "hevc",
    "udp",
    "rtp",
    "multicast",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Environment :: Console :: Curses",
    "Intended Audience :: Developers",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Video",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
tsprobe = "tsprobe.cli:main"
tsprobe-udp-capture = "tsprobe.udp_capture:main"
tsprobe-sei-unregistered = "tsprobe.sei_unregistered:main"
tsprobe-slicer = "tsprobe.slicer:main"

[tool.hatch.build.targets.wheel]
packages = ["tsprobe"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
