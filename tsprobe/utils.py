"""Helpers for network interfaces, UDP flows, process memory and timestamps."""

from __future__ import annotations

import math
import os
import socket
import stat
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator

import psutil

STATM_PATH = "/proc/self/statm"
_CMDLINE_PATH = "/proc/self/cmdline"
_CMDLINE_LIMIT = 4096


def character_replace(text: str, src: str, dst: str) -> tuple[str, int]:
    """Replace every ``src`` character in ``text`` with ``dst``.

    Returns the new text and the number of substitutions made.
    """
    if len(src) != 1 or len(dst) != 1:
        raise ValueError("src and dst must be single characters")
    return text.replace(src, dst), text.count(src)


def _ipv4_interfaces() -> Iterator[tuple[str, str]]:
    """Yield (name, address) for every IPv4 address on an interface that is up."""
    stats = psutil.net_if_stats()
    for name, addresses in psutil.net_if_addrs().items():
        state = stats.get(name)
        if state is None or not state.isup:
            continue
        for address in addresses:
            if address.family == socket.AF_INET:
                yield name, address.address


def network_interface_exists_by_name(ifname: str) -> bool:
    """Return True if an interface with this name is up and has an IPv4 address."""
    return any(name == ifname for name, _ in _ipv4_interfaces())


def network_interface_exists_by_address(ipaddress: str) -> bool:
    """Return True if this IPv4 address belongs to an interface that is up."""
    return any(host == ipaddress for _, host in _ipv4_interfaces())


def network_interface_list() -> list[tuple[str, str]]:
    """Print and return the IPv4 interfaces that are up, as (name, address) pairs."""
    interfaces = list(_ipv4_interfaces())
    for name, host in interfaces:
        print(f"\t{name} : {host}")
    return interfaces


@dataclass(frozen=True)
class UdpFlow:
    """A UDP stream identified by its source and destination address and port."""

    src_addr: str
    src_port: int
    dst_addr: str
    dst_port: int


def network_addr_compare(a: UdpFlow, b: UdpFlow) -> bool:
    """Return True if both flows have the same addresses and ports."""
    return (
        a.src_addr == b.src_addr
        and a.dst_addr == b.dst_addr
        and a.src_port == b.src_port
        and a.dst_port == b.dst_port
    )


def network_stream_ascii(flow: UdpFlow) -> str:
    """Describe a flow as ``src:port -> dst:port``."""
    return f"{flow.src_addr}:{flow.src_port} -> {flow.dst_addr}:{flow.dst_port}"


def is_valid_transport_file(filename: str | os.PathLike) -> bool:
    """Return True if ``filename`` is a regular file that occupies some storage."""
    try:
        info = os.stat(filename)
    except OSError:
        return False
    used = getattr(info, "st_blocks", info.st_size)
    return stat.S_ISREG(info.st_mode) and bool(used)


@dataclass(frozen=True)
class StatmSample:
    """One reading of the process memory counters, in pages."""

    size: int = 0
    resident: int = 0
    share: int = 0
    text: int = 0
    lib: int = 0
    data: int = 0
    dt: int = 0


def read_statm(path: str | os.PathLike = STATM_PATH) -> StatmSample:
    """Read the seven memory counters from a statm file."""
    with open(path, encoding="ascii") as fh:
        fields = fh.read().split()
    if len(fields) < 7:
        raise ValueError(f"{path}: expected 7 fields, found {len(fields)}")
    return StatmSample(*(int(value) for value in fields[:7]))


def _growth(current: int, start: int) -> float:
    if start:
        return (current - start) / start * 100.0
    if current == start:
        return math.nan
    return math.copysign(math.inf, current - start)


@dataclass
class ProcessMemory:
    """Tracks process memory use over time and reports growth since the first sample."""

    path: str = STATM_PATH
    clock: Callable[[], float] = time.time
    start_time: int = 0
    last_report_time: int = 0
    last_collect_time: int = 0
    startup: StatmSample = field(default_factory=StatmSample)
    current: StatmSample = field(default_factory=StatmSample)

    def update(self, collect_interval: int) -> bool:
        """Take a sample unless the last one is younger than ``collect_interval`` seconds.

        Returns True when a sample was taken.
        """
        now = int(self.clock())
        if self.last_collect_time + collect_interval > now:
            return False
        self.last_collect_time = now

        self.current = read_statm(self.path)
        if self.start_time == 0:
            self.start_time = now
            self.startup = self.current
        return True

    def report(self, report_seconds: int, include_timestamp: bool = True) -> str | None:
        """Describe current size and growth, or None if the last report is too recent."""
        now = int(self.clock())
        if self.last_report_time + report_seconds > now:
            return None
        self.last_report_time = now

        growth = _growth(self.current.size, self.startup.size)
        line = f"pid {os.getpid()}, size {self.current.size} ({growth:.0f}% growth)"
        if include_timestamp:
            line = f"{time.ctime(now)}: {line}"
        return line


def subtract_ms_from_timestamp(now: datetime, ms: int) -> datetime:
    """Return the moment ``ms`` milliseconds before ``now``."""
    if ms < 0:
        raise ValueError("ms must not be negative")
    return now - timedelta(milliseconds=ms)


def iso8601_utc_timestamp(when: datetime | float | None = None) -> str:
    """Format a moment as ``YYYY-MM-DDThh:mm:ss.mmmZ`` in UTC.

    ``when`` may be a datetime (naive values are taken as UTC), seconds since
    the epoch, or None for now.
    """
    if when is None:
        moment = datetime.now(timezone.utc)
    elif isinstance(when, datetime):
        if when.tzinfo is None:
            moment = when.replace(tzinfo=timezone.utc)
        else:
            moment = when.astimezone(timezone.utc)
    else:
        moment = datetime.fromtimestamp(when, timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S") + f".{moment.microsecond // 1000:03d}Z"


def print_tool_banner(toolname: str | None, version: str | None) -> None:
    """Print the tool name and version, then the command line, both timestamped."""
    if not toolname or not version:
        return

    stamp = time.ctime()
    print(f"{stamp}: {toolname} {version}")

    try:
        with open(_CMDLINE_PATH, "rb") as fh:
            raw = fh.read(_CMDLINE_LIMIT)
    except OSError:
        return

    cmdline = raw.replace(b"\0", b" ").decode("utf-8", errors="replace")
    print(f"{stamp}: {cmdline}")