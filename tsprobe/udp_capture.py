"""Capture MPEG-TS packets from the network, counting per-PID CC and TEI errors."""

from __future__ import annotations

import argparse
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import IO, Iterator, Optional

from .source import TS_PACKET_SIZE, AvioSource, AvioStatus

NULL_PID = 0x1FFF
_DUMP_BYTES = 24
_DISPLAY_INTERVAL_MS = 250
_TITLE_WIDTH = 75

_USAGE = "\n".join([
    "A tool to capture ISO13818 TS packet from the UDP network.",
    "Usage:",
    "  -i <url> Eg: udp://234.1.1.1:4160?localaddr=172.16.0.67",
    "           172.16.0.67 is the IP addr where we'll issue a IGMP join",
    "  -o <output filename> (optional)",
    "     By default, the tool creates a single file with all packets.",
    "     Add @ to the end of your -o filename (Eg. -o DIR/mystream@ to segment the packets",
    "     into 60 second .ts files, with suffix DIR/mystream-YYYYMMDD-hhmmss.ts",
    "  -v Increase level of verbosity.",
    "  -h Display command line help.",
    "  -M Display an interactive console with stats.",
    "  -t <#seconds>. Stop after N seconds [def: 0 - unlimited]",
    "  -E Return (255) -1 result code if any CC errors are detected (harvester)",
])


def _pid(pkt: bytes) -> int:
    return ((pkt[1] & 0x1F) << 8) | pkt[2]


def _continuity_counter(pkt: bytes) -> int:
    return pkt[3] & 0x0F


def _adaptation_field_control(pkt: bytes) -> int:
    return (pkt[3] >> 4) & 0x03


def _tei_set(pkt: bytes) -> bool:
    return bool(pkt[1] & 0x80)


def _cc_in_error(pkt: bytes, last_cc: int) -> bool:
    """A repeated counter is allowed (no payload, or a duplicate); otherwise it must step by one."""
    cc = _continuity_counter(pkt)
    if cc == last_cc:
        return False
    return ((last_cc + 1) & 0x0F) != cc


@dataclass
class PidStatistics:
    """Counters kept for one PID."""

    enabled: bool = False
    packet_count: int = 0
    cc_errors: int = 0
    tei_errors: int = 0
    last_cc: int = 0


@dataclass
class CaptureStatistics:
    """Per-PID packet, continuity and transport error counters for a stream."""

    verbose: int = 0
    pids: dict[int, PidStatistics] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def write(self, buf: bytes) -> None:
        """Account for every whole 188 byte packet in ``buf``."""
        with self._lock:
            for start in range(0, len(buf) - TS_PACKET_SIZE + 1, TS_PACKET_SIZE):
                self._packet(bytes(buf[start:start + TS_PACKET_SIZE]))

    def _packet(self, pkt: bytes) -> None:
        pidnr = _pid(pkt)
        stats = self.pids.setdefault(pidnr, PidStatistics())
        stats.enabled = True
        stats.packet_count += 1

        cc = _continuity_counter(pkt)
        if _cc_in_error(pkt, stats.last_cc) and stats.packet_count > 1 and pidnr != NULL_PID:
            print(
                f"{time.ctime()}: CC Error : pid {pidnr:04x} -- "
                f"Got 0x{cc:x} wanted 0x{(stats.last_cc + 1) & 0x0F:x}"
            )
            stats.cc_errors += 1
        stats.last_cc = cc

        if _tei_set(pkt):
            stats.tei_errors += 1

        if self.verbose:
            parts = []
            for j, byte in enumerate(pkt[:_DUMP_BYTES]):
                parts.append(f"{byte:02x} ")
                if j == 3:
                    parts.append(f"-- 0x{pidnr:04x}({pidnr:4d}) -- ")
            print("".join(parts))

    def __iter__(self) -> Iterator[tuple[int, PidStatistics]]:
        """Yield (pid, counters) for every enabled PID in PID order."""
        with self._lock:
            snapshot = [(pid, replace(s)) for pid, s in sorted(self.pids.items()) if s.enabled]
        return iter(snapshot)

    def reset(self) -> None:
        """Clear the counters of every PID seen so far."""
        with self._lock:
            for stats in self.pids.values():
                if not stats.enabled:
                    continue
                stats.cc_errors = 0
                stats.tei_errors = 0
                stats.packet_count = 0
                stats.enabled = False

    def error_count(self) -> int:
        """Total continuity errors across all enabled PIDs."""
        return sum(stats.cc_errors for _, stats in self)

    def report(self) -> str:
        """A table of the counters for every enabled PID."""
        lines = [
            "   PID   PID     PacketCount   CCErrors  TEIErrors",
            "----------------------------  --------- ----------",
        ]
        for pid, stats in self:
            lines.append(
                f"0x{pid:04x} ({pid:4d}) {stats.packet_count:14d} "
                f"{stats.cc_errors:10d} {stats.tei_errors:10d}"
            )
        return "\n".join(lines)


class SegmentWriter:
    """Writes packets to one file, or to a new timestamped file every minute.

    Without segmenting everything goes to ``name``; with segmenting files are
    named ``name-YYYYMMDD-hhmmss`` followed by ``suffix``.
    """

    SEGMENT_SECONDS = 60

    def __init__(self, name: str, suffix: str, segmenting: bool) -> None:
        self.name = str(name)
        self.suffix = suffix
        self.segmenting = bool(segmenting)
        self.filenames: list[str] = []
        self._fh: Optional[IO[bytes]] = None
        self._segment_start = 0.0
        self._closed = False
        self._lock = threading.Lock()
        if not self.segmenting:
            self._open(self.name)

    def _open(self, path: str) -> None:
        self._fh = open(path, "wb")
        self.filenames.append(path)

    def write(self, buf: bytes) -> None:
        """Append ``buf`` to the current file, starting a new segment when due."""
        with self._lock:
            if self._closed:
                raise ValueError("segment writer is closed")
            if self.segmenting:
                now = time.time()
                if self._fh is None or now - self._segment_start >= self.SEGMENT_SECONDS:
                    if self._fh is not None:
                        self._fh.close()
                    stamp = time.strftime("%Y%m%d-%H%M%S", time.localtime(now))
                    self._open(f"{self.name}-{stamp}{self.suffix}")
                    self._segment_start = now
            assert self._fh is not None
            self._fh.write(buf)

    def close(self) -> None:
        """Flush and close the current file."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._fh is not None:
                self._fh.close()
                self._fh = None

    def __enter__(self) -> "SegmentWriter":
        return self

    def __exit__(self, *args) -> None:
        self.close()


class _Throughput:
    """Bytes received during the last second."""

    def __init__(self) -> None:
        self._samples: deque[tuple[float, int]] = deque()
        self._lock = threading.Lock()

    def add(self, count: int) -> None:
        with self._lock:
            self._samples.append((time.monotonic(), count))

    def per_second(self) -> int:
        horizon = time.monotonic() - 1.0
        with self._lock:
            while self._samples and self._samples[0][0] < horizon:
                self._samples.popleft()
            return sum(count for _, count in self._samples)


def _monitor(stdscr, iname: str, stats: CaptureStatistics,
             throughput: _Throughput, stop: threading.Event) -> None:
    import curses

    curses.noecho()
    try:
        curses.curs_set(0)
    except curses.error:
        pass
    curses.start_color()
    curses.init_pair(1, curses.COLOR_WHITE, curses.COLOR_BLUE)
    curses.init_pair(2, curses.COLOR_CYAN, curses.COLOR_BLACK)
    curses.init_pair(3, curses.COLOR_RED, curses.COLOR_BLACK)
    stdscr.timeout(_DISPLAY_INTERVAL_MS)

    def put(row: int, text: str, attr: int = 0) -> None:
        try:
            stdscr.addstr(row, 0, text, attr)
        except curses.error:
            pass

    while not stop.is_set():
        stdscr.erase()
        title_c = f"{throughput.per_second() * 8 / 1000000.0:2.2f} Mb/s"
        pad = " " * max(0, _TITLE_WIDTH - len(iname) - len(title_c))
        put(0, f"{iname}{pad}{title_c}", curses.color_pair(1))
        put(1, "-- PID ---- PACKETS - Disc/Count -------- TEI                              ",
            curses.color_pair(1))

        row = 2
        for pid, pstats in stats:
            attr = curses.color_pair(3) if pstats.cc_errors else 0
            put(row, f"0x{pid:04x} {pstats.packet_count:12d} "
                     f"{pstats.cc_errors:12d} {pstats.tei_errors:12d}", attr)
            row += 1

        put(row, "q)uit r)eset", curses.color_pair(2))
        tail_a = "TSTOOLS_UDP_CAPTURE"
        tail_c = time.ctime()
        pad = " " * max(0, _TITLE_WIDTH - len(tail_a) - len(tail_c))
        put(row + 1, f"{tail_a}{pad}{tail_c}", curses.color_pair(1))
        stdscr.refresh()

        key = stdscr.getch()
        if key == ord("q"):
            stop.set()
        elif key == ord("r"):
            stats.reset()


class _UsageError(Exception):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise _UsageError(message)


def main(argv=None) -> int:
    """Run the capture tool; returns the process result code."""
    parser = _Parser(add_help=False)
    parser.add_argument("-h", "-?", dest="help", action="store_true")
    parser.add_argument("-i", dest="input")
    parser.add_argument("-o", dest="output")
    parser.add_argument("-v", dest="verbose", action="count", default=0)
    parser.add_argument("-E", dest="error_result", action="store_true")
    parser.add_argument("-M", dest="monitor", action="store_true")
    parser.add_argument("-t", dest="seconds", type=int, default=0)
    try:
        opts = parser.parse_args(argv)
    except _UsageError:
        print(_USAGE)
        return 1
    if opts.help:
        print(_USAGE)
        return 1
    if opts.input is None:
        print(_USAGE)
        print("\n-i is mandatory.\n", file=sys.stderr)
        return 1

    writer: Optional[SegmentWriter] = None
    oname = opts.output
    if oname:
        segmenting = oname.endswith("@")
        if segmenting:
            oname = oname[:-1]
        try:
            writer = SegmentWriter(oname, ".ts", segmenting)
        except OSError:
            print("main() unable to allocate a segment writer", file=sys.stderr)
            return 1

    stats = CaptureStatistics(verbose=opts.verbose)
    throughput = _Throughput()
    stop = threading.Event()

    def on_packets(buf: bytes) -> None:
        if opts.verbose == 2:
            print(f"source received {len(buf)} bytes")
        if writer is not None:
            writer.write(buf)
        throughput.add(len(buf))
        stats.write(buf)

    def on_status(status: AvioStatus) -> None:
        if status is AvioStatus.MEDIA_END:
            stop.set()

    try:
        source = AvioSource(opts.input, on_packets, on_status)
    except (OSError, ValueError):
        print("-i syntax error", file=sys.stderr)
        if writer is not None:
            writer.close()
        return -1

    timer = None
    if opts.seconds:
        timer = threading.Timer(opts.seconds, stop.set)
        timer.daemon = True
        timer.start()

    with source:
        try:
            if opts.monitor:
                import curses

                curses.wrapper(_monitor, opts.input, stats, throughput, stop)
            else:
                while not stop.wait(0.05):
                    pass
        except KeyboardInterrupt:
            pass

    if timer is not None:
        timer.cancel()
    if writer is not None:
        writer.close()
        print(f"\nWrote to {oname}")

    print(stats.report())

    if opts.error_result and stats.error_count():
        return -1
    return 0