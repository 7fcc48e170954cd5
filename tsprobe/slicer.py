"""Index the PCRs of a transport stream file and cut out the packets between two times."""

from __future__ import annotations

import getopt
import os
import re
import struct
import sys
from dataclasses import dataclass, field
from typing import Iterator, Optional

TS_PACKET_SIZE = 188
PCR_HZ = 27_000_000
_SECONDS_PER_DAY = 3600 * 24
_MODEL_SCAN_BYTES = 16 * 1048576
_MODEL_BLOCK = 64 * TS_PACKET_SIZE
_INDEX_BLOCK = (16 * 1048576 // TS_PACKET_SIZE) * TS_PACKET_SIZE
_SLICE_BLOCK = 64 * TS_PACKET_SIZE
_FAST_SINGLE_LIMIT = 32 * 1048576
_FAST_SEGMENT = 16 * 1048576
_INDEX_RECORD = struct.Struct("<qQH6x")
_PROG = "tstools_slicer"

_VIDEOTIME_RE = re.compile(
    r"\s*([+-]?\d+)\.([+-]?\d{1,2}):([+-]?\d{1,2}):([+-]?\d{1,2})\.([+-]?\d+)"
)


@dataclass(frozen=True)
class VideoTime:
    """A duration or position expressed as days, hours, minutes, seconds and milliseconds."""

    days: int = 0
    hours: int = 0
    mins: int = 0
    secs: int = 0
    msecs: int = 0

    @classmethod
    def from_pcr(cls, pcr: int) -> "VideoTime":
        """Convert a 27 MHz clock value into whole days, hours, minutes and seconds."""
        seconds = int(pcr / PCR_HZ)
        days, seconds = divmod(seconds, _SECONDS_PER_DAY)
        hours, seconds = divmod(seconds, 3600)
        mins, secs = divmod(seconds, 60)
        return cls(days, hours, mins, secs, 0)

    def to_pcr(self) -> int:
        """Convert to a 27 MHz clock value."""
        seconds = self.days * _SECONDS_PER_DAY + self.hours * 3600 + self.mins * 60 + self.secs
        return seconds * PCR_HZ + self.msecs * 27000

    @classmethod
    def parse(cls, text: str) -> "VideoTime":
        """Parse ``d.hh:mm:ss.ms``; raises ValueError when the text does not match."""
        match = _VIDEOTIME_RE.match(text)
        if match is None:
            raise ValueError(f"invalid time {text!r}, expected d.hh:mm:ss.ms")
        return cls(*(int(group) for group in match.groups()))

    def __str__(self) -> str:
        return f"{self.days}.{self.hours:02d}:{self.mins:02d}:{self.secs:02d}.{self.msecs}"


@dataclass(frozen=True)
class PcrPosition:
    """A PCR value found in the stream, with its PID and byte offset."""

    pid: int
    offset: int
    pcr: int


def _pid(pkt: bytes) -> int:
    return ((pkt[1] & 0x1F) << 8) | pkt[2]


def _packets(buf: bytes, base_offset: int = 0) -> Iterator[tuple[int, bytes]]:
    for start in range(0, len(buf) - TS_PACKET_SIZE + 1, TS_PACKET_SIZE):
        yield base_offset + start, buf[start:start + TS_PACKET_SIZE]


def query_pcrs(buf: bytes, base_offset: int = 0) -> list[PcrPosition]:
    """Return every PCR carried in the packet aligned ``buf``, which starts at ``base_offset``."""
    buf = bytes(buf)
    found = []
    for offset, pkt in _packets(buf, base_offset):
        if pkt[0] != 0x47:
            continue
        if not (pkt[3] >> 4) & 0x02 or pkt[4] < 7 or not pkt[5] & 0x10:
            continue
        base = (pkt[6] << 25) | (pkt[7] << 17) | (pkt[8] << 9) | (pkt[9] << 1) | (pkt[10] >> 7)
        ext = ((pkt[10] & 0x01) << 8) | pkt[11]
        found.append(PcrPosition(_pid(pkt), offset, base * 300 + ext))
    return found


def _section(pkt: bytes) -> Optional[bytes]:
    """The PSI section starting in this packet, or None."""
    if pkt[0] != 0x47 or not pkt[1] & 0x40:
        return None
    afc = (pkt[3] >> 4) & 0x03
    if not afc & 0x01:
        return None
    start = 4
    if afc & 0x02:
        start += 1 + pkt[4]
    if start >= TS_PACKET_SIZE:
        return None
    start += 1 + pkt[start]
    if start + 3 > TS_PACKET_SIZE:
        return None
    length = ((pkt[start + 1] & 0x0F) << 8) | pkt[start + 2]
    return pkt[start:start + 3 + length]


def find_pcr_pid(filename: str | os.PathLike) -> tuple[int, bool]:
    """Find the PCR PID of the first program and whether the stream carries several.

    Reads up to 16MB until the PAT and every PMT it lists have been seen.
    Raises ValueError if no complete model was found.
    """
    programs: list[tuple[int, int]] = []
    pcr_pids: dict[int, int] = {}
    remaining = _MODEL_SCAN_BYTES
    with open(filename, "rb") as fh:
        while remaining > 0:
            block = fh.read(_MODEL_BLOCK)
            if not block:
                break
            remaining -= len(block)
            for _, pkt in _packets(block):
                section = _section(pkt)
                if section is None or len(section) < 12:
                    continue
                pid = _pid(pkt)
                if pid == 0 and section[0] == 0x00 and not programs:
                    end = len(section) - 4
                    for i in range(8, end - 3, 4):
                        number = (section[i] << 8) | section[i + 1]
                        if number:
                            programs.append((number, ((section[i + 2] & 0x1F) << 8) | section[i + 3]))
                elif section[0] == 0x02 and any(pmt == pid for _, pmt in programs):
                    pcr_pids.setdefault(pid, ((section[8] & 0x1F) << 8) | section[9])
            if programs and all(pmt in pcr_pids for _, pmt in programs):
                return pcr_pids[programs[0][1]], len(programs) > 1
    raise ValueError(f"{filename}: no complete stream model found")


def _index_path(filename: str | os.PathLike) -> str:
    return f"{os.fspath(filename)}.idx"


@dataclass
class PcrIndex:
    """All PCRs of a file, with lookups restricted to one PCR PID."""

    positions: list[PcrPosition] = field(default_factory=list)
    pcr_pid: int = 0

    @classmethod
    def build(cls, filename: str | os.PathLike, pcr_pid: int) -> "PcrIndex":
        """Scan the whole file and collect every PCR."""
        positions: list[PcrPosition] = []
        with open(filename, "rb") as fh:
            while True:
                pos = fh.tell()
                block = fh.read(_INDEX_BLOCK)
                if not block:
                    break
                positions.extend(query_pcrs(block, pos))
        return cls(positions, pcr_pid)

    @classmethod
    def load(cls, filename: str | os.PathLike, pcr_pid: int) -> "PcrIndex":
        """Read the ``.idx`` file that belongs to the transport file ``filename``."""
        with open(_index_path(filename), "rb") as fh:
            raw = fh.read()
        whole = len(raw) - len(raw) % _INDEX_RECORD.size
        positions = [
            PcrPosition(pid, offset, pcr)
            for pcr, offset, pid in _INDEX_RECORD.iter_unpack(raw[:whole])
        ]
        return cls(positions, pcr_pid)

    def save(self, filename: str | os.PathLike) -> str:
        """Write the index next to the transport file ``filename``; returns its path."""
        path = _index_path(filename)
        with open(path, "wb") as fh:
            for p in self.positions:
                fh.write(_INDEX_RECORD.pack(p.pcr, p.offset, p.pid))
        return path

    def _matching(self) -> Iterator[PcrPosition]:
        return (p for p in self.positions if p.pid == self.pcr_pid)

    @property
    def pcr_first(self) -> int:
        return next((p.pcr for p in self._matching()), 0)

    @property
    def pcr_last(self) -> int:
        return next((p.pcr for p in reversed(self.positions) if p.pid == self.pcr_pid), 0)

    @property
    def pcr_duration(self) -> int:
        first, last = self.pcr_first, self.pcr_last
        return last - first if last > first else 0

    @property
    def stream_time(self) -> VideoTime:
        return VideoTime.from_pcr(self.pcr_duration)

    def lookup(self, pcr: int) -> Optional[PcrPosition]:
        """The first position whose PCR is at or after ``pcr``."""
        return next((p for p in self._matching() if pcr <= p.pcr), None)

    def lookup_reverse(self, pcr: int) -> Optional[PcrPosition]:
        """The last position whose PCR is at or before ``pcr``."""
        return next(
            (p for p in reversed(self.positions) if p.pid == self.pcr_pid and pcr >= p.pcr),
            None,
        )

    def entries(self) -> Iterator[tuple[int, PcrPosition]]:
        """Yield (index, position) for every entry on the PCR PID."""
        return ((i, p) for i, p in enumerate(self.positions) if p.pid == self.pcr_pid)


def slice_file(ifn: str | os.PathLike, ofn: str | os.PathLike,
               start: PcrPosition, end: PcrPosition) -> int:
    """Copy whole blocks from ``start.offset`` until ``end.offset`` is reached.

    Returns the number of bytes written.
    """
    written = 0
    with open(ifn, "rb") as ifh, open(ofn, "wb") as ofh:
        ifh.seek(start.offset)
        for _ in range(start.offset, end.offset, _SLICE_BLOCK):
            block = ifh.read(_SLICE_BLOCK)
            ofh.write(block)
            written += len(block)
    return written


def _format_entry(number: int, p: PcrPosition) -> str:
    return f"{number:8d}: 0x{p.pid:04x} {p.offset:016x} {p.pcr:16d}, {VideoTime.from_pcr(p.pcr)}"


def _usage() -> None:
    print("\nA tool to extract time periods from ISO13818 MPEGTS SPTS or MPTS files.")
    print("Input file is assumed to be properly packet aligned.")
    print("\nUsage:")
    print("  -i <input.ts>")
    print("  -o <output.ts>")
    print("  -l List the relevant timing information (from the .idx file)")
    print("  -s 0.hh:mm:ss.0  Start time for the slice operation")
    print("  -e 0.hh:mm:ss.0    End time for the slice operation")
    print("  -v Increase level of verbosity")
    print("\nExamples:")
    print("  # Create a timing index of your recording.ts file, 2hr recording can take 2-3 mins.")
    print("  # This will create recording.ts.idx.")
    print(f"  {_PROG} -i recording.ts")
    print("  # Show the contents of the timing index (automatically opens recording.ts.idx)")
    print(f"  {_PROG} -i recording.ts -l")
    print("  # Extract the segment between two different timestamps, "
          "roughly 30 seconds long, to new file output.ts.")
    print(f"  {_PROG} -i recording.ts -s 0.hh:mm:ss.0 -e 0.hh:mm:ss.0")
    print(f"  {_PROG} -i recording.ts -s 0.05:17:44.0 -e 0.05:18.14.0 -o output.ts")


def _load_index(ifn: str, pcr_pid: int) -> PcrIndex:
    print(f"\nReading index {_index_path(ifn)}")
    index = PcrIndex.load(ifn, pcr_pid)
    if index.pcr_last > index.pcr_first:
        print(f"PCRs from: {index.pcr_first} to {index.pcr_last}, "
              f"duration {index.pcr_duration}, {index.stream_time}")
    else:
        print(f"PCRs from: {index.pcr_first} to {index.pcr_last}")
    return index


def _fast_query(filename: str, pcr_pid: int) -> tuple[PcrPosition, PcrPosition]:
    size = os.path.getsize(filename)
    with open(filename, "rb") as fh:
        if size < _FAST_SINGLE_LIMIT:
            segments = [query_pcrs(fh.read(), 0)]
        else:
            head = query_pcrs(fh.read(_FAST_SEGMENT), 0)
            fh.seek(size - _FAST_SEGMENT)
            segments = [head, query_pcrs(fh.read(_FAST_SEGMENT), size - _FAST_SEGMENT)]
    print(f"Auto-detected PCR PID 0x{pcr_pid:04x}")
    begin = next((p for p in segments[0] if p.pid == pcr_pid), None)
    end = next((p for p in reversed(segments[-1]) if p.pid == pcr_pid), None)
    if begin is None or end is None:
        raise ValueError(f"{filename}: no PCRs on PID 0x{pcr_pid:04x}")
    return begin, end


def _query(filename: str) -> int:
    try:
        pcr_pid, _ = find_pcr_pid(filename)
    except (OSError, ValueError):
        print("Unable to query program PCR PID, aborting.", file=sys.stderr)
        return 1
    try:
        begin, end = _fast_query(filename, pcr_pid)
    except (OSError, ValueError):
        print("Unable to query file details", file=sys.stderr)
        return 1
    print()
    print(f"file: {filename}")
    print(f"      from {VideoTime.from_pcr(begin.pcr)}")
    print(f"        to {VideoTime.from_pcr(end.pcr)}")
    if end.pcr > begin.pcr:
        print(f"  duration {VideoTime.from_pcr(end.pcr - begin.pcr)}")
    print()
    return 0


def _list(ifn: str) -> int:
    try:
        pcr_pid, _ = find_pcr_pid(ifn)
    except (OSError, ValueError):
        print("Unable to query program PCR PID, aborting.", file=sys.stderr)
        return 1
    try:
        index = _load_index(ifn, pcr_pid)
    except OSError:
        print("index not found", file=sys.stderr)
        index = PcrIndex([], pcr_pid)
    print(f"Index is {len(index.positions)} entries, for pid 0x{pcr_pid:04x}:")
    for number, position in index.entries():
        print(_format_entry(number, position))
    print("End of Index")
    return 0


def main(argv=None) -> int:
    """Build, list or slice a transport file by PCR time; returns the result code."""
    args = sys.argv[1:] if argv is None else list(argv)
    try:
        opts, _ = getopt.getopt(args, "?hi:ls:e:o:q:v")
    except getopt.GetoptError:
        _usage()
        return 1

    ifn: Optional[str] = None
    ofn: Optional[str] = None
    start: Optional[VideoTime] = None
    end: Optional[VideoTime] = None
    for opt, value in opts:
        if opt in ("-?", "-h"):
            _usage()
            return 1
        if opt == "-e":
            try:
                end = VideoTime.parse(value)
            except ValueError:
                print("-e syntax error", file=sys.stderr)
                return 1
        elif opt == "-s":
            try:
                start = VideoTime.parse(value)
            except ValueError:
                print("-s syntax error", file=sys.stderr)
                return 1
        elif opt == "-i":
            ifn = value
        elif opt == "-o":
            ofn = value
        elif opt == "-q":
            return _query(value)
        elif opt == "-l":
            if ifn is None:
                _usage()
                print("\n-i is mandatory\n", file=sys.stderr)
                return 1
            if _list(ifn):
                return 1

    if ifn is None:
        _usage()
        print("\n-i is mandatory\n", file=sys.stderr)
        return 1

    try:
        pcr_pid, is_mpts = find_pcr_pid(ifn)
    except (OSError, ValueError):
        _usage()
        print("\nUnable to query PCR from stream, aborting.\n", file=sys.stderr)
        return 1
    print(f"Auto-detected {'MPTS' if is_mpts else 'SPTS'}, PCR on PID 0x{pcr_pid:04x}")

    try:
        index = _load_index(ifn, pcr_pid)
    except OSError:
        print("index not found", file=sys.stderr)
        try:
            print("Creating index ...", end="", flush=True)
            index = PcrIndex.build(ifn, pcr_pid)
        except OSError:
            print(f"Unable to open input file '{ifn}'", file=sys.stderr)
            return 1
        path = index.save(ifn)
        print(f"\nWriting index {path}")
        print("\rdone.")
        return 0

    pcr_start = start.to_pcr() if start is not None else index.pcr_first
    pcr_end = end.to_pcr() if end is not None else index.pcr_last

    first = index.lookup(pcr_start)
    last = index.lookup_reverse(pcr_end)
    if first is None or last is None:
        print("No PCRs found for the requested time range.", file=sys.stderr)
        return 1
    print(_format_entry(0, first))
    print(_format_entry(1, last))

    if ofn:
        try:
            slice_file(ifn, ofn, first, last)
        except OSError:
            print(f"Unable to write '{ofn}'", file=sys.stderr)
            return 1
        print("\ndone.")
    return 0