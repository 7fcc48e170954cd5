"""Find SEI unregistered, T.35 caption and filler payload patterns in H.264/HEVC streams."""

from __future__ import annotations

import argparse
import sys
import threading
from dataclasses import dataclass

from .source import AvioSource, AvioStatus

_FILLER_PATTERN = b"\x00\x00\x01\x06\x03"
_AVC_T35_PATTERN = b"\x00\x00\x01\x06\x04"
_UNREGISTERED_PATTERN = b"\x00\x00\x01\x06\x05"
_START_CODE = b"\x00\x00\x01"
_HEVC_PREFIX_SEI = 39
_HEVC_SUFFIX_SEI = 40
_REGISTERED_T35 = 0x04

_USAGE = "\n".join([
    "A tool to find SEI UNREGISTERED data patterns, or T35 Captions, "
    "or filler/padding SEI segments in H.264 streams.",
    "Usage:",
    "  -i <url> Eg: rtp|udp://227.1.20.45:4001?localaddr=192.168.20.45",
    "           192.168.20.45 is the IP addr where we'll issue a IGMP join",
    "  -c Find caption SEIs in H.264 [Default: disabled].",
    "  -f Find filler payload SEIs in H.264 [Default: disabled].",
    "  -v Increase level of verbosity.",
    "  -h Display command line help.",
])


@dataclass(frozen=True)
class SeiMatch:
    """One SEI found in the stream, with the bytes shown for it."""

    label: str
    offset: int
    data: bytes
    truncated: bool

    def __str__(self) -> str:
        text = f"{self.label} offset 0x{self.offset:08x} : "
        text += "".join(f"{byte:02x} " for byte in self.data)
        if self.truncated:
            text += " ... <snip>"
        return text


def _capture(buf: bytes, i: int, length: int, label: str, offset: int) -> SeiMatch:
    available = len(buf) - i
    truncated = length > available
    if truncated:
        length = available
    return SeiMatch(label, offset + i, bytes(buf[i:i + length]), truncated)


def _scan_pattern(buf: bytes, offset: int, verbose: bool, pattern: bytes,
                  label: str, default_length: int) -> list[SeiMatch]:
    buf = bytes(buf)
    limit = len(buf) - 5
    matches = []
    i = buf.find(pattern)
    while 0 <= i < limit:
        length = 5 + buf[i + 5] if verbose else default_length
        matches.append(_capture(buf, i, length, label, offset))
        i = buf.find(pattern, i + 1)
    return matches


def find_sei_filler_payload(buf: bytes, offset: int = 0, verbose: bool = False) -> list[SeiMatch]:
    """Find H.264 filler payload SEIs; ``offset`` is the stream position of ``buf``."""
    return _scan_pattern(buf, offset, verbose, _FILLER_PATTERN, "fill ", 32)


def find_sei_t35(buf: bytes, offset: int = 0, verbose: bool = False) -> list[SeiMatch]:
    """Find registered T.35 (caption) SEIs, first in H.264 form then in HEVC form."""
    buf = bytes(buf)
    matches = _scan_pattern(buf, offset, verbose, _AVC_T35_PATTERN, "  AVC t.35", 42)

    limit = len(buf) - 10
    i = buf.find(_START_CODE)
    while 0 <= i < limit:
        nal_type = (buf[i + 3] & 0x7E) >> 1
        if nal_type in (_HEVC_PREFIX_SEI, _HEVC_SUFFIX_SEI) and buf[i + 5] == _REGISTERED_T35:
            length = buf[i + 6] + 1 + 7
            matches.append(_capture(buf, i, length, " HEVC t.35", offset))
        i = buf.find(_START_CODE, i + 1)
    return matches


def find_sei_unregistered(buf: bytes, offset: int = 0, verbose: bool = False) -> list[SeiMatch]:
    """Find H.264 user data unregistered SEIs."""
    return _scan_pattern(buf, offset, verbose, _UNREGISTERED_PATTERN, "unreg", 32)


class SeiScanner:
    """Scans consecutive buffers of a stream, tracking the stream offset."""

    def __init__(self, t35: bool = False, filler: bool = False, verbose: bool = False) -> None:
        self.t35 = t35
        self.filler = filler
        self.verbose = verbose
        self.offset = 0

    def scan(self, buf: bytes) -> list[SeiMatch]:
        """Return the matches in ``buf`` and advance the stream offset past it."""
        matches: list[SeiMatch] = []
        if self.t35:
            matches += find_sei_t35(buf, self.offset, self.verbose)
        if self.filler:
            matches += find_sei_filler_payload(buf, self.offset, self.verbose)
        matches += find_sei_unregistered(buf, self.offset, self.verbose)
        self.offset += len(buf)
        return matches


class _UsageError(Exception):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise _UsageError(message)


def main(argv=None) -> int:
    """Scan a stream and print every SEI pattern found; returns the result code."""
    parser = _Parser(add_help=False)
    parser.add_argument("-h", "-?", dest="help", action="store_true")
    parser.add_argument("-c", dest="t35", action="store_true")
    parser.add_argument("-f", dest="filler", action="store_true")
    parser.add_argument("-v", dest="verbose", action="store_true")
    parser.add_argument("-i", dest="input")
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

    scanner = SeiScanner(opts.t35, opts.filler, opts.verbose)
    stop = threading.Event()

    def on_packets(buf: bytes) -> None:
        for match in scanner.scan(buf):
            print(match)

    def on_status(status: AvioStatus) -> None:
        if status is AvioStatus.MEDIA_END:
            stop.set()

    try:
        source = AvioSource(opts.input, on_packets, on_status)
    except (OSError, ValueError):
        print("-i syntax error", file=sys.stderr)
        return 1

    with source:
        try:
            while not stop.wait(0.05):
                pass
        except KeyboardInterrupt:
            pass
        print("Closing stream")
    return 0