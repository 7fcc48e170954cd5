"""A threaded MPEG-TS packet source reading files or UDP/RTP network streams.

Supported urls:
  udp://host:port[?localaddr=a.b.c.d]   any datagram size
  rtp://host:port[?localaddr=a.b.c.d]   the 12 byte RTP header is removed
  file:///path, or a plain path
"""

from __future__ import annotations

import ipaddress
import socket
import threading
from enum import IntEnum
from typing import Callable, Optional, Protocol
from urllib.parse import parse_qs, urlsplit
from urllib.request import url2pathname

TS_PACKET_SIZE = 188
RTP_HEADER_SIZE = 12
RTP_MARKER = 0x80
_READ_PACKETS = 7
_POLL_INTERVAL = 0.05
_MAX_DATAGRAM = 65535


class AvioStatus(IntEnum):
    """Lifecycle events reported by a source."""

    UNDEFINED = 0
    MEDIA_START = 1
    MEDIA_END = 2


class _Reader(Protocol):
    def read(self, size: int) -> Optional[bytes]: ...

    def close(self) -> None: ...


class _FileReader:
    """Reads a file; an empty result marks the end of the media."""

    def __init__(self, path: str) -> None:
        self._fh = open(path, "rb")

    def read(self, size: int) -> Optional[bytes]:
        return self._fh.read(size)

    def close(self) -> None:
        self._fh.close()


class _UdpReader:
    """Receives datagrams; None means nothing arrived within the poll interval."""

    def __init__(self, host: str, port: int, localaddr: Optional[str]) -> None:
        group = socket.gethostbyname(host) if host else ""
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self._sock.bind(("", port))
            if group and ipaddress.ip_address(group).is_multicast:
                membership = socket.inet_aton(group) + socket.inet_aton(localaddr or "0.0.0.0")
                self._sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
            self._sock.settimeout(_POLL_INTERVAL)
        except OSError:
            self._sock.close()
            raise

    def read(self, size: int) -> Optional[bytes]:
        try:
            data = self._sock.recv(_MAX_DATAGRAM)
        except socket.timeout:
            return None
        return data[:size] or None

    def close(self) -> None:
        self._sock.close()


def _open(url: str) -> _Reader:
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme in ("udp", "rtp"):
        if parts.port is None:
            raise ValueError(f"{url}: a port is required")
        localaddr = parse_qs(parts.query).get("localaddr", [None])[0]
        return _UdpReader(parts.hostname or "", parts.port, localaddr)
    if scheme == "file":
        return _FileReader(url2pathname(parts.path))
    if "://" in url:
        raise ValueError(f"{url}: unsupported url scheme")
    return _FileReader(url)


class AvioSource:
    """Delivers whole transport packets from a url to ``on_packets`` on a background thread.

    ``on_packets`` receives bytes holding one or more 188 byte packets;
    ``on_status`` is told when the media starts and ends.
    """

    def __init__(
        self,
        url: str,
        on_packets: Callable[[bytes], object],
        on_status: Optional[Callable[[AvioStatus], object]] = None,
    ) -> None:
        if not url:
            raise ValueError("a url is required")
        self.url = url
        self._on_packets = on_packets
        self._on_status = on_status
        self._terminate = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self._reader = _open(url)

    def start(self) -> None:
        """Start reading on a background thread."""
        if self._closed:
            raise RuntimeError("source is closed")
        if self._thread is not None:
            raise RuntimeError("source already started")
        self._thread = threading.Thread(target=self._run, name="tsprobe-avio", daemon=True)
        self._thread.start()

    def close(self) -> None:
        """Stop the reader thread and release the input."""
        if self._closed:
            return
        self._closed = True
        self._terminate.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._reader.close()

    def __enter__(self) -> "AvioSource":
        self.start()
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _notify(self, status: AvioStatus) -> None:
        if self._on_status is not None:
            self._on_status(status)

    def _run(self) -> None:
        read_size = _READ_PACKETS * TS_PACKET_SIZE
        offset = 0
        is_rtp = False

        self._notify(AvioStatus.MEDIA_START)
        try:
            while not self._terminate.is_set():
                try:
                    data = self._reader.read(read_size)
                except (OSError, ValueError):
                    break
                if data is None:
                    continue
                if not data:
                    break

                if data[0] == RTP_MARKER and not is_rtp:
                    read_size += RTP_HEADER_SIZE
                    offset = RTP_HEADER_SIZE
                    is_rtp = True
                    continue

                payload = data[offset:]
                whole = len(payload) - len(payload) % TS_PACKET_SIZE
                if whole:
                    self._on_packets(payload[:whole])
        finally:
            self._notify(AvioStatus.MEDIA_END)