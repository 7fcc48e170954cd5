import socket
import threading

import pytest

from tsprobe.source import AvioSource, AvioStatus


def _packets(count, seed=0):
    return b"".join(
        bytes([0x47, 0x00, (seed + i) & 0xFF, 0x10]) + bytes([(seed + i) & 0xFF]) * 184
        for i in range(count)
    )


def _free_udp_port():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


class _Collector:
    def __init__(self):
        self.chunks = []
        self.statuses = []
        self.done = threading.Event()
        self.got_data = threading.Event()

    def on_packets(self, buf):
        self.chunks.append(buf)
        self.got_data.set()

    def on_status(self, status):
        self.statuses.append(status)
        if status is AvioStatus.MEDIA_END:
            self.done.set()


def test_file_source_delivers_every_packet(tmp_path):
    payload = _packets(20)
    path = tmp_path / "in.ts"
    path.write_bytes(payload)
    sink = _Collector()

    with AvioSource(str(path), sink.on_packets, sink.on_status):
        assert sink.done.wait(5)

    assert b"".join(sink.chunks) == payload
    assert all(len(c) % 188 == 0 and len(c) <= 7 * 188 for c in sink.chunks)
    assert sink.statuses == [AvioStatus.MEDIA_START, AvioStatus.MEDIA_END]


def test_file_url_source(tmp_path):
    payload = _packets(9, seed=3)
    path = tmp_path / "url.ts"
    path.write_bytes(payload)
    sink = _Collector()

    with AvioSource(path.as_uri(), sink.on_packets, sink.on_status):
        assert sink.done.wait(5)

    assert b"".join(sink.chunks) == payload


def test_partial_trailing_packet_is_dropped(tmp_path):
    payload = _packets(3)
    path = tmp_path / "short.ts"
    path.write_bytes(payload + b"\x47" * 10)
    sink = _Collector()

    with AvioSource(str(path), sink.on_packets, sink.on_status):
        assert sink.done.wait(5)

    assert b"".join(sink.chunks) == payload


def test_udp_source_receives_datagram():
    port = _free_udp_port()
    packets = _packets(7, seed=10)
    sink = _Collector()

    with AvioSource(f"udp://127.0.0.1:{port}", sink.on_packets, sink.on_status):
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sender:
            sender.sendto(packets, ("127.0.0.1", port))
        assert sink.got_data.wait(5)

    assert sink.chunks[0] == packets
    assert sink.statuses == [AvioStatus.MEDIA_START, AvioStatus.MEDIA_END]


def test_rtp_header_is_stripped():
    port = _free_udp_port()
    packets = _packets(7, seed=20)
    rtp_header = bytes([0x80, 0x21]) + bytes(10)
    sink = _Collector()

    with AvioSource(f"rtp://127.0.0.1:{port}", sink.on_packets, sink.on_status):
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sender:
            for _ in range(3):
                sender.sendto(rtp_header + packets, ("127.0.0.1", port))
        assert sink.got_data.wait(5)

    assert sink.chunks[0] == packets


def test_close_without_data_reports_start_and_end():
    port = _free_udp_port()
    sink = _Collector()
    source = AvioSource(f"udp://127.0.0.1:{port}", sink.on_packets, sink.on_status)
    source.start()
    source.close()
    assert sink.statuses == [AvioStatus.MEDIA_START, AvioStatus.MEDIA_END]
    assert sink.chunks == []


def test_start_twice_raises(tmp_path):
    path = tmp_path / "in.ts"
    path.write_bytes(_packets(1))
    sink = _Collector()
    source = AvioSource(str(path), sink.on_packets, sink.on_status)
    source.start()
    try:
        with pytest.raises(RuntimeError):
            source.start()
    finally:
        source.close()


def test_start_after_close_raises(tmp_path):
    path = tmp_path / "in.ts"
    path.write_bytes(_packets(1))
    source = AvioSource(str(path), lambda buf: None)
    source.close()
    with pytest.raises(RuntimeError):
        source.start()


def test_unsupported_scheme():
    with pytest.raises(ValueError):
        AvioSource("srt://127.0.0.1:9000", lambda buf: None)


def test_udp_requires_port():
    with pytest.raises(ValueError):
        AvioSource("udp://127.0.0.1", lambda buf: None)


def test_empty_url():
    with pytest.raises(ValueError):
        AvioSource("", lambda buf: None)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        AvioSource(str(tmp_path / "missing.ts"), lambda buf: None)