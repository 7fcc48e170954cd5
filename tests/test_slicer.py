import pytest

from tsprobe.slicer import (
    PcrIndex,
    PcrPosition,
    VideoTime,
    find_pcr_pid,
    main,
    query_pcrs,
    slice_file,
)

PCR_HZ = 27000000

PAT_HEAD = bytes([
    0x47, 0x40, 0x00, 0x17, 0x00, 0x00, 0xB0, 0x0D, 0x00, 0x01, 0xC1, 0x00, 0x00, 0x00, 0x01, 0xE0,
    0x30, 0xEE, 0xD2, 0xF2, 0x31,
])
PMT_HEAD = bytes([
    0x47, 0x40, 0x30, 0x18, 0x00, 0x02, 0xB0, 24, 0x00, 0x01, 0xC1, 0x00, 0x00, 0xE0, 0x31, 0xF0,
    0x06, 0xA2, 0x04, 0x02, 0x00, 0x00, 0x01, 0x86, 0xE0, 0x32, 0xF0, 0x00, 0xE0, 0x31, 0xB7, 0x18,
])


def pad(head):
    return head + b"\xff" * (188 - len(head))


def pcr_packet(pid, pcr, cc=0):
    base, ext = divmod(pcr, 300)
    header = bytes([0x47, (pid >> 8) & 0x1F, pid & 0xFF, 0x20 | (cc & 0x0F)])
    af = bytes([
        7, 0x10,
        (base >> 25) & 0xFF, (base >> 17) & 0xFF, (base >> 9) & 0xFF, (base >> 1) & 0xFF,
        ((base & 1) << 7) | 0x7E | ((ext >> 8) & 1), ext & 0xFF,
    ])
    return pad(header + af)


def filler_packet(pid):
    return pad(bytes([0x47, (pid >> 8) & 0x1F, pid & 0xFF, 0x10]))


def make_stream(seconds=10):
    data = pad(PAT_HEAD) + pad(PMT_HEAD)
    for k in range(seconds):
        data += pcr_packet(0x31, k * PCR_HZ, k)
        data += b"".join(filler_packet(0x100) for _ in range(3))
    return data


@pytest.fixture
def stream_file(tmp_path):
    path = tmp_path / "recording.ts"
    path.write_bytes(make_stream())
    return path


def test_videotime_parse_and_str_round_trip():
    text = "0.05:17:44.0"
    assert str(VideoTime.parse(text)) == text


def test_videotime_pcr_round_trip():
    vt = VideoTime.parse("1.05:17:44.0")
    assert VideoTime.from_pcr(vt.to_pcr()) == vt


def test_videotime_from_pcr_drops_milliseconds():
    vt = VideoTime(0, 1, 2, 3, 500)
    back = VideoTime.from_pcr(vt.to_pcr())
    assert back.msecs == 0
    assert (back.hours, back.mins, back.secs) == (1, 2, 3)


def test_videotime_parse_rejects_garbage():
    with pytest.raises(ValueError):
        VideoTime.parse("05:17:44")


def test_query_pcrs_decodes_value_and_offset():
    pcr = 123456789
    buf = filler_packet(0x100) + pcr_packet(0x31, pcr)
    found = query_pcrs(buf, 1000)
    assert found == [PcrPosition(0x31, 1000 + 188, pcr)]


def test_query_pcrs_ignores_packets_without_pcr():
    assert query_pcrs(filler_packet(0x31) * 4) == []


def test_find_pcr_pid(stream_file):
    assert find_pcr_pid(stream_file) == (0x31, False)


def test_find_pcr_pid_without_model(tmp_path):
    path = tmp_path / "empty.ts"
    path.write_bytes(filler_packet(0x100) * 10)
    with pytest.raises(ValueError):
        find_pcr_pid(path)


def test_index_build_save_load_round_trip(stream_file):
    built = PcrIndex.build(stream_file, 0x31)
    built.save(stream_file)
    loaded = PcrIndex.load(stream_file, 0x31)
    assert loaded.positions == built.positions
    assert len(list(loaded.entries())) == 10
    assert loaded.pcr_first == 0
    assert loaded.pcr_last == 9 * PCR_HZ
    assert loaded.pcr_duration == loaded.pcr_last - loaded.pcr_first


def test_index_lookups(stream_file):
    index = PcrIndex.build(stream_file, 0x31)
    first = index.lookup(2 * PCR_HZ + 1)
    assert first.pcr >= 2 * PCR_HZ + 1
    assert all(p.pcr < first.pcr for _, p in index.entries() if p.offset < first.offset)
    last = index.lookup_reverse(5 * PCR_HZ - 1)
    assert last.pcr <= 5 * PCR_HZ - 1
    assert index.lookup(100 * PCR_HZ) is None
    assert index.lookup_reverse(-1) is None


def test_index_load_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        PcrIndex.load(tmp_path / "absent.ts", 0x31)


def test_slice_file_copies_from_start(stream_file, tmp_path):
    index = PcrIndex.build(stream_file, 0x31)
    start = index.lookup(2 * PCR_HZ)
    end = index.lookup_reverse(5 * PCR_HZ)
    out = tmp_path / "out.ts"
    written = slice_file(stream_file, out, start, end)
    data = stream_file.read_bytes()
    assert out.read_bytes() == data[start.offset:start.offset + 188 * 64]
    assert written == len(out.read_bytes())


def test_main_builds_index_then_slices(stream_file, tmp_path):
    assert main(["-i", str(stream_file)]) == 0
    assert (tmp_path / "recording.ts.idx").exists()

    out = tmp_path / "cut.ts"
    rc = main(["-i", str(stream_file), "-s", "0.00:00:02.0", "-e", "0.00:00:05.0", "-o", str(out)])
    assert rc == 0
    index = PcrIndex.load(stream_file, 0x31)
    start = index.lookup(2 * PCR_HZ)
    assert out.read_bytes()[:188] == stream_file.read_bytes()[start.offset:start.offset + 188]


def test_main_list(stream_file, capsys):
    main(["-i", str(stream_file)])
    capsys.readouterr()
    assert main(["-i", str(stream_file), "-l"]) == 0
    assert "End of Index" in capsys.readouterr().out


def test_main_query(stream_file, capsys):
    assert main(["-q", str(stream_file)]) == 0
    out = capsys.readouterr().out
    assert f"file: {stream_file}" in out
    assert "duration" in out


def test_main_requires_input(capsys):
    assert main([]) == 1
    assert "-i is mandatory" in capsys.readouterr().err


def test_main_bad_start_time(stream_file, capsys):
    assert main(["-i", str(stream_file), "-s", "bogus"]) == 1
    assert "-s syntax error" in capsys.readouterr().err