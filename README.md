# tsprobe

Command-line tools for ISO 13818-1 MPEG transport streams:

* capture packets from the network with per-PID packet, continuity-counter
  and transport-error counts;
* search H.264/HEVC streams for SEI payloads;
* index the PCR clock of a recorded `.ts` file and cut a time range out of it.

## Installation

```
pip install .
```

Python 3.10 or newer is required; the only runtime dependency is `psutil`.
To run the tests:

```
pip install ".[test]"
pytest
```

## Inputs

The capture and SEI tools take their input with `-i`, which may be

* a plain file path, or `file:///path`;
* `udp://host:port`, optionally with `?localaddr=a.b.c.d` to choose the
  interface used to join a multicast group;
* `rtp://host:port[?localaddr=...]`; the 12-byte RTP header is stripped.

Pass `-h` to any command for its option list.

## Commands

### tsprobe-udp-capture

Receives transport packets and, when it stops, prints a table of packet
count, CC errors and TEI errors for every PID seen. Continuity errors are
also printed as they happen (the null PID 0x1FFF is ignored).

```
tsprobe-udp-capture -i udp://234.1.1.1:4160 -o capture.ts
```

* `-o <name>` writes every packet to `<name>`. End the name with `@`
  (for example `-o recordings/mystream@`) to write a new file every 60
  seconds, named `recordings/mystream-YYYYMMDD-hhmmss.ts`.
* `-t <seconds>` stops after that many seconds.
* `-E` returns -1 if any continuity-counter errors were counted.
* `-M` shows a full-screen console with throughput and per-PID counters;
  press `q` to quit and `r` to reset the counters.
* `-v` prints the first 24 bytes of each packet; `-v -v` also reports the size
  of each received buffer.

The tool stops at end of input, on Ctrl-C, or when the `-t` timer fires.

### tsprobe-sei-unregistered

Scans a stream for H.264 "user data unregistered" SEI messages and prints the
stream offset and leading bytes of each one.

```
tsprobe-sei-unregistered -i recording.ts -c -f
```

* `-c` also reports T.35 registered user data (captions), in H.264 and HEVC
  (prefix and suffix SEI) form.
* `-f` also reports H.264 filler-payload SEI messages.
* `-v` shows each H.264 message at its declared length instead of a fixed
  number of bytes.

Messages running past the end of a buffer are marked `... <snip>`.

### tsprobe-slicer

Extracts a time range from a recorded SPTS or MPTS file. The PCR PID of the
first program is found from the PAT and PMTs in the first 16 MB.

Build the PCR index first; this writes `recording.ts.idx` and exits:

```
tsprobe-slicer -i recording.ts
```

List the index entries on the PCR PID (give `-i` before `-l`):

```
tsprobe-slicer -i recording.ts -l
```

Cut a range to a new file. Times are written `days.hh:mm:ss.ms`:

```
tsprobe-slicer -i recording.ts -s 0.05:17:44.0 -e 0.05:18:14.0 -o output.ts
```

Without `-s` or `-e`, the first and last PCR in the index are used. Without
`-o`, the chosen start and end entries are printed but nothing is written.

For the start time, end time and duration of a file without building an
index (it reads at most the first and last 16 MB):

```
tsprobe-slicer -q recording.ts
```

### tsprobe

Runs one of the tools above by name. The name is taken from the program name,
or otherwise from the first argument:

```
tsprobe tstools_slicer -i recording.ts -l
tsprobe --listapps
tsprobe --symlinks
```

The tool names are `tstools_udp_capture`, `tstools_slicer` and
`tstools_sei_unregistered`. `--symlinks` creates a link with each of these
names in the current directory, so each tool can be started by its own name.

## Library use

* `tsprobe.source.AvioSource(url, on_packets, on_status)` reads an input on
  a background thread and calls `on_packets` with buffers of whole 188-byte
  packets; `on_status` receives `AvioStatus.MEDIA_START` and `MEDIA_END`. It
  is a context manager that starts on entry and closes on exit.
* `tsprobe.udp_capture.CaptureStatistics` counts packets, CC and TEI errors
  per PID; `SegmentWriter` writes single or 60-second segmented files.
* `tsprobe.sei_unregistered.SeiScanner` and the `find_sei_*` functions return
  `SeiMatch` records for a byte buffer.
* `tsprobe.slicer.VideoTime` converts between `days.hh:mm:ss.ms` text and
  27 MHz PCR values; `query_pcrs`, `find_pcr_pid`, `PcrIndex` and
  `slice_file` build, save, query and cut by PCR index.
* `tsprobe.utils` has helpers for IPv4 interface lookup, UDP flow
  descriptions, process memory tracking (`ProcessMemory`, Linux
  `/proc/self/statm`) and ISO 8601 UTC timestamps.

## What it does not do

* There are no PAT/PMT or PES inspectors, no TR 101 290 analysis, and no
  SMPTE 2038, SCTE-35 or latency-measurement tools.
* Inputs are files, UDP and RTP only: no capture from a network interface
  with a packet filter, and no HLS or SRT inputs; RTP FEC is not handled.
* Nothing is transmitted: there is no playout or stream generation.
* Index lookups assume the PCR does not wrap within the file.