import io
import math

import pytest

from cpuknobs.traces import (
    Trace,
    TraceFooter,
    TraceHeader,
    debounce,
    debounce_stream,
    dump_lines,
    iter_frames,
    main_dump,
    main_watts,
    read_footer,
    read_header,
    read_trace,
    watts_lines,
    write_footer,
    write_frames,
    write_header,
)

HEADER = TraceHeader(version=0, start_sec=1700000000, start_usec=123456, rate=1000, channels=4)
FRAMES = [(0.5, -1.25, 2.0, -4.0), (1.0, 0.25, -0.5, 4.0), (0.0, 0.0, 0.0, -4.0)]
FOOTER = TraceFooter(stop_sec=1700000010, stop_usec=42)


def build(header=HEADER, frames=FRAMES, footer=FOOTER):
    buffer = io.BytesIO()
    write_header(buffer, header)
    write_frames(buffer, frames)
    write_footer(buffer, footer)
    buffer.seek(0)
    return buffer


def test_round_trip():
    trace = read_trace(build())
    assert trace.header == HEADER
    assert trace.frames == FRAMES
    assert trace.tail == ()
    assert trace.footer == FOOTER


def test_iter_frames_stops_at_terminator():
    stream = build()
    header = read_header(stream)
    assert list(iter_frames(stream, header.channels)) == FRAMES
    assert read_footer(stream) == FOOTER


def test_truncated_stream_keeps_partial_frame():
    buffer = io.BytesIO()
    write_header(buffer, HEADER)
    write_frames(buffer, [FRAMES[0], FRAMES[1][:2]])
    buffer.seek(0)
    trace = read_trace(buffer)
    assert trace.frames == [FRAMES[0]]
    assert trace.tail == FRAMES[1][:2]
    assert trace.footer is None


def test_truncated_header_raises():
    with pytest.raises(ValueError):
        read_header(io.BytesIO(b"\x00" * 10))


def test_zero_channels_rejected():
    with pytest.raises(ValueError):
        list(iter_frames(io.BytesIO(), 0))


def test_dump_lines():
    header = TraceHeader(1, 10, 123456, 2, 2)
    frames = [(0.5, -1.25), (1.0, 2.0)]
    trace = Trace(header, frames, (), TraceFooter(20, 7))
    lines = list(dump_lines(trace))
    assert lines[0] == f"(* Version {header.version} *)"
    assert lines[4] == "0.000000:\t0.500000\t-1.250000\t"
    assert lines[5].startswith("0.500000:")
    assert len(lines) == 4 + len(frames) + 2
    assert lines[-2] == ""
    assert lines[-1] == "(* Stop Time 20.000007)"


def test_watts_sign_and_zero():
    header = TraceHeader(0, 0, 0, 1, 2)
    trace = Trace(header, [(0.0, 2.0), (1.0, 1.0), (-1.0, 1.0)], (), None)
    rows = list(watts_lines(trace))[4:]
    watts = [float(row.split("\t")[1]) for row in rows]
    assert watts[0] == 0.0
    assert watts[1] > 0
    assert math.isclose(watts[1], -watts[2])


def test_watts_needs_two_channels():
    trace = Trace(TraceHeader(0, 0, 0, 1, 1), [(1.0,)], (), None)
    with pytest.raises(ValueError):
        list(watts_lines(trace))


def test_debounce_flips_glitch():
    frames = [(0.0, 0.0, 0.0, -1.0), (0.0, 0.0, 0.0, 1.0), (0.0, 0.0, 0.0, -1.0)]
    output, glitches = debounce(frames)
    assert len(output) == len(frames)
    assert glitches == [(2, 1)]
    assert output[1][3] == -frames[1][3]
    assert output[0] == frames[0] and output[2] == frames[2]


def test_main_dump_file(tmp_path, capsys):
    path = tmp_path / "trace.bin"
    path.write_bytes(build().getvalue())
    assert main_dump([str(path)]) == 0
    output = capsys.readouterr().out.splitlines()
    assert output[0] == f"(* Version {HEADER.version} *)"
    assert len(output) == 4 + len(FRAMES) + 2


def test_main_missing_file(tmp_path):
    assert main_watts([str(tmp_path / "absent.bin")]) == -1