"""Read, dump and clean up binary voltage traces recorded by the DAQ logger.

The layout is: int32 version, int64 start seconds, int64 start
microseconds, int32 rate, int32 channels, then float32 samples grouped in
frames of ``channels`` values, an infinite float as terminator, and
int64 stop seconds and microseconds. All fields are little-endian.
"""

from __future__ import annotations

import contextlib
import math
import struct
import sys
from dataclasses import dataclass, field

_HEADER = struct.Struct("<iqqii")
_FOOTER = struct.Struct("<qq")
_SAMPLE = struct.Struct("<f")


@dataclass(frozen=True)
class TraceHeader:
    version: int
    start_sec: int
    start_usec: int
    rate: int
    channels: int


@dataclass(frozen=True)
class TraceFooter:
    stop_sec: int
    stop_usec: int


@dataclass
class Trace:
    """A whole trace; ``tail`` holds values of an incomplete last frame."""

    header: TraceHeader
    frames: list = field(default_factory=list)
    tail: tuple = ()
    footer: TraceFooter | None = None


def _read_exact(stream, size):
    chunks = []
    remaining = size
    while remaining:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_header(stream):
    data = _read_exact(stream, _HEADER.size)
    if len(data) < _HEADER.size:
        raise ValueError("truncated trace header")
    return TraceHeader(*_HEADER.unpack(data))


def _frames_with_tail(stream, channels):
    if channels < 1:
        raise ValueError(f"invalid channel count {channels}")
    while True:
        values = []
        for _ in range(channels):
            chunk = _read_exact(stream, _SAMPLE.size)
            if len(chunk) < _SAMPLE.size:
                break
            value = _SAMPLE.unpack(chunk)[0]
            if math.isinf(value):
                break
            values.append(value)
        else:
            yield tuple(values), True
            continue
        yield tuple(values), False
        return


def iter_frames(stream, channels):
    """Yield complete frames until the terminator or end of data."""
    for frame, complete in _frames_with_tail(stream, channels):
        if complete:
            yield frame


def read_footer(stream):
    data = _read_exact(stream, _FOOTER.size)
    if len(data) < _FOOTER.size:
        return None
    return TraceFooter(*_FOOTER.unpack(data))


def read_trace(stream):
    header = read_header(stream)
    trace = Trace(header)
    for frame, complete in _frames_with_tail(stream, header.channels):
        if complete:
            trace.frames.append(frame)
        else:
            trace.tail = frame
    trace.footer = read_footer(stream)
    return trace


def write_header(stream, header):
    stream.write(
        _HEADER.pack(
            header.version,
            header.start_sec,
            header.start_usec,
            header.rate,
            header.channels,
        )
    )


def write_frames(stream, frames):
    for frame in frames:
        stream.write(struct.pack(f"<{len(frame)}f", *frame))


def write_footer(stream, footer):
    """Write the terminator and, if given, the stop time."""
    stream.write(_SAMPLE.pack(math.inf))
    if footer is not None:
        stream.write(_FOOTER.pack(footer.stop_sec, footer.stop_usec))


def _seconds(ticks, rate):
    if rate:
        return ticks / rate
    return math.nan if ticks == 0 else math.inf


def _header_lines(header):
    yield f"(* Version {header.version} *)"
    yield f"(* Start Time {header.start_sec}.{header.start_usec:06d})"
    yield f"(* Rate {header.rate} Hz *)"
    yield f"(* Channels {header.channels} *)"


def _stop_line(footer):
    return f"(* Stop Time {footer.stop_sec}.{footer.stop_usec:06d})"


def _frame_line(tick, rate, values):
    stamp = f"{_seconds(tick, rate):.6f}:\t"
    return stamp + "".join(f"{value:.6f}\t" for value in values)


def dump_lines(trace):
    """Text dump of every sample, one line per frame."""
    header = trace.header
    yield from _header_lines(header)
    for tick, frame in enumerate(trace.frames):
        yield _frame_line(tick, header.rate, frame)
    if trace.tail:
        yield _frame_line(len(trace.frames), header.rate, trace.tail)
    else:
        yield ""
    if trace.footer is not None:
        yield _stop_line(trace.footer)


def watts_lines(trace):
    """Power per frame from the amplified shunt voltage and supply voltage."""
    header = trace.header
    if header.channels < 2:
        raise ValueError("power needs at least two channels")
    yield from _header_lines(header)
    for tick, frame in enumerate(trace.frames):
        shunt, supply = frame[0], frame[1]
        watts = ((shunt / 300.0) / 0.00333) * supply
        yield (
            f"{_seconds(tick, header.rate):.6f}\t{watts:.6f}\t"
            f"(* {shunt:.6f} {supply:.6f} *)"
        )
    if trace.footer is not None:
        yield _stop_line(trace.footer)


def debounce(frames):
    """Undo single-sample sign glitches on channel 3.

    Returns the first four channels of every frame, with glitches
    corrected, and a list of (frame index, glitch kind) pairs.
    """
    output = []
    glitches = []
    last0 = last1 = -5.0
    prev = None
    for index, frame in enumerate(frames):
        if len(frame) < 4:
            raise ValueError("debouncing needs at least four channels")
        current = frame[3]
        if last0 < 0.0 and last1 > 0.0 and current < 0.0:
            glitches.append((index, 1))
            prev[3] = -prev[3]
        elif last0 > 0.0 and last1 < 0.0 and current > 0.0:
            glitches.append((index, 2))
            prev[3] = -prev[3]
        if prev is not None:
            output.append(tuple(prev))
        prev = list(frame[:4])
        last0, last1 = last1, current
    if prev is not None:
        output.append(tuple(prev))
    return output, glitches


def debounce_stream(source, sink, log=None):
    """Copy a trace from ``source`` to ``sink`` with channel 3 debounced."""
    log = log or sys.stderr
    header = read_header(source)
    write_header(sink, header)
    for line in _header_lines(header):
        print(line, file=log)
    if header.channels < 4:
        raise ValueError("debouncing needs at least four channels")
    output, glitches = debounce(iter_frames(source, header.channels))
    for _, kind in glitches:
        print(f"Glitch{kind}!", file=log)
    write_frames(sink, output)
    footer = read_footer(source)
    write_footer(sink, footer)
    if footer is not None:
        print(_stop_line(footer), file=log)
    return glitches


def _open_source(args):
    if args:
        return open(args[0], "rb")
    return contextlib.nullcontext(sys.stdin.buffer)


def _render(argv, render):
    args = sys.argv[1:] if argv is None else list(argv)
    try:
        source = _open_source(args)
    except OSError:
        print(f"Could not open {args[0]}", file=sys.stderr)
        return -1
    try:
        with source as stream:
            lines = list(render(read_trace(stream)))
    except ValueError as exc:
        print(exc, file=sys.stderr)
        return -1
    for line in lines:
        sys.stdout.write(line + "\n")
    return 0


def main_dump(argv=None):
    return _render(argv, dump_lines)


def main_watts(argv=None):
    return _render(argv, watts_lines)


def main_debounce(argv=None):
    args = sys.argv[1:] if argv is None else list(argv)
    try:
        source = _open_source(args)
    except OSError:
        print(f"Could not open {args[0]}", file=sys.stderr)
        return -1
    sink = sys.stdout.buffer
    try:
        with source as stream:
            debounce_stream(stream, sink, sys.stderr)
    except ValueError as exc:
        print(exc, file=sys.stderr)
        return -1
    sink.flush()
    return 0