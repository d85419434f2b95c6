"""Find DTR-marked traces in DRAM power recordings and total their energy.

A recording holds a header, frames of 32-bit float channel samples ending
with an infinity marker, and a footer with the stop time. One channel
carries the serial port's DTR line, which is raised and lowered around
each trace. The port bounces for a few milliseconds when it is opened, so
a level must persist for a while before it counts.
"""

from __future__ import annotations

import contextlib
import math
import struct
import sys
from dataclasses import dataclass
from enum import Enum

DTR_HIGH = 4.0
DTR_LOW = -4.0

_HEADER = struct.Struct("<iqqii")
_SAMPLE = struct.Struct("<f")
_FOOTER = struct.Struct("<qq")


class DtrState(Enum):
    """Where the detector stands relative to a trace."""

    NONE = 0
    DTR_START = 1
    DTR_STOP = 2
    IN_TRACE = 3


@dataclass(frozen=True)
class TraceResult:
    """Energy of one trace; ``end`` is None for a trace that never ended."""

    index: int
    start: float
    end: float | None
    elapsed: float
    joules: tuple

    @property
    def complete(self):
        return self.end is not None

    @property
    def average_power(self):
        """Average watts of each rail over the trace."""
        if self.elapsed == 0:
            return tuple(math.nan for _ in self.joules)
        return tuple(joules / self.elapsed for joules in self.joules)


class TraceDetector:
    """Debounced state machine following the DTR channel frame by frame."""

    def __init__(self, rate, dtr_channel=3):
        if rate <= 0:
            raise ValueError(f"rate must be positive, not {rate}")
        self.rate = rate
        self.dtr_channel = dtr_channel
        self.threshold = max(rate // 500, 1)
        self.state = DtrState.NONE
        self.time_in_state = 0
        self.ticks = 0
        self.trace_ticks = 0
        self.traces = 0

    def feed(self, frame):
        """Advance by one frame and return the state that applies to it."""
        if len(frame) <= self.dtr_channel:
            raise ValueError(
                f"frame of {len(frame)} channels has no DTR channel {self.dtr_channel}"
            )
        dtr = frame[self.dtr_channel]
        state = self.state
        if state is DtrState.NONE:
            if dtr > DTR_HIGH:
                self.time_in_state += 1
                if self.time_in_state > self.threshold:
                    state = DtrState.DTR_START
                    self.time_in_state = 0
        elif state is DtrState.DTR_START:
            if dtr < DTR_LOW:
                state = DtrState.IN_TRACE
                self.trace_ticks = 0
                self.time_in_state = 0
        elif state is DtrState.IN_TRACE:
            if dtr > DTR_HIGH:
                self.time_in_state += 1
                if self.time_in_state > self.threshold:
                    state = DtrState.DTR_STOP
                    self.traces += 1
                    self.time_in_state = 0
        elif state is DtrState.DTR_STOP:
            if dtr < DTR_LOW:
                state = DtrState.NONE
                self.time_in_state = 0
        self.state = state
        if state is DtrState.IN_TRACE:
            self.trace_ticks += 1
        self.ticks += 1
        return state


def ddr3_power(frame):
    """Watts drawn by a DDR3 module: shunt amplifier on 0, rail voltage on 1."""
    return ((frame[0] / 300.0) / 0.00333) * frame[1]


def ddr4_power(frame):
    """Watts drawn on the VDD and VPP rails of a DDR4 module."""
    vdd = ((frame[0] / 100.0) / 0.005) * frame[1]
    vpp = ((frame[1] / 100.0) / 0.005) * frame[2]
    return vdd, vpp


@dataclass(frozen=True)
class _Profile:
    dtr_channel: int
    power: object
    labels: tuple


_PROFILES = {
    "ddr3": _Profile(
        3,
        lambda frame: (ddr3_power(frame),),
        (("Total Energy", "Average Power"),),
    ),
    "ddr4": _Profile(
        7,
        ddr4_power,
        (
            ("Total VDD Energy", "Average VDD Power"),
            ("Total VPP Energy", "Average VPP Power"),
        ),
    ),
}


def _profile(name):
    try:
        return _PROFILES[name]
    except KeyError:
        raise ValueError(f"unknown profile {name!r}") from None


def analyse(trace, profile="ddr3"):
    """Split a recording into traces and integrate their energy.

    ``trace`` is any object with ``rate`` (samples per second) and
    ``frames`` (sequences of channel values). ``profile`` is "ddr3" or
    "ddr4". Returns a list of TraceResult, the last one possibly incomplete.
    """
    spec = _profile(profile)
    rate = trace.rate
    detector = TraceDetector(rate, spec.dtr_channel)
    results = []
    joules = None
    start = 0.0
    for frame in trace.frames:
        tick = detector.ticks
        previous = detector.state
        state = detector.feed(frame)
        if previous is DtrState.DTR_START and state is DtrState.IN_TRACE:
            start = tick / rate
            joules = [0.0] * len(spec.labels)
        elif previous is DtrState.IN_TRACE and state is DtrState.DTR_STOP:
            results.append(
                TraceResult(
                    len(results),
                    start,
                    tick / rate,
                    detector.trace_ticks / rate,
                    tuple(joules),
                )
            )
            joules = None
        if state is DtrState.IN_TRACE:
            for rail, watts in enumerate(spec.power(frame)):
                joules[rail] += watts / rate
    if joules is not None:
        results.append(
            TraceResult(
                len(results), start, None, detector.trace_ticks / rate, tuple(joules)
            )
        )
    return results


@dataclass(frozen=True)
class _Recording:
    version: int
    start: tuple
    rate: int
    channels: int
    frames: list
    stop: tuple | None


def _read_recording(stream):
    data = stream.read(_HEADER.size)
    if len(data) < _HEADER.size:
        raise ValueError("truncated recording header")
    version, sec, usec, rate, channels = _HEADER.unpack(data)
    if channels < 1:
        raise ValueError(f"recording has {channels} channels")
    frames = []
    done = False
    while not done:
        frame = []
        for _ in range(channels):
            raw = stream.read(_SAMPLE.size)
            if len(raw) < _SAMPLE.size:
                done = True
                break
            value = _SAMPLE.unpack(raw)[0]
            if math.isinf(value):
                done = True
                break
            frame.append(value)
        if not done:
            frames.append(tuple(frame))
    footer = stream.read(_FOOTER.size)
    stop = _FOOTER.unpack(footer) if len(footer) == _FOOTER.size else None
    return _Recording(version, (sec, usec), rate, channels, frames, stop)


def _ratio(numerator, denominator):
    return numerator / denominator if denominator else math.nan


def _run(argv, profile):
    args = sys.argv[1:] if argv is None else list(argv)
    if args:
        try:
            handle = open(args[0], "rb")
        except OSError:
            print(f"Could not open {args[0]}", file=sys.stderr)
            return -1
        context = handle
    else:
        handle = sys.stdin.buffer
        context = contextlib.nullcontext(handle)

    with context:
        try:
            recording = _read_recording(handle)
        except ValueError as exc:
            print(exc, file=sys.stderr)
            return -1

    print(f"(* Version {recording.version} *)")
    print(f"(* Start Time {recording.start[0]}.{recording.start[1]:06d})")
    print(f"(* Rate {recording.rate} Hz *)")
    print(f"(* Channels {recording.channels} *)")

    try:
        results = analyse(recording, profile)
    except ValueError as exc:
        print(exc, file=sys.stderr)
        return -1

    labels = _profile(profile).labels
    total_joules = 0.0
    total_time = 0.0
    traces = 0
    for result in results:
        print(f"Starting Trace {result.index} at {result.start:.6f}")
        if not result.complete:
            continue
        print(
            f"Ending Trace {result.index} at {result.end:.6f}s, "
            f"{result.elapsed:.6f}s Elapsed"
        )
        for (energy, power), joules, watts in zip(
            labels, result.joules, result.average_power
        ):
            print(f"{energy}: {joules:.6f}J {power}: {watts:.6f}W")
        total_joules += sum(result.joules)
        total_time += result.elapsed
        traces += 1

    if recording.stop is not None:
        print(f"(* Stop Time {recording.stop[0]}.{recording.stop[1]:06d})")
    print(
        f"Average Joules={_ratio(total_joules, traces):.6f}\t"
        f"Average Watts={_ratio(total_joules, total_time):.6f}"
    )
    return 0


def main_ddr3(argv=None):
    """Report traces in a DDR3 recording read from a file or stdin."""
    return _run(argv, "ddr3")


def main_ddr4(argv=None):
    """Report traces in a DDR4 recording read from a file or stdin."""
    return _run(argv, "ddr4")