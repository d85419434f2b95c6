import math
import struct
from types import SimpleNamespace

import pytest

from cpuknobs.energy import (
    DtrState,
    TraceDetector,
    analyse,
    ddr3_power,
    ddr4_power,
    main_ddr3,
    main_ddr4,
)

HIGH = 5.0
LOW = -5.0
SEQUENCE = [HIGH, HIGH, LOW, LOW, HIGH, HIGH, LOW]


def ddr3_frame(dtr, v0=0.5, v1=2.0):
    return (v0, v1, 0.0, dtr)


def ddr4_frame(dtr, noise=HIGH):
    return (0.5, 1.0, 2.0, noise, 0.0, 0.0, 0.0, dtr)


def write_recording(path, frames, rate=500):
    channels = len(frames[0])
    with open(path, "wb") as handle:
        handle.write(struct.pack("<iqqii", 0, 100, 5, rate, channels))
        for frame in frames:
            handle.write(struct.pack(f"<{channels}f", *frame))
        handle.write(struct.pack("<f", math.inf))
        handle.write(struct.pack("<qq", 200, 7))


def test_detector_state_sequence():
    detector = TraceDetector(500)
    states = [detector.feed(ddr3_frame(d)) for d in SEQUENCE]
    assert states == [
        DtrState.NONE,
        DtrState.DTR_START,
        DtrState.IN_TRACE,
        DtrState.IN_TRACE,
        DtrState.IN_TRACE,
        DtrState.DTR_STOP,
        DtrState.NONE,
    ]
    assert detector.traces == 1
    assert detector.ticks == len(SEQUENCE)


def test_detector_threshold_grows_with_rate():
    detector = TraceDetector(1000)
    assert detector.feed(ddr3_frame(HIGH)) is DtrState.NONE
    assert detector.feed(ddr3_frame(HIGH)) is DtrState.NONE
    assert detector.feed(ddr3_frame(HIGH)) is DtrState.DTR_START


def test_detector_count_survives_a_dip():
    detector = TraceDetector(500)
    detector.feed(ddr3_frame(HIGH))
    detector.feed(ddr3_frame(0.0))
    assert detector.feed(ddr3_frame(HIGH)) is DtrState.DTR_START


def test_detector_rejects_bad_rate():
    with pytest.raises(ValueError):
        TraceDetector(0)


def test_detector_rejects_short_frame():
    detector = TraceDetector(500, dtr_channel=7)
    with pytest.raises(ValueError):
        detector.feed((1.0, 2.0, 3.0))


def test_analyse_ddr3_single_trace():
    frames = [ddr3_frame(d) for d in SEQUENCE]
    results = analyse(SimpleNamespace(rate=500, frames=frames), "ddr3")
    assert len(results) == 1
    result = results[0]
    assert result.complete
    assert result.start == pytest.approx(2 / 500)
    assert result.end == pytest.approx(5 / 500)
    assert result.elapsed == pytest.approx(3 / 500)
    expected = sum(ddr3_power(f) for f in frames[2:5]) / 500
    assert result.joules[0] == pytest.approx(expected)
    assert result.average_power[0] == pytest.approx(ddr3_power(frames[2]))


def test_analyse_unfinished_trace():
    frames = [ddr3_frame(d) for d in SEQUENCE[:4]]
    results = analyse(SimpleNamespace(rate=500, frames=frames), "ddr3")
    assert len(results) == 1
    assert results[0].end is None
    assert not results[0].complete


def test_analyse_ddr4_uses_channel_seven():
    frames = [ddr4_frame(d) for d in SEQUENCE]
    results = analyse(SimpleNamespace(rate=500, frames=frames), "ddr4")
    assert len(results) == 1
    vdd, vpp = ddr4_power(frames[2])
    assert results[0].joules[0] == pytest.approx(3 * vdd / 500)
    assert results[0].joules[1] == pytest.approx(3 * vpp / 500)


def test_analyse_unknown_profile():
    with pytest.raises(ValueError):
        analyse(SimpleNamespace(rate=500, frames=[]), "ddr5")


def test_ddr3_power_invariants():
    assert ddr3_power((0.0, 3.0, 0.0, 0.0)) == 0.0
    assert ddr3_power((1.0, 2.0, 0.0, 0.0)) == pytest.approx(
        2 * ddr3_power((1.0, 1.0, 0.0, 0.0))
    )


def test_ddr4_power_values():
    vdd, vpp = ddr4_power((1.0, 2.0, 3.0))
    assert vdd == pytest.approx(4.0)
    assert vpp == pytest.approx(12.0)


def test_main_ddr3_report(tmp_path, capsys):
    path = tmp_path / "rec.bin"
    write_recording(path, [ddr3_frame(d) for d in SEQUENCE])
    assert main_ddr3([str(path)]) == 0
    out = capsys.readouterr().out
    assert "(* Version 0 *)" in out
    assert "(* Start Time 100.000005)" in out
    assert "(* Rate 500 Hz *)" in out
    assert "(* Channels 4 *)" in out
    assert "Starting Trace 0 at" in out
    assert "Ending Trace 0 at" in out
    assert "Total Energy:" in out
    assert "(* Stop Time 200.000007)" in out
    assert "Average Joules=" in out


def test_main_ddr4_report(tmp_path, capsys):
    path = tmp_path / "rec.bin"
    write_recording(path, [ddr4_frame(d) for d in SEQUENCE])
    assert main_ddr4([str(path)]) == 0
    out = capsys.readouterr().out
    assert "Total VDD Energy:" in out
    assert "Total VPP Energy:" in out
    assert "(* Channels 8 *)" in out


def test_main_missing_file(tmp_path):
    assert main_ddr3([str(tmp_path / "absent.bin")]) == -1