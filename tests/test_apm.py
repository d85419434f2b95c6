import os
import struct

import pytest

from cpuknobs.apm import (
    average_power,
    decode_running_average,
    decode_tdp_limit,
    ptsc_overflow_seconds,
    ptsc_size,
    read_pci_config,
    read_tdp,
    tdp_microwatts,
)


def make_config(path, words):
    buffer = bytearray(512)
    for offset, value in words.items():
        struct.pack_into("<I", buffer, offset, value)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as handle:
        handle.write(buffer)


@pytest.mark.parametrize(
    "field, size", [(0, 40), (1, 48), (2, 56), (3, 64), (4, 40)]
)
def test_ptsc_size(field, size):
    assert ptsc_size(field << 16) == size


def test_ptsc_overflow_scales_with_width():
    assert ptsc_overflow_seconds(48) / ptsc_overflow_seconds(40) == pytest.approx(256)


def test_average_power_plain():
    reading = average_power(10, 1000, 100, 300, 1000, 3000, 0x15, 48)
    assert reading.jdelta == 200
    assert reading.tdelta == 2000
    assert reading.milliwatts == 1
    assert not reading.energy_wrapped
    assert not reading.tsc_wrapped


def test_average_power_energy_wrap_matches_unwrapped():
    jmax = 1 << 20
    wrapped = average_power(1000, jmax, jmax - 50, 150, 0, 10, 0x15, 48)
    straight = average_power(1000, jmax, jmax - 50, jmax + 150, 0, 10, 0x15, 48)
    assert wrapped.energy_wrapped
    assert wrapped.jdelta == straight.jdelta
    assert wrapped.milliwatts == straight.milliwatts


def test_average_power_tsc_wrap_uses_width():
    wrapped = average_power(1, 0, 0, 100, (1 << 40) - 5, 5, 0x15, 40)
    straight = average_power(1, 0, 0, 100, (1 << 40) - 5, (1 << 40) + 5, 0x15, 40)
    assert wrapped.tsc_wrapped
    assert wrapped.tdelta == straight.tdelta


def test_average_power_family_16h_wraps_at_24_bits():
    wrapped = average_power(1, 0, 0, 100, (1 << 24) - 5, 5, 0x16, 48)
    straight = average_power(1, 0, 0, 100, (1 << 24) - 5, (1 << 24) + 5, 0x16, 48)
    assert wrapped.tdelta == straight.tdelta


def test_average_power_truncates_toward_zero():
    negative = average_power(10, 10, 100, 50, 0, 1000, 0x15, 48)
    positive = average_power(10, 10, 0, 40, 0, 1000, 0x15, 48)
    assert negative.jdelta == -positive.jdelta
    assert negative.milliwatts == -positive.milliwatts


def test_average_power_zero_interval():
    with pytest.raises(ValueError):
        average_power(10, 100, 0, 10, 5, 5, 0x15, 48)


def test_running_average_fields():
    raw = 0xFFFFFFF9
    avg_range, capture = decode_running_average(raw, False)
    assert avg_range == raw & 0xF
    assert capture <= 0x3FFFFF
    assert decode_running_average(raw, True)[1] == raw >> 4


def test_running_average_agrees_for_small_values():
    raw = 0x0123459
    assert decode_running_average(raw, False) == decode_running_average(raw, True)


def test_tdp_limit_sign_on_excavator():
    assert decode_tdp_limit(0x80000000, True) < 0
    assert 0 <= decode_tdp_limit(0x80000000, False) <= 0x1FFF


def test_tdp_limit_agrees_when_small():
    raw = 0x029E007E
    assert decode_tdp_limit(raw, False) == decode_tdp_limit(raw, True)


def test_tdp_microwatts_too_high():
    with pytest.raises(ValueError):
        tdp_microwatts(0xFFFF, 0x3FF)


def test_tdp_microwatts_zero():
    assert tdp_microwatts(0, 0x029E007E) == (0, 0)


def test_read_pci_config_roundtrip(tmp_path):
    path = str(tmp_path / "config")
    make_config(path, {0xE0: 0xDEADBEEF})
    assert read_pci_config(path, 0xE0) == 0xDEADBEEF


def test_read_pci_config_short(tmp_path):
    path = tmp_path / "config"
    path.write_bytes(b"\x01\x02")
    with pytest.raises(OSError):
        read_pci_config(str(path), 0)


def test_read_tdp(tmp_path):
    root = str(tmp_path)
    running, limit3, processor = 0x00012349, 0x029E007E, 0x00230010
    make_config(
        os.path.join(root, "0000:00:18.5", "config"), {0xE0: running, 0xE8: limit3}
    )
    make_config(os.path.join(root, "0000:00:18.4", "config"), {0x1B8: processor})
    info = read_tdp(root, False)
    assert (info.running_avg_range, info.running_avg_capture) == decode_running_average(
        running, False
    )
    assert info.tdp_limit == decode_tdp_limit(limit3, False)
    assert info.base_tdp == 0x0023
    assert info.processor_tdp == processor
    assert (info.scaled_tdp, info.microwatts) == tdp_microwatts(processor, limit3)


def test_read_tdp_too_high(tmp_path):
    root = str(tmp_path)
    make_config(
        os.path.join(root, "0000:00:18.5", "config"), {0xE0: 9, 0xE8: 0x3FF}
    )
    make_config(os.path.join(root, "0000:00:18.4", "config"), {0x1B8: 0xFFFF})
    with pytest.raises(ValueError):
        read_tdp(root, False)


def test_read_tdp_missing_device(tmp_path):
    with pytest.raises(OSError):
        read_tdp(str(tmp_path), False)