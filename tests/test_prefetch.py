import errno
import io

import pytest

from cpuknobs.msr import CpuInfo, MsrError
from cpuknobs.prefetch import (
    CORE2_PREFETCH_MSR,
    NHM_PREFETCH_MSR,
    PrefetchState,
    PrefetchStyle,
    classify_model,
    decode_prefetch,
    describe_misc_enable,
    detect_style,
    disabled_value,
    enabled_value,
    format_state,
    main,
    set_prefetch,
    toggle_core2,
)

ALL_ON = PrefetchState(True, True, True, True)
ALL_OFF = PrefetchState(False, False, False, False)


class FakeMsr:
    def __init__(self, registers):
        self.registers = registers

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return None

    def read(self, register):
        return self.registers.get(register, 0)

    def write(self, register, value):
        self.registers[register] = value


def make_opener(banks, missing_from):
    def opener(core, writable):
        if core >= missing_from:
            raise MsrError("no such cpu", errno.ENOENT)
        return FakeMsr(banks.setdefault(core, {}))

    return opener


def test_classify_known_models():
    assert classify_model(26) == ("Nehalem", PrefetchStyle.NEHALEM)
    assert classify_model(23)[1] is PrefetchStyle.CORE2


def test_classify_unknown_model():
    with pytest.raises(ValueError):
        classify_model(-1)


def test_detect_style_checks_vendor_and_family():
    with pytest.raises(ValueError):
        detect_style(CpuInfo("AuthenticAMD", 23, 1))
    with pytest.raises(ValueError):
        detect_style(CpuInfo("GenuineIntel", 15, 42))
    assert detect_style(CpuInfo("GenuineIntel", 6, 42)) is PrefetchStyle.NEHALEM
    assert detect_style(CpuInfo("GenuineIntel", 6, 29)) is PrefetchStyle.CORE2


def test_decode_nehalem():
    assert decode_prefetch(PrefetchStyle.NEHALEM, 0) == ALL_ON
    assert decode_prefetch(PrefetchStyle.NEHALEM, 0xF) == ALL_OFF


@pytest.mark.parametrize("style", list(PrefetchStyle))
def test_disable_then_enable(style):
    assert decode_prefetch(style, disabled_value(style, 0)) == ALL_OFF
    assert decode_prefetch(style, enabled_value(style, disabled_value(style, 0))) == ALL_ON


def test_core2_preserves_other_bits():
    original = 0x1 | (1 << 16)
    off = disabled_value(PrefetchStyle.CORE2, original)
    assert off & original == original
    assert enabled_value(PrefetchStyle.CORE2, off) == original


def test_format_state():
    assert format_state(2, "old", ALL_ON) == "\tCore 2 old : L2HW=Y L2ADJ=Y DCU=Y DCUIP=Y"


def test_describe_misc_enable():
    assert all(line.endswith("= 0") for line in describe_misc_enable(0))
    lines = describe_misc_enable(1 << 9)
    flagged = [line for line in lines if line.endswith("= 1")]
    assert len(flagged) == 1
    assert "HW prefetch disabled" in flagged[0]


def test_set_prefetch_single_core_nehalem():
    banks = {}
    out = io.StringIO()
    results = set_prefetch(PrefetchStyle.NEHALEM, False, 3, make_opener(banks, 8), out)
    assert banks[3][NHM_PREFETCH_MSR] == 0xF
    assert results == [(3, ALL_ON, ALL_OFF)]
    assert "Disable all prefetch" in out.getvalue()


def test_set_prefetch_all_cores_stops_at_missing():
    banks = {0: {NHM_PREFETCH_MSR: 0xF}, 1: {NHM_PREFETCH_MSR: 0xF}}
    results = set_prefetch(PrefetchStyle.NEHALEM, True, None, make_opener(banks, 2), io.StringIO())
    assert [core for core, _, _ in results] == [0, 1]
    assert all(new == ALL_ON for _, _, new in results)


def test_set_prefetch_explicit_missing_core_raises():
    with pytest.raises(MsrError):
        set_prefetch(PrefetchStyle.CORE2, True, 5, make_opener({}, 2), io.StringIO())


def test_toggle_core2_disable():
    banks = {0: {CORE2_PREFETCH_MSR: 0x1}}
    out = io.StringIO()
    written = toggle_core2(False, make_opener(banks, 2), out)
    assert [cpu for cpu, _ in written] == [0, 1]
    for cpu, value in written:
        assert banks[cpu][CORE2_PREFETCH_MSR] == value
        assert decode_prefetch(PrefetchStyle.CORE2, value) == ALL_OFF
    assert banks[0][CORE2_PREFETCH_MSR] & 0x1
    assert "CPU 0: Current value is 0x1" in out.getvalue()


def test_main_help(capsys):
    assert main(["-h"]) == 0
    assert "Usage:" in capsys.readouterr().out


def test_main_bad_option():
    assert main(["-x"]) == -1