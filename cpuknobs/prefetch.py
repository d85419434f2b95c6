"""Enable or disable the hardware prefetchers on Intel processors."""

from __future__ import annotations

import contextlib
import getopt
import re
import sys
from dataclasses import dataclass
from enum import Enum

from cpuknobs.msr import MsrDevice, MsrError, read_cpuinfo

CORE2_PREFETCH_MSR = 0x1A0
NHM_PREFETCH_MSR = 0x1A4
MAX_CORE = 1024

_CORE2_BITS = (9, 19, 37, 39)
_NHM_BITS = (0, 1, 2, 3)
_CORE2_MASK = sum(1 << bit for bit in _CORE2_BITS)
_PROG = "intel-prefetch"


class PrefetchStyle(Enum):
    """Which register layout controls the prefetchers."""

    NEHALEM = NHM_PREFETCH_MSR
    CORE2 = CORE2_PREFETCH_MSR

    @property
    def register(self):
        return self.value

    @property
    def bits(self):
        return _NHM_BITS if self is PrefetchStyle.NEHALEM else _CORE2_BITS


_NHM = PrefetchStyle.NEHALEM
_C2 = PrefetchStyle.CORE2

_MODELS = {
    **dict.fromkeys((26, 30, 31), ("Nehalem", _NHM)),
    46: ("Nehalem-EX", _NHM),
    **dict.fromkeys((37, 44), ("Westmere", _NHM)),
    47: ("Westmere-EX", _NHM),
    42: ("Sandybridge", _NHM),
    45: ("Sandybridge-EP", _NHM),
    58: ("Ivybridge", _NHM),
    62: ("Ivybridge-EP", _NHM),
    **dict.fromkeys((60, 69, 70), ("Haswell", _NHM)),
    63: ("Haswell-EP", _NHM),
    **dict.fromkeys((61, 71), ("Broadwell", _NHM)),
    **dict.fromkeys((86, 79), ("Broadwell-DE/EP", _NHM)),
    **dict.fromkeys((78, 94), ("Skylake", _NHM)),
    85: ("Skylake / Cascadelake Server", _NHM),
    **dict.fromkeys((142, 158), ("Kabylake", _NHM)),
    **dict.fromkeys((15, 22, 23, 29), ("Core2", _C2)),
}

_MISC_FIELDS = (
    ("Fast strings", 0),
    ("Thermal control", 3),
    ("Performance mon", 7),
    ("HW prefetch disabled", 9),
    ("FERR# multiplex", 10),
    ("Branch trace unavail", 11),
    ("PEBS unavail", 12),
    ("Therm avail", 13),
    ("Speedstep", 16),
    ("FSM", 18),
    ("Adjacent Cache Disab", 19),
    ("Speedstep lock", 20),
    ("Limit CPU Maxval", 22),
    ("xTPR disable", 23),
    ("XD disable", 34),
    ("DCU prefetch disable", 37),
    ("IDA accel disable", 38),
    ("IP prefetch disable", 39),
)


@dataclass(frozen=True)
class PrefetchState:
    """Which prefetchers are enabled."""

    l2_hw: bool
    l2_adjacent: bool
    dcu: bool
    dcu_ip: bool


def classify_model(model):
    """Return (name, style) for a family-6 model number."""
    try:
        return _MODELS[model]
    except KeyError:
        raise ValueError(f"Unsupported model {model}") from None


def detect_style(cpuinfo):
    """Check the CPU is a supported Intel part and return its prefetch style."""
    if cpuinfo.vendor is not None and not cpuinfo.vendor.startswith("GenuineIntel"):
        raise ValueError(f"{cpuinfo.vendor} not an Intel chip")
    if cpuinfo.family is not None and cpuinfo.family != 6:
        raise ValueError(f"Wrong CPU family {cpuinfo.family}")
    return classify_model(cpuinfo.model)[1]


def decode_prefetch(style, value):
    """Decode a prefetch-control register; a set bit means disabled."""
    return PrefetchState(*(not (value >> bit) & 1 for bit in style.bits))


def disabled_value(style, value):
    """Register value that disables every prefetcher."""
    if style is PrefetchStyle.NEHALEM:
        return 0xF
    return value | _CORE2_MASK


def enabled_value(style, value):
    """Register value that enables every prefetcher."""
    if style is PrefetchStyle.NEHALEM:
        return 0x0
    return value & ~_CORE2_MASK


def _flag(enabled):
    return "Y" if enabled else "N"


def format_state(core, label, state):
    """One status line for a core."""
    return (
        f"\tCore {core} {label} : L2HW={_flag(state.l2_hw)} "
        f"L2ADJ={_flag(state.l2_adjacent)} DCU={_flag(state.dcu)} "
        f"DCUIP={_flag(state.dcu_ip)}"
    )


def describe_misc_enable(value):
    """Describe the fields of the Core 2 IA32_MISC_ENABLE register."""
    return [f"        {label:<20} = {(value >> bit) & 1}" for label, bit in _MISC_FIELDS]


def _default_opener(core, writable):
    return MsrDevice(core, writable)


def set_prefetch(style, enable, core=None, opener=None, out=None):
    """Enable or disable all prefetchers on one core, or on every core.

    With ``core`` None or -1 every core from 0 up is processed until one
    has no MSR device. Returns a list of (core, old_state, new_state).
    """
    opener = opener or _default_opener
    out = out or sys.stdout
    print("Enable all prefetch" if enable else "Disable all prefetch", file=out)
    every_core = core is None or core == -1
    cores = range(MAX_CORE + 1) if every_core else (core,)
    results = []
    for current in cores:
        try:
            device = opener(current, True)
        except MsrError as exc:
            if every_core and exc.missing:
                break
            raise
        with device:
            raw = device.read(style.register)
            old = decode_prefetch(style, raw)
            print(format_state(current, "old", old), file=out)
            new_raw = enabled_value(style, raw) if enable else disabled_value(style, raw)
            device.write(style.register, new_raw)
            new = decode_prefetch(style, device.read(style.register))
            print(format_state(current, "new", new), file=out)
        results.append((current, old, new))
    return results


def toggle_core2(enable, opener=None, out=None, max_cpus=32):
    """Show IA32_MISC_ENABLE on each Core 2 CPU and flip its prefetch bits.

    CPUs without an MSR device are skipped. Returns (cpu, value written).
    """
    opener = opener or _default_opener
    out = out or sys.stdout
    written = []
    for cpu in range(max_cpus):
        try:
            device = opener(cpu, False)
        except MsrError as exc:
            if exc.missing:
                continue
            raise
        with device:
            data = device.read(CORE2_PREFETCH_MSR)
        print(f"CPU {cpu}: Current value is 0x{data:x}", file=out)
        for line in describe_misc_enable(data):
            print(line, file=out)
        if enable:
            data = enabled_value(PrefetchStyle.CORE2, data)
        else:
            data = disabled_value(PrefetchStyle.CORE2, data)
        print(f"        Writing out new value: 0x{data:x}", file=out)
        with opener(cpu, True) as device:
            device.write(CORE2_PREFETCH_MSR, data)
        written.append((cpu, data))
    return written


def _atoi(text):
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def main(argv=None):
    args = sys.argv[1:] if argv is None else list(argv)
    print()
    try:
        options, _ = getopt.getopt(args, "c:deh")
    except getopt.GetoptError:
        return -1

    core = None
    disable = True
    for option, value in options:
        if option == "-c":
            core = _atoi(value)
        elif option == "-d":
            disable = True
        elif option == "-e":
            disable = False
        elif option == "-h":
            print(f"Usage: {_PROG} [-c core] [-d] [-e] [-h]\n")
            return 0

    try:
        info = read_cpuinfo()
        style = detect_style(info)
    except (OSError, ValueError) as exc:
        if isinstance(exc, ValueError):
            print(exc)
        print("Unsupported CPU type")
        return -1
    print(f"Found {classify_model(info.model)[0]} CPU")

    try:
        set_prefetch(style, not disable, core)
    except MsrError as exc:
        print(exc, file=sys.stderr)
        print("Unable to access prefetch MSR.")
        print("* Verify you have an Intel Nehalem or newer processor")
        print("* You will probably need to run as root")
        print("* Make sure the msr module is installed")
        print()
        return exc.exit_code
    with contextlib.suppress(Exception):
        sys.stdout.flush()
    return 0