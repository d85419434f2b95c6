"""AMD application power management: accumulated power and TDP reporting."""

from __future__ import annotations

import errno
import os
import random
import struct
import sys
import time
from dataclasses import dataclass

from cpuknobs.msr import MsrDevice, MsrError
from cpuknobs.rapl import detect_packages

DEFAULT_PCI_ROOT = "/sys/bus/pci/devices"
DEFAULT_CPUID_ROOT = "/dev/cpu"

MSR_CPU_SW_PWR_ACC = 0xC001007A
MSR_MAX_CPU_SW_PWR_ACC = 0xC001007B
MSR_PTSC = 0xC0010280

_PTSC_SIZES = {0: 40, 1: 48, 2: 56, 3: 64}
_BUSY_ITERATIONS = 20_000_000
_MASK32 = 0xFFFFFFFF


@dataclass(frozen=True)
class PowerReading:
    """Average power over one interval of the accumulated power counter."""

    jdelta: int
    tdelta: int
    milliwatts: int
    energy_wrapped: bool
    tsc_wrapped: bool

    @property
    def watts(self):
        return self.milliwatts / 1000.0


@dataclass(frozen=True)
class TdpInfo:
    """TDP settings read from the northbridge PCI functions."""

    running_avg_range: int
    running_avg_capture: int
    tdp_limit: int
    processor_tdp: int
    base_tdp: int
    scaled_tdp: int
    microwatts: int


def ptsc_size(ecx):
    """Width in bits of the performance TSC from CPUID 0x80000008 ECX."""
    return _PTSC_SIZES[(ecx >> 16) & 3]


def ptsc_overflow_seconds(size):
    """Seconds until a ``size``-bit 100 MHz PTSC overflows."""
    return 2**size / 100000000.0


def _trunc_div(numerator, denominator):
    if denominator == 0:
        raise ValueError("zero time interval")
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def average_power(n, jmax, jx, jy, tx, ty, family, tsc_size):
    """Average power in milliwatts between two counter readings.

    ``n`` is the sample time ratio, ``jx``/``jy`` the energy accumulator and
    ``tx``/``ty`` the PTSC at the start and end. Wrapped counters are
    corrected; family 16h wraps its PTSC at 24 bits.
    """
    energy_wrapped = jy < jx
    jdelta = (jy + jmax) - jx if energy_wrapped else jy - jx
    tsc_wrapped = ty < tx
    if tsc_wrapped:
        width = 24 if family == 0x16 else tsc_size
        tdelta = (ty + (1 << width)) - tx
    else:
        tdelta = ty - tx
    milliwatts = _trunc_div(n * jdelta, tdelta)
    return PowerReading(jdelta, tdelta, milliwatts, energy_wrapped, tsc_wrapped)


def decode_running_average(raw, is_excavator):
    """Split D18F5xE0 into (running average range, captured value)."""
    raw &= _MASK32
    capture = raw >> 4 if is_excavator else (raw >> 4) & 0x3FFFFF
    return raw & 0xF, capture


def decode_tdp_limit(raw, is_excavator):
    """ApmTdpLimit field of D18F5xE8; wider (and signed) on Excavator."""
    raw &= _MASK32
    signed = raw - (1 << 32) if raw & 0x80000000 else raw
    limit = signed >> 16
    return limit if is_excavator else limit & 0x1FFF


def tdp_microwatts(processor_tdp, tdp_limit3):
    """Return (scaled TDP, TDP in microwatts) from the two registers.

    Arithmetic wraps at 32 bits as the hardware interface does; a scaled
    value of 256 or more in its upper half raises ValueError.
    """
    tdp = processor_tdp & 0xFFFF
    limit3 = tdp_limit3 & _MASK32
    to_watts = ((limit3 & 0x3FF) << 6) | ((limit3 >> 10) & 0x3F)
    scaled = (tdp * to_watts) & _MASK32
    if (scaled >> 16) >= 256:
        raise ValueError("Error, TDP too high")
    microwatts = ((scaled * 15625) & _MASK32) >> 10
    return scaled, microwatts


def read_pci_config(path, offset):
    """Read a little-endian 32-bit word from a PCI config space file."""
    fd = os.open(path, os.O_RDONLY)
    try:
        data = os.pread(fd, 4, offset)
    finally:
        os.close(fd)
    if len(data) < 4:
        raise OSError(errno.EIO, f"short read at offset 0x{offset:x}", path)
    return int.from_bytes(data, "little")


def _config(pci_root, function):
    return os.path.join(pci_root, f"0000:00:18.{function}", "config")


def read_tdp(pci_root=DEFAULT_PCI_ROOT, is_excavator=False):
    """Read and decode the TDP registers of the first processor package."""
    running = read_pci_config(_config(pci_root, 5), 0xE0)
    limit3 = read_pci_config(_config(pci_root, 5), 0xE8)
    processor_tdp = read_pci_config(_config(pci_root, 4), 0x1B8)
    avg_range, capture = decode_running_average(running, is_excavator)
    scaled, microwatts = tdp_microwatts(processor_tdp, limit3)
    return TdpInfo(
        running_avg_range=avg_range,
        running_avg_capture=capture,
        tdp_limit=decode_tdp_limit(limit3, is_excavator),
        processor_tdp=processor_tdp,
        base_tdp=processor_tdp >> 16,
        scaled_tdp=scaled,
        microwatts=microwatts,
    )


def _cpuid(leaf, core=0, root=DEFAULT_CPUID_ROOT):
    path = os.path.join(root, str(core), "cpuid")
    fd = os.open(path, os.O_RDONLY)
    try:
        data = os.pread(fd, 16, leaf)
    finally:
        os.close(fd)
    if len(data) != 16:
        raise OSError(errno.EIO, "short cpuid read", path)
    return struct.unpack("<4I", data)


def _banner(title):
    print("\n###############################")
    print(title)
    print("###############################\n")


def _tdp_report(is_excavator, pci_root=DEFAULT_PCI_ROOT):
    _banner("Testing TDP Reporting")
    edx = _cpuid(0x80000007)[3]
    if not edx & (1 << 9):
        print("Bit 9 (CDP) not set in cpuid 80000007:edx, no APM support\n")
        return
    try:
        running = read_pci_config(_config(pci_root, 5), 0xE0)
        avg_range, _capture = decode_running_average(running, is_excavator)
        print(f"Running avg range: {avg_range:x}")
        if avg_range != 9:
            print("Later documentation suggests setting this to 0x9")

        limit3 = read_pci_config(_config(pci_root, 5), 0xE8)
        print(f"TDP Limit={decode_tdp_limit(limit3, is_excavator)}")

        processor_tdp = read_pci_config(_config(pci_root, 4), 0x1B8)
    except OSError as exc:
        print(f"Couldn't read PCI: {exc.strerror}")
        return
    print(f"ProcessorTDP: raw={processor_tdp:x}, base={processor_tdp >> 16}")
    try:
        scaled, microwatts = tdp_microwatts(processor_tdp, limit3)
    except ValueError as exc:
        print(exc)
        return
    print(f"TDP={scaled} microwatts")
    print(f"TDP={microwatts} microwatts")


def _read(device, register):
    value = device.read(register)
    print(f"MSR: read {value:x}")
    return value


def _busy(iterations):
    total = 0.0
    draw = random.random
    for _ in range(iterations):
        total += draw()
        total -= draw()
        total = total * total
    return total


def _measure(device, family, n, jmax, tsc_size, workload):
    jx = _read(device, MSR_CPU_SW_PWR_ACC)
    tx = _read(device, MSR_PTSC)
    workload()
    jy = _read(device, MSR_CPU_SW_PWR_ACC)
    ty = _read(device, MSR_PTSC)
    reading = average_power(n, jmax, jx, jy, tx, ty, family, tsc_size)
    if reading.energy_wrapped:
        print("Power overflow!")
    if reading.tsc_wrapped:
        print("Bug!  PTSC should not overflow!")
        if family == 0x16:
            print("On fam16h seems to be only 24 bits???")
    print(f"deltaJ={reading.jdelta} deltaT={reading.tdelta} ({ty:x} - {tx:x})")
    print(f"PwrCPUave={reading.milliwatts}mW = {reading.watts:.6f}W")


def _apm_report(family):
    _banner("Testing APM Accumulerated Power")
    _, _, ecx, edx = _cpuid(0x80000007)
    if not edx & (1 << 12):
        print(
            "Bit 12 (ApmPwrReporting) not set in cpuid 80000007:edx, "
            "no extra support\n"
        )
        return -1
    print("APM Accumulated Power Supported!")
    n = ecx
    print(f"N={n} {ecx}")

    if not _cpuid(0x80000001)[2] & (1 << 27):
        print(
            "Bit 27 (ApmPwrReporting) not set in cpuid 80000001:ecx, "
            "no extra support\n"
        )
        return -1
    size = ptsc_size(_cpuid(0x80000008)[2])
    print(
        f"APM perf_tsc detected, size {size} bits, "
        f"overflow in {ptsc_overflow_seconds(size):.6f}s!"
    )

    try:
        with MsrDevice(0) as device:
            jmax = _read(device, MSR_MAX_CPU_SW_PWR_ACC)
            print(f"JMax={jmax:x} ({jmax})")

            print("\n\nMeasuring power while sleeping 5ms")
            _measure(device, family, n, jmax, size, lambda: time.sleep(0.005))

            print("\n\nMeasuring power while calculating:")
            _measure(
                device,
                family,
                n,
                jmax,
                size,
                lambda: print(f"{_busy(_BUSY_ITERATIONS):.6f}"),
            )
    except MsrError as exc:
        print(exc, file=sys.stderr)
        return -1
    except ValueError as exc:
        print(exc)
        return -1
    return 0


def main(argv=None):
    try:
        _, ebx, ecx, edx = _cpuid(0)
        eax = _cpuid(1)[0]
    except OSError as exc:
        print(f"Could not read CPUID: {exc}", file=sys.stderr)
        return -1
    vendor = b"".join(struct.pack("<I", reg) for reg in (ebx, edx, ecx)).decode(
        "ascii", errors="replace"
    )
    stepping = eax & 0xF
    model = (eax >> 4) & 0xF
    family = (eax >> 8) & 0xF
    family += (eax >> 20) & 0xFF
    model += ((eax >> 16) & 0xF) << 4

    print("Looking for AMD APM support...")
    print(f"\tFound family {family} model {model} stepping {stepping} {vendor} processor")

    if vendor != "AuthenticAMD":
        print("Not an AMD processor!  Exiting.\n")
        return 0
    if family < 0x15:
        print(f"Family {family:x} processor too old (need at least 0x15)\n")
        return 0

    is_excavator = family == 0x15 and model >= 0x60

    try:
        sys.stdout.write(detect_packages().describe())
    except (OSError, ValueError) as exc:
        print(exc, file=sys.stderr)

    try:
        _tdp_report(is_excavator)
        _apm_report(family)
    except OSError as exc:
        print(f"Could not read CPUID: {exc}", file=sys.stderr)
        return -1
    return 0