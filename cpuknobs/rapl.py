"""Read the RAPL energy counters of Intel and AMD processors.

Energy can be gathered from the sysfs powercap interface or straight from
the model-specific registers.
"""

from __future__ import annotations

import getopt
import os
import re
import sys
import time
from dataclasses import dataclass
from enum import Enum

from cpuknobs.msr import MsrDevice, MsrError, read_cpuinfo

MAX_CPUS = 1024
MAX_PACKAGES = 16
NUM_RAPL_DOMAINS = 5

DEFAULT_CPU_SYSFS = "/sys/devices/system/cpu"
DEFAULT_POWERCAP = "/sys/class/powercap/intel-rapl"
_PERF_TYPE = "/sys/bus/event_source/devices/power/type"

# AMD registers
MSR_AMD_RAPL_POWER_UNIT = 0xC0010299
MSR_AMD_PKG_ENERGY_STATUS = 0xC001029B
MSR_AMD_PP0_ENERGY_STATUS = 0xC001029A

# Intel registers
MSR_INTEL_RAPL_POWER_UNIT = 0x606
MSR_PKG_RAPL_POWER_LIMIT = 0x610
MSR_INTEL_PKG_ENERGY_STATUS = 0x611
MSR_PKG_PERF_STATUS = 0x613
MSR_PKG_POWER_INFO = 0x614
MSR_INTEL_PP0_ENERGY_STATUS = 0x639
MSR_PP0_POLICY = 0x63A
MSR_PP0_PERF_STATUS = 0x63B
MSR_PP1_ENERGY_STATUS = 0x641
MSR_PP1_POLICY = 0x642
MSR_DRAM_ENERGY_STATUS = 0x619
MSR_PLATFORM_ENERGY_STATUS = 0x64D

CPU_SANDYBRIDGE = 42
CPU_SANDYBRIDGE_EP = 45
CPU_IVYBRIDGE = 58
CPU_IVYBRIDGE_EP = 62
CPU_HASWELL = 60
CPU_HASWELL_ULT = 69
CPU_HASWELL_GT3E = 70
CPU_HASWELL_EP = 63
CPU_BROADWELL = 61
CPU_BROADWELL_GT3E = 71
CPU_BROADWELL_EP = 79
CPU_BROADWELL_DE = 86
CPU_SKYLAKE = 78
CPU_SKYLAKE_HS = 94
CPU_SKYLAKE_X = 85
CPU_KNIGHTS_LANDING = 87
CPU_KNIGHTS_MILL = 133
CPU_KABYLAKE_MOBILE = 142
CPU_KABYLAKE = 158
CPU_ATOM_GOLDMONT = 92
CPU_ATOM_GEMINI_LAKE = 122
CPU_ATOM_DENVERTON = 95

CPU_AMD_FAM17H = 0xC000

_MODEL_NAMES = {
    CPU_SANDYBRIDGE: "Sandybridge",
    CPU_SANDYBRIDGE_EP: "Sandybridge-EP",
    CPU_IVYBRIDGE: "Ivybridge",
    CPU_IVYBRIDGE_EP: "Ivybridge-EP",
    **dict.fromkeys((CPU_HASWELL, CPU_HASWELL_ULT, CPU_HASWELL_GT3E), "Haswell"),
    CPU_HASWELL_EP: "Haswell-EP",
    **dict.fromkeys((CPU_BROADWELL, CPU_BROADWELL_GT3E), "Broadwell"),
    CPU_BROADWELL_EP: "Broadwell-EP",
    **dict.fromkeys((CPU_SKYLAKE, CPU_SKYLAKE_HS), "Skylake"),
    CPU_SKYLAKE_X: "Skylake-X",
    **dict.fromkeys((CPU_KABYLAKE, CPU_KABYLAKE_MOBILE), "Kaby Lake"),
    CPU_KNIGHTS_LANDING: "Knight's Landing",
    CPU_KNIGHTS_MILL: "Knight's Mill",
    **dict.fromkeys(
        (CPU_ATOM_GOLDMONT, CPU_ATOM_GEMINI_LAKE, CPU_ATOM_DENVERTON), "Atom"
    ),
}
_AMD_NAME = "AMD Family 17h"


class Vendor(Enum):
    INTEL = 1
    AMD = 2

    @classmethod
    def from_id(cls, vendor_id):
        """Vendor for a cpuinfo vendor_id string, or None."""
        if vendor_id is None:
            return None
        if vendor_id.startswith("GenuineIntel"):
            return cls.INTEL
        if vendor_id.startswith("AuthenticAMD"):
            return cls.AMD
        return None


@dataclass(frozen=True)
class Topology:
    """CPUs in order, each with the physical package it belongs to."""

    cpu_packages: tuple = ()

    @property
    def total_cores(self):
        return len(self.cpu_packages)

    @property
    def package_map(self):
        """First CPU of each package, keyed by package id."""
        first = {}
        for cpu, package in self.cpu_packages:
            first.setdefault(package, cpu)
        return first

    @property
    def packages(self):
        return len(self.package_map)

    def describe(self):
        parts = ["\t"]
        for index, (cpu, package) in enumerate(self.cpu_packages):
            parts.append(f"{cpu} ({package})")
            parts.append("\n\t" if index % 8 == 7 else ", ")
        parts.append("\n")
        parts.append(
            f"\tDetected {self.total_cores} cores in {self.packages} packages\n\n"
        )
        return "".join(parts)


@dataclass(frozen=True)
class RaplUnits:
    power: float
    cpu_energy: float
    dram_energy: float
    time: float


@dataclass(frozen=True)
class PowerInfo:
    thermal_spec: float
    minimum: float
    maximum: float
    time_window: float


@dataclass(frozen=True)
class PowerLimit:
    locked: bool
    limit1: float
    window1: float
    enabled1: bool
    clamped1: bool
    limit2: float
    window2: float
    enabled2: bool
    clamped2: bool


@dataclass(frozen=True)
class DomainSupport:
    pp0: bool = False
    pp1: bool = False
    dram: bool = False
    psys: bool = False
    different_units: bool = False


@dataclass(frozen=True)
class SysfsDomain:
    package: int
    name: str
    path: str


def _first_int(text):
    match = re.match(r"\s*([+-]?\d+)", text)
    if not match:
        raise ValueError(f"no integer in {text!r}")
    return int(match.group(1))


def detect_packages(sysfs_root=DEFAULT_CPU_SYSFS):
    """Map each CPU to its physical package until a CPU is missing."""
    found = []
    for cpu in range(MAX_CPUS):
        path = os.path.join(sysfs_root, f"cpu{cpu}", "topology", "physical_package_id")
        try:
            with open(path, encoding="utf-8") as handle:
                package = _first_int(handle.read())
        except FileNotFoundError:
            break
        if not 0 <= package < MAX_PACKAGES:
            raise ValueError(f"package id {package} of CPU {cpu} out of range")
        found.append((cpu, package))
    return Topology(tuple(found))


def detect_model(cpuinfo):
    """Return the RAPL model code for a CpuInfo; ValueError if unsupported."""
    vendor = Vendor.from_id(cpuinfo.vendor)
    if vendor is Vendor.INTEL:
        if cpuinfo.family != 6:
            raise ValueError(f"Wrong CPU family {cpuinfo.family}")
        if cpuinfo.model not in _MODEL_NAMES:
            raise ValueError(f"Unsupported model {cpuinfo.model}")
        return cpuinfo.model
    if vendor is Vendor.AMD:
        if cpuinfo.family != 23:
            raise ValueError(f"Wrong CPU family {cpuinfo.family}")
        return CPU_AMD_FAM17H
    raise ValueError(f"Unsupported vendor {cpuinfo.vendor}")


def model_name(model):
    if model == CPU_AMD_FAM17H:
        return _AMD_NAME
    try:
        return _MODEL_NAMES[model]
    except KeyError:
        raise ValueError(f"Unsupported model {model}") from None


def domain_support(model):
    """Which energy domains a model provides; unknown models have none."""
    if model in (CPU_SANDYBRIDGE_EP, CPU_IVYBRIDGE_EP):
        return DomainSupport(pp0=True, dram=True)
    if model in (CPU_HASWELL_EP, CPU_BROADWELL_EP, CPU_SKYLAKE_X):
        return DomainSupport(pp0=True, dram=True, different_units=True)
    if model in (CPU_KNIGHTS_LANDING, CPU_KNIGHTS_MILL):
        return DomainSupport(dram=True, different_units=True)
    if model in (CPU_SANDYBRIDGE, CPU_IVYBRIDGE):
        return DomainSupport(pp0=True, pp1=True)
    if model in (
        CPU_HASWELL,
        CPU_HASWELL_ULT,
        CPU_HASWELL_GT3E,
        CPU_BROADWELL,
        CPU_BROADWELL_GT3E,
        CPU_ATOM_GOLDMONT,
        CPU_ATOM_GEMINI_LAKE,
        CPU_ATOM_DENVERTON,
    ):
        return DomainSupport(pp0=True, pp1=True, dram=True)
    if model in (CPU_SKYLAKE, CPU_SKYLAKE_HS, CPU_KABYLAKE, CPU_KABYLAKE_MOBILE):
        return DomainSupport(pp0=True, pp1=True, dram=True, psys=True)
    if model == CPU_AMD_FAM17H:
        return DomainSupport(pp0=True)
    return DomainSupport()


def decode_units(value, different_units=False):
    """Decode the RAPL power-unit register."""
    cpu_energy = 0.5 ** ((value >> 8) & 0x1F)
    return RaplUnits(
        power=0.5 ** (value & 0xF),
        cpu_energy=cpu_energy,
        dram_energy=0.5**16 if different_units else cpu_energy,
        time=0.5 ** ((value >> 16) & 0xF),
    )


def decode_power_info(value, units):
    return PowerInfo(
        thermal_spec=units.power * (value & 0x7FFF),
        minimum=units.power * ((value >> 16) & 0x7FFF),
        maximum=units.power * ((value >> 32) & 0x7FFF),
        time_window=units.time * ((value >> 48) & 0x7FFF),
    )


def decode_power_limit(value, units):
    return PowerLimit(
        locked=bool((value >> 63) & 1),
        limit1=units.power * (value & 0x7FFF),
        window1=units.time * ((value >> 17) & 0x7F),
        enabled1=bool(value & (1 << 15)),
        clamped1=bool(value & (1 << 16)),
        limit2=units.power * ((value >> 32) & 0x7FFF),
        window2=units.time * ((value >> 49) & 0x7F),
        enabled2=bool(value & (1 << 47)),
        clamped2=bool(value & (1 << 48)),
    )


def _read_token(path):
    with open(path, encoding="utf-8") as handle:
        tokens = handle.read().split()
    return tokens[0] if tokens else ""


def discover_sysfs_domains(root=DEFAULT_POWERCAP, packages=1):
    """List the powercap domains of every package.

    A missing package directory raises OSError; missing subdomains are skipped.
    """
    domains = []
    for package in range(packages):
        base = os.path.join(root, f"intel-rapl:{package}")
        name = _read_token(os.path.join(base, "name"))
        domains.append(SysfsDomain(package, name, os.path.join(base, "energy_uj")))
        for sub in range(NUM_RAPL_DOMAINS - 1):
            subdir = os.path.join(base, f"intel-rapl:{package}:{sub}")
            try:
                name = _read_token(os.path.join(subdir, "name"))
            except OSError:
                continue
            domains.append(SysfsDomain(package, name, os.path.join(subdir, "energy_uj")))
    return domains


def read_sysfs_energy(domains):
    """Energy counters in microjoules; None where a counter can't be read."""
    values = []
    for domain in domains:
        try:
            with open(domain.path, encoding="utf-8") as handle:
                values.append(_first_int(handle.read()))
        except (OSError, ValueError):
            print(f"\tError opening {domain.path}!", file=sys.stderr)
            values.append(None)
    return values


def _sleep_line(interval):
    plural = "" if interval == 1 else "s"
    return f"\tSleeping {interval:g} second{plural}"


def measure_sysfs(root=DEFAULT_POWERCAP, packages=1, interval=1.0, out=None):
    """Measure energy over ``interval`` seconds through powercap.

    Returns a list of (SysfsDomain, joules).
    """
    out = out or sys.stdout
    print("\nTrying sysfs powercap interface to gather results\n", file=out)
    domains = discover_sysfs_domains(root, packages)
    before = read_sysfs_energy(domains)
    print(_sleep_line(interval) + "\n", file=out)
    time.sleep(interval)
    after = read_sysfs_energy(domains)

    results = []
    for package in range(packages):
        print(f"\tPackage {package}", file=out)
        for domain, start, stop in zip(domains, before, after):
            if domain.package != package or start is None or stop is None:
                continue
            joules = (float(stop) - float(start)) / 1000000.0
            print(f"\t\t{domain.name}\t: {joules:.6f}J", file=out)
            results.append((domain, joules))
    print(file=out)
    return results


def _registers(model):
    if model == CPU_AMD_FAM17H:
        return (
            MSR_AMD_RAPL_POWER_UNIT,
            MSR_AMD_PKG_ENERGY_STATUS,
            MSR_AMD_PP0_ENERGY_STATUS,
        )
    return (
        MSR_INTEL_RAPL_POWER_UNIT,
        MSR_INTEL_PKG_ENERGY_STATUS,
        MSR_INTEL_PP0_ENERGY_STATUS,
    )


def _on_off(flag, yes, no):
    return yes if flag else no


def _list_parameters(device, model, cpu, units, say):
    say(f"\t\tPower units = {units.power:.3f}W")
    say(f"\t\tCPU Energy units = {units.cpu_energy:.8f}J")
    say(f"\t\tDRAM Energy units = {units.dram_energy:.8f}J")
    say(f"\t\tTime units = {units.time:.8f}s")
    say()

    if model != CPU_AMD_FAM17H:
        info = decode_power_info(device.read(MSR_PKG_POWER_INFO), units)
        say(f"\t\tPackage thermal spec: {info.thermal_spec:.3f}W")
        say(f"\t\tPackage minimum power: {info.minimum:.3f}W")
        say(f"\t\tPackage maximum power: {info.maximum:.3f}W")
        say(f"\t\tPackage maximum time window: {info.time_window:.6f}s")

        limit = decode_power_limit(device.read(MSR_PKG_RAPL_POWER_LIMIT), units)
        say(f"\t\tPackage power limits are {_on_off(limit.locked, 'locked', 'unlocked')}")
        say(
            f"\t\tPackage power limit #1: {limit.limit1:.3f}W for {limit.window1:.6f}s "
            f"({_on_off(limit.enabled1, 'enabled', 'disabled')}, "
            f"{_on_off(limit.clamped1, 'clamped', 'not_clamped')})"
        )
        say(
            f"\t\tPackage power limit #2: {limit.limit2:.3f}W for {limit.window2:.6f}s "
            f"({_on_off(limit.enabled2, 'enabled', 'disabled')}, "
            f"{_on_off(limit.clamped2, 'clamped', 'not_clamped')})"
        )

    if model in (CPU_SANDYBRIDGE_EP, CPU_IVYBRIDGE_EP):
        throttled = device.read(MSR_PKG_PERF_STATUS) * units.time
        say(f"\tAccumulated Package Throttled Time : {throttled:.6f}s")
        throttled = device.read(MSR_PP0_PERF_STATUS) * units.time
        say(f"\tPowerPlane0 (core) Accumulated Throttled Time : {throttled:.6f}s")
        policy = device.read(MSR_PP0_POLICY) & 0x1F
        say(f"\tPowerPlane0 (core) for core {cpu} policy: {policy}")

    if domain_support(model).pp1:
        policy = device.read(MSR_PP1_POLICY) & 0x1F
        say(f"\tPowerPlane1 (on-core GPU if avail) {cpu} policy: {policy}")


def _read_energies(device, model, units):
    support = domain_support(model)
    _, pkg_reg, pp0_reg = _registers(model)
    energies = {"package": device.read(pkg_reg) * units.cpu_energy}
    if support.pp0:
        energies["pp0"] = device.read(pp0_reg) * units.cpu_energy
    if support.pp1:
        energies["pp1"] = device.read(MSR_PP1_ENERGY_STATUS) * units.cpu_energy
    if support.dram:
        energies["dram"] = device.read(MSR_DRAM_ENERGY_STATUS) * units.dram_energy
    if support.psys:
        energies["psys"] = device.read(MSR_PLATFORM_ENERGY_STATUS) * units.cpu_energy
    return energies


_ENERGY_LABELS = {
    "package": "\t\tPackage energy: {:.6f}J",
    "pp0": "\t\tPowerPlane0 (cores): {:.6f}J",
    "pp1": "\t\tPowerPlane1 (on-core GPU if avail): {:.6f} J",
    "dram": "\t\tDRAM: {:.6f}J",
    "psys": "\t\tPSYS: {:.6f}J",
}


def measure_msr(model, topology, opener=None, interval=1.0, out=None):
    """Measure energy over ``interval`` seconds from the RAPL registers.

    ``opener(cpu)`` returns a context manager with ``read(register)``.
    Returns, per package, a dict of domain name to joules consumed.
    """
    opener = opener or MsrDevice
    out = out or sys.stdout

    def say(text=""):
        print(text, file=out)

    say("\nTrying /dev/msr interface to gather results\n")
    if model < 0:
        say(f"\tUnsupported CPU model {model}")
        raise ValueError(f"Unsupported CPU model {model}")

    support = domain_support(model)
    units_reg = _registers(model)[0]
    package_map = topology.package_map
    units = {}

    for package in range(topology.packages):
        say(f"\tListing paramaters for package #{package}")
        cpu = package_map[package]
        with opener(cpu) as device:
            decoded = decode_units(device.read(units_reg), support.different_units)
            units[package] = decoded
            if support.different_units:
                say(
                    f"DRAM: Using {decoded.dram_energy:.6f} instead of "
                    f"{decoded.cpu_energy:.6f}"
                )
            _list_parameters(device, model, cpu, decoded, say)
    say()

    before = []
    for package in range(topology.packages):
        with opener(package_map[package]) as device:
            before.append(_read_energies(device, model, units[package]))

    say("\n" + _sleep_line(interval) + "\n")
    time.sleep(interval)

    results = []
    for package in range(topology.packages):
        with opener(package_map[package]) as device:
            after = _read_energies(device, model, units[package])
        say(f"\tPackage {package}:")
        deltas = {name: after[name] - before[package][name] for name in after}
        for name, joules in deltas.items():
            say(_ENERGY_LABELS[name].format(joules))
        results.append(deltas)
    say()
    say("Note: the energy measurements can overflow in 60s or so")
    say("      so try to sample the counters more often than that.\n")
    return results


def _perf_fallback():
    print("\nTrying perf_event interface to gather results\n")
    if not os.path.exists(_PERF_TYPE):
        print("\tNo perf_event rapl support found (requires Linux 3.14)")
    else:
        print("\tperf_event RAPL counters cannot be opened here")
    print("\tFalling back to raw msr support\n")


def _usage():
    print("Usage: rapl-read [-c core] [-h] [-m]\n")
    print("\t-c core : specifies which core to measure")
    print("\t-h      : displays this help")
    print("\t-m      : forces use of MSR mode")
    print("\t-p      : forces use of perf_event mode")
    print("\t-s      : forces use of sysfs mode")


def main(argv=None):
    args = sys.argv[1:] if argv is None else list(argv)
    print()
    print("RAPL read -- use -s for sysfs, -p for perf_event, -m for msr\n")

    try:
        options, _ = getopt.getopt(args, "c:hmps")
    except getopt.GetoptError as exc:
        print(f"Unknown option {exc.opt}", file=sys.stderr)
        return -1

    force_msr = force_perf = False
    for option, _value in options:
        if option == "-h":
            _usage()
            return 0
        if option == "-m":
            force_msr = True
        elif option == "-p":
            force_perf = True

    try:
        model = detect_model(read_cpuinfo())
        print(f"Found {model_name(model)} Processor type")
    except OSError:
        model = -1
    except ValueError as exc:
        print(exc)
        model = -1

    try:
        topology = detect_packages()
    except (OSError, ValueError) as exc:
        print(exc, file=sys.stderr)
        return -1
    sys.stdout.write(topology.describe())

    done = False
    if not force_msr and not force_perf:
        try:
            measure_sysfs(DEFAULT_POWERCAP, topology.packages)
            done = True
        except OSError as exc:
            print(f"\tCould not open {exc.filename}", file=sys.stderr)

    if not done and force_perf and not force_msr:
        _perf_fallback()

    if not done:
        try:
            measure_msr(model, topology)
            done = True
        except MsrError as exc:
            print(exc, file=sys.stderr)
            return exc.exit_code
        except ValueError:
            pass

    if not done:
        print("Unable to read RAPL counters.")
        print("* Verify you have an Intel Sandybridge or newer processor")
        print(
            "* You may need to run as root or have "
            "/proc/sys/kernel/perf_event_paranoid set properly"
        )
        print("* If using raw msr access, make sure msr module is installed")
        print()
        return -1
    return 0