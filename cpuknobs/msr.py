"""Model-specific register access through the /dev/cpu/N/msr interface."""

from __future__ import annotations

import errno as _errno
import os
import re
import struct
from dataclasses import dataclass

DEFAULT_MSR_ROOT = "/dev/cpu"
DEFAULT_CPUINFO = "/proc/cpuinfo"

_REGISTER = struct.Struct("<Q")
_REGISTER_MASK = (1 << 64) - 1
_INT_PREFIX = re.compile(r"[+-]?\d+")


class MsrError(Exception):
    """Failure to open, read or write a model-specific register."""

    def __init__(self, message, errno=None, exit_code=127):
        super().__init__(message)
        self.errno = errno
        self.exit_code = exit_code

    @property
    def missing(self):
        """True when the CPU (or its MSR device) does not exist."""
        return self.errno in (_errno.ENXIO, _errno.ENOENT)


def msr_path(core, root=DEFAULT_MSR_ROOT):
    """Path of the MSR device file for ``core``."""
    return os.path.join(root, str(core), "msr")


def _open_error(core, path, exc):
    if exc.errno == _errno.ENXIO:
        return MsrError(f"rdmsr: No CPU {core}", exc.errno, 2)
    if exc.errno == _errno.EIO:
        return MsrError(f"rdmsr: CPU {core} doesn't support MSRs", exc.errno, 3)
    return MsrError(
        f"rdmsr:open: {exc.strerror} (trying to open {path})", exc.errno, 127
    )


class MsrDevice:
    """An open MSR device for one CPU core."""

    def __init__(self, core, writable=False, root=DEFAULT_MSR_ROOT):
        self.core = core
        self.path = msr_path(core, root)
        flags = os.O_RDWR if writable else os.O_RDONLY
        try:
            self._fd = os.open(self.path, flags)
        except OSError as exc:
            raise _open_error(core, self.path, exc) from exc

    def read(self, register):
        """Read the 64-bit value of ``register``."""
        try:
            data = os.pread(self._fd, _REGISTER.size, register)
        except OSError as exc:
            code = 4 if exc.errno == _errno.EIO else 127
            raise MsrError(
                f"rdmsr: CPU {self.core} cannot read MSR 0x{register:08x}: "
                f"{exc.strerror}",
                exc.errno,
                code,
            ) from exc
        if len(data) != _REGISTER.size:
            raise MsrError(
                f"rdmsr: short read of MSR 0x{register:08x} on CPU {self.core}"
            )
        return _REGISTER.unpack(data)[0]

    def write(self, register, value):
        """Write a 64-bit ``value`` to ``register``."""
        value &= _REGISTER_MASK
        try:
            written = os.pwrite(self._fd, _REGISTER.pack(value), register)
        except OSError as exc:
            code = 4 if exc.errno == _errno.EIO else 127
            raise MsrError(
                f"wrmsr: CPU {self.core} cannot set MSR 0x{register:08x} "
                f"to 0x{value:016x}: {exc.strerror}",
                exc.errno,
                code,
            ) from exc
        if written != _REGISTER.size:
            raise MsrError(
                f"wrmsr: short write of MSR 0x{register:08x} on CPU {self.core}"
            )

    def close(self):
        if self._fd >= 0:
            os.close(self._fd)
            self._fd = -1

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


@dataclass(frozen=True)
class CpuInfo:
    """Vendor, family and model as reported by /proc/cpuinfo."""

    vendor: str | None = None
    family: int | None = None
    model: int = -1


def _scan_int(token):
    match = _INT_PREFIX.match(token)
    return int(match.group()) if match else None


def _field(fields, index):
    return fields[index] if len(fields) > index else ""


def parse_cpuinfo(text):
    """Extract vendor, family and model from cpuinfo text; later lines win."""
    vendor = None
    family = None
    model = -1
    for line in text.splitlines():
        fields = line.split()
        if line.startswith("vendor_i") and len(fields) > 2:
            vendor = fields[2]
        if line.startswith("cpu family"):
            value = _scan_int(_field(fields, 3))
            if value is not None:
                family = value
        if line.startswith("model"):
            value = _scan_int(_field(fields, 2))
            if value is not None:
                model = value
    return CpuInfo(vendor, family, model)


def read_cpuinfo(path=DEFAULT_CPUINFO):
    """Read and parse a cpuinfo file."""
    with open(path, encoding="utf-8", errors="replace") as handle:
        return parse_cpuinfo(handle.read())