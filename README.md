# cpuknobs

Command-line tools and a small library for poking at the power and
performance knobs of a Linux machine:

- switch the hardware prefetchers of Intel processors on and off,
- measure RAPL energy counters through sysfs powercap or raw MSRs,
- read AMD application power management (APM) and TDP information,
- analyse the binary power traces recorded by a Measurement Computing USB DAQ,
  and talk the DAQFlex text protocol to such a device through a transport you
  supply.

Everything is plain Python with no third-party dependencies.

## Requirements

- Linux with `/proc/cpuinfo` and `/sys` available.
- For MSR access: the `msr` kernel module loaded (`/dev/cpu/N/msr`) and root
  privileges.
- For `cpuknobs-apm`: the `cpuid` kernel module as well (`/dev/cpu/N/cpuid`).

## Installation

```
pip install .
```

For running the tests:

```
pip install .[test]
pytest
```

## Commands

### Hardware prefetchers

```
cpuknobs-prefetch [-c core] [-d] [-e] [-h]
```

Detects the processor from `/proc/cpuinfo` (Core 2, Nehalem and newer Intel
family 6 parts), then disables (`-d`, the default) or enables (`-e`) the L2
hardware, L2 adjacent-line, DCU next-line and DCU IP prefetchers. Without `-c`
every core is changed, starting at 0 and stopping at the first core with no
MSR device. The old and new state of each core is printed, `Y` meaning a
prefetcher is on and `N` meaning it is off.

### RAPL energy

```
cpuknobs-rapl [-c core] [-s] [-p] [-m] [-h]
```

Detects the processor and its packages, then measures one second of energy
per package and domain. The sysfs powercap interface
(`/sys/class/powercap/intel-rapl`) is tried first; `-m` goes straight to raw
MSR reads, which also print power units, thermal spec, power limits and
policies. With `-p` the program reports that perf_event counters are not
used and falls back to MSR reads. `-c` and `-s` are accepted; the value of
`-c` does not change what is measured.

### AMD APM

```
cpuknobs-apm
```

On AMD family 15h and newer, prints the package topology, the TDP values read
from PCI configuration space (`0000:00:18.4` and `0000:00:18.5`) and, where
the processor supports accumulated power reporting, the average core power
while sleeping 5 ms and while busy computing.

### DAQ power traces

Binary trace files hold a header (version, start time, sample rate, channel
count), frames of little-endian 32-bit floats, one per channel, an infinity
marker and a stop time. Every trace command reads the file named on the
command line, or standard input when none is given.

```
cpuknobs-trace-dump trace.bin
```

Prints every frame with its time stamp.

```
cpuknobs-trace-watts trace.bin
```

Prints the power computed from the shunt-amplifier channel (0) and the supply
channel (1).

```
cpuknobs-trace-debounce trace.bin > clean.bin
```

Removes single-sample sign glitches from the marker channel (3), writes the
first four channels as a cleaned trace to standard output, and prints the
header and each glitch to standard error.

```
cpuknobs-ddr3 trace.bin
cpuknobs-ddr4 trace.bin
```

Find the DTR-marked regions in a DIMM power trace (marker on channel 3 for
DDR3, channel 7 for DDR4) and print, for each, its start, end, duration,
energy and average power, followed by averages over all complete regions.

## Library use

The pieces behind the commands can be used directly, for example to decode
register values:

```python
from cpuknobs.rapl import decode_units
from cpuknobs.prefetch import PrefetchStyle, decode_prefetch

units = decode_units(0xA0E03, different_units=False)
state = decode_prefetch(PrefetchStyle.NEHALEM, 0x5)
```

to read a recorded trace:

```python
from cpuknobs.traces import read_trace, watts_lines

with open("trace.bin", "rb") as stream:
    trace = read_trace(stream)
for line in watts_lines(trace):
    print(line)
```

or to split a trace into marked regions with `cpuknobs.energy.analyse`.

`cpuknobs.daq.DaqDevice` sends DAQFlex commands over any object providing
`control_out(data)` and `control_in(length)`; `configure_scan` sets up a
continuous scan and loads calibration, and `write_samples` turns raw counts
into volts as CSV lines or binary floats. `scan_geometry` computes the
double-buffer sizes for a given channel count and rate.

## What this package does not do

- There is no continuous power monitor: `cpuknobs-rapl` measures a single
  one-second interval and exits.
- perf_event RAPL counters are not read.
- There is no command that records from the DAQ, and no USB transport is
  included; to record, supply your own transport to `DaqDevice`.