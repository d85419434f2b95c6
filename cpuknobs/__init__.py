"""Intel prefetch control, RAPL and AMD APM energy readings, DAQFlex messaging and DAQ power trace analysis."""

__version__ = "0.1.0"