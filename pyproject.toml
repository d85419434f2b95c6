[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cpuknobs"
version = "0.1.0"
description = "Read and tweak low-level CPU knobs: hardware prefetchers, RAPL energy counters, AMD APM power, and DAQ power traces"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "rapl",
    "msr",
    "prefetch",
    "energy",
    "power",
    "apm",
    "daq",
    "measurement",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Science/Research",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: System :: Benchmark",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
cpuknobs-prefetch = "cpuknobs.prefetch:main"
cpuknobs-rapl = "cpuknobs.rapl:main"
cpuknobs-apm = "cpuknobs.apm:main"
cpuknobs-trace-dump = "cpuknobs.traces:main_dump"
cpuknobs-trace-watts = "cpuknobs.traces:main_watts"
cpuknobs-trace-debounce = "cpuknobs.traces:main_debounce"
cpuknobs-ddr3 = "cpuknobs.energy:main_ddr3"
cpuknobs-ddr4 = "cpuknobs.energy:main_ddr4"

[tool.hatch.build.targets.wheel]
packages = ["cpuknobs"]

[tool.hatch.build.targets.sdist]
include = ["cpuknobs", "tests", "pyproject.toml", "README.md"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
