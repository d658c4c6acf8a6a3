"""
ObservaStock - Process Runtime Metrics

Observable instruments describing the service process itself, read by the
SDK on every metric collection:

- process.cpu.time (s, by cpu.mode)
- process.memory.usage / process.memory.virtual (By)
- process.thread.count
- process.open_file_descriptor.count (POSIX only)
- process.runtime.gc.collections (by generation)

Usage:
    register_runtime_metrics(pipeline.registry)
"""

import gc
import logging
from typing import Iterable, List, Optional

import psutil
from opentelemetry.metrics import CallbackOptions, Observation

from .registry import InstrumentHandle, InstrumentKind, InstrumentRegistry

logger = logging.getLogger("observastock.telemetry.runtime")

RUNTIME_METER = "process.runtime"


class RuntimeMetrics:
    """Callbacks over one psutil.Process handle."""

    def __init__(self, process: Optional[psutil.Process] = None):
        self.process = process or psutil.Process()

    def cpu_time(self, options: CallbackOptions) -> Iterable[Observation]:
        times = self.process.cpu_times()
        yield Observation(times.user, {"cpu.mode": "user"})
        yield Observation(times.system, {"cpu.mode": "system"})

    def memory_usage(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(self.process.memory_info().rss)

    def memory_virtual(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(self.process.memory_info().vms)

    def thread_count(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(self.process.num_threads())

    def open_file_descriptors(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(self.process.num_fds())

    def gc_collections(self, options: CallbackOptions) -> Iterable[Observation]:
        for generation, stats in enumerate(gc.get_stats()):
            yield Observation(stats["collections"], {"generation": str(generation)})


def register_runtime_metrics(
    registry: InstrumentRegistry,
    meter_name: str = RUNTIME_METER,
    process: Optional[psutil.Process] = None,
) -> List[InstrumentHandle]:
    """
    Register the process instruments on a registry.

    Returns:
        The registered handles
    """
    metrics = RuntimeMetrics(process)
    specs = [
        ("process.cpu.time", metrics.cpu_time, InstrumentKind.OBSERVABLE_COUNTER, "s",
         "CPU time consumed by the process"),
        ("process.memory.usage", metrics.memory_usage, InstrumentKind.OBSERVABLE_GAUGE, "By",
         "Resident memory of the process"),
        ("process.memory.virtual", metrics.memory_virtual, InstrumentKind.OBSERVABLE_GAUGE, "By",
         "Virtual memory of the process"),
        ("process.thread.count", metrics.thread_count, InstrumentKind.OBSERVABLE_GAUGE, "{thread}",
         "Threads in the process"),
        ("process.runtime.gc.collections", metrics.gc_collections, InstrumentKind.OBSERVABLE_COUNTER,
         "{collection}", "Garbage collector runs per generation"),
    ]
    # num_fds is not available on Windows
    if hasattr(metrics.process, "num_fds"):
        specs.append(
            ("process.open_file_descriptor.count", metrics.open_file_descriptors,
             InstrumentKind.OBSERVABLE_GAUGE, "{file_descriptor}", "Open file descriptors")
        )

    handles = [
        registry.observe(meter_name, name, callback, kind=kind, unit=unit, description=description)
        for name, callback, kind, unit, description in specs
    ]
    logger.debug("Registered %d runtime instruments on meter %s", len(handles), meter_name)
    return handles
