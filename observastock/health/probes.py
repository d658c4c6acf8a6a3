"""
ObservaStock - Health Probes

Independent health checks aggregated into a HealthReport.

Aggregation is worst-of-entries:
- any Unhealthy entry  -> Unhealthy
- else any Degraded    -> Degraded
- else                 -> Healthy (also for an empty probe set)

A probe that raises or exceeds its timeout becomes an Unhealthy entry; the
other probes are still evaluated.

Blocking checks run on the service's own bounded thread pool. A blocking
check that is still running from an earlier evaluation is not submitted
again; it is reported Unhealthy until it returns.
"""

import asyncio
import contextvars
import inspect
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from ..errors import CheckStillRunningError, ProbeTimeoutError


class HealthStatus(str, Enum):
    """Health status of a probe or a whole report."""
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNHEALTHY = "Unhealthy"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}


def aggregate_status(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Worst status of the given ones; Healthy when there are none."""
    worst = HealthStatus.HEALTHY
    for status in statuses:
        if status.severity > worst.severity:
            worst = status
    return worst


@dataclass
class ProbeResult:
    """Outcome returned by a probe."""
    status: HealthStatus
    description: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def healthy(cls, description: str = "", **data) -> "ProbeResult":
        return cls(HealthStatus.HEALTHY, description, data)

    @classmethod
    def degraded(cls, description: str = "", **data) -> "ProbeResult":
        return cls(HealthStatus.DEGRADED, description, data)

    @classmethod
    def unhealthy(cls, description: str = "", **data) -> "ProbeResult":
        return cls(HealthStatus.UNHEALTHY, description, data)


@dataclass
class HealthEntry:
    """One probe's contribution to a report."""
    name: str
    status: HealthStatus
    duration: float  # seconds
    description: str = ""
    error: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "name": self.name,
            "status": self.status.value,
            "duration": round(self.duration, 6),
            "tags": list(self.tags),
        }
        if self.description:
            result["description"] = self.description
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class HealthReport:
    """Result of one evaluation cycle. Not persisted."""
    status: HealthStatus
    entries: List[HealthEntry] = field(default_factory=list)
    total_duration: float = 0.0
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_entries(cls, entries: List[HealthEntry], total_duration: float = 0.0) -> "HealthReport":
        return cls(
            status=aggregate_status(entry.status for entry in entries),
            entries=entries,
            total_duration=total_duration,
        )

    def entry(self, name: str) -> Optional[HealthEntry]:
        for item in self.entries:
            if item.name == name:
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Liveness endpoint shape."""
        return {
            "status": self.status.value,
            "entries": [entry.to_dict() for entry in self.entries],
        }


ProbeOutcome = Union[ProbeResult, HealthStatus, bool]


class HealthProbe(ABC):
    """An independent health check."""

    def __init__(self, name: str, tags: Optional[Iterable[str]] = None):
        self.name = name
        self.tags = list(tags or [])

    @abstractmethod
    def check(self) -> Union[ProbeOutcome, Awaitable[ProbeOutcome]]:
        """Run the check. May be a coroutine function."""


class FunctionProbe(HealthProbe):
    """Probe backed by a plain (sync or async) callable."""

    def __init__(
        self,
        name: str,
        func: Callable[[], Union[ProbeOutcome, Awaitable[ProbeOutcome]]],
        tags: Optional[Iterable[str]] = None,
    ):
        super().__init__(name, tags)
        self._func = func

    def check(self):
        return self._func()


def _normalize(outcome: Any) -> ProbeResult:
    if isinstance(outcome, ProbeResult):
        return outcome
    if isinstance(outcome, HealthStatus):
        return ProbeResult(outcome)
    if isinstance(outcome, bool):
        return ProbeResult.healthy() if outcome else ProbeResult.unhealthy("check returned False")
    raise TypeError(f"Unsupported probe result: {outcome!r}")


class HealthCheckService:
    """
    Registry of health probes.

    Probes run concurrently; entries keep registration order.
    """

    def __init__(self, probe_timeout: float = 10.0, max_workers: int = 4):
        self.probe_timeout = probe_timeout
        self.max_workers = max_workers
        self._probes: Dict[str, HealthProbe] = {}
        self._lock = Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        # Blocking checks submitted and not yet returned, by check name
        self._running: Dict[str, Future] = {}

    def register(self, probe: HealthProbe) -> HealthProbe:
        """Register a probe (replaces a probe with the same name)."""
        with self._lock:
            self._probes[probe.name] = probe
        return probe

    def add_check(
        self,
        name: str,
        func: Callable[[], Any],
        tags: Optional[Iterable[str]] = None,
    ) -> HealthProbe:
        """Register a callable as a probe."""
        return self.register(FunctionProbe(name, func, tags))

    def probes(self) -> List[HealthProbe]:
        with self._lock:
            return list(self._probes.values())

    async def evaluate(self) -> HealthReport:
        """Run every registered probe and aggregate the results."""
        started = time.perf_counter()
        probes = self.probes()
        entries = await asyncio.gather(*(self._run_probe(probe) for probe in probes))
        return HealthReport.from_entries(list(entries), time.perf_counter() - started)

    async def _invoke(self, probe: HealthProbe) -> Any:
        if inspect.iscoroutinefunction(probe.check):
            return await probe.check()
        if isinstance(probe, FunctionProbe) and inspect.iscoroutinefunction(probe._func):
            return await probe.check()
        # Blocking checks run off the event loop
        outcome = await asyncio.wrap_future(self._submit(probe))
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    def _submit(self, probe: HealthProbe) -> Future:
        with self._lock:
            previous = self._running.get(probe.name)
            if previous is not None and not previous.done():
                raise CheckStillRunningError(probe.name)
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="health-check",
                )
            ctx = contextvars.copy_context()
            future = self._executor.submit(ctx.run, probe.check)
            self._running[probe.name] = future
            return future

    def close(self) -> None:
        """Release the worker threads; blocking checks still running are abandoned."""
        with self._lock:
            executor, self._executor = self._executor, None
            self._running.clear()
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

    async def _run_probe(self, probe: HealthProbe) -> HealthEntry:
        started = time.perf_counter()
        try:
            outcome = await asyncio.wait_for(self._invoke(probe), timeout=self.probe_timeout)
            result = _normalize(outcome)
        except asyncio.TimeoutError:
            error = ProbeTimeoutError(probe.name, self.probe_timeout)
            return HealthEntry(
                name=probe.name,
                status=HealthStatus.UNHEALTHY,
                duration=time.perf_counter() - started,
                description="Probe timed out",
                error=str(error),
                tags=probe.tags,
            )
        except CheckStillRunningError as e:
            return HealthEntry(
                name=probe.name,
                status=HealthStatus.UNHEALTHY,
                duration=time.perf_counter() - started,
                description="Previous check still running",
                error=str(e),
                tags=probe.tags,
            )
        except Exception as e:
            return HealthEntry(
                name=probe.name,
                status=HealthStatus.UNHEALTHY,
                duration=time.perf_counter() - started,
                description="Probe raised an exception",
                error=f"{type(e).__name__}: {e}",
                tags=probe.tags,
            )

        return HealthEntry(
            name=probe.name,
            status=result.status,
            duration=time.perf_counter() - started,
            description=result.description,
            tags=probe.tags,
            data=result.data,
        )
