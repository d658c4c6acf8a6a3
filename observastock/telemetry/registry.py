"""
ObservaStock - Instrument Registry

Catalog of metric instruments keyed by (meter name, instrument name). Instrument
names are compared case-insensitively, as the SDK does.

The registry is an explicit object built once at startup from the pipeline's
MeterProvider and handed to every component that records metrics. Creation
is idempotent per identity key and kind; recording is thread-safe without
caller locking (the SDK aggregates under its own locks).

Usage:
    registry = InstrumentRegistry(pipeline.meter_provider)
    trades = registry.counter("TradingMetrics", "total_trades_placed", unit="trades")
    trades.record(1, {"symbol": "MSFT", "action": "Buy"})
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from opentelemetry.metrics import CallbackOptions, Meter, MeterProvider, Observation

from ..errors import InstrumentConfigurationError, InvalidArgumentError

logger = logging.getLogger("observastock.telemetry.registry")

TagValue = Union[str, bool, int, float]
Tags = Mapping[str, TagValue]
Callback = Callable[[CallbackOptions], Iterable[Observation]]


def _identity(meter_name: str, name: str) -> Tuple[str, str]:
    return (meter_name, name.strip().lower())


class InstrumentKind(str, Enum):
    """Supported instrument kinds."""
    COUNTER = "counter"
    HISTOGRAM = "histogram"
    GAUGE = "gauge"
    # Read by SDK callbacks at collection time
    OBSERVABLE_COUNTER = "observable_counter"
    OBSERVABLE_GAUGE = "observable_gauge"

    @property
    def observable(self) -> bool:
        return self in (InstrumentKind.OBSERVABLE_COUNTER, InstrumentKind.OBSERVABLE_GAUGE)


@dataclass(eq=False)
class InstrumentHandle:
    """
    Handle to one registered instrument.

    Two handles for the same identity key are the same object, so identity
    comparison is enough to check that callers share a series.
    """
    meter_name: str
    name: str
    kind: InstrumentKind
    unit: str = ""
    description: str = ""
    _instrument: Any = field(default=None, repr=False)

    @property
    def key(self) -> Tuple[str, str]:
        return _identity(self.meter_name, self.name)

    def record(self, value: float, tags: Optional[Tags] = None) -> None:
        """
        Record one sample.

        Raises:
            InvalidArgumentError: Non-finite value, negative counter increment,
                or an observable instrument
        """
        if self.kind.observable:
            raise InvalidArgumentError(
                f"{self.name}: observable instruments are read through their callbacks",
                param="kind",
                value=self.kind.value,
            )
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidArgumentError(
                f"{self.name}: value must be a number",
                param="value",
                value=repr(value),
            )
        if not math.isfinite(value):
            raise InvalidArgumentError(
                f"{self.name}: value must be finite",
                param="value",
                value=repr(value),
            )

        attributes = dict(tags) if tags else None

        if self.kind is InstrumentKind.COUNTER:
            if value < 0:
                raise InvalidArgumentError(
                    f"{self.name}: counter increments must be non-negative",
                    param="value",
                    value=value,
                )
            self._instrument.add(value, attributes=attributes)
        elif self.kind is InstrumentKind.HISTOGRAM:
            self._instrument.record(value, attributes=attributes)
        else:
            self._instrument.set(value, attributes=attributes)


class InstrumentRegistry:
    """
    Process-scoped instrument catalog.

    Lifetime equals the process lifetime; one registry per MeterProvider.
    """

    def __init__(self, meter_provider: MeterProvider):
        self._meter_provider = meter_provider
        self._meters: Dict[str, Meter] = {}
        self._instruments: Dict[Tuple[str, str], InstrumentHandle] = {}
        self._lock = Lock()

    def _get_meter(self, meter_name: str) -> Meter:
        meter = self._meters.get(meter_name)
        if meter is None:
            meter = self._meter_provider.get_meter(meter_name)
            self._meters[meter_name] = meter
        return meter

    def register_meters(self, meter_names: Iterable[str]) -> List[str]:
        """
        Declare additional meters up front.

        Returns:
            The meter names now known to the registry
        """
        with self._lock:
            for name in meter_names:
                self._get_meter(name)
            return list(self._meters)

    def get_or_create(
        self,
        meter_name: str,
        name: str,
        kind: InstrumentKind,
        unit: str = "",
        description: str = "",
        callbacks: Optional[Sequence[Callback]] = None,
    ) -> InstrumentHandle:
        """
        Get the instrument for (meter_name, name), creating it on first use.

        Args:
            meter_name: Logical meter the instrument belongs to
            name: Instrument name (case-insensitive within a meter)
            kind: Counter, histogram, gauge or one of the observable kinds
            unit: Unit of measure
            description: Human readable description
            callbacks: Observation callbacks, required for observable kinds

        Returns:
            The shared InstrumentHandle for this identity key

        Raises:
            InstrumentConfigurationError: Unknown kind, or the key exists
                with a different kind
            InvalidArgumentError: Observable kind without callbacks
        """
        try:
            kind = InstrumentKind(kind)
        except ValueError:
            raise InstrumentConfigurationError(meter_name, name, None, str(kind)) from None
        key = _identity(meter_name, name)

        with self._lock:
            existing = self._instruments.get(key)
            if existing is not None:
                if existing.kind is not kind:
                    raise InstrumentConfigurationError(
                        meter_name, name, existing.kind.value, kind.value
                    )
                return existing

            if kind.observable and not callbacks:
                raise InvalidArgumentError(
                    f"{name}: {kind.value} instruments need at least one callback",
                    param="callbacks",
                )

            meter = self._get_meter(meter_name)
            if kind is InstrumentKind.COUNTER:
                instrument = meter.create_counter(name, unit=unit, description=description)
            elif kind is InstrumentKind.HISTOGRAM:
                instrument = meter.create_histogram(name, unit=unit, description=description)
            elif kind is InstrumentKind.GAUGE:
                instrument = meter.create_gauge(name, unit=unit, description=description)
            elif kind is InstrumentKind.OBSERVABLE_COUNTER:
                instrument = meter.create_observable_counter(
                    name, callbacks=list(callbacks), unit=unit, description=description
                )
            else:
                instrument = meter.create_observable_gauge(
                    name, callbacks=list(callbacks), unit=unit, description=description
                )

            handle = InstrumentHandle(
                meter_name=meter_name,
                name=name,
                kind=kind,
                unit=unit,
                description=description,
                _instrument=instrument,
            )
            self._instruments[key] = handle
            logger.debug("Registered %s instrument %s/%s", kind.value, meter_name, name)
            return handle

    def counter(self, meter_name: str, name: str, unit: str = "", description: str = "") -> InstrumentHandle:
        return self.get_or_create(meter_name, name, InstrumentKind.COUNTER, unit, description)

    def histogram(self, meter_name: str, name: str, unit: str = "", description: str = "") -> InstrumentHandle:
        return self.get_or_create(meter_name, name, InstrumentKind.HISTOGRAM, unit, description)

    def gauge(self, meter_name: str, name: str, unit: str = "", description: str = "") -> InstrumentHandle:
        return self.get_or_create(meter_name, name, InstrumentKind.GAUGE, unit, description)

    def observe(
        self,
        meter_name: str,
        name: str,
        callback: Callback,
        kind: InstrumentKind = InstrumentKind.OBSERVABLE_GAUGE,
        unit: str = "",
        description: str = "",
    ) -> InstrumentHandle:
        """Register an instrument whose values are read by `callback` on every collection."""
        return self.get_or_create(meter_name, name, kind, unit, description, callbacks=[callback])

    def record(self, handle: InstrumentHandle, value: float, tags: Optional[Tags] = None) -> None:
        """Record a sample through a handle obtained from this registry."""
        handle.record(value, tags)

    def instruments(self) -> List[InstrumentHandle]:
        """Snapshot of registered instruments."""
        with self._lock:
            return list(self._instruments.values())

    def meter_names(self) -> List[str]:
        with self._lock:
            return list(self._meters)


def record_safely(handle: InstrumentHandle, value: float, tags: Optional[Tags] = None) -> bool:
    """
    Record a sample on a business path.

    Telemetry errors are logged and swallowed so they never change the
    outcome of the operation being measured.

    Returns:
        True if the sample was recorded
    """
    try:
        handle.record(value, tags)
        return True
    except Exception as e:
        logger.warning(
            "Dropped metric sample for %s/%s: %s", handle.meter_name, handle.name, e
        )
        return False
