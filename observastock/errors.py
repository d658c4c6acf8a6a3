"""
ObservaStock - Error Definitions

Telemetry error taxonomy. Telemetry failures are a separate channel from
business failures: only configuration and argument errors surface to the
caller, everything else is logged and dropped at the boundary that caught it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Error classification."""
    CONFIGURATION = "configuration"
    ARGUMENT = "argument"
    TRANSPORT = "transport"
    PROBE = "probe"


@dataclass
class ErrorDetails:
    """Structured error information."""
    code: str
    message: str
    category: ErrorCategory
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
        }
        if self.details:
            result["details"] = self.details
        return {"error": result}


class TelemetryError(Exception):
    """Base exception for all telemetry errors."""

    def __init__(self, error: ErrorDetails):
        self.error = error
        super().__init__(error.message)

    @property
    def code(self) -> str:
        return self.error.code


# ============================================================
# Synchronous errors (reported to the caller)
# ============================================================

class InstrumentConfigurationError(TelemetryError):
    """An instrument was registered with a conflicting or unknown kind."""

    def __init__(
        self,
        meter_name: str,
        name: str,
        existing_kind: Optional[str],
        requested_kind: str,
    ):
        details = {
            "meter_name": meter_name,
            "instrument_name": name,
            "requested_kind": requested_kind,
        }
        if existing_kind is None:
            code = "instrument_kind_unknown"
            message = f"Instrument {meter_name}/{name}: unknown instrument kind {requested_kind!r}"
        else:
            code = "instrument_kind_mismatch"
            message = (
                f"Instrument {meter_name}/{name} is already registered as "
                f"{existing_kind}, cannot register it as {requested_kind}"
            )
            details["existing_kind"] = existing_kind
        super().__init__(
            ErrorDetails(
                code=code,
                message=message,
                category=ErrorCategory.CONFIGURATION,
                details=details,
            )
        )


class InvalidArgumentError(TelemetryError):
    """A value was rejected by an instrument or a descriptor."""

    def __init__(self, message: str, param: str = "", value: Any = None):
        details = {}
        if param:
            details["param"] = param
        if value is not None:
            details["value"] = value
        super().__init__(
            ErrorDetails(
                code="invalid_argument",
                message=message,
                category=ErrorCategory.ARGUMENT,
                details=details,
            )
        )


# ============================================================
# Background errors (never leave the telemetry path)
# ============================================================

class ExporterError(TelemetryError):
    """A batch could not be delivered to the collector."""

    def __init__(self, signal: str, message: str, attempts: int = 0):
        super().__init__(
            ErrorDetails(
                code="export_failed",
                message=f"{signal} export failed: {message}",
                category=ErrorCategory.TRANSPORT,
                details={"signal": signal, "attempts": attempts},
            )
        )


class ProbeTimeoutError(TelemetryError):
    """A health probe did not finish within its timeout."""

    def __init__(self, probe_name: str, timeout_seconds: float):
        super().__init__(
            ErrorDetails(
                code="probe_timeout",
                message=f"Health probe {probe_name} timed out after {timeout_seconds}s",
                category=ErrorCategory.PROBE,
                details={"probe": probe_name, "timeout_seconds": timeout_seconds},
            )
        )


class CheckStillRunningError(TelemetryError):
    """A blocking health check from an earlier evaluation has not returned yet."""

    def __init__(self, check_name: str):
        super().__init__(
            ErrorDetails(
                code="check_still_running",
                message=f"Health check {check_name} is still running from a previous evaluation",
                category=ErrorCategory.PROBE,
                details={"check": check_name},
            )
        )
