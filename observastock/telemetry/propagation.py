"""
ObservaStock - Trace Context Propagation

W3C trace context (traceparent header) across service hops.

Outbound: inject the active span's ids and flags into the request headers.
Inbound: extract them and use them as the parent of the server span; an
absent or malformed header starts a new root trace.

Header format:
    traceparent: 00-<32 hex trace id>-<16 hex span id>-<2 hex flags>
"""

import re
from dataclasses import dataclass
from typing import Dict, Mapping, MutableMapping, Optional

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import Span
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

TRACEPARENT_HEADER = "traceparent"
TRACESTATE_HEADER = "tracestate"

_TRACEPARENT_RE = re.compile(
    r"^(?P<version>[0-9a-f]{2})-(?P<trace_id>[0-9a-f]{32})-"
    r"(?P<span_id>[0-9a-f]{16})-(?P<flags>[0-9a-f]{2})$"
)


@dataclass
class TraceContext:
    """Trace identifiers carried across a call boundary."""
    trace_id: str
    span_id: str
    trace_flags: int = 1
    trace_state: Optional[str] = None

    @classmethod
    def from_span(cls, span: Span) -> "TraceContext":
        """Create TraceContext from a span."""
        ctx = span.get_span_context()
        return cls(
            trace_id=format(ctx.trace_id, "032x"),
            span_id=format(ctx.span_id, "016x"),
            trace_flags=int(ctx.trace_flags),
            trace_state=ctx.trace_state.to_header() if ctx.trace_state else None,
        )

    @classmethod
    def parse(cls, header: Optional[str]) -> Optional["TraceContext"]:
        """
        Parse a traceparent header value.

        Returns:
            TraceContext, or None if the header is absent, malformed or
            carries a version other than 00
        """
        if not header:
            return None
        match = _TRACEPARENT_RE.match(header.strip().lower())
        if not match:
            return None
        # Only version 00 is understood; all-zero ids are invalid
        if match.group("version") != "00":
            return None
        if set(match.group("trace_id")) == {"0"} or set(match.group("span_id")) == {"0"}:
            return None
        return cls(
            trace_id=match.group("trace_id"),
            span_id=match.group("span_id"),
            trace_flags=int(match.group("flags"), 16),
        )

    @property
    def sampled(self) -> bool:
        return bool(self.trace_flags & 0x01)

    def to_traceparent(self) -> str:
        """Generate W3C traceparent header value."""
        return f"00-{self.trace_id}-{self.span_id}-{self.trace_flags:02x}"


class ContextPropagator:
    """
    Injects and extracts trace context on HTTP headers.

    Uses its own W3C propagator instance so it works whether or not the
    OpenTelemetry global textmap has been configured.
    """

    def __init__(self):
        self._propagator = TraceContextTextMapPropagator()

    @property
    def fields(self):
        return self._propagator.fields

    def inject(
        self,
        headers: MutableMapping[str, str],
        context: Optional[Context] = None,
    ) -> MutableMapping[str, str]:
        """
        Inject the active (or given) span context into headers.

        Args:
            headers: Outbound headers, modified in place
            context: Context holding the parent span (current context if None)

        Returns:
            The same headers mapping
        """
        self._propagator.inject(headers, context=context)
        return headers

    def extract(self, headers: Mapping[str, str]) -> Context:
        """
        Extract the parent context from inbound headers.

        Header names are matched case-insensitively. The result is always a
        fresh Context built only from the headers, so an absent or malformed
        traceparent yields a context without a parent span and the caller
        starts a new root trace.
        """
        normalized: Dict[str, str] = {k.lower(): v for k, v in headers.items()}
        return self._propagator.extract(normalized, context=Context())

    def parent_of(self, headers: Mapping[str, str]) -> Optional[TraceContext]:
        """TraceContext carried by the headers, if valid."""
        span_context = trace.get_current_span(self.extract(headers)).get_span_context()
        if not span_context.is_valid:
            return None
        return TraceContext(
            trace_id=format(span_context.trace_id, "032x"),
            span_id=format(span_context.span_id, "016x"),
            trace_flags=int(span_context.trace_flags),
            trace_state=span_context.trace_state.to_header() if span_context.trace_state else None,
        )


def current_trace_context() -> Optional[TraceContext]:
    """Trace context of the active span, if any."""
    span = trace.get_current_span()
    if span.get_span_context().is_valid:
        return TraceContext.from_span(span)
    return None
