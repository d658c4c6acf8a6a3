"""
ObservaStock - Span Enrichment

Enrichers tag the span created by an operation boundary (server middleware,
outbound HTTP transport, database call) with standard attributes. They never
create spans.

Contract:
    enrich(exchange) -> {attribute: value}

Enrichment is fail-open: an enricher that raises is logged and skipped, the
span goes on without its attributes and the request is not affected.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from opentelemetry.trace import Span

logger = logging.getLogger("observastock.telemetry.enrichment")

AttributeValue = Union[str, bool, int, float]


@dataclass
class DbCommand:
    """A database call as seen by the enrichers."""
    statement: str
    system: str = "sqlite"
    database: Optional[str] = None


class SpanEnricher(ABC):
    """Computes span attributes for one kind of exchange."""

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    def enrich(self, exchange: Any) -> Dict[str, AttributeValue]:
        """Return the attributes to set on the active span."""


# ============================================================
# Inbound HTTP (starlette Request / Response)
# ============================================================

class HttpServerRequestEnricher(SpanEnricher):
    def enrich(self, exchange: Any) -> Dict[str, AttributeValue]:
        return {
            "http.request.method": exchange.method,
            "http.request.path": exchange.url.path,
        }


class HttpServerResponseEnricher(SpanEnricher):
    def enrich(self, exchange: Any) -> Dict[str, AttributeValue]:
        return {"http.response.status_code": int(exchange.status_code)}


# ============================================================
# Outbound HTTP (httpx Request / Response)
# ============================================================

class HttpClientRequestEnricher(SpanEnricher):
    def enrich(self, exchange: Any) -> Dict[str, AttributeValue]:
        return {
            "http.request.method": exchange.method,
            "http.request.uri": str(exchange.url),
        }


class HttpClientResponseEnricher(SpanEnricher):
    def enrich(self, exchange: Any) -> Dict[str, AttributeValue]:
        return {"http.response.status_code": int(exchange.status_code)}


# ============================================================
# Database
# ============================================================

class DbCommandEnricher(SpanEnricher):
    def enrich(self, exchange: DbCommand) -> Dict[str, AttributeValue]:
        attributes: Dict[str, AttributeValue] = {
            "db.operation": exchange.statement,
            "db.system": exchange.system,
        }
        if exchange.database:
            attributes["db.name"] = exchange.database
        return attributes


@dataclass
class EnrichmentOptions:
    """Enrichers applied at each span boundary."""
    server_request: List[SpanEnricher] = field(
        default_factory=lambda: [HttpServerRequestEnricher()]
    )
    server_response: List[SpanEnricher] = field(
        default_factory=lambda: [HttpServerResponseEnricher()]
    )
    client_request: List[SpanEnricher] = field(
        default_factory=lambda: [HttpClientRequestEnricher()]
    )
    client_response: List[SpanEnricher] = field(
        default_factory=lambda: [HttpClientResponseEnricher()]
    )
    db_command: List[SpanEnricher] = field(
        default_factory=lambda: [DbCommandEnricher()]
    )
    record_exception: bool = True


def apply_enrichers(span: Span, enrichers: Sequence[SpanEnricher], exchange: Any) -> int:
    """
    Run enrichers against an exchange and tag the span.

    Args:
        span: Span created by the surrounding boundary
        enrichers: Enrichers to run, in order
        exchange: Request, response or DbCommand handed to each enricher

    Returns:
        Number of attributes set
    """
    applied = 0
    for enricher in enrichers:
        try:
            attributes = enricher.enrich(exchange)
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
                    applied += 1
        except Exception as e:
            logger.warning(
                "Span enricher %s failed, continuing without its attributes: %s",
                enricher.name,
                e,
            )
    return applied
