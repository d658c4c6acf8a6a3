"""
ObservaStock - Database Span Boundary

Usage:
    with traced_db_operation(tracer, "SELECT price FROM quotes WHERE symbol = ?") as span:
        rows = cursor.execute(...).fetchall()
        span.set_attribute("db.rows", len(rows))
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from opentelemetry.trace import Span, SpanKind, Status, StatusCode, Tracer

from .enrichment import DbCommand, EnrichmentOptions, apply_enrichers


@contextmanager
def traced_db_operation(
    tracer: Tracer,
    statement: str,
    system: str = "sqlite",
    database: Optional[str] = None,
    options: Optional[EnrichmentOptions] = None,
) -> Iterator[Span]:
    """
    Open a CLIENT span around one database call.

    The db_command enrichers tag the span with the operation text.
    Exceptions are recorded on the span and re-raised.
    """
    options = options or EnrichmentOptions()
    command = DbCommand(statement=statement, system=system, database=database)
    operation = statement.strip().split(None, 1)[0].upper() if statement.strip() else "QUERY"

    with tracer.start_as_current_span(
        f"{system}.{operation}",
        kind=SpanKind.CLIENT,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        apply_enrichers(span, options.db_command, command)
        try:
            yield span
        except Exception as e:
            if options.record_exception:
                span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
