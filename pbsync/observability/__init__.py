"""Observability helpers."""

from pbsync.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_sync_run,
    record_entity_writes,
    record_source_request,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_sync_run",
    "record_entity_writes",
    "record_source_request",
]
