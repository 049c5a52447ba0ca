"""Exceptions raised by the hierarchy sync pipeline."""
from __future__ import annotations


class SyncError(Exception):
    """Base class for sync pipeline failures."""


class FatalCollectionError(SyncError):
    """A required top-level fetch failed; the run cannot continue."""

    def __init__(self, label: str, reason: str):
        self.label = label
        self.reason = reason
        super().__init__(f"Failed to fetch {label}: {reason}")


class SyncTimeoutError(SyncError):
    """The run exceeded its deadline and in-flight work was cancelled."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Sync run exceeded timeout of {timeout_seconds:g}s")


class FrozenIdMapError(SyncError):
    """An id map was written after it had been handed on to a later step."""

    def __init__(self, entity: str, external_id: str):
        self.entity = entity
        self.external_id = external_id
        super().__init__(f"Id map for {entity} is frozen; cannot assign {external_id}")
