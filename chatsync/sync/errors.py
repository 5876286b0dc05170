"""Exception hierarchy for the sync pipeline."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base error for sync pipeline failures."""


class SyncConfigError(SyncError):
    """Raised when a configuration override is invalid."""


class SyncRunNotFound(SyncError):
    """Raised when a sync run id does not resolve to a row."""


class ExtractionError(SyncError):
    """Raised when extraction for an entity type cannot complete."""


class PayloadError(SyncError):
    """Raised when a staged payload cannot be parsed into its entity model."""


class StagingTransitionError(SyncError):
    """Raised when a staging record is asked to move to a disallowed state."""


class SyncCancelled(SyncError):
    """Raised between pages or records once a run has been asked to stop."""


class RunNotCancellable(SyncError):
    """Raised when cancellation is requested for a run that already finished."""


__all__ = [
    "SyncError",
    "SyncConfigError",
    "SyncRunNotFound",
    "ExtractionError",
    "PayloadError",
    "StagingTransitionError",
    "SyncCancelled",
    "RunNotCancellable",
]
