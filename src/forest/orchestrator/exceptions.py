"""Custom exceptions for background clock operations."""

from __future__ import annotations

from typing import Optional


class ClockError(Exception):
    """Base class for failures raised inside a clock job body."""


class NoActiveProjectError(ClockError):
    """Raised when a job needs a project but none is selected.

    Aborts the current run only. Scheduled runs of the same job keep
    firing and succeed again once a project is activated.
    """

    def __init__(self, message: str = "No active project selected") -> None:
        super().__init__(message)


class ProviderFailure(ClockError):
    """Raised when an analysis, reflection or archiving provider fails.

    Example:
        The reasoning engine raising during a risk scan surfaces as
        ``ProviderFailure("risk_detection", ...)`` in the error log, with
        the original exception chained as ``__cause__``.
    """

    def __init__(self, job_kind: str, message: str) -> None:
        super().__init__(f"{job_kind} provider failed: {message}")
        self.job_kind = job_kind


class SnapshotAssemblyFailure(ClockError):
    """Describes a partial state snapshot.

    Never raised out of the gatherer: its message becomes the snapshot's
    error marker and the job proceeds with whatever data loaded.
    """

    def __init__(self, key: str, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to load {key}{detail}")
        self.key = key


class UnknownJobKindError(ClockError, ValueError):
    """Raised when a manual trigger names no known job kind."""

    def __init__(self, tag: object) -> None:
        super().__init__(f"Unknown analysis type: {tag}")
        self.tag = tag
