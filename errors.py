"""
Error taxonomy for the link repair engine.

Only SetupError may abort a run. Everything raised while one document is being
processed is caught at the worker boundary and recorded as results.
"""

from __future__ import annotations


class LinkRepairError(Exception):
    """Base class for engine errors."""
    pass


class SetupError(LinkRepairError):
    """The run cannot start: source unreachable, pool cannot be built, bad config."""
    pass


class DocumentError(LinkRepairError):
    """A single document could not be opened or fully scanned."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


class ReferenceRepairFailure(LinkRepairError):
    """A candidate was found but rewriting or re-validating the reference failed."""

    def __init__(self, target: str, candidate: str, message: str):
        self.target = target
        self.candidate = candidate
        super().__init__(f"Could not relink {target!r} to {candidate!r}: {message}")


class TransientInfrastructureError(LinkRepairError):
    """Timeout or temporary unavailability of the editing capability."""
    pass


class ThrottledError(TransientInfrastructureError):
    """The editing capability or remote store explicitly asked us to slow down."""

    def __init__(self, message: str, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message)
