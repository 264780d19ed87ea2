"""Error taxonomy for workflow state and run dispatch.

Rejected duplicate apply requests and stalled runs are not exceptions: the
former is a ``False`` return from the apply queue, the latter is a run status.
"""

from __future__ import annotations


class LookflowError(RuntimeError):
    """Base class for lookflow errors."""


class PreconditionNotMet(LookflowError):
    """A guarded transition was attempted from the wrong state. Nothing was written."""


class ConsistencyViolation(LookflowError):
    """Persisted data breaks a uniqueness invariant.

    Raised instead of picking one of the conflicting records.
    """


class StoreUnavailable(LookflowError):
    """The record store kept failing after the bounded retry budget."""


class WorkerFailure(LookflowError):
    """The external worker reported an error for a run or apply request."""

    def __init__(self, message: str, *, target_id: str | None = None) -> None:
        super().__init__(message)
        self.target_id = target_id
