"""Exception taxonomy for voxflow.

Lifecycle misuse (``NotInitializedError``, ``ConcurrentOperationError``) and
initialization failures are raised to the caller. Stage failures inside a
turn never escape the pipeline: they are wrapped in ``StageError``, turned
into a failed turn, and published as an ``error`` event.
"""

from __future__ import annotations

from enum import Enum

from voxflow.core.events import Stage


class VoxflowError(Exception):
    """Base class for every error raised by voxflow."""


class NotInitializedError(VoxflowError):
    """An operation needs a state the pipeline has not reached yet."""


class ConcurrentOperationError(VoxflowError):
    """A lifecycle operation was called while another one is in progress."""


class NoAdapterAvailableError(VoxflowError):
    """The registry has zero registrations for a stage."""

    def __init__(self, stage: Stage, message: str = "") -> None:
        self.stage = stage
        super().__init__(message or f"No adapter registered for stage '{stage.value}'")


class InitializationError(VoxflowError):
    """Aggregates the per-stage failures of ``PipelineManager.initialize``."""

    def __init__(self, causes: dict[Stage, BaseException]) -> None:
        self.causes = dict(causes)
        detail = "; ".join(
            f"{stage.value}: {exc}" for stage, exc in self.causes.items()
        )
        super().__init__(f"Pipeline initialization failed ({detail})")


class AdapterError(VoxflowError):
    """Raised by adapters. ``retryable`` marks transient failures.

    Only errors an adapter explicitly marks retryable (network blips, rate
    limits on cloud services) are retried by the StageRunner. Local model
    errors should leave ``retryable`` False.
    """

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        self.retryable = retryable
        super().__init__(message)


class TransientAdapterError(AdapterError):
    """Convenience subclass for retryable adapter failures."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message, retryable=True)


class StageErrorKind(str, Enum):
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    TRANSIENT = "transient"
    FATAL = "fatal"


class StageError(VoxflowError):
    """The outcome of a stage call that did not produce a value."""

    def __init__(
        self,
        stage: Stage,
        kind: StageErrorKind,
        cause: BaseException | None = None,
        attempts: int = 1,
    ) -> None:
        self.stage = stage
        self.kind = kind
        self.cause = cause
        self.attempts = attempts
        message = f"{stage.value} stage {kind.value}"
        if cause is not None and str(cause):
            message += f": {cause}"
        super().__init__(message)


class TurnStateError(VoxflowError):
    """Illegal turn status transition (status is monotonic)."""
