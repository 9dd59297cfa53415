"""
Error types raised by the worker job lifecycle.

Every failure carries its kind and the step it originated from so the
embedding application can log or retry meaningfully.
"""

from enum import Enum
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from core.model import ParameterDelta


class ErrorKind(str, Enum):
    """Failure categories surfaced by a job."""
    CONNECTION = "connection"
    ASSIGNMENT = "assignment"
    TRAINING = "training"
    REPORT = "report"


class JobError(Exception):
    """Base class for job failures."""

    kind: ErrorKind

    def __init__(self, message: str, step: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.step = step
        self.cause = cause

    def __str__(self) -> str:
        return f"[{self.kind.value}:{self.step}] {super().__str__()}"


class CoordinatorConnectionError(JobError):
    """Coordinator unreachable or handshake rejected."""
    kind = ErrorKind.CONNECTION

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, step="handshake", cause=cause)


class MeshConnectionError(JobError):
    """Peer transport could not start connecting to participants."""
    kind = ErrorKind.CONNECTION

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, step="mesh", cause=cause)


class AssignmentError(JobError):
    """No usable protocol, plan, model or client config for this worker."""
    kind = ErrorKind.ASSIGNMENT

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, step="assignment", cause=cause)


class TrainingError(JobError):
    """A round was aborted; carries the position at which it stopped."""
    kind = ErrorKind.TRAINING

    def __init__(
        self,
        message: str,
        update: Optional[int] = None,
        batch: Optional[int] = None,
        epoch: Optional[int] = None,
        cause: Optional[BaseException] = None
    ):
        step = "training" if update is None else f"update {update}"
        super().__init__(message, step=step, cause=cause)
        self.update = update
        self.batch = batch
        self.epoch = epoch


class RoundCancelledError(TrainingError):
    """Cancellation was requested and took effect at a suspension point."""


class ReportError(JobError):
    """The reporting sink rejected the delta or timed out.

    The delta is kept on the error so the caller can retry the report.
    """
    kind = ErrorKind.REPORT

    def __init__(
        self,
        message: str,
        delta: Optional['ParameterDelta'] = None,
        cause: Optional[BaseException] = None
    ):
        super().__init__(message, step="report", cause=cause)
        self.delta = delta


class JobStateError(RuntimeError):
    """An operation was attempted in a state that does not allow it."""
