"""
Reconcile Errors - Failure taxonomy shared by every reconcile stage.

Each error says whether the driver should retry the pass and carries a
machine-readable reason used in status conditions and events.
"""

from typing import Optional


class ReconcileError(Exception):
    """Base class for errors raised during a reconcile pass."""

    retryable: bool = False
    reason: str = "ReconcileError"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(ReconcileError):
    """The cluster or plugin spec contradicts itself. Not retryable."""

    reason = "ValidationFailed"


class ConflictError(ReconcileError):
    """Lost an optimistic-concurrency race with another writer."""

    retryable = True
    reason = "Conflict"


class ResourceError(ReconcileError):
    """Platform-side transient, quota or permission failure."""

    retryable = True
    reason = "ResourceError"

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class ConnectivityError(ReconcileError):
    """A broker member could not be reached."""

    retryable = True
    reason = "MemberUnreachable"

    def __init__(self, message: str, member: Optional[str] = None):
        self.member = member
        super().__init__(message)


class AdminAPIError(ReconcileError):
    """A broker member answered but rejected the request."""

    reason = "AdminAPIRejected"

    def __init__(
        self,
        message: str,
        member: Optional[str] = None,
        status: Optional[int] = None,
    ):
        self.member = member
        self.status = status
        super().__init__(message)


class ReconcileCancelled(ReconcileError):
    """The pass observed the shutdown signal and stopped."""

    reason = "Cancelled"


class InternalError(ReconcileError):
    """An unexpected exception escaped a reconcile stage."""

    retryable = True
    reason = "InternalError"
