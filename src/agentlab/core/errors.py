"""Error handling module for agentlab.

This module defines error kinds, exception classes, and the payload
written into ``jobs.result_json`` when a job fails.

Failure payload format:
{
    "error": "workspace lease is held by another owner",
    "kind": "conflict"
}

Usage:
    from agentlab.core.errors import NotFoundError, ValidationError

    # Raise with default message
    raise NotFoundError()

    # Raise with custom message
    raise ValidationError("vmid must be positive")
"""

from enum import Enum

from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Error kinds."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    FOREIGN_KEY = "foreign_key"
    ALREADY_CONSUMED = "already_consumed"
    EXPIRED = "expired"
    TIMEOUT = "timeout"
    ADAPTER = "adapter"
    DECRYPT = "decrypt"
    IO = "io"


class ErrorResponse(BaseModel):
    """Failure payload stored on jobs and returned by endpoint contracts."""

    error: str
    kind: str


class AgentLabError(Exception):
    """Base exception for agentlab.

    All agentlab specific exceptions inherit from this class so callers
    can branch on ``kind`` instead of concrete types.

    Attributes:
        kind: The error kind from ErrorKind enum
        message: Human-readable error message
        retryable: Whether the reconciler may retry the failed step
    """

    retryable: bool = False

    def __init__(self, kind: ErrorKind, message: str) -> None:
        self.kind = kind
        self.message = message
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse model."""
        return ErrorResponse(error=self.message, kind=self.kind.value)


class ValidationError(AgentLabError):
    """Input rejected before touching the store."""

    def __init__(self, message: str = "Invalid input") -> None:
        super().__init__(ErrorKind.VALIDATION, message)


class NotFoundError(AgentLabError):
    """Row does not exist."""

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(ErrorKind.NOT_FOUND, message)


class ConflictError(AgentLabError):
    """Compare-and-swap failed or a unique constraint was violated."""

    def __init__(self, message: str = "Conflict") -> None:
        super().__init__(ErrorKind.CONFLICT, message)


class WorkspaceLeaseHeldError(ConflictError):
    """Workspace lease is held by another owner."""

    def __init__(self, message: str = "Workspace lease is held by another owner") -> None:
        super().__init__(message)


class LeaseNotRenewableError(ConflictError):
    """Sandbox lease can only be renewed while keepalive is on."""

    def __init__(self, message: str = "Sandbox lease is not renewable") -> None:
        super().__init__(message)


class ForeignKeyError(AgentLabError):
    """Referenced row does not exist."""

    def __init__(self, message: str = "Referenced row does not exist") -> None:
        super().__init__(ErrorKind.FOREIGN_KEY, message)


class AlreadyConsumedError(AgentLabError):
    """One-shot token was already used."""

    def __init__(self, message: str = "Token already consumed") -> None:
        super().__init__(ErrorKind.ALREADY_CONSUMED, message)


class ExpiredError(AgentLabError):
    """Token or lease is past its expiry."""

    def __init__(self, message: str = "Expired") -> None:
        super().__init__(ErrorKind.EXPIRED, message)


class OperationTimeoutError(AgentLabError):
    """Deadline exceeded. Retried by the reconciler."""

    retryable = True

    def __init__(self, message: str = "Operation timed out") -> None:
        super().__init__(ErrorKind.TIMEOUT, message)


class AdapterError(AgentLabError):
    """Hypervisor call failed."""

    def __init__(self, message: str = "Hypervisor operation failed") -> None:
        super().__init__(ErrorKind.ADAPTER, message)


class VMNotFoundError(AdapterError):
    """Hypervisor has no VM with the requested vmid."""

    def __init__(self, vmid: int) -> None:
        self.vmid = vmid
        super().__init__(f"VM {vmid} not found")


class DecryptError(AgentLabError):
    """Secret bundle could not be located or decrypted."""

    def __init__(self, message: str = "Secret bundle decryption failed") -> None:
        super().__init__(ErrorKind.DECRYPT, message)


class StorageIOError(AgentLabError):
    """Filesystem or database I/O failure."""

    def __init__(self, message: str = "I/O error") -> None:
        super().__init__(ErrorKind.IO, message)


def error_payload(exc: BaseException) -> dict[str, str]:
    """Build the ``{"error", "kind"}`` payload for any exception.

    Unknown exceptions are reported with the ``io`` kind.
    """
    if isinstance(exc, AgentLabError):
        return exc.to_response().model_dump()
    if isinstance(exc, TimeoutError):
        return ErrorResponse(error=str(exc) or "timeout", kind=ErrorKind.TIMEOUT.value).model_dump()
    return ErrorResponse(error=str(exc) or type(exc).__name__, kind=ErrorKind.IO.value).model_dump()
