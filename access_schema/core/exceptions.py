"""Custom exception classes for accessSchema."""

from fastapi import HTTPException, status


class AccessSchemaError(Exception):
    """Base exception for accessSchema."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class ValidationError(AccessSchemaError):
    """Raised when input validation fails (empty or malformed path)."""
    pass


class DepthExceededError(ValidationError):
    """Raised when a role node would be deeper than the configured maximum."""
    pass


class ResourceNotFoundError(AccessSchemaError):
    """Raised when a requested resource is not found."""
    pass


class RoleNotRegisteredError(ResourceNotFoundError):
    """Raised when a role path is not an active registered role."""
    pass


class RoleNotFoundError(ResourceNotFoundError):
    """Raised when a role path was never registered at all."""
    pass


class ResourceConflictError(AccessSchemaError):
    """Raised when a mutation conflicts with existing state."""
    pass


class AlreadyAssignedError(ResourceConflictError):
    """Raised when the principal already holds the role."""
    pass


class AssignmentRejectedError(ResourceConflictError):
    """Raised when conflict rules, role limits or a custom validator reject an assignment."""
    pass


class RoleInactiveError(ResourceConflictError):
    """Raised when a path runs through a soft-deleted node."""
    pass


class StorageError(AccessSchemaError):
    """Raised when the backing store fails."""
    pass


def conflict(detail: str = "Conflict") -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


def http_status_for(exc: AccessSchemaError) -> int:
    """Map the error taxonomy onto an HTTP status code."""
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, ResourceNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ResourceConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, StorageError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_400_BAD_REQUEST
