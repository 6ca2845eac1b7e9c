"""
Structured errors for the workflow service.

Every failure is scoped to the single action that triggered it. Errors carry
a machine-readable code, a human message and a details dict so the HTTP
layer can return them unchanged.
"""

from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """Base error with structured details."""

    http_status = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(WorkflowError):
    """Required field missing or malformed. Raised before any write."""

    http_status = 400

    def __init__(self, errors: List[str]):
        super().__init__(
            code="VALIDATION_FAILED",
            message="; ".join(errors) if errors else "Validation failed",
            details={"errors": errors},
        )


class AuthorizationError(WorkflowError):
    http_status = 403

    def __init__(self, action: str, role: Optional[str] = None, reason: Optional[str] = None):
        message = reason or f"Role '{role}' is not permitted to {action}"
        super().__init__(
            code="NOT_AUTHORIZED",
            message=message,
            details={"action": action, "role": role},
        )


class NotFoundError(WorkflowError):
    http_status = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            code=f"{entity.upper()}_NOT_FOUND",
            message=f"{entity.capitalize()} '{entity_id}' not found",
            details={"entity": entity, "id": entity_id},
        )


class InvalidStateError(WorkflowError):
    """Transition requested from a state that does not allow it."""

    http_status = 409

    def __init__(self, entity: str, current: str, attempted: str):
        super().__init__(
            code="INVALID_STATE",
            message=f"Cannot {attempted} {entity} in state '{current}'",
            details={"entity": entity, "current": current, "attempted": attempted},
        )


class ConflictError(WorkflowError):
    """A uniqueness rule at the data layer rejected the write."""

    http_status = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code="CONFLICT", message=message, details=details)


class StoreError(WorkflowError):
    """The remote store rejected a read or write."""

    http_status = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code="STORE_ERROR", message=message, details=details)


class EmailDeliveryError(WorkflowError):
    """Email provider refused or could not be reached. Soft failure."""

    http_status = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code="EMAIL_FAILED", message=message, details=details)
