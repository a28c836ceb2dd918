"""
Error Taxonomy Module

Typed exceptions raised synchronously by every mutating engine operation.
A single ``except ApprovalError`` catches the whole hierarchy.
"""

from typing import Any, Dict, List, Optional


class ApprovalError(Exception):
    """Base exception for all approval engine errors."""

    code = "approval_error"

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details,
        }


class ValidationError(ApprovalError):
    """Raised when request input fails validation."""

    code = "validation_error"

    def __init__(self, message: str = "Validation failed",
                 details: Optional[List[Dict[str, Any]]] = None,
                 field: Optional[str] = None):
        if field and not details:
            details = [{"field": field, "issue": message}]
        super().__init__(message, details)


class NoApplicableTemplate(ApprovalError):
    """Raised when no template matches and the tenant has no default."""

    code = "no_applicable_template"

    def __init__(self, tenant_id: str, request_type: str,
                 request_category: Optional[str] = None):
        super().__init__(
            f"No workflow template applies to request type '{request_type}' "
            f"for tenant '{tenant_id}'",
            [{"tenant_id": tenant_id, "request_type": request_type,
              "request_category": request_category}]
        )
        self.tenant_id = tenant_id
        self.request_type = request_type
        self.request_category = request_category


class Conflict(ApprovalError):
    """Raised when an action conflicts with existing state."""

    code = "conflict"


class Forbidden(ApprovalError):
    """Raised when the actor does not satisfy the required approver spec."""

    code = "forbidden"

    def __init__(self, message: str = "Actor is not authorized for this level",
                 actor_id: Optional[str] = None):
        details = [{"actor_id": actor_id}] if actor_id else []
        super().__init__(message, details)
        self.actor_id = actor_id


class NotFound(ApprovalError):
    """Raised when a request, level or template does not exist."""

    code = "not_found"

    def __init__(self, message: str = "Resource not found",
                 resource_type: Optional[str] = None,
                 resource_id: Optional[str] = None):
        details = []
        if resource_type or resource_id:
            details = [{"resource_type": resource_type, "resource_id": resource_id}]
        super().__init__(message, details)
        self.resource_type = resource_type
        self.resource_id = resource_id


class TransitionDenied(ApprovalError):
    """Raised when the request's state does not permit the transition."""

    code = "transition_denied"
