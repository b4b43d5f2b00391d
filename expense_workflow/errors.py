"""
Workflow Engine Exceptions

Typed failures raised by the engine. Each carries a machine-readable code and the
HTTP status the API layer maps it to; callers catch by type, not by message.

    WorkflowError (base)
    |
    +-- NotFoundError               404
    +-- ForbiddenError              403
    +-- ConflictError               409
    +-- ValidationError             400
    +-- NoApplicableWorkflowError   400
    +-- UnresolvableTargetError     409
    +-- DirectoryUnavailableError   503
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all workflow engine errors"""

    code: str = "WORKFLOW_ERROR"
    http_status: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"message": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(WorkflowError):
    """A workflow definition, version or report is absent"""

    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found" if resource_id is None else f"{resource} {resource_id} not found"
        super().__init__(message, {"resource": resource, "id": resource_id} if resource_id else None)
        self.resource = resource
        self.resource_id = resource_id


class ForbiddenError(WorkflowError):
    """Actor is not an eligible approver and lacks the override permission"""

    code = "FORBIDDEN"
    http_status = 403


class ConflictError(WorkflowError):
    """Transition is invalid for the report's current state"""

    code = "CONFLICT"
    http_status = 409


class ValidationError(WorkflowError):
    """Malformed workflow definition or request"""

    code = "VALIDATION_ERROR"
    http_status = 400


class NoApplicableWorkflowError(WorkflowError):
    """Selector matched nothing and no default workflow is configured"""

    code = "NO_APPLICABLE_WORKFLOW"
    http_status = 400


class UnresolvableTargetError(WorkflowError):
    """A step's approver could not be resolved (e.g. submitter has no manager)"""

    code = "UNRESOLVABLE_TARGET"
    http_status = 409


class DirectoryUnavailableError(WorkflowError):
    """Role or relationship lookup failed or timed out"""

    code = "DIRECTORY_UNAVAILABLE"
    http_status = 503
