"""Structured exception hierarchy for the workflow builder."""

from typing import Optional, Dict, Any
from pydantic import BaseModel


class ApiError(BaseModel):
    """Structured error describing a failed persistence API call"""
    error_type: str
    error_message: str
    http_status_code: Optional[int] = None
    operation: str = ""
    context: Dict[str, Any] = {}

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class BuilderError(Exception):
    """Base exception for builder errors"""

    def __init__(self, message: str, workflow_id: Optional[int] = None, **context):
        self.message = message
        self.workflow_id = workflow_id
        self.context = context
        super().__init__(message)


class PersistenceError(BuilderError):

    def __init__(self, error: ApiError, workflow_id: Optional[int] = None):
        self.error = error
        super().__init__(error.error_message, workflow_id, **error.context)


class StepDeleteError(BuilderError):

    def __init__(self, step_id: int, error: ApiError, workflow_id: Optional[int] = None):
        self.step_id = step_id
        self.error = error
        super().__init__(f"Failed to delete step {step_id}: {error.error_message}", workflow_id)


class SaveInProgressError(BuilderError):
    pass


class WorkflowNotPersistedError(BuilderError):
    pass


class SessionNotFoundError(BuilderError):
    pass


class ExpressionSyntaxError(BuilderError):
    pass
