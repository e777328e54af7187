"""API request/response models."""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any, Literal
from services.builder.engine.graph import ActionDescriptor, WorkflowGraph
from shared.constants import MAX_EXPRESSION_LENGTH
from shared.types import ExecutionPoint, Operator, WorkflowMetadata, WorkflowStatus


class CreateSessionRequest(BaseModel):
    """Starts a blank session, or loads a persisted workflow when workflow_id is given"""
    workflow_id: Optional[int] = None
    metadata: Optional[WorkflowMetadata] = None


class SessionResponse(BaseModel):
    session_id: str
    metadata: WorkflowMetadata
    graph: WorkflowGraph
    initial_node_id: Optional[str] = None


class CreateConditionRequest(BaseModel):
    name: str = ""
    description: str = ""
    left_expression: str = Field(default="", max_length=MAX_EXPRESSION_LENGTH)
    operator: Operator = Operator.EQ
    right_expression: str = Field(default="", max_length=MAX_EXPRESSION_LENGTH)
    failure_message: Optional[str] = None
    is_active: bool = True


class CreateTerminalRequest(BaseModel):
    kind: Literal["success", "fail"]
    text: Optional[str] = None


class UpdateNodeRequest(BaseModel):
    """Partial node edit. Fields that do not apply to the node's kind are ignored."""
    name: Optional[str] = None
    description: Optional[str] = None
    left_expression: Optional[str] = Field(default=None, max_length=MAX_EXPRESSION_LENGTH)
    operator: Optional[Operator] = None
    right_expression: Optional[str] = Field(default=None, max_length=MAX_EXPRESSION_LENGTH)
    failure_message: Optional[str] = None
    is_active: Optional[bool] = None
    on_true: Optional[ActionDescriptor] = None
    on_false: Optional[ActionDescriptor] = None
    message: Optional[str] = None
    error: Optional[str] = None

    def patch(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class ConnectRequest(BaseModel):
    source: str
    target: str
    handle: Optional[str] = None

    @field_validator("handle")
    @classmethod
    def normalize_handle(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v


class SettingsRequest(BaseModel):
    """Workflow settings; persist=True also writes them to the workflow API"""
    name: Optional[str] = None
    description: Optional[str] = None
    execution_point: Optional[ExecutionPoint] = None
    is_default: Optional[bool] = None
    status: Optional[WorkflowStatus] = None
    persist: bool = False


class DeleteNodeResponse(BaseModel):
    removed: List[str]


class SaveResponse(BaseModel):
    status: str
    created: int
    updated: int
    errors: List[Dict[str, Any]] = []
    session: SessionResponse


class ExpressionIssuesResponse(BaseModel):
    execution_point: ExecutionPoint
    issues: Dict[str, List[str]]
